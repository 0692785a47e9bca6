"""History store facade: the process-wide store lives here, swappable in tests."""

from __future__ import annotations

import os

from appraisal_mcp.data.store import HistoryStore, SqliteHistoryStore

_store: HistoryStore | None = None

_DEFAULT_DB_PATH = os.path.join(os.path.dirname(__file__), "history.db")


def get_store() -> HistoryStore:
    """Return the active HistoryStore singleton, creating it if needed."""
    global _store  # noqa: PLW0603
    if _store is None:
        db_path = os.environ.get("APPRAISAL_DB_PATH", _DEFAULT_DB_PATH)
        _store = SqliteHistoryStore(db_path)
    return _store


def set_store(store: HistoryStore | None) -> None:
    """Inject a store instance for testing (mirrors ``set_cip_override``)."""
    global _store  # noqa: PLW0603
    _store = store
