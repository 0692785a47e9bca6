"""HistoryStore protocol and SQLite implementation.

Holds two tables: ``sales`` (read-only historical facts used by the internal
comparables engine) and ``valuations`` (append-only saved advice).
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

SOLD_B2B_STATUS = "sold_b2b"
SOLD_B2C_STATUS = "sold_b2c"
DELIVERED_STATUS = "delivered"
SOLD_STATUSES = (SOLD_B2B_STATUS, SOLD_B2C_STATUS, DELIVERED_STATUS)

SALE_FIELDS = (
    "id", "brand", "model", "build_year", "mileage", "purchase_price",
    "selling_price", "purchase_date", "sold_date", "status",
)

UPSERT_SALE_SQL = (
    "INSERT INTO sales ("
    + ", ".join(SALE_FIELDS)
    + ", updated_at) VALUES ("
    + ", ".join(["?"] * (len(SALE_FIELDS) + 1))
    + ") ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{c}=excluded.{c}" for c in SALE_FIELDS if c != "id")
    + ", updated_at=excluded.updated_at"
)


@runtime_checkable
class HistoryStore(Protocol):
    """Storage backend for historical sales and saved valuations."""

    def upsert_sales(self, sales: list[dict[str, Any]]) -> int: ...
    def query_sales(
        self,
        *,
        brand: str,
        model_prefix: str | None = None,
        since: str,
        statuses: tuple[str, ...] = SOLD_STATUSES,
        limit: int = 20,
    ) -> list[dict[str, Any]]: ...
    def count_sales(self) -> int: ...
    def save_valuation(
        self,
        *,
        plate: str | None,
        vehicle: dict[str, Any],
        advice: dict[str, Any],
        sources: dict[str, Any] | None = None,
    ) -> str: ...
    def list_valuations(self, *, limit: int = 20) -> list[dict[str, Any]]: ...


class SqliteHistoryStore:
    """SQLite-backed history store with WAL mode and NOCASE indexes."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA temp_store=MEMORY")
            self._create_schema()

    # ── Schema ─────────────────────────────────────────────────────

    def _create_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sales (
                id              TEXT PRIMARY KEY,
                brand           TEXT NOT NULL COLLATE NOCASE,
                model           TEXT NOT NULL DEFAULT '' COLLATE NOCASE,
                build_year      INTEGER,
                mileage         INTEGER,
                purchase_price  REAL,
                selling_price   REAL,
                purchase_date   TEXT,
                sold_date       TEXT,
                status          TEXT NOT NULL,
                updated_at      TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sales_brand_model
                ON sales(brand COLLATE NOCASE, model COLLATE NOCASE);
            CREATE INDEX IF NOT EXISTS idx_sales_sold_date
                ON sales(sold_date);

            CREATE TABLE IF NOT EXISTS valuations (
                id                          TEXT PRIMARY KEY,
                created_at                  TEXT NOT NULL,
                plate                       TEXT,
                brand                       TEXT NOT NULL DEFAULT '',
                model                       TEXT NOT NULL DEFAULT '',
                build_year                  INTEGER,
                recommendation              TEXT NOT NULL,
                recommended_purchase_price  REAL NOT NULL DEFAULT 0,
                recommended_selling_price   REAL NOT NULL DEFAULT 0,
                payload                     TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_valuations_created
                ON valuations(created_at);
        """)

    # ── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _as_optional_float(value: Any) -> float | None:
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_optional_int(value: Any) -> int | None:
        if value is None or value == "":
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _sale_to_row(sale: dict[str, Any], *, updated_at: str) -> tuple[Any, ...]:
        _f = SqliteHistoryStore._as_optional_float
        _i = SqliteHistoryStore._as_optional_int
        g = sale.get
        brand = str(g("brand") or "").strip()
        if not brand:
            raise ValueError("sale requires a brand")
        return (
            str(g("id") or uuid.uuid4()),
            brand,
            str(g("model") or "").strip(),
            _i(g("build_year")),
            _i(g("mileage")),
            _f(g("purchase_price")),
            _f(g("selling_price")),
            g("purchase_date") or None,
            g("sold_date") or None,
            str(g("status") or SOLD_B2C_STATUS),
            updated_at,
        )

    # ── Sales ──────────────────────────────────────────────────────

    def upsert_sales(self, sales: list[dict[str, Any]]) -> int:
        if not sales:
            return 0
        now = self._now()
        rows = [self._sale_to_row(s, updated_at=now) for s in sales]
        with self._lock:
            with self._conn:
                self._conn.executemany(UPSERT_SALE_SQL, rows)
        return len(rows)

    def query_sales(
        self,
        *,
        brand: str,
        model_prefix: str | None = None,
        since: str,
        statuses: tuple[str, ...] = SOLD_STATUSES,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """Sold rows with both prices recorded, newest first."""
        clauses = [
            "brand = ? COLLATE NOCASE",
            f"status IN ({', '.join('?' * len(statuses))})",
            "purchase_price IS NOT NULL",
            "selling_price IS NOT NULL",
            "sold_date >= ?",
        ]
        params: list[Any] = [brand, *statuses, since]
        if model_prefix:
            clauses.append("model LIKE ? ESCAPE '\\'")
            escaped = model_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.append(f"{escaped}%")
        params.append(limit)
        sql = (
            f"SELECT {', '.join(SALE_FIELDS)} FROM sales WHERE "
            + " AND ".join(clauses)
            + " ORDER BY sold_date DESC LIMIT ?"
        )
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def count_sales(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM sales").fetchone()
        return int(row[0])

    # ── Saved valuations (append-only) ─────────────────────────────

    def save_valuation(
        self,
        *,
        plate: str | None,
        vehicle: dict[str, Any],
        advice: dict[str, Any],
        sources: dict[str, Any] | None = None,
    ) -> str:
        recommendation = str(advice.get("recommendation") or "")
        if not recommendation:
            raise ValueError("advice must carry a recommendation")
        valuation_id = str(uuid.uuid4())
        payload = json.dumps(
            {"vehicle": vehicle, "advice": advice, "sources": sources or {}},
            default=str,
        )
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """INSERT INTO valuations (
                           id, created_at, plate, brand, model, build_year,
                           recommendation, recommended_purchase_price,
                           recommended_selling_price, payload
                       ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        valuation_id,
                        self._now(),
                        plate,
                        str(vehicle.get("brand") or ""),
                        str(vehicle.get("model") or ""),
                        self._as_optional_int(vehicle.get("build_year")),
                        recommendation,
                        self._as_optional_float(advice.get("recommended_purchase_price")) or 0.0,
                        self._as_optional_float(advice.get("recommended_selling_price")) or 0.0,
                        payload,
                    ),
                )
        return valuation_id

    def list_valuations(self, *, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, created_at, plate, brand, model, build_year,
                          recommendation, recommended_purchase_price,
                          recommended_selling_price, payload
                   FROM valuations ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        results: list[dict[str, Any]] = []
        for row in rows:
            entry = dict(row)
            try:
                entry["payload"] = json.loads(entry["payload"])
            except (TypeError, json.JSONDecodeError):
                entry["payload"] = {}
            results.append(entry)
        return results
