"""Structured error taxonomy shared by clients, fetchers, and tools."""

from __future__ import annotations

from typing import Any


class ValuationError(RuntimeError):
    """Base error carrying structured metadata for tool responses."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "status": self.status,
            "details": self.details,
        }


class NotFoundError(ValuationError):
    """The registry holds no record for the requested identity."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="NOT_FOUND", status=404, details=details)


class UpstreamError(ValuationError):
    """An external call failed (HTTP error, timeout, network, missing key)."""


class ParseError(ValuationError):
    """An AI or index reply could not be interpreted."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="PARSE_ERROR", details=details)
