"""Error types for the reconciliation core.

Each error carries a stable ``code`` and optional ``context`` so callers (the
CLI, or a host application) can report failures without parsing messages.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    NOT_CONFIGURED = "NOT_CONFIGURED"
    STORE_READ_FAILED = "STORE_READ_FAILED"
    STORE_WRITE_FAILED = "STORE_WRITE_FAILED"
    DUPLICATE_LINK = "DUPLICATE_LINK"


class CalyComptaError(Exception):
    """Base exception with structured error info."""

    code: ErrorCode

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.context:
            result["context"] = self.context
        return result


class NotConfiguredError(CalyComptaError):
    """Club id or operating account missing; raised before any store access."""

    code = ErrorCode.NOT_CONFIGURED


class StoreReadError(CalyComptaError):
    """Listing transactions failed (network, permissions, schema)."""

    code = ErrorCode.STORE_READ_FAILED


class StoreWriteError(CalyComptaError):
    """A single transaction update failed."""

    code = ErrorCode.STORE_WRITE_FAILED


class DuplicateLinkError(CalyComptaError, ValueError):
    """A matcher produced the same ``(entity_type, entity_id)`` pair twice."""

    code = ErrorCode.DUPLICATE_LINK


__all__ = [
    "ErrorCode",
    "CalyComptaError",
    "NotConfiguredError",
    "StoreReadError",
    "StoreWriteError",
    "DuplicateLinkError",
]
