"""Runtime configuration resolved from explicit values and the environment.

Environment variables (a local ``.env`` is loaded by the CLI before these are
read):

- ``DATABASE_URL``: consumed by ``db.client``.
- ``CALYCOMPTA_CLUB_ID``: default club (tenant) identifier.
- ``CALYCOMPTA_OPERATING_ACCOUNT``: default operating account for dashboard
  totals; the club row's ``operating_account`` is used when neither is set.
- ``CALYCOMPTA_LOG_LEVEL``: see ``logging_setup``.
"""

from __future__ import annotations

import os
import re

from .errors import NotConfiguredError

_CLUB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def resolve_club_id(club_id: str | None = None) -> str:
    """Return a validated club id from ``club_id`` or ``CALYCOMPTA_CLUB_ID``.

    Raises :class:`NotConfiguredError` when missing or malformed, so callers can
    fail before touching the store.
    """

    value = club_id if club_id is not None else os.getenv("CALYCOMPTA_CLUB_ID")
    value = (value or "").strip()
    if not value:
        raise NotConfiguredError(
            "No club id configured; pass --club-id or set CALYCOMPTA_CLUB_ID"
        )
    if not _CLUB_ID_RE.fullmatch(value):
        raise NotConfiguredError(
            f"Invalid club id: {value!r}", context={"club_id": value}
        )
    return value


def normalize_account(account: str | None) -> str:
    """Strip all whitespace from an IBAN-like account number."""

    if not account:
        return ""
    return re.sub(r"\s+", "", account)


def operating_account_from_env() -> str | None:
    value = normalize_account(os.getenv("CALYCOMPTA_OPERATING_ACCOUNT"))
    return value or None


__all__ = [
    "resolve_club_id",
    "normalize_account",
    "operating_account_from_env",
]
