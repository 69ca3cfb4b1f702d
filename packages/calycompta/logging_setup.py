"""Logging for ``calycompta``.

Every module logs through ``get_logger("calycompta.<module>")`` and never
attaches handlers. The CLI calls ``configure_logging`` once; a host
application may instead wire the ``"calycompta"`` logger itself. Until one of
them does, the package stays silent.

Audit and repair messages concern one club at a time; ``club_logger`` wraps a
module logger so each line names the club it is about and carries
``club_id`` as a record attribute for structured handlers.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from typing import IO, Any

_PKG_LOGGER_NAME = "calycompta"
_DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_handler: logging.Handler | None = None


def _parse_level(level: int | str | None) -> int:
    if level is None:
        level = os.getenv("CALYCOMPTA_LOG_LEVEL") or logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    value = logging.getLevelName(name)
    if isinstance(value, int):
        return value
    raise ValueError(f"unknown log level {level!r}")


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Send package logs to ``stream`` (stderr by default). Idempotent.

    ``level`` falls back to ``CALYCOMPTA_LOG_LEVEL`` and then ``INFO``; an
    unknown level name raises ``ValueError``.
    """

    global _handler
    if _handler is not None:
        return

    resolved = _parse_level(level)
    pkg = logging.getLogger(_PKG_LOGGER_NAME)
    for h in [h for h in pkg.handlers if isinstance(h, logging.NullHandler)]:
        pkg.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))
    pkg.addHandler(handler)
    pkg.setLevel(resolved)
    pkg.propagate = False
    _handler = handler


def reset_logging() -> None:
    """Detach the handler installed by :func:`configure_logging`."""

    global _handler
    pkg = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is not None:
        pkg.removeHandler(_handler)
        _handler = None
    pkg.setLevel(logging.NOTSET)
    pkg.propagate = True


def get_logger(name: str) -> logging.Logger:
    """Return ``name``'s logger; silent until logging is configured."""

    pkg = logging.getLogger(_PKG_LOGGER_NAME)
    if _handler is None and not pkg.handlers:
        pkg.addHandler(logging.NullHandler())
    return logging.getLogger(name)


class ClubLoggerAdapter(logging.LoggerAdapter):
    """Prefix messages with ``[club <id>]`` and attach ``club_id`` to records."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        club_id = self.extra["club_id"] if self.extra else None
        kwargs.setdefault("extra", {})["club_id"] = club_id
        return f"[club {club_id}] {msg}", kwargs


def club_logger(logger: logging.Logger, club_id: str) -> ClubLoggerAdapter:
    return ClubLoggerAdapter(logger, {"club_id": club_id})


__all__ = [
    "configure_logging",
    "reset_logging",
    "get_logger",
    "club_logger",
    "ClubLoggerAdapter",
]
