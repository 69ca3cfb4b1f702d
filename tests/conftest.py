"""Pytest configuration shared by all tests.

Puts the workspace packages on ``sys.path`` (``packages/`` for ``calycompta``,
``libs/db/src`` for ``db``, and the repo root for ``tests.helpers``) so the
suite runs from a plain checkout. Every test gets a fresh SQLite database:
``db.client`` keeps a process-wide engine, so it is reset around each test and
``DATABASE_URL`` points at the test's own file.
"""

# ruff: noqa: E402, I001
from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
_PATHS = [_ROOT / "packages", _ROOT / "libs" / "db" / "src", _ROOT]
sys.path[:0] = [str(p) for p in _PATHS if str(p) not in sys.path]

from calycompta.logging_setup import reset_logging  # noqa: E402
from db.client import reset_engine  # noqa: E402

from tests.helpers.db import bootstrap_sqlite_db, seed_club  # noqa: E402

CLUB_ID = "club-1"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep developer settings (or a local .env) from leaking into tests."""

    for name in (
        "DATABASE_URL",
        "CALYCOMPTA_CLUB_ID",
        "CALYCOMPTA_OPERATING_ACCOUNT",
        "CALYCOMPTA_LOG_LEVEL",
        "DB_ECHO",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    reset_logging()


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    """Fresh file-backed SQLite DB with one club; also exported as ``DATABASE_URL``."""

    reset_engine()
    url = bootstrap_sqlite_db(tmp_path / "calycompta.db")
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("CALYCOMPTA_CLUB_ID", CLUB_ID)
    seed_club(database_url=url, club_id=CLUB_ID)
    yield url
    reset_engine()


@pytest.fixture
def club_id() -> str:
    return CLUB_ID


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty directory so no stray ``.env`` is picked up."""

    d = tmp_path / "work"
    d.mkdir()
    monkeypatch.chdir(os.fspath(d))
    return d
