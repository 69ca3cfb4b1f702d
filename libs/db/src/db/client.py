"""Engine and session lifecycle for the bank-transaction store.

One engine per process, bound to ``DATABASE_URL`` (or an explicit URL) the
first time it is needed. Callers work in units of work:

    from db.client import session_scope

    with session_scope() as s:
        s.execute(...)

SQLite URLs (used by tests and local runs) get foreign keys switched on and a
``now()`` SQL function, so the ``server_default=now()`` columns behave the
same as on PostgreSQL. ``DB_ECHO=1`` logs every statement.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

_ENGINE: Engine | None = None
_SESSION_MAKER: sessionmaker[Session] | None = None
_DB_URL: str | None = None

_TRUTHY = {"1", "true", "yes", "on"}


def _database_url(override: str | None = None) -> str:
    url = override or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; cannot open the transaction store")
    return url


def _sqlite_now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn: Any, _record: Any) -> None:
        dbapi_conn.execute("PRAGMA foreign_keys = ON")
        dbapi_conn.create_function("now", 0, _sqlite_now)


def _build_engine(url: str) -> Engine:
    echo = os.getenv("DB_ECHO", "").strip().lower() in _TRUTHY
    is_sqlite = make_url(url).get_backend_name() == "sqlite"
    # pre-ping only matters for pooled network connections
    engine = create_engine(url, echo=echo, pool_pre_ping=not is_sqlite)
    if is_sqlite:
        _install_sqlite_hooks(engine)
    return engine


def get_engine(*, database_url: str | None = None) -> Engine:
    """Return the process engine, building it on first use.

    Asking for a different URL once the engine exists raises ``RuntimeError``;
    call :func:`reset_engine` before switching stores.
    """

    global _ENGINE, _SESSION_MAKER, _DB_URL
    url = _database_url(database_url)
    if _ENGINE is not None:
        if url != _DB_URL:
            raise RuntimeError(
                "the transaction store engine is bound to another DATABASE_URL; "
                "call reset_engine() first"
            )
        return _ENGINE

    engine = _build_engine(url)
    # Rows are read back as frozen records after commit; keep attributes loaded.
    _SESSION_MAKER = sessionmaker(bind=engine, expire_on_commit=False)
    _ENGINE = engine
    _DB_URL = url
    return engine


def reset_engine() -> None:
    """Dispose the process engine; the next call binds a fresh one."""

    global _ENGINE, _SESSION_MAKER, _DB_URL
    engine, _ENGINE, _SESSION_MAKER, _DB_URL = _ENGINE, None, None, None
    if engine is not None:
        engine.dispose()


def get_session(*, database_url: str | None = None) -> Session:
    get_engine(database_url=database_url)
    assert _SESSION_MAKER is not None
    return _SESSION_MAKER()


@contextmanager
def session_scope(*, database_url: str | None = None) -> Iterator[Session]:
    """Yield a session; commit when the block exits cleanly, else roll back."""

    session = get_session(database_url=database_url)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "get_engine",
    "get_session",
    "reset_engine",
    "session_scope",
]
