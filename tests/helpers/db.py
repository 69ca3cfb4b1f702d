"""DB helpers for tests: bootstrap a temporary SQLite DB and seed club data."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from db import Base
from db.client import get_engine, session_scope
from db.models.banking import BankTransaction, Club
from sqlalchemy import text as sql_text

OPERATING_ACCOUNT = "BE26 0000 0000 0026"
OTHER_ACCOUNT = "BE99 0000 0000 0099"


def bootstrap_sqlite_db(db_file: Path, *, set_default_env: bool = False) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)

    Base.metadata.create_all(bind=engine)
    _assert_transactions_schema_in_sync(url)

    if set_default_env:
        os.environ.setdefault("DATABASE_URL", url)
    return url


def seed_club(
    *,
    database_url: str,
    club_id: str = "club-1",
    operating_account: str | None = OPERATING_ACCOUNT,
    opening_balance: Decimal | None = None,
) -> None:
    with session_scope(database_url=database_url) as session:
        session.add(
            Club(
                id=club_id,
                name=f"Club {club_id}",
                operating_account=operating_account,
                opening_balance=opening_balance,
            )
        )


def seed_transactions(
    *,
    database_url: str,
    club_id: str,
    rows: Iterable[Mapping[str, Any]],
) -> None:
    """Insert rows as-is (no import normalization, links stored verbatim).

    Each row needs ``id`` and ``amount``; other columns default to a counted
    transaction on :data:`OPERATING_ACCOUNT` dated 2024-01-15.
    """

    with session_scope(database_url=database_url) as session:
        for i, row in enumerate(rows):
            data = {
                "sequence_number": f"2024-{i + 1:05d}",
                "execution_date": datetime(2024, 1, 15),
                "account": OPERATING_ACCOUNT,
                "is_parent": False,
                "matched_entities": [],
                "reconciled": False,
                **row,
            }
            data["amount"] = Decimal(str(data["amount"]))
            session.add(BankTransaction(club_id=club_id, **data))


def stored_links(*, database_url: str, club_id: str, tx_id: str) -> list[dict[str, Any]]:
    """Return the raw ``matched_entities`` JSON of one row."""

    with session_scope(database_url=database_url) as session:
        row = session.get(BankTransaction, (club_id, tx_id))
        assert row is not None, f"missing transaction {tx_id}"
        return list(row.matched_entities)


def link(entity_type: str, entity_id: str, name: str | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {"entity_type": entity_type, "entity_id": entity_id}
    if name is not None:
        out["entity_name"] = name
    return out


def _assert_transactions_schema_in_sync(database_url: str) -> None:
    """Quick sanity check: ORM column set matches SQLite table column set."""

    expected = {c.name for c in BankTransaction.__table__.columns}
    with session_scope(database_url=database_url) as session:
        rows = session.execute(sql_text("PRAGMA table_info('bank_transactions')")).fetchall()
        got = {row[1] for row in rows}  # (cid, name, type, notnull, dflt_value, pk)
    missing = expected - got
    extra = got - expected
    assert not missing and not extra, (
        f"bank_transactions schema drift: missing={missing or '∅'}, extra={extra or '∅'}"
    )
