# ruff: noqa: I001
"""Transaction store backed by the shared ``db`` library.

Functions here read and write ``bank_transactions`` rows through a caller
supplied SQLAlchemy session and convert them to the frozen domain records in
``calycompta.models``. Callers own the transaction boundary: nothing in this
module commits.

Scope:
- List a club's transactions, optionally restricted to a date range.
- Replace a transaction's ``matched_entities`` in full.
- Upsert imported transactions keyed on ``(club_id, id)`` with an import
  fingerprint used to spot duplicate imports.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models.banking import BankTransaction, Club
from .errors import StoreReadError, StoreWriteError
from .logging_setup import get_logger
from .models import (
    DateRange,
    InvalidLink,
    MatchedEntity,
    Transaction,
    matched_entities_from_raw,
    matched_entities_to_raw,
    split_matched_entities,
)

_logger = get_logger("calycompta.store")


def _to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        # Bank exports use a decimal comma ("-40,00").
        raw = raw.strip().replace(" ", "").replace(",", ".")
        if not raw:
            return None
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_datetime(raw: Any) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    s = str(raw).strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


_TRUE = {"true", "1", "yes", "y", "oui"}
_FALSE = {"false", "0", "no", "n", "non", ""}


def _to_bool(raw: Any, field: str) -> bool:
    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        return raw != 0
    s = str(raw).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"{field} is not a boolean: {raw!r}")


def _norm_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


def compute_fingerprint(tx: Mapping[str, Any]) -> str:
    """Stable SHA-256 over the fields a bank line is identified by.

    Fields used: execution date (YYYY-MM-DD), amount (2dp string), communication
    and counterparty account (trimmed, lower-cased). Two imports of the same
    statement line produce the same value even when the importer assigned them
    different ids.
    """

    when = _to_datetime(tx.get("execution_date"))
    amount = _to_decimal_2(tx.get("amount"))
    communication = _norm_str(tx.get("communication"))
    counterparty = _norm_str(tx.get("counterparty_account"))
    payload = {
        "date": when.date().isoformat() if when else None,
        "amount": f"{amount:.2f}" if amount is not None else None,
        "communication": communication.lower() if communication else None,
        "counterparty_account": "".join(counterparty.split()).lower() if counterparty else None,
    }
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def row_to_transaction(row: BankTransaction) -> Transaction:
    """Map an ORM row to a :class:`Transaction`.

    Links that do not parse (unknown entity type, missing id) are kept aside in
    ``invalid_links`` instead of failing the read.
    """

    entities, invalid = split_matched_entities(row.matched_entities)
    return Transaction(
        id=row.id,
        sequence_number=row.sequence_number,
        amount=row.amount if row.amount is not None else Decimal("0"),
        execution_date=row.execution_date,
        account=row.account,
        counterparty_name=row.counterparty_name,
        communication=row.communication,
        is_parent=bool(row.is_parent),
        matched_entities=entities,
        counterparty_account=row.counterparty_account,
        fingerprint=row.fingerprint_sha256,
        parent_id=row.parent_id,
        invalid_links=invalid,
    )


def list_transactions(
    session: Session,
    club_id: str,
    date_range: DateRange | None = None,
) -> list[Transaction]:
    """Return every transaction of ``club_id``, ordered by date then id.

    With ``date_range`` only transactions executed within the inclusive range
    are returned. A database failure surfaces as :class:`StoreReadError`;
    there is no retry here. Unreadable links never fail the read (see
    :func:`row_to_transaction`).
    """

    stmt = select(BankTransaction).where(BankTransaction.club_id == club_id)
    if date_range is not None:
        lo, hi = date_range.bounds()
        stmt = stmt.where(
            BankTransaction.execution_date >= lo,
            BankTransaction.execution_date < hi,
        )
    # Core updates bypass the identity map; always reload row state.
    stmt = stmt.order_by(BankTransaction.execution_date, BankTransaction.id).execution_options(
        populate_existing=True
    )

    try:
        rows = session.execute(stmt).scalars().all()
    except SQLAlchemyError as e:
        raise StoreReadError(
            f"failed to list transactions for club {club_id!r}: {e}",
            context={"club_id": club_id},
        ) from e

    out = [row_to_transaction(row) for row in rows]
    unreadable = sum(1 for tx in out if tx.invalid_links)
    if unreadable:
        _logger.warning(
            "Club %s: %d transaction(s) carry unreadable links; they are reported, not interpreted",
            club_id,
            unreadable,
        )
    _logger.debug("Loaded %d transactions for club %s", len(out), club_id)
    return out


def get_transaction(session: Session, club_id: str, transaction_id: str) -> Transaction | None:
    try:
        row = session.get(
            BankTransaction, (club_id, transaction_id), populate_existing=True
        )
    except SQLAlchemyError as e:
        raise StoreReadError(
            f"failed to load transaction {transaction_id!r}: {e}",
            context={"club_id": club_id, "transaction_id": transaction_id},
        ) from e
    return row_to_transaction(row) if row is not None else None


def get_club(session: Session, club_id: str) -> Club | None:
    try:
        return session.get(Club, club_id)
    except SQLAlchemyError as e:
        raise StoreReadError(
            f"failed to load club {club_id!r}: {e}", context={"club_id": club_id}
        ) from e


def existing_parent_ids(session: Session, club_id: str, ids: Iterable[str]) -> set[str]:
    """Return the subset of ``ids`` that are stored ventilated parents of ``club_id``."""

    wanted = sorted({i for i in ids if i})
    if not wanted:
        return set()
    stmt = select(BankTransaction.id).where(
        BankTransaction.club_id == club_id,
        BankTransaction.id.in_(wanted),
        BankTransaction.is_parent.is_(True),
    )
    try:
        return set(session.execute(stmt).scalars().all())
    except SQLAlchemyError as e:
        raise StoreReadError(
            f"failed to look up parent transactions for club {club_id!r}: {e}",
            context={"club_id": club_id},
        ) from e


def update_matched_entities(
    session: Session,
    club_id: str,
    transaction_id: str,
    entities: Sequence[MatchedEntity],
    *,
    preserve: Sequence[InvalidLink] = (),
) -> None:
    """Replace ``matched_entities`` of one transaction in full.

    ``preserve`` holds unreadable links read from the same row; they are written
    back at their stored positions. Also keeps ``reconciled`` in step with the
    presence of links. Raises :class:`StoreWriteError` when the row does not
    exist or the update fails. The caller commits.
    """

    raw = matched_entities_to_raw(entities, preserve)
    stmt = (
        update(BankTransaction)
        .where(
            (BankTransaction.club_id == club_id) & (BankTransaction.id == transaction_id)
        )
        .values(
            matched_entities=raw,
            reconciled=len(raw) > 0,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
    except SQLAlchemyError as e:
        raise StoreWriteError(
            f"failed to update transaction {transaction_id!r}: {e}",
            context={"club_id": club_id, "transaction_id": transaction_id},
        ) from e
    if result.rowcount != 1:
        raise StoreWriteError(
            f"transaction {transaction_id!r} not found in club {club_id!r}",
            context={"club_id": club_id, "transaction_id": transaction_id},
        )


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"upsert not supported for dialect {dialect!r}")


def upsert_transactions(
    session: Session,
    club_id: str,
    records: Iterable[Mapping[str, Any]],
) -> int:
    """Insert or update imported transactions for ``club_id``.

    Idempotency: rows are keyed on ``(club_id, id)``. Re-importing a row
    refreshes its bank-side fields but leaves ``matched_entities`` and
    ``reconciled`` untouched, so links survive a re-import. Returns the number of
    records written.
    """

    now = func.now()
    payloads: list[dict[str, Any]] = []
    for tx in records:
        tx_id = _norm_str(tx.get("id"))
        if tx_id is None:
            raise ValueError(f"imported transaction without id: {dict(tx)!r}")
        amount = _to_decimal_2(tx.get("amount"))
        if amount is None:
            raise ValueError(f"imported transaction {tx_id!r} has no valid amount")
        entities = matched_entities_from_raw(tx.get("matched_entities"))
        payloads.append(
            {
                "club_id": club_id,
                "id": tx_id,
                "sequence_number": _norm_str(tx.get("sequence_number")),
                "amount": amount,
                "execution_date": _to_datetime(tx.get("execution_date")),
                "account": _norm_str(tx.get("account")),
                "counterparty_name": _norm_str(tx.get("counterparty_name")),
                "counterparty_account": _norm_str(tx.get("counterparty_account")),
                "communication": _norm_str(tx.get("communication")),
                "is_parent": _to_bool(tx.get("is_parent"), "is_parent"),
                "parent_id": _norm_str(tx.get("parent_id")),
                "matched_entities": matched_entities_to_raw(entities),
                "reconciled": bool(entities),
                "fingerprint_sha256": compute_fingerprint(tx),
                "raw_record": json.loads(json.dumps(dict(tx), default=str)),
                "updated_at": now,
            }
        )

    if not payloads:
        return 0

    insert = _insert_for(session)
    stmt = insert(BankTransaction).values(payloads)
    stmt = stmt.on_conflict_do_update(
        index_elements=[BankTransaction.club_id, BankTransaction.id],
        set_={
            "sequence_number": stmt.excluded.sequence_number,
            "amount": stmt.excluded.amount,
            "execution_date": stmt.excluded.execution_date,
            "account": stmt.excluded.account,
            "counterparty_name": stmt.excluded.counterparty_name,
            "counterparty_account": stmt.excluded.counterparty_account,
            "communication": stmt.excluded.communication,
            "is_parent": stmt.excluded.is_parent,
            "parent_id": stmt.excluded.parent_id,
            "fingerprint_sha256": stmt.excluded.fingerprint_sha256,
            "raw_record": stmt.excluded.raw_record,
            "updated_at": now,
        },
    )
    try:
        session.execute(stmt)
    except SQLAlchemyError as e:
        raise StoreWriteError(
            f"failed to upsert {len(payloads)} transactions for club {club_id!r}: {e}",
            context={"club_id": club_id},
        ) from e
    _logger.info("Upserted %d transactions for club %s", len(payloads), club_id)
    return len(payloads)


__all__ = [
    "compute_fingerprint",
    "row_to_transaction",
    "list_transactions",
    "get_transaction",
    "get_club",
    "existing_parent_ids",
    "update_matched_entities",
    "upsert_transactions",
]
