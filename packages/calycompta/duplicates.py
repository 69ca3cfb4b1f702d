"""Duplicate-link audit: find and repair repeated links on bank transactions.

A transaction may legitimately be linked to several entities (one payment
covering two members' dues), but never to the same ``(entity_type,
entity_id)`` twice. This module scans a club's transactions for such repeats
and rewrites the affected ``matched_entities`` lists. Stored links that cannot
be read (unknown entity type, missing id) are reported alongside and left in
place; they never stop the audit.

Public surface:
- ``find_duplicate_links`` / ``remove_duplicate_links``: per-list helpers.
- ``analyze_transactions``: pure Analyze over already-loaded transactions.
- ``analyze_duplicate_links``: Analyze against the store.
- ``fix_duplicate_links``: confirmed, sequential repair with one commit per
  transaction, followed by a re-analysis.
- ``build_export`` / ``write_export``: JSON document for offline review.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from os import PathLike
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StoreReadError, StoreWriteError
from .logging_setup import club_logger, get_logger
from .matching import merge_matched_entities
from .models import (
    AuditExport,
    AuditReport,
    DuplicateInfo,
    ExportDuplicate,
    ExportInvalidLink,
    ExportMatchedEntity,
    ExportStatistics,
    ExportTransaction,
    FixResult,
    MatchedEntity,
    Transaction,
    TransactionAnalysis,
)
from .store import get_transaction, list_transactions, update_matched_entities

_logger = get_logger("calycompta.duplicates")


# Fix runs for the same club are serialized within the process; runs against
# different clubs proceed independently. Entries live only while in use.
@dataclass(slots=True)
class _ClubLock:
    lock: threading.Lock
    users: int = 0


_LOCKS_GUARD = threading.Lock()
_CLUB_LOCKS: dict[str, _ClubLock] = {}


@contextmanager
def _club_lock(club_id: str) -> Iterator[None]:
    with _LOCKS_GUARD:
        entry = _CLUB_LOCKS.get(club_id)
        if entry is None:
            entry = _CLUB_LOCKS[club_id] = _ClubLock(threading.Lock())
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _LOCKS_GUARD:
            entry.users -= 1
            if entry.users == 0:
                del _CLUB_LOCKS[club_id]


# ----------------------------------------------------------------------------
# Per-list helpers
# ----------------------------------------------------------------------------


def find_duplicate_links(entities: Sequence[MatchedEntity]) -> tuple[DuplicateInfo, ...]:
    """Group link positions by key and return the keys seen more than once.

    Results follow the order in which each key first appears.
    """

    seen: dict[str, list[int]] = {}
    for index, entity in enumerate(entities):
        seen.setdefault(entity.key, []).append(index)
    return tuple(
        DuplicateInfo(key=key, indices=tuple(indices), count=len(indices))
        for key, indices in seen.items()
        if len(indices) > 1
    )


def remove_duplicate_links(entities: Sequence[MatchedEntity]) -> list[MatchedEntity]:
    """Keep the first occurrence of each key, preserving relative order."""

    return merge_matched_entities(entities, ())


# ----------------------------------------------------------------------------
# Analyze
# ----------------------------------------------------------------------------


def _analyze(tx: Transaction) -> TransactionAnalysis:
    duplicates = find_duplicate_links(tx.matched_entities)
    if duplicates and tx.invalid_links:
        positions = tx.stored_positions()
        duplicates = tuple(
            replace(d, indices=tuple(positions[i] for i in d.indices)) for d in duplicates
        )
    return TransactionAnalysis(transaction=tx, duplicates=duplicates)


def analyze_transactions(club_id: str, transactions: Iterable[Transaction]) -> AuditReport:
    total = 0
    with_links = 0
    multi_linked: list[TransactionAnalysis] = []
    with_invalid: list[TransactionAnalysis] = []

    for tx in transactions:
        total += 1
        n = tx.link_count
        if n > 0:
            with_links += 1
        if n > 1 or tx.invalid_links:
            analysis = _analyze(tx)
            if n > 1:
                multi_linked.append(analysis)
            if tx.invalid_links:
                with_invalid.append(analysis)

    # Duplicates first, then by link count descending; sort is stable so ties
    # keep store order.
    multi_linked.sort(key=lambda a: (not a.has_duplicates, -a.matched_count))

    return AuditReport(
        club_id=club_id,
        total_transactions=total,
        transactions_with_links=with_links,
        multi_linked=tuple(multi_linked),
        with_duplicates=tuple(a for a in multi_linked if a.has_duplicates),
        with_invalid_links=tuple(with_invalid),
    )


def analyze_duplicate_links(session: Session, club_id: str) -> AuditReport:
    """Load every transaction of ``club_id`` and analyze its links. Read-only."""

    report = analyze_transactions(club_id, list_transactions(session, club_id))
    club_logger(_logger, club_id).info(
        "Analyzed %d transactions: %d linked, %d multi-linked, %d with duplicates, "
        "%d with unreadable links",
        report.total_transactions,
        report.transactions_with_links,
        len(report.multi_linked),
        len(report.with_duplicates),
        len(report.with_invalid_links),
    )
    return report


# ----------------------------------------------------------------------------
# Fix
# ----------------------------------------------------------------------------


def fix_duplicate_links(
    session: Session,
    report: AuditReport,
    *,
    confirm: Callable[[int], bool] | None = None,
) -> FixResult:
    """Rewrite the links of every transaction in ``report.with_duplicates``.

    ``confirm`` receives the number of transactions about to be rewritten and
    must return ``True`` to proceed; it is not called when there is nothing to
    fix. Pass ``None`` when the caller has already confirmed.

    Each transaction is re-read before it is rewritten, so links written since
    ``report`` was produced are kept; one that no longer carries duplicates is
    skipped. Each rewrite is committed on its own: a failed write is rolled
    back, logged and skipped, and earlier commits stay in place. After the loop
    the club is re-analyzed and the fresh report is attached to the result.
    """

    club_id = report.club_id
    log = club_logger(_logger, club_id)
    targets = report.with_duplicates
    if not targets:
        return FixResult(requested=0, fixed=0)
    if confirm is not None and not confirm(len(targets)):
        log.info("Fix declined (%d transactions)", len(targets))
        return FixResult(requested=len(targets), fixed=0, declined=True)

    fixed = 0
    removed_total = 0
    failed: list[str] = []
    skipped: list[str] = []

    with _club_lock(club_id):
        for analysis in targets:
            tx = analysis.transaction
            label = tx.sequence_number or tx.id
            before = len(tx.matched_entities)
            after = before - sum(d.count - 1 for d in analysis.duplicates)
            try:
                current = get_transaction(session, club_id, tx.id)
                if current is None:
                    raise StoreWriteError(
                        f"transaction {tx.id!r} no longer exists",
                        context={"club_id": club_id, "transaction_id": tx.id},
                    )
                before = len(current.matched_entities)
                cleaned = remove_duplicate_links(current.matched_entities)
                after = len(cleaned)
                if after == before:
                    session.rollback()
                    skipped.append(tx.id)
                    log.info("Skipped %s: no duplicate links left", label)
                    continue
                update_matched_entities(
                    session, club_id, tx.id, cleaned, preserve=current.invalid_links
                )
                session.commit()
            except (StoreReadError, StoreWriteError, SQLAlchemyError) as e:
                session.rollback()
                failed.append(tx.id)
                log.warning(
                    "Failed to fix %s (%s): %d -> %d links: %s",
                    label,
                    tx.id,
                    before,
                    after,
                    e,
                )
                continue
            fixed += 1
            removed_total += before - after
            log.info("Fixed %s: %d -> %d links (%d removed)", label, before, after, before - after)

        report_after = analyze_duplicate_links(session, club_id)

    return FixResult(
        requested=len(targets),
        fixed=fixed,
        failed=tuple(failed),
        report_after=report_after,
        removed_links=removed_total,
        skipped=tuple(skipped),
    )


# ----------------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------------


def _export_transaction(analysis: TransactionAnalysis) -> ExportTransaction:
    tx = analysis.transaction
    return ExportTransaction(
        id=tx.id,
        sequence_number=tx.sequence_number,
        amount=tx.amount,
        execution_date=tx.execution_date,
        counterparty_name=tx.counterparty_name,
        communication=tx.communication,
        matched_count=analysis.matched_count,
        matched_entities=[
            ExportMatchedEntity(
                entity_type=e.entity_type.value,
                entity_id=e.entity_id,
                entity_name=e.entity_name,
            )
            for e in tx.matched_entities
        ],
        duplicates=[
            ExportDuplicate(key=d.key, indices=list(d.indices), count=d.count)
            for d in analysis.duplicates
        ],
        has_duplicates=analysis.has_duplicates,
        invalid_links=[
            ExportInvalidLink(
                index=link.index,
                entity_type=link.entity_type,
                entity_id=link.entity_id,
                reason=link.reason,
            )
            for link in tx.invalid_links
        ]
        or None,
    )


def build_export(
    report: AuditReport,
    *,
    mode: str | None = None,
    fixed: int | None = None,
    generated_at: datetime | None = None,
) -> AuditExport:
    """Build the export document: statistics plus every multi-linked transaction.

    Transactions with unreadable links are appended after the multi-linked ones
    when they are not already listed.
    """

    listed = [a for a in report.multi_linked]
    seen = {a.transaction.id for a in listed}
    listed.extend(a for a in report.with_invalid_links if a.transaction.id not in seen)

    return AuditExport(
        generated_at=generated_at or datetime.now(UTC),
        mode=mode,
        statistics=ExportStatistics(
            total_transactions=report.total_transactions,
            transactions_with_links=report.transactions_with_links,
            multi_linked=len(report.multi_linked),
            with_duplicates=len(report.with_duplicates),
            with_invalid_links=len(report.with_invalid_links) or None,
            fixed=fixed,
        ),
        transactions=[_export_transaction(a) for a in listed],
    )


def export_to_json(export: AuditExport) -> str:
    return export.model_dump_json(by_alias=True, exclude_none=True, indent=2)


def write_export(path: str | PathLike[str], export: AuditExport) -> Path:
    """Write ``export`` as JSON (UTF-8); writes ``.tmp`` first, then renames."""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(export_to_json(export) + "\n", encoding="utf-8")
    tmp.replace(p)
    return p


__all__ = [
    "find_duplicate_links",
    "remove_duplicate_links",
    "analyze_transactions",
    "analyze_duplicate_links",
    "fix_duplicate_links",
    "build_export",
    "export_to_json",
    "write_export",
]
