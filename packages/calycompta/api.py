# ruff: noqa: I001
"""Public API for the ``calycompta`` package.

Each function resolves and validates the club id first (so a missing tenant
fails before any database access), opens a session on the shared engine and
delegates to the module that owns the logic. Pass ``database_url`` to
override ``DATABASE_URL``.
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from os import PathLike
from pathlib import Path

from db.client import session_scope

from .config import resolve_club_id
from .dashboard import (
    AggregateResult,
    Discrepancy,
    aggregate_period,
    aggregate_transactions,
    compare_sequences,
    diagnose,
    find_orphan_children,
    find_signature_duplicates,
    resolve_operating_account,
)
from .duplicates import (
    analyze_duplicate_links,
    build_export,
    fix_duplicate_links,
    write_export,
)
from .models import AuditReport, DateRange, FixResult, ReferenceTotals
from .store import existing_parent_ids, get_club, list_transactions


def analyze_links(club_id: str | None = None, *, database_url: str | None = None) -> AuditReport:
    """Analyze duplicate links for a club (read-only)."""

    cid = resolve_club_id(club_id)
    with session_scope(database_url=database_url) as session:
        return analyze_duplicate_links(session, cid)


def fix_links(
    club_id: str | None = None,
    *,
    confirm: Callable[[int], bool],
    database_url: str | None = None,
) -> tuple[AuditReport, FixResult]:
    """Analyze, then repair the flagged transactions after ``confirm`` agrees.

    ``confirm`` runs between two sessions, so no connection or transaction is
    held while it waits for an answer. Returns the report the fix was based on
    together with the fix result.
    """

    cid = resolve_club_id(club_id)
    with session_scope(database_url=database_url) as session:
        report = analyze_duplicate_links(session, cid)
    if not report.with_duplicates:
        return report, FixResult(requested=0, fixed=0)
    if not confirm(len(report.with_duplicates)):
        return report, FixResult(requested=len(report.with_duplicates), fixed=0, declined=True)
    with session_scope(database_url=database_url) as session:
        result = fix_duplicate_links(session, report)
    return report, result


def export_links(
    path: str | PathLike[str],
    club_id: str | None = None,
    *,
    database_url: str | None = None,
) -> tuple[AuditReport, Path]:
    """Analyze and write the multi-linked transactions export to ``path``."""

    cid = resolve_club_id(club_id)
    with session_scope(database_url=database_url) as session:
        report = analyze_duplicate_links(session, cid)
    out = write_export(path, build_export(report, mode="dry-run"))
    return report, out


def dashboard_totals(
    date_range: DateRange,
    club_id: str | None = None,
    *,
    operating_account: str | None = None,
    database_url: str | None = None,
) -> AggregateResult:
    cid = resolve_club_id(club_id)
    with session_scope(database_url=database_url) as session:
        return aggregate_period(session, cid, date_range, operating_account)


def club_opening_balance(
    club_id: str | None = None, *, database_url: str | None = None
) -> Decimal | None:
    """Return the opening balance recorded on the club row, if any."""

    cid = resolve_club_id(club_id)
    with session_scope(database_url=database_url) as session:
        club = get_club(session, cid)
        return club.opening_balance if club is not None else None


def diagnose_period(
    date_range: DateRange,
    reference: ReferenceTotals,
    club_id: str | None = None,
    *,
    operating_account: str | None = None,
    database_url: str | None = None,
) -> tuple[AggregateResult, Discrepancy]:
    """Aggregate a period and diagnose it against ``reference`` totals.

    Transactions are loaded once and feed the totals, the search for counted
    transactions that share an import fingerprint and the search for split
    lines whose parent is missing. Parents are looked up in the whole store,
    not only the period. When ``reference.sequences`` is given the stored
    statement lines are compared with it.
    """

    cid = resolve_club_id(club_id)
    with session_scope(database_url=database_url) as session:
        account = resolve_operating_account(session, cid, operating_account)
        transactions = list_transactions(session, cid, date_range)
        parent_ids = existing_parent_ids(
            session, cid, (tx.parent_id for tx in transactions if tx.parent_id)
        )
    aggregate = aggregate_transactions(transactions, account, date_range=date_range)
    groups = find_signature_duplicates(transactions, account)
    orphans = find_orphan_children(transactions, account, parent_ids)
    sequences = (
        compare_sequences(transactions, reference.sequences, account)
        if reference.sequences is not None
        else None
    )
    return aggregate, diagnose(
        aggregate,
        reference,
        signature_duplicates=groups,
        sequence_comparison=sequences,
        orphan_children=orphans,
    )


__all__ = [
    "analyze_links",
    "fix_links",
    "export_links",
    "dashboard_totals",
    "club_opening_balance",
    "diagnose_period",
]
