"""Period totals for the dashboard and diagnosis of reconciliation gaps.

The dashboard counts a transaction when it is not a ventilated parent and it
was executed on the club's operating account. ``aggregate_transactions``
reproduces that rule over a list of transactions and keeps the excluded ones
(with their reason) so a difference against a bank statement can be
explained. ``diagnose`` compares the result with reference totals and lists
the plausible causes, naming statement sequence numbers found on one side only
and split lines whose parent is missing. It never changes data.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from os import PathLike
from pathlib import Path

from sqlalchemy.orm import Session

from .config import normalize_account, operating_account_from_env
from .errors import NotConfiguredError
from .logging_setup import club_logger, get_logger
from .models import DateRange, ReferenceTotals, Transaction
from .store import get_club, list_transactions

_logger = get_logger("calycompta.dashboard")

_ZERO = Decimal("0")


class ExclusionReason(StrEnum):
    VENTILATED_PARENT = "ventilated parent transaction"
    WRONG_ACCOUNT = "wrong account"


@dataclass(frozen=True, slots=True)
class ExcludedTransaction:
    transaction: Transaction
    reason: ExclusionReason


@dataclass(frozen=True, slots=True)
class AggregateResult:
    """Totals over included transactions plus the symmetric excluded totals."""

    operating_account: str
    revenue: Decimal
    expenses: Decimal
    count_included: int
    revenue_excluded: Decimal
    expenses_excluded: Decimal
    count_excluded: int
    excluded: tuple[ExcludedTransaction, ...] = ()
    date_range: DateRange | None = None

    @property
    def net(self) -> Decimal:
        return self.revenue - self.expenses

    @property
    def stored_count(self) -> int:
        """Every transaction loaded for the period, counted or not."""
        return self.count_included + self.count_excluded

    def closing_balance(self, opening_balance: Decimal) -> Decimal:
        return opening_balance + self.net


def exclusion_reason(tx: Transaction, operating_account: str) -> ExclusionReason | None:
    """Return why ``tx`` is left out of the totals, or ``None`` when it counts.

    Rules apply in order and the first match wins. ``operating_account`` must
    already be normalized.
    """

    if tx.is_parent:
        return ExclusionReason.VENTILATED_PARENT
    if normalize_account(tx.account) != operating_account:
        return ExclusionReason.WRONG_ACCOUNT
    return None


def aggregate_transactions(
    transactions: Iterable[Transaction],
    operating_account: str | None,
    *,
    date_range: DateRange | None = None,
) -> AggregateResult:
    """Sum revenue and expenses of the transactions the dashboard counts.

    Positive amounts add to revenue, negative ones add their absolute value to
    expenses, zero amounts only add to the count. Exact ``Decimal``
    arithmetic over input order keeps repeated calls bit-identical.
    """

    account = normalize_account(operating_account)
    if not account:
        raise NotConfiguredError("No operating account configured for dashboard totals")

    revenue = expenses = _ZERO
    revenue_ex = expenses_ex = _ZERO
    count_in = count_ex = 0
    excluded: list[ExcludedTransaction] = []

    for tx in transactions:
        amount = tx.amount
        reason = exclusion_reason(tx, account)
        if reason is None:
            count_in += 1
            if amount > 0:
                revenue += amount
            elif amount < 0:
                expenses += -amount
            continue
        count_ex += 1
        if amount > 0:
            revenue_ex += amount
        elif amount < 0:
            expenses_ex += -amount
        excluded.append(ExcludedTransaction(transaction=tx, reason=reason))

    return AggregateResult(
        operating_account=account,
        revenue=revenue,
        expenses=expenses,
        count_included=count_in,
        revenue_excluded=revenue_ex,
        expenses_excluded=expenses_ex,
        count_excluded=count_ex,
        excluded=tuple(excluded),
        date_range=date_range,
    )


def resolve_operating_account(
    session: Session,
    club_id: str,
    operating_account: str | None = None,
) -> str:
    """Pick the operating account: explicit value, then env, then the club row."""

    account = normalize_account(operating_account) or operating_account_from_env()
    if not account:
        club = get_club(session, club_id)
        account = normalize_account(club.operating_account if club else None)
    if not account:
        raise NotConfiguredError(
            f"No operating account configured for club {club_id!r}; pass "
            "--operating-account or set CALYCOMPTA_OPERATING_ACCOUNT",
            context={"club_id": club_id},
        )
    return account


def aggregate_period(
    session: Session,
    club_id: str,
    date_range: DateRange,
    operating_account: str | None = None,
) -> AggregateResult:
    """Load a club's transactions for ``date_range`` and aggregate them. Read-only."""

    account = resolve_operating_account(session, club_id, operating_account)
    transactions = list_transactions(session, club_id, date_range)
    result = aggregate_transactions(transactions, account, date_range=date_range)
    club_logger(_logger, club_id).info(
        "%s..%s: %d counted, %d excluded, revenue=%s expenses=%s",
        date_range.start,
        date_range.end,
        result.count_included,
        result.count_excluded,
        result.revenue,
        result.expenses,
    )
    return result


# ----------------------------------------------------------------------------
# Duplicate imports
# ----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SignatureGroup:
    """Counted transactions sharing one import fingerprint.

    The first transaction is taken as the original; ``surplus_amount`` is the
    signed sum of the others, i.e. what the duplicates add to the net.
    """

    fingerprint: str
    transactions: tuple[Transaction, ...]

    @property
    def surplus_amount(self) -> Decimal:
        return sum((tx.amount for tx in self.transactions[1:]), _ZERO)


def find_signature_duplicates(
    transactions: Iterable[Transaction],
    operating_account: str,
) -> tuple[SignatureGroup, ...]:
    """Group counted transactions by fingerprint and return groups of two or more.

    Transactions without a fingerprint are ignored.
    """

    account = normalize_account(operating_account)
    groups: dict[str, list[Transaction]] = {}
    for tx in transactions:
        if tx.fingerprint is None or exclusion_reason(tx, account) is not None:
            continue
        groups.setdefault(tx.fingerprint, []).append(tx)
    return tuple(
        SignatureGroup(fingerprint=fp, transactions=tuple(txs))
        for fp, txs in groups.items()
        if len(txs) > 1
    )


# ----------------------------------------------------------------------------
# Statement lines and split children
# ----------------------------------------------------------------------------


def statement_lines(
    transactions: Iterable[Transaction], operating_account: str
) -> list[Transaction]:
    """Transactions that stand for one line of the operating account statement.

    Ventilated parents are lines too; their children (``parent_id`` set) are
    allocations of a parent's line and never appear on the statement.
    """

    account = normalize_account(operating_account)
    return [
        tx
        for tx in transactions
        if tx.parent_id is None and normalize_account(tx.account) == account
    ]


@dataclass(frozen=True, slots=True)
class SequenceComparison:
    """Statement sequence numbers present on only one side.

    ``store_only`` keeps the stored transactions (store order) so they can be
    inspected; ``reference_only`` keeps the reference order.
    """

    store_only: tuple[Transaction, ...] = ()
    reference_only: tuple[str, ...] = ()
    unnumbered: tuple[Transaction, ...] = ()

    @property
    def matches(self) -> bool:
        return not self.store_only and not self.reference_only


def compare_sequences(
    transactions: Iterable[Transaction],
    reference_sequences: Iterable[str],
    operating_account: str,
) -> SequenceComparison:
    """Compare stored statement lines with the reference's sequence numbers.

    Numbers are compared after trimming. A stored line without a sequence
    number cannot be placed and is listed in ``unnumbered``.
    """

    stored: dict[str, list[Transaction]] = {}
    unnumbered: list[Transaction] = []
    for tx in statement_lines(transactions, operating_account):
        seq = (tx.sequence_number or "").strip()
        if not seq:
            unnumbered.append(tx)
            continue
        stored.setdefault(seq, []).append(tx)

    wanted: dict[str, None] = {}
    for raw in reference_sequences:
        seq = str(raw).strip()
        if seq:
            wanted.setdefault(seq, None)

    return SequenceComparison(
        store_only=tuple(tx for seq, txs in stored.items() if seq not in wanted for tx in txs),
        reference_only=tuple(seq for seq in wanted if seq not in stored),
        unnumbered=tuple(unnumbered),
    )


def find_orphan_children(
    transactions: Iterable[Transaction],
    operating_account: str,
    parent_ids: Iterable[str] | None = None,
) -> tuple[Transaction, ...]:
    """Counted split children whose ``parent_id`` names no stored parent.

    ``parent_ids`` is the set of parents known to exist; when omitted it is
    taken from the ventilated parents in ``transactions``. An orphan is counted
    by the dashboard although the statement only knows its (missing) parent.
    """

    txs = list(transactions)
    known = (
        set(parent_ids)
        if parent_ids is not None
        else {tx.id for tx in txs if tx.is_parent}
    )
    account = normalize_account(operating_account)
    return tuple(
        tx
        for tx in txs
        if tx.parent_id is not None
        and tx.parent_id not in known
        and exclusion_reason(tx, account) is None
    )


# ----------------------------------------------------------------------------
# Diagnosis
# ----------------------------------------------------------------------------


class HypothesisCode(StrEnum):
    STORE_SURPLUS = "store_surplus"
    STORE_GAP = "store_gap"
    INCLUSION_MISMATCH = "inclusion_mismatch"


@dataclass(frozen=True, slots=True)
class Hypothesis:
    code: HypothesisCode
    message: str


@dataclass(frozen=True, slots=True)
class Discrepancy:
    """Signed differences ``computed - reference`` and ranked explanations.

    ``hypotheses`` is ordered, the leading hypothesis first; it is empty when
    every delta is zero. ``sequence_comparison`` is set when the reference
    listed its sequence numbers.
    """

    revenue_delta: Decimal
    expenses_delta: Decimal
    net_delta: Decimal
    count_delta: int
    included_count_delta: int
    hypotheses: tuple[Hypothesis, ...] = ()
    signature_duplicates: tuple[SignatureGroup, ...] = ()
    sequence_comparison: SequenceComparison | None = None
    orphan_children: tuple[Transaction, ...] = ()

    @property
    def reconciled(self) -> bool:
        return (
            self.revenue_delta == 0
            and self.expenses_delta == 0
            and self.count_delta == 0
        )

    @property
    def leading(self) -> Hypothesis | None:
        return self.hypotheses[0] if self.hypotheses else None


_MAX_LISTED = 10


def _listing(items: Sequence[str]) -> str:
    shown = ", ".join(items[:_MAX_LISTED])
    if len(items) > _MAX_LISTED:
        shown += f", ... (+{len(items) - _MAX_LISTED})"
    return shown


def diagnose(
    aggregate: AggregateResult,
    reference: ReferenceTotals,
    *,
    signature_duplicates: Sequence[SignatureGroup] = (),
    sequence_comparison: SequenceComparison | None = None,
    orphan_children: Sequence[Transaction] = (),
) -> Discrepancy:
    """Compare computed totals with reference totals and explain the gap.

    Two families of causes are reported separately because they need different
    fixes: the store and the reference disagree on which transactions exist
    (``store_surplus`` / ``store_gap``), or the dashboard's inclusion rules
    count differently from the reference (``inclusion_mismatch``). A nonzero
    count delta puts the matching existence hypothesis first.

    With ``sequence_comparison`` the existence hypotheses name the sequence
    numbers found on one side only. Counted split children whose parent is
    missing (``orphan_children``) point at the inclusion rules.
    """

    revenue_delta = aggregate.revenue - reference.revenue
    expenses_delta = aggregate.expenses - reference.expenses
    net_delta = aggregate.net - (reference.revenue - reference.expenses)
    count_delta = aggregate.stored_count - reference.transaction_count
    included_count_delta = aggregate.count_included - reference.transaction_count
    money_delta = revenue_delta != 0 or expenses_delta != 0
    seq = sequence_comparison
    store_only = seq.store_only if seq is not None else ()
    reference_only = seq.reference_only if seq is not None else ()

    existence: list[Hypothesis] = []
    if count_delta > 0 or store_only:
        msg = (
            f"{max(count_delta, len(store_only))} transaction(s) present in store beyond "
            "reference (duplicate import, or transactions the statement does not cover)"
        )
        if signature_duplicates:
            extra = sum(len(g.transactions) - 1 for g in signature_duplicates)
            msg += f"; {extra} counted transaction(s) share an import fingerprint"
        if store_only:
            msg += "; store-only sequences: " + _listing(
                [tx.sequence_number or tx.id for tx in store_only]
            )
        existence.append(Hypothesis(HypothesisCode.STORE_SURPLUS, msg))
    if count_delta < 0 or reference_only:
        msg = (
            f"{max(-count_delta, len(reference_only))} transaction(s) in reference "
            "missing from store (import gap)"
        )
        if reference_only:
            msg += "; reference-only sequences: " + _listing(list(reference_only))
        existence.append(Hypothesis(HypothesisCode.STORE_GAP, msg))
    if count_delta < 0:
        existence.reverse()

    hypotheses: list[Hypothesis] = existence

    if (money_delta or included_count_delta != 0) and (
        aggregate.count_excluded > 0 or count_delta == 0 or orphan_children
    ):
        msg = (
            f"{aggregate.count_excluded} transaction(s) excluded by dashboard rules "
            f"(revenue {aggregate.revenue_excluded}, expenses "
            f"{aggregate.expenses_excluded}); check the operating account "
            f"{aggregate.operating_account} and ventilated parents"
        )
        if orphan_children:
            orphan_total = sum((tx.amount for tx in orphan_children), _ZERO)
            msg += (
                f"; {len(orphan_children)} counted split line(s) point to a missing "
                f"parent (amount {orphan_total})"
            )
        hypotheses.append(Hypothesis(HypothesisCode.INCLUSION_MISMATCH, msg))

    return Discrepancy(
        revenue_delta=revenue_delta,
        expenses_delta=expenses_delta,
        net_delta=net_delta,
        count_delta=count_delta,
        included_count_delta=included_count_delta,
        hypotheses=tuple(hypotheses),
        signature_duplicates=tuple(signature_duplicates),
        sequence_comparison=sequence_comparison,
        orphan_children=tuple(orphan_children),
    )


def load_reference_totals(path: str | PathLike[str]) -> ReferenceTotals:
    """Read reference totals from a JSON file (``revenue``, ``expenses``, ``transactionCount``)."""

    return ReferenceTotals.model_validate_json(Path(path).read_text(encoding="utf-8"))


__all__ = [
    "ExclusionReason",
    "ExcludedTransaction",
    "AggregateResult",
    "exclusion_reason",
    "aggregate_transactions",
    "resolve_operating_account",
    "aggregate_period",
    "SignatureGroup",
    "find_signature_duplicates",
    "statement_lines",
    "SequenceComparison",
    "compare_sequences",
    "find_orphan_children",
    "HypothesisCode",
    "Hypothesis",
    "Discrepancy",
    "diagnose",
    "load_reference_totals",
]
