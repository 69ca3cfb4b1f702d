from __future__ import annotations

import dataclasses
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from calycompta.dashboard import (
    AggregateResult,
    ExclusionReason,
    HypothesisCode,
    SequenceComparison,
    aggregate_period,
    aggregate_transactions,
    compare_sequences,
    diagnose,
    exclusion_reason,
    find_orphan_children,
    find_signature_duplicates,
    load_reference_totals,
    resolve_operating_account,
)
from calycompta.errors import NotConfiguredError
from calycompta.models import DateRange, ReferenceTotals, Transaction
from db.client import session_scope

from tests.helpers.db import OPERATING_ACCOUNT, OTHER_ACCOUNT, seed_club, seed_transactions

BE26 = "BE26..."
BE99 = "BE99..."


def _tx(
    tx_id: str,
    amount: str,
    *,
    account: str | None = BE26,
    is_parent: bool = False,
    fingerprint: str | None = None,
    parent_id: str | None = None,
) -> Transaction:
    return Transaction(
        id=tx_id,
        sequence_number=tx_id,
        amount=Decimal(amount),
        execution_date=datetime(2024, 2, 1),
        account=account,
        is_parent=is_parent,
        fingerprint=fingerprint,
        parent_id=parent_id,
    )


def _aggregate(
    revenue: str, expenses: str, included: int, excluded: int = 0
) -> AggregateResult:
    return AggregateResult(
        operating_account=BE26,
        revenue=Decimal(revenue),
        expenses=Decimal(expenses),
        count_included=included,
        revenue_excluded=Decimal("0"),
        expenses_excluded=Decimal("0"),
        count_excluded=excluded,
    )


# ---- Aggregate --------------------------------------------------------------------


def test_aggregate_applies_inclusion_rule() -> None:
    txs = [
        _tx("a", "100"),
        _tx("b", "-40", is_parent=True),
        _tx("c", "-15", account=BE99),
    ]
    result = aggregate_transactions(txs, BE26)

    assert result.revenue == Decimal("100")
    assert result.expenses == Decimal("0")
    assert result.net == Decimal("100")
    assert result.count_included == 1
    assert result.count_excluded == 2
    assert result.expenses_excluded == Decimal("55")
    assert result.revenue_excluded == Decimal("0")
    assert [(e.transaction.id, e.reason) for e in result.excluded] == [
        ("b", ExclusionReason.VENTILATED_PARENT),
        ("c", ExclusionReason.WRONG_ACCOUNT),
    ]
    assert str(ExclusionReason.VENTILATED_PARENT) == "ventilated parent transaction"
    assert str(ExclusionReason.WRONG_ACCOUNT) == "wrong account"


def test_aggregate_normalizes_account_whitespace() -> None:
    txs = [_tx("a", "12.50", account="BE26 0000 0000 0026"), _tx("b", "-2.50", account=" BE26000000000026 ")]
    result = aggregate_transactions(txs, "BE26000000000026")
    assert result.count_included == 2
    assert result.revenue == Decimal("12.50")
    assert result.expenses == Decimal("2.50")


def test_zero_amount_and_missing_account() -> None:
    result = aggregate_transactions([_tx("z", "0"), _tx("n", "5", account=None)], BE26)
    assert result.count_included == 1
    assert result.revenue == result.expenses == Decimal("0")
    assert result.excluded[0].reason is ExclusionReason.WRONG_ACCOUNT


def test_parent_rule_wins_over_account_rule() -> None:
    tx = _tx("p", "-40", account=BE99, is_parent=True)
    assert exclusion_reason(tx, BE26) is ExclusionReason.VENTILATED_PARENT


def test_included_and_excluded_partition_the_input() -> None:
    txs = [
        _tx("1", "10"),
        _tx("2", "-3", is_parent=True),
        _tx("3", "7", account=BE99),
        _tx("4", "-1", account="BE26 ..."),
        _tx("5", "4", account=None, is_parent=True),
    ]
    result = aggregate_transactions(txs, BE26)
    excluded_ids = {e.transaction.id for e in result.excluded}
    for tx in txs:
        counted = tx.id not in excluded_ids
        assert counted == (not tx.is_parent and (tx.account or "").replace(" ", "") == BE26)
    assert result.count_included + result.count_excluded == len(txs)


def test_aggregate_is_repeatable() -> None:
    txs = [_tx(str(i), f"{(-1) ** i * (i * 13.37):.2f}") for i in range(50)]
    first = aggregate_transactions(txs, BE26)
    second = aggregate_transactions(txs, BE26)
    assert (first.revenue, first.expenses, first.net, first.count_included) == (
        second.revenue,
        second.expenses,
        second.net,
        second.count_included,
    )


def test_aggregate_requires_operating_account() -> None:
    with pytest.raises(NotConfiguredError):
        aggregate_transactions([_tx("a", "1")], "  ")


def test_closing_balance() -> None:
    result = aggregate_transactions([_tx("a", "100"), _tx("b", "-30")], BE26)
    assert result.closing_balance(Decimal("1000.00")) == Decimal("1070.00")


# ---- Aggregate against the store ---------------------------------------------------


def test_aggregate_period_reads_date_range(database_url: str, club_id: str) -> None:
    seed_transactions(
        database_url=database_url,
        club_id=club_id,
        rows=[
            {"id": "before", "amount": "999", "execution_date": datetime(2023, 12, 31, 23, 59)},
            {"id": "first", "amount": "100", "execution_date": datetime(2024, 1, 1)},
            {"id": "last", "amount": "-40", "execution_date": datetime(2024, 12, 31, 18, 0)},
            {
                "id": "parent",
                "amount": "-60",
                "execution_date": datetime(2024, 6, 1),
                "is_parent": True,
            },
            {
                "id": "savings",
                "amount": "500",
                "execution_date": datetime(2024, 6, 1),
                "account": OTHER_ACCOUNT,
            },
            {"id": "after", "amount": "999", "execution_date": datetime(2025, 1, 1)},
        ],
    )
    with session_scope(database_url=database_url) as session:
        result = aggregate_period(session, club_id, DateRange(date(2024, 1, 1), date(2024, 12, 31)))

    assert result.operating_account == OPERATING_ACCOUNT.replace(" ", "")
    assert result.revenue == Decimal("100")
    assert result.expenses == Decimal("40")
    assert result.count_included == 2
    assert result.count_excluded == 2
    assert result.stored_count == 4


def test_operating_account_precedence(
    database_url: str, club_id: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    with session_scope(database_url=database_url) as session:
        assert resolve_operating_account(session, club_id) == OPERATING_ACCOUNT.replace(" ", "")
        monkeypatch.setenv("CALYCOMPTA_OPERATING_ACCOUNT", "BE11 1111")
        assert resolve_operating_account(session, club_id) == "BE111111"
        assert resolve_operating_account(session, club_id, "BE22 2222") == "BE222222"


def test_missing_operating_account_raises(database_url: str) -> None:
    seed_club(database_url=database_url, club_id="bare", operating_account=None)
    with session_scope(database_url=database_url) as session:
        with pytest.raises(NotConfiguredError):
            resolve_operating_account(session, "bare")


# ---- Diagnose ---------------------------------------------------------------------


def test_diagnose_store_surplus() -> None:
    aggregate = _aggregate("57998.66", "66993.25", included=960)
    reference = ReferenceTotals(
        revenue=Decimal("57291.66"), expenses=Decimal("68559.97"), transaction_count=955
    )
    d = diagnose(aggregate, reference)

    assert d.revenue_delta == Decimal("707.00")
    assert d.expenses_delta == Decimal("-1566.72")
    assert d.net_delta == Decimal("2273.72")
    assert d.count_delta == 5
    assert d.reconciled is False
    assert d.leading is not None
    assert d.leading.code is HypothesisCode.STORE_SURPLUS
    assert "present in store beyond reference" in d.leading.message


def test_diagnose_store_gap() -> None:
    d = diagnose(
        _aggregate("90", "10", included=9),
        ReferenceTotals(revenue=Decimal("100"), expenses=Decimal("10"), transaction_count=10),
    )
    assert d.count_delta == -1
    assert d.leading is not None and d.leading.code is HypothesisCode.STORE_GAP


def test_diagnose_inclusion_mismatch_when_counts_agree() -> None:
    aggregate = _aggregate("100", "0", included=1, excluded=2)
    reference = ReferenceTotals(revenue=Decimal("100"), expenses=Decimal("55"), transaction_count=3)
    d = diagnose(aggregate, reference)
    assert d.count_delta == 0
    assert d.included_count_delta == -2
    assert [h.code for h in d.hypotheses] == [HypothesisCode.INCLUSION_MISMATCH]


def test_diagnose_reconciled() -> None:
    d = diagnose(
        _aggregate("100", "40", included=2),
        ReferenceTotals(revenue=Decimal("100"), expenses=Decimal("40"), transaction_count=2),
    )
    assert d.reconciled is True
    assert d.hypotheses == ()
    assert d.leading is None


def test_signature_duplicates_only_count_included() -> None:
    txs = [
        _tx("a", "50", fingerprint="f1"),
        _tx("b", "50", fingerprint="f1"),
        _tx("c", "50", fingerprint="f1", account=BE99),
        _tx("d", "-20", fingerprint="f2"),
        _tx("e", "-20"),
        _tx("f", "-20"),
    ]
    groups = find_signature_duplicates(txs, BE26)
    assert len(groups) == 1
    assert [t.id for t in groups[0].transactions] == ["a", "b"]
    assert groups[0].surplus_amount == Decimal("50")

    d = diagnose(
        aggregate_transactions(txs, BE26),
        ReferenceTotals(revenue=Decimal("50"), expenses=Decimal("60"), transaction_count=5),
        signature_duplicates=groups,
    )
    assert d.leading is not None and d.leading.code is HypothesisCode.STORE_SURPLUS
    assert "share an import fingerprint" in d.leading.message
    assert d.signature_duplicates == groups


# ---- Reference totals ----------------------------------------------------------------


def test_load_reference_totals_accepts_count_alias(tmp_path: Path) -> None:
    p = tmp_path / "ref.json"
    p.write_text('{"revenue": 57291.66, "expenses": 68559.97, "count": 955}', encoding="utf-8")
    ref = load_reference_totals(p)
    assert ref.revenue == Decimal("57291.66")
    assert ref.expenses == Decimal("68559.97")
    assert ref.transaction_count == 955


def test_reference_totals_reject_negative_and_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        ReferenceTotals.model_validate({"revenue": 1, "expenses": -1, "count": 1})
    with pytest.raises(ValidationError):
        ReferenceTotals.model_validate({"revenue": 1, "expenses": 1, "count": 1, "net": 0})


def test_load_reference_totals_accepts_transaction_count_key(tmp_path: Path) -> None:
    p = tmp_path / "ref.json"
    p.write_text(
        '{"revenue":57291.66,"expenses":68559.97,"transactionCount":955}', encoding="utf-8"
    )
    ref = load_reference_totals(p)
    assert ref.revenue == Decimal("57291.66")
    assert ref.expenses == Decimal("68559.97")
    assert ref.transaction_count == 955
    assert ref.sequences is None

    snake = ReferenceTotals.model_validate({"revenue": 1, "expenses": 1, "transaction_count": 2})
    assert snake.transaction_count == 2


def test_reference_totals_read_sequence_numbers() -> None:
    ref = ReferenceTotals.model_validate(
        {"revenue": 0, "expenses": 0, "transactionCount": 2, "sequences": ["S1", "S2"]}
    )
    assert ref.sequences == ["S1", "S2"]
    with pytest.raises(ValidationError):
        ReferenceTotals.model_validate({"revenue": 0, "expenses": 0})


# ---- Statement sequences and split lines -------------------------------------------


def test_compare_sequences_lists_both_sides() -> None:
    txs = [
        _tx("S1", "10"),
        _tx("S2", "-5"),
        _tx("S3", "7"),
        _tx("X", "3", account=BE99),
        _tx("P", "-50", is_parent=True),
        _tx("C1", "-30", parent_id="P"),
        dataclasses.replace(_tx("U", "1"), sequence_number=None),
    ]
    cmp = compare_sequences(txs, ["S1", " S2 ", "S4", "S4", "P"], BE26)

    assert [t.id for t in cmp.store_only] == ["S3"]
    assert cmp.reference_only == ("S4",)
    assert [t.id for t in cmp.unnumbered] == ["U"]
    assert cmp.matches is False
    assert compare_sequences(txs[:2], ["S2", "S1"], BE26).matches is True


def test_find_orphan_children() -> None:
    txs = [
        _tx("P", "-50", is_parent=True),
        _tx("C1", "-30", parent_id="P"),
        _tx("C2", "-20", parent_id="P"),
        _tx("C3", "-15", parent_id="GONE"),
        _tx("C4", "-5", parent_id="GONE", account=BE99),
    ]
    assert [t.id for t in find_orphan_children(txs, BE26)] == ["C3"]
    assert [t.id for t in find_orphan_children(txs, BE26, parent_ids=set())] == [
        "C1",
        "C2",
        "C3",
    ]
    assert find_orphan_children(txs, BE26, parent_ids={"P", "GONE"}) == ()


def test_diagnose_names_sequences_found_on_one_side() -> None:
    txs = [_tx("S1", "10"), _tx("S2", "-5"), _tx("S3", "7")]
    reference = ReferenceTotals(
        revenue=Decimal("10"),
        expenses=Decimal("5"),
        transaction_count=3,
        sequences=["S1", "S2", "S4"],
    )
    d = diagnose(
        aggregate_transactions(txs, BE26),
        reference,
        sequence_comparison=compare_sequences(txs, reference.sequences, BE26),
    )

    assert d.count_delta == 0
    assert [h.code for h in d.hypotheses] == [
        HypothesisCode.STORE_SURPLUS,
        HypothesisCode.STORE_GAP,
        HypothesisCode.INCLUSION_MISMATCH,
    ]
    assert "store-only sequences: S3" in d.hypotheses[0].message
    assert "reference-only sequences: S4" in d.hypotheses[1].message
    assert d.sequence_comparison is not None
    assert d.sequence_comparison.reference_only == ("S4",)


def test_diagnose_truncates_long_sequence_lists() -> None:
    reference_only = tuple(f"R{i:02d}" for i in range(12))
    d = diagnose(
        _aggregate("0", "0", included=0),
        ReferenceTotals(revenue=Decimal("0"), expenses=Decimal("0"), transaction_count=12),
        sequence_comparison=SequenceComparison(reference_only=reference_only),
    )
    assert d.leading is not None and d.leading.code is HypothesisCode.STORE_GAP
    assert d.leading.message.startswith("12 transaction(s) in reference missing")
    assert d.leading.message.endswith("R09, ... (+2)")


def test_orphan_children_point_at_inclusion_rules() -> None:
    orphan = _tx("C3", "-15", parent_id="GONE")
    aggregate = _aggregate("0", "65", included=3)
    reference = ReferenceTotals(revenue=Decimal("0"), expenses=Decimal("50"), transaction_count=2)

    without = diagnose(aggregate, reference)
    assert [h.code for h in without.hypotheses] == [HypothesisCode.STORE_SURPLUS]

    d = diagnose(aggregate, reference, orphan_children=[orphan])
    assert [h.code for h in d.hypotheses] == [
        HypothesisCode.STORE_SURPLUS,
        HypothesisCode.INCLUSION_MISMATCH,
    ]
    message = d.hypotheses[1].message
    assert "1 counted split line(s) point to a missing parent (amount -15)" in message
    assert d.orphan_children == (orphan,)


def test_diagnose_period_checks_parents_and_sequences(database_url: str, club_id: str) -> None:
    from calycompta.api import diagnose_period

    seed_transactions(
        database_url=database_url,
        club_id=club_id,
        rows=[
            {
                "id": "P1",
                "amount": "-100",
                "is_parent": True,
                "sequence_number": "S-P1",
                "execution_date": datetime(2024, 1, 31),
            },
            {
                "id": "C1",
                "amount": "-60",
                "parent_id": "P1",
                "sequence_number": "S-P1-1",
                "execution_date": datetime(2024, 2, 1),
            },
            {
                "id": "C2",
                "amount": "-40",
                "parent_id": "GONE",
                "sequence_number": "S-G-1",
                "execution_date": datetime(2024, 2, 2),
            },
            {
                "id": "A",
                "amount": "25",
                "sequence_number": "S-A",
                "execution_date": datetime(2024, 2, 3),
            },
        ],
    )
    reference = ReferenceTotals.model_validate(
        {"revenue": 25, "expenses": 60, "transactionCount": 3, "sequences": ["S-A", "S-B"]}
    )
    aggregate, d = diagnose_period(
        DateRange(date(2024, 2, 1), date(2024, 2, 29)),
        reference,
        club_id,
        operating_account=OPERATING_ACCOUNT,
        database_url=database_url,
    )

    assert aggregate.stored_count == 3
    assert aggregate.expenses == Decimal("100")
    assert [t.id for t in d.orphan_children] == ["C2"]
    assert d.sequence_comparison is not None
    assert d.sequence_comparison.store_only == ()
    assert d.sequence_comparison.reference_only == ("S-B",)
    assert [h.code for h in d.hypotheses] == [
        HypothesisCode.STORE_GAP,
        HypothesisCode.INCLUSION_MISMATCH,
    ]
