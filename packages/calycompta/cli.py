# ruff: noqa: I001
"""CLI for the ``calycompta`` package.

Command handlers (``cmd_*``) return a process exit code and print errors to
stderr; the Typer commands below wrap them. A local ``.env`` is loaded with
``python-dotenv`` before any handler runs, so ``DATABASE_URL`` and the
``CALYCOMPTA_*`` variables can live there. Business logic lives in
``calycompta.api`` and the modules it delegates to.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

import typer
from dotenv import load_dotenv
from pydantic import ValidationError

from .errors import CalyComptaError
from .logging_setup import configure_logging
from .models import AuditReport, DateRange, ReferenceTotals, TransactionAnalysis

_RULE = "=" * 100


# ---- Rendering helpers --------------------------------------------------------


def _print_statistics(report: AuditReport) -> None:
    print("Statistics:")
    print(f"  Total transactions:            {report.total_transactions}")
    print(f"  Transactions with links:       {report.transactions_with_links}")
    print(f"  Transactions with >1 link:     {len(report.multi_linked)}")
    print(f"  Transactions with duplicates:  {len(report.with_duplicates)}")
    if report.with_invalid_links:
        print(f"  Transactions with bad links:   {len(report.with_invalid_links)}")


def _print_transaction(n: int, analysis: TransactionAnalysis) -> None:
    tx = analysis.transaction
    flag = "  [DUPLICATES]" if analysis.has_duplicates else ""
    print(f"[{n}] {tx.id}{flag}")
    print(f"    Sequence:     {tx.sequence_number or '-'}")
    print(f"    Amount:       {tx.amount}")
    print(f"    Date:         {tx.execution_date or '-'}")
    print(f"    Counterparty: {tx.counterparty_name or '-'}")
    print(f"    Links:        {analysis.matched_count}")
    for dup in analysis.duplicates:
        indices = ", ".join(str(i) for i in dup.indices)
        print(f"      ! {dup.key} appears {dup.count}x (indices: {indices})")
    for i, e in zip(tx.stored_positions(), tx.matched_entities):
        print(
            f"      [{i}] {e.entity_type.value:<12} {e.entity_id} "
            f"{e.entity_name or ''}".rstrip()
        )
    for bad in analysis.invalid_links:
        print(
            f"      [{bad.index}] {bad.entity_type or '?':<12} {bad.entity_id or '?'} "
            f"(unreadable: {bad.reason})"
        )


def _print_details(report: AuditReport) -> None:
    if not report.multi_linked and not report.with_invalid_links:
        print("No multi-linked transactions found.")
        return
    print(_RULE)
    listed = {a.transaction.id for a in report.multi_linked}
    extra = [a for a in report.with_invalid_links if a.transaction.id not in listed]
    for n, analysis in enumerate([*report.multi_linked, *extra], start=1):
        _print_transaction(n, analysis)
    print(_RULE)


def _parse_amount(raw: str | None, name: str) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(raw.strip().replace(",", "."))
    except InvalidOperation as e:
        raise ValueError(f"{name} is not a number: {raw!r}") from e


# ---- Command handlers ----------------------------------------------------------


def cmd_analyze_links(
    *, club_id: str | None, database_url: str | None, details: bool = True
) -> int:
    from .api import analyze_links

    try:
        report = analyze_links(club_id, database_url=database_url)
    except CalyComptaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_statistics(report)
    if details:
        _print_details(report)
    return 0


def cmd_fix_links(
    *,
    club_id: str | None,
    database_url: str | None,
    confirm: Callable[[int], bool],
) -> int:
    """Analyze and fix duplicate links; exit code 1 when any write failed."""

    from .api import fix_links

    try:
        report, result = fix_links(club_id, confirm=confirm, database_url=database_url)
    except CalyComptaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not report.with_duplicates:
        print("No transactions with duplicate links; nothing to fix.")
        return 0
    if result.declined:
        print("Aborted; no changes written.")
        return 0

    print(
        f"Fixed {result.fixed}/{result.requested} transactions "
        f"({result.removed_links} duplicate links removed)."
    )
    if result.skipped:
        print(f"Skipped {len(result.skipped)} transaction(s) no longer carrying duplicates.")
    for tx_id in result.failed:
        print(f"Error: failed to fix transaction {tx_id}", file=sys.stderr)
    if result.report_after is not None:
        remaining = len(result.report_after.with_duplicates)
        print(f"Remaining transactions with duplicates: {remaining}")
    return 1 if result.failed else 0


def cmd_export_links(
    output: Path, *, club_id: str | None, database_url: str | None
) -> int:
    from .api import export_links

    try:
        report, path = export_links(output, club_id, database_url=database_url)
    except CalyComptaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: failed to write '{output}': {e}", file=sys.stderr)
        return 1
    _print_statistics(report)
    print(f"Export written to {path}")
    return 0


def cmd_dashboard(
    date_range: DateRange,
    *,
    club_id: str | None,
    operating_account: str | None,
    opening_balance: str | None,
    database_url: str | None,
    show_excluded: int = 20,
) -> int:
    from .api import club_opening_balance, dashboard_totals

    try:
        opening = _parse_amount(opening_balance, "--opening-balance")
        result = dashboard_totals(
            date_range,
            club_id,
            operating_account=operating_account,
            database_url=database_url,
        )
        if opening is None:
            opening = club_opening_balance(club_id, database_url=database_url)
    except (CalyComptaError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Period {date_range.start} .. {date_range.end}, account {result.operating_account}")
    print(f"  Counted transactions:  {result.count_included}")
    print(f"  Revenue:               {result.revenue:.2f}")
    print(f"  Expenses:              {result.expenses:.2f}")
    print(f"  Net:                   {result.net:.2f}")
    if opening is not None:
        print(f"  Opening balance:       {opening:.2f}")
        print(f"  Closing balance:       {result.closing_balance(opening):.2f}")
    print(f"  Excluded transactions: {result.count_excluded}")
    print(f"  Excluded revenue:      {result.revenue_excluded:.2f}")
    print(f"  Excluded expenses:     {result.expenses_excluded:.2f}")
    for item in result.excluded[:show_excluded]:
        tx = item.transaction
        when = tx.execution_date.date() if tx.execution_date else "-"
        print(
            f"    - {when} | {tx.amount:.2f} | {tx.counterparty_name or '-'} | "
            f"{tx.account or '-'} | {item.reason.value}"
        )
    return 0


def cmd_diagnose(
    date_range: DateRange,
    *,
    club_id: str | None,
    operating_account: str | None,
    reference_path: Path | None,
    ref_revenue: str | None,
    ref_expenses: str | None,
    ref_count: int | None,
    database_url: str | None,
) -> int:
    from .api import diagnose_period
    from .dashboard import load_reference_totals

    try:
        if reference_path is not None:
            reference = load_reference_totals(reference_path)
        else:
            if ref_revenue is None or ref_expenses is None or ref_count is None:
                print(
                    "Error: pass --reference or all of --ref-revenue/--ref-expenses/--ref-count",
                    file=sys.stderr,
                )
                return 1
            reference = ReferenceTotals(
                revenue=_parse_amount(ref_revenue, "--ref-revenue"),
                expenses=_parse_amount(ref_expenses, "--ref-expenses"),
                transaction_count=ref_count,
            )
    except FileNotFoundError:
        print(f"Error: File not found: {reference_path}", file=sys.stderr)
        return 1
    except (ValidationError, ValueError) as e:
        print(f"Error: invalid reference totals: {e}", file=sys.stderr)
        return 1

    try:
        aggregate, discrepancy = diagnose_period(
            date_range,
            reference,
            club_id,
            operating_account=operating_account,
            database_url=database_url,
        )
    except CalyComptaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{'':<14}{'computed':>14}{'reference':>14}{'delta':>14}")
    print(
        f"{'Revenue':<14}{aggregate.revenue:>14.2f}{reference.revenue:>14.2f}"
        f"{discrepancy.revenue_delta:>+14.2f}"
    )
    print(
        f"{'Expenses':<14}{aggregate.expenses:>14.2f}{reference.expenses:>14.2f}"
        f"{discrepancy.expenses_delta:>+14.2f}"
    )
    ref_net = reference.revenue - reference.expenses
    print(f"{'Net':<14}{aggregate.net:>14.2f}{ref_net:>14.2f}{discrepancy.net_delta:>+14.2f}")
    print(
        f"{'Transactions':<14}{aggregate.stored_count:>14}{reference.transaction_count:>14}"
        f"{discrepancy.count_delta:>+14}"
    )

    if discrepancy.reconciled:
        print("Totals match the reference.")
        return 0
    print("Hypotheses:")
    for i, h in enumerate(discrepancy.hypotheses, start=1):
        print(f"  {i}. [{h.code.value}] {h.message}")
    for group in discrepancy.signature_duplicates:
        ids = ", ".join(tx.sequence_number or tx.id for tx in group.transactions)
        print(f"  duplicate import? {ids} (surplus {group.surplus_amount:.2f})")
    seq = discrepancy.sequence_comparison
    if seq is not None:
        for tx in seq.store_only:
            print(f"  store only: {tx.sequence_number} ({tx.id}, {tx.amount:.2f})")
        for number in seq.reference_only:
            print(f"  reference only: {number}")
    for tx in discrepancy.orphan_children:
        print(f"  missing parent {tx.parent_id}: {tx.sequence_number or tx.id} ({tx.amount:.2f})")
    return 0


# ---- Typer-based console interface ---------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Bank transaction link audit and dashboard reconciliation for a club. "
        "Loads DATABASE_URL and CALYCOMPTA_* settings from a local .env."
    ),
)

_DATE_FORMATS = ["%Y-%m-%d"]


def _date_range(start: datetime, end: datetime) -> DateRange:
    try:
        return DateRange(start.date(), end.date())
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


@app.command("analyze-links")
def analyze_links_cmd(
    *,
    club_id: str | None = typer.Option(None, help="Club id (falls back to CALYCOMPTA_CLUB_ID)."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    details: bool = typer.Option(True, help="Print every multi-linked transaction."),
) -> None:
    """Report transactions with several links and those with duplicate links."""

    raise typer.Exit(
        cmd_analyze_links(club_id=club_id, database_url=database_url, details=details)
    )


@app.command("fix-links")
def fix_links_cmd(
    *,
    club_id: str | None = typer.Option(None, help="Club id (falls back to CALYCOMPTA_CLUB_ID)."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Remove duplicate links (keeps the first occurrence of each link)."""

    def _confirm(n: int) -> bool:
        if yes:
            return True
        return typer.confirm(f"About to rewrite links of {n} transaction(s). Continue?")

    raise typer.Exit(
        cmd_fix_links(club_id=club_id, database_url=database_url, confirm=_confirm)
    )


@app.command("export-links")
def export_links_cmd(
    *,
    output: Path = typer.Option(
        Path("multi-linked-transactions.json"), "--output", "-o", help="Destination JSON file."
    ),
    club_id: str | None = typer.Option(None, help="Club id (falls back to CALYCOMPTA_CLUB_ID)."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Write statistics and every multi-linked transaction to a JSON file."""

    raise typer.Exit(cmd_export_links(output, club_id=club_id, database_url=database_url))


@app.command("dashboard")
def dashboard_cmd(
    *,
    start: datetime = typer.Option(..., formats=_DATE_FORMATS, help="First day (YYYY-MM-DD)."),
    end: datetime = typer.Option(..., formats=_DATE_FORMATS, help="Last day (YYYY-MM-DD)."),
    club_id: str | None = typer.Option(None, help="Club id (falls back to CALYCOMPTA_CLUB_ID)."),
    operating_account: str | None = typer.Option(
        None, help="Operating account (falls back to env, then the club settings)."
    ),
    opening_balance: str | None = typer.Option(
        None, help="Opening balance (falls back to the club settings)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Recompute period totals the way the dashboard counts them."""

    raise typer.Exit(
        cmd_dashboard(
            _date_range(start, end),
            club_id=club_id,
            operating_account=operating_account,
            opening_balance=opening_balance,
            database_url=database_url,
        )
    )


@app.command("diagnose")
def diagnose_cmd(
    *,
    start: datetime = typer.Option(..., formats=_DATE_FORMATS, help="First day (YYYY-MM-DD)."),
    end: datetime = typer.Option(..., formats=_DATE_FORMATS, help="Last day (YYYY-MM-DD)."),
    reference: Path | None = typer.Option(
        None,
        help=(
            "JSON file with reference totals: revenue, expenses, transactionCount "
            "and optionally sequences."
        ),
    ),
    ref_revenue: str | None = typer.Option(None, help="Reference revenue."),
    ref_expenses: str | None = typer.Option(None, help="Reference expenses (positive)."),
    ref_count: int | None = typer.Option(None, help="Reference transaction count."),
    club_id: str | None = typer.Option(None, help="Club id (falls back to CALYCOMPTA_CLUB_ID)."),
    operating_account: str | None = typer.Option(
        None, help="Operating account (falls back to env, then the club settings)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Compare period totals with a bank statement and explain the gap."""

    raise typer.Exit(
        cmd_diagnose(
            _date_range(start, end),
            club_id=club_id,
            operating_account=operating_account,
            reference_path=reference,
            ref_revenue=ref_revenue,
            ref_expenses=ref_expenses,
            ref_count=ref_count,
            database_url=database_url,
        )
    )


@app.callback()
def _root(
    *,
    log_level: str | None = typer.Option(
        None, help="Log level (falls back to CALYCOMPTA_LOG_LEVEL, then INFO)."
    ),
) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    try:
        configure_logging(log_level)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--log-level") from e


def main() -> None:  # pragma: no cover - console script entry
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
