"""Public interface for the ``calycompta`` package.

Bank transaction reconciliation for a club: the duplicate-link audit, the
dashboard totals and their diagnosis against a bank statement, and the
contract entity matchers write links through. Only symbol re-exports here.
"""

from .api import (
    analyze_links,
    club_opening_balance,
    dashboard_totals,
    diagnose_period,
    export_links,
    fix_links,
)
from .dashboard import (
    AggregateResult,
    Discrepancy,
    ExclusionReason,
    Hypothesis,
    HypothesisCode,
    SequenceComparison,
    SignatureGroup,
    aggregate_transactions,
    compare_sequences,
    diagnose,
    find_orphan_children,
)
from .duplicates import analyze_transactions, find_duplicate_links, remove_duplicate_links
from .errors import (
    CalyComptaError,
    DuplicateLinkError,
    NotConfiguredError,
    StoreReadError,
    StoreWriteError,
)
from .matching import EntityMatcher, apply_matcher, merge_matched_entities
from .models import (
    AuditReport,
    DateRange,
    EntityType,
    FixResult,
    InvalidLink,
    MatchedEntity,
    ReferenceTotals,
    Transaction,
)

__all__ = [
    # API
    "analyze_links",
    "fix_links",
    "export_links",
    "dashboard_totals",
    "club_opening_balance",
    "diagnose_period",
    # Pure operations
    "analyze_transactions",
    "find_duplicate_links",
    "remove_duplicate_links",
    "aggregate_transactions",
    "diagnose",
    "compare_sequences",
    "find_orphan_children",
    "merge_matched_entities",
    "apply_matcher",
    # Types
    "AggregateResult",
    "AuditReport",
    "DateRange",
    "Discrepancy",
    "EntityMatcher",
    "EntityType",
    "ExclusionReason",
    "FixResult",
    "Hypothesis",
    "HypothesisCode",
    "InvalidLink",
    "MatchedEntity",
    "ReferenceTotals",
    "SequenceComparison",
    "SignatureGroup",
    "Transaction",
    # Errors
    "CalyComptaError",
    "NotConfiguredError",
    "StoreReadError",
    "StoreWriteError",
    "DuplicateLinkError",
]
