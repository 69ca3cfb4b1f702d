"""Data models for ``calycompta``.

Domain records are frozen dataclasses: they are produced by the store layer,
flow through the matcher/auditor/aggregator and are never mutated in place.
The on-disk JSON shapes (audit export, reference totals) are pydantic models
so they are validated when read and serialized deterministically when written.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Matched entities
# ---------------------------------------------------------------------------


class EntityType(StrEnum):
    """Closed set of domain objects a bank transaction can be linked to."""

    PARTICIPANT = "participant"
    EXPENSE = "expense"
    EVENT = "event"
    MEMBER = "member"
    DEMAND = "demand"
    INSCRIPTION = "inscription"


@dataclass(frozen=True, slots=True)
class MatchedEntity:
    """One link from a transaction to a domain entity.

    Identity is ``(entity_type, entity_id)``; ``entity_name`` is a denormalized
    display label and never participates in comparisons of links.
    """

    entity_type: EntityType
    entity_id: str
    entity_name: str | None = None

    @property
    def key(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> MatchedEntity:
        """Build from the stored ``{"entity_type", "entity_id", "entity_name"}`` shape.

        Raises ``ValueError`` for an entity type outside :class:`EntityType` or a
        missing id.
        """

        entity_id = raw.get("entity_id")
        if entity_id is None or str(entity_id).strip() == "":
            raise ValueError(f"matched entity without entity_id: {dict(raw)!r}")
        name = raw.get("entity_name")
        return cls(
            entity_type=EntityType(raw.get("entity_type")),
            entity_id=str(entity_id),
            entity_name=str(name) if name not in (None, "") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
        }
        if self.entity_name is not None:
            out["entity_name"] = self.entity_name
        return out


@dataclass(frozen=True, slots=True)
class InvalidLink:
    """A stored link that does not parse as a :class:`MatchedEntity`.

    Older screens wrote types outside :class:`EntityType` (``expense_claim``).
    Such entries are reported, never interpreted, and written back unchanged
    at their stored position whenever the link list is rewritten.
    """

    index: int
    raw: Any
    reason: str

    @property
    def entity_type(self) -> str | None:
        value = self.raw.get("entity_type") if isinstance(self.raw, Mapping) else None
        return str(value) if value is not None else None

    @property
    def entity_id(self) -> str | None:
        value = self.raw.get("entity_id") if isinstance(self.raw, Mapping) else None
        return str(value) if value is not None else None

    def to_dict(self) -> Any:
        return dict(self.raw) if isinstance(self.raw, Mapping) else self.raw


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Transaction:
    """A bank transaction as read from the store.

    ``amount`` is signed: positive is a credit (revenue), negative a debit
    (expense). ``is_parent`` marks a split ("ventilated") transaction whose
    children carry the actual allocation.
    """

    id: str
    sequence_number: str | None
    amount: Decimal
    execution_date: datetime | None
    account: str | None
    counterparty_name: str | None = None
    communication: str | None = None
    is_parent: bool = False
    matched_entities: tuple[MatchedEntity, ...] = ()
    counterparty_account: str | None = None
    fingerprint: str | None = None
    parent_id: str | None = None
    invalid_links: tuple[InvalidLink, ...] = ()

    @property
    def link_count(self) -> int:
        """Number of links as stored, readable or not."""
        return len(self.matched_entities) + len(self.invalid_links)

    def stored_positions(self) -> list[int]:
        """Stored index of each entry of ``matched_entities``, in order."""

        skip = {link.index for link in self.invalid_links}
        return [i for i in range(self.link_count) if i not in skip]


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive calendar range of a fiscal period."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"DateRange end {self.end} precedes start {self.start}")

    def bounds(self) -> tuple[datetime, datetime]:
        """Return ``(start of first day, start of the day after the last day)``."""

        return (
            datetime.combine(self.start, time.min),
            datetime.combine(self.end + timedelta(days=1), time.min),
        )


# ---------------------------------------------------------------------------
# Duplicate-link audit
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DuplicateInfo:
    """A key that appears more than once in one transaction's links."""

    key: str
    indices: tuple[int, ...]
    count: int


@dataclass(frozen=True, slots=True)
class TransactionAnalysis:
    """Audit view of one transaction.

    ``duplicates`` indices are positions in the stored link list, so they stay
    meaningful when unreadable links sit between readable ones.
    """

    transaction: Transaction
    duplicates: tuple[DuplicateInfo, ...] = ()

    @property
    def matched_count(self) -> int:
        return self.transaction.link_count

    @property
    def has_duplicates(self) -> bool:
        return bool(self.duplicates)

    @property
    def invalid_links(self) -> tuple[InvalidLink, ...]:
        return self.transaction.invalid_links


@dataclass(frozen=True, slots=True)
class AuditReport:
    """Result of one Analyze pass over a club's transactions.

    ``multi_linked`` holds every transaction with more than one link, sorted
    with duplicate-bearing transactions first and then by descending link
    count. ``with_duplicates`` is the subset Fix operates on.
    ``with_invalid_links`` lists transactions carrying links that could not be
    read; they are analyzed like the others and reported for manual review.
    """

    club_id: str
    total_transactions: int
    transactions_with_links: int
    multi_linked: tuple[TransactionAnalysis, ...] = ()
    with_duplicates: tuple[TransactionAnalysis, ...] = ()
    with_invalid_links: tuple[TransactionAnalysis, ...] = ()


@dataclass(frozen=True, slots=True)
class FixResult:
    """Outcome of a Fix run.

    ``fixed`` counts committed rewrites; ids in ``failed`` stay flagged and show
    up again on the next Analyze. ``skipped`` lists transactions that no longer
    carried duplicates when re-read. ``report_after`` is the confirming
    re-analysis (``None`` when nothing was attempted).
    """

    requested: int
    fixed: int
    failed: tuple[str, ...] = ()
    declined: bool = False
    report_after: AuditReport | None = None
    removed_links: int = 0
    skipped: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# JSON documents
# ---------------------------------------------------------------------------

# Amounts are exact Decimals in memory but plain JSON numbers on disk.
JsonAmount = Annotated[
    Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")
]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExportMatchedEntity(BaseModel):
    """Stored link shape, kept in its database spelling."""

    entity_type: str
    entity_id: str
    entity_name: str | None = None


class ExportInvalidLink(_CamelModel):
    index: int
    entity_type: str | None = None
    entity_id: str | None = None
    reason: str


class ExportDuplicate(_CamelModel):
    key: str
    indices: list[int]
    count: int


class ExportTransaction(_CamelModel):
    id: str
    sequence_number: str | None = None
    amount: JsonAmount
    execution_date: datetime | None = None
    counterparty_name: str | None = None
    communication: str | None = None
    matched_count: int
    matched_entities: list[ExportMatchedEntity]
    duplicates: list[ExportDuplicate]
    has_duplicates: bool
    invalid_links: list[ExportInvalidLink] | None = None


class ExportStatistics(_CamelModel):
    total_transactions: int
    transactions_with_links: int
    multi_linked: int
    with_duplicates: int
    with_invalid_links: int | None = None
    fixed: int | None = None


class AuditExport(_CamelModel):
    """Top-level schema of the multi-linked transactions export file."""

    generated_at: datetime
    mode: str | None = None
    statistics: ExportStatistics
    transactions: list[ExportTransaction]


class ReferenceTotals(BaseModel):
    """Externally trusted period totals, e.g. from an imported bank statement.

    The count is read from ``transactionCount``, ``transaction_count`` or the
    shorter ``count`` key. ``sequences`` optionally lists the statement's line
    sequence numbers so missing and surplus lines can be named.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    revenue: Decimal = Field(ge=0)
    expenses: Decimal = Field(ge=0)
    transaction_count: int = Field(
        ge=0,
        validation_alias=AliasChoices("transactionCount", "transaction_count", "count"),
    )
    sequences: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("sequences", "sequenceNumbers", "sequence_numbers"),
    )


def matched_entities_from_raw(raw: Sequence[Mapping[str, Any]] | None) -> tuple[MatchedEntity, ...]:
    """Convert a stored JSON list into typed links, preserving order.

    Strict: raises ``ValueError`` on the first unreadable entry. Used on the
    import path; reads of stored rows go through :func:`split_matched_entities`.
    """

    return tuple(MatchedEntity.from_dict(item) for item in (raw or ()))


def split_matched_entities(
    raw: Any,
) -> tuple[tuple[MatchedEntity, ...], tuple[InvalidLink, ...]]:
    """Split a stored link list into readable links and :class:`InvalidLink` entries."""

    if raw is None:
        return (), ()
    if not isinstance(raw, (list, tuple)):
        return (), (InvalidLink(index=0, raw=raw, reason="matched_entities is not a list"),)

    valid: list[MatchedEntity] = []
    invalid: list[InvalidLink] = []
    for index, item in enumerate(raw):
        if not isinstance(item, Mapping):
            invalid.append(InvalidLink(index=index, raw=item, reason="not an object"))
            continue
        try:
            valid.append(MatchedEntity.from_dict(item))
        except ValueError as e:
            invalid.append(InvalidLink(index=index, raw=dict(item), reason=str(e)))
    return tuple(valid), tuple(invalid)


def matched_entities_to_raw(
    entities: Sequence[MatchedEntity],
    preserve: Sequence[InvalidLink] = (),
) -> list[Any]:
    """Serialize links for storage, putting ``preserve`` back at their indices.

    An index past the end of the list appends.
    """

    out: list[Any] = [e.to_dict() for e in entities]
    for link in sorted(preserve, key=lambda x: x.index):
        out.insert(min(link.index, len(out)), link.to_dict())
    return out


__all__ = [
    "EntityType",
    "MatchedEntity",
    "InvalidLink",
    "Transaction",
    "DateRange",
    "DuplicateInfo",
    "TransactionAnalysis",
    "AuditReport",
    "FixResult",
    "JsonAmount",
    "ExportMatchedEntity",
    "ExportInvalidLink",
    "ExportDuplicate",
    "ExportTransaction",
    "ExportStatistics",
    "AuditExport",
    "ReferenceTotals",
    "matched_entities_from_raw",
    "split_matched_entities",
    "matched_entities_to_raw",
]
