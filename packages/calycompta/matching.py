"""Entity matcher contract and the write path for transaction links.

Matching heuristics (membership dues, expense claims, event fees...) live
outside this package. What lives here is the contract they must satisfy and
the single place where their output is written back:

- ``EntityMatcher``: ``(transaction) -> Sequence[MatchedEntity]``; the output
  may hold several entities but never the same ``(entity_type, entity_id)``
  twice.
- ``merge_matched_entities``: stable, first-write-wins union of stored and new
  links. Every write goes through it, so re-running a matcher never grows
  duplicate links.
- ``apply_matcher`` / ``link_entity`` / ``unlink_entity``: session-level
  operations that replace ``matched_entities`` in full (caller commits).
  Unreadable stored links are carried over untouched.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace
from typing import Protocol

from sqlalchemy.orm import Session

from .errors import DuplicateLinkError, StoreWriteError
from .logging_setup import get_logger
from .models import EntityType, MatchedEntity, Transaction
from .store import get_transaction, update_matched_entities

_logger = get_logger("calycompta.matching")


class EntityMatcher(Protocol):
    def __call__(self, transaction: Transaction) -> Sequence[MatchedEntity]: ...


class EntityDirectory(Protocol):
    """Read-only lookup into the entity collections, used for display names."""

    def display_name(self, entity_type: EntityType, entity_id: str) -> str | None: ...


def validate_matcher_output(entities: Sequence[MatchedEntity]) -> None:
    """Raise :class:`DuplicateLinkError` when a key repeats within one output."""

    seen: set[str] = set()
    repeated: list[str] = []
    for entity in entities:
        if entity.key in seen:
            repeated.append(entity.key)
        seen.add(entity.key)
    if repeated:
        raise DuplicateLinkError(
            f"matcher returned duplicate links: {', '.join(sorted(set(repeated)))}",
            context={"keys": sorted(set(repeated))},
        )


def merge_matched_entities(
    existing: Iterable[MatchedEntity],
    new: Iterable[MatchedEntity],
) -> list[MatchedEntity]:
    """Return ``existing`` followed by the keys of ``new`` not yet present.

    The first occurrence of each key wins, including its ``entity_name``;
    relative order is preserved. Applied to a single list (``new`` empty) this
    is exactly the duplicate-link repair.
    """

    seen: set[str] = set()
    merged: list[MatchedEntity] = []
    for entity in (*existing, *new):
        if entity.key in seen:
            continue
        seen.add(entity.key)
        merged.append(entity)
    return merged


def resolve_entity_names(
    entities: Iterable[MatchedEntity],
    directory: EntityDirectory,
) -> list[MatchedEntity]:
    """Fill in missing ``entity_name`` values from ``directory``."""

    out: list[MatchedEntity] = []
    for entity in entities:
        if entity.entity_name is None:
            name = directory.display_name(entity.entity_type, entity.entity_id)
            if name:
                entity = replace(entity, entity_name=name)
        out.append(entity)
    return out


class MappingEntityDirectory:
    """``EntityDirectory`` over in-memory ``{(type, id): name}`` data."""

    def __init__(self, names: dict[tuple[EntityType, str], str]) -> None:
        self._names = dict(names)

    def display_name(self, entity_type: EntityType, entity_id: str) -> str | None:
        return self._names.get((entity_type, entity_id))


def _require(session: Session, club_id: str, transaction_id: str) -> Transaction:
    tx = get_transaction(session, club_id, transaction_id)
    if tx is None:
        raise StoreWriteError(
            f"transaction {transaction_id!r} not found in club {club_id!r}",
            context={"club_id": club_id, "transaction_id": transaction_id},
        )
    return tx


def apply_matcher(
    session: Session,
    club_id: str,
    transaction: Transaction,
    matcher: EntityMatcher,
    *,
    directory: EntityDirectory | None = None,
) -> list[MatchedEntity]:
    """Run ``matcher`` for one transaction and persist the merged links.

    The stored links are re-read so a stale ``transaction`` snapshot cannot
    drop links written in the meantime. Returns the list that was written.
    """

    proposed = list(matcher(transaction))
    validate_matcher_output(proposed)
    if directory is not None:
        proposed = resolve_entity_names(proposed, directory)

    current = _require(session, club_id, transaction.id)
    merged = merge_matched_entities(current.matched_entities, proposed)
    if merged != list(current.matched_entities):
        update_matched_entities(
            session, club_id, transaction.id, merged, preserve=current.invalid_links
        )
        _logger.info(
            "Linked %s: %d -> %d links",
            transaction.sequence_number or transaction.id,
            len(current.matched_entities),
            len(merged),
        )
    return merged


def link_entity(
    session: Session,
    club_id: str,
    transaction_id: str,
    entity: MatchedEntity,
) -> bool:
    """Add one link unless its key is already present. Returns ``True`` when written."""

    current = _require(session, club_id, transaction_id)
    merged = merge_matched_entities(current.matched_entities, [entity])
    if len(merged) == len(current.matched_entities):
        return False
    update_matched_entities(
        session, club_id, transaction_id, merged, preserve=current.invalid_links
    )
    return True


def unlink_entity(
    session: Session,
    club_id: str,
    transaction_id: str,
    entity_id: str,
    entity_types: Iterable[EntityType],
) -> int:
    """Remove every link to ``entity_id`` under any of ``entity_types``.

    Expense claims are stored as either ``expense`` or ``demand``; pass both to
    detach a claim regardless of how it was linked. Returns the number of links
    removed.
    """

    types = set(entity_types)
    current = _require(session, club_id, transaction_id)
    kept = [
        e
        for e in current.matched_entities
        if not (e.entity_type in types and e.entity_id == entity_id)
    ]
    removed = len(current.matched_entities) - len(kept)
    if removed:
        update_matched_entities(
            session, club_id, transaction_id, kept, preserve=current.invalid_links
        )
    return removed


__all__ = [
    "EntityMatcher",
    "EntityDirectory",
    "MappingEntityDirectory",
    "validate_matcher_output",
    "merge_matched_entities",
    "resolve_entity_names",
    "apply_matcher",
    "link_entity",
    "unlink_entity",
]
