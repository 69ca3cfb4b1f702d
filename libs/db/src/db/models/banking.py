from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: clubs
# ---------------------------


class Club(Base):
    __tablename__ = "clubs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Designated current account used by dashboard totals. Stored as entered;
    # comparisons strip whitespace on both sides.
    operating_account: Mapped[str | None] = mapped_column(String, nullable=True)
    opening_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )


# ---------------------------
# Core: bank_transactions
# ---------------------------


class BankTransaction(Base):
    __tablename__ = "bank_transactions"

    # Document ids are opaque strings assigned by the importer; unique per club.
    club_id: Mapped[str] = mapped_column(
        String, ForeignKey("clubs.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String, primary_key=True)
    sequence_number: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    execution_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    account: Mapped[str | None] = mapped_column(String, nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    counterparty_account: Mapped[str | None] = mapped_column(String, nullable=True)
    communication: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Split ("ventilated") parents are kept for audit but never counted in totals.
    is_parent: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    parent_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Ordered list of {"entity_type", "entity_id", "entity_name"} objects.
    # Always rewritten in full; never mutated in place.
    matched_entities: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, server_default=text("'[]'")
    )
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    # SHA-256 over the canonical import fields; equal values across rows point
    # at a duplicate import of the same bank line.
    fingerprint_sha256: Mapped[str | None] = mapped_column(CHAR(64), nullable=True)
    raw_record: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )

    __table_args__ = (
        Index("ix_bank_tx_club_execution_date", "club_id", "execution_date"),
        Index("ix_bank_tx_club_fingerprint", "club_id", "fingerprint_sha256"),
    )


__all__ = [
    "Base",
    "Club",
    "BankTransaction",
]
