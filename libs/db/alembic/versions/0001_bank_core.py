# ruff: noqa: I001
"""Clubs and bank transactions.

Revision ID: 0001_bank_core
Revises: None
Create Date: 2026-09-14
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_bank_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "clubs",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("operating_account", sa.Text(), nullable=True),
        sa.Column("opening_balance", sa.Numeric(18, 2), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )

    op.create_table(
        "bank_transactions",
        sa.Column("club_id", sa.Text(), nullable=False),
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("sequence_number", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("execution_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("account", sa.Text(), nullable=True),
        sa.Column("counterparty_name", sa.Text(), nullable=True),
        sa.Column("counterparty_account", sa.Text(), nullable=True),
        sa.Column("communication", sa.Text(), nullable=True),
        sa.Column("is_parent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("parent_id", sa.Text(), nullable=True),
        sa.Column(
            "matched_entities",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("reconciled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("fingerprint_sha256", sa.CHAR(64), nullable=True),
        sa.Column("raw_record", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("club_id", "id", name="pk_bank_transactions"),
        sa.ForeignKeyConstraint(["club_id"], ["clubs.id"], ondelete="CASCADE"),
    )

    op.create_index(
        "ix_bank_tx_club_execution_date",
        "bank_transactions",
        ["club_id", "execution_date"],
    )
    op.create_index(
        "ix_bank_tx_club_fingerprint",
        "bank_transactions",
        ["club_id", "fingerprint_sha256"],
    )


def downgrade() -> None:
    op.drop_index("ix_bank_tx_club_fingerprint", table_name="bank_transactions")
    op.drop_index("ix_bank_tx_club_execution_date", table_name="bank_transactions")
    op.drop_table("bank_transactions")
    op.drop_table("clubs")
