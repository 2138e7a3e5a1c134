"""Ledger schema: items, change outbox, feed checkpoints.

Revision ID: 001_ledger
Revises: None
Create Date: 2026-10-18 00:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Ledger items (events and listing entries); insert-only
    op.create_table(
        "ledger_items",
        sa.Column("pk", sa.String(256), primary_key=True),
        sa.Column("sk", sa.String(512), primary_key=True),
        sa.Column("kind", sa.String(16), nullable=True),
        sa.Column("body", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Change outbox, written in the same transaction as the items
    op.create_table(
        "ledger_changes",
        sa.Column("sequence", sa.BigInteger, sa.Identity(always=True), primary_key=True),
        sa.Column("event_source", sa.String(128), nullable=False),
        sa.Column("pk", sa.String(256), nullable=False),
        sa.Column("sk", sa.String(512), nullable=False),
        sa.Column("new_image", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_ledger_changes_pk", "ledger_changes", ["pk"])

    # Per-consumer feed position
    op.create_table(
        "feed_checkpoints",
        sa.Column("consumer", sa.String(128), primary_key=True),
        sa.Column("last_sequence", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("feed_checkpoints")
    op.drop_index("ix_ledger_changes_pk", table_name="ledger_changes")
    op.drop_table("ledger_changes")
    op.drop_table("ledger_items")
