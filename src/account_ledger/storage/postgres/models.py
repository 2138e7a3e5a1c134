"""SQLAlchemy ORM models for the ledger database.

Tables:
    ledger_items      One row per stored item (events and listing entries),
                      keyed by ``(pk, sk)``.  The primary key is what
                      enforces the "absent at this key" write condition.
    ledger_changes    Transactional outbox; one row per item written, in
                      the same transaction.  Serves as the change feed.
    feed_checkpoints  Last change sequence acknowledged per consumer.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Identity, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# LedgerItemRecord
# ---------------------------------------------------------------------------

class LedgerItemRecord(Base):
    """Immutable ledger item.  Rows are only ever INSERTed."""

    __tablename__ = "ledger_items"

    pk: Mapped[str] = mapped_column(String(256), primary_key=True)
    sk: Mapped[str] = mapped_column(String(512), primary_key=True)
    kind: Mapped[str | None] = mapped_column(String(16), nullable=True)
    body: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<LedgerItemRecord {self.pk} {self.sk}>"


# ---------------------------------------------------------------------------
# LedgerChangeRecord
# ---------------------------------------------------------------------------

class LedgerChangeRecord(Base):
    """Outbox row carrying the new image of one written item."""

    __tablename__ = "ledger_changes"

    sequence: Mapped[int] = mapped_column(
        BigInteger, Identity(always=True), primary_key=True,
    )
    event_source: Mapped[str] = mapped_column(String(128), nullable=False)
    pk: Mapped[str] = mapped_column(String(256), nullable=False)
    sk: Mapped[str] = mapped_column(String(512), nullable=False)
    new_image: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_ledger_changes_pk", "pk"),
    )


# ---------------------------------------------------------------------------
# FeedCheckpointRecord
# ---------------------------------------------------------------------------

class FeedCheckpointRecord(Base):
    __tablename__ = "feed_checkpoints"

    consumer: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, server_default=func.now(),
    )
