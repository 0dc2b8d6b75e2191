"""SQLAlchemy models for persistent storage.

This module defines the database schema for alarms, their sync cursors
and the receipts of notifications already sent.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AlarmModel(Base):
    """SQLAlchemy model for alarms.

    The ABI is stored as JSON text and event names as a comma-joined
    string; both are decoded when converted to a domain object.
    """

    __tablename__ = "alarms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    abi: Mapped[str] = mapped_column(Text, nullable=False)
    event_names: Mapped[str] = mapped_column(Text, nullable=False)
    target_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    target: Mapped[str] = mapped_column(String(2048), nullable=False)
    block_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_alarms_address", "address"),)


class AlarmSyncStateModel(Base):
    """SQLAlchemy model for per-alarm sync cursors."""

    __tablename__ = "alarm_sync_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alarm_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("alarms.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    last_sync_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class AlarmReceiptModel(Base):
    """SQLAlchemy model for notification receipts."""

    __tablename__ = "alarm_receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alarm_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("alarms.id", ondelete="CASCADE"), nullable=False
    )
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("alarm_id", "tx_hash", name="uq_alarm_receipt"),
        Index("idx_alarm_receipts_alarm", "alarm_id"),
    )
