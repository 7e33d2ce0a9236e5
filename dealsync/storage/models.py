"""
Database Models for the Deals Ingestor

SQLAlchemy models for the deal cache, the change-tracking fingerprints and
the sync run ledger.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ingestor models."""

    pass


class DealRecord(Base):
    """A normalized deal, one row per source deal id."""

    __tablename__ = "deals_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    title: Mapped[str] = mapped_column(Text, default="")
    value: Mapped[float] = mapped_column(Float, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), default="BRL")
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stage_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    closing_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    closing_date_raw: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Target attributes, keyed by attribute id
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)

    # Well-known attributes as columns
    estado: Mapped[str | None] = mapped_column(Text, nullable=True)
    pairs_quantity: Mapped[str | None] = mapped_column(Text, nullable=True)
    seller: Mapped[str | None] = mapped_column(Text, nullable=True)
    designer: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(Text, nullable=True)

    contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Sync state
    api_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sync_status: Mapped[str] = mapped_column(String(32), default="synced")

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DealTracking(Base):
    """Last-seen modification time of a deal, used to skip unchanged ones."""

    __tablename__ = "deals_processed_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    deal_api_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    deal_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    has_closing_date: Mapped[bool] = mapped_column(Boolean, default=False)
    has_any_target_fields: Mapped[bool] = mapped_column(Boolean, default=False)
    target_fields_found: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)

    sync_batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SyncRunLog(Base):
    """One row per live sync run."""

    __tablename__ = "deals_sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    sync_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_status: Mapped[str] = mapped_column(String(32), default="running")

    deals_processed: Mapped[int] = mapped_column(Integer, default=0)
    deals_added: Mapped[int] = mapped_column(Integer, default=0)
    deals_updated: Mapped[int] = mapped_column(Integer, default=0)
    deals_failed: Mapped[int] = mapped_column(Integer, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    summary: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
