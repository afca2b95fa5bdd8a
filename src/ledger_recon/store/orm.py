"""SQLAlchemy tables backing ``SqlLedgerStore``."""

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class CanonicalTransactionRow(Base):
    __tablename__ = "canonical_transactions"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_canonical_source_ref"),
        Index("ix_canonical_posted", "posted_date", "canonical_id"),
    )

    canonical_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Primary source ref, denormalized for filtering
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Sorted list of [source, external_id] pairs
    source_refs: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    posted_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    posted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    raw_category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    category_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    category_source: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    match_status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    matched_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    push_status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    push_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    push_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SyncCursorRow(Base):
    __tablename__ = "sync_cursors"

    connector: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_synced_cursor_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_run_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ReconciliationRunRow(Base):
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    per_connector_result: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    unmatched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    categorized_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_categorization_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_pairs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_review_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overall_status: Mapped[str] = mapped_column(String(16), nullable=False)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ItemFailureRow(Base):
    __tablename__ = "item_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connector: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
