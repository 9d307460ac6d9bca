"""
Batch prospect job and item models.

A BatchJob owns N BatchItems (one per prospect). Item rows carry both the
normalized input and the merged research result.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from prospect_research.models.base_model import TimestampedModel


class BatchJob(TimestampedModel):
    """One user-initiated batch of prospects to research."""

    __tablename__ = "batch_prospect_jobs"

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")

    total_prospects: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    completed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    settings: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb"))
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    items = relationship(
        "BatchItem",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BatchItem.item_index",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'paused', 'completed', 'failed', 'cancelled')",
            name="ck_batch_jobs_status",
        ),
        CheckConstraint("completed_count + failed_count <= total_prospects", name="ck_batch_jobs_counts"),
        Index("ix_batch_jobs_user_status", "user_id", "status"),
        Index("ix_batch_jobs_created_at", "created_at"),
    )


class BatchItem(TimestampedModel):
    """One prospect's research task within a job."""

    __tablename__ = "batch_prospect_items"

    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("batch_prospect_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")

    input_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    prospect_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prospect_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prospect_city: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prospect_state: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prospect_zip: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    report_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    romy_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    romy_score_tier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    capacity_rating: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    estimated_net_worth: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    estimated_gift_capacity: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    recommended_ask: Mapped[Optional[Decimal]] = mapped_column(Numeric, nullable=True)
    structured_data: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    sources_found: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)

    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    model_used: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    job = relationship("BatchJob", back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_batch_items_status",
        ),
        CheckConstraint("retry_count >= 0", name="ck_batch_items_retry_count"),
        Index("uq_batch_items_job_index", "job_id", "item_index", unique=True),
        Index("ix_batch_items_job_status", "job_id", "status"),
    )
