"""
IdempotencyRecord model.

One row per guarded operation key. The row's status decides whether a
repeated call executes or replays the stored outcome.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from prospect_research.models.base_model import TimestampedModel


class IdempotencyRecord(TimestampedModel):
    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    result: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    error: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('in_progress', 'completed', 'failed')", name="ck_idempotency_status"),
        Index("uq_idempotency_key", "key", unique=True),
        Index("ix_idempotency_expires", "expires_at"),
    )
