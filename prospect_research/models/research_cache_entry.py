"""
ResearchCacheEntry model.

Durable, TTL-bounded cache shared by every worker. Rows past expires_at are
treated as misses by readers and purged by the worker's housekeeping.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from prospect_research.models.base_model import TimestampedModel


class ResearchCacheEntry(TimestampedModel):
    """Cached research or valuation payload keyed by normalized input."""

    __tablename__ = "research_cache_entries"

    namespace: Mapped[str] = mapped_column(String(50), nullable=False)
    cache_key: Mapped[str] = mapped_column(Text, nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("uq_research_cache_key", "namespace", "key_hash", unique=True),
        Index("ix_research_cache_expires", "expires_at"),
    )
