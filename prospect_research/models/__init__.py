"""
Models package.

Import all models here so they are registered with SQLAlchemy.
"""

from prospect_research.models.batch_job import BatchItem, BatchJob
from prospect_research.models.idempotency_record import IdempotencyRecord
from prospect_research.models.research_cache_entry import ResearchCacheEntry

__all__ = [
    "BatchJob",
    "BatchItem",
    "IdempotencyRecord",
    "ResearchCacheEntry",
]
