"""
Typed data-access interfaces for batch state, cache and idempotency records.

Services depend on these protocols only. The SQLAlchemy implementations live
next to this module; tests use in-memory implementations.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence
from uuid import UUID

from prospect_research.schemas.batch import (
    BatchItemRead,
    BatchJobRead,
    ItemCounts,
    JobStatus,
    NewBatchItem,
    NewBatchJob,
)
from prospect_research.schemas.research import CacheRecord, IdempotencyRecordRead, ResearchResult


class JobStore(Protocol):
    async def create_job(self, job: NewBatchJob, items: Sequence[NewBatchItem]) -> BatchJobRead: ...

    async def get_job(self, job_id: UUID) -> Optional[BatchJobRead]: ...

    async def list_jobs(self, user_id: str, limit: int = 50, offset: int = 0) -> List[BatchJobRead]: ...

    async def list_dispatchable_jobs(self, limit: int = 20) -> List[BatchJobRead]: ...

    async def count_active_jobs(self, user_id: str) -> int: ...

    async def transition(
        self,
        job_id: UUID,
        from_statuses: Sequence[JobStatus],
        to_status: JobStatus,
        *,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> Optional[BatchJobRead]:
        """Set status only if the current status is in from_statuses; None otherwise."""
        ...

    async def update_counters(self, job_id: UUID, *, completed: int, failed: int) -> Optional[BatchJobRead]: ...

    async def delete_job(self, job_id: UUID) -> bool: ...


class ItemStore(Protocol):
    async def list_items(self, job_id: UUID) -> List[BatchItemRead]: ...

    async def get_item(self, job_id: UUID, item_id: UUID) -> Optional[BatchItemRead]: ...

    async def select_pending(self, job_id: UUID, limit: int) -> List[BatchItemRead]: ...

    async def select_retryable_failed(self, job_id: UUID, limit: int, max_retries: int) -> List[BatchItemRead]: ...

    async def claim(self, item_id: UUID, *, max_retries: int, now: datetime) -> Optional[BatchItemRead]:
        """Move one item to processing iff it is pending or retryable-failed at write time."""
        ...

    async def record_success(
        self, item_id: UUID, result: ResearchResult, *, now: datetime, duration_ms: int
    ) -> Optional[BatchItemRead]: ...

    async def record_failure(
        self, item_id: UUID, error_message: str, *, now: datetime, duration_ms: Optional[int] = None
    ) -> Optional[BatchItemRead]: ...

    async def count_by_status(self, job_id: UUID, max_retries: int) -> ItemCounts: ...

    async def list_stale_processing(self, job_id: UUID, started_before: datetime) -> List[BatchItemRead]: ...


class CacheStore(Protocol):
    async def get(self, namespace: str, key_hash: str, *, now: datetime) -> Optional[CacheRecord]: ...

    async def upsert(
        self,
        namespace: str,
        cache_key: str,
        key_hash: str,
        payload: Dict[str, Any],
        *,
        expires_at: datetime,
    ) -> None: ...

    async def increment_hits(self, namespace: str, key_hash: str, *, now: datetime) -> None: ...

    async def purge_expired(self, *, now: datetime) -> int: ...


class IdempotencyStore(Protocol):
    async def insert_if_absent(self, key: str, operation: str, *, expires_at: datetime) -> bool: ...

    async def get(self, key: str) -> Optional[IdempotencyRecordRead]: ...

    async def reclaim(self, key: str, *, now: datetime, stale_before: datetime, expires_at: datetime) -> bool:
        """Take over a record that is expired or stuck in_progress since before stale_before."""
        ...

    async def mark_completed(self, key: str, result: Dict[str, Any], *, expires_at: datetime) -> None: ...

    async def mark_failed(self, key: str, error: Dict[str, Any], *, expires_at: datetime) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def purge_expired(self, *, now: datetime) -> int: ...
