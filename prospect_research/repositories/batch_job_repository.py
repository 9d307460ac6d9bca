"""
Batch job repository - database operations for BatchJob.
"""

from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prospect_research.db.session import get_async_session_context
from prospect_research.models.batch_job import BatchItem, BatchJob
from prospect_research.schemas.batch import (
    ACTIVE_JOB_STATUSES,
    DISPATCHABLE_JOB_STATUSES,
    BatchJobRead,
    JobStatus,
    NewBatchItem,
    NewBatchJob,
)


class BatchJobRepository:
    """JobStore backed by PostgreSQL; each call is its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_job(self, job: NewBatchJob, items: Sequence[NewBatchItem]) -> BatchJobRead:
        """Insert the job and all of its items in one transaction."""
        async with get_async_session_context(self.session_factory) as db:
            row = BatchJob(
                status=JobStatus.PENDING.value,
                total_prospects=len(items),
                completed_count=0,
                failed_count=0,
                **job.model_dump(),
            )
            db.add(row)
            await db.flush()
            db.add_all(
                BatchItem(job_id=row.id, user_id=job.user_id, status="pending", retry_count=0, **item.model_dump())
                for item in items
            )
            await db.flush()
            await db.refresh(row)
            return BatchJobRead.model_validate(row)

    async def get_job(self, job_id: UUID) -> Optional[BatchJobRead]:
        async with get_async_session_context(self.session_factory) as db:
            row = await db.get(BatchJob, job_id)
            return BatchJobRead.model_validate(row) if row else None

    async def list_jobs(self, user_id: str, limit: int = 50, offset: int = 0) -> List[BatchJobRead]:
        """List a user's jobs, newest first."""
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchJob)
                .where(BatchJob.user_id == user_id)
                .order_by(BatchJob.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [BatchJobRead.model_validate(row) for row in result.scalars().all()]

    async def list_dispatchable_jobs(self, limit: int = 20) -> List[BatchJobRead]:
        """Jobs the worker should advance, oldest first."""
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchJob)
                .where(BatchJob.status.in_([s.value for s in DISPATCHABLE_JOB_STATUSES]))
                .order_by(BatchJob.created_at.asc())
                .limit(limit)
            )
            return [BatchJobRead.model_validate(row) for row in result.scalars().all()]

    async def count_active_jobs(self, user_id: str) -> int:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(func.count())
                .select_from(BatchJob)
                .where(
                    BatchJob.user_id == user_id,
                    BatchJob.status.in_([s.value for s in ACTIVE_JOB_STATUSES]),
                )
            )
            return int(result.scalar_one())

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
        values = {"status": to_status.value}
        if started_at is not None:
            values["started_at"] = started_at
        if completed_at is not None:
            values["completed_at"] = completed_at
        if error_message is not None:
            values["error_message"] = error_message

        stmt = (
            update(BatchJob)
            .where(BatchJob.id == job_id, BatchJob.status.in_([s.value for s in from_statuses]))
            .values(**values)
            .returning(BatchJob)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return BatchJobRead.model_validate(row) if row else None

    async def update_counters(self, job_id: UUID, *, completed: int, failed: int) -> Optional[BatchJobRead]:
        stmt = (
            update(BatchJob)
            .where(BatchJob.id == job_id)
            .values(completed_count=completed, failed_count=failed)
            .returning(BatchJob)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return BatchJobRead.model_validate(row) if row else None

    async def delete_job(self, job_id: UUID) -> bool:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(delete(BatchJob).where(BatchJob.id == job_id))
            return bool(result.rowcount)
