"""
Batch item repository - database operations for BatchItem.

Every status-changing write is a conditional UPDATE ... RETURNING so that two
dispatcher invocations can never both move the same item.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prospect_research.db.session import get_async_session_context
from prospect_research.models.batch_job import BatchItem
from prospect_research.schemas.batch import BatchItemRead, ItemCounts, ItemStatus
from prospect_research.schemas.research import ResearchResult


class BatchItemRepository:
    """ItemStore backed by PostgreSQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_items(self, job_id: UUID) -> List[BatchItemRead]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchItem).where(BatchItem.job_id == job_id).order_by(BatchItem.item_index.asc())
            )
            return [BatchItemRead.model_validate(row) for row in result.scalars().all()]

    async def get_item(self, job_id: UUID, item_id: UUID) -> Optional[BatchItemRead]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchItem).where(BatchItem.id == item_id, BatchItem.job_id == job_id)
            )
            row = result.scalar_one_or_none()
            return BatchItemRead.model_validate(row) if row else None

    async def select_pending(self, job_id: UUID, limit: int) -> List[BatchItemRead]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchItem)
                .where(BatchItem.job_id == job_id, BatchItem.status == ItemStatus.PENDING.value)
                .order_by(BatchItem.item_index.asc())
                .limit(limit)
            )
            return [BatchItemRead.model_validate(row) for row in result.scalars().all()]

    async def select_retryable_failed(self, job_id: UUID, limit: int, max_retries: int) -> List[BatchItemRead]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchItem)
                .where(
                    BatchItem.job_id == job_id,
                    BatchItem.status == ItemStatus.FAILED.value,
                    BatchItem.retry_count < max_retries,
                )
                .order_by(BatchItem.item_index.asc())
                .limit(limit)
            )
            return [BatchItemRead.model_validate(row) for row in result.scalars().all()]

    async def claim(self, item_id: UUID, *, max_retries: int, now: datetime) -> Optional[BatchItemRead]:
        stmt = (
            update(BatchItem)
            .where(
                BatchItem.id == item_id,
                or_(
                    BatchItem.status == ItemStatus.PENDING.value,
                    and_(BatchItem.status == ItemStatus.FAILED.value, BatchItem.retry_count < max_retries),
                ),
            )
            .values(
                status=ItemStatus.PROCESSING.value,
                processing_started_at=now,
                processing_completed_at=None,
            )
            .returning(BatchItem)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return BatchItemRead.model_validate(row) if row else None

    async def record_success(
        self, item_id: UUID, result: ResearchResult, *, now: datetime, duration_ms: int
    ) -> Optional[BatchItemRead]:
        metrics = result.metrics
        stmt = (
            update(BatchItem)
            .where(BatchItem.id == item_id, BatchItem.status == ItemStatus.PROCESSING.value)
            .values(
                status=ItemStatus.COMPLETED.value,
                report_content=result.report_content,
                romy_score=metrics.romy_score,
                romy_score_tier=metrics.romy_score_tier,
                capacity_rating=metrics.capacity_rating,
                estimated_net_worth=metrics.estimated_net_worth,
                estimated_gift_capacity=metrics.estimated_gift_capacity,
                recommended_ask=metrics.recommended_ask,
                structured_data=result.structured_data(),
                sources_found=[source.model_dump() for source in result.sources],
                tokens_used=result.tokens_used,
                model_used=result.model_used,
                processing_completed_at=now,
                processing_duration_ms=duration_ms,
                error_message=None,
            )
            .returning(BatchItem)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return BatchItemRead.model_validate(row) if row else None

    async def record_failure(
        self, item_id: UUID, error_message: str, *, now: datetime, duration_ms: Optional[int] = None
    ) -> Optional[BatchItemRead]:
        stmt = (
            update(BatchItem)
            .where(BatchItem.id == item_id, BatchItem.status == ItemStatus.PROCESSING.value)
            .values(
                status=ItemStatus.FAILED.value,
                retry_count=BatchItem.retry_count + 1,
                error_message=error_message,
                last_retry_at=now,
                processing_completed_at=now,
                processing_duration_ms=duration_ms,
            )
            .returning(BatchItem)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return BatchItemRead.model_validate(row) if row else None

    async def count_by_status(self, job_id: UUID, max_retries: int) -> ItemCounts:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchItem.status, func.count())
                .where(BatchItem.job_id == job_id)
                .group_by(BatchItem.status)
            )
            counts = {status: int(count) for status, count in result.all()}
            retryable = await db.execute(
                select(func.count())
                .select_from(BatchItem)
                .where(
                    BatchItem.job_id == job_id,
                    BatchItem.status == ItemStatus.FAILED.value,
                    BatchItem.retry_count < max_retries,
                )
            )
            return ItemCounts(
                pending=counts.get(ItemStatus.PENDING.value, 0),
                processing=counts.get(ItemStatus.PROCESSING.value, 0),
                completed=counts.get(ItemStatus.COMPLETED.value, 0),
                failed=counts.get(ItemStatus.FAILED.value, 0),
                retryable_failed=int(retryable.scalar_one()),
            )

    async def list_stale_processing(self, job_id: UUID, started_before: datetime) -> List[BatchItemRead]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(BatchItem)
                .where(
                    BatchItem.job_id == job_id,
                    BatchItem.status == ItemStatus.PROCESSING.value,
                    BatchItem.processing_started_at < started_before,
                )
                .order_by(BatchItem.item_index.asc())
            )
            return [BatchItemRead.model_validate(row) for row in result.scalars().all()]
