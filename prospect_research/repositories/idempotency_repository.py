"""Repository for idempotency records."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prospect_research.db.session import get_async_session_context
from prospect_research.models.idempotency_record import IdempotencyRecord
from prospect_research.schemas.research import IdempotencyRecordRead


class IdempotencyRepository:
    """IdempotencyStore backed by PostgreSQL; the unique key index arbitrates races."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert_if_absent(self, key: str, operation: str, *, expires_at: datetime) -> bool:
        stmt = (
            insert(IdempotencyRecord)
            .values(key=key, operation=operation, status="in_progress", expires_at=expires_at)
            .on_conflict_do_nothing(index_elements=[IdempotencyRecord.key])
            .returning(IdempotencyRecord.id)
        )
        async with get_async_session_context(self.session_factory) as db:
            inserted = (await db.execute(stmt)).scalar_one_or_none()
            return inserted is not None

    async def get(self, key: str) -> Optional[IdempotencyRecordRead]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(select(IdempotencyRecord).where(IdempotencyRecord.key == key))
            row = result.scalar_one_or_none()
            return IdempotencyRecordRead.model_validate(row) if row else None

    async def reclaim(self, key: str, *, now: datetime, stale_before: datetime, expires_at: datetime) -> bool:
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                or_(
                    IdempotencyRecord.expires_at < now,
                    and_(
                        IdempotencyRecord.status == "in_progress",
                        IdempotencyRecord.updated_at < stale_before,
                    ),
                ),
            )
            .values(status="in_progress", result=None, error=None, expires_at=expires_at, updated_at=now)
            .returning(IdempotencyRecord.id)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            return (await db.execute(stmt)).scalar_one_or_none() is not None

    async def mark_completed(self, key: str, result: Dict[str, Any], *, expires_at: datetime) -> None:
        await self._finish(key, status="completed", result=result, error=None, expires_at=expires_at)

    async def mark_failed(self, key: str, error: Dict[str, Any], *, expires_at: datetime) -> None:
        await self._finish(key, status="failed", result=None, error=error, expires_at=expires_at)

    async def _finish(
        self,
        key: str,
        *,
        status: str,
        result: Optional[Dict[str, Any]],
        error: Optional[Dict[str, Any]],
        expires_at: datetime,
    ) -> None:
        stmt = (
            update(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .values(status=status, result=result, error=error, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            await db.execute(stmt)

    async def delete(self, key: str) -> None:
        async with get_async_session_context(self.session_factory) as db:
            await db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.key == key))

    async def purge_expired(self, *, now: datetime) -> int:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < now))
            return int(result.rowcount or 0)
