"""Repository for the durable research cache."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prospect_research.db.session import get_async_session_context
from prospect_research.models.research_cache_entry import ResearchCacheEntry
from prospect_research.schemas.research import CacheRecord


class ResearchCacheRepository:
    """CacheStore backed by PostgreSQL. Expiry is enforced in the read predicate."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, namespace: str, key_hash: str, *, now: datetime) -> Optional[CacheRecord]:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(
                select(ResearchCacheEntry).where(
                    ResearchCacheEntry.namespace == namespace,
                    ResearchCacheEntry.key_hash == key_hash,
                    ResearchCacheEntry.expires_at > now,
                )
            )
            row = result.scalar_one_or_none()
            return CacheRecord.model_validate(row) if row else None

    async def upsert(
        self,
        namespace: str,
        cache_key: str,
        key_hash: str,
        payload: Dict[str, Any],
        *,
        expires_at: datetime,
    ) -> None:
        stmt = (
            insert(ResearchCacheEntry)
            .values(
                namespace=namespace,
                cache_key=cache_key,
                key_hash=key_hash,
                payload=payload,
                hit_count=0,
                expires_at=expires_at,
            )
            .on_conflict_do_update(
                index_elements=[ResearchCacheEntry.namespace, ResearchCacheEntry.key_hash],
                set_={
                    "cache_key": cache_key,
                    "payload": payload,
                    "expires_at": expires_at,
                    "updated_at": func.now(),
                },
            )
        )
        async with get_async_session_context(self.session_factory) as db:
            await db.execute(stmt)

    async def increment_hits(self, namespace: str, key_hash: str, *, now: datetime) -> None:
        stmt = (
            update(ResearchCacheEntry)
            .where(ResearchCacheEntry.namespace == namespace, ResearchCacheEntry.key_hash == key_hash)
            .values(hit_count=ResearchCacheEntry.hit_count + 1, last_accessed_at=now)
            .execution_options(synchronize_session=False)
        )
        async with get_async_session_context(self.session_factory) as db:
            await db.execute(stmt)

    async def purge_expired(self, *, now: datetime) -> int:
        async with get_async_session_context(self.session_factory) as db:
            result = await db.execute(delete(ResearchCacheEntry).where(ResearchCacheEntry.expires_at < now))
            return int(result.rowcount or 0)
