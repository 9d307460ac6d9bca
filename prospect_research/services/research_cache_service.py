"""
Two-tier cache for research results and property valuations.

The durable store (research_cache_entries) is consulted first. When it is
unreachable the service degrades to a bounded in-process map so that a
database outage costs cache hits, never request failures.
"""

import asyncio
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from prospect_research.core.config import CacheConfig
from prospect_research.repositories.stores import CacheStore
from prospect_research.services.side_effects import SideEffectRunner, SideEffectSink
from prospect_research.utils.canonical_json import sha256_hex
from prospect_research.utils.time import utc_now

logger = logging.getLogger(__name__)

RESEARCH_NAMESPACE = "research"
VALUATION_NAMESPACE = "valuation"

DURABLE_STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)

_PUNCTUATION_RE = re.compile(r"[.,#]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_key(raw: str) -> str:
    """Case-fold, drop . , # and collapse whitespace so equivalent inputs share one key."""
    folded = _PUNCTUATION_RE.sub(" ", (raw or "").casefold())
    return _WHITESPACE_RE.sub(" ", folded).strip()


def hash_key(normalized: str) -> str:
    return sha256_hex(normalized)


@dataclass
class _MemoryEntry:
    payload: Dict[str, Any]
    expires_at: datetime
    hit_count: int = 0


class ResearchCacheService:
    def __init__(
        self,
        store: Optional[CacheStore],
        config: Optional[CacheConfig] = None,
        side_effects: Optional[SideEffectSink] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or CacheConfig()
        self.side_effects = side_effects or SideEffectRunner()
        self.clock = clock
        self._memory: "OrderedDict[Tuple[str, str], _MemoryEntry]" = OrderedDict()

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    async def get(self, namespace: str, raw_key: str) -> Optional[Dict[str, Any]]:
        key_hash = hash_key(normalize_key(raw_key))
        now = self.clock()

        if self.store is not None:
            try:
                record = await self.store.get(namespace, key_hash, now=now)
            except DURABLE_STORE_ERRORS as exc:
                logger.warning("Durable cache read failed for %s; using memory fallback: %s", namespace, exc)
            else:
                if record is None:
                    return None
                self.side_effects.submit(
                    "cache_hit_increment",
                    lambda: self.store.increment_hits(namespace, key_hash, now=now),
                )
                return record.payload

        return self._memory_get(namespace, key_hash, now)

    async def set(
        self,
        namespace: str,
        raw_key: str,
        payload: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        normalized = normalize_key(raw_key)
        key_hash = hash_key(normalized)
        expires_at = self.clock() + timedelta(seconds=ttl_seconds or self.config.ttl_seconds)

        self._memory_set(namespace, key_hash, payload, expires_at)

        if self.store is None:
            return
        try:
            await self.store.upsert(namespace, normalized, key_hash, payload, expires_at=expires_at)
        except DURABLE_STORE_ERRORS as exc:
            logger.warning("Durable cache write failed for %s; kept in memory only: %s", namespace, exc)

    async def purge_expired(self) -> int:
        """Drop expired entries from both tiers; returns how many were removed."""
        now = self.clock()
        expired = [key for key, entry in self._memory.items() if entry.expires_at <= now]
        for key in expired:
            del self._memory[key]
        removed = len(expired)
        if self.store is not None:
            try:
                removed += await self.store.purge_expired(now=now)
            except DURABLE_STORE_ERRORS as exc:
                logger.warning("Durable cache purge failed: %s", exc)
        return removed

    def _memory_get(self, namespace: str, key_hash: str, now: datetime) -> Optional[Dict[str, Any]]:
        key = (namespace, key_hash)
        entry = self._memory.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._memory[key]
            return None
        entry.hit_count += 1
        self._memory.move_to_end(key)
        return entry.payload

    def _memory_set(self, namespace: str, key_hash: str, payload: Dict[str, Any], expires_at: datetime) -> None:
        key = (namespace, key_hash)
        if key in self._memory:
            del self._memory[key]
        while len(self._memory) >= self.config.memory_max_entries:
            self._memory.popitem(last=False)
        self._memory[key] = _MemoryEntry(payload=payload, expires_at=expires_at)
