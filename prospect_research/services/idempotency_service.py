"""
Idempotency guard for operations with side effects.

A deterministic key (hash of the operation-identifying fields) maps to one
record. The first caller proceeds; later callers with the same key replay
the stored outcome or learn that the operation is already in flight.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from prospect_research.core.config import IdempotencyConfig
from prospect_research.repositories.stores import IdempotencyStore
from prospect_research.utils.canonical_json import operation_key
from prospect_research.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyDecision:
    proceed: bool
    status: str  # new | reclaimed | completed | failed | in_progress
    cached_result: Optional[Dict[str, Any]] = None
    cached_error: Optional[Dict[str, Any]] = None


class IdempotencyInProgressError(Exception):
    """The same operation is already being executed by another caller."""

    def __init__(self, key: str):
        super().__init__(f"Operation {key[:12]} already in progress")
        self.key = key


class IdempotentReplayError(Exception):
    """A previous execution with this key failed; its error is replayed."""

    def __init__(self, key: str, error: Dict[str, Any]):
        super().__init__(error.get("message") or "Previous attempt failed")
        self.key = key
        self.error = error


class IdempotencyService:
    def __init__(
        self,
        store: IdempotencyStore,
        config: Optional[IdempotencyConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config or IdempotencyConfig()
        self.clock = clock

    @staticmethod
    def build_key(operation: str, **fields: Any) -> str:
        """Pure function of the operation's identifying fields; never of wall-clock time."""
        return operation_key(operation, fields)

    def _terminal_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.config.completed_ttl_seconds)

    async def begin(self, key: str, operation: str) -> IdempotencyDecision:
        now = self.clock()
        if await self.store.insert_if_absent(key, operation, expires_at=self._terminal_expiry(now)):
            return IdempotencyDecision(proceed=True, status="new")

        record = await self.store.get(key)
        if record is None:
            # Released between our insert and read
            if await self.store.insert_if_absent(key, operation, expires_at=self._terminal_expiry(now)):
                return IdempotencyDecision(proceed=True, status="new")
            return IdempotencyDecision(proceed=False, status="in_progress")

        stale_before = now - timedelta(seconds=self.config.processing_ttl_seconds)
        expired = record.expires_at < now
        stalled = record.status == "in_progress" and record.updated_at < stale_before
        if expired or stalled:
            reclaimed = await self.store.reclaim(
                key, now=now, stale_before=stale_before, expires_at=self._terminal_expiry(now)
            )
            if reclaimed:
                logger.info("Reclaimed %s idempotency record for %s", "expired" if expired else "stalled", operation)
                return IdempotencyDecision(proceed=True, status="reclaimed")
            return IdempotencyDecision(proceed=False, status="in_progress")

        if record.status == "completed":
            return IdempotencyDecision(proceed=False, status="completed", cached_result=record.result or {})
        if record.status == "failed":
            return IdempotencyDecision(proceed=False, status="failed", cached_error=record.error or {})
        return IdempotencyDecision(proceed=False, status="in_progress")

    async def complete(self, key: str, result: Dict[str, Any]) -> None:
        await self.store.mark_completed(key, result, expires_at=self._terminal_expiry(self.clock()))

    async def fail(self, key: str, error: Dict[str, Any]) -> None:
        await self.store.mark_failed(key, error, expires_at=self._terminal_expiry(self.clock()))

    async def release(self, key: str) -> None:
        """Forget the key; only for operations that produced no side effect."""
        await self.store.delete(key)

    async def run_guarded(
        self,
        key: str,
        operation: str,
        fn: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Execute fn at most once per key and return its (possibly cached) result."""
        decision = await self.begin(key, operation)
        if not decision.proceed:
            if decision.status == "completed":
                return decision.cached_result or {}
            if decision.status == "failed":
                raise IdempotentReplayError(key, decision.cached_error or {})
            raise IdempotencyInProgressError(key)

        try:
            result = await fn()
        except Exception as exc:
            await self.fail(key, {"message": str(exc), "type": type(exc).__name__})
            raise
        await self.complete(key, result)
        return result

    async def purge_expired(self) -> int:
        return await self.store.purge_expired(now=self.clock())
