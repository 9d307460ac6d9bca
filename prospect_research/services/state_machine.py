"""
Job and item lifecycle rules for batch prospect research.

Legal transitions are declared once here. Every write goes through a
conditional store update, so a transition that lost a race simply returns
None instead of overwriting another caller's state.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence
from uuid import UUID

from prospect_research.core.config import DispatcherConfig
from prospect_research.repositories.stores import ItemStore, JobStore
from prospect_research.schemas.batch import BatchItemRead, BatchJobRead, ItemCounts, ItemStatus, JobStatus
from prospect_research.schemas.research import ResearchResult
from prospect_research.utils.time import utc_now

logger = logging.getLogger(__name__)

JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.PAUSED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.PAUSED}),
    JobStatus.PAUSED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
}

ITEM_TRANSITIONS: Dict[ItemStatus, FrozenSet[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.PROCESSING}),
    ItemStatus.PROCESSING: frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED}),
    ItemStatus.FAILED: frozenset({ItemStatus.PROCESSING}),
}

TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class InvalidTransitionError(Exception):
    def __init__(self, kind: str, current: str, target: str, reason: Optional[str] = None):
        message = f"Cannot move {kind} from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.kind = kind
        self.current = current
        self.target = target


def ensure_job_transition(current: JobStatus, target: JobStatus) -> None:
    if target not in JOB_TRANSITIONS.get(JobStatus(current), frozenset()):
        raise InvalidTransitionError("job", JobStatus(current).value, JobStatus(target).value)


def ensure_item_transition(item: BatchItemRead, target: ItemStatus, max_retries: int) -> None:
    current = ItemStatus(item.status)
    if target not in ITEM_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError("item", current.value, ItemStatus(target).value)
    if current == ItemStatus.FAILED and item.retry_count >= max_retries:
        raise InvalidTransitionError("item", current.value, ItemStatus(target).value, "retry limit reached")


def source_statuses(target: JobStatus) -> List[JobStatus]:
    """Job statuses from which target is reachable."""
    return [source for source, targets in JOB_TRANSITIONS.items() if target in targets]


class BatchStateMachine:
    def __init__(
        self,
        jobs: JobStore,
        items: ItemStore,
        config: Optional[DispatcherConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.jobs = jobs
        self.items = items
        self.config = config or DispatcherConfig()
        self.clock = clock

    def _max_retries(self, max_retries: Optional[int]) -> int:
        if max_retries is None:
            return self.config.max_retries_per_item
        return min(max_retries, self.config.max_retries_per_item)

    # Job transitions

    async def start_job(self, job_id: UUID) -> Optional[BatchJobRead]:
        """pending -> processing, stamping started_at. None if the job was not pending."""
        job = await self.jobs.transition(
            job_id, [JobStatus.PENDING], JobStatus.PROCESSING, started_at=self.clock()
        )
        if job is not None:
            logger.info("Batch job %s started", job_id)
        return job

    async def change_job_status(
        self, job: BatchJobRead, target: JobStatus, *, error_message: Optional[str] = None
    ) -> BatchJobRead:
        """Administrative transition (pause, resume, cancel, fail); raises InvalidTransitionError."""
        ensure_job_transition(job.status, target)
        now = self.clock()
        updated = await self.jobs.transition(
            job.id,
            [JobStatus(job.status)],
            target,
            started_at=now if job.status == JobStatus.PENDING and target == JobStatus.PROCESSING else None,
            completed_at=now if target in TERMINAL_JOB_STATUSES else None,
            error_message=error_message,
        )
        if updated is None:
            raise InvalidTransitionError("job", JobStatus(job.status).value, target.value, "status changed concurrently")
        logger.info("Batch job %s moved %s -> %s", job.id, JobStatus(job.status).value, target.value)
        return updated

    # Item selection and claiming

    async def select_eligible_items(
        self, job_id: UUID, limit: int, max_retries: Optional[int] = None
    ) -> List[BatchItemRead]:
        """Pending items by item_index, backfilled with retryable failed items."""
        if limit <= 0:
            return []
        eligible = await self.items.select_pending(job_id, limit)
        if len(eligible) < limit:
            eligible.extend(
                await self.items.select_retryable_failed(job_id, limit - len(eligible), self._max_retries(max_retries))
            )
        return eligible

    async def mark_processing(
        self, items: Sequence[BatchItemRead], max_retries: Optional[int] = None
    ) -> List[BatchItemRead]:
        """Claim each item; only the items this caller actually won are returned."""
        cap = self._max_retries(max_retries)
        claimed: List[BatchItemRead] = []
        for item in items:
            won = await self.items.claim(item.id, max_retries=cap, now=self.clock())
            if won is None:
                logger.debug("Item %s was claimed elsewhere", item.id)
                continue
            claimed.append(won)
        return claimed

    # Outcomes

    async def record_outcome(
        self, item_id: UUID, result: ResearchResult, duration_ms: Optional[int] = None
    ) -> Optional[BatchItemRead]:
        """processing -> completed/failed. None when the item is no longer ours to finish."""
        now = self.clock()
        duration = duration_ms if duration_ms is not None else result.processing_duration_ms
        if result.success:
            recorded = await self.items.record_success(item_id, result, now=now, duration_ms=duration)
        else:
            recorded = await self.items.record_failure(
                item_id, result.error_message or "Unknown error", now=now, duration_ms=duration
            )
        if recorded is None:
            logger.warning("Item %s left processing before its outcome was recorded", item_id)
        return recorded

    async def recover_stale_items(self, job_id: UUID, older_than: Optional[timedelta] = None) -> int:
        """Fail items stuck in processing; they count as a used attempt."""
        threshold = older_than or timedelta(seconds=self.config.stale_item_seconds)
        now = self.clock()
        recovered = 0
        for item in await self.items.list_stale_processing(job_id, now - threshold):
            failed = await self.items.record_failure(
                item.id, "Transient error: processing timed out (stale item recovered)", now=now
            )
            if failed is not None:
                recovered += 1
        if recovered:
            logger.warning("Recovered %s stale items for job %s", recovered, job_id)
        return recovered

    # Aggregates and completion

    async def refresh_counters(self, job_id: UUID, max_retries: Optional[int] = None) -> ItemCounts:
        counts = await self.items.count_by_status(job_id, self._max_retries(max_retries))
        await self.jobs.update_counters(job_id, completed=counts.completed, failed=counts.failed)
        return counts

    @staticmethod
    def has_more(counts: ItemCounts) -> bool:
        return counts.pending + counts.retryable_failed > 0

    async def is_job_complete(self, job_id: UUID) -> bool:
        counts = await self.items.count_by_status(job_id, self.config.max_retries_per_item)
        return counts.pending == 0 and counts.processing == 0

    async def finalize_if_complete(self, job_id: UUID) -> Optional[BatchJobRead]:
        """Decide completion. Returns the job only to the single caller whose transition won."""
        counts = await self.refresh_counters(job_id)
        if counts.pending or counts.processing:
            return None
        now = self.clock()
        if counts.total == 0:
            job = await self.jobs.transition(
                job_id,
                [JobStatus.PENDING, JobStatus.PROCESSING],
                JobStatus.FAILED,
                completed_at=now,
                error_message="Job has no items to process",
            )
        else:
            job = await self.jobs.transition(
                job_id, [JobStatus.PROCESSING], JobStatus.COMPLETED, completed_at=now
            )
        if job is not None:
            logger.info(
                "Batch job %s finalized as %s (%s completed, %s failed)",
                job_id,
                JobStatus(job.status).value,
                counts.completed,
                counts.failed,
            )
        return job
