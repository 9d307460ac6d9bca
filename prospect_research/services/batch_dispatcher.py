"""
Concurrency-limited batch dispatcher.

One process_batch call is one bounded unit of work: claim up to the user's
concurrency limit of eligible items, research them in parallel, record every
outcome, and report whether more work remains. Callers (the worker loop or
a client polling the HTTP endpoint) simply call it again while has_more is
true.
"""

import asyncio
import logging
import time
from typing import List, Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from prospect_research.core.config import DispatcherConfig
from prospect_research.repositories.stores import ItemStore, JobStore
from prospect_research.schemas.batch import (
    DISPATCHABLE_JOB_STATUSES,
    BatchItemRead,
    BatchJobRead,
    BatchJobSettings,
    ItemCounts,
    ItemStatus,
    JobStatus,
    ProcessBatchResponse,
    ProgressSnapshot,
    RetryItemResponse,
)
from prospect_research.schemas.research import ResearchResult
from prospect_research.services.idempotency_service import (
    IdempotencyInProgressError,
    IdempotencyService,
    IdempotentReplayError,
)
from prospect_research.services.notification_service import Notifier
from prospect_research.services.plan_service import PlanClient
from prospect_research.services.research_executor import ResearchExecutor
from prospect_research.services.side_effects import SideEffectSink
from prospect_research.services.state_machine import BatchStateMachine
from prospect_research.utils.time import ms_since

logger = logging.getLogger(__name__)

RESEARCH_OPERATION = "research_item"
STORE_ERRORS = (SQLAlchemyError, OSError)
# Cache lookups and the merge run after the backend calls inside the same limit.
ITEM_TIMEOUT_MARGIN_SECONDS = 5.0
OUTCOME_RETRY_DELAY_SECONDS = 0.5


class JobNotFoundError(Exception):
    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ItemNotFoundError(Exception):
    def __init__(self, item_id: UUID):
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class RetryRejectedError(Exception):
    """The item is not in a state that allows a manual retry."""


class BatchStateUnavailableError(Exception):
    """The job/item store could not be read or written."""


class BatchDispatcher:
    def __init__(
        self,
        jobs: JobStore,
        items: ItemStore,
        executor: ResearchExecutor,
        idempotency: IdempotencyService,
        plans: PlanClient,
        notifier: Notifier,
        side_effects: SideEffectSink,
        config: Optional[DispatcherConfig] = None,
        state_machine: Optional[BatchStateMachine] = None,
    ):
        self.jobs = jobs
        self.items = items
        self.executor = executor
        self.idempotency = idempotency
        self.plans = plans
        self.notifier = notifier
        self.side_effects = side_effects
        self.config = config or DispatcherConfig()
        self.state = state_machine or BatchStateMachine(jobs, items, self.config)
        self.item_timeout = self._resolve_item_timeout()

    def _resolve_item_timeout(self) -> Optional[float]:
        """Per-item limit that never cuts the executor's retry envelope short."""
        envelope = self.executor.retry_policy.max_elapsed_seconds()
        configured = self.config.item_timeout_seconds
        if envelope is None:
            return configured
        envelope += ITEM_TIMEOUT_MARGIN_SECONDS
        if configured is not None and configured < envelope:
            logger.warning(
                "Item timeout %.1fs is shorter than the backend retry envelope; using %.1fs", configured, envelope
            )
        return max(configured or 0.0, envelope)

    async def process_batch(self, job_id: UUID, caller_id: Optional[str] = None) -> ProcessBatchResponse:
        try:
            return await self._process_batch(job_id, caller_id)
        except STORE_ERRORS as exc:
            logger.error("Batch state unavailable while processing job %s: %s", job_id, exc)
            raise BatchStateUnavailableError(str(exc)) from exc

    async def retry_item(self, job_id: UUID, item_id: UUID, caller_id: Optional[str] = None) -> RetryItemResponse:
        try:
            return await self._retry_item(job_id, item_id, caller_id)
        except STORE_ERRORS as exc:
            logger.error("Batch state unavailable while retrying item %s: %s", item_id, exc)
            raise BatchStateUnavailableError(str(exc)) from exc

    async def _load_job(self, job_id: UUID, caller_id: Optional[str]) -> BatchJobRead:
        job = await self.jobs.get_job(job_id)
        if job is None or (caller_id is not None and job.user_id != caller_id):
            raise JobNotFoundError(job_id)
        return job

    async def _resolve_concurrency(self, user_id: str) -> int:
        try:
            limit = await self.plans.resolve_concurrency_limit(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Concurrency lookup failed for %s; using default: %s", user_id, exc)
            return self.config.default_concurrency
        return limit if limit and limit > 0 else self.config.default_concurrency

    def _max_retries(self, job: BatchJobRead) -> int:
        configured = (job.settings or {}).get("max_retries")
        if isinstance(configured, int) and configured >= 0:
            return min(configured, self.config.max_retries_per_item)
        return self.config.max_retries_per_item

    async def _process_batch(self, job_id: UUID, caller_id: Optional[str]) -> ProcessBatchResponse:
        started = time.perf_counter()
        job = await self._load_job(job_id, caller_id)
        limit = await self._resolve_concurrency(job.user_id)

        if job.status not in DISPATCHABLE_JOB_STATUSES:
            return self._response(job, None, started, message=f"Job is {JobStatus(job.status).value}; nothing to process")

        if job.status == JobStatus.PENDING:
            job = await self.state.start_job(job.id) or await self._load_job(job_id, caller_id)
            if job.status not in DISPATCHABLE_JOB_STATUSES:
                return self._response(job, None, started, message=f"Job is {JobStatus(job.status).value}; nothing to process")

        max_retries = self._max_retries(job)
        await self.state.recover_stale_items(job.id)
        eligible = await self.state.select_eligible_items(job.id, limit, max_retries)
        claimed = await self.state.mark_processing(eligible, max_retries)

        if not claimed:
            counts = await self.state.refresh_counters(job.id, max_retries)
            if not self.state.has_more(counts) and counts.processing == 0:
                job = await self._finalize(job.id) or await self._load_job(job_id, None)
                return self._response(job, counts, started, message="All items have been processed")
            job = await self._load_job(job_id, None)
            return self._response(
                job, counts, started, has_more=True, message="Items are being processed by another worker"
            )

        logger.info("Processing %s items for job %s (concurrency %s)", len(claimed), job.id, limit)
        settings = job.job_settings()
        semaphore = asyncio.Semaphore(limit)
        outcomes = await asyncio.gather(
            *(self._run_item(job, item, settings, semaphore) for item in claimed),
            return_exceptions=True,
        )

        succeeded = failed = 0
        for item, outcome in zip(claimed, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Recording outcome for item %s failed: %s", item.id, outcome)
                failed += 1
            elif outcome is not None and outcome.status == ItemStatus.COMPLETED:
                succeeded += 1
            else:
                failed += 1

        counts = await self.state.refresh_counters(job.id, max_retries)
        has_more = self.state.has_more(counts)
        final: Optional[BatchJobRead] = None
        if not has_more and counts.pending == 0 and counts.processing == 0:
            final = await self._finalize(job.id)
        job = final or await self._load_job(job_id, None)

        return self._response(
            job,
            counts,
            started,
            processed=len(claimed),
            succeeded=succeeded,
            failed=failed,
            has_more=has_more,
            message=f"Processed {len(claimed)} items ({succeeded} succeeded, {failed} failed)",
        )

    async def _run_item(
        self, job: BatchJobRead, item: BatchItemRead, settings: BatchJobSettings, semaphore: asyncio.Semaphore
    ) -> Optional[BatchItemRead]:
        async with semaphore:
            result = await self._execute_item(job, item, settings)
            return await self._record_outcome(item.id, result)

    async def _record_outcome(self, item_id: UUID, result: ResearchResult) -> Optional[BatchItemRead]:
        """Persist an outcome, retrying once; a success that still cannot be stored is logged in full."""
        try:
            return await self.state.record_outcome(item_id, result)
        except STORE_ERRORS as exc:
            logger.warning("Recording outcome for item %s failed; retrying once: %s", item_id, exc)
        await asyncio.sleep(OUTCOME_RETRY_DELAY_SECONDS)
        try:
            return await self.state.record_outcome(item_id, result)
        except STORE_ERRORS:
            if result.success:
                logger.error("Research result for item %s could not be stored: %s", item_id, result.model_dump_json())
            raise

    async def _execute_item(
        self, job: BatchJobRead, item: BatchItemRead, settings: BatchJobSettings
    ) -> ResearchResult:
        """Run one attempt under the idempotency guard; never raises for research failures."""
        started = time.perf_counter()
        try:
            prospect = item.prospect()
        except ValidationError as exc:
            return ResearchResult.failure(f"Permanent error: invalid prospect data ({exc.error_count()} errors)")

        key = IdempotencyService.build_key(
            RESEARCH_OPERATION,
            job_id=str(job.id),
            item_id=str(item.id),
            attempt=item.retry_count,
        )

        async def attempt() -> dict:
            result = await asyncio.wait_for(
                self.executor.research(prospect, settings),
                timeout=self.item_timeout,
            )
            return result.model_dump(mode="json")

        try:
            payload = await self.idempotency.run_guarded(key, RESEARCH_OPERATION, attempt)
            return ResearchResult.model_validate(payload)
        except asyncio.TimeoutError:
            return ResearchResult.failure(
                f"Transient error: research timed out after {self.item_timeout:g}s",
                "transient",
                ms_since(started),
            )
        except IdempotencyInProgressError:
            return ResearchResult.failure(
                "Transient error: this attempt is already running elsewhere", "transient", ms_since(started)
            )
        except IdempotentReplayError as exc:
            return ResearchResult.failure(f"Permanent error: {exc}", "permanent", ms_since(started))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error researching item %s", item.id)
            return ResearchResult.failure(f"Permanent error: {exc}", "permanent", ms_since(started))

    async def _finalize(self, job_id: UUID) -> Optional[BatchJobRead]:
        """Finalize and, only for the winning caller, submit the completion notification."""
        final = await self.state.finalize_if_complete(job_id)
        if final is not None and final.status == JobStatus.COMPLETED:
            self.side_effects.submit("job_completed_notification", lambda: self.notifier.notify_job_completed(final))
        return final

    async def _retry_item(self, job_id: UUID, item_id: UUID, caller_id: Optional[str]) -> RetryItemResponse:
        started = time.perf_counter()
        job = await self._load_job(job_id, caller_id)
        item = await self.items.get_item(job.id, item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        max_retries = self._max_retries(job)
        if item.status == ItemStatus.COMPLETED:
            raise RetryRejectedError("Item is already completed")
        if item.status == ItemStatus.PROCESSING:
            raise RetryRejectedError("Item is currently being processed")
        if item.retry_count >= max_retries:
            raise RetryRejectedError(f"Maximum retry limit reached ({max_retries} retries)")
        if job.status == JobStatus.CANCELLED:
            raise RetryRejectedError("Job has been cancelled")

        claimed = await self.state.mark_processing([item], max_retries)
        if not claimed:
            raise RetryRejectedError("Item is currently being processed")

        result = await self._execute_item(job, claimed[0], job.job_settings())
        recorded = await self._record_outcome(item.id, result)
        updated = recorded or await self.items.get_item(job.id, item_id)
        if updated is None:
            raise ItemNotFoundError(item_id)

        counts = await self.state.refresh_counters(job.id, max_retries)
        if not self.state.has_more(counts) and counts.pending == 0 and counts.processing == 0:
            await self._finalize(job.id)

        success = updated.status == ItemStatus.COMPLETED
        return RetryItemResponse(
            success=success,
            item=updated,
            message="Item processed successfully" if success else (updated.error_message or "Processing failed"),
            processing_time_ms=ms_since(started),
        )

    @staticmethod
    def _response(
        job: BatchJobRead,
        counts: Optional[ItemCounts],
        started: float,
        *,
        processed: int = 0,
        succeeded: int = 0,
        failed: int = 0,
        has_more: bool = False,
        message: str = "",
    ) -> ProcessBatchResponse:
        completed_count = counts.completed if counts else job.completed_count
        failed_count = counts.failed if counts else job.failed_count
        return ProcessBatchResponse(
            items_processed=processed,
            items_succeeded=succeeded,
            items_failed=failed,
            job_status=job.status,
            progress=ProgressSnapshot(completed=completed_count, total=job.total_prospects, failed=failed_count),
            has_more=has_more,
            processing_time_ms=ms_since(started),
            message=message,
        )
