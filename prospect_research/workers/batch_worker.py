"""Batch research worker.

Advances every dispatchable job (pending or processing, oldest first) by one
process_batch slice per pass. Item claims are conditional updates, so any
number of workers and HTTP pollers can run side by side.
"""

import argparse
import asyncio
import logging
import os
import socket
import time
from typing import Optional

import httpx

from prospect_research.core.config import Settings
from prospect_research.core.dependencies import build_container
from prospect_research.db.session import build_engine, build_session_factory
from prospect_research.repositories.stores import JobStore
from prospect_research.services.batch_dispatcher import BatchDispatcher, BatchStateUnavailableError, JobNotFoundError
from prospect_research.services.idempotency_service import IdempotencyService
from prospect_research.services.research_cache_service import ResearchCacheService

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_SECONDS = 15 * 60


class BatchWorker:
    """Poll dispatchable jobs and process one slice of each."""

    def __init__(
        self,
        jobs: JobStore,
        dispatcher: BatchDispatcher,
        cache: Optional[ResearchCacheService] = None,
        idempotency: Optional[IdempotencyService] = None,
        worker_id: Optional[str] = None,
        poll_interval: float = 2.0,
        jobs_per_pass: int = 20,
    ) -> None:
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.cache = cache
        self.idempotency = idempotency
        self.worker_id = worker_id or f"batch-{socket.gethostname()}-{os.getpid()}"
        self.poll_interval = poll_interval
        self.jobs_per_pass = jobs_per_pass
        self._stop_event = asyncio.Event()
        self._last_housekeeping = 0.0

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_once(self) -> int:
        """Process one slice of each dispatchable job; returns how many jobs still have work."""
        busy = 0
        for job in await self.jobs.list_dispatchable_jobs(self.jobs_per_pass):
            try:
                response = await self.dispatcher.process_batch(job.id)
            except JobNotFoundError:
                continue
            except BatchStateUnavailableError as exc:
                logger.warning("Worker %s skipped job %s: %s", self.worker_id, job.id, exc)
                continue
            if response.items_processed:
                logger.info(
                    "Worker %s job %s: %s",
                    self.worker_id,
                    job.id,
                    response.message,
                )
            if response.has_more:
                busy += 1
        return busy

    async def housekeeping(self) -> int:
        """Purge expired cache and idempotency rows."""
        removed = 0
        if self.cache is not None:
            removed += await self.cache.purge_expired()
        if self.idempotency is not None:
            removed += await self.idempotency.purge_expired()
        if removed:
            logger.info("Worker %s purged %s expired rows", self.worker_id, removed)
        self._last_housekeeping = time.monotonic()
        return removed

    async def run_forever(self) -> None:
        """Poll until stopped; sleeps poll_interval only when no job has more work."""
        while not self._stop_event.is_set():
            if time.monotonic() - self._last_housekeeping >= HOUSEKEEPING_INTERVAL_SECONDS:
                await self.housekeeping()

            busy = await self.run_once()
            if busy:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue


async def run_worker(loop: bool, sleep_seconds: float) -> int:
    settings = Settings()
    engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    session_factory = build_session_factory(engine)
    async with httpx.AsyncClient() as http_client:
        container = build_container(settings, session_factory, http_client)
        worker = BatchWorker(
            container.jobs,
            container.dispatcher,
            cache=container.cache,
            idempotency=container.idempotency,
            poll_interval=sleep_seconds,
        )
        try:
            if loop:
                await worker.run_forever()
            else:
                await worker.housekeeping()
                await worker.run_once()
        finally:
            await container.side_effects.drain(timeout=30)
            await engine.dispose()
    return 0


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    parser = argparse.ArgumentParser(description="Batch prospect research worker")
    parser.add_argument("--once", action="store_true", help="Process one slice of each active job and exit")
    parser.add_argument("--loop", action="store_true", help="Run continuously")
    parser.add_argument("--sleep", type=float, default=2.0, help="Sleep seconds between idle polls when looping")
    args = parser.parse_args()

    loop_mode = args.loop and not args.once
    return asyncio.run(run_worker(loop=loop_mode, sleep_seconds=args.sleep))


if __name__ == "__main__":
    raise SystemExit(main())
