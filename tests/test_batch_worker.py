import asyncio

import pytest

from prospect_research.core.config import CacheConfig
from prospect_research.schemas.batch import JobStatus
from prospect_research.services.research_cache_service import ResearchCacheService
from prospect_research.workers.batch_worker import BatchWorker
from tests.fakes import Harness, InMemoryCacheStore


@pytest.mark.unit
def test_run_once_advances_every_dispatchable_job():
    harness = Harness(concurrency=2)

    async def main():
        busy_job = await harness.create_job(["A", "B", "C"])
        small_job = await harness.create_job(["D"], user_id="user-2")
        worker = BatchWorker(harness.store, harness.dispatcher, worker_id="test-worker")

        first_pass = await worker.run_once()
        second_pass = await worker.run_once()
        third_pass = await worker.run_once()
        await harness.side_effects.drain()
        return busy_job, small_job, (first_pass, second_pass, third_pass)

    busy_job, small_job, passes = asyncio.run(main())

    assert passes == (1, 0, 0)
    assert harness.store.jobs[busy_job.id].status == JobStatus.COMPLETED
    assert harness.store.jobs[small_job.id].status == JobStatus.COMPLETED
    assert len(harness.notifier.completed) == 2


@pytest.mark.unit
def test_run_once_skips_paused_jobs():
    harness = Harness()

    async def main():
        job = await harness.create_job(["A"])
        await harness.state.change_job_status(job, JobStatus.PAUSED)
        return job, await BatchWorker(harness.store, harness.dispatcher).run_once()

    job, busy = asyncio.run(main())

    assert busy == 0
    assert harness.store.jobs[job.id].status == JobStatus.PAUSED
    assert harness.backends[0].calls == []


@pytest.mark.unit
def test_housekeeping_purges_expired_rows():
    harness = Harness()
    cache = ResearchCacheService(InMemoryCacheStore(), CacheConfig(ttl_seconds=60), clock=harness.clock)

    async def main():
        await cache.set("prospect", "Jane Doe", {"report": "x"})
        await harness.idempotency.begin("key-1", "research_item")
        harness.clock.advance(3 * 24 * 60 * 60)
        worker = BatchWorker(harness.store, harness.dispatcher, cache=cache, idempotency=harness.idempotency)
        return await worker.housekeeping()

    # one entry per cache tier plus the idempotency record
    assert asyncio.run(main()) == 3


@pytest.mark.unit
def test_request_stop_ends_the_loop():
    harness = Harness()
    worker = BatchWorker(harness.store, harness.dispatcher, poll_interval=0.01)

    async def main():
        runner = asyncio.create_task(worker.run_forever())
        await asyncio.sleep(0.05)
        worker.request_stop()
        await asyncio.wait_for(runner, timeout=1)

    asyncio.run(main())
