import asyncio
import uuid

import pytest

from prospect_research.core.config import IdempotencyConfig
from prospect_research.schemas.batch import BatchJobSettings
from prospect_research.services.idempotency_service import (
    IdempotencyInProgressError,
    IdempotencyService,
    IdempotentReplayError,
)
from tests.fakes import FakeClock, InMemoryIdempotencyStore


def _service(clock: FakeClock) -> IdempotencyService:
    config = IdempotencyConfig(processing_ttl_seconds=300, completed_ttl_seconds=3600)
    return IdempotencyService(InMemoryIdempotencyStore(clock), config, clock=clock)


@pytest.mark.unit
def test_build_key_is_deterministic_and_field_order_free():
    first = IdempotencyService.build_key("research_item", job_id="j", item_id="i", attempt=0)
    second = IdempotencyService.build_key("research_item", attempt=0, item_id="i", job_id="j")
    retry = IdempotencyService.build_key("research_item", job_id="j", item_id="i", attempt=1)

    assert first == second
    assert first != retry
    assert len(first) == 64


@pytest.mark.unit
def test_build_key_normalizes_field_types():
    job_id = uuid.uuid4()
    as_uuid = IdempotencyService.build_key("research_item", job_id=job_id, settings=BatchJobSettings(use_cache=False))
    plain_settings = BatchJobSettings(use_cache=False).model_dump(mode="json", exclude_none=True)
    as_plain = IdempotencyService.build_key("research_item", job_id=str(job_id), settings=plain_settings)
    with_none = IdempotencyService.build_key(
        "research_item", job_id=job_id, settings=BatchJobSettings(use_cache=False), client_key=None
    )

    assert as_uuid == as_plain == with_none


@pytest.mark.unit
def test_begin_then_replay_completed_result(clock):
    service = _service(clock)

    async def main():
        first = await service.begin("k", "op")
        assert first.proceed and first.status == "new"

        second = await service.begin("k", "op")
        assert not second.proceed and second.status == "in_progress"

        await service.complete("k", {"job_id": "123"})
        third = await service.begin("k", "op")
        assert third.status == "completed"
        assert third.cached_result == {"job_id": "123"}

    asyncio.run(main())


@pytest.mark.unit
def test_stalled_in_progress_record_is_reclaimed(clock):
    service = _service(clock)

    async def main():
        await service.begin("k", "op")
        clock.advance(200)
        assert (await service.begin("k", "op")).status == "in_progress"

        clock.advance(200)
        decision = await service.begin("k", "op")
        assert decision.proceed and decision.status == "reclaimed"

    asyncio.run(main())


@pytest.mark.unit
def test_expired_completed_record_is_reclaimed(clock):
    service = _service(clock)

    async def main():
        await service.begin("k", "op")
        await service.complete("k", {"value": 1})
        clock.advance(3601)

        decision = await service.begin("k", "op")
        assert decision.proceed
        assert decision.status == "reclaimed"

    asyncio.run(main())


@pytest.mark.unit
def test_release_forgets_the_key(clock):
    service = _service(clock)

    async def main():
        await service.begin("k", "op")
        await service.release("k")
        assert (await service.begin("k", "op")).status == "new"

    asyncio.run(main())


@pytest.mark.unit
def test_run_guarded_executes_once_for_concurrent_callers(clock):
    service = _service(clock)
    calls = []

    async def charge():
        calls.append(1)
        await asyncio.sleep(0.01)
        return {"charged": 5}

    async def main():
        return await asyncio.gather(
            service.run_guarded("charge-key", "charge", charge),
            service.run_guarded("charge-key", "charge", charge),
            return_exceptions=True,
        )

    results = asyncio.run(main())

    assert len(calls) == 1
    assert {"charged": 5} in results
    assert any(isinstance(r, IdempotencyInProgressError) for r in results)


@pytest.mark.unit
def test_run_guarded_replays_failures(clock):
    service = _service(clock)

    async def boom():
        raise RuntimeError("upstream exploded")

    async def main():
        with pytest.raises(RuntimeError):
            await service.run_guarded("k", "op", boom)
        with pytest.raises(IdempotentReplayError) as exc_info:
            await service.run_guarded("k", "op", boom)
        assert str(exc_info.value) == "upstream exploded"
        assert exc_info.value.error["type"] == "RuntimeError"

    asyncio.run(main())


@pytest.mark.unit
def test_purge_expired(clock):
    service = _service(clock)

    async def main():
        await service.begin("old", "op")
        await service.complete("old", {})
        clock.advance(4000)
        await service.begin("fresh", "op")
        assert await service.purge_expired() == 1

    asyncio.run(main())
