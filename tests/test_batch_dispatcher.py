"""Dispatcher scenarios against in-memory stores."""

import asyncio

import pytest

from prospect_research.core.config import DispatcherConfig
from prospect_research.schemas.batch import ItemStatus, JobStatus
from prospect_research.services.batch_dispatcher import (
    BatchStateUnavailableError,
    JobNotFoundError,
    RetryRejectedError,
)
from prospect_research.services import batch_dispatcher
from prospect_research.services.retry_policy import PermanentBackendError, RetryPolicy, TransientBackendError
from tests.fakes import Harness, ScriptedBackend


async def _drain(harness: Harness, job_id, max_calls: int = 20):
    responses = []
    for _ in range(max_calls):
        response = await harness.dispatcher.process_batch(job_id)
        responses.append(response)
        if not response.has_more:
            break
    await harness.side_effects.drain(timeout=1)
    return responses


@pytest.mark.asyncio
async def test_five_prospects_with_concurrency_two():
    backend = ScriptedBackend(delay=0.01)
    harness = Harness([backend], concurrency=2)
    job = await harness.create_job(["A", "B", "C", "D", "E"])

    responses = await _drain(harness, job.id)

    assert [r.items_processed for r in responses] == [2, 2, 1]
    assert [r.has_more for r in responses] == [True, True, False]
    assert responses[-1].job_status == JobStatus.COMPLETED
    assert responses[-1].progress.completed == 5
    assert backend.max_in_flight <= 2
    assert [p.name for p in backend.calls] == ["A", "B", "C", "D", "E"]

    final = await harness.store.get_job(job.id)
    assert final.status == JobStatus.COMPLETED
    assert final.started_at is not None and final.completed_at is not None
    assert len(harness.notifier.completed) == 1


@pytest.mark.asyncio
async def test_successful_items_carry_extracted_metrics(harness):
    job = await harness.create_job(["Jane Doe"])
    await _drain(harness, job.id)

    item = (await harness.store.list_items(job.id))[0]
    assert item.status == ItemStatus.COMPLETED
    assert item.romy_score == 24
    assert item.estimated_net_worth == 5_000_000
    assert item.sources_found[0]["url"].startswith("https://example.com/")
    assert item.model_used == "scripted-model"


@pytest.mark.asyncio
async def test_exhausted_retries_leave_item_failed_and_job_completed():
    backend = ScriptedBackend(script=lambda prospect, n: TransientBackendError("HTTP 503", status_code=503))
    harness = Harness([backend], concurrency=2)
    job = await harness.create_job(["A"])

    for _ in range(3):
        await harness.dispatcher.process_batch(job.id)
    fourth = await harness.dispatcher.process_batch(job.id)
    await harness.side_effects.drain(timeout=1)

    assert len(backend.calls) == 3
    assert fourth.items_processed == 0
    assert fourth.job_status == JobStatus.COMPLETED

    item = (await harness.store.list_items(job.id))[0]
    assert item.status == ItemStatus.FAILED
    assert item.retry_count == 3
    assert item.error_message.startswith("Transient error")

    final = await harness.store.get_job(job.id)
    assert final.failed_count == 1
    assert final.completed_count == 0
    assert len(harness.notifier.completed) == 1


@pytest.mark.asyncio
async def test_permanent_failures_are_recorded_per_item():
    def script(prospect, n):
        if prospect.name == "B":
            return PermanentBackendError("HTTP 400: bad request")
        return None

    harness = Harness([ScriptedBackend(script=script)], concurrency=3)
    job = await harness.create_job(["A", "B", "C"])

    first = await harness.dispatcher.process_batch(job.id)
    assert first.items_succeeded == 2
    assert first.items_failed == 1
    assert first.message == "Processed 3 items (2 succeeded, 1 failed)"

    failed = [item for item in await harness.store.list_items(job.id) if item.status == ItemStatus.FAILED]
    assert failed[0].prospect_name == "B"
    assert failed[0].error_message.startswith("Permanent error")


@pytest.mark.asyncio
async def test_concurrent_invocations_never_double_claim():
    backend = ScriptedBackend(delay=0.01)
    harness = Harness([backend], concurrency=2)
    job = await harness.create_job(["A", "B", "C", "D"])

    await asyncio.gather(
        harness.dispatcher.process_batch(job.id),
        harness.dispatcher.process_batch(job.id),
        harness.dispatcher.process_batch(job.id),
    )
    await _drain(harness, job.id)

    names = [p.name for p in backend.calls]
    assert sorted(names) == ["A", "B", "C", "D"]
    assert all(item.status == ItemStatus.COMPLETED for item in await harness.store.list_items(job.id))
    assert len(harness.notifier.completed) == 1


@pytest.mark.asyncio
async def test_completion_is_announced_once_under_racing_finalizers():
    harness = Harness([ScriptedBackend()], concurrency=5)
    job = await harness.create_job(["A", "B"])
    await harness.dispatcher.process_batch(job.id)

    responses = await asyncio.gather(*(harness.dispatcher.process_batch(job.id) for _ in range(4)))
    await harness.side_effects.drain(timeout=1)

    assert all(r.job_status == JobStatus.COMPLETED for r in responses)
    assert len(harness.notifier.completed) == 1
    assert (await harness.store.get_job(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_item_timeout_becomes_transient_failure():
    config = DispatcherConfig(max_retries_per_item=3, default_concurrency=2, item_timeout_seconds=0.05)
    harness = Harness([ScriptedBackend(delay=1.0)], config=config)
    job = await harness.create_job(["Slow"])

    response = await harness.dispatcher.process_batch(job.id)

    assert response.items_failed == 1
    assert response.has_more is True
    item = (await harness.store.list_items(job.id))[0]
    assert item.status == ItemStatus.FAILED
    assert "timed out" in item.error_message



@pytest.mark.asyncio
async def test_item_timeout_leaves_room_for_every_backend_retry():
    policy = RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.01, jitter=0.0, attempt_timeout=0.05)
    config = DispatcherConfig(max_retries_per_item=3, default_concurrency=2, item_timeout_seconds=0.06)
    backend = ScriptedBackend(delay=1.0)
    harness = Harness([backend], config=config, retry_policy=policy)
    job = await harness.create_job(["Slow"])

    response = await harness.dispatcher.process_batch(job.id)

    assert len(backend.calls) == 3
    assert response.items_failed == 1
    item = (await harness.store.list_items(job.id))[0]
    assert item.status == ItemStatus.FAILED
    assert item.error_message.startswith("Transient error: scripted: scripted timed out after 0.05s")


def test_configured_item_timeout_is_raised_to_the_retry_envelope():
    harness = Harness(retry_policy=RetryPolicy(), config=DispatcherConfig(item_timeout_seconds=120))
    # 4 attempts of 45s plus 3 waits capped at 30s
    assert harness.dispatcher.item_timeout == 270 + batch_dispatcher.ITEM_TIMEOUT_MARGIN_SECONDS

    longer = Harness(retry_policy=RetryPolicy(), config=DispatcherConfig(item_timeout_seconds=600))
    assert longer.dispatcher.item_timeout == 600


@pytest.mark.asyncio
async def test_paused_job_is_not_processed(harness):
    job = await harness.create_job(["A"])
    await harness.state.change_job_status(job, JobStatus.PAUSED)

    response = await harness.dispatcher.process_batch(job.id)

    assert response.items_processed == 0
    assert response.job_status == JobStatus.PAUSED
    assert response.message == "Job is paused; nothing to process"
    assert harness.backends[0].calls == []


@pytest.mark.asyncio
async def test_job_owned_by_someone_else_is_not_found(harness):
    job = await harness.create_job(["A"], user_id="owner")

    with pytest.raises(JobNotFoundError):
        await harness.dispatcher.process_batch(job.id, caller_id="intruder")


@pytest.mark.asyncio
async def test_store_outage_surfaces_as_unavailable(harness):
    job = await harness.create_job(["A"])
    harness.store.fail_reads = True

    with pytest.raises(BatchStateUnavailableError):
        await harness.dispatcher.process_batch(job.id)


@pytest.mark.asyncio
async def test_per_job_max_retries_lowers_the_cap():
    backend = ScriptedBackend(script=lambda prospect, n: TransientBackendError("HTTP 429", status_code=429))
    harness = Harness([backend])
    job = await harness.create_job(["A"], settings={"max_retries": 1})

    first = await harness.dispatcher.process_batch(job.id)
    second = await harness.dispatcher.process_batch(job.id)

    assert first.has_more is False
    assert first.job_status == JobStatus.COMPLETED
    assert second.items_processed == 0
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_retry_item_after_failure():
    attempts = []

    def fail_first_attempt_of_a(prospect, n):
        attempts.append(prospect.name)
        if prospect.name == "A" and attempts.count("A") == 1:
            return TransientBackendError("HTTP 502", status_code=502)
        return None

    backend = ScriptedBackend(script=fail_first_attempt_of_a)
    harness = Harness([backend])
    job = await harness.create_job(["A", "B"])
    first = await harness.dispatcher.process_batch(job.id)

    assert first.items_succeeded == 1 and first.items_failed == 1
    assert first.job_status == JobStatus.PROCESSING
    failed = [i for i in await harness.store.list_items(job.id) if i.status == ItemStatus.FAILED]
    assert [i.prospect_name for i in failed] == ["A"]
    assert failed[0].retry_count == 1

    response = await harness.dispatcher.retry_item(job.id, failed[0].id)

    assert response.success is True
    assert response.message == "Item processed successfully"
    assert response.item.status == ItemStatus.COMPLETED
    assert response.item.retry_count == 1

    await harness.side_effects.drain(timeout=1)
    assert (await harness.store.get_job(job.id)).status == JobStatus.COMPLETED
    assert len(harness.notifier.completed) == 1


@pytest.mark.asyncio
async def test_retry_of_completed_item_is_rejected(harness):
    job = await harness.create_job(["A"])
    await harness.dispatcher.process_batch(job.id)
    item = (await harness.store.list_items(job.id))[0]

    with pytest.raises(RetryRejectedError) as exc_info:
        await harness.dispatcher.retry_item(job.id, item.id)
    assert str(exc_info.value) == "Item is already completed"


@pytest.mark.asyncio
async def test_retry_rejected_at_retry_cap():
    backend = ScriptedBackend(script=lambda prospect, n: TransientBackendError("HTTP 504", status_code=504))
    harness = Harness([backend])
    job = await harness.create_job(["A"])
    for _ in range(3):
        await harness.dispatcher.process_batch(job.id)
    item = (await harness.store.list_items(job.id))[0]

    with pytest.raises(RetryRejectedError) as exc_info:
        await harness.dispatcher.retry_item(job.id, item.id)
    assert "Maximum retry limit reached" in str(exc_info.value)


@pytest.mark.asyncio
async def test_success_is_kept_when_the_first_write_fails(harness, monkeypatch):
    monkeypatch.setattr(batch_dispatcher, "OUTCOME_RETRY_DELAY_SECONDS", 0)
    record_success = harness.store.record_success
    failures = []

    async def flaky_record_success(item_id, result, **kwargs):
        if not failures:
            failures.append(item_id)
            raise OSError("connection reset")
        return await record_success(item_id, result, **kwargs)

    monkeypatch.setattr(harness.store, "record_success", flaky_record_success)
    job = await harness.create_job(["A"])

    response = await harness.dispatcher.process_batch(job.id)

    assert len(failures) == 1
    assert response.items_succeeded == 1
    assert response.job_status == JobStatus.COMPLETED
    item = (await harness.store.list_items(job.id))[0]
    assert item.status == ItemStatus.COMPLETED
    assert item.romy_score == 24
