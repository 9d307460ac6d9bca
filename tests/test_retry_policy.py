import asyncio

import pytest

from prospect_research.services.retry_policy import (
    PermanentBackendError,
    RetryPolicy,
    TransientBackendError,
    parse_retry_after,
)


class Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.unit
def test_backoff_grows_exponentially_and_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)

    assert [policy.backoff_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]
    assert policy.backoff_delay(0, retry_after=3.0) == 3.0
    assert RetryPolicy(base_delay=1.0, jitter=0.5).backoff_delay(0, rng=lambda: 1.0) == 1.5


@pytest.mark.unit
def test_max_elapsed_covers_every_attempt_and_wait():
    assert RetryPolicy(max_retries=3, max_delay=30.0, attempt_timeout=45.0).max_elapsed_seconds() == 270.0
    assert RetryPolicy(max_retries=0, attempt_timeout=10.0).max_elapsed_seconds() == 10.0
    assert RetryPolicy(attempt_timeout=None).max_elapsed_seconds() is None


@pytest.mark.unit
def test_transient_errors_are_retried_until_success():
    sleeper = Sleeper()
    attempts = []

    async def call():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientBackendError("HTTP 503", status_code=503)
        return "ok"

    policy = RetryPolicy(max_retries=3, base_delay=1.0, jitter=0.0, attempt_timeout=None)
    result = asyncio.run(policy.run(call, name="sonar", sleeper=sleeper))

    assert result == "ok"
    assert len(attempts) == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.unit
def test_permanent_errors_fail_immediately():
    sleeper = Sleeper()
    attempts = []

    async def call():
        attempts.append(1)
        raise PermanentBackendError("HTTP 401", status_code=401)

    with pytest.raises(PermanentBackendError):
        asyncio.run(RetryPolicy(attempt_timeout=None).run(call, sleeper=sleeper))
    assert len(attempts) == 1
    assert sleeper.delays == []


@pytest.mark.unit
def test_exhausted_retries_raise_the_last_transient_error():
    sleeper = Sleeper()

    async def call():
        raise TransientBackendError("HTTP 429", status_code=429, retry_after=7.0)

    policy = RetryPolicy(max_retries=2, base_delay=1.0, jitter=0.0, attempt_timeout=None)
    with pytest.raises(TransientBackendError) as exc_info:
        asyncio.run(policy.run(call, sleeper=sleeper))

    assert exc_info.value.status_code == 429
    assert sleeper.delays == [7.0, 7.0]


@pytest.mark.unit
def test_attempt_timeout_is_transient():
    sleeper = Sleeper()

    async def call():
        await asyncio.sleep(1)

    policy = RetryPolicy(max_retries=1, jitter=0.0, attempt_timeout=0.01)
    with pytest.raises(TransientBackendError) as exc_info:
        asyncio.run(policy.run(call, name="grok", sleeper=sleeper))

    assert "grok timed out" in str(exc_info.value)
    assert len(sleeper.delays) == 1


@pytest.mark.unit
def test_parse_retry_after():
    assert parse_retry_after("2.5") == 2.5
    assert parse_retry_after("-1") == 0.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
    assert parse_retry_after(None) is None
