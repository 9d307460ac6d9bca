import asyncio
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from prospect_research.core.config import WebhookConfig
from prospect_research.schemas.batch import BatchJobRead, JobStatus
from prospect_research.services.notification_service import (
    CompositeNotifier,
    WebhookNotifier,
    build_completion_payload,
    sign_payload,
)
from prospect_research.services.secrets_service import SecretsService, build_secrets_service
from tests.fakes import RecordingNotifier

STARTED = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _job(**overrides) -> BatchJobRead:
    values = dict(
        id=uuid.uuid4(),
        created_at=STARTED,
        updated_at=STARTED,
        user_id="user-1",
        name="Spring donors",
        status=JobStatus.COMPLETED,
        total_prospects=3,
        completed_count=2,
        failed_count=1,
        webhook_url="https://hooks.example.com/batch",
        started_at=STARTED,
        completed_at=STARTED + timedelta(seconds=90),
    )
    values.update(overrides)
    return BatchJobRead(**values)


class Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _notifier(handler, sleeper=None, secrets=None) -> WebhookNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier(
        WebhookConfig(app_url="https://app.example.com/"),
        client=client,
        sleeper=sleeper or Sleeper(),
        secrets=secrets,
    )


@pytest.mark.unit
def test_completion_payload_shape():
    job = _job()
    payload = build_completion_payload(job, "https://app.example.com/")

    assert payload["event"] == "batch.completed"
    data = payload["data"]
    assert data["job_id"] == str(job.id)
    assert data["status"] == "completed"
    assert data["summary"] == {"total_prospects": 3, "completed_count": 2, "failed_count": 1, "duration_ms": 90_000}
    assert data["links"]["export_csv"] == f"https://app.example.com/api/batch-prospects/{job.id}/export"


@pytest.mark.unit
def test_signed_delivery_with_encrypted_secret():
    secrets = SecretsService("master")
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = request.content.decode()
        captured["headers"] = request.headers
        return httpx.Response(204)

    notifier = _notifier(handler, secrets=secrets)
    asyncio.run(notifier.notify_job_completed(_job(webhook_secret=secrets.encrypt("whsec"))))

    expected = "sha256=" + hmac.new(b"whsec", captured["body"].encode(), hashlib.sha256).hexdigest()
    assert captured["headers"]["X-Romy-Signature"] == expected
    assert captured["headers"]["X-Romy-Event"] == "batch.completed"
    assert json.loads(captured["body"])["data"]["name"] == "Spring donors"
    assert sign_payload(captured["body"], "whsec") == expected


@pytest.mark.unit
def test_server_errors_are_retried_with_configured_delays():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(503)

    sleeper = Sleeper()
    delivered = asyncio.run(_notifier(handler, sleeper).deliver("https://hooks.example.com/x", {"event": "batch.completed"}))

    assert delivered is False
    assert len(attempts) == 3
    assert sleeper.delays == [1.0, 3.0]


@pytest.mark.unit
def test_client_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(410)

    assert asyncio.run(_notifier(handler).deliver("https://hooks.example.com/x", {})) is False
    assert len(attempts) == 1


@pytest.mark.unit
def test_network_error_then_success():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    assert asyncio.run(_notifier(handler).deliver("https://hooks.example.com/x", {})) is True
    assert len(attempts) == 2


@pytest.mark.unit
def test_undecryptable_secret_skips_delivery():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(200)

    notifier = _notifier(handler, secrets=SecretsService("other-key"))
    asyncio.run(notifier.notify_job_completed(_job(webhook_secret=SecretsService("master").encrypt("whsec"))))
    assert attempts == []


@pytest.mark.unit
def test_jobs_without_webhook_are_skipped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    asyncio.run(_notifier(handler).notify_job_completed(_job(webhook_url=None)))


@pytest.mark.unit
def test_composite_notifier_isolates_failures():
    class Exploding:
        async def notify_job_completed(self, job):
            raise RuntimeError("boom")

    recorder = RecordingNotifier()
    asyncio.run(CompositeNotifier([Exploding(), recorder]).notify_job_completed(_job()))
    assert len(recorder.completed) == 1


@pytest.mark.unit
def test_secrets_service_requires_key_outside_debug():
    assert build_secrets_service(None) is None
    assert build_secrets_service(None, debug=True) is not None
    box = build_secrets_service("k")
    assert box.decrypt(box.encrypt("value")) == "value"
