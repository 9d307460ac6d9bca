"""
Completion notifications for batch jobs.

WebhookNotifier posts a signed batch.completed event to the job's webhook
URL. Notifiers are only ever invoked through the side-effect runner, so a
failed delivery never affects the job outcome.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence

import httpx

from prospect_research.core.config import WebhookConfig
from prospect_research.schemas.batch import BatchJobRead, JobStatus
from prospect_research.services.secrets_service import SecretDecryptError, SecretsService
from prospect_research.utils.time import elapsed_ms, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

WEBHOOK_EVENT = "batch.completed"


class Notifier(Protocol):
    async def notify_job_completed(self, job: BatchJobRead) -> None: ...


def sign_payload(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_completion_payload(job: BatchJobRead, app_url: str) -> Dict[str, Any]:
    completed_at = job.completed_at or utc_now()
    duration_ms = elapsed_ms(job.started_at, completed_at) if job.started_at else None
    return {
        "event": WEBHOOK_EVENT,
        "timestamp": utc_now_iso(),
        "data": {
            "job_id": str(job.id),
            "name": job.name,
            "status": JobStatus(job.status).value,
            "summary": {
                "total_prospects": job.total_prospects,
                "completed_count": job.completed_count,
                "failed_count": job.failed_count,
                "duration_ms": duration_ms,
            },
            "completed_at": completed_at.isoformat(),
            "links": {
                "results": f"{app_url.rstrip('/')}/api/batch-prospects/{job.id}",
                "export_csv": f"{app_url.rstrip('/')}/api/batch-prospects/{job.id}/export",
            },
        },
    }


class LoggingNotifier:
    async def notify_job_completed(self, job: BatchJobRead) -> None:
        logger.info(
            "Batch job %s (%s) finished: %s/%s completed, %s failed",
            job.id,
            job.name,
            job.completed_count,
            job.total_prospects,
            job.failed_count,
        )


class WebhookNotifier:
    def __init__(
        self,
        config: Optional[WebhookConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        secrets: Optional[SecretsService] = None,
    ):
        self.config = config or WebhookConfig()
        self.client = client
        self.sleeper = sleeper
        self.secrets = secrets

    async def notify_job_completed(self, job: BatchJobRead) -> None:
        if not job.webhook_url:
            return
        secret = job.webhook_secret
        if secret and self.secrets is not None:
            try:
                secret = self.secrets.decrypt(secret)
            except SecretDecryptError:
                logger.error("Webhook secret for job %s could not be decrypted; not delivering", job.id)
                return
        delivered = await self.deliver(job.webhook_url, build_completion_payload(job, self.config.app_url), secret)
        if not delivered:
            logger.error("Webhook delivery for job %s gave up after %s attempts", job.id, self.max_attempts)

    @property
    def max_attempts(self) -> int:
        return max(1, len(self.config.retry_delays))

    async def deliver(self, url: str, payload: Dict[str, Any], secret: Optional[str] = None) -> bool:
        """POST payload; retries network errors and 5xx, never 4xx. Returns True on 2xx."""
        body = json.dumps(payload, separators=(",", ":"), default=str)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "ProspectResearch-Webhook/1.0",
            "X-Romy-Event": payload.get("event", WEBHOOK_EVENT),
            "X-Romy-Delivery": str(uuid.uuid4()),
            "X-Romy-Timestamp": payload.get("timestamp") or utc_now_iso(),
        }
        if secret:
            headers["X-Romy-Signature"] = sign_payload(body, secret)

        delays: Sequence[float] = self.config.retry_delays or (0.0,)
        for attempt in range(self.max_attempts):
            try:
                resp = await self._post(url, body, headers)
            except httpx.HTTPError as exc:
                logger.warning("Webhook attempt %s to %s failed: %s", attempt + 1, url, exc)
            else:
                if resp.status_code < 300:
                    logger.info("Webhook delivered to %s (attempt %s)", url, attempt + 1)
                    return True
                if 400 <= resp.status_code < 500:
                    logger.warning("Webhook to %s rejected with HTTP %s; not retrying", url, resp.status_code)
                    return False
                logger.warning("Webhook attempt %s to %s got HTTP %s", attempt + 1, url, resp.status_code)

            if attempt + 1 < self.max_attempts:
                await self.sleeper(delays[attempt])
        return False

    async def _post(self, url: str, body: str, headers: Dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(url, content=body, headers=headers, timeout=self.config.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            return await client.post(url, content=body, headers=headers)


class CompositeNotifier:
    """Fans out to several notifiers; one failing does not stop the rest."""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers = list(notifiers)

    async def notify_job_completed(self, job: BatchJobRead) -> None:
        results = await asyncio.gather(
            *(notifier.notify_job_completed(job) for notifier in self.notifiers),
            return_exceptions=True,
        )
        for notifier, result in zip(self.notifiers, results):
            if isinstance(result, Exception):
                logger.error("Notifier %s failed for job %s: %s", type(notifier).__name__, job.id, result)
