"""
Batch job lifecycle outside the dispatcher: creation (with credit charging),
listing, administrative status changes and deletion.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from prospect_research.core.config import JobLimitsConfig
from prospect_research.errors import AppError
from prospect_research.repositories.stores import ItemStore, JobStore
from prospect_research.schemas.batch import (
    BatchJobCreate,
    BatchJobCreateResponse,
    BatchJobDetail,
    BatchJobRead,
    CreationSummary,
    JobStatus,
    NewBatchItem,
    NewBatchJob,
    ProspectInput,
)
from prospect_research.services.batch_dispatcher import JobNotFoundError
from prospect_research.services.idempotency_service import IdempotencyService
from prospect_research.services.plan_service import CreditCheck, PlanClient
from prospect_research.services.prospect_normalizer import prepare_prospects
from prospect_research.services.secrets_service import SecretsService
from prospect_research.services.state_machine import BatchStateMachine

logger = logging.getLogger(__name__)

CREATE_OPERATION = "create_batch_job"


def _item_from_prospect(index: int, prospect: ProspectInput) -> NewBatchItem:
    return NewBatchItem(
        item_index=index,
        input_data=prospect.model_dump(exclude_none=True),
        prospect_name=prospect.name,
        prospect_address=prospect.address or prospect.full_address,
        prospect_city=prospect.city,
        prospect_state=prospect.state,
        prospect_zip=prospect.zip,
    )


def _validate_webhook_url(url: Optional[str]) -> None:
    if not url:
        return
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise AppError(400, "INVALID_WEBHOOK_URL", "Webhook URL must use HTTP or HTTPS protocol")


class BatchJobService:
    def __init__(
        self,
        jobs: JobStore,
        items: ItemStore,
        plans: PlanClient,
        idempotency: IdempotencyService,
        state_machine: BatchStateMachine,
        limits: Optional[JobLimitsConfig] = None,
        secrets: Optional[SecretsService] = None,
    ):
        self.jobs = jobs
        self.items = items
        self.plans = plans
        self.idempotency = idempotency
        self.state = state_machine
        self.limits = limits or JobLimitsConfig()
        self.secrets = secrets

    async def create_job(
        self,
        user_id: str,
        data: BatchJobCreate,
        idempotency_key: Optional[str] = None,
    ) -> BatchJobCreateResponse:
        """
        Validate, charge and persist a new batch job.

        Nothing is written before every validation passes. The credit charge
        and the insert run inside one idempotency guard when the client sends an
        Idempotency-Key, so a retried request with that key charges once and
        gets the original job back. Without a key every request is a new job.
        """
        if not data.prospects:
            raise AppError(400, "NO_VALID_PROSPECTS", "At least one prospect is required")
        if len(data.prospects) > self.limits.max_prospects_per_batch:
            raise AppError(
                400,
                "TOO_MANY_PROSPECTS",
                f"Maximum {self.limits.max_prospects_per_batch} prospects per batch. "
                f"You provided {len(data.prospects)}.",
            )
        _validate_webhook_url(data.webhook_url)
        if data.webhook_secret and self.secrets is None:
            raise AppError(
                400,
                "SECRETS_MASTER_KEY_MISSING",
                "SECRETS_MASTER_KEY is required to store a webhook secret",
            )

        prepared = prepare_prospects(data.prospects)
        if not prepared.prospects:
            raise AppError(
                400,
                "NO_VALID_PROSPECTS",
                "No valid prospects found",
                {"invalid_rows": [issue.model_dump() for issue in prepared.invalid_rows[:10]]},
            )

        key = None
        if idempotency_key:
            key = IdempotencyService.build_key(CREATE_OPERATION, user_id=user_id, client_key=idempotency_key)

        summary = CreationSummary(
            total_rows=prepared.total_rows,
            accepted=len(prepared.prospects),
            duplicates_removed=prepared.duplicates_removed,
            invalid_rows=prepared.invalid_rows,
            low_quality=prepared.low_quality,
        )

        if key:
            decision = await self.idempotency.begin(key, CREATE_OPERATION)
            if not decision.proceed:
                return await self._replay(
                    user_id, decision.status, decision.cached_result, decision.cached_error, summary
                )

        active = await self.jobs.count_active_jobs(user_id)
        if active >= self.limits.max_active_jobs_per_user:
            await self._release(key)
            raise AppError(
                429,
                "TOO_MANY_ACTIVE_JOBS",
                f"Maximum {self.limits.max_active_jobs_per_user} active jobs allowed. "
                "Please wait for current jobs to complete.",
            )

        cost = len(prepared.prospects) * self.limits.credits_per_prospect
        credit = await self._charge(user_id, cost)
        if not credit.allowed:
            await self._release(key)
            balance = credit.balance or 0
            raise AppError(
                402,
                "INSUFFICIENT_CREDITS",
                f"Insufficient credits. You need {cost} credits but only have {balance:g}. "
                "Please upgrade your plan or reduce the number of prospects.",
                {"required": cost, "balance": credit.balance, "shortfall": credit.shortfall},
            )
        charged = 0 if credit.unlimited else cost

        try:
            job = await self.jobs.create_job(
                NewBatchJob(
                    user_id=user_id,
                    name=data.name,
                    description=data.description,
                    settings=data.settings.model_dump(exclude_none=True),
                    webhook_url=data.webhook_url,
                    webhook_secret=self.secrets.encrypt(data.webhook_secret)
                    if data.webhook_secret and self.secrets is not None
                    else None,
                ),
                [_item_from_prospect(index, p) for index, p in enumerate(prepared.prospects)],
            )
        except Exception as exc:
            await self._compensate(key, user_id, charged, exc)
            if isinstance(exc, (SQLAlchemyError, OSError)):
                raise AppError(503, "BATCH_STATE_UNAVAILABLE", "Failed to create batch job") from exc
            raise

        if key:
            await self.idempotency.complete(key, {"job_id": str(job.id), "credits_charged": charged})
        logger.info("Created batch job %s for %s with %s prospects", job.id, user_id, job.total_prospects)

        summary.credits_charged = charged
        return BatchJobCreateResponse(
            job=job,
            summary=summary,
            message=f"Batch job created with {job.total_prospects} prospects",
        )

    async def _charge(self, user_id: str, cost: int) -> CreditCheck:
        try:
            return await self.plans.check_and_deduct_credits(user_id, cost)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Credit check raised for %s; denying: %s", user_id, exc)
            return CreditCheck(allowed=False, shortfall=cost)

    async def _release(self, key: Optional[str]) -> None:
        if key:
            await self.idempotency.release(key)

    async def _compensate(self, key: Optional[str], user_id: str, charged: int, error: Exception) -> None:
        """Undo the charge after a failed insert; keep the key failed if money is still out."""
        logger.error("Persisting batch job for %s failed after charging %s credits: %s", user_id, charged, error)
        refunded = True
        if charged:
            try:
                refunded = await self.plans.refund_credits(user_id, charged)
            except Exception as exc:  # noqa: BLE001
                logger.error("Refund of %s credits for %s raised: %s", charged, user_id, exc)
                refunded = False
        if refunded:
            await self._release(key)
        elif key:
            await self.idempotency.fail(
                key, {"message": "Job creation failed and the credit refund did not complete", "credits": charged}
            )

    async def _replay(
        self,
        user_id: str,
        status: str,
        cached_result: Optional[Dict[str, Any]],
        cached_error: Optional[Dict[str, Any]],
        summary: CreationSummary,
    ) -> BatchJobCreateResponse:
        if status == "in_progress":
            raise AppError(409, "IDEMPOTENCY_CONFLICT", "An identical request is already being processed")
        if status == "failed":
            raise AppError(
                409,
                "IDEMPOTENCY_CONFLICT",
                (cached_error or {}).get("message") or "A previous identical request failed",
            )

        job_id = (cached_result or {}).get("job_id")
        job = await self.jobs.get_job(UUID(job_id)) if job_id else None
        if job is None or job.user_id != user_id:
            raise AppError(409, "IDEMPOTENCY_CONFLICT", "The job created by the original request no longer exists")
        summary.credits_charged = int((cached_result or {}).get("credits_charged") or 0)
        summary.replayed = True
        return BatchJobCreateResponse(job=job, summary=summary, message="Batch job already created")

    async def get_job(self, user_id: str, job_id: UUID) -> BatchJobRead:
        job = await self.jobs.get_job(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    async def get_job_detail(self, user_id: str, job_id: UUID) -> BatchJobDetail:
        job = await self.get_job(user_id, job_id)
        return BatchJobDetail(job=job, items=await self.items.list_items(job.id))

    async def list_jobs(self, user_id: str, limit: int = 50, offset: int = 0) -> List[BatchJobRead]:
        return await self.jobs.list_jobs(user_id, limit=limit, offset=offset)

    async def update_status(self, user_id: str, job_id: UUID, status: str) -> BatchJobRead:
        """Pause, resume or cancel; raises InvalidTransitionError for illegal moves."""
        job = await self.get_job(user_id, job_id)
        return await self.state.change_job_status(job, JobStatus(status))

    async def delete_job(self, user_id: str, job_id: UUID) -> None:
        job = await self.get_job(user_id, job_id)
        await self.jobs.delete_job(job.id)
        logger.info("Deleted batch job %s", job.id)
