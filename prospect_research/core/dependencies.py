"""
FastAPI dependencies and the service composition root.

build_container wires every store, collaborator and service from one
Settings instance. The API lifespan and the worker entry point each call it
once; request handlers reach the result through get_container.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prospect_research.core.config import Settings
from prospect_research.repositories.batch_item_repository import BatchItemRepository
from prospect_research.repositories.batch_job_repository import BatchJobRepository
from prospect_research.repositories.idempotency_repository import IdempotencyRepository
from prospect_research.repositories.research_cache_repository import ResearchCacheRepository
from prospect_research.services.batch_dispatcher import BatchDispatcher
from prospect_research.services.batch_job_service import BatchJobService
from prospect_research.services.ensemble_estimator import EnsembleConfig, EnsembleEstimator
from prospect_research.services.idempotency_service import IdempotencyService
from prospect_research.services.notification_service import CompositeNotifier, LoggingNotifier, WebhookNotifier
from prospect_research.services.plan_service import PlanClient, build_plan_client
from prospect_research.services.property_valuation import PropertyValuationService
from prospect_research.services.research_backends import build_backends
from prospect_research.services.research_cache_service import ResearchCacheService
from prospect_research.services.research_executor import ResearchExecutor
from prospect_research.services.retry_policy import RetryPolicy
from prospect_research.services.secrets_service import build_secrets_service
from prospect_research.services.side_effects import SideEffectRunner
from prospect_research.services.state_machine import BatchStateMachine


@dataclass
class ServiceContainer:
    jobs: BatchJobRepository
    items: BatchItemRepository
    side_effects: SideEffectRunner
    cache: ResearchCacheService
    idempotency: IdempotencyService
    plans: PlanClient
    executor: ResearchExecutor
    state_machine: BatchStateMachine
    dispatcher: BatchDispatcher
    job_service: BatchJobService


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.BACKEND_MAX_RETRIES,
        base_delay=settings.BACKEND_BASE_DELAY_SECONDS,
        max_delay=settings.BACKEND_MAX_DELAY_SECONDS,
        attempt_timeout=settings.BACKEND_TIMEOUT_SECONDS,
    )


def ensemble_config_from_settings(settings: Settings) -> EnsembleConfig:
    return EnsembleConfig(
        category_weights=dict(settings.ENSEMBLE_CATEGORY_WEIGHTS),
        iqr_multiplier=settings.ENSEMBLE_IQR_MULTIPLIER,
        high_confidence=settings.ENSEMBLE_HIGH_CONFIDENCE,
        medium_confidence=settings.ENSEMBLE_MEDIUM_CONFIDENCE,
        divergence_threshold=settings.ENSEMBLE_DIVERGENCE_THRESHOLD,
    )


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
) -> ServiceContainer:
    jobs = BatchJobRepository(session_factory)
    items = BatchItemRepository(session_factory)
    side_effects = SideEffectRunner()

    cache = ResearchCacheService(ResearchCacheRepository(session_factory), settings.cache_config(), side_effects)
    idempotency = IdempotencyService(IdempotencyRepository(session_factory), settings.idempotency_config())
    plans = build_plan_client(settings.billing_config(), client=http_client)

    executor = ResearchExecutor(
        build_backends(settings.backend_config(), client=http_client, app_url=settings.APP_URL),
        retry_policy=retry_policy_from_settings(settings),
        cache=cache,
        valuation=PropertyValuationService(EnsembleEstimator(ensemble_config_from_settings(settings)), cache),
    )
    secrets = build_secrets_service(settings.SECRETS_MASTER_KEY, settings.DEBUG)
    notifier = CompositeNotifier(
        [LoggingNotifier(), WebhookNotifier(settings.webhook_config(), client=http_client, secrets=secrets)]
    )

    dispatcher_config = settings.dispatcher_config()
    state_machine = BatchStateMachine(jobs, items, dispatcher_config)
    dispatcher = BatchDispatcher(
        jobs,
        items,
        executor,
        idempotency,
        plans,
        notifier,
        side_effects,
        config=dispatcher_config,
        state_machine=state_machine,
    )
    job_service = BatchJobService(
        jobs, items, plans, idempotency, state_machine, limits=settings.job_limits_config(), secrets=secrets
    )
    return ServiceContainer(
        jobs=jobs,
        items=items,
        side_effects=side_effects,
        cache=cache,
        idempotency=idempotency,
        plans=plans,
        executor=executor,
        state_machine=state_machine,
        dispatcher=dispatcher,
        job_service=job_service,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_dispatcher(container: ServiceContainer = Depends(get_container)) -> BatchDispatcher:
    return container.dispatcher


def get_job_service(container: ServiceContainer = Depends(get_container)) -> BatchJobService:
    return container.job_service


async def get_caller_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Identify the caller from the X-User-Id header.

    Authentication happens upstream (gateway / session layer); this service
    only needs a stable owner id. Raises 401 if the header is missing.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id.strip()
