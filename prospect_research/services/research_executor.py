"""
Research strategy executor.

Runs every configured backend for one prospect concurrently (each wrapped in
the retry envelope), merges the successful answers into a single
ResearchResult, and optionally attaches an ensemble property valuation.
"""

import asyncio
import logging
import time
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError

from prospect_research.schemas.batch import BatchJobSettings, ProspectInput
from prospect_research.schemas.research import ResearchResult, ResearchSource
from prospect_research.services.property_valuation import PropertyValuationService
from prospect_research.services.research_backends import BackendResponse, ResearchBackend
from prospect_research.services.research_cache_service import RESEARCH_NAMESPACE, ResearchCacheService
from prospect_research.services.retry_policy import BackendError, RetryPolicy, TransientBackendError
from prospect_research.utils.text_extraction import (
    MAX_SOURCES,
    dedupe_sources,
    extract_metrics,
    extract_valuation_observations,
    mentions_not_found,
)
from prospect_research.utils.time import ms_since
from prospect_research.utils.url_canonicalizer import canonicalize_url

logger = logging.getLogger(__name__)


def prospect_cache_key(prospect: ProspectInput) -> str:
    """Identity of a prospect for caching: name plus the best available location."""
    location = prospect.full_address or ", ".join(
        part for part in (prospect.address, prospect.city, prospect.state, prospect.zip) if part
    )
    return f"{prospect.name} | {location}"


class ResearchExecutor:
    def __init__(
        self,
        backends: Sequence[ResearchBackend],
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[ResearchCacheService] = None,
        valuation: Optional[PropertyValuationService] = None,
    ):
        self.backends = list(backends)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self.valuation = valuation

    async def research(self, prospect: ProspectInput, settings: Optional[BatchJobSettings] = None) -> ResearchResult:
        settings = settings or BatchJobSettings()
        started = time.perf_counter()
        cache_key = prospect_cache_key(prospect)

        if settings.use_cache and self.cache is not None:
            cached = await self.cache.get(RESEARCH_NAMESPACE, cache_key)
            if cached is not None:
                try:
                    result = ResearchResult.model_validate(cached)
                except ValidationError:
                    logger.warning("Discarding malformed cached research for %s", prospect.name)
                else:
                    logger.info("Research cache hit for %s", prospect.name)
                    return result.model_copy(update={"cached": True, "processing_duration_ms": ms_since(started)})

        if not self.backends:
            return ResearchResult.failure("Permanent error: no research backends configured", "permanent", ms_since(started))

        outcomes = await asyncio.gather(
            *(self._call_backend(backend, prospect, settings) for backend in self.backends),
            return_exceptions=True,
        )

        successes: List[BackendResponse] = []
        errors: List[Tuple[str, BaseException]] = []
        for backend, outcome in zip(self.backends, outcomes):
            if isinstance(outcome, BackendResponse):
                successes.append(outcome)
            elif isinstance(outcome, Exception):
                errors.append((backend.name, outcome))
            else:
                raise outcome

        if not successes:
            return self._failure_result(errors, ms_since(started))
        for name, error in errors:
            logger.warning("Backend %s failed for %s; continuing with %s others: %s", name, prospect.name, len(successes), error)

        result = await self._merge(prospect, settings, successes)
        result.processing_duration_ms = ms_since(started)

        if settings.use_cache and self.cache is not None:
            await self.cache.set(RESEARCH_NAMESPACE, cache_key, result.model_dump(mode="json"))
        return result

    async def _call_backend(
        self, backend: ResearchBackend, prospect: ProspectInput, settings: BatchJobSettings
    ) -> BackendResponse:
        try:
            return await self.retry_policy.run(
                lambda: backend.search(prospect, enable_web_search=settings.enable_web_search),
                name=backend.name,
            )
        except BackendError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error from backend %s", backend.name)
            raise BackendError(f"{backend.name} failed unexpectedly: {exc}", backend=backend.name) from exc

    @staticmethod
    def _failure_result(errors: List[Tuple[str, BaseException]], duration_ms: int) -> ResearchResult:
        transient = any(isinstance(error, TransientBackendError) for _, error in errors)
        kind = "transient" if transient else "permanent"
        detail = "; ".join(f"{name}: {error}" for name, error in errors)
        prefix = "Transient error" if transient else "Permanent error"
        return ResearchResult.failure(f"{prefix}: {detail}", kind, duration_ms)

    async def _merge(
        self, prospect: ProspectInput, settings: BatchJobSettings, successes: List[BackendResponse]
    ) -> ResearchResult:
        primary = successes[0]
        sections = [primary.answer.strip()]
        for extra in successes[1:]:
            sections.append(f"## Additional findings ({extra.backend})\n\n{extra.answer.strip()}")
        report = "\n\n---\n\n".join(sections)

        seen: set[str] = set()
        merged: List[ResearchSource] = []
        contributions = {}
        for response in successes:
            new_sources = 0
            for source in response.sources:
                try:
                    key = canonicalize_url(source.url)
                except ValueError:
                    continue
                if key in seen:
                    continue
                seen.add(key)
                merged.append(source)
                new_sources += 1
            contributions[response.backend] = new_sources
        sources = dedupe_sources(merged, limit=MAX_SOURCES)

        metrics = extract_metrics(report)
        if not settings.generate_romy_score:
            metrics.romy_score = None
            metrics.romy_score_tier = None
        has_metrics = any(value is not None for value in metrics.model_dump().values())
        not_found = mentions_not_found(report) and not has_metrics and not sources

        models = [response.model or response.backend for response in successes]
        result = ResearchResult(
            success=True,
            report_content=report,
            metrics=metrics,
            sources=sources,
            tokens_used=sum(response.tokens_used for response in successes),
            model_used=", ".join(models),
            not_found=not_found,
            backend_contributions=contributions,
        )

        address = prospect.full_address or prospect.address
        if settings.enable_property_valuation and self.valuation is not None and address:
            observations = extract_valuation_observations(report)
            if observations:
                result.property_valuation = await self.valuation.value(
                    address, observations, use_cache=settings.use_cache
                )
        return result
