import asyncio

import pytest

from prospect_research.core.config import CacheConfig
from prospect_research.schemas.batch import BatchJobSettings, ProspectInput
from prospect_research.schemas.research import ResearchSource
from prospect_research.services.ensemble_estimator import EnsembleEstimator
from prospect_research.services.property_valuation import PropertyValuationService
from prospect_research.services.research_backends import BackendResponse, FixtureSearchBackend
from prospect_research.services.research_cache_service import ResearchCacheService
from prospect_research.services.research_executor import ResearchExecutor, prospect_cache_key
from prospect_research.services.retry_policy import PermanentBackendError, RetryPolicy, TransientBackendError
from tests.fakes import ScriptedBackend

PROSPECT = ProspectInput(name="Jane Doe", address="1 Elm St", city="Austin", state="TX", zip="78701")
NO_RETRY = RetryPolicy(max_retries=0, attempt_timeout=None)


def _cache(clock) -> ResearchCacheService:
    return ResearchCacheService(None, CacheConfig(), clock=clock)


@pytest.mark.unit
def test_prospect_cache_key():
    assert prospect_cache_key(PROSPECT) == "Jane Doe | 1 Elm St, Austin, TX, 78701"
    assert prospect_cache_key(ProspectInput(name="A", full_address="X")) == "A | X"


@pytest.mark.unit
def test_fixture_backend_produces_metrics_sources_and_valuation(clock):
    cache = _cache(clock)
    executor = ResearchExecutor(
        [FixtureSearchBackend()],
        retry_policy=NO_RETRY,
        cache=cache,
        valuation=PropertyValuationService(EnsembleEstimator(), cache),
    )

    result = asyncio.run(executor.research(PROSPECT))

    assert result.success
    assert result.metrics.romy_score == 24
    assert result.metrics.capacity_rating == "PRINCIPAL"
    assert result.metrics.recommended_ask == 25_000
    assert len(result.sources) == 3
    assert result.backend_contributions == {"fixture": 3}
    assert result.model_used == "fixture-v1"
    assert result.property_valuation is not None
    assert 790_000 <= result.property_valuation.estimate.value <= 870_000
    assert result.not_found is False


@pytest.mark.unit
def test_results_are_cached_per_prospect(clock):
    backend = ScriptedBackend()
    executor = ResearchExecutor([backend], retry_policy=NO_RETRY, cache=_cache(clock))

    async def main():
        first = await executor.research(PROSPECT)
        second = await executor.research(PROSPECT.model_copy(update={"name": "JANE  DOE"}))
        bypass = await executor.research(PROSPECT, BatchJobSettings(use_cache=False))
        return first, second, bypass

    first, second, bypass = asyncio.run(main())

    assert first.cached is False
    assert second.cached is True
    assert second.report_content == first.report_content
    assert bypass.cached is False
    assert len(backend.calls) == 2


@pytest.mark.unit
def test_partial_backend_failure_still_succeeds():
    good = ScriptedBackend(name="sonar")
    bad = ScriptedBackend(name="linkup", script=lambda p, n: TransientBackendError("HTTP 503", status_code=503))
    result = asyncio.run(ResearchExecutor([good, bad], retry_policy=NO_RETRY).research(PROSPECT))

    assert result.success
    assert result.model_used == "sonar-model"
    assert result.backend_contributions == {"sonar": 1}


@pytest.mark.unit
def test_answers_from_several_backends_are_merged():
    def extra(prospect, n):
        return BackendResponse(
            backend="linkup",
            answer="Board member at the Austin Symphony.",
            sources=[
                ResearchSource(name="dup", url="https://www.example.com/Jane-Doe/"),
                ResearchSource(name="Symphony", url="https://symphony.example.org/board"),
            ],
            tokens_used=50,
            model="linkup-standard",
        )

    executor = ResearchExecutor(
        [ScriptedBackend(name="sonar"), ScriptedBackend(name="linkup", script=extra)], retry_policy=NO_RETRY
    )
    result = asyncio.run(executor.research(PROSPECT))

    assert "## Additional findings (linkup)" in result.report_content
    assert result.tokens_used == 150
    assert result.model_used == "sonar-model, linkup-standard"
    assert result.backend_contributions == {"sonar": 1, "linkup": 1}
    assert [s.url for s in result.sources] == [
        "https://example.com/Jane-Doe",
        "https://symphony.example.org/board",
    ]


@pytest.mark.unit
def test_all_backends_failing_classifies_the_error():
    transient = ScriptedBackend(name="sonar", script=lambda p, n: TransientBackendError("HTTP 429", status_code=429))
    permanent = ScriptedBackend(name="linkup", script=lambda p, n: PermanentBackendError("HTTP 400"))

    result = asyncio.run(ResearchExecutor([transient, permanent], retry_policy=NO_RETRY).research(PROSPECT))
    assert not result.success
    assert result.error_kind == "transient"
    assert result.error_message == "Transient error: sonar: HTTP 429; linkup: HTTP 400"

    only_permanent = asyncio.run(ResearchExecutor([permanent], retry_policy=NO_RETRY).research(PROSPECT))
    assert only_permanent.error_message == "Permanent error: linkup: HTTP 400"


@pytest.mark.unit
def test_unexpected_backend_exception_becomes_permanent_failure():
    broken = ScriptedBackend(name="sonar", script=lambda p, n: KeyError("choices"))
    result = asyncio.run(ResearchExecutor([broken], retry_policy=NO_RETRY).research(PROSPECT))

    assert result.error_kind == "permanent"
    assert "sonar failed unexpectedly" in result.error_message


@pytest.mark.unit
def test_no_backends_configured():
    result = asyncio.run(ResearchExecutor([]).research(PROSPECT))
    assert result.error_message == "Permanent error: no research backends configured"


@pytest.mark.unit
def test_score_generation_can_be_disabled():
    settings = BatchJobSettings(generate_romy_score=False, use_cache=False)
    result = asyncio.run(ResearchExecutor([ScriptedBackend()], retry_policy=NO_RETRY).research(PROSPECT, settings))

    assert result.metrics.romy_score is None
    assert result.metrics.estimated_net_worth == 5_000_000
