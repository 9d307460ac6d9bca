"""
Property valuation: ensemble estimate over figures found in research text.
"""

import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError

from prospect_research.schemas.research import PropertyValuation, ValuationObservation
from prospect_research.services.ensemble_estimator import EnsembleEstimator, EnsembleInputError
from prospect_research.services.research_cache_service import VALUATION_NAMESPACE, ResearchCacheService

logger = logging.getLogger(__name__)


class PropertyValuationService:
    def __init__(self, estimator: EnsembleEstimator, cache: Optional[ResearchCacheService] = None):
        self.estimator = estimator
        self.cache = cache

    async def value(
        self,
        address: str,
        observations: Sequence[ValuationObservation],
        *,
        use_cache: bool = True,
    ) -> Optional[PropertyValuation]:
        """Return a cached or fresh valuation for address; None when nothing usable was observed."""
        if use_cache and self.cache is not None and address:
            cached = await self.cache.get(VALUATION_NAMESPACE, address)
            if cached is not None:
                try:
                    valuation = PropertyValuation.model_validate(cached)
                except ValidationError:
                    logger.warning("Discarding malformed cached valuation for %s", address)
                else:
                    return valuation.model_copy(update={"cached": True})

        usable: List[ValuationObservation] = [obs for obs in observations if obs.value > 0]
        if not usable:
            return None
        try:
            estimate = self.estimator.estimate(usable)
        except EnsembleInputError:
            return None

        valuation = PropertyValuation(address=address, estimate=estimate, observations=usable)
        if use_cache and self.cache is not None and address:
            await self.cache.set(VALUATION_NAMESPACE, address, valuation.model_dump(mode="json"))
        return valuation
