"""
Ensemble estimator: N noisy estimates of one quantity -> one value with a confidence label.

Input is a flat list of tagged observations (category, value, optional source).
Each category is outlier-filtered (IQR), reduced to its median, and the
category medians are blended with configured weights. Weights of categories
without data are redistributed proportionally over the populated ones.
"""

import logging
import statistics
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from prospect_research.schemas.research import DivergenceFlag, EnsembleEstimate, ValuationObservation

logger = logging.getLogger(__name__)


class EnsembleInputError(ValueError):
    """Raised when no usable observations were supplied."""


@dataclass(frozen=True)
class EnsembleConfig:
    category_weights: Dict[str, float] = field(
        default_factory=lambda: {"hedonic": 0.35, "comparable": 0.45, "online": 0.20}
    )
    iqr_multiplier: float = 1.5
    min_observations_for_iqr: int = 4
    corroboration_target: int = 6
    high_confidence: int = 80
    medium_confidence: int = 60
    high_cv_threshold: float = 0.30
    high_cv_penalty: float = 15.0
    single_value_penalty: float = 10.0
    divergence_threshold: float = 0.30
    min_fsd: float = 0.03
    max_fsd: float = 0.35


def median(values: Sequence[float]) -> float:
    return float(statistics.median(values))


def iqr_filter(values: Sequence[float], multiplier: float = 1.5, min_count: int = 4) -> Tuple[List[float], List[float]]:
    """Split values into (kept, removed) using Tukey fences on inclusive quartiles."""
    if len(values) < min_count:
        return list(values), []
    q1, _, q3 = statistics.quantiles(values, n=4, method="inclusive")
    spread = q3 - q1
    lower, upper = q1 - multiplier * spread, q3 + multiplier * spread
    kept = [v for v in values if lower <= v <= upper]
    removed = [v for v in values if v < lower or v > upper]
    return kept, removed


def coefficient_of_variation(values: Sequence[float]) -> Optional[float]:
    """Sample stddev / mean, capped at 1. None when fewer than two values."""
    if len(values) < 2:
        return None
    mean = statistics.fmean(values)
    if mean == 0:
        return 1.0
    return min(1.0, statistics.stdev(values) / abs(mean))


def redistribute_weights(weights: Dict[str, float], populated: Iterable[str]) -> Dict[str, float]:
    """Renormalize the weights of populated categories so they sum to 1."""
    present = {name: weights.get(name, 0.0) for name in populated}
    total = sum(present.values())
    if total <= 0:
        # Categories outside the weight table share equally
        return {name: 1.0 / len(present) for name in present} if present else {}
    return {name: weight / total for name, weight in present.items()}


class EnsembleEstimator:
    """Input-agnostic consensus estimator."""

    def __init__(self, config: Optional[EnsembleConfig] = None):
        self.config = config or EnsembleConfig()

    def estimate(self, observations: Sequence[ValuationObservation]) -> EnsembleEstimate:
        cfg = self.config
        usable = [obs for obs in observations if obs.value is not None and obs.value > 0]
        if not usable:
            raise EnsembleInputError("no positive observations supplied")

        by_category: Dict[str, List[ValuationObservation]] = {}
        for obs in usable:
            by_category.setdefault(obs.category, []).append(obs)

        medians: Dict[str, float] = {}
        kept_by_category: Dict[str, List[ValuationObservation]] = {}
        removed: List[float] = []
        for category, group in by_category.items():
            kept_values, removed_values = iqr_filter(
                [obs.value for obs in group], cfg.iqr_multiplier, cfg.min_observations_for_iqr
            )
            removed.extend(removed_values)
            kept_set = list(kept_values)
            kept_obs = []
            for obs in group:
                if obs.value in kept_set:
                    kept_set.remove(obs.value)
                    kept_obs.append(obs)
            kept_by_category[category] = kept_obs
            medians[category] = median(kept_values)

        weights = redistribute_weights(cfg.category_weights, medians.keys())
        value = sum(medians[name] * weight for name, weight in weights.items())

        observations_used = sum(len(group) for group in kept_by_category.values())
        if len(medians) >= 2:
            agreement_values = list(medians.values())
        else:
            agreement_values = [obs.value for obs in next(iter(kept_by_category.values()))]
        cv = coefficient_of_variation(agreement_values)

        score, fsd = self._confidence(len(medians), observations_used, cv)
        level = "high" if score >= cfg.high_confidence else "medium" if score >= cfg.medium_confidence else "low"

        flags = self._divergence_flags(kept_by_category)
        for flag in flags:
            logger.warning(
                "Estimate divergence %.0f%% between %s (%.0f) and %s (%.0f)",
                flag.divergence * 100,
                flag.left,
                flag.left_value,
                flag.right,
                flag.right_value,
            )

        return EnsembleEstimate(
            value=round(value, 2),
            low=round(value * (1 - fsd), 2),
            high=round(value * (1 + fsd), 2),
            confidence_score=score,
            confidence_level=level,
            fsd=round(fsd, 4),
            coefficient_of_variation=None if cv is None else round(cv, 4),
            category_medians=medians,
            weights_used={name: round(weight, 4) for name, weight in weights.items()},
            observations_used=observations_used,
            outliers_removed=removed,
            divergence_flags=flags,
        )

    def _confidence(self, populated: int, observations_used: int, cv: Optional[float]) -> Tuple[int, float]:
        cfg = self.config
        total_categories = max(len(cfg.category_weights), populated)
        coverage = populated / total_categories
        corroboration = min(1.0, observations_used / cfg.corroboration_target)
        disagreement = cv if cv is not None else 0.0

        score = 100.0
        score -= (1 - coverage) * 20
        score -= (1 - corroboration) * 30
        score -= disagreement * 25
        if cv is None:
            score -= cfg.single_value_penalty
        elif cv > cfg.high_cv_threshold:
            score -= cfg.high_cv_penalty
        if populated >= total_categories:
            score += 5
        score = max(0.0, min(100.0, score))

        fsd = 0.05 + (1 - coverage) * 0.05 + (1 - corroboration) * 0.07 + disagreement * 0.10
        fsd = max(cfg.min_fsd, min(cfg.max_fsd, fsd))
        return int(round(score)), fsd

    def _divergence_flags(self, kept_by_category: Dict[str, List[ValuationObservation]]) -> List[DivergenceFlag]:
        """Compare every pair of distinct sources (source median vs source median)."""
        by_source: Dict[str, List[float]] = {}
        for category, group in kept_by_category.items():
            for obs in group:
                by_source.setdefault(obs.source or category, []).append(obs.value)
        source_medians = {name: median(values) for name, values in by_source.items()}

        flags: List[DivergenceFlag] = []
        for (left, left_value), (right, right_value) in combinations(sorted(source_medians.items()), 2):
            smaller = min(left_value, right_value)
            if smaller <= 0:
                continue
            divergence = abs(left_value - right_value) / smaller
            if divergence > self.config.divergence_threshold:
                flags.append(
                    DivergenceFlag(
                        left=left,
                        right=right,
                        left_value=left_value,
                        right_value=right_value,
                        divergence=round(divergence, 4),
                    )
                )
        return flags
