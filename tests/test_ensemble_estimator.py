import pytest

from prospect_research.schemas.research import ValuationObservation
from prospect_research.services.ensemble_estimator import (
    EnsembleEstimator,
    EnsembleInputError,
    coefficient_of_variation,
    iqr_filter,
    redistribute_weights,
)


def _obs(category, value, source=None):
    return ValuationObservation(category=category, value=value, source=source)


@pytest.mark.unit
def test_outlier_is_removed_before_the_median():
    estimate = EnsembleEstimator().estimate(
        [_obs("online", v) for v in (400_000, 410_000, 405_000, 5_000_000)]
    )

    assert estimate.value == 405_000
    assert estimate.outliers_removed == [5_000_000]
    assert estimate.observations_used == 3
    assert estimate.confidence_level == "medium"
    assert estimate.low < estimate.value < estimate.high


@pytest.mark.unit
def test_iqr_filter_needs_enough_values():
    kept, removed = iqr_filter([1.0, 2.0, 100.0])
    assert kept == [1.0, 2.0, 100.0]
    assert removed == []


@pytest.mark.unit
def test_weighted_blend_of_all_categories_is_high_confidence():
    estimate = EnsembleEstimator().estimate(
        [_obs("hedonic", 500_000), _obs("comparable", 520_000), _obs("online", 510_000)]
    )

    assert estimate.value == pytest.approx(511_000)
    assert estimate.weights_used == {"hedonic": 0.35, "comparable": 0.45, "online": 0.2}
    assert estimate.confidence_level == "high"


@pytest.mark.unit
def test_missing_category_weight_is_redistributed():
    weights = redistribute_weights({"hedonic": 0.35, "comparable": 0.45, "online": 0.20}, ["hedonic", "online"])
    assert weights["hedonic"] == pytest.approx(0.35 / 0.55)
    assert weights["online"] == pytest.approx(0.20 / 0.55)
    assert sum(weights.values()) == pytest.approx(1.0)

    estimate = EnsembleEstimator().estimate([_obs("hedonic", 500_000), _obs("online", 600_000)])
    assert estimate.value == pytest.approx(536_363.64, abs=0.01)


@pytest.mark.unit
def test_unknown_categories_share_weight_equally():
    assert redistribute_weights({}, ["a", "b"]) == {"a": 0.5, "b": 0.5}


@pytest.mark.unit
def test_divergent_sources_are_flagged():
    estimate = EnsembleEstimator().estimate(
        [_obs("online", 400_000, "zillow"), _obs("hedonic", 600_000, "assessor")]
    )

    assert len(estimate.divergence_flags) == 1
    flag = estimate.divergence_flags[0]
    assert {flag.left, flag.right} == {"zillow", "assessor"}
    assert flag.divergence == pytest.approx(0.5)


@pytest.mark.unit
def test_single_value_is_low_confidence():
    estimate = EnsembleEstimator().estimate([_obs("online", 300_000)])

    assert estimate.value == 300_000
    assert estimate.coefficient_of_variation is None
    assert estimate.confidence_level == "low"
    assert coefficient_of_variation([1.0]) is None


@pytest.mark.unit
def test_no_positive_observations_is_an_error():
    with pytest.raises(EnsembleInputError):
        EnsembleEstimator().estimate([_obs("online", 0), _obs("online", -5)])
