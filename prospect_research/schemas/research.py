"""
Schemas for research results, cache entries and valuation estimates.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResearchSource(BaseModel):
    name: str
    url: str
    snippet: Optional[str] = None


class ProspectMetrics(BaseModel):
    """Structured fields pulled out of a research report."""

    romy_score: Optional[int] = None
    romy_score_tier: Optional[str] = None
    capacity_rating: Optional[str] = None
    estimated_net_worth: Optional[float] = None
    estimated_gift_capacity: Optional[float] = None
    recommended_ask: Optional[float] = None


class ValuationObservation(BaseModel):
    category: str
    value: float
    source: Optional[str] = None


class DivergenceFlag(BaseModel):
    left: str
    right: str
    left_value: float
    right_value: float
    divergence: float


class EnsembleEstimate(BaseModel):
    value: float
    low: float
    high: float
    confidence_score: int
    confidence_level: Literal["low", "medium", "high"]
    fsd: float
    coefficient_of_variation: Optional[float] = None
    category_medians: Dict[str, float] = Field(default_factory=dict)
    weights_used: Dict[str, float] = Field(default_factory=dict)
    observations_used: int = 0
    outliers_removed: List[float] = Field(default_factory=list)
    divergence_flags: List[DivergenceFlag] = Field(default_factory=list)


class PropertyValuation(BaseModel):
    address: str
    estimate: EnsembleEstimate
    observations: List[ValuationObservation] = Field(default_factory=list)
    cached: bool = False


class ResearchResult(BaseModel):
    """Normalized outcome of researching one prospect, whatever the backend."""

    success: bool
    report_content: Optional[str] = None
    metrics: ProspectMetrics = Field(default_factory=ProspectMetrics)
    sources: List[ResearchSource] = Field(default_factory=list)
    tokens_used: int = 0
    model_used: Optional[str] = None
    processing_duration_ms: int = 0
    error_message: Optional[str] = None
    error_kind: Optional[Literal["transient", "permanent"]] = None
    not_found: bool = False
    backend_contributions: Dict[str, int] = Field(default_factory=dict)
    property_valuation: Optional[PropertyValuation] = None
    cached: bool = False

    @classmethod
    def failure(cls, message: str, kind: str = "permanent", duration_ms: int = 0) -> "ResearchResult":
        return cls(success=False, error_message=message, error_kind=kind, processing_duration_ms=duration_ms)

    def structured_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "not_found": self.not_found,
            "backend_contributions": dict(self.backend_contributions),
            "cached": self.cached,
        }
        if self.property_valuation is not None:
            data["property_valuation"] = self.property_valuation.model_dump(mode="json")
        return data


class CacheRecord(BaseModel):
    namespace: str
    cache_key: str
    payload: Dict[str, Any]
    hit_count: int = 0
    last_accessed_at: Optional[datetime] = None
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IdempotencyRecordRead(BaseModel):
    key: str
    operation: str
    status: Literal["in_progress", "completed", "failed"]
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)
