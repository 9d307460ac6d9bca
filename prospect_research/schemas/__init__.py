"""
Schemas package.

Import all schemas here for easy access.
"""

from prospect_research.schemas.batch import (
    BatchItemRead,
    BatchJobCreate,
    BatchJobCreateResponse,
    BatchJobDetail,
    BatchJobRead,
    BatchJobSettings,
    BatchJobStatusUpdate,
    ItemCounts,
    ItemStatus,
    JobStatus,
    ProcessBatchResponse,
    ProspectInput,
    RetryItemResponse,
)
from prospect_research.schemas.research import (
    CacheRecord,
    EnsembleEstimate,
    IdempotencyRecordRead,
    PropertyValuation,
    ResearchResult,
    ResearchSource,
    ValuationObservation,
)
