"""
Schemas for batch prospect jobs, items and dispatcher responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from prospect_research.schemas.base import RecordRead


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.PAUSED)
DISPATCHABLE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class ProspectInput(BaseModel):
    """One normalized prospect row."""

    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    full_address: Optional[str] = None
    employer: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class BatchJobSettings(BaseModel):
    enable_web_search: bool = True
    generate_romy_score: bool = True
    enable_property_valuation: bool = True
    use_cache: bool = True
    max_retries: Optional[int] = Field(None, ge=0, le=10)


class BatchJobCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    prospects: List[Dict[str, Any]] = Field(default_factory=list)
    settings: BatchJobSettings = Field(default_factory=BatchJobSettings)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, max_length=200)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class BatchJobStatusUpdate(BaseModel):
    status: Literal["paused", "processing", "cancelled"]


class NewBatchJob(BaseModel):
    """Fields needed to persist a new job."""

    user_id: str
    name: str
    description: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


class NewBatchItem(BaseModel):
    item_index: int
    input_data: Dict[str, Any]
    prospect_name: Optional[str] = None
    prospect_address: Optional[str] = None
    prospect_city: Optional[str] = None
    prospect_state: Optional[str] = None
    prospect_zip: Optional[str] = None


class BatchJobRead(RecordRead):
    user_id: str
    name: str
    description: Optional[str] = None
    status: JobStatus
    total_prospects: int
    completed_count: int
    failed_count: int
    settings: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, exclude=True)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def job_settings(self) -> BatchJobSettings:
        return BatchJobSettings.model_validate(self.settings or {})


class BatchItemRead(RecordRead):
    job_id: UUID
    user_id: str
    item_index: int
    status: ItemStatus
    input_data: Dict[str, Any]
    prospect_name: Optional[str] = None
    prospect_address: Optional[str] = None
    prospect_city: Optional[str] = None
    prospect_state: Optional[str] = None
    prospect_zip: Optional[str] = None
    report_content: Optional[str] = None
    romy_score: Optional[int] = None
    romy_score_tier: Optional[str] = None
    capacity_rating: Optional[str] = None
    estimated_net_worth: Optional[float] = None
    estimated_gift_capacity: Optional[float] = None
    recommended_ask: Optional[float] = None
    structured_data: Optional[Dict[str, Any]] = None
    sources_found: Optional[List[Dict[str, Any]]] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    model_used: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None

    def prospect(self) -> ProspectInput:
        return ProspectInput.model_validate(self.input_data)


class ItemCounts(BaseModel):
    """Item aggregates for one job."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retryable_failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed


class ProgressSnapshot(BaseModel):
    completed: int
    total: int
    failed: int


class ProcessBatchResponse(BaseModel):
    items_processed: int
    items_succeeded: int
    items_failed: int
    job_status: JobStatus
    progress: ProgressSnapshot
    has_more: bool
    processing_time_ms: int = 0
    message: str = ""


class RetryItemResponse(BaseModel):
    success: bool
    item: BatchItemRead
    message: str
    processing_time_ms: int


class RowIssue(BaseModel):
    """1-indexed row reference with the problems found on it."""

    row: int
    messages: List[str]


class CreationSummary(BaseModel):
    total_rows: int
    accepted: int
    duplicates_removed: int = 0
    invalid_rows: List[RowIssue] = Field(default_factory=list)
    low_quality: List[RowIssue] = Field(default_factory=list)
    credits_charged: int = 0
    replayed: bool = False


class BatchJobCreateResponse(BaseModel):
    job: BatchJobRead
    summary: CreationSummary
    message: str


class BatchJobDetail(BaseModel):
    job: BatchJobRead
    items: List[BatchItemRead]

    model_config = ConfigDict(from_attributes=True)
