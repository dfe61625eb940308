"""
Typed job payloads.

Each job type has its own parameters model and result model. The runner only
sees the JSON blob in background_jobs.parameters; it is validated into the
matching model right before the handler runs, and the handler's result model
is dumped back to JSON (camelCase keys) right after.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    RECURRING_MESSAGES = "recurring_messages"
    WEBHOOK_REPLAY = "webhook_replay"
    INSIGHT_GENERATION = "insight_generation"
    RETENTION_CLEANUP = "retention_cleanup"
    REPORT_GENERATION = "report_generation"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobError(Exception):
    """Base class for errors raised while executing a job."""


class UnknownJobTypeError(JobError):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class InvalidJobParametersError(JobError):
    pass


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Parameters (one variant per handler)
# ---------------------------------------------------------------------------

class RecurringMessagesParams(CamelModel):
    instance_limit: Optional[int] = Field(default=None, ge=1, le=100)


class WebhookReplayParams(CamelModel):
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)


class InsightGenerationParams(CamelModel):
    analysis_type: str = "comprehensive"
    force_regenerate: bool = True


class RetentionCleanupParams(CamelModel):
    retention_days: Optional[int] = Field(default=None, ge=1)


class ReportGenerationParams(CamelModel):
    reports: List[str] = Field(default_factory=lambda: ["job_summary", "engagement_metrics"])
    period_days: int = Field(default=30, ge=1)


JOB_PARAMETER_MODELS: Dict[JobType, Type[CamelModel]] = {
    JobType.RECURRING_MESSAGES: RecurringMessagesParams,
    JobType.WEBHOOK_REPLAY: WebhookReplayParams,
    JobType.INSIGHT_GENERATION: InsightGenerationParams,
    JobType.RETENTION_CLEANUP: RetentionCleanupParams,
    JobType.REPORT_GENERATION: ReportGenerationParams,
}


def resolve_job_type(raw_type: str) -> JobType:
    try:
        return JobType(raw_type)
    except ValueError:
        raise UnknownJobTypeError(raw_type) from None


def parse_parameters(raw_type: str, raw: Optional[Dict[str, Any]]) -> CamelModel:
    """Validate a stored parameter blob into the model for its job type."""
    job_type = resolve_job_type(raw_type)
    model = JOB_PARAMETER_MODELS[job_type]
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        raise InvalidJobParametersError(
            f"Invalid parameters for {job_type.value}: {exc.error_count()} error(s)"
        ) from exc


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class RecurringMessagesResult(CamelModel):
    instances_processed: int = 0
    instances_cancelled: int = 0
    total_sent: int = 0
    total_failed: int = 0
    total_skipped: int = 0


class WebhookReplayResult(CamelModel):
    processed: int = 0
    failed: int = 0


class InsightGenerationResult(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    analysis_type: str


class RetentionCleanupResult(CamelModel):
    deleted_jobs: int = 0
    deleted_logs: int = 0
    cutoff: datetime


class ReportGenerationResult(CamelModel):
    reports_generated: List[str]
    generated_at: datetime
    reports: Dict[str, Any] = Field(default_factory=dict)


def dump_result(result: Any) -> Any:
    """Serialize a handler result for the JSON result column."""
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    return result


# ---------------------------------------------------------------------------
# Scheduler tick summary
# ---------------------------------------------------------------------------

class JobRunResult(CamelModel):
    job_id: str
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    will_retry: Optional[bool] = None


class RunSummary(CamelModel):
    processed_jobs: int
    results: List[JobRunResult] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Admin API payloads
# ---------------------------------------------------------------------------

class JobCreate(CamelModel):
    type: str
    name: str
    priority: Optional[int] = None
    scheduled_for: Optional[datetime] = None
    parameters: Optional[Dict[str, Any]] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)


class JobUpdate(CamelModel):
    status: Optional[JobStatus] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    current_step: Optional[str] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None
