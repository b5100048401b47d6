"""
Job Domain Model - scheduled analysis definitions and their executions.

Parameters are a tagged union keyed by the job type so every variant only
carries what its analysis needs and is validated when the job is created.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from croniter import croniter
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from pipewatch.core.domain.errors import ConfigurationInvalid

JobType = Literal["anomaly", "trend", "sla", "cost", "full"]
Metric = Literal["duration", "cpu", "memory", "success_rate", "test_coverage", "cost"]
AnomalyMethodChoice = Literal["zscore", "percentile", "iqr", "all"]
TrendSensitivity = Literal["significant", "moderate", "minimal"]
ExecutionStatus = Literal["running", "succeeded", "failed", "cancelled"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnomalyJobParameters(BaseModel):
    kind: Literal["anomaly"] = "anomaly"
    metrics: list[Metric] = Field(default_factory=lambda: ["duration"], min_length=1)
    method: AnomalyMethodChoice = "all"
    period_days: int = Field(default=7, gt=0)
    threshold: float | None = Field(default=None, gt=0, description="Override for the z-score threshold")


class TrendJobParameters(BaseModel):
    kind: Literal["trend"] = "trend"
    metrics: list[Metric] = Field(default_factory=lambda: ["duration"], min_length=1)
    period_days: int = Field(default=30, gt=0)
    sensitivity: TrendSensitivity = "moderate"


class SLAJobParameters(BaseModel):
    kind: Literal["sla"] = "sla"
    metric: Metric = "success_rate"
    target: float
    direction: Literal["minimum", "maximum"]
    violation_type: Literal["availability", "performance", "quality", "threshold", "error_budget"] = "availability"
    period_days: int = Field(default=7, gt=0)


class CostJobParameters(BaseModel):
    kind: Literal["cost"] = "cost"
    period_days: int = Field(default=30, gt=0)
    efficiency_threshold: float = Field(default=20.0, ge=0, le=100)


class FullJobParameters(BaseModel):
    kind: Literal["full"] = "full"
    metrics: list[Metric] = Field(default_factory=lambda: ["duration"], min_length=1)
    method: AnomalyMethodChoice = "all"
    period_days: int = Field(default=30, gt=0)
    sensitivity: TrendSensitivity = "moderate"
    efficiency_threshold: float = Field(default=20.0, ge=0, le=100)
    sla: SLAJobParameters | None = None


JobParameters = Annotated[
    Union[AnomalyJobParameters, TrendJobParameters, SLAJobParameters, CostJobParameters, FullJobParameters],
    Field(discriminator="kind"),
]


class JobDefinition(BaseModel):
    """
    A scheduled analysis.

    ``pipeline_id`` of ``None`` makes the job global: every active pipeline
    is analysed on each firing.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    type: JobType
    schedule: str = Field(description="Five or six field cron expression")
    enabled: bool = True
    pipeline_id: str | None = None
    parameters: JobParameters
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _tag_parameters(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" in data:
            params = data.get("parameters")
            if params is None:
                params = {}
            if isinstance(params, dict):
                params = dict(params)
                params.setdefault("kind", data["type"])
                data = {**data, "parameters": params}
        return data

    @model_validator(mode="after")
    def _parameters_match_type(self) -> "JobDefinition":
        if self.parameters.kind != self.type:
            raise ValueError(f"parameters of kind '{self.parameters.kind}' do not match job type '{self.type}'")
        return self

    @field_validator("schedule")
    @classmethod
    def _valid_cron(cls, v: str) -> str:
        v = v.strip()
        if len(v.split()) not in (5, 6) or not croniter.is_valid(v):
            raise ValueError(f"invalid cron expression '{v}'")
        return v

    @property
    def is_global(self) -> bool:
        return self.pipeline_id is None


class JobStats(BaseModel):
    """Bookkeeping the scheduler keeps next to each definition."""

    run_count: int = 0
    error_count: int = 0
    last_run: datetime | None = None
    last_status: ExecutionStatus | None = None
    next_run: datetime | None = None


class JobExecution(BaseModel):
    """One firing of a job. Append-only once finished."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    job_id: str
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    status: ExecutionStatus = "running"
    result_summary: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    attempts: int = 0
    alerts_generated: list[str] = Field(default_factory=list)

    @property
    def duration_ms(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    @property
    def is_finished(self) -> bool:
        return self.status != "running"


def parse_job_definition(data: dict[str, Any] | JobDefinition) -> JobDefinition:
    """Validate raw input into a JobDefinition, raising ConfigurationInvalid."""
    if isinstance(data, JobDefinition):
        return data
    try:
        return JobDefinition.model_validate(data)
    except ValidationError as e:
        raise ConfigurationInvalid(
            f"Invalid job definition: {e.error_count()} error(s): {_first_errors(e)}",
            job=data.get("name") if isinstance(data, dict) else None,
        ) from e


def _first_errors(e: ValidationError, limit: int = 3) -> str:
    parts = []
    for err in e.errors()[:limit]:
        loc = ".".join(str(x) for x in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)
