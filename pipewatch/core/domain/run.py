"""
Pipeline run records - the raw executions metric series are derived from.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

RunStatus = Literal["success", "failed", "cancelled", "running"]

# assumed utilisation when a run does not report storage or network
DEFAULT_STORAGE_PERCENT = 25.0
DEFAULT_NETWORK_PERCENT = 10.0


class PipelineRun(BaseModel):
    """One CI/CD pipeline execution as reported by the ingestion side."""

    pipeline_id: str
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    status: RunStatus = "success"
    duration_seconds: float | None = Field(default=None, ge=0)
    cpu_percent: float | None = Field(default=None, ge=0)
    memory_percent: float | None = Field(default=None, ge=0)
    storage_percent: float | None = Field(default=None, ge=0)
    network_percent: float | None = Field(default=None, ge=0)
    test_coverage: float | None = Field(default=None, ge=0, le=100)
    cost: float | None = Field(default=None, ge=0)
    branch: str | None = None
    trigger: str | None = None

    @property
    def effective_duration_seconds(self) -> float | None:
        if self.duration_seconds is not None:
            return self.duration_seconds
        if self.finished_at is not None:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class RunProfile(BaseModel):
    """Inputs of a cost analysis for the most recent finished run."""

    pipeline_id: str
    run_id: str
    execution_minutes: float
    resource_usage: dict[str, float]
