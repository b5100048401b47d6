"""
In-memory extractor over PipelineRun records.

Used when no metrics backend is configured and throughout the tests.
"""

import logging
from datetime import datetime, timedelta, timezone

from pydantic import Field

from pipewatch.core.domain.errors import NotFound
from pipewatch.core.domain.run import DEFAULT_NETWORK_PERCENT, DEFAULT_STORAGE_PERCENT, PipelineRun, RunProfile
from pipewatch.core.domain.series import DataPoint
from pipewatch.core.ports.data_extractor import METRICS, DataExtractor

logger = logging.getLogger(__name__)


class InMemoryExtractor(DataExtractor):
    """
    Keeps runs per pipeline in start order.
    """
    runs: dict[str, list[PipelineRun]] = Field(default_factory=dict)

    def register_pipeline(self, pipeline_id: str) -> None:
        self.runs.setdefault(pipeline_id, [])

    def add_run(self, run: PipelineRun) -> None:
        runs = self.runs.setdefault(run.pipeline_id, [])
        runs.append(run)
        runs.sort(key=lambda r: r.started_at)

    def add_runs(self, runs: list[PipelineRun]) -> None:
        for run in runs:
            self.add_run(run)

    async def extract_series(
        self,
        pipeline_id: str,
        metric: str,
        period_days: int,
        now: datetime | None = None,
    ) -> list[DataPoint]:
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'")
        if pipeline_id not in self.runs:
            raise NotFound("pipeline", pipeline_id, metric=metric)

        now = now or datetime.now(timezone.utc)
        start = now - timedelta(days=period_days)

        points = []
        for run in self.runs[pipeline_id]:
            if not (start < run.started_at <= now):
                continue
            value = _metric_value(run, metric)
            if value is None:
                continue
            points.append(DataPoint(
                timestamp=run.started_at,
                value=value,
                metadata={"run_id": run.run_id, "status": run.status, "branch": run.branch, "trigger": run.trigger},
            ))
        logger.debug(f"Extracted {len(points)} '{metric}' points for pipeline '{pipeline_id}'")
        return points

    async def list_active_pipelines(self, period_days: int = 7, now: datetime | None = None) -> list[str]:
        now = now or datetime.now(timezone.utc)
        start = now - timedelta(days=period_days)
        return sorted(
            pipeline_id
            for pipeline_id, runs in self.runs.items()
            if any(start < r.started_at <= now for r in runs)
        )

    async def latest_run_profile(self, pipeline_id: str) -> RunProfile | None:
        if pipeline_id not in self.runs:
            raise NotFound("pipeline", pipeline_id)
        for run in reversed(self.runs[pipeline_id]):
            seconds = run.effective_duration_seconds
            if run.status == "running" or not seconds:
                continue
            return RunProfile(
                pipeline_id=pipeline_id,
                run_id=run.run_id,
                execution_minutes=seconds / 60,
                resource_usage={
                    "cpu": run.cpu_percent or 0.0,
                    "memory": run.memory_percent or 0.0,
                    "storage": run.storage_percent if run.storage_percent is not None else DEFAULT_STORAGE_PERCENT,
                    "network": run.network_percent if run.network_percent is not None else DEFAULT_NETWORK_PERCENT,
                },
            )
        return None


def _metric_value(run: PipelineRun, metric: str) -> float | None:
    if metric == "duration":
        return run.effective_duration_seconds
    if metric == "success_rate":
        if run.status == "running":
            return None
        return 1.0 if run.status == "success" else 0.0
    if metric == "cpu":
        return run.cpu_percent
    if metric == "memory":
        return run.memory_percent
    if metric == "test_coverage":
        return run.test_coverage
    return run.cost
