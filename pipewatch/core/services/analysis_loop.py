"""
Analysis Loop Service - executes one job firing.

For each target pipeline:
1. Extract metric history (Data Extractor, with timeout)
2. Run the analytics operation(s) for the job type on a worker thread
3. Hand results to the Alert Engine
4. Summarize the outcome for the execution record

Global jobs isolate pipelines from each other: one pipeline failing is
recorded and the rest still run.
"""

import asyncio
import functools
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pipewatch.core.domain.alert import AlertContext
from pipewatch.core.domain.errors import DataSourceUnavailable, InsufficientData, PipewatchError
from pipewatch.core.domain.job import (
    AnomalyJobParameters,
    CostJobParameters,
    FullJobParameters,
    JobDefinition,
    SLAJobParameters,
    TrendJobParameters,
)
from pipewatch.core.domain.result import PipelineOutcome
from pipewatch.core.ports.data_extractor import DataExtractor
from pipewatch.core.services.alert_engine import AlertEngine
from pipewatch.core.services.analytics import AnalyticsEngine
from pipewatch.core.services.matching import (
    signal_from_anomalies,
    signal_from_cost,
    signal_from_sla,
    signal_from_trend,
)

logger = logging.getLogger(__name__)

# (normalized daily change, |correlation|) a trend must exceed to be reported
TREND_SENSITIVITY = {
    "significant": (0.10, 0.7),
    "moderate": (0.05, 0.5),
    "minimal": (0.02, 0.0),
}


@dataclass
class FiringResult:
    outcomes: list[PipelineOutcome] = field(default_factory=list)

    @property
    def alerts(self) -> list[str]:
        return [a for o in self.outcomes for a in o.alerts]

    @property
    def failed(self) -> list[PipelineOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def summary(self) -> dict[str, Any]:
        return {
            "pipelines": len(self.outcomes),
            "succeeded": len(self.outcomes) - len(self.failed),
            "failed": len(self.failed),
            "alerts": len(self.alerts),
            "results": {o.pipeline_id or "-": o.summary for o in self.outcomes if o.succeeded},
            "errors": {o.pipeline_id or "-": o.error for o in self.failed},
        }


class AnalysisLoop:
    """
    Core service that executes a single job firing.
    """

    def __init__(
        self,
        extractor: DataExtractor,
        engine: AnalyticsEngine,
        alerts: AlertEngine | None = None,
        executor: Executor | None = None,
        extract_timeout: float = 30.0,
    ):
        """
        Initialize the analysis loop.

        Args:
            extractor: Port to read metric history
            engine: Analytics engine
            alerts: Alert engine fed with every result (optional)
            executor: Worker pool for CPU-bound analytics (default loop executor)
            extract_timeout: Seconds allowed per extractor call
        """
        self.extractor = extractor
        self.engine = engine
        self.alerts = alerts
        self.executor = executor
        self.extract_timeout = extract_timeout

    async def run(self, job: JobDefinition, execution_id: str | None = None, now: datetime | None = None) -> FiringResult:
        """
        Execute the job against its pipeline, or every active pipeline for a global job.

        Raises:
            PipewatchError: a pipeline-specific job failed, or every pipeline of a global job failed
        """
        now = now or datetime.now(timezone.utc)
        result = FiringResult()

        if not job.is_global:
            result.outcomes.append(await self.run_pipeline(job, job.pipeline_id, execution_id, now))
            return result

        pipelines = await self._timed(
            self.extractor.list_active_pipelines(job.parameters.period_days, now),
            "list active pipelines",
        )
        logger.info(f"Global job '{job.name}' analysing {len(pipelines)} pipeline(s)")

        first_error: Exception | None = None
        for pipeline_id in pipelines:
            try:
                outcome = await self.run_pipeline(job, pipeline_id, execution_id, now)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Job '{job.name}' failed for pipeline '{pipeline_id}': {e}")
                first_error = first_error or e
                outcome = PipelineOutcome(pipeline_id=pipeline_id, succeeded=False, error=str(e))
            result.outcomes.append(outcome)

        if pipelines and not any(o.succeeded for o in result.outcomes):
            raise first_error
        return result

    async def run_pipeline(
        self,
        job: JobDefinition,
        pipeline_id: str,
        execution_id: str | None,
        now: datetime,
    ) -> PipelineOutcome:
        context = AlertContext(pipeline_id=pipeline_id, job_id=job.id, execution_id=execution_id)
        outcome = PipelineOutcome(pipeline_id=pipeline_id, succeeded=True)
        params = job.parameters

        if isinstance(params, AnomalyJobParameters):
            outcome.summary = await self._anomalies(pipeline_id, params.metrics, params.method, params.threshold, params.period_days, context, now, outcome)
        elif isinstance(params, TrendJobParameters):
            outcome.summary = await self._trends(pipeline_id, params.metrics, params.period_days, params.sensitivity, context, now, outcome)
        elif isinstance(params, SLAJobParameters):
            outcome.summary = await self._sla(pipeline_id, params, context, now, outcome)
        elif isinstance(params, CostJobParameters):
            outcome.summary = await self._costs(pipeline_id, params.period_days, params.efficiency_threshold, context, now, outcome)
        elif isinstance(params, FullJobParameters):
            outcome.summary = await self._full(pipeline_id, params, context, now, outcome)
        return outcome

    async def _full(self, pipeline_id, params: FullJobParameters, context, now, outcome) -> dict[str, Any]:
        steps = [
            ("anomaly", lambda: self._anomalies(pipeline_id, params.metrics, params.method, None, params.period_days, context, now, outcome)),
            ("trend", lambda: self._trends(pipeline_id, params.metrics, params.period_days, params.sensitivity, context, now, outcome)),
        ]
        if params.sla is not None:
            steps.append(("sla", lambda: self._sla(pipeline_id, params.sla, context, now, outcome)))
        steps.append(("cost", lambda: self._costs(pipeline_id, params.period_days, params.efficiency_threshold, context, now, outcome)))

        summary: dict[str, Any] = {}
        errors: dict[str, str] = {}
        first_error: Exception | None = None
        for name, step in steps:
            try:
                summary[name] = await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Full analysis step '{name}' failed for pipeline '{pipeline_id}': {e}")
                errors[name] = str(e)
                first_error = first_error or e
        if not summary:
            raise first_error
        if errors:
            summary["errors"] = errors
        return summary

    async def _anomalies(self, pipeline_id, metrics, method, threshold, period_days, context, now, outcome) -> dict[str, Any]:
        summary = {}
        for metric in metrics:
            series = await self._extract(pipeline_id, metric, period_days, now)
            anomalies = await self._compute(
                self.engine.detect_anomalies, series, method, threshold,
                metric=metric, pipeline_id=pipeline_id,
            )
            summary[metric] = {
                "points": len(series),
                "anomalies": len(anomalies),
                "severities": sorted({a.severity for a in anomalies}),
            }
            if anomalies:
                await self._raise_alerts(signal_from_anomalies(metric, anomalies, context), outcome)
        return summary

    async def _trends(self, pipeline_id, metrics, period_days, sensitivity, context, now, outcome) -> dict[str, Any]:
        min_change, min_corr = TREND_SENSITIVITY[sensitivity]
        summary = {}
        for metric in metrics:
            series = await self._extract(pipeline_id, metric, period_days, now)
            trend = await self._compute(self.engine.analyze_trend, series, metric=metric, pipeline_id=pipeline_id)
            summary[metric] = {
                "trend": trend.trend,
                "slope": trend.slope,
                "change_rate": trend.change_rate,
                "correlation": trend.correlation,
                "notable": (
                    trend.trend != "stable"
                    and abs(trend.change_rate) / 100 > min_change
                    and abs(trend.correlation) > min_corr
                ),
            }
            await self._raise_alerts(signal_from_trend(metric, trend, context), outcome)
        return summary

    async def _sla(self, pipeline_id, params: SLAJobParameters, context, now, outcome) -> dict[str, Any]:
        series = await self._extract(pipeline_id, params.metric, params.period_days, now)
        if not series:
            raise InsufficientData("monitor_sla", 1, 0, metric=params.metric, pipeline_id=pipeline_id)
        sla = await self._compute(
            self.engine.monitor_sla, series[-1].value, params.target, series[:-1], params.violation_type,
            direction=params.direction, metric=params.metric, pipeline_id=pipeline_id,
        )
        if sla.violated:
            await self._raise_alerts(signal_from_sla(params.metric, sla, context), outcome)
        return {
            "violated": sla.violated,
            "actual_value": sla.actual_value,
            "target": sla.sla_target,
            "violation_percent": sla.violation_percent,
            "severity": sla.severity,
        }

    async def _costs(self, pipeline_id, period_days, efficiency_threshold, context, now, outcome) -> dict[str, Any]:
        profile = await self._timed(self.extractor.latest_run_profile(pipeline_id), "latest run profile", pipeline_id)
        if profile is None:
            raise InsufficientData("analyze_costs", 1, 0, pipeline_id=pipeline_id)
        history = await self._extract(pipeline_id, "cost", period_days, now)
        cost = await self._compute(
            self.engine.analyze_costs, profile.execution_minutes, profile.resource_usage, history,
            metric="cost", pipeline_id=pipeline_id,
        )
        await self._raise_alerts(signal_from_cost(cost, context), outcome)
        return {
            "total_cost": cost.total_cost,
            "efficiency": cost.efficiency.score,
            "opportunities": len(cost.optimization_opportunities),
            "notable": (
                cost.efficiency.score < 100 - efficiency_threshold
                or any(o.priority == "high" for o in cost.optimization_opportunities)
            ),
            "cost_trend": cost.cost_trend.direction if cost.cost_trend else None,
        }

    async def _raise_alerts(self, signal, outcome: PipelineOutcome) -> None:
        if self.alerts is None:
            return
        outcome.alerts.extend(await self.alerts.evaluate(signal))

    async def _extract(self, pipeline_id: str, metric: str, period_days: int, now: datetime):
        return await self._timed(
            self.extractor.extract_series(pipeline_id, metric, period_days, now),
            f"extract '{metric}'",
            pipeline_id,
        )

    async def _timed(self, awaitable, what: str, pipeline_id: str | None = None):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.extract_timeout)
        except asyncio.TimeoutError as e:
            raise DataSourceUnavailable(
                f"{what} timed out after {self.extract_timeout}s", pipeline_id=pipeline_id
            ) from e

    async def _compute(self, fn, *args, metric: str | None = None, pipeline_id: str | None = None, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))
        except PipewatchError as e:
            raise e.with_context(metric=metric, pipeline_id=pipeline_id)
