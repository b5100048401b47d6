"""
Tests for AnalysisLoop Service.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from pipewatch.adapters.extractors.memory import InMemoryExtractor
from pipewatch.core.domain.errors import DataSourceUnavailable, InsufficientData, NotFound
from pipewatch.core.domain.job import parse_job_definition
from pipewatch.core.domain.run import PipelineRun
from pipewatch.core.ports.data_extractor import DataExtractor
from pipewatch.core.services.alert_engine import AlertEngine
from pipewatch.core.services.analysis_loop import AnalysisLoop
from pipewatch.core.services.analytics import AnalyticsEngine
from pipewatch.core.services.dispatcher import ChannelDispatcher


def make_runs(pipeline_id, start, count, spike_at=None, failed_last=False):
    runs = []
    for i in range(count):
        duration = 99.0 if i % 2 else 101.0
        if i == spike_at:
            duration = 5000.0
        runs.append(PipelineRun(
            pipeline_id=pipeline_id,
            run_id=f"{pipeline_id}-{i}",
            started_at=start + timedelta(hours=i),
            status="failed" if failed_last and i == count - 1 else "success",
            duration_seconds=duration,
            cpu_percent=40.0 + i,
            memory_percent=70.0,
            cost=1.0 + 0.01 * i,
        ))
    return runs


@pytest.fixture
def now(base_time):
    return base_time + timedelta(hours=30)


@pytest.fixture
def extractor(base_time):
    ext = InMemoryExtractor()
    ext.add_runs(make_runs("api", base_time, 30, spike_at=20, failed_last=True))
    ext.add_runs(make_runs("short", base_time, 3))
    return ext


@pytest.fixture
def alerts():
    return AlertEngine(ChannelDispatcher({}, sleep=AsyncMock()))


def job(type, pipeline_id="api", **parameters):
    return parse_job_definition({
        "name": f"{type} job",
        "type": type,
        "schedule": "*/5 * * * *",
        "pipeline_id": pipeline_id,
        "parameters": parameters,
    })


@pytest.mark.asyncio
async def test_anomaly_job_raises_alert(extractor, alerts, now):
    await alerts.create_configuration({
        "name": "spikes",
        "type": "anomaly",
        "channels": [{"id": "hook", "type": "webhook"}],
    })
    loop = AnalysisLoop(extractor, AnalyticsEngine(), alerts)

    result = await loop.run(job("anomaly", metrics=["duration"]), execution_id="e1", now=now)

    [outcome] = result.outcomes
    assert outcome.succeeded
    assert outcome.summary["duration"]["anomalies"] == 1
    assert outcome.summary["duration"]["points"] == 30
    assert len(result.alerts) == 1
    alert = alerts.get_alert(result.alerts[0])
    assert alert.context.execution_id == "e1"
    assert alert.context.pipeline_id == "api"
    await alerts.drain()


@pytest.mark.asyncio
async def test_trend_job_summary(extractor, alerts, now):
    await alerts.create_configuration({
        "name": "cpu creep",
        "type": "trend",
        "channels": [{"id": "hook", "type": "webhook"}],
    })
    loop = AnalysisLoop(extractor, AnalyticsEngine(), alerts)

    result = await loop.run(job("trend", metrics=["cpu"]), now=now)

    summary = result.outcomes[0].summary["cpu"]
    assert summary["trend"] == "increasing"
    assert summary["slope"] == pytest.approx(1.0)
    assert summary["notable"]
    assert len(result.alerts) == 1
    await alerts.drain()


@pytest.mark.asyncio
async def test_sla_job_uses_latest_point_as_current(extractor, now):
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    result = await loop.run(job("sla", target=0.95, direction="minimum"), now=now)

    summary = result.outcomes[0].summary
    assert summary["violated"]
    assert summary["actual_value"] == 0.0
    assert summary["severity"] == "critical"


@pytest.mark.asyncio
async def test_cost_job_uses_latest_run_profile(extractor, now):
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    result = await loop.run(job("cost"), now=now)

    summary = result.outcomes[0].summary
    assert summary["total_cost"] > 0
    assert summary["opportunities"] >= 1
    assert summary["cost_trend"] == "increasing"


@pytest.mark.asyncio
async def test_full_job_runs_every_step(extractor, now):
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    result = await loop.run(
        job("full", metrics=["duration"], sla={"target": 0.95, "direction": "minimum"}),
        now=now,
    )

    summary = result.outcomes[0].summary
    assert set(summary) == {"anomaly", "trend", "sla", "cost"}


@pytest.mark.asyncio
async def test_full_job_records_failed_steps(extractor, now):
    """Trend needs 5 points and anomaly 10, cost still works with 3 runs."""
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    result = await loop.run(job("full", pipeline_id="short"), now=now)

    summary = result.outcomes[0].summary
    assert "cost" in summary
    assert set(summary["errors"]) == {"anomaly", "trend"}


@pytest.mark.asyncio
async def test_specific_job_propagates_errors_with_context(extractor, now):
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    with pytest.raises(InsufficientData) as exc:
        await loop.run(job("anomaly", pipeline_id="short"), now=now)

    assert exc.value.context == {"metric": "duration", "pipeline_id": "short"}
    assert "pipeline_id=short" in str(exc.value)


@pytest.mark.asyncio
async def test_unknown_pipeline_is_not_found(extractor, now):
    loop = AnalysisLoop(extractor, AnalyticsEngine())
    with pytest.raises(NotFound):
        await loop.run(job("anomaly", pipeline_id="ghost"), now=now)


@pytest.mark.asyncio
async def test_global_job_isolates_pipeline_failures(extractor, now):
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    result = await loop.run(job("anomaly", pipeline_id=None), now=now)

    assert [o.pipeline_id for o in result.outcomes] == ["api", "short"]
    assert [o.succeeded for o in result.outcomes] == [True, False]
    summary = result.summary()
    assert summary["succeeded"] == 1
    assert "short" in summary["errors"]


@pytest.mark.asyncio
async def test_global_job_fails_when_every_pipeline_fails(base_time, now):
    extractor = InMemoryExtractor()
    extractor.add_runs(make_runs("a", base_time, 3))
    extractor.add_runs(make_runs("b", base_time, 4))
    loop = AnalysisLoop(extractor, AnalyticsEngine())

    with pytest.raises(InsufficientData):
        await loop.run(job("anomaly", pipeline_id=None), now=now)


@pytest.mark.asyncio
async def test_global_job_with_no_active_pipelines(now):
    loop = AnalysisLoop(InMemoryExtractor(), AnalyticsEngine())
    result = await loop.run(job("trend", pipeline_id=None), now=now)
    assert result.outcomes == []


@pytest.mark.asyncio
async def test_slow_extractor_times_out(now):
    async def hang(*args, **kwargs):
        await asyncio.sleep(10)

    extractor = MagicMock(spec=DataExtractor)
    extractor.extract_series = AsyncMock(side_effect=hang)
    loop = AnalysisLoop(extractor, AnalyticsEngine(), extract_timeout=0.01)

    with pytest.raises(DataSourceUnavailable) as exc:
        await loop.run(job("anomaly"), now=now)
    assert exc.value.context["pipeline_id"] == "api"
