"""
Tests for job definitions and their validation.
"""
from datetime import timedelta

import pytest

from pipewatch.core.domain.errors import ConfigurationInvalid
from pipewatch.core.domain.job import (
    AnomalyJobParameters,
    JobDefinition,
    JobExecution,
    SLAJobParameters,
    parse_job_definition,
)


def test_parameters_are_tagged_from_job_type():
    job = parse_job_definition({
        "name": "nightly anomalies",
        "type": "anomaly",
        "schedule": "0 2 * * *",
        "pipeline_id": "api",
        "parameters": {"metrics": ["duration", "cpu"], "method": "zscore"},
    })

    assert isinstance(job.parameters, AnomalyJobParameters)
    assert job.parameters.metrics == ["duration", "cpu"]
    assert job.parameters.period_days == 7
    assert not job.is_global


def test_missing_parameters_use_defaults():
    job = parse_job_definition({"name": "costs", "type": "cost", "schedule": "*/15 * * * *"})
    assert job.parameters.kind == "cost"
    assert job.parameters.efficiency_threshold == 20.0
    assert job.is_global
    assert job.enabled


def test_sla_parameters_require_target_and_direction():
    with pytest.raises(ConfigurationInvalid):
        parse_job_definition({"name": "sla", "type": "sla", "schedule": "* * * * *", "parameters": {"target": 95}})

    job = parse_job_definition({
        "name": "sla",
        "type": "sla",
        "schedule": "* * * * *",
        "parameters": {"target": 95, "direction": "minimum"},
    })
    assert isinstance(job.parameters, SLAJobParameters)
    assert job.parameters.metric == "success_rate"


def test_six_field_cron_is_accepted():
    job = parse_job_definition({"name": "fast", "type": "trend", "schedule": "*/5 * * * * 30"})
    assert job.schedule == "*/5 * * * * 30"


@pytest.mark.parametrize("schedule", ["", "every minute", "* * *", "61 * * * *", "* * * * * * * *"])
def test_invalid_cron_is_rejected(schedule):
    with pytest.raises(ConfigurationInvalid) as exc:
        parse_job_definition({"name": "bad", "type": "trend", "schedule": schedule})
    assert "schedule" in str(exc.value)


def test_mismatched_parameter_kind_is_rejected():
    with pytest.raises(ConfigurationInvalid):
        parse_job_definition({
            "name": "confused",
            "type": "trend",
            "schedule": "* * * * *",
            "parameters": {"kind": "cost"},
        })


def test_unknown_metric_is_rejected():
    with pytest.raises(ConfigurationInvalid):
        parse_job_definition({
            "name": "bad metric",
            "type": "anomaly",
            "schedule": "* * * * *",
            "parameters": {"metrics": ["latency_p99"]},
        })


def test_error_context_names_the_job():
    with pytest.raises(ConfigurationInvalid) as exc:
        parse_job_definition({"name": "broken", "type": "nope", "schedule": "* * * * *"})
    assert exc.value.context["job"] == "broken"


def test_existing_definition_passes_through():
    job = JobDefinition(name="x", type="trend", schedule="* * * * *", parameters={"kind": "trend"})
    assert parse_job_definition(job) is job


def test_execution_duration(base_time):
    execution = JobExecution(job_id="j", started_at=base_time)
    assert execution.duration_ms is None
    assert not execution.is_finished

    execution.finished_at = base_time + timedelta(seconds=1.5)
    execution.status = "succeeded"
    assert execution.duration_ms == 1500
    assert execution.is_finished


@pytest.mark.parametrize("data", ["nightly", 42, ["name", "type"], None])
def test_non_mapping_definition_is_rejected(data):
    with pytest.raises(ConfigurationInvalid):
        parse_job_definition(data)
