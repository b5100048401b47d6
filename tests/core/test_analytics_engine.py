"""
Tests for the Analytics Engine.
"""
from datetime import timedelta

import pytest

from pipewatch.core.domain.errors import InsufficientData
from pipewatch.core.domain.settings import AnalyticsSettings
from pipewatch.core.services.analytics import AnalyticsEngine


@pytest.fixture
def engine():
    return AnalyticsEngine()


# --- anomalies -------------------------------------------------------------

@pytest.mark.parametrize("method", ["zscore", "percentile", "iqr", "all"])
def test_bounded_noise_has_no_anomalies(engine, make_series, tight_values, method):
    """Alternating values around a mean never stand out."""
    series = make_series(tight_values(30))
    assert engine.detect_anomalies(series, method=method) == []


def test_single_spike_is_flagged_critical(engine, make_series, tight_values):
    values = tight_values(30)
    values[20] = 5000.0
    series = make_series(values)

    anomalies = engine.detect_anomalies(series, method="all")

    assert len(anomalies) == 1
    spike = anomalies[0]
    assert spike.timestamp == series[20].timestamp
    assert spike.actual_value == 5000.0
    assert spike.severity == "critical"
    assert 0 < spike.confidence <= 1


def test_zscore_spike_severity_and_range(engine, make_series, tight_values):
    values = tight_values(30)
    values[20] = 5000.0
    [spike] = engine.detect_anomalies(make_series(values), method="zscore")

    assert spike.method == "zscore"
    assert spike.severity in ("critical", "high")
    assert spike.expected_range.lower < spike.expected_value < spike.expected_range.upper
    assert spike.score > 2.5


def test_zscore_threshold_override(engine, make_series, tight_values):
    series = make_series(tight_values(30))
    # Every point sits about one standard deviation from the mean.
    assert len(engine.detect_anomalies(series, method="zscore", threshold=0.5)) == 30


def test_constant_series_has_no_zscore_anomalies(engine, make_series):
    assert engine.detect_anomalies(make_series([7.0] * 12), method="zscore") == []


def test_iqr_with_zero_spread_flags_any_deviation_as_critical(engine, make_series):
    values = [10.0] * 15
    values[3] = 11.0
    anomalies = engine.detect_anomalies(make_series(values), method="iqr")

    assert [a.actual_value for a in anomalies] == [11.0]
    assert anomalies[0].severity == "critical"


def test_anomalies_require_minimum_points(engine, make_series):
    with pytest.raises(InsufficientData) as exc:
        engine.detect_anomalies(make_series([1, 2, 3]))
    assert exc.value.required == 10
    assert exc.value.actual == 3


def test_anomalies_reject_unknown_method(engine, make_series, tight_values):
    with pytest.raises(ValueError):
        engine.detect_anomalies(make_series(tight_values(12)), method="magic")


def test_anomalies_reject_unsorted_series(engine, make_series, tight_values):
    series = list(reversed(make_series(tight_values(12))))
    with pytest.raises(ValueError):
        engine.detect_anomalies(series)


def test_results_are_deterministic_and_memoized(engine, make_series, tight_values):
    values = tight_values(30)
    values[5] = 900.0
    first = engine.detect_anomalies(make_series(values))
    second = engine.detect_anomalies(make_series(values))

    assert first == second
    assert engine.cache.stats()["hits"] == 1


def test_disabled_cache_gives_same_results(make_series, tight_values):
    values = tight_values(30)
    values[5] = 900.0
    cached = AnalyticsEngine().detect_anomalies(make_series(values))
    uncached = AnalyticsEngine(AnalyticsSettings(cache_size=0)).detect_anomalies(make_series(values))
    assert cached == uncached


# --- trend -----------------------------------------------------------------

def test_linear_growth_is_increasing(engine, make_series):
    series = make_series([10 + 5 * i for i in range(20)])
    trend = engine.analyze_trend(series)

    assert trend.trend == "increasing"
    assert trend.slope == pytest.approx(5.0)
    assert trend.r_squared > 0.99
    assert trend.correlation == pytest.approx(1.0)
    # intercept + slope * (last hour + 24)
    assert trend.prediction.next_24h == pytest.approx(10 + 5 * (19 + 24))
    assert trend.prediction.next_24h < trend.prediction.next_7d < trend.prediction.next_30d
    assert trend.slope_interval.lower <= trend.slope <= trend.slope_interval.upper


def test_linear_decline_is_decreasing(engine, make_series):
    trend = engine.analyze_trend(make_series([500 - 3 * i for i in range(12)]))
    assert trend.trend == "decreasing"
    assert trend.change_rate < 0


def test_constant_series_is_stable(engine, make_series):
    trend = engine.analyze_trend(make_series([42.0] * 10))

    assert trend.trend == "stable"
    assert trend.slope == 0.0
    assert trend.volatility == 0.0
    assert trend.change_rate == 0.0
    assert trend.prediction.next_30d == pytest.approx(42.0)


def test_trend_slope_is_per_hour(engine, make_series):
    series = make_series([float(i) for i in range(10)], step=timedelta(minutes=30))
    assert engine.analyze_trend(series).slope == pytest.approx(2.0)


def test_trend_with_shared_timestamps_uses_index(engine, make_series):
    series = make_series([1, 2, 3, 4, 5], step=timedelta(0))
    trend = engine.analyze_trend(series)
    assert trend.slope == pytest.approx(1.0)
    assert trend.trend == "increasing"


def test_trend_requires_minimum_points(engine, make_series):
    with pytest.raises(InsufficientData):
        engine.analyze_trend(make_series([1, 2]))


# --- benchmark -------------------------------------------------------------

def test_median_value_benchmarks_as_average(engine):
    history = [float(v) for v in range(1, 11)]
    result = engine.generate_benchmark(5.0, history, category="duration")

    assert result.percentile == pytest.approx(50.0)
    assert result.performance == "average"
    assert result.benchmark == pytest.approx(5.5)
    assert result.historical_context.best == 10
    assert result.historical_context.worst == 1
    assert result.category == "duration"


def test_median_of_odd_length_history_benchmarks_as_average(engine):
    history = [float(v) for v in range(1, 12)]
    result = engine.generate_benchmark(6.0, history)

    assert result.percentile == pytest.approx(600 / 11)
    assert result.performance == "average"
    assert result.benchmark == pytest.approx(6.0)
    assert result.historical_context.median == 6.0


def test_benchmark_performance_bands(engine):
    history = [float(v) for v in range(1, 11)]
    assert engine.generate_benchmark(10.0, history).performance == "excellent"
    assert engine.generate_benchmark(7.0, history).performance == "good"
    assert engine.generate_benchmark(2.0, history).performance == "below-average"
    assert engine.generate_benchmark(0.0, history).performance == "poor"


def test_benchmark_lower_is_better_flips_context(engine):
    result = engine.generate_benchmark(3.0, [1, 2, 3, 4, 5], lower_is_better=True)
    assert result.historical_context.best == 1
    assert result.historical_context.worst == 5


def test_benchmark_accepts_data_points(engine, make_series):
    result = engine.generate_benchmark(3.0, make_series([1, 2, 3, 4, 5]))
    assert result.percentile == pytest.approx(60.0)


def test_benchmark_requires_history(engine):
    with pytest.raises(InsufficientData):
        engine.generate_benchmark(1.0, [1.0, 2.0])


# --- SLA -------------------------------------------------------------------

def test_availability_breach_is_reported_with_remediation(engine):
    result = engine.monitor_sla(85.0, 95.0, [], "availability", direction="minimum")

    assert result.violated
    assert result.violation_percent == pytest.approx(10 / 95 * 100)
    assert result.severity == "major"
    assert result.remediation.immediate_actions
    assert result.remediation.long_term_actions
    assert result.remediation.estimated_impact.startswith("Medium")


def test_value_meeting_target_is_not_violated(engine):
    result = engine.monitor_sla(99.0, 95.0, [], "availability", direction="minimum")

    assert not result.violated
    assert result.violation_percent == 0.0
    assert result.severity is None
    assert result.remediation.immediate_actions == ()


def test_maximum_direction_flags_values_above_target(engine):
    result = engine.monitor_sla(140.0, 100.0, [], "performance", direction="maximum")
    assert result.violated
    assert result.severity == "critical"
    assert "Page the on-call engineer" in result.remediation.immediate_actions

    assert not engine.monitor_sla(90.0, 100.0, [], "performance", direction="maximum").violated


def test_sla_minor_band_and_custom_bands(engine):
    assert engine.monitor_sla(95.0, 100.0, [], "quality", direction="minimum").severity == "minor"
    custom = engine.monitor_sla(95.0, 100.0, [], "quality", direction="minimum", minor_below=2, major_below=4)
    assert custom.severity == "critical"


def test_unknown_violation_type_uses_default_remediation(engine):
    result = engine.monitor_sla(50.0, 100.0, [], "mystery", direction="minimum")
    assert result.remediation.immediate_actions == ("Investigate root cause",)


def test_sla_zero_target_breach_is_full(engine):
    result = engine.monitor_sla(3.0, 0.0, [], "threshold", direction="maximum")
    assert result.violation_percent == 100.0


def test_sla_history_frequency_and_time_in_violation(engine, make_series):
    history = make_series([99, 99, 90, 99, 80, 85, 88])
    result = engine.monitor_sla(70.0, 95.0, history, "availability", direction="minimum")

    assert result.frequency_of_violation == 4
    # last three points breach, one hour apart
    assert result.time_in_violation_minutes == pytest.approx(120.0)


def test_sla_requires_direction(engine):
    with pytest.raises(ValueError):
        engine.monitor_sla(1.0, 2.0, [], "availability", direction="sideways")


# --- cost ------------------------------------------------------------------

def test_cost_of_balanced_run(engine):
    cfg = engine.settings.cost
    usage = {"cpu": 70, "memory": 70, "storage": 70, "network": 70}
    result = engine.analyze_costs(10, usage)

    expected = 10 * cfg.base_rate_per_minute + sum(70 * m for m in cfg.resource_multipliers.values())
    assert result.total_cost == pytest.approx(expected)
    assert result.cost_per_minute == pytest.approx(expected / 10)
    assert result.efficiency.score == 100.0
    assert result.optimization_opportunities == ()
    assert result.efficiency.recommendations == ("Resource usage is within the target band",)
    assert result.cost_trend is None


def test_underutilized_and_long_runs_yield_opportunities(engine):
    result = engine.analyze_costs(45, {"cpu": 10, "memory": 70, "storage": 70, "network": 95})
    kinds = {o.type: o for o in result.optimization_opportunities}

    assert kinds["cpu-underutilization"].priority == "high"
    assert kinds["network-saturation"].priority == "low"
    assert kinds["execution-time"].priority == "high"
    assert kinds["execution-time"].potential_savings == pytest.approx(result.total_cost * 0.4)
    assert result.efficiency.score < 100
    assert len(result.efficiency.recommendations) == 3


def test_missing_resources_count_as_idle(engine):
    result = engine.analyze_costs(5, {"cpu": 70})
    assert result.resource_utilization.memory == 0.0
    assert any(o.type == "memory-underutilization" for o in result.optimization_opportunities)


def test_cost_trend_from_history(engine):
    result = engine.analyze_costs(10, {"cpu": 70, "memory": 70, "storage": 70, "network": 70}, [1, 2, 3, 4, 5, 6])
    assert result.cost_trend.direction == "increasing"
    assert result.cost_trend.average_cost == pytest.approx(3.5)


@pytest.mark.parametrize("minutes, usage", [
    (0, {"cpu": 50}),
    (-1, {"cpu": 50}),
    (10, {"cpu": -5}),
])
def test_cost_rejects_invalid_input(engine, minutes, usage):
    with pytest.raises(ValueError):
        engine.analyze_costs(minutes, usage)
