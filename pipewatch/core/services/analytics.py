"""
Analytics Engine - turns metric series into typed analysis results.

Five operations, all pure with respect to their arguments:

1. detect_anomalies: z-score, percentile band and IQR fences (or all three)
2. analyze_trend: least-squares regression over elapsed hours
3. generate_benchmark: percentile rank against history
4. monitor_sla: breach detection with explicit direction and remediation
5. analyze_costs: cost model, utilization efficiency and savings

Results are memoized by a content hash of the inputs. Methods are synchronous
and CPU-bound; async callers should run them in an executor.
"""

import logging
from typing import Literal, Sequence

import numpy as np

from pipewatch.core.domain.errors import InsufficientData
from pipewatch.core.domain.result import (
    SEVERITY_RANK,
    AnomalyResult,
    BenchmarkResult,
    ConfidenceInterval,
    CostAnalysisResult,
    CostTrend,
    Efficiency,
    ExpectedRange,
    HistoricalContext,
    OptimizationOpportunity,
    Remediation,
    ResourceUtilization,
    SLAResult,
    TrendPrediction,
    TrendResult,
)
from pipewatch.core.domain.series import DataPoint, Series, is_ascending
from pipewatch.core.domain.settings import AnalyticsSettings
from pipewatch.core.services import statistics as stats
from pipewatch.core.services.memo import ResultCache, content_key

logger = logging.getLogger(__name__)

AnomalyMethodArg = Literal["zscore", "percentile", "iqr", "all"]
SLADirection = Literal["minimum", "maximum"]

RESOURCES = ("cpu", "memory", "storage", "network")
FORECAST_HORIZONS_HOURS = (24.0, 24.0 * 7, 24.0 * 30)

REMEDIATION_RULES: dict[str, dict] = {
    "performance": {
        "immediate": {
            "minor": ["Review recent changes that affect build duration"],
            "major": ["Investigate resource contention on build agents", "Scale up resources temporarily"],
            "critical": [
                "Scale up resources temporarily",
                "Clear caches and restart services",
                "Page the on-call engineer",
            ],
        },
        "long_term": [
            "Optimize database queries",
            "Implement better caching strategies",
            "Parallelize long-running stages",
        ],
    },
    "availability": {
        "immediate": {
            "minor": ["Check service health"],
            "major": ["Check service health", "Restart failing components"],
            "critical": ["Check service health", "Restart failing components", "Fail over to standby runners"],
        },
        "long_term": ["Implement circuit breakers", "Add redundancy and failover"],
    },
    "quality": {
        "immediate": {
            "minor": ["Review failing test reports"],
            "major": ["Quarantine flaky tests", "Block merges on failing checks"],
            "critical": ["Block merges on failing checks", "Roll back the most recent change"],
        },
        "long_term": ["Increase test coverage on critical paths", "Add pre-merge quality gates"],
    },
    "threshold": {
        "immediate": {
            "minor": ["Confirm the threshold still reflects expected behaviour"],
            "major": ["Investigate the metric source for recent regressions"],
            "critical": ["Investigate the metric source for recent regressions", "Escalate to the pipeline owner"],
        },
        "long_term": ["Recalibrate thresholds against recent history"],
    },
    "error_budget": {
        "immediate": {
            "minor": ["Slow down risky deployments"],
            "major": ["Freeze non-critical deployments"],
            "critical": ["Freeze all deployments", "Start an incident review"],
        },
        "long_term": ["Prioritize reliability work in the next iteration", "Review SLO targets with stakeholders"],
    },
}
DEFAULT_REMEDIATION = {
    "immediate": ["Investigate root cause"],
    "long_term": ["Implement monitoring improvements"],
}
ESTIMATED_IMPACT = {
    "minor": "Low: limited effect on delivery, fix during normal work",
    "major": "Medium: noticeable slowdown or failures for pipeline users",
    "critical": "High: delivery is blocked or badly degraded",
}


class AnalyticsEngine:
    """
    Stateless analysis over metric series.

    The only state is the memoization cache, which never changes results.
    """

    def __init__(self, settings: AnalyticsSettings | None = None, cache: ResultCache | None = None):
        self.settings = settings or AnalyticsSettings()
        if cache is None:
            cache = ResultCache(
                max_size=self.settings.cache_size,
                ttl_seconds=self.settings.cache_ttl_seconds,
            )
        self.cache = cache

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def detect_anomalies(
        self,
        series: Series,
        method: AnomalyMethodArg = "all",
        threshold: float | None = None,
    ) -> list[AnomalyResult]:
        """
        Flag points that are statistically inconsistent with the series.

        Args:
            series: Time-ascending data points
            method: zscore, percentile, iqr or all (union, highest severity per timestamp)
            threshold: Optional z-score threshold override

        Returns:
            Flagged points ordered by timestamp; empty when nothing stands out

        Raises:
            InsufficientData: fewer points than ``anomaly.min_data_points``
        """
        if method not in ("zscore", "percentile", "iqr", "all"):
            raise ValueError(f"Unknown anomaly method '{method}'")
        cfg = self.settings.anomaly
        self._require(series, cfg.min_data_points, "detect_anomalies")
        z_threshold = threshold if threshold is not None else cfg.zscore_threshold

        key = content_key("detect_anomalies", _points_key(series), method, z_threshold)
        cached = self.cache.get_or_compute(key, lambda: tuple(self._detect(series, method, z_threshold)))
        return list(cached)

    def _detect(self, series: Series, method: str, z_threshold: float) -> list[AnomalyResult]:
        if method == "zscore":
            return self._zscore(series, z_threshold)
        if method == "percentile":
            return self._percentile(series)
        if method == "iqr":
            return self._iqr(series)

        merged: dict = {}
        for found in (self._zscore(series, z_threshold), self._percentile(series), self._iqr(series)):
            for anomaly in found:
                current = merged.get(anomaly.timestamp)
                if current is None or _outranks(anomaly, current):
                    merged[anomaly.timestamp] = anomaly
        return [merged[ts] for ts in sorted(merged)]

    def _zscore(self, series: Series, threshold: float) -> list[AnomalyResult]:
        values = [p.value for p in series]
        scores = stats.z_scores(values)
        if scores is None:
            return []

        mu = stats.mean(values)
        sigma = stats.sample_std(values)
        bands = self.settings.anomaly.zscore_bands
        expected = ExpectedRange(lower=mu - threshold * sigma, upper=mu + threshold * sigma)

        found = []
        for point, z in zip(series, scores):
            magnitude = abs(float(z))
            if magnitude <= threshold:
                continue
            if magnitude >= bands.critical:
                severity = "critical"
            elif magnitude >= bands.high:
                severity = "high"
            elif magnitude >= bands.medium:
                severity = "medium"
            else:
                severity = "low"
            found.append(AnomalyResult(
                timestamp=point.timestamp,
                actual_value=point.value,
                expected_value=mu,
                expected_range=expected,
                method="zscore",
                severity=severity,
                confidence=min(1.0, 0.5 + 0.5 * (magnitude - threshold) / threshold),
                score=magnitude,
            ))
        return found

    def _percentile(self, series: Series) -> list[AnomalyResult]:
        cfg = self.settings.anomaly
        values = [p.value for p in series]
        low = stats.percentile(values, cfg.percentile_low)
        high = stats.percentile(values, cfg.percentile_high)
        width = high - low
        center = stats.median(values)

        found = []
        for point in series:
            v = point.value
            if width == 0:
                if v == low:
                    continue
                excess, severity, confidence = abs(v - low), "critical", 1.0
            else:
                if v > high:
                    excess = (v - high) / width
                elif v < low:
                    excess = (low - v) / width
                else:
                    continue
                if excess <= cfg.percentile_margin:
                    continue
                if excess >= 3:
                    severity = "critical"
                elif excess >= 2:
                    severity = "high"
                elif excess >= 1:
                    severity = "medium"
                else:
                    severity = "low"
                confidence = min(1.0, excess / 3)
            found.append(AnomalyResult(
                timestamp=point.timestamp,
                actual_value=v,
                expected_value=center,
                expected_range=ExpectedRange(lower=low, upper=high),
                method="percentile",
                severity=severity,
                confidence=confidence,
                score=excess,
            ))
        return found

    def _iqr(self, series: Series) -> list[AnomalyResult]:
        values = [p.value for p in series]
        q1, q2, q3 = stats.quartiles(values)
        iqr = q3 - q1
        m = self.settings.anomaly.iqr_multiplier
        lower, upper = q1 - m * iqr, q3 + m * iqr

        found = []
        for point in series:
            v = point.value
            if lower <= v <= upper:
                continue
            distance = (lower - v) if v < lower else (v - upper)
            if iqr == 0:
                score, severity = distance, "critical"
            else:
                score = distance / iqr
                if score >= 3:
                    severity = "critical"
                elif score >= 2:
                    severity = "high"
                elif score >= 1.5:
                    severity = "medium"
                else:
                    severity = "low"
            found.append(AnomalyResult(
                timestamp=point.timestamp,
                actual_value=v,
                expected_value=q2,
                expected_range=ExpectedRange(lower=lower, upper=upper),
                method="iqr",
                severity=severity,
                confidence=1.0 if iqr == 0 else min(1.0, score / 2),
                score=score,
            ))
        return found

    # ------------------------------------------------------------------
    # Trend
    # ------------------------------------------------------------------

    def analyze_trend(self, series: Series) -> TrendResult:
        """
        Fit a least-squares line through the series.

        Slope is expressed per hour of elapsed time. When every point shares
        a timestamp the index is used instead, one step per hour.
        """
        cfg = self.settings.trend
        self._require(series, cfg.min_data_points, "analyze_trend")
        key = content_key("analyze_trend", _points_key(series))
        return self.cache.get_or_compute(key, lambda: self._trend(series))

    def _trend(self, series: Series) -> TrendResult:
        cfg = self.settings.trend
        y = [p.value for p in series]
        origin = series[0].timestamp
        x = [(p.timestamp - origin).total_seconds() / 3600.0 for p in series]
        if x[-1] - x[0] == 0:
            x = [float(i) for i in range(len(series))]

        reg = stats.linear_regression(x, y)
        mu = stats.mean(y)
        span = x[-1] - x[0]
        scale = abs(mu) if mu != 0 else max(abs(v) for v in y) or 1.0

        if reg.degenerate or abs(reg.slope) * span <= cfg.stable_threshold * scale:
            direction = "stable"
        else:
            direction = "increasing" if reg.slope > 0 else "decreasing"

        last_x = x[-1]
        prediction = TrendPrediction(*(reg.intercept + reg.slope * (last_x + h) for h in FORECAST_HORIZONS_HOURS))
        margin = stats.critical_value(cfg.confidence_level) * reg.slope_std_error

        return TrendResult(
            slope=reg.slope,
            intercept=reg.intercept,
            correlation=reg.correlation,
            r_squared=reg.r_squared,
            trend=direction,
            change_rate=(reg.slope * 24 / mu * 100) if mu != 0 else 0.0,
            volatility=reg.residual_std,
            prediction=prediction,
            slope_interval=ConfidenceInterval(
                lower=reg.slope - margin,
                upper=reg.slope + margin,
                level=cfg.confidence_level,
            ),
        )

    # ------------------------------------------------------------------
    # Benchmark
    # ------------------------------------------------------------------

    def generate_benchmark(
        self,
        current_value: float,
        history: Sequence[float] | Series,
        category: str | None = None,
        lower_is_better: bool = False,
    ) -> BenchmarkResult:
        """
        Rank ``current_value`` against history.

        Args:
            current_value: Value to rank
            history: Historical values or points
            category: Free-form label carried into the result
            lower_is_better: Pick best/worst from the low end (durations, cost)
        """
        cfg = self.settings.benchmark
        values = _as_values(history)
        if len(values) < cfg.min_samples:
            raise InsufficientData("generate_benchmark", cfg.min_samples, len(values))

        key = content_key("generate_benchmark", current_value, values, category, lower_is_better)
        return self.cache.get_or_compute(
            key, lambda: self._benchmark(float(current_value), values, category, lower_is_better)
        )

    def _benchmark(self, current: float, values: list[float], category: str | None, lower_is_better: bool) -> BenchmarkResult:
        cfg = self.settings.benchmark
        benchmark = stats.mean(values)
        rank = stats.percentile_rank(current, values)

        if rank >= cfg.excellent:
            performance = "excellent"
        elif rank >= cfg.good:
            performance = "good"
        elif rank >= cfg.average:
            performance = "average"
        elif rank >= cfg.below_average:
            performance = "below-average"
        else:
            performance = "poor"

        best, worst = (min(values), max(values)) if lower_is_better else (max(values), min(values))
        return BenchmarkResult(
            current_value=current,
            benchmark=benchmark,
            percentile=rank,
            performance=performance,
            historical_context=HistoricalContext(
                best=best,
                worst=worst,
                median=stats.median(values),
                average=benchmark,
            ),
            deviation_percent=((current - benchmark) / benchmark * 100) if benchmark != 0 else 0.0,
            category=category,
        )

    # ------------------------------------------------------------------
    # SLA
    # ------------------------------------------------------------------

    def monitor_sla(
        self,
        current_value: float,
        target: float,
        history: Sequence[float] | Series,
        violation_type: str,
        *,
        direction: SLADirection,
        minor_below: float | None = None,
        major_below: float | None = None,
    ) -> SLAResult:
        """
        Check ``current_value`` against an SLA target.

        ``direction`` is mandatory: ``minimum`` means the value must stay at or
        above the target (availability, success rate), ``maximum`` means at or
        below (duration, error rate). Severity bands default to settings.
        """
        if direction not in ("minimum", "maximum"):
            raise ValueError(f"SLA direction must be 'minimum' or 'maximum', got '{direction}'")
        cfg = self.settings.sla
        minor = minor_below if minor_below is not None else cfg.minor_below
        major = major_below if major_below is not None else cfg.major_below

        history_key = _points_key(history) if _has_points(history) else _as_values(history)
        key = content_key("monitor_sla", current_value, target, history_key, violation_type, direction, minor, major)
        return self.cache.get_or_compute(
            key, lambda: self._sla(float(current_value), float(target), history, violation_type, direction, minor, major)
        )

    def _sla(self, current, target, history, violation_type, direction, minor, major) -> SLAResult:
        violated = _breaches(current, target, direction)

        if not violated:
            percent = 0.0
        elif target == 0:
            percent = 100.0
        else:
            percent = abs(current - target) / abs(target) * 100

        severity = None
        if violated:
            severity = "minor" if percent < minor else "major" if percent < major else "critical"

        frequency, minutes = self._violation_history(history, target, direction)
        return SLAResult(
            violated=violated,
            sla_target=target,
            actual_value=current,
            violation_percent=percent,
            severity=severity,
            violation_type=violation_type,
            direction=direction,
            remediation=_remediation(violation_type, severity),
            frequency_of_violation=frequency,
            time_in_violation_minutes=minutes,
        )

    def _violation_history(self, history, target: float, direction: str) -> tuple[int, float]:
        if not history:
            return 0, 0.0
        if not _has_points(history):
            return sum(1 for v in _as_values(history) if _breaches(v, target, direction)), 0.0

        latest = history[-1].timestamp
        window_hours = self.settings.sla.frequency_window_hours
        frequency = sum(
            1 for p in history
            if _breaches(p.value, target, direction)
            and (latest - p.timestamp).total_seconds() <= window_hours * 3600
        )

        start = None
        for p in reversed(history):
            if not _breaches(p.value, target, direction):
                break
            start = p.timestamp
        minutes = (latest - start).total_seconds() / 60 if start is not None else 0.0
        return frequency, minutes

    # ------------------------------------------------------------------
    # Cost
    # ------------------------------------------------------------------

    def analyze_costs(
        self,
        execution_minutes: float,
        resource_usage: dict[str, float],
        historical_cost: Sequence[float] | Series | None = None,
    ) -> CostAnalysisResult:
        """
        Price one run and score how well it used its resources.

        Args:
            execution_minutes: Wall-clock minutes of the run (> 0)
            resource_usage: Utilization percent per resource; missing ones count as 0
            historical_cost: Previous run costs; ``cost_trend`` is None without enough of them
        """
        if execution_minutes <= 0:
            raise ValueError(f"execution_minutes must be positive, got {execution_minutes}")
        usage = {r: float(resource_usage.get(r, 0.0)) for r in RESOURCES}
        negative = [r for r, v in usage.items() if v < 0]
        if negative:
            raise ValueError(f"resource usage cannot be negative: {negative}")

        history = _as_values(historical_cost or [])
        key = content_key("analyze_costs", execution_minutes, usage, history)
        return self.cache.get_or_compute(key, lambda: self._costs(float(execution_minutes), usage, history))

    def _costs(self, minutes: float, usage: dict[str, float], history: list[float]) -> CostAnalysisResult:
        cfg = self.settings.cost
        total = minutes * cfg.base_rate_per_minute + sum(
            usage[r] * cfg.resource_multipliers.get(r, 0.0) for r in RESOURCES
        )

        scores = []
        opportunities: list[OptimizationOpportunity] = []
        for resource in RESOURCES:
            value = usage[resource]
            if value < cfg.target_low:
                gap = cfg.target_low - value
                savings = total * gap / 100
                description = (
                    f"{resource} utilization {value:.1f}% is below the {cfg.target_low:.0f}% target; "
                    f"right-size the runner"
                )
                kind = f"{resource}-underutilization"
            elif value > cfg.target_high:
                gap = value - cfg.target_high
                savings = total * gap / 100 * 0.5
                description = (
                    f"{resource} utilization {value:.1f}% exceeds the {cfg.target_high:.0f}% target; "
                    f"contention is likely slowing the run"
                )
                kind = f"{resource}-saturation"
            else:
                scores.append(100.0)
                continue
            scores.append(max(0.0, 100.0 - 2 * gap))
            opportunities.append(OptimizationOpportunity(
                type=kind,
                description=description,
                potential_savings=savings,
                priority="high" if gap >= 40 else "medium" if gap >= 20 else "low",
            ))

        if minutes > cfg.long_execution_minutes:
            opportunities.append(OptimizationOpportunity(
                type="execution-time",
                description=(
                    f"Run took {minutes:.0f} minutes; split or parallelize stages to stay under "
                    f"{cfg.long_execution_minutes:.0f}"
                ),
                potential_savings=total * 0.4,
                priority="high",
            ))

        score = float(np.clip(sum(scores) / len(scores), 0.0, 100.0))
        return CostAnalysisResult(
            total_cost=total,
            cost_per_minute=total / minutes,
            resource_utilization=ResourceUtilization(**usage),
            optimization_opportunities=tuple(opportunities),
            efficiency=Efficiency(score=score, recommendations=_recommendations(opportunities, score)),
            cost_trend=self._cost_trend(history),
        )

    def _cost_trend(self, history: list[float]) -> CostTrend | None:
        if len(history) < self.settings.cost.min_history:
            return None
        reg = stats.linear_regression([float(i) for i in range(len(history))], history)
        average = stats.mean(history)
        if reg.degenerate or abs(reg.slope) * len(history) <= self.settings.trend.stable_threshold * abs(average):
            direction = "stable"
        else:
            direction = "increasing" if reg.slope > 0 else "decreasing"
        return CostTrend(slope=reg.slope, direction=direction, average_cost=average)

    # ------------------------------------------------------------------

    def _require(self, series: Series, minimum: int, operation: str) -> None:
        if len(series) < minimum:
            raise InsufficientData(operation, minimum, len(series))
        if not is_ascending(series):
            raise ValueError(f"{operation} requires a time-ascending series")


def _outranks(candidate: AnomalyResult, current: AnomalyResult) -> bool:
    a, b = SEVERITY_RANK[candidate.severity], SEVERITY_RANK[current.severity]
    if a != b:
        return a > b
    return candidate.confidence > current.confidence


def _points_key(series) -> list:
    return [(p.timestamp, p.value) for p in series]


def _has_points(history) -> bool:
    return bool(history) and isinstance(history[0], DataPoint)


def _as_values(history) -> list[float]:
    return [float(p.value) if isinstance(p, DataPoint) else float(p) for p in history]


def _breaches(value: float, target: float, direction: str) -> bool:
    return value < target if direction == "minimum" else value > target


def _remediation(violation_type: str, severity: str | None) -> Remediation:
    if severity is None:
        return Remediation(immediate_actions=(), long_term_actions=(), estimated_impact="None")
    rules = REMEDIATION_RULES.get(violation_type)
    if rules is None:
        immediate, long_term = DEFAULT_REMEDIATION["immediate"], DEFAULT_REMEDIATION["long_term"]
    else:
        immediate, long_term = rules["immediate"][severity], rules["long_term"]
    return Remediation(
        immediate_actions=tuple(immediate),
        long_term_actions=tuple(long_term),
        estimated_impact=ESTIMATED_IMPACT[severity],
    )


def _recommendations(opportunities: list[OptimizationOpportunity], score: float) -> tuple[str, ...]:
    recs = []
    kinds = {o.type for o in opportunities}
    if any(k.endswith("-underutilization") for k in kinds):
        recs.append("Use smaller runner instances for this pipeline")
    if any(k.endswith("-saturation") for k in kinds):
        recs.append("Move heavy stages to larger runners or split them")
    if "execution-time" in kinds:
        recs.append("Cache dependencies and parallelize test suites")
    if score >= 90 and not recs:
        recs.append("Resource usage is within the target band")
    return tuple(recs)
