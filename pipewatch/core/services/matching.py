"""
Matching of analysis results and external signals against alert configurations.
"""

from dataclasses import dataclass, field
from typing import Any

from pipewatch.core.domain.alert import (
    PRIORITY_ORDER,
    SEVERITY_ORDER,
    SLA_SEVERITY_ORDER,
    AlertConfiguration,
    AlertContext,
    AlertDetails,
    SLAThresholds,
)
from pipewatch.core.domain.result import AnomalyResult, CostAnalysisResult, SLAResult, TrendResult


@dataclass
class Signal:
    """A candidate alert: what happened, where, and the structured result if any."""

    type: str
    details: AlertDetails
    context: AlertContext = field(default_factory=AlertContext)
    result: Any = None  # list[AnomalyResult] | TrendResult | SLAResult | CostAnalysisResult


@dataclass(frozen=True)
class ThresholdCheck:
    matched: bool
    threshold: float | None = None
    reason: str = ""


TITLE_TEMPLATES = {
    "anomaly": "Anomaly Detected: {metric}",
    "trend": "Trend Alert: {metric} {direction}",
    "sla": "SLA Violation: {metric}",
    "cost": "Cost Alert: {metric}",
    "custom": "{name}: {metric}",
}

MESSAGE_TEMPLATES = {
    "anomaly": "{count} anomalous value(s) for {metric} on {pipeline}; latest value {value:.2f} ({reason})",
    "trend": "{metric} on {pipeline} is {direction} at {value:.1f}% per day ({reason})",
    "sla": "{metric} on {pipeline} is {value:.2f} against a target of {threshold} ({reason})",
    "cost": "{metric} on {pipeline} scored {value:.1f} ({reason})",
    "custom": "{metric} on {pipeline} reached {value:.2f} ({reason})",
}


def filters_match(config: AlertConfiguration, context: AlertContext) -> bool:
    """
    Pipeline, environment and tag filters. A filter that is set must be
    satisfied; a signal without a pipeline id never matches a pipeline filter.
    """
    f = config.filters
    if f.pipeline_ids is not None and context.pipeline_id not in f.pipeline_ids:
        return False
    if f.environments is not None and context.environment not in f.environments:
        return False
    if f.tags is not None and not set(f.tags) & set(context.tags):
        return False
    return True


def sla_severity(percent: float, thresholds: SLAThresholds) -> str:
    """Severity of a breach under the configuration's own bands."""
    if percent < thresholds.minor_below:
        return "minor"
    return "major" if percent < thresholds.major_below else "critical"


def check_thresholds(config: AlertConfiguration, signal: Signal) -> ThresholdCheck:
    t = config.thresholds
    result = signal.result
    details = signal.details

    if t.kind == "anomaly":
        if isinstance(result, (list, tuple)):
            qualifying = [
                a for a in result
                if isinstance(a, AnomalyResult)
                and SEVERITY_ORDER[a.severity] >= SEVERITY_ORDER[t.min_severity]
                and a.confidence >= t.min_confidence
            ]
            return ThresholdCheck(
                len(qualifying) >= t.min_anomalies,
                reason=f"{len(qualifying)} at or above {t.min_severity}",
            )
        severity = details.severity or "medium"
        return ThresholdCheck(
            SEVERITY_ORDER[severity] >= SEVERITY_ORDER[t.min_severity],
            threshold=details.threshold,
            reason=f"severity {severity}, minimum {t.min_severity}",
        )

    if t.kind == "trend":
        if isinstance(result, TrendResult):
            matched = (
                result.trend in t.directions
                and abs(result.change_rate) >= t.min_change_rate
                and abs(result.correlation) >= t.min_correlation
            )
            return ThresholdCheck(matched, threshold=t.min_change_rate, reason=f"correlation {result.correlation:.2f}")
        return ThresholdCheck(abs(details.trigger_value) >= t.min_change_rate, threshold=t.min_change_rate)

    if t.kind == "sla":
        if isinstance(result, SLAResult):
            if not result.violated:
                return ThresholdCheck(False, threshold=result.sla_target, reason="no breach")
            severity = sla_severity(result.violation_percent, t)
            return ThresholdCheck(
                SLA_SEVERITY_ORDER[severity] >= SLA_SEVERITY_ORDER[t.min_severity],
                threshold=result.sla_target,
                reason=f"{result.violation_percent:.1f}% breach, {severity} severity",
            )
        percent = details.trigger_value
        if percent <= 0:
            return ThresholdCheck(False, threshold=details.threshold)
        severity = sla_severity(percent, t)
        return ThresholdCheck(
            SLA_SEVERITY_ORDER[severity] >= SLA_SEVERITY_ORDER[t.min_severity],
            threshold=details.threshold,
            reason=f"{percent:.1f}% breach, {severity} severity",
        )

    if t.kind == "cost":
        if isinstance(result, CostAnalysisResult):
            reasons = []
            if result.efficiency.score < t.min_efficiency_score:
                reasons.append(f"efficiency {result.efficiency.score:.1f} below {t.min_efficiency_score:g}")
            if t.max_total_cost is not None and result.total_cost > t.max_total_cost:
                reasons.append(f"cost {result.total_cost:.2f} above {t.max_total_cost:g}")
            if t.min_opportunity_priority is not None and any(
                PRIORITY_ORDER[o.priority] >= PRIORITY_ORDER[t.min_opportunity_priority]
                for o in result.optimization_opportunities
            ):
                reasons.append(f"{t.min_opportunity_priority}-priority savings available")
            return ThresholdCheck(bool(reasons), threshold=t.min_efficiency_score, reason="; ".join(reasons))
        return ThresholdCheck(details.trigger_value < t.min_efficiency_score, threshold=t.min_efficiency_score)

    above = details.trigger_value > t.value
    matched = above if t.comparison == "above" else details.trigger_value < t.value
    return ThresholdCheck(matched, threshold=t.value, reason=f"{t.comparison} {t.value:g}")


def render(config: AlertConfiguration, signal: Signal, check: ThresholdCheck) -> tuple[str, str]:
    """Title and message for a new alert."""
    details = signal.details
    direction = getattr(signal.result, "trend", None) or details.data.get("direction", "changing")
    count = len(signal.result) if isinstance(signal.result, (list, tuple)) else 1
    values = {
        "metric": details.metric,
        "name": config.name,
        "direction": direction,
        "pipeline": details.pipeline_id or "all pipelines",
        "value": details.trigger_value,
        "threshold": check.threshold if check.threshold is not None else "n/a",
        "count": count,
        "reason": check.reason or config.name,
    }
    title = TITLE_TEMPLATES[config.type].format(**values)
    message = MESSAGE_TEMPLATES[config.type].format(**values)
    if details.description:
        message = f"{message}. {details.description}"
    return title, message


def signal_from_anomalies(metric: str, anomalies: list[AnomalyResult], context: AlertContext) -> Signal:
    worst = max(anomalies, key=lambda a: (SEVERITY_ORDER[a.severity], a.confidence)) if anomalies else None
    return Signal(
        type="anomaly",
        details=AlertDetails(
            metric=metric,
            trigger_value=worst.actual_value if worst else 0.0,
            threshold=worst.expected_value if worst else None,
            pipeline_id=context.pipeline_id,
            severity=worst.severity if worst else None,
            data={"count": len(anomalies), "methods": sorted({a.method for a in anomalies})},
        ),
        context=context,
        result=list(anomalies),
    )


def signal_from_trend(metric: str, trend: TrendResult, context: AlertContext) -> Signal:
    return Signal(
        type="trend",
        details=AlertDetails(
            metric=metric,
            trigger_value=trend.change_rate,
            pipeline_id=context.pipeline_id,
            data={"direction": trend.trend, "slope": trend.slope, "correlation": trend.correlation},
        ),
        context=context,
        result=trend,
    )


def signal_from_sla(metric: str, sla: SLAResult, context: AlertContext) -> Signal:
    return Signal(
        type="sla",
        details=AlertDetails(
            metric=metric,
            trigger_value=sla.actual_value,
            threshold=sla.sla_target,
            pipeline_id=context.pipeline_id,
            data={
                "violation_percent": sla.violation_percent,
                "severity": sla.severity,
                "immediate_actions": list(sla.remediation.immediate_actions),
            },
        ),
        context=context,
        result=sla,
    )


def signal_from_cost(cost: CostAnalysisResult, context: AlertContext) -> Signal:
    return Signal(
        type="cost",
        details=AlertDetails(
            metric="cost_efficiency",
            trigger_value=cost.efficiency.score,
            pipeline_id=context.pipeline_id,
            data={"total_cost": cost.total_cost, "opportunities": len(cost.optimization_opportunities)},
        ),
        context=context,
        result=cost,
    )
