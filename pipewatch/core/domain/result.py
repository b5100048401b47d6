"""
Result Domain Models - values produced by the analytics engine.

These are plain values: the engine never persists them and neither the
scheduler nor the alert engine mutates them.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

AnomalyMethod = Literal["zscore", "percentile", "iqr"]
Severity = Literal["low", "medium", "high", "critical"]
TrendDirection = Literal["increasing", "decreasing", "stable"]
PerformanceBand = Literal["excellent", "good", "average", "below-average", "poor"]
SLASeverity = Literal["minor", "major", "critical"]
Priority = Literal["low", "medium", "high"]

SEVERITY_RANK: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


@dataclass(frozen=True)
class ExpectedRange:
    lower: float
    upper: float


@dataclass(frozen=True)
class AnomalyResult:
    """A single flagged point."""

    timestamp: datetime
    actual_value: float
    expected_value: float | None
    expected_range: ExpectedRange | None
    method: AnomalyMethod
    severity: Severity
    confidence: float
    score: float  # z-score, band excess or IQR distance depending on method


@dataclass(frozen=True)
class ConfidenceInterval:
    lower: float
    upper: float
    level: float


@dataclass(frozen=True)
class TrendPrediction:
    next_24h: float
    next_7d: float
    next_30d: float


@dataclass(frozen=True)
class TrendResult:
    slope: float  # units per hour
    intercept: float
    correlation: float
    r_squared: float
    trend: TrendDirection
    change_rate: float  # percent of mean per day
    volatility: float
    prediction: TrendPrediction
    slope_interval: ConfidenceInterval


@dataclass(frozen=True)
class HistoricalContext:
    best: float
    worst: float
    median: float
    average: float


@dataclass(frozen=True)
class BenchmarkResult:
    current_value: float
    benchmark: float
    percentile: float
    performance: PerformanceBand
    historical_context: HistoricalContext
    deviation_percent: float
    category: str | None = None


@dataclass(frozen=True)
class Remediation:
    immediate_actions: tuple[str, ...]
    long_term_actions: tuple[str, ...]
    estimated_impact: str


@dataclass(frozen=True)
class SLAResult:
    violated: bool
    sla_target: float
    actual_value: float
    violation_percent: float
    severity: SLASeverity | None
    violation_type: str
    direction: str
    remediation: Remediation
    frequency_of_violation: int = 0
    time_in_violation_minutes: float = 0.0


@dataclass(frozen=True)
class ResourceUtilization:
    cpu: float
    memory: float
    storage: float
    network: float


@dataclass(frozen=True)
class OptimizationOpportunity:
    type: str
    description: str
    potential_savings: float
    priority: Priority


@dataclass(frozen=True)
class Efficiency:
    score: float
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class CostTrend:
    slope: float
    direction: TrendDirection
    average_cost: float


@dataclass(frozen=True)
class CostAnalysisResult:
    total_cost: float
    cost_per_minute: float
    resource_utilization: ResourceUtilization
    optimization_opportunities: tuple[OptimizationOpportunity, ...]
    efficiency: Efficiency
    cost_trend: CostTrend | None


@dataclass
class PipelineOutcome:
    """Outcome of one pipeline inside a job firing."""

    pipeline_id: str | None
    succeeded: bool
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    alerts: list[str] = field(default_factory=list)


def to_dict(result: Any) -> dict[str, Any]:
    """Serialize a result dataclass into JSON-friendly primitives."""
    data = asdict(result)
    return _jsonable(data)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value
