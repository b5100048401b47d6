"""
Series Domain Model - time-ordered metric samples.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence


@dataclass(frozen=True)
class DataPoint:
    """A single metric sample produced by a pipeline run."""

    timestamp: datetime
    value: float
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


Series = Sequence[DataPoint]


def is_ascending(series: Series) -> bool:
    """Check that timestamps never go backwards."""
    return all(a.timestamp <= b.timestamp for a, b in zip(series, series[1:]))


def sort_series(points: list[DataPoint]) -> list[DataPoint]:
    """Return points ordered by timestamp (stable for equal timestamps)."""
    return sorted(points, key=lambda p: p.timestamp)


def values_of(series: Series) -> list[float]:
    return [float(p.value) for p in series]
