"""
Statistics Library - pure numeric helpers over ordered series.

No state, no I/O. Everything takes a sequence of floats and returns floats so
the analytics engine can run these on any worker thread.
"""

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

# Two-sided critical values for the slope confidence interval.
Z_CRITICAL = {0.90: 1.645, 0.95: 1.96, 0.99: 2.576}


@dataclass(frozen=True)
class Regression:
    slope: float
    intercept: float
    correlation: float
    r_squared: float
    residual_std: float
    slope_std_error: float
    degenerate: bool  # x or y carried no variance


def mean(values: Sequence[float]) -> float:
    return float(np.mean(values))


def sample_std(values: Sequence[float]) -> float:
    """Sample standard deviation (n - 1 denominator)."""
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def median(values: Sequence[float]) -> float:
    return float(np.median(values))


def percentile(values: Sequence[float], q: float) -> float:
    """Percentile with linear interpolation between closest ranks, q in [0, 100]."""
    return float(np.percentile(np.asarray(values, dtype=float), q, method="linear"))


def quartiles(values: Sequence[float]) -> tuple[float, float, float]:
    arr = np.asarray(values, dtype=float)
    q1, q2, q3 = np.percentile(arr, [25, 50, 75], method="linear")
    return float(q1), float(q2), float(q3)


def percentile_rank(value: float, history: Sequence[float]) -> float:
    """Share of history at or below ``value``, times 100. Ties count as at-or-below."""
    if not history:
        return 0.0
    arr = np.asarray(history, dtype=float)
    return float(np.count_nonzero(arr <= value) / arr.size * 100.0)


def z_scores(values: Sequence[float]) -> np.ndarray | None:
    """Z-score of each value against the series, or None when sigma is zero."""
    arr = np.asarray(values, dtype=float)
    sigma = sample_std(arr)
    if _negligible(sigma, arr):
        return None
    return (arr - arr.mean()) / sigma


def _negligible(spread: float, arr: np.ndarray) -> bool:
    """Spread indistinguishable from floating point noise around the values."""
    if math.isnan(spread):
        return True
    scale = max(1.0, float(np.max(np.abs(arr)))) if arr.size else 1.0
    return spread <= 1e-12 * scale


def linear_regression(x: Sequence[float], y: Sequence[float]) -> Regression:
    """
    Ordinary least squares of y on x.

    Degenerate inputs (constant x or constant y) return a flat line through the
    mean with zero correlation instead of dividing by zero.
    """
    xa = np.asarray(x, dtype=float)
    ya = np.asarray(y, dtype=float)
    n = xa.size
    if n != ya.size:
        raise ValueError("x and y must have the same length")
    if n < 2:
        raise ValueError("regression needs at least two points")

    x_mean = xa.mean()
    y_mean = ya.mean()
    sxx = float(np.sum((xa - x_mean) ** 2))
    syy = float(np.sum((ya - y_mean) ** 2))
    sxy = float(np.sum((xa - x_mean) * (ya - y_mean)))

    flat_y = _negligible(math.sqrt(syy / n), ya)
    if sxx == 0 or flat_y:
        residuals = ya - y_mean
        return Regression(
            slope=0.0,
            intercept=float(y_mean),
            correlation=0.0,
            r_squared=0.0,
            residual_std=0.0 if flat_y else float(np.std(residuals)),
            slope_std_error=0.0,
            degenerate=True,
        )

    slope = sxy / sxx
    intercept = float(y_mean - slope * x_mean)
    correlation = float(np.clip(sxy / math.sqrt(sxx * syy), -1.0, 1.0))
    residuals = ya - (intercept + slope * xa)
    sse = float(np.sum(residuals ** 2))
    r_squared = float(np.clip(1.0 - sse / syy, 0.0, 1.0))
    slope_std_error = math.sqrt(sse / (n - 2) / sxx) if n > 2 else 0.0

    return Regression(
        slope=float(slope),
        intercept=intercept,
        correlation=correlation,
        r_squared=r_squared,
        residual_std=float(np.std(residuals)),
        slope_std_error=slope_std_error,
        degenerate=False,
    )


def critical_value(confidence_level: float) -> float:
    """Closest tabulated two-sided critical value for ``confidence_level``."""
    level = min(Z_CRITICAL, key=lambda k: abs(k - confidence_level))
    return Z_CRITICAL[level]
