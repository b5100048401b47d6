"""
Shared fixtures for pipewatch tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from pipewatch.core.domain.series import DataPoint

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for time-driven behaviour."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_series():
    """Build an hourly series from a list of values."""
    def _make(values, start=BASE_TIME, step=timedelta(hours=1)):
        return [DataPoint(timestamp=start + i * step, value=float(v)) for i, v in enumerate(values)]
    return _make


@pytest.fixture
def tight_values():
    """Bounded, deterministic noise around 100."""
    def _make(n):
        return [99.0 if i % 2 else 101.0 for i in range(n)]
    return _make
