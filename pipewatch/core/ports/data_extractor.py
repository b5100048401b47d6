"""
DataExtractor Port - Interface for reading pipeline metric history.

Implementations convert whatever the run source holds into time-ascending
DataPoint series the analytics engine understands.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from pipewatch.core.domain.run import RunProfile
from pipewatch.core.domain.series import DataPoint

METRICS = ("duration", "cpu", "memory", "success_rate", "test_coverage", "cost")


class DataExtractor(BaseModel, ABC):
    """
    Abstract interface for metric extraction.
    Also serves as a Pydantic Model for configuration validation.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    @abstractmethod
    async def extract_series(
        self,
        pipeline_id: str,
        metric: str,
        period_days: int,
        now: datetime | None = None,
    ) -> list[DataPoint]:
        """
        Fetch one metric for a pipeline over the trailing period.

        Args:
            pipeline_id: Pipeline identifier
            metric: One of METRICS
            period_days: Trailing window in days
            now: End of the window (default: current UTC time)

        Returns:
            Time-ascending points; empty when the pipeline had no runs in the period

        Raises:
            NotFound: the pipeline is unknown
            DataSourceUnavailable: the backend could not be queried
        """
        ...

    @abstractmethod
    async def list_active_pipelines(self, period_days: int = 7, now: datetime | None = None) -> list[str]:
        """
        List pipelines with at least one run in the trailing period.

        Returns:
            Pipeline ids, sorted
        """
        ...

    @abstractmethod
    async def latest_run_profile(self, pipeline_id: str) -> RunProfile | None:
        """
        Execution minutes and resource usage of the latest finished run.

        Returns:
            RunProfile, or None when the pipeline has no finished runs
        """
        ...

    async def close(self) -> None:
        """Release any held connections."""
        return None
