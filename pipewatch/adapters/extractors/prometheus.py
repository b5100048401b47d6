"""
Prometheus Extractor - metric history from Prometheus-compatible databases.

Supports VictoriaMetrics, Thanos, Mimir, Cortex, and native Prometheus.
Pipeline runs are expected as gauges labelled with ``pipeline_id``.
"""

import logging
from datetime import datetime, timedelta, timezone

import httpx
import pandas as pd
from pydantic import Field, PrivateAttr

from pipewatch.core.domain.errors import DataSourceUnavailable, NotFound
from pipewatch.core.domain.run import DEFAULT_NETWORK_PERCENT, DEFAULT_STORAGE_PERCENT, RunProfile
from pipewatch.core.domain.series import DataPoint
from pipewatch.core.ports.data_extractor import METRICS, DataExtractor

logger = logging.getLogger(__name__)

PIPELINE_LABEL = "pipeline_id"

DEFAULT_QUERIES = {
    "duration": 'pipeline_run_duration_seconds{pipeline_id="$pipeline"}',
    "cpu": 'pipeline_run_cpu_percent{pipeline_id="$pipeline"}',
    "memory": 'pipeline_run_memory_percent{pipeline_id="$pipeline"}',
    "success_rate": 'pipeline_run_success{pipeline_id="$pipeline"}',
    "test_coverage": 'pipeline_run_test_coverage_percent{pipeline_id="$pipeline"}',
    "cost": 'pipeline_run_cost{pipeline_id="$pipeline"}',
    "storage": 'pipeline_run_storage_percent{pipeline_id="$pipeline"}',
    "network": 'pipeline_run_network_percent{pipeline_id="$pipeline"}',
}


class PrometheusExtractor(DataExtractor):
    """
    Extractor for Prometheus-compatible databases.
    Configured via Pydantic model fields.
    """
    base_url: str
    timeout: float = 30.0
    step: str = "5m"
    headers: dict[str, str] = {}
    queries: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_QUERIES))

    _client: httpx.AsyncClient | None = PrivateAttr(default=None)

    def model_post_init(self, __context):
        """Normalize URL after initialization."""
        self.base_url = self.base_url.rstrip("/")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
            )
        return self._client

    def _query(self, metric: str, pipeline_id: str) -> str:
        return self.queries[metric].replace("$pipeline", pipeline_id)

    async def _get(self, path: str, params: dict) -> dict:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DataSourceUnavailable(f"Prometheus request failed: {e}", path=path) from e

        data = response.json()
        if data.get("status") != "success":
            raise DataSourceUnavailable(
                f"Prometheus query failed: {data.get('error', 'Unknown error')}", path=path
            )
        return data

    async def _known_pipelines(self, start: datetime | None = None, end: datetime | None = None) -> list[str]:
        params = {}
        if start is not None and end is not None:
            params = {"start": start.isoformat(), "end": end.isoformat()}
        data = await self._get(f"/api/v1/label/{PIPELINE_LABEL}/values", params)
        return sorted(data.get("data", []))

    async def extract_series(
        self,
        pipeline_id: str,
        metric: str,
        period_days: int,
        now: datetime | None = None,
    ) -> list[DataPoint]:
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'")
        if pipeline_id not in await self._known_pipelines():
            raise NotFound("pipeline", pipeline_id, metric=metric)

        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=period_days)
        data = await self._get("/api/v1/query_range", {
            "query": self._query(metric, pipeline_id),
            "start": start.isoformat(),
            "end": end.isoformat(),
            "step": self.step,
        })

        frames = []
        for result in data.get("data", {}).get("result", []):
            values = result.get("values", [])
            if not values:
                continue
            df_series = pd.DataFrame(values, columns=["timestamp", "value"])
            df_series["ds"] = pd.to_datetime(df_series["timestamp"].astype(float), unit="s", utc=True)
            df_series["y"] = pd.to_numeric(df_series["value"], errors="coerce")
            frames.append(df_series[["ds", "y"]])

        if not frames:
            return []

        df = pd.concat(frames, ignore_index=True).dropna(subset=["y"]).sort_values("ds", kind="stable")
        return [
            DataPoint(timestamp=row.ds.to_pydatetime(), value=float(row.y), metadata={"source": "prometheus"})
            for row in df.itertuples(index=False)
        ]

    async def list_active_pipelines(self, period_days: int = 7, now: datetime | None = None) -> list[str]:
        end = now or datetime.now(timezone.utc)
        return await self._known_pipelines(end - timedelta(days=period_days), end)

    async def latest_run_profile(self, pipeline_id: str) -> RunProfile | None:
        latest: dict[str, float] = {}
        for metric in ("duration", "cpu", "memory", "storage", "network"):
            data = await self._get("/api/v1/query", {
                "query": f"last_over_time({self._query(metric, pipeline_id)}[30d])",
            })
            result = data.get("data", {}).get("result", [])
            if result:
                latest[metric] = float(result[0]["value"][1])

        if not latest.get("duration"):
            return None
        return RunProfile(
            pipeline_id=pipeline_id,
            run_id="latest",
            execution_minutes=latest["duration"] / 60,
            resource_usage={
                "cpu": latest.get("cpu", 0.0),
                "memory": latest.get("memory", 0.0),
                "storage": latest.get("storage", DEFAULT_STORAGE_PERCENT),
                "network": latest.get("network", DEFAULT_NETWORK_PERCENT),
            },
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
