"""
Tests for PrometheusExtractor.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from pipewatch.adapters.extractors.prometheus import PrometheusExtractor
from pipewatch.core.domain.errors import DataSourceUnavailable, NotFound

pytestmark = pytest.mark.unit

NOW = datetime(2024, 1, 2, tzinfo=timezone.utc)


def response(payload):
    mock_response = MagicMock()
    mock_response.json.return_value = payload
    mock_response.raise_for_status = MagicMock()
    return mock_response


def labels(*pipelines):
    return response({"status": "success", "data": list(pipelines)})


@pytest.fixture
def client():
    with patch("pipewatch.adapters.extractors.prometheus.httpx.AsyncClient") as MockClient:
        instance = MockClient.return_value
        instance.get = AsyncMock()
        instance.aclose = AsyncMock()
        yield instance


@pytest.fixture
def extractor():
    return PrometheusExtractor(base_url="http://vm:8428/")


def test_base_url_is_normalized(extractor):
    assert extractor.base_url == "http://vm:8428"


@pytest.mark.asyncio
async def test_extract_series_merges_and_sorts(client, extractor):
    """Values from every returned series are merged into one ascending series."""
    client.get.side_effect = [
        labels("api", "web"),
        response({
            "status": "success",
            "data": {"result": [
                {"metric": {"pipeline_id": "api", "branch": "main"}, "values": [[1704153600, "120"], [1704157200, "NaN"]]},
                {"metric": {"pipeline_id": "api", "branch": "dev"}, "values": [[1704150000, "95.5"]]},
            ]},
        }),
    ]

    series = await extractor.extract_series("api", "duration", 1, now=NOW)

    assert [p.value for p in series] == [95.5, 120.0]
    assert series[0].timestamp == datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)
    assert series[0].timestamp.tzinfo is not None

    _, kwargs = client.get.await_args
    assert kwargs["params"]["query"] == 'pipeline_run_duration_seconds{pipeline_id="api"}'
    assert kwargs["params"]["step"] == "5m"
    assert client.get.await_args.args[0] == "http://vm:8428/api/v1/query_range"


@pytest.mark.asyncio
async def test_empty_window_returns_empty_series(client, extractor):
    client.get.side_effect = [labels("api"), response({"status": "success", "data": {"result": []}})]
    assert await extractor.extract_series("api", "cpu", 7, now=NOW) == []


@pytest.mark.asyncio
async def test_unknown_pipeline(client, extractor):
    client.get.side_effect = [labels("web")]
    with pytest.raises(NotFound):
        await extractor.extract_series("api", "duration", 7, now=NOW)


@pytest.mark.asyncio
async def test_unknown_metric(client, extractor):
    with pytest.raises(ValueError):
        await extractor.extract_series("api", "latency", 7, now=NOW)
    client.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_connection_error_is_data_source_unavailable(client, extractor):
    client.get.side_effect = httpx.ConnectError("connection refused")
    with pytest.raises(DataSourceUnavailable):
        await extractor.list_active_pipelines(now=NOW)


@pytest.mark.asyncio
async def test_query_error_status(client, extractor):
    client.get.side_effect = [response({"status": "error", "error": "bad query"})]
    with pytest.raises(DataSourceUnavailable) as exc:
        await extractor.list_active_pipelines(now=NOW)
    assert "bad query" in str(exc.value)


@pytest.mark.asyncio
async def test_latest_run_profile(client, extractor):
    def instant(value):
        return response({"status": "success", "data": {"result": [{"metric": {}, "value": [1704153600, value]}]}})

    client.get.side_effect = [instant("600"), instant("75"), instant("50"), instant("20"), instant("5")]

    profile = await extractor.latest_run_profile("api")

    assert profile.execution_minutes == 10.0
    assert profile.resource_usage == {"cpu": 75.0, "memory": 50.0, "storage": 20.0, "network": 5.0}
    first_query = client.get.await_args_list[0].kwargs["params"]["query"]
    assert first_query.startswith("last_over_time(pipeline_run_duration_seconds")


@pytest.mark.asyncio
async def test_latest_run_profile_without_runs(client, extractor):
    client.get.return_value = response({"status": "success", "data": {"result": []}})
    assert await extractor.latest_run_profile("api") is None


@pytest.mark.asyncio
async def test_close_releases_client(client, extractor):
    client.get.side_effect = [labels("api")]
    await extractor.list_active_pipelines(now=NOW)
    await extractor.close()
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_latest_run_profile_defaults_unreported_storage_and_network(client, extractor):
    def instant(value):
        return response({"status": "success", "data": {"result": [{"metric": {}, "value": [1704153600, value]}]}})

    empty = response({"status": "success", "data": {"result": []}})
    client.get.side_effect = [instant("600"), instant("70"), instant("70"), empty, empty]

    profile = await extractor.latest_run_profile("api")

    assert profile.resource_usage == {"cpu": 70.0, "memory": 70.0, "storage": 25.0, "network": 10.0}
