"""
Unit tests for the sensor response cache and its use by GET /v1/sensors/{id}.

Tests verify:
- Cache keys include provider, sensor id and part.
- No REDIS_URL means no Redis client is ever created.
- A cache hit is returned without calling the aggregator.
- A miss stores the fresh bundle with the configured TTL.
- Redis failures and unreadable entries behave like a miss.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-014)

TODO:
- None
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from bms.src.cache.redis_client import cache_bundle, get_cached_bundle, sensor_cache_key
from bms.src.models import Provider, Reading, SensorBundle, SensorRef

T0 = datetime(2026, 10, 10, 12, 0, tzinfo=UTC)
REDIS_URL = "redis://localhost:6379/0"

BUNDLE = SensorBundle(
    sensor_id="S1",
    sensor_name="Sensor S1",
    sensor_type="environment",
    readings=(Reading(metric_id="1", metric_name="Temperature", value=21.5, unit="°C", timestamp=T0),),
    last_update=T0,
)


def _mock_redis_client(
    cached_value: str | None = None,
    get_side_effect: Exception | None = None,
    set_side_effect: Exception | None = None,
) -> AsyncMock:
    """Create a mock Redis client with configurable behaviour."""
    mock = AsyncMock()
    if get_side_effect is not None:
        mock.get = AsyncMock(side_effect=get_side_effect)
    else:
        mock.get = AsyncMock(return_value=cached_value)
    if set_side_effect is not None:
        mock.set = AsyncMock(side_effect=set_side_effect)
    else:
        mock.set = AsyncMock()
    mock.aclose = AsyncMock()
    return mock


class TestCacheKey:
    def test_key_parts(self) -> None:
        assert sensor_cache_key(SensorRef(id="S1")) == "sensor:aranet:S1:"
        assert (
            sensor_cache_key(SensorRef(id="lumi.1", part="A", provider=Provider.AQARA))
            == "sensor:aqara:lumi.1:A"
        )


class TestCacheHelpers:
    """get_cached_bundle / cache_bundle."""

    @pytest.mark.asyncio
    @patch("bms.src.cache.redis_client.get_redis")
    async def test_no_url_skips_redis(self, mock_get_redis: MagicMock) -> None:
        assert await get_cached_bundle("", SensorRef(id="S1")) is None
        await cache_bundle("", SensorRef(id="S1"), BUNDLE, 5)
        mock_get_redis.assert_not_called()

    @pytest.mark.asyncio
    @patch("bms.src.cache.redis_client.get_redis")
    async def test_hit(self, mock_get_redis: MagicMock) -> None:
        redis_mock = _mock_redis_client(cached_value=BUNDLE.model_dump_json(by_alias=True))
        mock_get_redis.return_value = redis_mock

        cached = await get_cached_bundle(REDIS_URL, SensorRef(id="S1"))

        assert cached == BUNDLE
        redis_mock.get.assert_awaited_once_with("sensor:aranet:S1:")
        redis_mock.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("bms.src.cache.redis_client.get_redis")
    async def test_read_failure_is_miss(self, mock_get_redis: MagicMock) -> None:
        mock_get_redis.return_value = _mock_redis_client(get_side_effect=ConnectionError("down"))
        assert await get_cached_bundle(REDIS_URL, SensorRef(id="S1")) is None

    @pytest.mark.asyncio
    @patch("bms.src.cache.redis_client.get_redis")
    async def test_unreadable_entry_is_miss(self, mock_get_redis: MagicMock) -> None:
        mock_get_redis.return_value = _mock_redis_client(cached_value="{not json")
        assert await get_cached_bundle(REDIS_URL, SensorRef(id="S1")) is None

    @pytest.mark.asyncio
    @patch("bms.src.cache.redis_client.get_redis")
    async def test_store_with_ttl(self, mock_get_redis: MagicMock) -> None:
        redis_mock = _mock_redis_client()
        mock_get_redis.return_value = redis_mock

        await cache_bundle(REDIS_URL, SensorRef(id="S1"), BUNDLE, 5)

        key, value = redis_mock.set.await_args.args
        assert key == "sensor:aranet:S1:"
        assert redis_mock.set.await_args.kwargs == {"ex": 5}
        assert SensorBundle.model_validate_json(value) == BUNDLE

    @pytest.mark.asyncio
    @patch("bms.src.cache.redis_client.get_redis")
    async def test_write_failure_swallowed(self, mock_get_redis: MagicMock) -> None:
        mock_get_redis.return_value = _mock_redis_client(set_side_effect=ConnectionError("down"))
        await cache_bundle(REDIS_URL, SensorRef(id="S1"), BUNDLE, 5)


class TestSensorEndpointCache:
    """GET /v1/sensors/{id} through the cache."""

    @pytest.fixture()
    def cached_client(self, client: TestClient) -> TestClient:
        client.app.state.settings = client.app.state.settings.model_copy(update={"redis_url": REDIS_URL})
        aggregator = MagicMock()
        aggregator.get_sensor_data = AsyncMock(return_value=BUNDLE)
        client.app.state.aggregator = aggregator
        return client

    @patch("bms.src.cache.redis_client.get_redis")
    def test_hit_skips_upstream(self, mock_get_redis: MagicMock, cached_client: TestClient) -> None:
        mock_get_redis.return_value = _mock_redis_client(cached_value=BUNDLE.model_dump_json(by_alias=True))

        response = cached_client.get("/v1/sensors/S1")

        assert response.status_code == 200
        assert response.json()["sensorId"] == "S1"
        cached_client.app.state.aggregator.get_sensor_data.assert_not_awaited()

    @patch("bms.src.cache.redis_client.get_redis")
    def test_miss_stores_bundle(self, mock_get_redis: MagicMock, cached_client: TestClient) -> None:
        redis_mock = _mock_redis_client(cached_value=None)
        mock_get_redis.return_value = redis_mock

        response = cached_client.get("/v1/sensors/S1")

        assert response.status_code == 200
        cached_client.app.state.aggregator.get_sensor_data.assert_awaited_once()
        assert redis_mock.set.await_args.kwargs == {"ex": 5}
