"""
Environmental-cloud (Aranet) adapter.

Authenticates every request with the static API key (sent both as
``Authorization: ApiKey <key>`` and as a bare ``ApiKey`` header, since the
cloud has accepted either over its versions) and delegates all payload
shaping to :mod:`bms.src.normalizer`.

Current values are fetched from two endpoints concurrently
(``/measurements/last`` and ``/telemetry/last``). Either may fail without
aborting the other. When the merged result is empty, the last 24 hours of
history are fetched instead and the most recent point per metric is kept.
Only when every one of those calls failed does the fetch raise.

Unit references on readings are resolved through an injected
:class:`~bms.src.units.ResolverCache`; a failed unit lookup propagates.

CHANGELOG:
- 2026-10-10: Add electricity analytics over one history fetch (STORY-011)
- 2026-10-05: Add 24h history fallback for empty live endpoints (STORY-007)
- 2026-10-04: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from bms.src.errors import (
    BmsError,
    ConfigError,
    DataShapeError,
    TransportError,
    UpstreamApplicationError,
)
from bms.src.models import (
    ElectricityAnalytics,
    HistoryResult,
    Provider,
    Reading,
    SensorBundle,
)
from bms.src.normalizer import collapse_latest, normalize_rows
from bms.src.rollup import electricity_analytics, history_window
from bms.src.units import ResolverCache, UnitInfo, UnitResolver

if TYPE_CHECKING:
    from bms.src.config import BmsSettings
    from bms.src.rollup import Tariff

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BASE_URL = "https://aranet.cloud/api/v1"
USER_AGENT = "bms-telemetry/1.0"

HISTORY_FALLBACK_WINDOW = timedelta(hours=24)
"""How far back the empty-live-data fallback looks."""

DEFAULT_HISTORY_LIMIT = 10000

_LIVE_ENDPOINTS = ("/measurements/last", "/telemetry/last")
_HISTORY_ENDPOINTS = ("/measurements/history", "/telemetry/history")


def format_instant(value: datetime) -> str:
    """Format *value* as the second-precision UTC instant the cloud expects."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True, slots=True)
class SensorMetadata:
    """Name, type and active metric ids of one sensor."""

    name: str
    type: str
    metrics: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AranetClient:
    """Async client for the Aranet cloud API.

    Args:
        api_key: Aranet API key. Required.
        cache: Shared unit-resolution cache.
        base_url: API base URL without trailing slash.
        client: Optional shared ``httpx.AsyncClient``. When omitted the
            adapter owns a private client and closes it in :meth:`aclose`.
        timeout_s: Timeout per upstream request in seconds.
        history_fallback: Fall back to 24h history when live data is empty.

    Raises:
        ConfigError: If *api_key* is empty.
    """

    def __init__(
        self,
        api_key: str,
        *,
        cache: ResolverCache,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
        history_fallback: bool = True,
    ) -> None:
        if not api_key:
            raise ConfigError("Missing Aranet configuration: ARANET_API_KEY is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout_s = timeout_s
        self._history_fallback = history_fallback
        self._resolver = UnitResolver(self._fetch_unit, cache)

    @classmethod
    def from_settings(
        cls,
        settings: BmsSettings,
        *,
        cache: ResolverCache,
        client: httpx.AsyncClient | None = None,
    ) -> AranetClient:
        """Build a client from :class:`~bms.src.config.BmsSettings`."""
        return cls(
            settings.aranet_api_key,
            cache=cache,
            base_url=settings.aranet_base_url,
            client=client,
            timeout_s=settings.request_timeout_s,
            history_fallback=settings.aranet_history_fallback,
        )

    @property
    def resolver(self) -> UnitResolver:
        return self._resolver

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"ApiKey {self._api_key}",
            "ApiKey": self._api_key,
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    async def _get(self, endpoint: str, params: dict[str, str] | None = None) -> Any:
        """GET *endpoint* and return the decoded JSON body.

        Raises:
            TransportError: Timeout, connection failure or non-JSON body.
            UpstreamApplicationError: Non-2xx response.
        """
        url = f"{self._base_url}{endpoint}"
        try:
            response = await self._client.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timeout calling {endpoint}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to {endpoint} failed: {exc}") from exc

        if not response.is_success:
            raise UpstreamApplicationError(
                response.status_code, response.reason_phrase or response.text[:200]
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"Non-JSON body from {endpoint}") from exc

    async def _fetch_unit(self, ref: str) -> UnitInfo:
        data = await self._get(f"/units/unit/{ref}")
        unit = data.get("unit") if isinstance(data, dict) else None
        if not isinstance(unit, dict) or not unit.get("name"):
            raise DataShapeError(f"Unit {ref} has no name")
        precision = unit.get("precision")
        return UnitInfo(
            name=str(unit["name"]),
            precision=int(precision) if isinstance(precision, (int, float)) else 0,
        )

    # ------------------------------------------------------------------
    # Sensors
    # ------------------------------------------------------------------

    async def list_sensors(self) -> list[dict[str, Any]]:
        """Return the raw sensor list from ``GET /sensors``."""
        data = await self._get("/sensors")
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("sensors", "items", "data"):
                value = data.get(key)
                if isinstance(value, list):
                    return value
        return []

    async def get_sensor_metadata(self, sensor_id: str) -> SensorMetadata:
        """Return name, type and active metrics for *sensor_id*.

        Raises:
            DataShapeError: If the response has no ``sensor`` object.
        """
        data = await self._get(f"/sensors/sensor/{sensor_id}")
        sensor = data.get("sensor") if isinstance(data, dict) else None
        if not isinstance(sensor, dict):
            raise DataShapeError(f"Sensor {sensor_id} metadata has no 'sensor' object")
        skills = sensor.get("skills") or []
        metrics = tuple(
            str(skill["metric"])
            for skill in skills
            if isinstance(skill, dict) and skill.get("active") and skill.get("metric") is not None
        )
        return SensorMetadata(
            name=str(sensor.get("name") or sensor_id),
            type=str(sensor.get("type") or "unknown"),
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        endpoints: tuple[str, ...],
        params: dict[str, str],
        sensor_id: str,
        now: datetime,
    ) -> tuple[list[Reading], int]:
        """Call *endpoints* concurrently and merge their rows.

        Returns:
            ``(readings, failures)``. Non-adapter exceptions are re-raised.
        """
        results = await asyncio.gather(
            *(self._get(endpoint, params) for endpoint in endpoints),
            return_exceptions=True,
        )
        readings: list[Reading] = []
        failures = 0
        for endpoint, result in zip(endpoints, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, BmsError):
                    raise result
                failures += 1
                logger.warning(
                    "Aranet %s failed for sensor %s: %s", endpoint, sensor_id, result
                )
                continue
            readings.extend(normalize_rows(result, sensor_id, now=now))
        return readings, failures

    async def fetch_current_metrics(
        self,
        sensor_id: str,
        *,
        now: datetime | None = None,
    ) -> list[Reading]:
        """Return the latest reading per metric for *sensor_id*.

        Raises:
            TransportError: When every live (and fallback) call failed.
            BmsError: When a unit lookup fails.
        """
        now = now or datetime.now(tz=UTC)
        params = {"sensor": sensor_id, "links": "false"}
        readings, failures = await self._fan_out(_LIVE_ENDPOINTS, params, sensor_id, now)
        calls = len(_LIVE_ENDPOINTS)

        if not readings and self._history_fallback:
            logger.info("No live readings for sensor %s, falling back to 24h history", sensor_id)
            history_params = {
                "sensor": sensor_id,
                "from": format_instant(now - HISTORY_FALLBACK_WINDOW),
                "to": format_instant(now),
                "links": "false",
            }
            readings, fallback_failures = await self._fan_out(
                _HISTORY_ENDPOINTS, history_params, sensor_id, now
            )
            failures += fallback_failures
            calls += len(_HISTORY_ENDPOINTS)

        if not readings and failures == calls:
            raise TransportError(f"All Aranet endpoints failed for sensor {sensor_id}")

        return await self._resolver.apply(collapse_latest(readings))

    async def _history_payload(
        self,
        sensor_id: str,
        metric_id: str,
        start: datetime,
        end: datetime,
        limit: int | None,
    ) -> Any:
        params = {
            "sensor": sensor_id,
            "metric": metric_id,
            "from": format_instant(start),
            "to": format_instant(end),
        }
        if limit is not None:
            params["limit"] = str(limit)
        return await self._get("/telemetry/history", params)

    async def fetch_history(
        self,
        sensor_id: str,
        metric_id: str,
        start: datetime,
        end: datetime,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[Reading]:
        """Return every history reading in ``[start, end]`` with units resolved."""
        result = await self.get_sensor_history(sensor_id, metric_id, start, end, limit)
        return result.readings

    async def get_sensor_history(
        self,
        sensor_id: str,
        metric_id: str,
        start: datetime,
        end: datetime,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> HistoryResult:
        """Return history readings plus the upstream ``self`` link.

        Each distinct unit ref is looked up at most once per call, and a
        failed lookup propagates to the caller.
        """
        data = await self._history_payload(sensor_id, metric_id, start, end, limit)
        readings = await self._resolver.apply(normalize_rows(data, sensor_id))
        self_link = data.get("self") if isinstance(data, dict) else None
        return HistoryResult(
            readings=readings,
            self_link=self_link if isinstance(self_link, str) else None,
        )

    async def get_sensor_data(
        self,
        sensor_id: str,
        part: str | None = None,
        *,
        now: datetime | None = None,
    ) -> SensorBundle:
        """Return a fresh SensorBundle for *sensor_id*.

        Metadata failures degrade to the sensor id as name and type
        ``unknown``; reading failures propagate.
        """
        now = now or datetime.now(tz=UTC)
        metadata, readings = await asyncio.gather(
            self.get_sensor_metadata(sensor_id),
            self.fetch_current_metrics(sensor_id, now=now),
            return_exceptions=True,
        )
        if isinstance(readings, BaseException):
            raise readings
        if isinstance(metadata, BaseException):
            if not isinstance(metadata, BmsError):
                raise metadata
            logger.warning("Metadata unavailable for sensor %s: %s", sensor_id, metadata)
            metadata = SensorMetadata(name=sensor_id, type="unknown")

        return SensorBundle(
            sensor_id=sensor_id,
            sensor_name=metadata.name,
            sensor_type=metadata.type,
            readings=tuple(readings),
            last_update=now,
            part=part,
            provider=Provider.ARANET,
        )

    async def get_electricity_analytics(
        self,
        sensor_id: str,
        metric_id: str,
        start: datetime,
        end: datetime,
        tariff: Tariff,
    ) -> ElectricityAnalytics:
        """Return month/week/day energy, cost and saving for a power sensor.

        One history request covers the requested window plus the equal
        windows preceding each period, so savings need no extra calls.
        """
        fetch_from, fetch_to = history_window(start, end)
        data = await self._history_payload(sensor_id, metric_id, fetch_from, fetch_to, None)
        readings = normalize_rows(data, sensor_id)
        logger.debug(
            "Electricity analytics for %s: %d readings in %s..%s",
            sensor_id,
            len(readings),
            format_instant(fetch_from),
            format_instant(fetch_to),
        )
        return electricity_analytics(readings, start, end, tariff)
