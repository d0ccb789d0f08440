"""
Sensor endpoints: current bundles, batch fetch, history and electricity.

``GET /v1/sensors/{sensor_id}`` is served through a short-TTL Redis cache
(key ``sensor:{provider}:{id}:{part}``); cache failures fall through to the
upstream fetch. Batch fetches never fail for upstream problems: sensors that
did not answer are simply missing from the response.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-014)

TODO:
- None
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from bms.src.api.deps import Aggregator, Aranet, CurrentTariff, Settings
from bms.src.aranet import DEFAULT_HISTORY_LIMIT
from bms.src.cache.redis_client import cache_bundle, get_cached_bundle
from bms.src.models import ElectricityAnalytics, HistoryResult, Provider, SensorBundle, SensorRef
from bms.src.rollup import ensure_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/sensors", tags=["sensors"])

DEFAULT_ELECTRICITY_WINDOW = timedelta(days=30)


class BatchRequest(BaseModel):
    """Body of ``POST /v1/sensors/batch``."""

    sensors: list[SensorRef] = Field(min_length=1, max_length=500)


@router.post("/batch", response_model=list[SensorBundle])
async def batch(body: BatchRequest, aggregator: Aggregator) -> list[SensorBundle]:
    """Return bundles for every requested sensor that answered."""
    return await aggregator.fetch_many(body.sensors)


@router.get("/{sensor_id}", response_model=SensorBundle)
async def sensor(
    sensor_id: str,
    aggregator: Aggregator,
    settings: Settings,
    provider: Annotated[Provider, Query()] = Provider.ARANET,
    part: Annotated[str | None, Query()] = None,
) -> SensorBundle:
    """Return the current bundle for one sensor."""
    ref = SensorRef(id=sensor_id, part=part, provider=provider)
    cached = await get_cached_bundle(settings.redis_url, ref)
    if cached is not None:
        return cached
    bundle = await aggregator.get_sensor_data(ref)
    await cache_bundle(settings.redis_url, ref, bundle, settings.cache_ttl_s)
    return bundle


@router.get("/{sensor_id}/history", response_model=HistoryResult)
async def history(
    sensor_id: str,
    aranet: Aranet,
    metric: Annotated[str, Query(min_length=1)],
    from_: Annotated[datetime, Query(alias="from")],
    to: Annotated[datetime, Query()],
    limit: Annotated[int, Query(gt=0, le=100000)] = DEFAULT_HISTORY_LIMIT,
) -> HistoryResult:
    """Return history readings for one metric of one Aranet sensor."""
    from_, to = ensure_utc(from_), ensure_utc(to)
    if to < from_:
        raise HTTPException(status_code=422, detail="'to' must not be before 'from'.")
    return await aranet.get_sensor_history(sensor_id, metric, from_, to, limit)


@router.get("/{sensor_id}/electricity", response_model=ElectricityAnalytics)
async def electricity(
    sensor_id: str,
    aranet: Aranet,
    settings: Settings,
    tariff: CurrentTariff,
    metric: Annotated[str | None, Query()] = None,
    from_: Annotated[datetime | None, Query(alias="from")] = None,
    to: Annotated[datetime | None, Query()] = None,
) -> ElectricityAnalytics:
    """Return month/week/day energy, cost and saving for a power sensor.

    Defaults: the configured power metric and the 30 days ending now.
    """
    metric_id = metric or settings.power_metric_id
    if not metric_id:
        raise HTTPException(
            status_code=422,
            detail="No metric given and POWER_METRIC_ID is not configured.",
        )
    end = ensure_utc(to) if to else datetime.now(tz=UTC)
    start = ensure_utc(from_) if from_ else end - DEFAULT_ELECTRICITY_WINDOW
    if end < start:
        raise HTTPException(status_code=422, detail="'to' must not be before 'from'.")
    return await aranet.get_electricity_analytics(sensor_id, metric_id, start, end, tariff)
