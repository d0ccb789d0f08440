"""
Trend endpoints for presence and energy charts.

All three endpoints take a required ``from``/``to`` window and an optional
``building_id``, and return one series per floor ordered by level:
``{from, to, floors: [{floorId, name, level, points: [{value, createdAt}]}]}``.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-015)

TODO:
- None
"""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Request

from bms.src.api.deps import DbSession, Settings
from bms.src.models import CombinedTrendResponse, TrendResponse
from bms.src.rollup import ensure_utc
from bms.src.trends import TrendService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/trends", tags=["trends"])

From = Annotated[datetime, Query(alias="from", description="Window start (inclusive).")]
To = Annotated[datetime, Query(description="Window end (inclusive).")]
BuildingId = Annotated[str | None, Query(description="Restrict to one building.")]


def _window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start, end = ensure_utc(start), ensure_utc(end)
    if end < start:
        raise HTTPException(status_code=422, detail="'to' must not be before 'from'.")
    return start, end


def _service(request: Request, db: DbSession, settings: Settings) -> TrendService:
    return TrendService(db, request.app.state.aranet, settings.power_metric_id)


@router.get("/presence", response_model=TrendResponse)
async def presence_trend(
    request: Request,
    db: DbSession,
    settings: Settings,
    from_: From,
    to: To,
    building_id: BuildingId = None,
) -> TrendResponse:
    """Presence summed per minute across each floor's motion sensors."""
    start, end = _window(from_, to)
    return await _service(request, db, settings).presence_trend(start, end, building_id)


@router.get("/energy", response_model=TrendResponse)
async def energy_trend(
    request: Request,
    db: DbSession,
    settings: Settings,
    from_: From,
    to: To,
    building_id: BuildingId = None,
) -> TrendResponse:
    """Daily energy in kWh per floor from power-sensor history."""
    start, end = _window(from_, to)
    return await _service(request, db, settings).energy_trend(start, end, building_id)


@router.get("/combined", response_model=CombinedTrendResponse)
async def combined_trend(
    request: Request,
    db: DbSession,
    settings: Settings,
    from_: From,
    to: To,
    building_id: BuildingId = None,
) -> CombinedTrendResponse:
    """Presence and energy series side by side per floor."""
    start, end = _window(from_, to)
    return await _service(request, db, settings).combined_trend(start, end, building_id)
