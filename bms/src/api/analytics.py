"""
Analytics endpoints: hierarchy-wide live metrics.

``GET /v1/analytics`` composes every building from the database hierarchy and
live sensor data in one aggregator pass. With ``electricity=true`` the
summary also carries month/week/day energy and cost for the whole power
fleet over the 30 days ending now.

CHANGELOG:
- 2026-10-15: Optional fleet electricity in the summary (STORY-016)
- 2026-10-14: Initial creation (STORY-016)

TODO:
- None
"""

import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, Request

from bms.src.analytics import AnalyticsComposer, fleet_electricity
from bms.src.api.deps import Aggregator, CurrentTariff, DbSession, Settings
from bms.src.api.sensors import DEFAULT_ELECTRICITY_WINDOW
from bms.src.models import AnalyticsReport, BuildingMetrics
from bms.src.repository import load_hierarchy, load_power_devices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/analytics", tags=["analytics"])


@router.get("", response_model=AnalyticsReport)
async def analytics(
    request: Request,
    db: DbSession,
    settings: Settings,
    aggregator: Aggregator,
    tariff: CurrentTariff,
    electricity: Annotated[bool, Query(description="Add fleet electricity totals.")] = False,
) -> AnalyticsReport:
    """Return live metrics for every building plus a fleet summary."""
    buildings = await load_hierarchy(db)
    report = await AnalyticsComposer(aggregator, settings.power_metric_id).compose(buildings)

    aranet = request.app.state.aranet
    if electricity and aranet is not None and settings.power_metric_id:
        devices = await load_power_devices(db)
        end = datetime.now(tz=UTC)
        fleet = await fleet_electricity(
            aranet,
            (d.external_id for d in devices if d.external_id),
            settings.power_metric_id,
            end - DEFAULT_ELECTRICITY_WINDOW,
            end,
            tariff,
        )
        report.summary.electricity = fleet
    elif electricity:
        logger.warning("Fleet electricity requested but Aranet or POWER_METRIC_ID is missing")
    return report


@router.get("/buildings/{building_id}", response_model=BuildingMetrics)
async def building(
    building_id: str,
    db: DbSession,
    settings: Settings,
    aggregator: Aggregator,
) -> BuildingMetrics:
    """Return live metrics for one building.

    Raises:
        HTTPException: 404 if the building does not exist.
    """
    buildings = await load_hierarchy(db, building_id)
    metrics = await AnalyticsComposer(aggregator, settings.power_metric_id).building_analytics(
        buildings, building_id
    )
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Building '{building_id}' not found.")
    return metrics
