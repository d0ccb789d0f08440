"""
Trend service: per-floor presence and energy series for charts.

Presence series come from the presence_logs table, summed per minute across
all motion sensors of a floor. Energy series come from live power-sensor
history, summed per day and converted to kWh. A power sensor whose history
cannot be fetched is left out of its floor's series.

CHANGELOG:
- 2026-10-13: Initial creation (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from bms.src.errors import BmsError, ConfigError
from bms.src.models import (
    CombinedFloorTrend,
    CombinedTrendResponse,
    FloorTrend,
    Reading,
    TrendPoint,
    TrendResponse,
)
from bms.src.repository import load_floors, load_power_devices, load_presence_logs
from bms.src.rollup import Granularity, energy_series, presence_rollup

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from bms.src.aranet import AranetClient
    from bms.src.db.models import Device, Floor

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PresenceSample:
    timestamp: datetime
    value: int
    floor_id: str
    room_id: str


class TrendService:
    """Build trend responses for one request.

    Args:
        session: Async database session.
        aranet: Aranet adapter for power history, or None.
        power_metric_id: Aranet metric id carrying power telemetry.
    """

    def __init__(
        self,
        session: AsyncSession,
        aranet: AranetClient | None,
        power_metric_id: str,
    ) -> None:
        self._session = session
        self._aranet = aranet
        self._power_metric_id = power_metric_id

    async def _presence_points(
        self, floors: list[Floor], start: datetime, end: datetime
    ) -> dict[str, list[TrendPoint]]:
        logs = await load_presence_logs(self._session, start, end, [f.id for f in floors])
        samples = [
            PresenceSample(
                timestamp=log.created_at,
                value=log.value,
                floor_id=log.floor_id,
                room_id=log.room_id,
            )
            for log in logs
        ]
        return presence_rollup(samples, key=lambda s: s.floor_id)

    async def _device_history(self, device: Device, start: datetime, end: datetime) -> list[Reading]:
        assert self._aranet is not None
        try:
            return await self._aranet.fetch_history(
                device.external_id,  # type: ignore[arg-type]
                self._power_metric_id,
                start,
                end,
            )
        except BmsError as exc:
            logger.warning("Power history unavailable for device %s: %s", device.id, exc)
            return []

    async def _energy_points(
        self,
        floors: list[Floor],
        start: datetime,
        end: datetime,
        building_id: str | None,
    ) -> dict[str, list[TrendPoint]]:
        if self._aranet is None or not self._power_metric_id:
            raise ConfigError("Energy trends need the Aranet adapter and POWER_METRIC_ID")
        floor_ids = {f.id for f in floors}
        devices = [
            d
            for d in await load_power_devices(self._session, building_id)
            if d.floor_id in floor_ids
        ]
        histories = await asyncio.gather(*(self._device_history(d, start, end) for d in devices))

        by_floor: dict[str, list[Reading]] = {}
        for device, readings in zip(devices, histories, strict=True):
            by_floor.setdefault(device.floor_id, []).extend(readings)  # type: ignore[arg-type]
        return {
            floor_id: energy_series(readings, Granularity.DAY)
            for floor_id, readings in by_floor.items()
        }

    async def presence_trend(
        self, start: datetime, end: datetime, building_id: str | None = None
    ) -> TrendResponse:
        """Per-floor presence sums per minute in ``[start, end]``."""
        floors = await load_floors(self._session, building_id)
        points = await self._presence_points(floors, start, end)
        return TrendResponse(
            from_=start,
            to=end,
            floors=[
                FloorTrend(floor_id=f.id, name=f.name, level=f.level, points=points.get(f.id, []))
                for f in floors
            ],
        )

    async def energy_trend(
        self, start: datetime, end: datetime, building_id: str | None = None
    ) -> TrendResponse:
        """Per-floor daily energy in kWh in ``[start, end]``."""
        floors = await load_floors(self._session, building_id)
        points = await self._energy_points(floors, start, end, building_id)
        return TrendResponse(
            from_=start,
            to=end,
            floors=[
                FloorTrend(floor_id=f.id, name=f.name, level=f.level, points=points.get(f.id, []))
                for f in floors
            ],
        )

    async def combined_trend(
        self, start: datetime, end: datetime, building_id: str | None = None
    ) -> CombinedTrendResponse:
        """Presence (per minute) and energy (per day) side by side per floor."""
        floors = await load_floors(self._session, building_id)
        presence = await self._presence_points(floors, start, end)
        energy = await self._energy_points(floors, start, end, building_id)
        return CombinedTrendResponse(
            from_=start,
            to=end,
            floors=[
                CombinedFloorTrend(
                    floor_id=f.id,
                    name=f.name,
                    level=f.level,
                    presence_logs=presence.get(f.id, []),
                    energy_logs=energy.get(f.id, []),
                )
                for f in floors
            ],
        )
