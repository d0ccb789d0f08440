"""
Analytics composer: attaches live sensor bundles to the building hierarchy.

The composer collects every device with an external id across all
buildings, fetches them in ONE aggregator call, and folds the bundles back
onto devices by ``(provider, externalId, part)``. Room, floor, building and
summary figures are then computed bottom-up by plain summation.

Suites: a room of type SUITE whose ENVIRONMENT devices carry two or more
distinct ``part`` tags is presented as one synthetic sub-room per part
(sorted by part). Each sub-room gets an even share of the capacity (the
remainder goes to the first parts) and of the room's current power. Devices
without a matching part are shared and listed on the first sub-room only.
The split exists only in the composed output; nothing is persisted.

CHANGELOG:
- 2026-10-14: Add fleet electricity totals for the summary (STORY-014)
- 2026-10-13: Suite split into per-part sub-rooms (STORY-013)
- 2026-10-12: Initial creation (STORY-013)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from bms.src.errors import BmsError
from bms.src.models import (
    AnalyticsReport,
    AnalyticsSummary,
    BuildingMetrics,
    BuildingNode,
    DeviceMetrics,
    DeviceNode,
    DeviceType,
    ElectricityAnalytics,
    FloorMetrics,
    FloorNode,
    Provider,
    RoomMetrics,
    RoomNode,
    SensorBundle,
    SensorRef,
)
from bms.src.rollup import combine_electricity, format_amount

if TYPE_CHECKING:
    from bms.src.aggregator import SensorAggregator
    from bms.src.aranet import AranetClient
    from bms.src.rollup import Tariff

logger = logging.getLogger(__name__)

SUITE = "SUITE"
_BundleKey = tuple[str, str, str | None]


def _provider(value: str) -> Provider | None:
    try:
        return Provider(value.lower())
    except ValueError:
        return None


def collect_refs(buildings: Iterable[BuildingNode]) -> list[SensorRef]:
    """Return one SensorRef per device with an external id and known provider."""
    refs: dict[SensorRef, None] = {}
    for building in buildings:
        for floor in building.floors:
            for room in floor.rooms:
                for device in room.devices:
                    provider = _provider(device.provider)
                    if device.external_id and provider is not None:
                        refs[SensorRef(id=device.external_id, part=device.part, provider=provider)] = None
    return list(refs)


def _count(rooms: Sequence[RoomMetrics], status: str) -> int:
    return sum(1 for r in rooms if r.status == status)


class AnalyticsComposer:
    """Compose hierarchy-wide analytics from live sensor data.

    Args:
        aggregator: Fetches sensor bundles with partial-failure semantics.
        power_metric_id: Aranet metric id carrying power telemetry.
    """

    def __init__(self, aggregator: SensorAggregator, power_metric_id: str) -> None:
        self._aggregator = aggregator
        self._power_metric_id = power_metric_id

    # ------------------------------------------------------------------
    # Bundle lookup
    # ------------------------------------------------------------------

    @staticmethod
    def _index(bundles: Iterable[SensorBundle]) -> dict[_BundleKey, SensorBundle]:
        index: dict[_BundleKey, SensorBundle] = {}
        for b in bundles:
            index[(b.provider.value, b.sensor_id, b.part)] = b
            index.setdefault((b.provider.value, b.sensor_id, None), b)
        return index

    @staticmethod
    def _bundle_for(device: DeviceNode, index: dict[_BundleKey, SensorBundle]) -> SensorBundle | None:
        if not device.external_id:
            return None
        provider = device.provider.lower()
        return index.get((provider, device.external_id, device.part)) or index.get(
            (provider, device.external_id, None)
        )

    # ------------------------------------------------------------------
    # Per-room figures
    # ------------------------------------------------------------------

    def _power(self, devices: Sequence[DeviceMetrics]) -> float:
        """Current power of the first POWER device that reported the metric."""
        if not self._power_metric_id:
            return 0.0
        for d in devices:
            if d.device_type == DeviceType.POWER and d.sensor_data is not None:
                reading = d.sensor_data.reading(self._power_metric_id)
                if reading is not None:
                    return reading.value
        return 0.0

    @staticmethod
    def _presence(devices: Sequence[DeviceMetrics]) -> int:
        """Sum presence counts of motion bundles; motion flag when no count."""
        total = 0
        for d in devices:
            if d.device_type != DeviceType.MOTION or d.sensor_data is None:
                continue
            reading = d.sensor_data.reading("presence") or d.sensor_data.reading("motion")
            if reading is not None:
                total += int(reading.value)
        return total

    @staticmethod
    def _room(
        room: RoomNode,
        devices: list[DeviceMetrics],
        *,
        current_power: float,
        presence: int,
        capacity: int | None = None,
        part: str | None = None,
    ) -> RoomMetrics:
        online = sum(1 for d in devices if d.status == "ONLINE")
        offline = sum(1 for d in devices if d.status == "OFFLINE")
        return RoomMetrics(
            id=f"{room.id}:{part}" if part else room.id,
            name=f"{room.name} ({part})" if part else room.name,
            type=room.type,
            status=room.status,
            capacity=room.capacity if capacity is None else capacity,
            part=part,
            parent_room_id=room.id if part else None,
            devices=devices,
            current_power=current_power,
            presence=presence,
            total_devices=len(devices),
            online_devices=online,
            offline_devices=offline,
        )

    def _compose_room(
        self, room: RoomNode, index: dict[_BundleKey, SensorBundle]
    ) -> list[RoomMetrics]:
        devices = [
            DeviceMetrics(
                id=d.id,
                name=d.name,
                external_id=d.external_id,
                provider=d.provider,
                device_type=d.device_type,
                status=d.status,
                part=d.part,
                sensor_data=self._bundle_for(d, index),
            )
            for d in room.devices
        ]
        power = self._power(devices)

        parts = sorted(
            {d.part for d in devices if d.part and d.device_type == DeviceType.ENVIRONMENT}
        )
        if room.type.upper() != SUITE or len(parts) < 2:
            return [self._room(room, devices, current_power=power, presence=self._presence(devices))]

        n = len(parts)
        base, extra = divmod(room.capacity, n)
        shared = [d for d in devices if d.part not in parts]
        sub_rooms = []
        for i, part in enumerate(parts):
            own = [d for d in devices if d.part == part]
            if i == 0:
                own = own + shared
            sub_rooms.append(
                self._room(
                    room,
                    own,
                    current_power=power / n,
                    presence=self._presence(own),
                    capacity=base + (1 if i < extra else 0),
                    part=part,
                )
            )
        logger.debug("Split suite %s into %d parts", room.id, n)
        return sub_rooms

    # ------------------------------------------------------------------
    # Floors, buildings, summary
    # ------------------------------------------------------------------

    def _compose_floor(self, floor: FloorNode, index: dict[_BundleKey, SensorBundle]) -> FloorMetrics:
        rooms = [m for room in floor.rooms for m in self._compose_room(room, index)]
        return FloorMetrics(
            id=floor.id,
            name=floor.name,
            level=floor.level,
            rooms=rooms,
            total_rooms=len(rooms),
            available_rooms=_count(rooms, "AVAILABLE"),
            occupied_rooms=_count(rooms, "OCCUPIED"),
            total_devices=sum(r.total_devices for r in rooms),
            online_devices=sum(r.online_devices for r in rooms),
            offline_devices=sum(r.offline_devices for r in rooms),
            current_power=sum(r.current_power for r in rooms),
            presence=sum(r.presence for r in rooms),
        )

    def _compose_building(
        self, building: BuildingNode, index: dict[_BundleKey, SensorBundle]
    ) -> BuildingMetrics:
        floors = [self._compose_floor(f, index) for f in building.floors]
        return BuildingMetrics(
            id=building.id,
            name=building.name,
            address=building.address,
            status=building.status,
            slug=building.slug,
            city=building.city,
            country=building.country,
            floors=floors,
            total_floors=len(floors),
            total_rooms=sum(f.total_rooms for f in floors),
            available_rooms=sum(f.available_rooms for f in floors),
            occupied_rooms=sum(f.occupied_rooms for f in floors),
            total_devices=sum(f.total_devices for f in floors),
            online_devices=sum(f.online_devices for f in floors),
            offline_devices=sum(f.offline_devices for f in floors),
            current_power=sum(f.current_power for f in floors),
            presence=sum(f.presence for f in floors),
        )

    def _summary(
        self, buildings: Sequence[BuildingMetrics], bundles: Sequence[SensorBundle]
    ) -> AnalyticsSummary:
        devices = [d for b in buildings for f in b.floors for r in f.rooms for d in r.devices]
        power_values = [
            r.value
            for bundle in bundles
            if bundle.provider == Provider.ARANET and self._power_metric_id
            for r in bundle.readings
            if r.metric_id == self._power_metric_id
        ]
        total_power = sum(power_values)
        return AnalyticsSummary(
            total_buildings=len(buildings),
            total_floors=sum(b.total_floors for b in buildings),
            total_rooms=sum(b.total_rooms for b in buildings),
            available_rooms=sum(b.available_rooms for b in buildings),
            occupied_rooms=sum(b.occupied_rooms for b in buildings),
            total_devices=sum(b.total_devices for b in buildings),
            online_devices=sum(b.online_devices for b in buildings),
            offline_devices=sum(b.offline_devices for b in buildings),
            aranet_devices=sum(1 for d in devices if d.provider.lower() == Provider.ARANET),
            aqara_devices=sum(1 for d in devices if d.provider.lower() == Provider.AQARA),
            presence=sum(b.presence for b in buildings),
            total_power=format_amount(total_power),
            average_power=format_amount(total_power / len(power_values) if power_values else 0.0),
        )

    async def compose(
        self,
        buildings: Sequence[BuildingNode],
        *,
        now: datetime | None = None,
    ) -> AnalyticsReport:
        """Attach live data to *buildings* and compute all rollups.

        One aggregator call covers every device in every building. Sensors
        that fail to answer leave their device's ``sensor_data`` empty.
        """
        refs = collect_refs(buildings)
        bundles = await self._aggregator.fetch_many(refs) if refs else []
        logger.info("Composed analytics from %d/%d sensor bundles", len(bundles), len(refs))
        index = self._index(bundles)
        composed = [self._compose_building(b, index) for b in buildings]
        return AnalyticsReport(
            timestamp=now or datetime.now(tz=UTC),
            buildings=composed,
            summary=self._summary(composed, bundles),
        )

    async def building_analytics(
        self,
        buildings: Sequence[BuildingNode],
        building_id: str,
    ) -> BuildingMetrics | None:
        """Return metrics for one building, or None when it is unknown."""
        selected = [b for b in buildings if b.id == building_id]
        if not selected:
            return None
        report = await self.compose(selected)
        return report.buildings[0]


async def fleet_electricity(
    aranet: AranetClient,
    sensor_ids: Iterable[str],
    metric_id: str,
    start: datetime,
    end: datetime,
    tariff: Tariff,
) -> ElectricityAnalytics:
    """Add up electricity summaries of several power sensors.

    Sensors whose history cannot be fetched are left out of the totals.
    """
    ids = list(dict.fromkeys(sensor_ids))
    results = await asyncio.gather(
        *(aranet.get_electricity_analytics(i, metric_id, start, end, tariff) for i in ids),
        return_exceptions=True,
    )
    summaries: list[ElectricityAnalytics] = []
    for sensor_id, result in zip(ids, results, strict=True):
        if isinstance(result, BmsError):
            logger.warning("Electricity analytics unavailable for %s: %s", sensor_id, result)
        elif isinstance(result, BaseException):
            raise result
        else:
            summaries.append(result)
    return combine_electricity(summaries)
