"""
Pydantic models for normalized telemetry, trend series and analytics.

Reading and SensorBundle are the canonical shapes every provider adapter
produces. Field names are snake_case in Python and camelCase on the wire
(``metricId``, ``lastUpdate``, ...) so that the presentation layer keeps the
JSON contract it already consumes.

The hierarchy node models (BuildingNode .. DeviceNode) describe the data the
CRUD layer hands to the analytics composer; the *Metrics models are what the
composer returns.

CHANGELOG:
- 2026-10-13: Add PresenceLogResult and summary electricity totals (STORY-015)
- 2026-10-12: Add hierarchy input/output models for analytics (STORY-013)
- 2026-10-09: Add TrendPoint, PeriodSummary, ElectricityAnalytics (STORY-011)
- 2026-10-02: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Provider(StrEnum):
    """Upstream cloud a device reports through."""

    ARANET = "aranet"
    AQARA = "aqara"


class DeviceType(StrEnum):
    """Physical role of a device as stored by the CRUD layer."""

    POWER = "POWER"
    ENVIRONMENT = "ENVIRONMENT"
    MOTION = "MOTION"
    SWITCH = "SWITCH"
    DOOR = "DOOR"


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


class Reading(_CamelModel):
    """One (metric, value, time) observation from one physical sensor.

    Attributes:
        metric_id: Provider-local metric identifier.
        metric_name: Resolved human label.
        value: Numeric value in ``unit``.
        unit: Resolved unit name (``"boolean"`` for flag metrics).
        timestamp: Observation instant; normalisation time when the
            provider did not supply one.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    metric_id: str
    metric_name: str
    value: float
    unit: str = ""
    timestamp: datetime


class SensorRef(_CamelModel):
    """The ``(provider, externalId)`` key adapters understand, plus part tag."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str
    part: str | None = None
    provider: Provider = Provider.ARANET


class SensorBundle(_CamelModel):
    """All current readings for one physical sensor.

    Built fresh on every fetch and replaced (never merged) by the next one.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    sensor_id: str
    sensor_name: str
    sensor_type: str
    readings: tuple[Reading, ...] = ()
    last_update: datetime
    part: str | None = None
    provider: Provider = Provider.ARANET

    def reading(self, metric_id: str) -> Reading | None:
        """Return the reading for *metric_id*, or None."""
        for r in self.readings:
            if r.metric_id == metric_id:
                return r
        return None


class HistoryResult(_CamelModel):
    """History readings plus the upstream self link, when present."""

    readings: list[Reading]
    self_link: str | None = Field(default=None, alias="self")


# ---------------------------------------------------------------------------
# Trends and electricity
# ---------------------------------------------------------------------------


class TrendPoint(BaseModel):
    """One aggregated value at the start of its time bucket."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    timestamp: datetime = Field(alias="createdAt")
    value: float


class FloorTrend(_CamelModel):
    """Trend series for one floor."""

    floor_id: str
    name: str = ""
    level: int | None = None
    points: list[TrendPoint] = []


class TrendResponse(BaseModel):
    """Series for several floors over one requested window."""

    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime
    floors: list[FloorTrend]


class CombinedFloorTrend(_CamelModel):
    """Presence (per minute) and energy (per day) series for one floor."""

    floor_id: str
    name: str = ""
    level: int | None = None
    presence_logs: list[TrendPoint] = []
    energy_logs: list[TrendPoint] = []


class CombinedTrendResponse(BaseModel):
    """Combined presence and energy series for several floors."""

    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime
    floors: list[CombinedFloorTrend]


class PeriodSummary(_CamelModel):
    """Energy, cost and saving for one period, formatted to two decimals.

    ``saving`` is the previous equal-length period's cost minus this
    period's cost; a negative value means cost went up.
    """

    energy: str = "0.00"
    cost: str = "0.00"
    saving: str = "0.00"
    day_energy: str = "0.00"
    night_energy: str = "0.00"
    day_cost: str = "0.00"
    night_cost: str = "0.00"


class ElectricityAnalytics(_CamelModel):
    """Month, week and day electricity summaries."""

    month: PeriodSummary = PeriodSummary()
    week: PeriodSummary = PeriodSummary()
    day: PeriodSummary = PeriodSummary()


# ---------------------------------------------------------------------------
# Hierarchy input (supplied by the CRUD layer)
# ---------------------------------------------------------------------------


class DeviceNode(_CamelModel):
    """A device bound to a room, as stored by the CRUD layer."""

    id: str
    name: str
    provider: str
    external_id: str | None = None
    device_type: str = DeviceType.ENVIRONMENT
    status: str = "OFFLINE"
    part: str | None = None


class RoomNode(_CamelModel):
    id: str
    name: str
    type: str = "ROOM"
    status: str = "AVAILABLE"
    capacity: int = 0
    devices: list[DeviceNode] = []


class FloorNode(_CamelModel):
    id: str
    name: str
    level: int = 0
    rooms: list[RoomNode] = []


class BuildingNode(_CamelModel):
    id: str
    name: str
    address: str | None = None
    status: str = "ACTIVE"
    slug: str = ""
    city: str | None = None
    country: str | None = None
    floors: list[FloorNode] = []


# ---------------------------------------------------------------------------
# Analytics output
# ---------------------------------------------------------------------------


class DeviceMetrics(_CamelModel):
    id: str
    name: str
    external_id: str | None = None
    provider: str
    device_type: str
    status: str
    part: str | None = None
    sensor_data: SensorBundle | None = None


class RoomMetrics(_CamelModel):
    """A room (or one part of a split suite) with live metrics attached."""

    id: str
    name: str
    type: str
    status: str
    capacity: int
    part: str | None = None
    parent_room_id: str | None = None
    devices: list[DeviceMetrics] = []
    current_power: float = 0.0
    presence: int = 0
    total_devices: int = 0
    online_devices: int = 0
    offline_devices: int = 0


class FloorMetrics(_CamelModel):
    id: str
    name: str
    level: int
    rooms: list[RoomMetrics] = []
    total_rooms: int = 0
    available_rooms: int = 0
    occupied_rooms: int = 0
    total_devices: int = 0
    online_devices: int = 0
    offline_devices: int = 0
    current_power: float = 0.0
    presence: int = 0


class BuildingMetrics(_CamelModel):
    id: str
    name: str
    address: str | None = None
    status: str
    slug: str = ""
    city: str | None = None
    country: str | None = None
    floors: list[FloorMetrics] = []
    total_floors: int = 0
    total_rooms: int = 0
    available_rooms: int = 0
    occupied_rooms: int = 0
    total_devices: int = 0
    online_devices: int = 0
    offline_devices: int = 0
    current_power: float = 0.0
    presence: int = 0


class AnalyticsSummary(_CamelModel):
    total_buildings: int = 0
    total_floors: int = 0
    total_rooms: int = 0
    available_rooms: int = 0
    occupied_rooms: int = 0
    total_devices: int = 0
    online_devices: int = 0
    offline_devices: int = 0
    aranet_devices: int = 0
    aqara_devices: int = 0
    presence: int = 0
    total_power: str = "0.00"
    average_power: str = "0.00"
    electricity: ElectricityAnalytics | None = None


class AnalyticsReport(_CamelModel):
    timestamp: datetime
    buildings: list[BuildingMetrics]
    summary: AnalyticsSummary


# ---------------------------------------------------------------------------
# Presence ingestion
# ---------------------------------------------------------------------------


class PresenceFailure(_CamelModel):
    device_id: str | None = None
    reason: str


class PresenceLogResult(_CamelModel):
    """Outcome of one presence ingestion run."""

    inserted: int = 0
    failed: int = 0
    total: int = 0
    details: list[PresenceFailure] = []
