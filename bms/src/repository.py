"""
Read access to the CRUD-owned tables.

Turns ORM rows into the plain hierarchy models the analytics composer and
trend service consume, so neither of them touches SQLAlchemy directly.

CHANGELOG:
- 2026-10-16: Match power-device provider case-insensitively (STORY-015)
- 2026-10-13: Add presence log window query for trends (STORY-015)
- 2026-10-12: Initial creation (STORY-013)

TODO:
- None
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from bms.src.config import BmsSettings
from bms.src.db.models import Device, Floor, PresenceLog, Property, Room, SystemSettings
from bms.src.models import (
    BuildingNode,
    DeviceNode,
    DeviceType,
    FloorNode,
    Provider,
    RoomNode,
)
from bms.src.rollup import Tariff

logger = logging.getLogger(__name__)


def _device_node(device: Device) -> DeviceNode:
    return DeviceNode(
        id=device.id,
        name=device.name,
        provider=device.provider,
        external_id=device.external_id,
        device_type=device.device_type,
        status=device.status,
        part=device.part,
    )


def _building_node(prop: Property) -> BuildingNode:
    return BuildingNode(
        id=prop.id,
        name=prop.name,
        address=prop.address,
        status=prop.status,
        slug=prop.slug,
        city=prop.city,
        country=prop.country,
        floors=[
            FloorNode(
                id=floor.id,
                name=floor.name,
                level=floor.level,
                rooms=[
                    RoomNode(
                        id=room.id,
                        name=room.name,
                        type=room.type,
                        status=room.status,
                        capacity=room.capacity,
                        devices=[_device_node(d) for d in room.devices],
                    )
                    for room in floor.rooms
                ],
            )
            for floor in prop.floors
        ],
    )


async def load_hierarchy(
    session: AsyncSession,
    building_id: str | None = None,
) -> list[BuildingNode]:
    """Load buildings with floors, rooms and devices, ordered for display.

    Args:
        session: Async database session.
        building_id: Restrict to one building when given.
    """
    stmt = (
        select(Property)
        .options(
            selectinload(Property.floors)
            .selectinload(Floor.rooms)
            .selectinload(Room.devices)
        )
        .order_by(Property.name)
    )
    if building_id is not None:
        stmt = stmt.where(Property.id == building_id)
    result = await session.execute(stmt)
    return [_building_node(p) for p in result.scalars().all()]


async def load_floors(session: AsyncSession, building_id: str | None = None) -> list[Floor]:
    """Return floors ordered by level, optionally for one building."""
    stmt = select(Floor).order_by(Floor.level, Floor.name)
    if building_id is not None:
        stmt = stmt.where(Floor.property_id == building_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def load_tariff(session: AsyncSession, settings: BmsSettings) -> Tariff:
    """Build the Tariff from the settings row, falling back to configuration."""
    result = await session.execute(select(SystemSettings).limit(1))
    row = result.scalar_one_or_none()
    if row is None:
        logger.debug("No system_settings row, using configured price %.4f", settings.price_per_kwh)
        return Tariff.from_settings(settings)
    return Tariff.from_settings(
        settings,
        price_per_kwh=row.price_per_kwh,
        day_price_per_kwh=row.day_price_per_kwh,
        night_price_per_kwh=row.night_price_per_kwh,
    )


async def load_motion_devices(session: AsyncSession) -> list[Device]:
    """Return motion devices that have an external id, a room and a floor."""
    stmt = (
        select(Device)
        .where(
            Device.device_type == DeviceType.MOTION,
            Device.external_id.is_not(None),
            Device.room_id.is_not(None),
            Device.floor_id.is_not(None),
        )
        .order_by(Device.name)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def load_power_devices(
    session: AsyncSession,
    building_id: str | None = None,
    provider: str = Provider.ARANET,
) -> list[Device]:
    """Return POWER devices with an external id for *provider*.

    The provider column is matched case-insensitively.
    """
    stmt = select(Device).where(
        Device.device_type == DeviceType.POWER,
        func.lower(Device.provider) == str(provider).lower(),
        Device.external_id.is_not(None),
    )
    if building_id is not None:
        stmt = stmt.where(Device.property_id == building_id)
    result = await session.execute(stmt.order_by(Device.name))
    return list(result.scalars().all())


async def load_presence_logs(
    session: AsyncSession,
    start: datetime,
    end: datetime,
    floor_ids: Sequence[str] | None = None,
) -> list[PresenceLog]:
    """Return presence logs in ``[start, end]`` ordered by creation time."""
    stmt = select(PresenceLog).where(
        PresenceLog.created_at >= start,
        PresenceLog.created_at <= end,
    )
    if floor_ids is not None:
        stmt = stmt.where(PresenceLog.floor_id.in_(list(floor_ids)))
    result = await session.execute(stmt.order_by(PresenceLog.created_at))
    return list(result.scalars().all())
