"""
SQLAlchemy ORM models for the tables this core reads and writes.

The schema is owned by the CRUD service; these models map only the columns
the telemetry core touches. Column names are the CRUD service's camelCase
names, mapped onto snake_case attributes.

- properties / floors / rooms / devices: read-only building hierarchy.
- system_settings: read-only tariff row (price columns are nullable and
  fall back to the configured default price).
- presence_logs: deduplicated presence samples written by the ingestion job.

CHANGELOG:
- 2026-10-12: Add hierarchy and settings tables for analytics (STORY-013)
- 2026-10-08: Initial creation with presence_logs (STORY-012)

TODO:
- None
"""

import datetime
import uuid

from sqlalchemy import DateTime, Double, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all telemetry core ORM models."""

    pass


class Property(Base):
    """A building."""

    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ACTIVE")
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(Text, nullable=True)

    floors: Mapped[list["Floor"]] = relationship(
        back_populates="building", order_by="Floor.level"
    )


class Floor(Base):
    __tablename__ = "floors"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    property_id: Mapped[str] = mapped_column(
        "propertyId", Text, ForeignKey("properties.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)

    building: Mapped[Property] = relationship(back_populates="floors")
    rooms: Mapped[list["Room"]] = relationship(back_populates="floor", order_by="Room.name")


class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    property_id: Mapped[str] = mapped_column(
        "propertyId", Text, ForeignKey("properties.id"), nullable=False
    )
    floor_id: Mapped[str] = mapped_column(
        "floorId", Text, ForeignKey("floors.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="ROOM")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="AVAILABLE")
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    floor: Mapped[Floor] = relationship(back_populates="rooms")
    devices: Mapped[list["Device"]] = relationship(order_by="Device.name")


class Device(Base):
    """A physical sensor bound to a building, optionally a floor and room.

    Attributes:
        external_id: The provider's sensor/device key, the only id sent
            upstream.
        provider: ``aranet`` or ``aqara``.
        device_type: POWER, ENVIRONMENT, MOTION, SWITCH or DOOR.
        part: Optional sub-location tag within a suite.
    """

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    property_id: Mapped[str] = mapped_column(
        "propertyId", Text, ForeignKey("properties.id"), nullable=False
    )
    floor_id: Mapped[str | None] = mapped_column(
        "floorId", Text, ForeignKey("floors.id"), nullable=True
    )
    room_id: Mapped[str | None] = mapped_column(
        "roomId", Text, ForeignKey("rooms.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[str | None] = mapped_column("externalId", String(255), nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="OFFLINE")
    provider: Mapped[str] = mapped_column(Text, nullable=False, default="aranet")
    device_type: Mapped[str] = mapped_column("deviceType", Text, nullable=False, default="POWER")
    part: Mapped[str | None] = mapped_column(Text, nullable=True)


class SystemSettings(Base):
    """Tariff columns of the system settings row."""

    __tablename__ = "system_settings"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    price_per_kwh: Mapped[float | None] = mapped_column("pricePerKwh", Double, nullable=True)
    day_price_per_kwh: Mapped[float | None] = mapped_column(
        "dayPricePerKwh", Double, nullable=True
    )
    night_price_per_kwh: Mapped[float | None] = mapped_column(
        "nightPricePerKwh", Double, nullable=True
    )


class PresenceLog(Base):
    """One deduplicated presence sample.

    A row is only written when its value differs from the previous row for
    the same ``external_id``.
    """

    __tablename__ = "presence_logs"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=lambda: str(uuid.uuid4()))
    property_id: Mapped[str] = mapped_column(
        "propertyId", Text, ForeignKey("properties.id"), nullable=False, index=True
    )
    floor_id: Mapped[str] = mapped_column(
        "floorId", Text, ForeignKey("floors.id"), nullable=False, index=True
    )
    room_id: Mapped[str] = mapped_column(
        "roomId", Text, ForeignKey("rooms.id"), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column("externalId", Text, nullable=False, index=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        "createdAt",
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.datetime.now(datetime.UTC),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        "updatedAt",
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.datetime.now(datetime.UTC),
        onupdate=lambda: datetime.datetime.now(datetime.UTC),
    )

    def __repr__(self) -> str:
        """Return string representation of the PresenceLog."""
        return (
            f"PresenceLog(external_id={self.external_id!r}, "
            f"value={self.value!r}, created_at={self.created_at!r})"
        )
