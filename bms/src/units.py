"""
Metric and unit resolution.

METRIC_DEFINITIONS maps well-known metric codes from both clouds to a
canonical name and default unit. Aranet readings carry a unit *reference*
(an upstream unit id) rather than a unit name; UnitResolver turns those refs
into names through ``GET /units/unit/{id}`` and memoises the result in an
injected ResolverCache, because the same unit repeats on every reading of a
sensor.

Lookup failures propagate to the caller. No default unit is invented for a
ref that could not be resolved.

CHANGELOG:
- 2026-10-07: Add hub-cloud metric definitions and presence count (STORY-006)
- 2026-10-03: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from bms.src.models import Reading

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MetricDef:
    """Canonical name, default unit and family of a metric code."""

    name: str
    unit: str
    kind: str


BOOLEAN_UNIT = "boolean"
"""Sentinel unit for flag metrics such as motion."""

METRIC_DEFINITIONS: dict[str, MetricDef] = {
    # Aranet numeric metric codes
    "1": MetricDef("Temperature", "°C", "environmental"),
    "2": MetricDef("Humidity", "%", "environmental"),
    "3": MetricDef("CO₂", "ppm", "environmental"),
    "4": MetricDef("Atmospheric Pressure", "hPa", "environmental"),
    "15": MetricDef("Pulses", "pulses", "power"),
    "16": MetricDef("Pulses Cumulative", "pulses", "power"),
    "61": MetricDef("RSSI", "dBm", "system"),
    "62": MetricDef("Battery voltage", "%", "system"),
    # Aqara metrics, keyed by the names the hub adapter emits
    "motion": MetricDef("Motion", BOOLEAN_UNIT, "presence"),
    "presence": MetricDef("Presence count", "persons", "presence"),
    "battery": MetricDef("Battery", "%", "system"),
    "rssi": MetricDef("RSSI", "dBm", "system"),
    "lux": MetricDef("Illuminance", "lux", "environmental"),
    "temperature": MetricDef("Temperature", "°C", "environmental"),
}


def metric_name(metric_id: str, fallback: str | None = None) -> str:
    """Return the canonical name for *metric_id*.

    Unknown codes use *fallback* (typically the name embedded in the raw
    row) and then a synthesized ``"Metric <id>"``.
    """
    definition = METRIC_DEFINITIONS.get(metric_id)
    if definition is not None:
        return definition.name
    return fallback or f"Metric {metric_id}"


def default_unit(metric_id: str) -> str:
    """Return the default unit for *metric_id*, or an empty string."""
    definition = METRIC_DEFINITIONS.get(metric_id)
    return definition.unit if definition is not None else ""


def is_unit_ref(unit: str) -> bool:
    """True when *unit* is an upstream unit id that needs a lookup."""
    return unit.isdigit()


@dataclass(frozen=True, slots=True)
class UnitInfo:
    """Resolved unit name and display precision."""

    name: str
    precision: int


class ResolverCache:
    """Process-lifetime memo of resolved unit refs.

    Passed into adapters explicitly so tests can use a fresh instance per
    case. Read-mostly; safe under single-threaded asyncio scheduling.
    """

    def __init__(self) -> None:
        self._entries: dict[str, UnitInfo] = {}

    def get(self, ref: str) -> UnitInfo | None:
        return self._entries.get(ref)

    def put(self, ref: str, info: UnitInfo) -> None:
        self._entries[ref] = info

    def __contains__(self, ref: object) -> bool:
        return ref in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


UnitFetcher = Callable[[str], Awaitable[UnitInfo]]


class UnitResolver:
    """Resolve upstream unit refs to names, one network lookup per ref.

    Args:
        fetch: Coroutine function performing the upstream lookup for one
            ref. Its exceptions propagate unchanged.
        cache: Shared ResolverCache.
    """

    def __init__(self, fetch: UnitFetcher, cache: ResolverCache) -> None:
        self._fetch = fetch
        self._cache = cache

    async def resolve_unit(self, ref: str) -> UnitInfo:
        """Return the UnitInfo for *ref*, consulting the cache first."""
        cached = self._cache.get(ref)
        if cached is not None:
            return cached
        info = await self._fetch(ref)
        self._cache.put(ref, info)
        logger.debug("Resolved unit ref %s -> %s", ref, info.name)
        return info

    async def resolve_many(self, refs: Iterable[str]) -> dict[str, UnitInfo]:
        """Resolve every distinct ref exactly once, concurrently.

        Raises:
            Exception: The first lookup failure, unchanged.
        """
        distinct = sorted({ref for ref in refs if ref})
        missing = [ref for ref in distinct if ref not in self._cache]
        if missing:
            infos = await asyncio.gather(*(self._fetch(ref) for ref in missing))
            for ref, info in zip(missing, infos, strict=True):
                self._cache.put(ref, info)
        return {ref: self._cache.get(ref) for ref in distinct}  # type: ignore[misc]

    async def apply(self, readings: Iterable[Reading]) -> list[Reading]:
        """Return *readings* with unit refs replaced by resolved names."""
        readings = list(readings)
        refs = [r.unit for r in readings if is_unit_ref(r.unit)]
        if not refs:
            return readings
        resolved = await self.resolve_many(refs)
        return [
            r.model_copy(update={"unit": resolved[r.unit].name})
            if r.unit in resolved
            else r
            for r in readings
        ]
