"""
Pure normalizer that converts raw cloud telemetry payloads into Readings.

The Aranet cloud has shipped several response envelopes over its API
versions, and rows inside them use either a verbose JSON convention
(``metric.id``, ``value``, ``time``) or a compact SenML-like one (``m``,
``v``, ``t``). This module is the single place that absorbs that variance:

1. ENVELOPES is an ordered list of unwrappers. Each one either recognises the
   payload and returns its row list, or returns None. The first match wins.
2. For every row, each logical field is read through an ordered alias list.
3. Rows without a metric id, without a finite numeric value, with an
   unparsable timestamp, or carrying a different sensor id than the filter
   are dropped. Rows without any sensor id pass the filter.

This is a pure function: no I/O and no clock. ``now`` is injected by the
caller and used as the timestamp of rows that carry none.

CHANGELOG:
- 2026-10-05: Accept scalar ``metric``/``sensor`` fields used by /telemetry
- 2026-10-04: Add collapse to latest reading per metric (STORY-005)
- 2026-10-03: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from bms.src.models import Reading
from bms.src.units import METRIC_DEFINITIONS, metric_name

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Envelope unwrappers, tried in order
# ---------------------------------------------------------------------------

Unwrapper = Callable[[Any], "list[Any] | None"]


def _bare_list(payload: Any) -> list[Any] | None:
    return payload if isinstance(payload, list) else None


def _under(*path: str) -> Unwrapper:
    """Build an unwrapper returning the list found at *path*."""

    def unwrap(payload: Any) -> list[Any] | None:
        node = _dig(payload, path)
        return node if isinstance(node, list) else None

    unwrap.__name__ = "_under_" + "_".join(path)
    return unwrap


ENVELOPES: tuple[tuple[str, Unwrapper], ...] = (
    ("array", _bare_list),
    ("readings", _under("readings")),
    ("measurements", _under("measurements")),
    ("data", _under("data")),
    ("data.readings", _under("data", "readings")),
    ("data.measurements", _under("data", "measurements")),
    ("items", _under("items")),
)
"""Known envelope shapes, most common first."""


def unwrap_rows(payload: Any) -> list[Any]:
    """Return the raw row list from any known envelope, or ``[]``."""
    for name, unwrap in ENVELOPES:
        rows = unwrap(payload)
        if rows is not None:
            logger.debug("Payload matched envelope '%s' (%d rows)", name, len(rows))
            return rows
    if payload:
        logger.debug("Payload matched no known envelope: %s", type(payload).__name__)
    return []


# ---------------------------------------------------------------------------
# Field aliases, tried in order
# ---------------------------------------------------------------------------

_METRIC_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("metric", "id"),
    ("metric",),
    ("metricId",),
    ("metric_id",),
    ("mId",),
    ("m",),
)
_UNIT_PATHS: tuple[tuple[str, ...], ...] = (
    ("unit",),
    ("units", 0, "name"),  # type: ignore[arg-type]
    ("metric", "unit", "name"),
)
_VALUE_PATHS: tuple[tuple[str, ...], ...] = (
    ("value",),
    ("val",),
    ("measurement", "value"),
    ("y",),
    ("v",),
)
_TIME_PATHS: tuple[tuple[str, ...], ...] = (
    ("time",),
    ("timestamp",),
    ("t",),
    ("ts",),
)
_SENSOR_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("sensor", "id"),
    ("sensor",),
    ("sensorId",),
    ("sId",),
    ("s",),
)
_NAME_PATHS: tuple[tuple[str, ...], ...] = (
    ("metric", "name"),
    ("name",),
)


def _dig(node: Any, path: Sequence[Any]) -> Any:
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
            node = node[key]
        elif isinstance(node, dict):
            node = node.get(key)
        else:
            return None
    return node


def _to_str(value: Any) -> str | None:
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    text = str(value).strip()
    return text or None


def _to_num(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _first(item: Any, paths: Iterable[Sequence[Any]], convert: Callable[[Any], Any]) -> Any:
    for path in paths:
        converted = convert(_dig(item, path))
        if converted is not None:
            return converted
    return None


# ---------------------------------------------------------------------------
# Row extraction
# ---------------------------------------------------------------------------


def extract_reading(
    item: Any,
    *,
    sensor_id: str | None = None,
    now: datetime,
) -> Reading | None:
    """Convert one raw row into a Reading, or None when it must be dropped.

    Args:
        item: One raw row from an unwrapped envelope.
        sensor_id: Optional filter; rows naming another sensor are dropped.
        now: Timestamp used when the row carries none.
    """
    if not isinstance(item, dict):
        return None

    metric_id = _first(item, _METRIC_ID_PATHS, _to_str)
    if metric_id is None:
        return None

    if sensor_id is not None:
        row_sensor = _first(item, _SENSOR_ID_PATHS, _to_str)
        if row_sensor is not None and row_sensor != sensor_id:
            return None

    value = _first(item, _VALUE_PATHS, _to_num)
    if value is None:
        return None

    raw_time = next(
        (v for v in (_dig(item, p) for p in _TIME_PATHS) if v not in (None, "")),
        None,
    )
    if raw_time is None:
        timestamp = now
    else:
        timestamp = _to_datetime(raw_time)
        if timestamp is None:
            return None

    unit = _first(item, _UNIT_PATHS, _to_str)
    if unit is None:
        definition = METRIC_DEFINITIONS.get(metric_id)
        unit = definition.unit if definition is not None else _to_str(item.get("u"))

    return Reading(
        metric_id=metric_id,
        metric_name=metric_name(metric_id, _first(item, _NAME_PATHS, _to_str)),
        value=value,
        unit=unit or "",
        timestamp=timestamp,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_rows(
    payload: Any,
    sensor_id: str | None = None,
    *,
    now: datetime | None = None,
) -> list[Reading]:
    """Return every valid Reading in *payload*, in row order.

    Used for history payloads where one metric legitimately repeats.
    """
    if now is None:
        now = datetime.now(tz=UTC)
    rows = unwrap_rows(payload)
    readings = [
        r
        for r in (extract_reading(item, sensor_id=sensor_id, now=now) for item in rows)
        if r is not None
    ]
    dropped = len(rows) - len(readings)
    if dropped:
        logger.debug("Dropped %d/%d unusable rows", dropped, len(rows))
    return readings


def collapse_latest(readings: Iterable[Reading]) -> list[Reading]:
    """Keep one reading per metric: the one with the latest timestamp.

    On equal timestamps the row seen last wins.
    """
    latest: dict[str, Reading] = {}
    for reading in readings:
        prev = latest.get(reading.metric_id)
        if prev is None or reading.timestamp >= prev.timestamp:
            latest[reading.metric_id] = reading
    return list(latest.values())


def normalize(
    payload: Any,
    sensor_id: str | None = None,
    *,
    now: datetime | None = None,
) -> list[Reading]:
    """Convert a raw current-values payload into one Reading per metric.

    Args:
        payload: Decoded JSON body in any known envelope shape.
        sensor_id: Optional sensor filter (see module docstring).
        now: Injected clock for rows without a timestamp.

    Returns:
        Readings with unique ``metric_id``; order is not significant.
    """
    return collapse_latest(normalize_rows(payload, sensor_id, now=now))
