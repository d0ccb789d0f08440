"""
Trend and rollup engine: time-bucketed series and electricity summaries.

Pure functions over normalized readings; nothing here performs I/O.

Bucketing
    ``truncate`` floors an instant to the start of its minute, hour or day
    (in UTC). ``bucket_series`` folds samples into one TrendPoint per bucket
    with strictly increasing timestamps, either summing (presence counts,
    energy) or keeping the latest sample (environmental metrics).

Energy
    Power readings are watt-equivalents per sample. Energy for a window is
    ``sum(values) / 1000`` kWh and cost is energy times the tariff price.
    With a Tariff the sum is split into a day band ``[day_start, night_start)``
    and a night band (every other hour), by the local hour in the tariff
    timezone. Saving is the preceding equal-length window's cost minus the
    current cost; it is never clamped, so a negative saving means cost rose.

Empty input is a normal state and always yields zero summaries.

CHANGELOG:
- 2026-10-10: Day/night tariff split with configurable timezone (STORY-011)
- 2026-10-09: Initial creation (STORY-010)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Literal, Protocol, TypeVar
from zoneinfo import ZoneInfo

from bms.src.models import ElectricityAnalytics, PeriodSummary, Reading, TrendPoint

if TYPE_CHECKING:
    from bms.src.config import BmsSettings

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)
DAY = timedelta(days=1)


class Granularity(StrEnum):
    """Bucket size for trend series."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


# ---------------------------------------------------------------------------
# Bucketing
# ---------------------------------------------------------------------------


def ensure_utc(ts: datetime) -> datetime:
    """Return *ts* as an aware UTC datetime; naive values are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def truncate(ts: datetime, granularity: Granularity | str) -> datetime:
    """Floor *ts* to the start of its bucket, in UTC."""
    ts = ensure_utc(ts).replace(second=0, microsecond=0)
    granularity = Granularity(granularity)
    if granularity is Granularity.MINUTE:
        return ts
    if granularity is Granularity.HOUR:
        return ts.replace(minute=0)
    return ts.replace(hour=0, minute=0)


def bucket_series(
    samples: Iterable[tuple[datetime, float]],
    granularity: Granularity | str,
    how: Literal["sum", "last"] = "sum",
) -> list[TrendPoint]:
    """Fold ``(timestamp, value)`` samples into one point per bucket.

    Args:
        samples: Samples in any order.
        granularity: Bucket size; never inferred.
        how: ``"sum"`` adds every value in a bucket; ``"last"`` keeps the
            value with the latest timestamp (later input wins a tie).

    Returns:
        Points sorted by bucket start, one per non-empty bucket.
    """
    if how not in ("sum", "last"):
        raise ValueError(f"Unknown aggregation '{how}'")

    sums: dict[datetime, float] = {}
    latest: dict[datetime, tuple[datetime, float]] = {}
    for ts, value in samples:
        bucket = truncate(ts, granularity)
        if how == "sum":
            sums[bucket] = sums.get(bucket, 0.0) + value
        else:
            prev = latest.get(bucket)
            if prev is None or ts >= prev[0]:
                latest[bucket] = (ts, value)

    values = sums if how == "sum" else {b: v for b, (_, v) in latest.items()}
    return [TrendPoint(timestamp=b, value=values[b]) for b in sorted(values)]


class _Timestamped(Protocol):
    @property
    def timestamp(self) -> datetime: ...

    @property
    def value(self) -> float: ...


S = TypeVar("S", bound=_Timestamped)


def presence_rollup(
    rows: Iterable[S],
    key: Callable[[S], str],
) -> dict[str, list[TrendPoint]]:
    """Sum presence samples per group per minute.

    Multiple motion sensors in one area add up; duplicate polls are removed
    at ingestion, not here.

    Args:
        rows: Samples exposing ``timestamp`` and ``value``.
        key: Group selector (floor id, room id, ...).

    Returns:
        ``{group: [TrendPoint, ...]}`` with minute buckets.
    """
    grouped: dict[str, list[tuple[datetime, float]]] = {}
    for row in rows:
        grouped.setdefault(key(row), []).append((row.timestamp, float(row.value)))
    return {
        group: bucket_series(samples, Granularity.MINUTE, "sum")
        for group, samples in grouped.items()
    }


def energy_series(
    readings: Iterable[Reading],
    granularity: Granularity | str = Granularity.DAY,
) -> list[TrendPoint]:
    """Sum power readings per bucket and express each bucket in kWh."""
    points = bucket_series(((r.timestamp, r.value) for r in readings), granularity, "sum")
    return [TrendPoint(timestamp=p.timestamp, value=p.value / 1000) for p in points]


# ---------------------------------------------------------------------------
# Tariff and energy
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Tariff:
    """Electricity prices and the day/night band definition.

    Attributes:
        price_per_kwh: Flat price, used for a band without its own price.
        day_price_per_kwh: Day-band price, if different.
        night_price_per_kwh: Night-band price, if different.
        timezone: IANA timezone the band hours refer to.
        day_start_hour: Local hour the day band starts (inclusive).
        night_start_hour: Local hour the night band starts (inclusive).
    """

    price_per_kwh: float = 0.16
    day_price_per_kwh: float | None = None
    night_price_per_kwh: float | None = None
    timezone: str = "UTC"
    day_start_hour: int = 8
    night_start_hour: int = 23

    @classmethod
    def from_settings(
        cls,
        settings: BmsSettings,
        *,
        price_per_kwh: float | None = None,
        day_price_per_kwh: float | None = None,
        night_price_per_kwh: float | None = None,
    ) -> Tariff:
        """Build a Tariff from settings, overriding prices when given."""
        return cls(
            price_per_kwh=settings.price_per_kwh if price_per_kwh is None else price_per_kwh,
            day_price_per_kwh=day_price_per_kwh,
            night_price_per_kwh=night_price_per_kwh,
            timezone=settings.tariff_timezone,
            day_start_hour=settings.day_band_start_hour,
            night_start_hour=settings.night_band_start_hour,
        )

    @property
    def day_rate(self) -> float:
        return self.price_per_kwh if self.day_price_per_kwh is None else self.day_price_per_kwh

    @property
    def night_rate(self) -> float:
        return (
            self.price_per_kwh if self.night_price_per_kwh is None else self.night_price_per_kwh
        )

    def is_day(self, ts: datetime) -> bool:
        """True when *ts* falls in the day band, by local hour."""
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        hour = ts.astimezone(ZoneInfo(self.timezone)).hour
        if self.day_start_hour < self.night_start_hour:
            return self.day_start_hour <= hour < self.night_start_hour
        # Day band wraps midnight.
        return hour >= self.day_start_hour or hour < self.night_start_hour


@dataclass(frozen=True, slots=True)
class EnergySplit:
    """Energy in kWh split by tariff band."""

    day_kwh: float = 0.0
    night_kwh: float = 0.0

    @property
    def total_kwh(self) -> float:
        return self.day_kwh + self.night_kwh

    def day_cost(self, tariff: Tariff) -> float:
        return self.day_kwh * tariff.day_rate

    def night_cost(self, tariff: Tariff) -> float:
        return self.night_kwh * tariff.night_rate

    def cost(self, tariff: Tariff) -> float:
        return self.day_cost(tariff) + self.night_cost(tariff)


def energy_kwh(readings: Iterable[Reading]) -> float:
    """Sum power readings and convert to kWh."""
    return sum(r.value for r in readings) / 1000


def split_energy(readings: Iterable[Reading], tariff: Tariff) -> EnergySplit:
    """Return energy per tariff band; the bands always add up to the total."""
    day_wh = 0.0
    night_wh = 0.0
    for r in readings:
        if tariff.is_day(r.timestamp):
            day_wh += r.value
        else:
            night_wh += r.value
    return EnergySplit(day_kwh=day_wh / 1000, night_kwh=night_wh / 1000)


def period_saving(previous_cost: float, current_cost: float) -> float:
    """Previous period cost minus current period cost, not clamped."""
    return previous_cost - current_cost


def format_amount(value: float) -> str:
    """Format to two decimals, never rendering ``-0.00``."""
    text = f"{value:.2f}"
    return "0.00" if text == "-0.00" else text


def period_summary(
    current: Iterable[Reading],
    previous: Iterable[Reading],
    tariff: Tariff,
) -> PeriodSummary:
    """Summarise one period and its saving against the preceding period."""
    now_split = split_energy(current, tariff)
    prev_split = split_energy(previous, tariff)
    cost = now_split.cost(tariff)
    return PeriodSummary(
        energy=format_amount(now_split.total_kwh),
        cost=format_amount(cost),
        saving=format_amount(period_saving(prev_split.cost(tariff), cost)),
        day_energy=format_amount(now_split.day_kwh),
        night_energy=format_amount(now_split.night_kwh),
        day_cost=format_amount(now_split.day_cost(tariff)),
        night_cost=format_amount(now_split.night_cost(tariff)),
    )


# ---------------------------------------------------------------------------
# Electricity analytics
# ---------------------------------------------------------------------------


def history_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Return the range to fetch so every period and its predecessor is covered.

    The month period is ``[start, end]``; week and day periods end at *end*.
    Each needs the equal window before it.
    """
    start, end = ensure_utc(start), ensure_utc(end)
    span = end - start
    return min(start - span, end - 2 * WEEK), end


def _between(
    readings: list[Reading], lo: datetime, hi: datetime, *, include_hi: bool
) -> list[Reading]:
    if include_hi:
        return [r for r in readings if lo <= r.timestamp <= hi]
    return [r for r in readings if lo <= r.timestamp < hi]


def electricity_analytics(
    readings: Iterable[Reading],
    start: datetime,
    end: datetime,
    tariff: Tariff,
) -> ElectricityAnalytics:
    """Compute month, week and day summaries with savings.

    Args:
        readings: Power readings covering at least :func:`history_window`.
        start: Start of the month period.
        end: End of every period.
        tariff: Prices and band definition.

    Returns:
        ElectricityAnalytics; all-zero summaries when *readings* is empty.
    """
    start, end = ensure_utc(start), ensure_utc(end)
    if end < start:
        raise ValueError("end must not be before start")
    readings = list(readings)

    def summary(lo: datetime) -> PeriodSummary:
        span = end - lo
        return period_summary(
            _between(readings, lo, end, include_hi=True),
            _between(readings, lo - span, lo, include_hi=False),
            tariff,
        )

    return ElectricityAnalytics(
        month=summary(start),
        week=summary(end - WEEK),
        day=summary(end - DAY),
    )


def combine_electricity(items: Iterable[ElectricityAnalytics]) -> ElectricityAnalytics:
    """Add several sensors' summaries field by field."""
    fields = tuple(PeriodSummary.model_fields)
    totals = {
        period: dict.fromkeys(fields, 0.0) for period in ("month", "week", "day")
    }
    for item in items:
        for period, acc in totals.items():
            summary = getattr(item, period)
            for name in fields:
                acc[name] += float(getattr(summary, name))
    return ElectricityAnalytics(
        **{
            period: PeriodSummary(**{name: format_amount(v) for name, v in acc.items()})
            for period, acc in totals.items()
        }
    )
