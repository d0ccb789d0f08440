"""
Multi-sensor aggregator with partial-failure semantics.

Fans out to both provider adapters concurrently: one task per Aranet
sensor, one batched task for all Aqara devices. Each task is bounded by a
deadline sized to cover the adapters' own retries, token refresh and
history fallback; a failed or timed-out task is logged and its sensors are
simply absent from the result. ``fetch_many`` never raises for upstream
problems.

CHANGELOG:
- 2026-10-16: Task deadline covers adapter retries and fallback (STORY-009)
- 2026-10-08: Batch hub-cloud devices into a single task (STORY-009)
- 2026-10-07: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from typing import TYPE_CHECKING

from bms.src.errors import ConfigError
from bms.src.models import Provider, SensorBundle, SensorRef

if TYPE_CHECKING:
    from bms.src.aqara import AqaraClient
    from bms.src.aranet import AranetClient
    from bms.src.config import BmsSettings

logger = logging.getLogger(__name__)

# Derived deadline for the default settings (6 calls of 15s plus 4s backoff).
DEFAULT_TIMEOUT_S = 94.0


class SensorAggregator:
    """Fetch many sensors across both clouds, keeping only the successes.

    Args:
        aranet: Aranet adapter, or None when that cloud is not configured.
        aqara: Aqara adapter, or None when that cloud is not configured.
        timeout_s: Deadline per task in seconds. It bounds a whole task,
            which may chain several upstream calls, so it must exceed the
            per-call timeout.
    """

    def __init__(
        self,
        aranet: AranetClient | None,
        aqara: AqaraClient | None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._aranet = aranet
        self._aqara = aqara
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(
        cls,
        settings: BmsSettings,
        aranet: AranetClient | None,
        aqara: AqaraClient | None,
    ) -> SensorAggregator:
        """Build an aggregator whose task deadline fits the adapters' retry budget."""
        return cls(aranet, aqara, timeout_s=settings.aggregate_deadline_s)

    async def _aranet_one(self, ref: SensorRef) -> list[SensorBundle]:
        assert self._aranet is not None
        return [await self._aranet.get_sensor_data(ref.id, ref.part)]

    async def _aqara_batch(self, refs: list[SensorRef]) -> list[SensorBundle]:
        assert self._aqara is not None
        bundles = await self._aqara.get_many_sensor_data(ref.id for ref in refs)
        parts = {ref.id: ref.part for ref in refs}
        return [
            b.model_copy(update={"part": parts[b.sensor_id]}) if parts.get(b.sensor_id) else b
            for b in bundles
        ]

    async def fetch_many(self, sensors: Iterable[SensorRef]) -> list[SensorBundle]:
        """Return bundles for every sensor that answered in time.

        Args:
            sensors: Sensor refs; duplicates are fetched once.

        Returns:
            Successful bundles in no guaranteed order.
        """
        refs = list(dict.fromkeys(sensors))
        aranet_refs = [r for r in refs if r.provider == Provider.ARANET]
        aqara_refs = [r for r in refs if r.provider == Provider.AQARA]

        labels: list[str] = []
        tasks: list[Awaitable[list[SensorBundle]]] = []
        if aranet_refs:
            if self._aranet is None:
                logger.warning("Skipping %d Aranet sensors: adapter not configured", len(aranet_refs))
            else:
                for ref in aranet_refs:
                    labels.append(f"aranet:{ref.id}")
                    tasks.append(asyncio.wait_for(self._aranet_one(ref), self._timeout_s))
        if aqara_refs:
            if self._aqara is None:
                logger.warning("Skipping %d Aqara devices: adapter not configured", len(aqara_refs))
            else:
                labels.append(f"aqara:batch({len(aqara_refs)})")
                tasks.append(asyncio.wait_for(self._aqara_batch(aqara_refs), self._timeout_s))

        if not tasks:
            return []

        results = await asyncio.gather(*tasks, return_exceptions=True)
        bundles: list[SensorBundle] = []
        failed = 0
        for label, result in zip(labels, results, strict=True):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, TimeoutError):
                failed += 1
                logger.warning("Sensor fetch %s timed out after %.1fs", label, self._timeout_s)
            elif isinstance(result, Exception):
                failed += 1
                logger.warning("Sensor fetch %s failed: %s", label, result, exc_info=result)
            elif isinstance(result, BaseException):
                raise result
            else:
                bundles.extend(result)

        if failed:
            logger.info("Fetched %d bundles, %d of %d tasks failed", len(bundles), failed, len(tasks))
        return bundles

    async def get_sensor_data(self, ref: SensorRef) -> SensorBundle:
        """Fetch one sensor; errors propagate to the caller.

        Raises:
            ConfigError: If the provider's adapter is not configured.
        """
        if ref.provider == Provider.AQARA:
            if self._aqara is None:
                raise ConfigError("Aqara adapter is not configured")
            bundle = await self._aqara.get_sensor_data(ref.id)
            return bundle.model_copy(update={"part": ref.part}) if ref.part else bundle
        if self._aranet is None:
            raise ConfigError("Aranet adapter is not configured")
        return await self._aranet.get_sensor_data(ref.id, ref.part)
