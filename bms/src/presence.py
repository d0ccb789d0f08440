"""
Presence-log ingestion.

Reads the current presence count of every motion device that is bound to a
room and floor, and appends a presence_logs row only when the value differs
from the last stored value for the same external id. Several devices bound to
the same external id produce at most one row per run. Duplicate polls
therefore never create duplicate samples, which keeps the per-minute sum in
the trend rollup from double counting one sensor.

Upstream failures are isolated per device and reported in the result.

CHANGELOG:
- 2026-10-16: One row per external id per run (STORY-012)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from bms.src.db.models import PresenceLog
from bms.src.models import PresenceFailure, PresenceLogResult
from bms.src.repository import load_motion_devices

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from bms.src.aqara import AqaraClient

logger = logging.getLogger(__name__)


async def _last_value(session: AsyncSession, external_id: str) -> int | None:
    stmt = (
        select(PresenceLog.value)
        .where(PresenceLog.external_id == external_id)
        .order_by(PresenceLog.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def log_all_presence(session: AsyncSession, aqara: AqaraClient) -> PresenceLogResult:
    """Poll every motion device once and persist changed presence counts.

    Args:
        session: Async database session; committed when rows are added.
        aqara: Hub-cloud adapter used for the presence reads.

    Returns:
        Counts of inserted rows, failures and devices considered.
    """
    devices = await load_motion_devices(session)
    if not devices:
        return PresenceLogResult()

    results = await asyncio.gather(
        *(aqara.get_current_presence(d.external_id) for d in devices),  # type: ignore[arg-type]
        return_exceptions=True,
    )

    failures: list[PresenceFailure] = []
    rows: list[PresenceLog] = []
    # Devices sharing an external id read the same sensor; one row per run.
    logged: set[str] = set()
    for device, result in zip(devices, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning("Presence read failed for device %s: %s", device.id, result)
            failures.append(PresenceFailure(device_id=device.id, reason=str(result)))
            continue

        value = int(result)
        external_id: str = device.external_id  # type: ignore[assignment]
        if external_id in logged:
            logger.debug("Device %s shares external id %s, skipping", device.id, external_id)
            continue
        logged.add(external_id)
        last = await _last_value(session, external_id)
        if last is not None and last == value:
            continue
        rows.append(
            PresenceLog(
                property_id=device.property_id,
                floor_id=device.floor_id,
                room_id=device.room_id,
                external_id=external_id,
                value=value,
            )
        )

    if rows:
        session.add_all(rows)
        await session.commit()

    logger.info(
        "Presence logging: %d inserted, %d failed, %d devices",
        len(rows),
        len(failures),
        len(devices),
    )
    return PresenceLogResult(
        inserted=len(rows),
        failed=len(failures),
        total=len(devices),
        details=failures,
    )
