"""
Presence ingestion endpoint.

``POST /v1/presence/log`` polls every bound motion sensor once and stores
changed presence counts. Meant to be called by the external scheduler.

CHANGELOG:
- 2026-10-14: Initial creation (STORY-012)

TODO:
- None
"""

from fastapi import APIRouter

from bms.src.api.deps import Aqara, DbSession
from bms.src.models import PresenceLogResult
from bms.src.presence import log_all_presence

router = APIRouter(prefix="/v1/presence", tags=["presence"])


@router.post("/log", response_model=PresenceLogResult)
async def log_presence(db: DbSession, aqara: Aqara) -> PresenceLogResult:
    """Run one presence ingestion pass and return its summary."""
    return await log_all_presence(db, aqara)
