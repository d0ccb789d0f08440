"""
Health check endpoint.

Returns ``{"status": "ok"}`` plus which upstream adapters were configured at
startup. No upstream call is made; this is for container health checks.

CHANGELOG:
- 2026-10-14: Report configured providers (STORY-014)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    """Return a simple health status.

    Returns:
        dict: ``{"status": "ok", "providers": {...}}``.
    """
    state = request.app.state
    return {
        "status": "ok",
        "providers": {
            "aranet": getattr(state, "aranet", None) is not None,
            "aqara": getattr(state, "aqara", None) is not None,
        },
    }
