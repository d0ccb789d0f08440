"""
FastAPI application entry point for the building telemetry API.

The lifespan loads BmsSettings, builds one shared httpx.AsyncClient, the
unit ResolverCache and the Aqara TokenStore, and from those the two provider
adapters and the SensorAggregator, all stored on ``app.state``. An adapter
whose credentials are missing is left as None and logged; endpoints that
need it answer 500 with a configuration error. The database engine is
initialized only when DATABASE_URL is set.

Typed upstream errors are mapped to HTTP responses here so that route
handlers can let them propagate.

CHANGELOG:
- 2026-10-15: Register analytics and presence routers (STORY-016)
- 2026-10-14: Map typed upstream errors to HTTP status codes (STORY-014)
- 2026-10-14: Build shared HTTP client and adapters in lifespan (STORY-014)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

import hashlib
import json
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bms.src.aggregator import SensorAggregator
from bms.src.api.analytics import router as analytics_router
from bms.src.api.health import router as health_router
from bms.src.api.presence import router as presence_router
from bms.src.api.sensors import router as sensors_router
from bms.src.api.trends import router as trends_router
from bms.src.aqara import AqaraClient, TokenStore
from bms.src.aranet import AranetClient
from bms.src.config import BmsSettings
from bms.src.db import session as db_session
from bms.src.errors import (
    ConfigError,
    DataShapeError,
    TransportError,
    UnknownDeviceError,
    UpstreamApplicationError,
)
from bms.src.units import ResolverCache

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging() -> None:
    """Configure structured JSON logging for the API process.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: BmsSettings) -> None:
    """Log a config summary at startup; secrets appear only as fingerprints."""
    logger.info(
        "Telemetry API starting with config: "
        "aranet_base_url=%s, aranet_api_key=%s, aranet_history_fallback=%s, "
        "aqara_region_domain=%s, aqara_app_id=%s, aqara_app_key=%s, "
        "aqara_access_token=%s, aqara_refresh_token=%s, aqara_max_retries=%s, "
        "request_timeout_s=%s, aggregate_deadline_s=%s, power_metric_id=%s, "
        "tariff_timezone=%s, "
        "database=%s, redis=%s, cache_ttl_s=%s",
        settings.aranet_base_url,
        _masked_token(settings.aranet_api_key),
        settings.aranet_history_fallback,
        settings.aqara_region_domain,
        settings.aqara_app_id,
        _masked_token(settings.aqara_app_key),
        _masked_token(settings.aqara_access_token),
        _masked_token(settings.aqara_refresh_token),
        settings.aqara_max_retries,
        settings.request_timeout_s,
        settings.aggregate_deadline_s,
        settings.power_metric_id or "unset",
        settings.tariff_timezone,
        "configured" if settings.database_url else "unset",
        "configured" if settings.redis_url else "unset",
        settings.cache_ttl_s,
    )


# ---------------------------------------------------------------------------
# Adapter wiring
# ---------------------------------------------------------------------------


def build_adapters(
    settings: BmsSettings, client: httpx.AsyncClient
) -> tuple[AranetClient | None, AqaraClient | None]:
    """Build both provider adapters on a shared HTTP client.

    A provider whose credentials are missing yields None instead of failing
    startup, so a deployment may serve one provider only.
    """
    aranet: AranetClient | None = None
    aqara: AqaraClient | None = None
    try:
        aranet = AranetClient.from_settings(settings, cache=ResolverCache(), client=client)
    except ConfigError as exc:
        logger.warning("Aranet adapter disabled: %s", exc)
    try:
        tokens = TokenStore(settings.aqara_access_token, settings.aqara_refresh_token)
        aqara = AqaraClient.from_settings(settings, tokens=tokens, client=client)
    except ConfigError as exc:
        logger.warning("Aqara adapter disabled: %s", exc)
    return aranet, aqara


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build shared clients, dispose them on shutdown.

    Startup:
        - Loads and validates settings.
        - Builds the shared HTTP client, adapters and aggregator.
        - Initializes the database engine when DATABASE_URL is set.

    Shutdown:
        - Closes the HTTP client and disposes the database engine.
    """
    settings = BmsSettings()
    log_config_summary(settings)

    client = httpx.AsyncClient(timeout=settings.request_timeout_s)
    aranet, aqara = build_adapters(settings, client)

    app.state.settings = settings
    app.state.http_client = client
    app.state.aranet = aranet
    app.state.aqara = aqara
    app.state.aggregator = SensorAggregator.from_settings(settings, aranet, aqara)

    if settings.database_url:
        db_session.init_engine(settings)
    else:
        logger.warning("DATABASE_URL not set; hierarchy, trend and presence endpoints disabled")

    logger.info("Telemetry API ready")
    try:
        yield
    finally:
        logger.info("Telemetry API shutting down")
        await client.aclose()
        await db_session.dispose_engine()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


async def _config_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Configuration error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


async def _unknown_device(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _upstream_error(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Upstream failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Build the FastAPI application with routers and error handlers."""
    application = FastAPI(
        title="Building Telemetry API",
        description="Live and historical building sensor telemetry.",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_exception_handler(ConfigError, _config_error)
    application.add_exception_handler(UnknownDeviceError, _unknown_device)
    for error in (TransportError, UpstreamApplicationError, DataShapeError):
        application.add_exception_handler(error, _upstream_error)

    application.include_router(health_router)
    application.include_router(sensors_router)
    application.include_router(trends_router)
    application.include_router(analytics_router)
    application.include_router(presence_router)

    @application.get("/")
    async def root() -> dict:
        """Root health check endpoint.

        Returns:
            dict: JSON object with application status.
        """
        return {"status": "ok"}

    return application


app = create_app()


def main() -> None:
    """Run the API under uvicorn with JSON logging."""
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000, log_config=None)


if __name__ == "__main__":
    main()
