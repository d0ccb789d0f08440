"""
Shared test fixtures for the telemetry core tests.

All telemetry env vars are cleaned before each test and the working
directory is moved to tmp_path so no .env file is picked up by BaseSettings.
The ``client`` fixture starts the FastAPI app through its lifespan with
both adapters configured against dummy credentials; no upstream is ever
contacted unless a test installs its own fakes.

CHANGELOG:
- 2026-10-15: Add app client fixture (STORY-014)
- 2026-10-12: Add in-memory SQLite session fixture and hierarchy seed (STORY-013)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Generator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# All BmsSettings environment variable names, used for cleanup.
_ALL_BMS_ENV_VARS = (
    "ARANET_API_KEY",
    "ARANET_BASE_URL",
    "ARANET_HISTORY_FALLBACK",
    "AQARA_REGION_DOMAIN",
    "AQARA_APP_ID",
    "AQARA_APP_KEY",
    "AQARA_KEY_ID",
    "AQARA_ACCESS_TOKEN",
    "AQARA_REFRESH_TOKEN",
    "AQARA_INVALID_TOKEN_CODES",
    "AQARA_MAX_RETRIES",
    "AQARA_RETRY_BACKOFF_S",
    "REQUEST_TIMEOUT_S",
    "AGGREGATE_TIMEOUT_S",
    "POWER_METRIC_ID",
    "PRICE_PER_KWH",
    "TARIFF_TIMEZONE",
    "DAY_BAND_START_HOUR",
    "NIGHT_BAND_START_HOUR",
    "DATABASE_URL",
    "REDIS_URL",
    "CACHE_TTL_S",
)

@pytest.fixture(autouse=True)
def _clean_bms_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all telemetry env vars and isolate from .env files."""
    for var in _ALL_BMS_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set credentials for both clouds plus energy settings."""
    env = {
        "ARANET_API_KEY": "aranet-key-123",
        "ARANET_BASE_URL": "https://aranet.example.com/api/v1/",
        "AQARA_REGION_DOMAIN": "open-ger.aqara.com",
        "AQARA_APP_ID": "app-1",
        "AQARA_APP_KEY": "app-key-secret",
        "AQARA_KEY_ID": "key-1",
        "AQARA_ACCESS_TOKEN": "access-1",
        "AQARA_REFRESH_TOKEN": "refresh-1",
        "POWER_METRIC_ID": "15",
        "PRICE_PER_KWH": "0.25",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def mock_db_session() -> AsyncMock:
    """Create a mock async database session.

    Returns:
        AsyncMock: A mock that behaves like an SQLAlchemy AsyncSession.
    """
    session = AsyncMock()
    session.execute = AsyncMock(return_value=MagicMock())
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture()
def client(env_vars_full: dict[str, str]) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient for integration testing.

    Uses a context manager so lifespan startup/shutdown runs. Dependency
    overrides installed by a test are removed afterwards.

    Yields:
        TestClient: Configured test client for the FastAPI app.
    """
    from bms.src.api.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@asynccontextmanager
async def _open_sqlite_session() -> AsyncIterator[AsyncSession]:
    """Yield a session on a fresh in-memory SQLite database with all tables."""
    from bms.src.db.models import Base

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with factory() as session:
            yield session
    finally:
        await engine.dispose()


@pytest.fixture()
def sqlite_session() -> Callable[[], AbstractAsyncContextManager[AsyncSession]]:
    """Return a factory opening an in-memory SQLite session.

    Usage inside an async test: ``async with sqlite_session() as session:``.
    """
    return _open_sqlite_session


async def _seed_hierarchy(session: AsyncSession) -> None:
    """Insert one building with two floors, three rooms and five devices."""
    from bms.src.db.models import Device, Floor, Property, Room

    session.add_all(
        [
            Property(id="B1", name="HQ", slug="hq", city="Ghent"),
            Property(id="B2", name="Annex", slug="annex"),
            Floor(id="F1", property_id="B1", name="Ground", level=0),
            Floor(id="F2", property_id="B1", name="First", level=1),
            Floor(id="F9", property_id="B2", name="Annex ground", level=0),
            Room(id="R1", property_id="B1", floor_id="F1", name="Lobby", capacity=10),
            Room(id="R2", property_id="B1", floor_id="F2", name="Office", status="OCCUPIED"),
            Room(id="R3", property_id="B1", floor_id="F2", name="Suite", type="SUITE", capacity=4),
            Device(id="D1", property_id="B1", floor_id="F1", room_id="R1", name="Lobby motion",
                   external_id="lumi1.54ef44666843", provider="aqara", device_type="MOTION",
                   status="ONLINE"),
            Device(id="D2", property_id="B1", floor_id="F2", room_id="R2", name="Office motion",
                   external_id="lumi1.54ef447baa7f", provider="aqara", device_type="MOTION",
                   status="ONLINE"),
            Device(id="D3", property_id="B1", floor_id="F2", room_id=None, name="Loose motion",
                   external_id="lumi1.unassigned", provider="aqara", device_type="MOTION"),
            Device(id="D4", property_id="B1", floor_id="F1", room_id="R1", name="Lobby meter",
                   external_id="P1", provider="aranet", device_type="POWER", status="ONLINE"),
            Device(id="D5", property_id="B1", floor_id="F2", room_id="R3", name="Suite meter",
                   external_id="P2", provider="aranet", device_type="POWER", status="ONLINE"),
        ]
    )
    await session.commit()


@pytest.fixture()
def seed_hierarchy() -> Callable[[AsyncSession], Awaitable[None]]:
    """Return the coroutine function that seeds the sample hierarchy."""
    return _seed_hierarchy
