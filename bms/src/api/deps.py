"""
FastAPI dependency injection providers.

Provides database sessions, settings, the provider adapters and the
aggregator stored on ``app.state`` by the lifespan, and the tariff used by
electricity endpoints.

CHANGELOG:
- 2026-10-14: Add adapter, aggregator and tariff providers (STORY-014)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bms.src.aggregator import SensorAggregator
from bms.src.aqara import AqaraClient
from bms.src.aranet import AranetClient
from bms.src.config import BmsSettings
from bms.src.db import session as db_session
from bms.src.errors import ConfigError
from bms.src.repository import load_tariff
from bms.src.rollup import Tariff


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async for session in db_session.get_async_session():
        yield session


def get_settings(request: Request) -> BmsSettings:
    return request.app.state.settings


def get_aggregator(request: Request) -> SensorAggregator:
    return request.app.state.aggregator


def get_aranet(request: Request) -> AranetClient:
    """Return the Aranet adapter.

    Raises:
        ConfigError: If the adapter could not be built at startup.
    """
    aranet = request.app.state.aranet
    if aranet is None:
        raise ConfigError("Aranet adapter is not configured")
    return aranet


def get_aqara(request: Request) -> AqaraClient:
    """Return the Aqara adapter.

    Raises:
        ConfigError: If the adapter could not be built at startup.
    """
    aqara = request.app.state.aqara
    if aqara is None:
        raise ConfigError("Aqara adapter is not configured")
    return aqara


async def get_tariff(request: Request) -> Tariff:
    """Tariff from the system_settings row, or from configuration without a DB."""
    settings: BmsSettings = request.app.state.settings
    if not settings.database_url:
        return Tariff.from_settings(settings)
    db_session.init_engine(settings)
    assert db_session.async_session_factory is not None, "Session factory not initialized"
    async with db_session.async_session_factory() as session:
        return await load_tariff(session, settings)


DbSession = Annotated[AsyncSession, Depends(get_db)]
Settings = Annotated[BmsSettings, Depends(get_settings)]
Aggregator = Annotated[SensorAggregator, Depends(get_aggregator)]
Aranet = Annotated[AranetClient, Depends(get_aranet)]
Aqara = Annotated[AqaraClient, Depends(get_aqara)]
CurrentTariff = Annotated[Tariff, Depends(get_tariff)]
