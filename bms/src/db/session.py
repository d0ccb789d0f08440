"""
Async database engine and session factory.

Uses SQLAlchemy 2.x async engine (asyncpg driver for PostgreSQL in
production, aiosqlite in tests). Provides module-level engine and session
factory singletons, plus an async generator for FastAPI dependency injection.

CHANGELOG:
- 2026-10-08: Read the URL from BmsSettings (STORY-012)
- 2026-10-08: Initial creation (STORY-012)

TODO:
- None
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bms.src.config import BmsSettings

# Module-level singletons, initialized lazily via init_engine().
async_engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_database_url(settings: BmsSettings | None = None) -> str:
    """Return the configured DATABASE_URL.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    url = (settings or BmsSettings()).database_url
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    return url


def create_engine(settings: BmsSettings | None = None) -> AsyncEngine:
    """Create an async SQLAlchemy engine from configuration."""
    return create_async_engine(_get_database_url(settings), echo=False)


def create_session_factory(
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory.

    Args:
        engine: Optional async engine. If not provided, creates one from config.
    """
    if engine is None:
        engine = create_engine()
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def init_engine(settings: BmsSettings | None = None) -> None:
    """Initialize the module-level async engine and session factory.

    Call this at application startup (e.g., in a FastAPI lifespan event).
    Safe to call multiple times; subsequent calls are no-ops.
    """
    global async_engine, async_session_factory  # noqa: PLW0603
    if async_engine is None:
        async_engine = create_engine(settings)
        async_session_factory = create_session_factory(async_engine)


async def dispose_engine() -> None:
    """Dispose the module-level engine, if any (application shutdown)."""
    global async_engine, async_session_factory  # noqa: PLW0603
    if async_engine is not None:
        await async_engine.dispose()
    async_engine = None
    async_session_factory = None


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for FastAPI dependency injection.

    Initializes the engine on first call if not already done.

    Yields:
        AsyncSession: An async SQLAlchemy session.
    """
    init_engine()
    assert async_session_factory is not None, "Session factory not initialized"
    async with async_session_factory() as session:
        yield session
