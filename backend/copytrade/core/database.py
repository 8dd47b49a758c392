"""
Async database engine and session lifecycle.

The relational backend is optional. When DATABASE_URL is unset the engine is
never created and the record store runs on the JSON document alone.
"""

from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from copytrade.core.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    kwargs = {"echo": echo, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.DB_POOL_SIZE
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    # Import models so every table is registered on SQLModel.metadata
    from copytrade.models import user, wallet, strategy  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def init_db() -> Optional[async_sessionmaker[AsyncSession]]:
    """Create the engine from settings. Returns None when no database is configured."""
    global _engine

    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL not set, running on the JSON fallback only")
        return None

    _engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    session_factory = build_session_factory(_engine)

    if settings.DB_AUTO_CREATE:
        try:
            await create_tables(_engine)
        except (SQLAlchemyError, OSError) as e:
            # The store falls back per write, so a cold database is not fatal
            logger.error(f"Database schema setup failed: {e}")

    return session_factory


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
