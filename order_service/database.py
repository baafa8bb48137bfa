from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from . import config
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _safe_url(url: str) -> str:
    return url.replace(config.DATABASE_PASSWORD, "***") if config.DATABASE_PASSWORD else url # Hide password


def get_engine(url: str | None = None) -> AsyncEngine:
    """Creates the async engine on first use and reuses it afterwards."""
    global _engine, _session_factory
    if _engine is None:
        url = url or config.DATABASE_URL
        try:
            logger.info(f"Attempting to create engine with URL: {_safe_url(url)}")
            _engine = create_async_engine(url, echo=config.DATABASE_ECHO, pool_pre_ping=True)
            _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
            logger.info("Async database engine and session factory created successfully.")
        except Exception as e:
            logger.error(f"FATAL: Failed to create database engine or session factory: {e}")
            raise RuntimeError(f"Could not initialize database connection: {e}") from e
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        get_engine()
    return _session_factory


async def init_models() -> None:
    """Creates missing tables. Dev/test convenience only, there is no migration tooling here."""
    from . import models  # noqa: F401  registers the tables on Base.metadata

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables check complete.")


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose() # Clean up engine resources
        _engine = None
        _session_factory = None


async def get_db_session():
    """FastAPI dependency to inject DB session."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Rolling back session due to error: {e}")
            await session.rollback()
            raise
        # No automatic commit/close here, managed by 'async with'
