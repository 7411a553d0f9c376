"""
Database connection and session management.

Finished gap reports are stored through a SQLAlchemy async engine.  The
default URL is a local SQLite file driven by aiosqlite; any async URL
SQLAlchemy understands works the same way.
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator
import logging
import os

from gapscan.config import settings

logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent folder of a file-backed SQLite database."""
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return
    path = url.database
    if not path or path == ":memory:":
        return
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)


_ensure_sqlite_directory(settings.DATABASE_URL)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,  # True logs every statement
    poolclass=NullPool,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for ORM models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session; commits on success and rolls back on error.

    Example:
        @router.get("/report")
        async def get_report(db: AsyncSession = Depends(get_db)):
            report = await report_service.latest_report(db, "default")
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error("Report session rolled back: %s", e)
            raise


async def init_db() -> None:
    """Create the report tables if they do not exist yet."""
    # registers GapReportRecord on Base.metadata
    from gapscan.models import database_models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Report tables ready (%s)", make_url(settings.DATABASE_URL).get_backend_name())
    except Exception as e:
        logger.error("Could not initialise report database: %s", e)
        raise


async def close_db() -> None:
    """Dispose of the engine on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")
