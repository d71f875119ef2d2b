"""Async engine and sessions for the invoice cache

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for development and
tests; the URL in ``DATABASE_URL`` selects the driver.
"""

from typing import Any, AsyncGenerator, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from billing.config import settings


def engine_options(url: str) -> Dict[str, Any]:
    """Driver-specific engine arguments"""
    options: Dict[str, Any] = {"echo": settings.DEBUG}
    if make_url(url).get_backend_name() == "sqlite":
        # The API shares one engine across request tasks
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_pre_ping"] = True
    return options


engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def init_db() -> None:
    """Create the invoices table and its indexes if missing"""
    from billing.models.db_models import Invoice  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session (FastAPI dependency)"""
    async with AsyncSessionLocal() as session:
        yield session
