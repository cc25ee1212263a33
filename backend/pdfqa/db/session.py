"""
Database engine and session management.

Flow:
  1. get_engine() builds one AsyncEngine per process from Settings.
  2. get_session_factory() wraps it in an async_sessionmaker with
     expire_on_commit=False so ORM objects stay readable after commit.
  3. The DocumentRegistry owns the factory and opens one short session per
     operation; pipeline workers never share a session.

SQLite (aiosqlite) URLs skip pool sizing — used by tests and local dev.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pdfqa.core.config import get_settings
from pdfqa.models.documents import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(
    database_url:  str,
    *,
    echo:          bool = False,
    pool_size:     int  = 10,
    max_overflow:  int  = 20,
) -> AsyncEngine:
    kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,    # detect stale connections before use
            pool_recycle=3600,     # recycle connections every hour
        )
    return create_async_engine(database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return build_engine(
        settings.database_url,
        echo=settings.db_echo_sql,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


# ---------------------------------------------------------------------------
# Schema bootstrap (dev / tests: production uses migrations)
# ---------------------------------------------------------------------------

async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine | None = None) -> dict:
    """Ping the database; used by /ready endpoint."""
    try:
        async with (engine or get_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
