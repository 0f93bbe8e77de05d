"""
Async engine and session scope for the SQL call store.

Settings carry plain URLs (sqlite:///./callsession.db, postgresql://...);
the async driver is filled in here:

  sqlite      → aiosqlite
  postgresql  → asyncpg      (extra: postgres)
  mysql       → aiomysql     (extra: mysql)

Usage:
    await init_db()
    async with get_session() as db:
        row = await db.get(CallRow, "CA123")
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
}

_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_factory: Optional[async_sessionmaker[AsyncSession]] = None


def to_async_url(db_url: str) -> str:
    """Swap a sync driver for its async counterpart; other URLs are returned untouched."""
    scheme, sep, rest = db_url.partition("://")
    driver = _ASYNC_DRIVERS.get(scheme)
    if not sep or driver is None:
        return db_url
    return f"{driver}://{rest}"


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    url = to_async_url(db_url)
    options: dict[str, Any] = {"echo": echo}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(_POOL_OPTIONS)
    return create_async_engine(url, **options)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _safe_url(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings.database.url."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine_for(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_safe_url(_engine))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Unit of work on the global engine: commit on success, roll back on error."""
    global _factory
    if _factory is None:
        _factory = make_session_factory(get_engine())
    async with _factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine = None) -> None:
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _factory = None
    logger.info("database_closed")
