"""
Async engine and session scopes for the SQL conversation store.

Plain URLs in settings are mapped onto the async drivers:
  postgresql://  → postgresql+asyncpg://     (extra: postgres)
  mysql://       → mysql+aiomysql://         (extra: mysql)
  sqlite://      → sqlite+aiosqlite://

The process-wide engine is built lazily from ``settings.database``; tests and
scripts can build their own with ``build_engine`` and hand a session factory
to ``SqlConversationStore``.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _safe_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def engine_options(config: DatabaseConfig) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine`` given the configured dialect."""
    options: dict[str, Any] = {"echo": config.echo}
    if config.url.startswith("sqlite"):
        # aiosqlite runs the connection on its own thread
        options["connect_args"] = {"check_same_thread": False}
        return options
    options.update(
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return options


def build_engine(config: DatabaseConfig) -> AsyncEngine:
    engine = create_async_engine(async_database_url(config.url), **engine_options(config))
    logger.info("database_engine_created", dialect=engine.dialect.name, url=_safe_url(engine))
    return engine


def get_engine() -> AsyncEngine:
    """The process-wide engine for ``settings.database``."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database)
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on clean exit, roll back and re-raise otherwise."""
    global _session_factory
    if factory is None:
        if _session_factory is None:
            _session_factory = create_session_factory(get_engine())
        factory = _session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def missing_tables(engine: AsyncEngine) -> list[str]:
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return sorted(set(Base.metadata.tables) - set(existing))


async def init_db(engine: Optional[AsyncEngine] = None) -> list[str]:
    """Create any missing tables and return their names."""
    engine = engine or get_engine()
    created = await missing_tables(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name, created=created)
    return created


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _session_factory = None
