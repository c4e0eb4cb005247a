"""
Async engine and session lifecycle for the humans table.

URLs in settings use the plain dialect scheme; the async driver is filled in:
  postgresql:// | postgres://  → postgresql+asyncpg://   (flowbot[postgres])
  mysql:// | mysql+pymysql://  → mysql+aiomysql://       (flowbot[mysql])
  sqlite://                    → sqlite+aiosqlite://

One engine per process. init_db() binds it to a URL and creates the schema;
close_db() disposes it so a later init_db() can bind another URL (tests).

Usage:
    await init_db("sqlite:///./flowbot.db")
    async with get_session() as db:
        row = (await db.execute(stmt)).scalar_one_or_none()
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Swap a sync scheme for its async driver; URLs already async pass through."""
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_DRIVERS:
        return db_url
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def _engine_kwargs(db_url: str, echo: bool = False) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url or db_url.rstrip("/").endswith("aiosqlite:"):
            # Every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _redacted(url: str) -> str:
    return url.split("@", 1)[-1] if "@" in url else url


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """The process engine; created on first use from db_url or settings."""
    global _engine
    if _engine is not None:
        return _engine
    settings = get_settings()
    url = _to_async_url(db_url or settings.database.url)
    _engine = create_async_engine(url, **_engine_kwargs(url, echo=settings.debug))
    logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redacted(url))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One unit of work: commits on success, rolls back and re-raises on error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    """Bind the engine and create missing tables."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
