"""
Engine and unit-of-work plumbing for the SQL automation store.

The configured URL may use a plain sync scheme; it is rewritten to the
matching async driver (asyncpg, aiomysql or aiosqlite) before the engine
is built.

Application code goes through the process-wide engine:

    await init_db()
    async with get_db_session() as db:
        ...
    await close_db()

Tests and tools that want an isolated database call build_engine() and
session_scope() directly.
"""
from __future__ import annotations

import structlog
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncGenerator, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

DbSessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_default_scope: DbSessionScope | None = None


def _to_async_url(db_url: str) -> str:
    for prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    if db_url.startswith("sqlite"):
        # aiosqlite hands connections across threads
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {"echo": echo, **_POOL_OPTIONS}


def _redacted(url) -> str:
    text = str(url)
    return text.rsplit("@", 1)[-1]


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite connections enforce foreign keys."""
    db_url = _to_async_url(db_url)
    engine = create_async_engine(db_url, **_engine_kwargs(db_url, echo))

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_fks(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name, url=_redacted(_engine.url))
    return _engine


def session_scope(engine: AsyncEngine) -> DbSessionScope:
    """
    Return a zero-argument factory of transactional sessions on `engine`.

    Each scope commits when the block exits cleanly and rolls back when
    it raises.
    """
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


def get_db_session() -> AbstractAsyncContextManager[AsyncSession]:
    """Unit of work on the process-wide engine."""
    global _default_scope
    if _default_scope is None:
        _default_scope = session_scope(get_engine())
    return _default_scope()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create any missing tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _default_scope
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _default_scope = None
    logger.info("database_closed")
