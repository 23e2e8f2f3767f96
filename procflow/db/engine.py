"""SQLAlchemy async engine, session factory and the shared ``Database`` handle."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from procflow.config import Settings, settings
from procflow.db.models import Base


def _build_engine_kwargs(cfg: Settings, url: str) -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if url.startswith(("postgresql", "postgres")):
        return {
            "echo": cfg.DB_ECHO,
            "pool_size": cfg.DB_POOL_SIZE,
            "max_overflow": cfg.DB_MAX_OVERFLOW,
            "pool_timeout": cfg.DB_POOL_TIMEOUT,
            "pool_pre_ping": True,
            "pool_recycle": 1800,
        }
    kwargs: dict = {"echo": cfg.DB_ECHO, "connect_args": {"check_same_thread": False}}
    if ":memory:" in url:
        # One shared connection, otherwise every checkout sees an empty database.
        kwargs["poolclass"] = StaticPool
    return kwargs


def create_engine(cfg: Settings = settings, url: str | None = None) -> AsyncEngine:
    db_url = url or cfg.DB_URL
    eng = create_async_engine(db_url, **_build_engine_kwargs(cfg, db_url))

    if db_url.startswith("sqlite") and ":memory:" not in db_url:
        # WAL lets readers proceed alongside the single writer; busy_timeout
        # makes a second process wait instead of failing with "database is locked".
        @event.listens_for(eng.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return eng


class Database:
    """Engine + session factory shared by the graph registry and execution store.

    SQLite allows a single writer and upgrades read locks lazily, so two
    interleaved read-then-write transactions in one process fail with
    ``database is locked`` instead of a clean version conflict.  For SQLite
    every session is therefore serialized through one asyncio lock; PostgreSQL
    sessions run concurrently and rely on row locks.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self._lock = asyncio.Lock() if engine.dialect.name == "sqlite" else None

    @classmethod
    def from_settings(cls, cfg: Settings = settings, url: str | None = None) -> "Database":
        return cls(create_engine(cfg, url))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction: commit on success, rollback on error."""
        if self._lock is None:
            async with self.session_factory() as db:
                async with db.begin():
                    yield db
            return
        async with self._lock:
            async with self.session_factory() as db:
                async with db.begin():
                    yield db

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
