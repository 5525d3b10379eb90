from __future__ import annotations
from typing import Any, AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .core.config import Settings, get_settings
from .models import Base

def build_engine(settings: Settings) -> AsyncEngine:
    url = settings.database_url
    kwargs: dict[str, Any] = {"echo": False, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": 30}
        eng = create_async_engine(url, **kwargs)
        _install_sqlite_hooks(eng)
        return eng

    kwargs["pool_size"] = settings.db_pool_size
    kwargs["pool_pre_ping"] = True
    kwargs["isolation_level"] = settings.db_isolation_level
    if "+asyncpg" in url:
        kwargs["connect_args"] = {
            # date buckets in the statistics queries are computed in UTC
            "server_settings": {"statement_timeout": str(settings.db_statement_timeout_ms), "timezone": "UTC"},
        }
    return create_async_engine(url, **kwargs)

def _install_sqlite_hooks(eng: AsyncEngine) -> None:
    # pysqlite's implicit BEGIN is deferred; take the write lock up front so
    # concurrent validations serialize the way row locks do on Postgres.
    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys = ON")
        cur.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def build_session_maker(eng: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)

settings = get_settings()
engine = build_engine(settings)
async_session_maker = build_session_maker(engine)

async def init_db(eng: AsyncEngine | None = None) -> None:
    async with (eng or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session
