from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from meterbill.core.config import Settings, get_settings
from meterbill.domain.models import Base


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.api_db_statement_timeout_ms > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
            }
    return create_async_engine(database_url, **engine_kwargs)


class Database:
    """Owns one engine and its session factory.

    Constructed explicitly by the API lifespan, the worker startup hook, or a test
    fixture, and handed to whatever needs sessions.
    """

    def __init__(self, database_url: str, *, settings: Settings | None = None) -> None:
        self.url = database_url
        self.engine = build_engine(database_url, settings)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        settings = settings or get_settings()
        return cls(settings.database_url, settings=settings)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def create_all(self) -> None:
        # Schema bootstrap for SQLite test databases; Postgres uses alembic migrations.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
