"""Database connection and session management."""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from sendgate.config import Settings
from sendgate.db import ddl
from sendgate.errors import LegacySchemaError
from sendgate.observability.metrics import metrics


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _attach_query_metrics(target_engine: AsyncEngine) -> None:
    """Attach SQLAlchemy event listeners for query metrics."""
    sync_engine = target_engine.sync_engine
    if getattr(sync_engine, "_sendgate_metrics_attached", False):
        return

    @event.listens_for(sync_engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info["query_start_time"] = time.perf_counter()

    @event.listens_for(sync_engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_time = conn.info.pop("query_start_time", None)
        if start_time is None:
            return
        duration_ms = (time.perf_counter() - start_time) * 1000.0
        metrics.inc_counter("db.query.count")
        metrics.observe("db.query.duration_ms", duration_ms)

    sync_engine._sendgate_metrics_attached = True


def _engine_options(config: Settings) -> dict[str, Any]:
    """Driver and pool options for the configured backend."""
    if config.async_database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": config.storage_timeout_seconds}}
    return {
        "pool_pre_ping": True,
        "pool_size": config.database_pool_size,
        "max_overflow": config.database_max_overflow,
        "connect_args": {"command_timeout": config.storage_timeout_seconds},
    }


class Database:
    """
    Storage handle owned by the process.

    Holds the engine (connection pool) and session factory. Created once by
    the application lifespan, the CLI, or a test fixture, and passed by
    reference to whatever needs a unit of work.
    """

    def __init__(self, config: Settings, engine: Optional[AsyncEngine] = None):
        self.config = config
        self.engine = engine or create_async_engine(
            config.async_database_url,
            echo=config.debug,
            **_engine_options(config),
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        _attach_query_metrics(self.engine)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def has_table(self, name: str) -> bool:
        async with self.engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(name))

    async def ensure_reconciled(self) -> None:
        """
        Refuse to touch a store that still has the legacy tasks table.

        Creating the current tables next to it would leave the rename step
        with a name clash it cannot resolve.
        """
        if await self.has_table(ddl.LEGACY_TASKS_TABLE):
            raise LegacySchemaError(ddl.LEGACY_TASKS_TABLE)

    async def create_all(self) -> None:
        """Create tables (and, on PostgreSQL, the updated_at trigger)."""
        # Register tables on the metadata before creating them.
        import sendgate.db.tables  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        import sendgate.db.tables  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close database connections."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session scoped to one unit of work."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
