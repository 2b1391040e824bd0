"""SendGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sendgate import __version__
from sendgate.api import router
from sendgate.config import settings
from sendgate.db.base import Database
from sendgate.errors import LegacySchemaError
from sendgate.middleware.trace import trace_id_middleware
from sendgate.observability.trace import install_trace_id_filter
from sendgate.tasks.sweep import start_stall_sweep, stop_stall_sweep

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s",
)
install_trace_id_filter(logging.getLogger().handlers)
logger = logging.getLogger("sendgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting SendGate server...")
    logger.info(f"Environment: {settings.env.value}")

    db = Database(settings)
    try:
        await db.ensure_reconciled()
    except LegacySchemaError as e:
        logger.error(e.message)
        await db.dispose()
        raise
    app.state.db = db
    await db.create_all()
    logger.info(f"Database initialized ({db.dialect_name})")

    if settings.stall_sweep_enabled:
        await start_stall_sweep(db, settings)
        logger.info("Stall sweep task started")

    yield

    logger.info("Shutting down SendGate server...")
    if settings.stall_sweep_enabled:
        await stop_stall_sweep()
    await db.dispose()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SendGate",
    description="Newsletter task tracking and cursor export service",
    version=__version__,
    lifespan=lifespan,
)

# Trace ID middleware (correlation across logs)
app.middleware("http")(trace_id_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)

app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "sendgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
