#!/usr/bin/env python3
"""
DockGuard Backend - safe container updates

Serves the UI event stream (self-update notices and their acknowledgments),
a health endpoint for the container's own HEALTHCHECK, and Prometheus
metrics. The update executor is created here and shared through app.state.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from api.sse import broadcaster, router as events_router
from config.paths import ensure_data_dirs
from config.settings import AppConfig, HealthCheckFilter, setup_logging
from database import get_database_manager
from event_bus import get_event_bus
from updates.docker_executor import DockerUpdateExecutor

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()

    logger.info("Starting DockGuard backend...")

    # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    ensure_data_dirs()
    db = await asyncio.to_thread(get_database_manager)

    event_bus = get_event_bus()
    broadcaster.register_event_handlers(event_bus)

    app.state.db = db
    app.state.update_executor = DockerUpdateExecutor(db, event_bus=event_bus)

    yield

    logger.info("Shutting down DockGuard backend...")
    app.state.update_executor.cancel_health_monitors()
    broadcaster.clear_pending_acks()

    try:
        await asyncio.to_thread(db.dispose)
        logger.info("SQLAlchemy engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")


app = FastAPI(
    title="DockGuard API",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(events_router)
app.mount("/metrics", make_asgi_app())


@app.get("/health")
async def health_check():
    """Health check endpoint for Docker health checks - no authentication required"""
    return {"status": "healthy", "service": "dockguard-backend"}


if __name__ == "__main__":
    uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT, log_config=None)
