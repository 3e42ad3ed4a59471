"""Pool bridge application factory and entry point."""

import asyncio
import functools
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from dltminer.bridge.manager import ConnectionRegistry
from dltminer.bridge.relay import PoolConnector
from dltminer.bridge.router import router
from dltminer.config import Settings, get_settings
from dltminer.core.errors import ConfigurationError
from dltminer.middleware import setup_middleware
from dltminer.middleware.logging import setup_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings: Settings = app.state.settings
    logger.info(
        "bridge_started",
        port=settings.bridge_port,
        pool=f"{settings.bridge_pool_host}:{settings.bridge_pool_port}",
        origins=settings.bridge_allowed_origins,
    )

    yield

    await app.state.registry.close_all()
    logger.info("bridge_stopped", total_connections=app.state.registry.total_connections)


def create_app(settings: Settings | None = None, pool_connector: PoolConnector | None = None) -> FastAPI:
    """Create the bridge app. Raises ConfigurationError for an unusable upstream."""
    settings = settings or get_settings()
    settings.validate_bridge()

    app = FastAPI(
        title="DLT Pool Bridge",
        description="WebSocket to Stratum TCP relay for the DLT web miner",
        version=settings.app_version,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    if pool_connector is None:
        pool_connector = functools.partial(
            asyncio.open_connection, settings.bridge_pool_host, settings.bridge_pool_port,
        )

    app.state.settings = settings
    app.state.registry = ConnectionRegistry()
    app.state.pool_connector = pool_connector

    setup_middleware(app, settings)
    app.include_router(router, tags=["Bridge"])
    return app


def main() -> None:
    """Console entry point: ``dlt-pool-bridge``."""
    settings = get_settings()
    setup_logging(settings, service="dlt-pool-bridge")
    try:
        app = create_app(settings)
    except ConfigurationError as exc:
        logger.error("bridge_config_invalid", error=str(exc))
        sys.exit(1)
    uvicorn.run(app, host=settings.bridge_host, port=settings.bridge_port, log_config=None)
