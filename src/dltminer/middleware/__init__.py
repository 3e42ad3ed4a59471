"""Middleware registration."""

from fastapi import FastAPI

from dltminer.config import Settings
from dltminer.middleware.error_handler import setup_error_handlers
from dltminer.middleware.logging import setup_logging


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure logging and register the JSON error handlers."""
    setup_logging(settings, service="dlt-pool-bridge")
    setup_error_handlers(app)
