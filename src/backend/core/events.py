"""
Application lifecycle event handlers.

Manages startup and shutdown tasks: logging setup, encryption and store
readiness, and closing document store connections.
"""

from typing import Callable

import structlog
from fastapi import FastAPI

from core.config import settings
from core.encryption import is_encryption_configured
from core.logging import configure_logging
from db.document_store import get_document_store

logger = structlog.get_logger(__name__)


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        logger.info("evalshield_starting", env=settings.APP_ENV, store_backend=settings.STORE_BACKEND)

        if not is_encryption_configured():
            # Submissions without comments still work; comments are refused
            if settings.is_production:
                logger.error("comment_encryption_not_configured", env=settings.APP_ENV)
            else:
                logger.warning("comment_encryption_not_configured")

        get_document_store()
        logger.info("evalshield_started")

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("evalshield_stopping")

        try:
            await get_document_store().close()
        except Exception as e:
            logger.warning("document_store_close_failed", error=str(e))

        logger.info("evalshield_stopped")

    return stop_app
