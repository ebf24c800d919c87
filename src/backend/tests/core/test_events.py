"""
Tests for application startup and shutdown handlers.
"""

from unittest.mock import patch

import pytest
from fastapi import FastAPI

from core.events import create_start_app_handler, create_stop_app_handler


@pytest.mark.unit
class TestLifecycleHandlers:
    async def test_startup_warns_without_master_key(self) -> None:
        with patch("core.events.is_encryption_configured", return_value=False), patch(
            "core.events.logger"
        ) as mock_logger:
            await create_start_app_handler(FastAPI())()

        mock_logger.warning.assert_called_once_with("comment_encryption_not_configured")

    async def test_startup_quiet_with_master_key(self) -> None:
        with patch("core.events.is_encryption_configured", return_value=True), patch(
            "core.events.logger"
        ) as mock_logger:
            await create_start_app_handler(FastAPI())()

        mock_logger.warning.assert_not_called()

    async def test_shutdown_closes_store(self) -> None:
        with patch("core.events.get_document_store") as mock_get_store:
            mock_get_store.return_value.close = _async_noop
            await create_stop_app_handler(FastAPI())()

        mock_get_store.assert_called_once()


async def _async_noop() -> None:
    return None
