"""Shared pytest fixtures for the chart services."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest


class MockAsyncContextManager:
    """Mock async context manager for Redis pipeline."""

    def __init__(self, mock_pipeline):
        self.mock_pipeline = mock_pipeline

    async def __aenter__(self):
        return self.mock_pipeline

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_redis():
    """Async Redis client mock with a pipeline context manager."""
    redis_client = AsyncMock()
    mock_pipeline = AsyncMock()
    redis_client.pipeline = MagicMock(return_value=MockAsyncContextManager(mock_pipeline))
    return redis_client, mock_pipeline
