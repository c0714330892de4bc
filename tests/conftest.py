"""
Pytest configuration and fixtures for wfcache tests.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch

import pytest

from wfcache.config import Settings, clear_settings_cache
from wfcache.retry import RetryExecutor, RetryPolicy

CACHE_URL = "https://cache.example.com/"
KIB = 1024


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "ACTIONS_CACHE_URL": "https://cache.example.com",
        "ACTIONS_RUNTIME_TOKEN": "test-runtime-token-123456",
        "CACHE_UPLOAD_CONCURRENCY": "6",
        "CACHE_UPLOAD_CHUNK_SIZE": str(8 * 1024 * 1024),
        "CACHE_DOWNLOAD_CONCURRENCY": "4",
        "CACHE_RETRY_MAX_ATTEMPTS": "3",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at a fake cache service, isolated from the environment."""
    return Settings(
        _env_file=None,
        ACTIONS_CACHE_URL=CACHE_URL,
        ACTIONS_RUNTIME_TOKEN="test-token",
        CACHE_UPLOAD_CONCURRENCY=4,
        CACHE_UPLOAD_CHUNK_SIZE=64 * KIB,
        CACHE_DOWNLOAD_CONCURRENCY=4,
        CACHE_DOWNLOAD_CHUNK_SIZE=16 * KIB,
        CACHE_USE_BLOB_SDK=False,
        CACHE_CONCURRENT_BLOB_DOWNLOADS=True,
        CACHE_SEGMENT_DOWNLOAD_TIMEOUT_MINS=None,
        CACHE_RETRY_MAX_ATTEMPTS=3,
        CACHE_RETRY_INITIAL_INTERVAL_MS=10,
        CACHE_RETRY_BACKOFF_MULTIPLIER=2.0,
        CACHE_S3_BUCKET=None,
    )


@pytest.fixture
def sleeps() -> list[float]:
    """Records the waits requested by the retry executor."""
    return []


@pytest.fixture
def retry(sleeps: list[float]) -> RetryExecutor:
    """Retry executor with three attempts and no real sleeping."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryExecutor(
        RetryPolicy(max_attempts=3, initial_interval_ms=10, backoff_multiplier=2.0),
        sleep=fake_sleep,
    )


@pytest.fixture
def make_archive(temp_dir: Path) -> Callable[[int], Path]:
    """Factory writing an archive with deterministic content of a given size."""

    def _make(size: int, name: str = "cache.tzst") -> Path:
        path = temp_dir / name
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return path

    return _make


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_package_logger() -> Generator[None, None, None]:
    """Undo level and handler changes made to the wfcache logger."""
    logger = logging.getLogger("wfcache")
    level = logger.level
    handlers = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
