"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates numeric limits and provides typed access to settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


@dataclass(frozen=True)
class S3Config:
    """Connection details for an S3-compatible object store.

    Credentials are optional; when unset boto3 resolves them through its
    usual provider chain (environment, profile, instance metadata).
    """

    bucket: str
    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Cache service:
        ACTIONS_CACHE_URL: Base URL of the cache REST service
        ACTIONS_RUNTIME_TOKEN: Bearer credential sent on every service call
        CACHE_API_VERSION: Version sent in the Accept header

    Transfer tuning:
        CACHE_UPLOAD_CONCURRENCY, CACHE_UPLOAD_CHUNK_SIZE
        CACHE_DOWNLOAD_CONCURRENCY, CACHE_DOWNLOAD_CHUNK_SIZE
        CACHE_USE_BLOB_SDK, CACHE_CONCURRENT_BLOB_DOWNLOADS
        CACHE_REQUEST_TIMEOUT_MS, CACHE_SEGMENT_DOWNLOAD_TIMEOUT_MINS

    Retry policy:
        CACHE_RETRY_MAX_ATTEMPTS, CACHE_RETRY_INITIAL_INTERVAL_MS,
        CACHE_RETRY_BACKOFF_MULTIPLIER, CACHE_RETRY_MAX_INTERVAL_MS

    Object store (enabled when CACHE_S3_BUCKET is set):
        CACHE_S3_BUCKET, CACHE_S3_REGION, CACHE_S3_ENDPOINT_URL,
        CACHE_S3_ACCESS_KEY_ID, CACHE_S3_SECRET_ACCESS_KEY
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cache service
    ACTIONS_CACHE_URL: str | None = Field(
        default=None, description="Base URL of the cache REST service"
    )
    ACTIONS_RUNTIME_TOKEN: str = Field(
        default="", description="Bearer credential for the cache service"
    )
    CACHE_API_VERSION: str = Field(
        default="6.0-preview.1", description="API version for the Accept header"
    )

    # Upload tuning
    CACHE_UPLOAD_CONCURRENCY: int = Field(
        default=4, ge=1, le=32, description="Parallel chunk uploads"
    )
    CACHE_UPLOAD_CHUNK_SIZE: int = Field(
        default=32 * MIB, ge=1, description="Chunk size in bytes for uploads"
    )

    # Download tuning
    CACHE_DOWNLOAD_CONCURRENCY: int = Field(
        default=8, ge=1, le=64, description="Parallel segment downloads"
    )
    CACHE_DOWNLOAD_CHUNK_SIZE: int = Field(
        default=4 * MIB, ge=1, description="Segment size in bytes for ranged downloads"
    )
    CACHE_USE_BLOB_SDK: bool = Field(
        default=False, description="Use the blob storage SDK for blob-hosted archives"
    )
    CACHE_CONCURRENT_BLOB_DOWNLOADS: bool = Field(
        default=True, description="Use concurrent ranged GETs for blob-hosted archives"
    )
    CACHE_REQUEST_TIMEOUT_MS: int = Field(
        default=30000, ge=1, description="Per-request timeout in milliseconds"
    )
    CACHE_SEGMENT_DOWNLOAD_TIMEOUT_MINS: int | None = Field(
        default=None, ge=1, description="Overrides the blob SDK segment timeout"
    )

    # Retry policy
    CACHE_RETRY_MAX_ATTEMPTS: int = Field(
        default=2, ge=1, le=20, description="Attempts per outbound call"
    )
    CACHE_RETRY_INITIAL_INTERVAL_MS: int = Field(
        default=5000, ge=0, description="Wait before the first retry"
    )
    CACHE_RETRY_BACKOFF_MULTIPLIER: float = Field(
        default=1.5, ge=1.0, description="Geometric growth of the retry wait"
    )
    CACHE_RETRY_MAX_INTERVAL_MS: int = Field(
        default=60000, ge=0, description="Upper bound of a single retry wait"
    )

    # Object store
    CACHE_S3_BUCKET: str | None = Field(default=None, description="S3 bucket name")
    CACHE_S3_REGION: str | None = Field(default=None, description="S3 region")
    CACHE_S3_ENDPOINT_URL: str | None = Field(
        default=None, description="Endpoint for S3-compatible stores"
    )
    CACHE_S3_ACCESS_KEY_ID: str | None = Field(default=None, description="S3 access key")
    CACHE_S3_SECRET_ACCESS_KEY: str | None = Field(
        default=None, description="S3 secret key"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | None = Field(
        default=None, description="Level for wfcache loggers; unset leaves logging alone"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON Lines log file")

    @field_validator("ACTIONS_CACHE_URL")
    @classmethod
    def normalize_cache_url(cls, v: str | None) -> str | None:
        """Treat blank URLs as unset and ensure a trailing slash."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        return v if v.endswith("/") else f"{v}/"

    @property
    def cache_service_url(self) -> str | None:
        """Get cache service URL (lowercase alias)."""
        return self.ACTIONS_CACHE_URL

    @property
    def runtime_token(self) -> str:
        """Get bearer token (lowercase alias)."""
        return self.ACTIONS_RUNTIME_TOKEN

    def s3_config(self) -> S3Config | None:
        """Build object store config, or None when no bucket is configured."""
        if not self.CACHE_S3_BUCKET:
            return None
        return S3Config(
            bucket=self.CACHE_S3_BUCKET,
            region=self.CACHE_S3_REGION,
            endpoint_url=self.CACHE_S3_ENDPOINT_URL,
            access_key_id=self.CACHE_S3_ACCESS_KEY_ID,
            secret_access_key=self.CACHE_S3_SECRET_ACCESS_KEY,
        )

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings with credentials redacted for display."""
        def redact(value: str | None) -> str | None:
            if not value:
                return value
            return f"{value[:4]}...{value[-2:]}" if len(value) > 12 else "***"

        return {
            "ACTIONS_CACHE_URL": self.ACTIONS_CACHE_URL,
            "ACTIONS_RUNTIME_TOKEN": redact(self.ACTIONS_RUNTIME_TOKEN),
            "CACHE_API_VERSION": self.CACHE_API_VERSION,
            "CACHE_UPLOAD_CONCURRENCY": self.CACHE_UPLOAD_CONCURRENCY,
            "CACHE_UPLOAD_CHUNK_SIZE": self.CACHE_UPLOAD_CHUNK_SIZE,
            "CACHE_DOWNLOAD_CONCURRENCY": self.CACHE_DOWNLOAD_CONCURRENCY,
            "CACHE_DOWNLOAD_CHUNK_SIZE": self.CACHE_DOWNLOAD_CHUNK_SIZE,
            "CACHE_USE_BLOB_SDK": self.CACHE_USE_BLOB_SDK,
            "CACHE_CONCURRENT_BLOB_DOWNLOADS": self.CACHE_CONCURRENT_BLOB_DOWNLOADS,
            "CACHE_REQUEST_TIMEOUT_MS": self.CACHE_REQUEST_TIMEOUT_MS,
            "CACHE_RETRY_MAX_ATTEMPTS": self.CACHE_RETRY_MAX_ATTEMPTS,
            "CACHE_S3_BUCKET": self.CACHE_S3_BUCKET,
            "CACHE_S3_ENDPOINT_URL": self.CACHE_S3_ENDPOINT_URL,
            "CACHE_S3_ACCESS_KEY_ID": redact(self.CACHE_S3_ACCESS_KEY_ID),
            "CACHE_S3_SECRET_ACCESS_KEY": redact(self.CACHE_S3_SECRET_ACCESS_KEY),
            "LOG_LEVEL": self.LOG_LEVEL,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are present but invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()


def is_feature_available(settings: Settings | None = None) -> bool:
    """Check whether the cache service is reachable from this environment."""
    settings = settings or get_settings()
    return bool(settings.cache_service_url)
