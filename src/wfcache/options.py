"""
Per-call upload and download options.

Callers pass partially filled options; unset fields fall back to Settings.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from wfcache.config import Settings, get_settings
from wfcache.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SEGMENT_TIMEOUT_MS = 10 * 60 * 1000


@dataclass(frozen=True)
class UploadOptions:
    """Options controlling cache upload."""

    upload_concurrency: int | None = None
    upload_chunk_size: int | None = None


@dataclass(frozen=True)
class DownloadOptions:
    """Options controlling cache download.

    lookup_only skips the download entirely; the session then only reports
    whether a matching entry exists.
    """

    concurrent_blob_downloads: bool | None = None
    download_concurrency: int | None = None
    download_chunk_size: int | None = None
    segment_timeout_ms: int | None = None
    lookup_only: bool = False


def get_upload_options(
    options: UploadOptions | None = None,
    settings: Settings | None = None,
) -> UploadOptions:
    """Fill unset upload options from settings."""
    settings = settings or get_settings()
    options = options or UploadOptions()

    result = replace(
        options,
        upload_concurrency=options.upload_concurrency or settings.CACHE_UPLOAD_CONCURRENCY,
        upload_chunk_size=options.upload_chunk_size or settings.CACHE_UPLOAD_CHUNK_SIZE,
    )

    logger.debug(
        "Upload options resolved",
        upload_concurrency=result.upload_concurrency,
        upload_chunk_size=result.upload_chunk_size,
    )
    return result


def get_download_options(
    options: DownloadOptions | None = None,
    settings: Settings | None = None,
) -> DownloadOptions:
    """Fill unset download options from settings.

    CACHE_SEGMENT_DOWNLOAD_TIMEOUT_MINS wins over any per-call segment timeout.
    """
    settings = settings or get_settings()
    options = options or DownloadOptions()

    segment_timeout_ms = options.segment_timeout_ms or DEFAULT_SEGMENT_TIMEOUT_MS
    if settings.CACHE_SEGMENT_DOWNLOAD_TIMEOUT_MINS:
        segment_timeout_ms = settings.CACHE_SEGMENT_DOWNLOAD_TIMEOUT_MINS * 60 * 1000

    result = replace(
        options,
        concurrent_blob_downloads=(
            options.concurrent_blob_downloads
            if options.concurrent_blob_downloads is not None
            else settings.CACHE_CONCURRENT_BLOB_DOWNLOADS
        ),
        download_concurrency=(
            options.download_concurrency or settings.CACHE_DOWNLOAD_CONCURRENCY
        ),
        download_chunk_size=options.download_chunk_size or settings.CACHE_DOWNLOAD_CHUNK_SIZE,
        segment_timeout_ms=segment_timeout_ms,
    )

    logger.debug(
        "Download options resolved",
        concurrent_blob_downloads=result.concurrent_blob_downloads,
        download_concurrency=result.download_concurrency,
        segment_timeout_ms=result.segment_timeout_ms,
        lookup_only=result.lookup_only,
    )
    return result
