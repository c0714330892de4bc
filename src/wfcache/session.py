"""
Cache session orchestration.

A CacheSession binds one backend (chosen from configuration) to the four
public operations:

- lookup:   keys + paths -> CacheEntry or None
- download: CacheEntry -> archive file on disk
- reserve:  key + paths -> ReserveResult
- upload:   archive file -> uploaded and committed entry

restore() and save() chain those for the common cases. Errors are never
suppressed here; they reach the caller with the operation name attached.
"""

from __future__ import annotations

from pathlib import Path
from types import TracebackType
from typing import Sequence

import httpx

from wfcache.backends import CacheBackend, build_backend, select_backend_kind
from wfcache.config import S3Config, Settings, get_settings
from wfcache.exceptions import CacheError, ReserveConflictError
from wfcache.files import get_archive_file_size
from wfcache.logging import configure_logging, get_logger, log_context, redact_url
from wfcache.options import (
    DownloadOptions,
    UploadOptions,
    get_download_options,
    get_upload_options,
)
from wfcache.retry import RetryExecutor, RetryPolicy
from wfcache.types import (
    BackendKind,
    CacheEntry,
    CompressionMethod,
    ReserveResult,
    SessionState,
)
from wfcache.validation import check_archive_size, check_key, check_keys, check_paths
from wfcache.version import get_cache_version

logger = get_logger(__name__)

NO_CACHE_ID = -1


class CacheSession:
    """Runs cache operations against a single backend.

    Use as an async context manager so HTTP clients are closed once:

        async with CacheSession() as session:
            key = await session.restore(paths, primary_key, restore_keys, archive)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        s3_config: S3Config | None = None,
        use_blob_sdk: bool | None = None,
        signed_upload_url: str | None = None,
        retry: RetryExecutor | None = None,
        backend: CacheBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        s3_client: object | None = None,
    ) -> None:
        """Initialize the session and select its backend.

        Args:
            settings: Settings; defaults to the cached environment settings.
            s3_config: Object store config; defaults to the one in settings.
            use_blob_sdk: Use the blob SDK; defaults to CACHE_USE_BLOB_SDK.
            signed_upload_url: Signed blob URL for blob SDK uploads.
            retry: Retry executor; defaults to the policy in settings.
            backend: Pre-built backend (skips selection).
            transport: httpx transport for the REST service (tests).
            s3_client: Pre-built boto3 client (tests).
        """
        self.settings = settings or get_settings()
        configure_logging(self.settings.LOG_LEVEL, self.settings.LOG_FILE)
        self.s3_config = s3_config if s3_config is not None else self.settings.s3_config()
        self.retry = retry or RetryExecutor(RetryPolicy.from_settings(self.settings))

        if backend is not None:
            self.backend: CacheBackend = backend
        else:
            if use_blob_sdk is None:
                use_blob_sdk = self.settings.CACHE_USE_BLOB_SDK
            kind = select_backend_kind(self.s3_config, use_blob_sdk)
            self.backend = build_backend(
                kind,
                self.settings,
                self.retry,
                s3_config=self.s3_config,
                signed_upload_url=signed_upload_url,
                transport=transport,
                s3_client=s3_client,
            )

        self._state = SessionState.IDLE
        self._closed = False

    @property
    def kind(self) -> BackendKind:
        return self.backend.kind

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, state: SessionState) -> None:
        logger.debug(f"Session {self._state.value} -> {state.value}")
        self._state = state

    async def __aenter__(self) -> CacheSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.backend.close()

    def version_for(
        self,
        paths: Sequence[str],
        compression_method: CompressionMethod | str | None = None,
        enable_cross_os_archive: bool = False,
    ) -> str:
        check_paths(paths)
        return get_cache_version(paths, compression_method, enable_cross_os_archive)

    async def lookup(
        self,
        keys: Sequence[str],
        paths: Sequence[str],
        compression_method: CompressionMethod | str | None = None,
        enable_cross_os_archive: bool = False,
    ) -> CacheEntry | None:
        """Find the best stored entry for the ordered key list."""
        check_keys(keys)
        version = self.version_for(paths, compression_method, enable_cross_os_archive)

        with log_context(operation="lookup", cache_key=keys[0], backend=self.kind.value):
            self._transition(SessionState.RESOLVING)
            try:
                entry = await self.backend.lookup(keys, version)
            except CacheError as e:
                self._transition(SessionState.FAILED)
                e.context.setdefault("operation", "lookup")
                raise

            if entry is None:
                self._transition(SessionState.NOT_FOUND)
                logger.info(f"Cache not found for input keys: {', '.join(keys)}")
                return None

            self._transition(SessionState.FOUND)
            logger.info(f"Cache hit for key: {entry.key}")
            return entry

    async def download(
        self,
        entry: CacheEntry,
        archive_path: Path | str,
        options: DownloadOptions | None = None,
    ) -> None:
        """Download a resolved entry's archive to ``archive_path``."""
        archive_path = Path(archive_path)
        download_options = get_download_options(options, self.settings)

        with log_context(operation="download", cache_key=entry.key, backend=self.kind.value):
            self._transition(SessionState.DOWNLOADING)
            logger.debug(
                "Downloading archive",
                location=redact_url(entry.location),
                archive_path=str(archive_path),
            )
            try:
                await self.backend.download(entry, archive_path, download_options)
            except CacheError as e:
                self._transition(SessionState.FAILED)
                e.context.setdefault("operation", "download")
                raise

            size = get_archive_file_size(archive_path)
            logger.info(f"Cache Size: ~{round(size / (1024 * 1024))} MB ({size} B)")
            self._transition(SessionState.DONE)

    async def reserve(
        self,
        key: str,
        paths: Sequence[str],
        cache_size: int | None = None,
        compression_method: CompressionMethod | str | None = None,
        enable_cross_os_archive: bool = False,
    ) -> ReserveResult:
        """Reserve a write slot for key+version.

        Raises:
            ReserveConflictError: Another job is already saving this entry.
        """
        check_key(key)
        version = self.version_for(paths, compression_method, enable_cross_os_archive)

        with log_context(operation="reserve", cache_key=key, backend=self.kind.value):
            self._transition(SessionState.RESERVING)
            try:
                result = await self.backend.reserve(key, version, cache_size)
            except ReserveConflictError:
                self._transition(SessionState.CONFLICT)
                raise
            except CacheError as e:
                self._transition(SessionState.FAILED)
                e.context.setdefault("operation", "reserve")
                raise

            self._transition(SessionState.RESERVED)
            logger.debug("Cache reserved", cache_id=result.cache_id)
            return result

    async def upload(
        self,
        reservation: ReserveResult,
        archive_path: Path | str,
        key: str,
        options: UploadOptions | None = None,
    ) -> None:
        """Upload the archive, then commit it once every chunk succeeded."""
        archive_path = Path(archive_path)
        upload_options = get_upload_options(options, self.settings)

        with log_context(operation="upload", cache_key=key, backend=self.kind.value):
            self._transition(SessionState.UPLOADING)
            try:
                size = get_archive_file_size(archive_path)
                await self.backend.upload(reservation, archive_path, key, upload_options)
                self._transition(SessionState.COMMITTING)
                await self.backend.commit(reservation, size)
            except CacheError as e:
                self._transition(SessionState.FAILED)
                e.context.setdefault("operation", "upload")
                raise

            self._transition(SessionState.DONE)
            logger.info("Cache saved successfully")

    async def restore(
        self,
        paths: Sequence[str],
        primary_key: str,
        restore_keys: Sequence[str] = (),
        archive_path: Path | str | None = None,
        options: DownloadOptions | None = None,
        compression_method: CompressionMethod | str | None = None,
        enable_cross_os_archive: bool = False,
    ) -> str | None:
        """Look up and download a cache.

        Returns:
            The matched key, or None on a miss.
        """
        keys = [primary_key, *restore_keys]
        entry = await self.lookup(keys, paths, compression_method, enable_cross_os_archive)
        if entry is None:
            return None

        download_options = get_download_options(options, self.settings)
        if download_options.lookup_only:
            logger.info("Lookup only - skipping download")
            return entry.key

        if archive_path is None:
            raise ValueError("archive_path is required unless lookup_only is set")

        await self.download(entry, archive_path, download_options)
        return entry.key

    async def save(
        self,
        paths: Sequence[str],
        key: str,
        archive_path: Path | str,
        options: UploadOptions | None = None,
        compression_method: CompressionMethod | str | None = None,
        enable_cross_os_archive: bool = False,
    ) -> int:
        """Reserve, upload and commit an archive.

        Returns:
            The cache id, or -1 on the object store path where none exists.
        """
        check_paths(paths)
        check_key(key)
        archive_size = get_archive_file_size(archive_path)
        check_archive_size(archive_size)

        reservation = await self.reserve(
            key,
            paths,
            cache_size=archive_size,
            compression_method=compression_method,
            enable_cross_os_archive=enable_cross_os_archive,
        )
        await self.upload(reservation, archive_path, key, options)
        return reservation.cache_id if reservation.cache_id is not None else NO_CACHE_ID
