"""
Blob storage SDK backend.

The SDK moves the whole archive in one logical call and manages its own
chunking, concurrency and retries. Lookup and reserve still go through the
cache REST service, which hands out the signed blob URLs; there is no commit
step because the SDK upload finalizes the blob.
"""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Callable, Sequence

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobClient

from wfcache.backends.rest import CacheServiceClient, RestBackend, is_blob_storage_url
from wfcache.exceptions import TransferError, ValidationError
from wfcache.files import get_archive_file_size
from wfcache.logging import get_logger, redact_url
from wfcache.options import DownloadOptions, UploadOptions
from wfcache.types import BackendKind, CacheEntry, ReserveResult

logger = get_logger(__name__)

BlobClientFactory = Callable[..., Any]


class TransferProgress:
    """Progress hook for SDK transfers.

    The SDK calls the hook from its worker threads; reporting is throttled to
    one log line per ``step`` percent.
    """

    def __init__(self, label: str, total: int | None = None, step: int = 10) -> None:
        self.label = label
        self.total = total
        self.step = step
        self.transferred = 0
        self._last_reported = -1
        self._lock = threading.Lock()

    @property
    def percentage(self) -> float:
        if not self.total:
            return 0.0
        return min(100.0, 100.0 * self.transferred / self.total)

    def __call__(self, current: int, total: int | None) -> None:
        with self._lock:
            self.transferred = current
            if total:
                self.total = total
            bucket = int(self.percentage // self.step)
            if bucket == self._last_reported:
                return
            self._last_reported = bucket
        logger.info(
            f"{self.label}: {self.transferred} of {self.total or '?'} bytes "
            f"({self.percentage:.1f}%)"
        )


class BlobStoreBackend:
    """Backend moving archive bytes with the blob storage SDK."""

    kind = BackendKind.BLOB_STORE

    def __init__(
        self,
        client: CacheServiceClient,
        signed_upload_url: str | None = None,
        blob_client_factory: BlobClientFactory = BlobClient.from_blob_url,
    ) -> None:
        """Initialize the backend.

        Args:
            client: Cache service client used for lookup and reserve.
            signed_upload_url: Signed URL the archive is uploaded to.
            blob_client_factory: Builds a blob client from a signed URL.
        """
        self.client = client
        self.signed_upload_url = signed_upload_url
        self._blob_client_factory = blob_client_factory
        # Locations outside blob storage are served by the service itself
        self._http = RestBackend(client)

    async def close(self) -> None:
        await self.client.close()

    async def lookup(self, keys: Sequence[str], version: str) -> CacheEntry | None:
        return await self.client.get_cache_entry(keys, version)

    async def reserve(
        self, key: str, version: str, cache_size: int | None = None
    ) -> ReserveResult:
        return await self.client.reserve_cache(key, version, cache_size)

    async def upload(
        self,
        reservation: ReserveResult,
        archive_path: Path,
        key: str,
        options: UploadOptions,
    ) -> None:
        """Upload the archive to the signed URL in one SDK call."""
        if not self.signed_upload_url:
            raise ValidationError(
                "Blob SDK can only be used when a signed URL is provided.",
                context={"key": key},
            )

        file_size = get_archive_file_size(archive_path)
        progress = TransferProgress("Uploaded", total=file_size)

        # Unset options keep the SDK's own defaults
        client_kwargs: dict[str, Any] = {}
        if options.upload_chunk_size:
            client_kwargs["max_single_put_size"] = options.upload_chunk_size
            client_kwargs["max_block_size"] = options.upload_chunk_size
        upload_kwargs: dict[str, Any] = {}
        if options.upload_concurrency:
            upload_kwargs["max_concurrency"] = options.upload_concurrency

        blob_client = self._blob_client_factory(self.signed_upload_url, **client_kwargs)

        def _upload() -> None:
            with open(archive_path, "rb") as stream:
                blob_client.upload_blob(
                    stream,
                    length=file_size,
                    overwrite=True,
                    progress_hook=progress,
                    **upload_kwargs,
                )

        logger.debug("Uploading archive with blob SDK", url=redact_url(self.signed_upload_url))
        try:
            await asyncio.to_thread(_upload)
        except (AzureError, OSError) as e:
            raise TransferError(
                f"Cache upload failed because {e}",
                context={"key": key, "url": redact_url(self.signed_upload_url)},
            ) from e

    async def commit(self, reservation: ReserveResult, size: int) -> None:
        # The SDK upload already committed the block list
        logger.debug("Blob SDK upload needs no commit", size=size)

    async def download(
        self,
        entry: CacheEntry,
        archive_path: Path,
        options: DownloadOptions,
    ) -> None:
        """Stream the blob chunk by chunk, aborting once the segment timeout passes."""
        if not is_blob_storage_url(entry.location):
            await self._http.download(entry, archive_path, options)
            return

        progress = TransferProgress("Received")
        blob_client = self._blob_client_factory(entry.location)
        abort = threading.Event()
        download_kwargs: dict[str, Any] = {}
        if options.download_concurrency:
            download_kwargs["max_concurrency"] = options.download_concurrency

        def _download() -> bool:
            with open(archive_path, "wb") as stream:
                downloader = blob_client.download_blob(**download_kwargs)
                written = 0
                for chunk in downloader.chunks():
                    if abort.is_set():
                        return False
                    stream.write(chunk)
                    written += len(chunk)
                    progress(written, downloader.size)
            return True

        timeout = (options.segment_timeout_ms or 0) / 1000 or None
        task = asyncio.ensure_future(asyncio.to_thread(_download))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                # Stop between chunks and wait for the thread to close the file
                abort.set()
                await asyncio.wait({task})
            if not task.result():
                raise TransferError(
                    "Aborting cache download as the download time exceeded the timeout.",
                    context={"timeout_ms": options.segment_timeout_ms},
                )
        except (AzureError, OSError) as e:
            raise TransferError(
                f"Cache download failed because {e}",
                context={"url": redact_url(entry.location)},
            ) from e

        logger.debug(
            "Archive downloaded with blob SDK",
            bytes=progress.transferred,
            url=redact_url(entry.location),
        )
