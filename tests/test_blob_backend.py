"""
Tests for the blob storage SDK backend.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
import pytest
from azure.core.exceptions import HttpResponseError

from wfcache.backends.blob import BlobStoreBackend, TransferProgress
from wfcache.backends.rest import CacheServiceClient
from wfcache.config import Settings
from wfcache.exceptions import TransferError, ValidationError
from wfcache.options import DownloadOptions, UploadOptions
from wfcache.retry import RetryExecutor
from wfcache.types import CacheEntry, ReserveResult

SIGNED_URL = "https://acct.blob.core.windows.net/cache/archive.tzst?sig=secret"


class FakeDownloader:
    """Serves the payload in fixed-size chunks, optionally pausing before each."""

    def __init__(self, payload: bytes, delay: float = 0.0, chunk_size: int = 4) -> None:
        self.payload = payload
        self.delay = delay
        self.chunk_size = chunk_size
        self.size = len(payload)
        self.served = 0

    def chunks(self) -> Iterator[bytes]:
        for offset in range(0, len(self.payload), self.chunk_size):
            if self.delay:
                time.sleep(self.delay)
            self.served += 1
            yield self.payload[offset : offset + self.chunk_size]


class FakeBlobClient:
    """Stands in for azure.storage.blob.BlobClient."""

    def __init__(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.kwargs = kwargs
        self.uploaded: bytes | None = None
        self.upload_kwargs: dict[str, Any] = {}
        self.download_kwargs: dict[str, Any] = {}
        self.payload = b""
        self.delay = 0.0
        self.error: Exception | None = None
        self.downloader: FakeDownloader | None = None

    def upload_blob(self, stream: Any, **kwargs: Any) -> None:
        if self.error:
            raise self.error
        self.uploaded = stream.read()
        self.upload_kwargs = kwargs
        kwargs["progress_hook"](len(self.uploaded), kwargs["length"])

    def download_blob(self, **kwargs: Any) -> FakeDownloader:
        if self.error:
            raise self.error
        self.download_kwargs = kwargs
        self.downloader = FakeDownloader(self.payload, self.delay)
        return self.downloader


class BlobClientFactory:
    """Records the blob clients it builds."""

    def __init__(self) -> None:
        self.clients: list[FakeBlobClient] = []
        self.configure: Callable[[FakeBlobClient], None] = lambda client: None

    def __call__(self, url: str, **kwargs: Any) -> FakeBlobClient:
        client = FakeBlobClient(url, **kwargs)
        self.configure(client)
        self.clients.append(client)
        return client


def make_backend(
    settings: Settings,
    retry: RetryExecutor,
    factory: BlobClientFactory,
    signed_upload_url: str | None = SIGNED_URL,
    transport: httpx.MockTransport | None = None,
) -> BlobStoreBackend:
    client = CacheServiceClient(settings, retry, transport=transport)
    return BlobStoreBackend(client, signed_upload_url=signed_upload_url, blob_client_factory=factory)


class TestBlobUpload:
    """Tests for SDK upload."""

    @pytest.mark.asyncio
    async def test_upload_streams_archive(
        self,
        settings: Settings,
        retry: RetryExecutor,
        make_archive: Callable[..., Path],
    ) -> None:
        """Test the archive is handed to upload_blob with size and concurrency."""
        factory = BlobClientFactory()
        backend = make_backend(settings, retry, factory)
        archive = make_archive(5000)

        await backend.upload(ReserveResult(True, 1), archive, "k", UploadOptions(3, 1024))

        client = factory.clients[0]
        assert client.url == SIGNED_URL
        assert client.kwargs == {"max_single_put_size": 1024, "max_block_size": 1024}
        assert client.uploaded == archive.read_bytes()
        assert client.upload_kwargs["length"] == 5000
        assert client.upload_kwargs["overwrite"] is True
        assert client.upload_kwargs["max_concurrency"] == 3

    @pytest.mark.asyncio
    async def test_unset_options_keep_sdk_defaults(
        self,
        settings: Settings,
        retry: RetryExecutor,
        make_archive: Callable[..., Path],
    ) -> None:
        """Test unset chunk size and concurrency are not passed to the SDK."""
        factory = BlobClientFactory()
        backend = make_backend(settings, retry, factory)

        await backend.upload(ReserveResult(True, 1), make_archive(100), "k", UploadOptions())

        client = factory.clients[0]
        assert client.kwargs == {}
        assert "max_concurrency" not in client.upload_kwargs
        assert client.uploaded is not None and len(client.uploaded) == 100

    @pytest.mark.asyncio
    async def test_upload_requires_signed_url(
        self,
        settings: Settings,
        retry: RetryExecutor,
        make_archive: Callable[..., Path],
    ) -> None:
        """Test uploading without a signed URL is rejected."""
        factory = BlobClientFactory()
        backend = make_backend(settings, retry, factory, signed_upload_url=None)

        with pytest.raises(ValidationError, match="signed URL"):
            await backend.upload(ReserveResult(True, 1), make_archive(10), "k", UploadOptions(1, 10))

        assert factory.clients == []

    @pytest.mark.asyncio
    async def test_sdk_error_is_transfer_error(
        self,
        settings: Settings,
        retry: RetryExecutor,
        make_archive: Callable[..., Path],
    ) -> None:
        """Test SDK failures surface as TransferError."""
        factory = BlobClientFactory()
        factory.configure = lambda client: setattr(
            client, "error", HttpResponseError(message="server busy")
        )
        backend = make_backend(settings, retry, factory)

        with pytest.raises(TransferError, match="Cache upload failed"):
            await backend.upload(ReserveResult(True, 1), make_archive(10), "k", UploadOptions(1, 10))

    @pytest.mark.asyncio
    async def test_commit_is_noop(self, settings: Settings, retry: RetryExecutor) -> None:
        """Test commit does not contact the service."""
        calls: list[httpx.Request] = []
        transport = httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(500))
        backend = make_backend(settings, retry, BlobClientFactory(), transport=transport)

        await backend.commit(ReserveResult(True, 1), 100)

        assert calls == []


class TestBlobDownload:
    """Tests for SDK download."""

    @pytest.mark.asyncio
    async def test_download_reads_into_file(
        self, settings: Settings, retry: RetryExecutor, temp_dir: Path
    ) -> None:
        """Test the blob is read into the archive path."""
        factory = BlobClientFactory()
        factory.configure = lambda client: setattr(client, "payload", b"archive-bytes")
        backend = make_backend(settings, retry, factory)
        target = temp_dir / "out.tzst"

        await backend.download(
            CacheEntry(key="k", location=SIGNED_URL),
            target,
            DownloadOptions(download_concurrency=8, segment_timeout_ms=60000),
        )

        assert target.read_bytes() == b"archive-bytes"
        assert factory.clients[0].download_kwargs["max_concurrency"] == 8

    @pytest.mark.asyncio
    async def test_download_timeout(
        self, settings: Settings, retry: RetryExecutor, temp_dir: Path
    ) -> None:
        """Test a download exceeding the segment timeout stops writing before the error."""

        def slow(client: FakeBlobClient) -> None:
            client.payload = b"x" * 40
            client.delay = 0.03

        factory = BlobClientFactory()
        factory.configure = slow
        backend = make_backend(settings, retry, factory)
        target = temp_dir / "out.tzst"

        with pytest.raises(TransferError, match="exceeded the timeout"):
            await backend.download(
                CacheEntry(key="k", location=SIGNED_URL),
                target,
                DownloadOptions(segment_timeout_ms=50),
            )

        size_at_error = target.stat().st_size
        await asyncio.sleep(0.4)

        assert target.stat().st_size == size_at_error
        assert size_at_error < 40
        downloader = factory.clients[0].downloader
        assert downloader is not None and downloader.served < 10

    @pytest.mark.asyncio
    async def test_download_sdk_error_is_transfer_error(
        self, settings: Settings, retry: RetryExecutor, temp_dir: Path
    ) -> None:
        """Test SDK download failures surface as TransferError."""
        factory = BlobClientFactory()
        factory.configure = lambda client: setattr(
            client, "error", HttpResponseError(message="blob not found")
        )
        backend = make_backend(settings, retry, factory)

        with pytest.raises(TransferError, match="Cache download failed"):
            await backend.download(
                CacheEntry(key="k", location=SIGNED_URL),
                temp_dir / "out.tzst",
                DownloadOptions(segment_timeout_ms=60000),
            )

    @pytest.mark.asyncio
    async def test_non_blob_location_uses_http(
        self, settings: Settings, retry: RetryExecutor, temp_dir: Path
    ) -> None:
        """Test locations outside blob storage are fetched over plain HTTP."""
        transport = httpx.MockTransport(lambda r: httpx.Response(200, content=b"plain"))
        factory = BlobClientFactory()
        backend = make_backend(settings, retry, factory, transport=transport)
        target = temp_dir / "out.tzst"

        await backend.download(
            CacheEntry(key="k", location="https://ghes.example.com/archive"),
            target,
            DownloadOptions(),
        )

        assert target.read_bytes() == b"plain"
        assert factory.clients == []
        await backend.close()


class TestTransferProgress:
    """Tests for the progress hook."""

    def test_percentage(self) -> None:
        """Test progress is computed against the total."""
        progress = TransferProgress("Uploaded", total=200)

        progress(50, None)

        assert progress.transferred == 50
        assert progress.percentage == 25.0

    def test_total_from_callback(self) -> None:
        """Test the SDK-reported total is adopted."""
        progress = TransferProgress("Received")

        progress(10, 40)

        assert progress.total == 40
        assert progress.percentage == 25.0

    def test_unknown_total(self) -> None:
        """Test progress without a total reports zero percent."""
        progress = TransferProgress("Received")

        progress(10, None)

        assert progress.percentage == 0.0
