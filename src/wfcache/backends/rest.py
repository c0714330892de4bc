"""
Cache REST service client and backend.

Talks to the artifact cache service:
- GET  cache?keys=&version=   lookup (204 = miss)
- GET  caches?key=            listing, used for miss diagnostics
- POST caches                 reserve a cache id
- PATCH caches/{id}           upload one chunk (Content-Range)
- POST caches/{id}            commit with the total size

Archives are downloaded from the signed location returned by lookup, either
as one streamed GET or as concurrent ranged GETs through the worker pool.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import urlsplit

import httpx
import orjson

from wfcache import __version__
from wfcache.config import Settings
from wfcache.exceptions import (
    ConfigurationError,
    InconsistencyError,
    ReserveConflictError,
    ServiceError,
    TransportError,
    ValidationError,
)
from wfcache.files import SharedFile, get_archive_file_size
from wfcache.logging import get_logger, redact_url
from wfcache.options import DownloadOptions, UploadOptions
from wfcache.pool import TransferWorkerPool
from wfcache.retry import RetryExecutor
from wfcache.types import (
    BackendKind,
    CacheEntry,
    ChunkRange,
    ReserveResult,
    TransferSummary,
)

logger = get_logger(__name__)

USER_AGENT = f"wfcache/{__version__}"

BLOB_HOST_SUFFIX = ".blob.core.windows.net"


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def is_blob_storage_url(url: str) -> bool:
    """Whether an archive location is hosted on blob storage."""
    host = urlsplit(url).hostname or ""
    return host.endswith(BLOB_HOST_SUFFIX)


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _json_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return orjson.loads(response.content)
    except orjson.JSONDecodeError as e:
        raise InconsistencyError(
            "Cache service returned malformed JSON",
            context={"status_code": response.status_code, "error": str(e)},
        ) from e


class CacheServiceClient:
    """HTTP client for the cache REST service.

    Every request carries the bearer credential and the versioned Accept
    header, and runs inside the retry executor.
    """

    def __init__(
        self,
        settings: Settings,
        retry: RetryExecutor,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Service URL, token, API version and timeouts.
            retry: Executor wrapping every outbound call.
            transport: Optional httpx transport (used by tests).
        """
        self.settings = settings
        self.retry = retry
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._archive_client: httpx.AsyncClient | None = None

    def api_url(self, resource: str) -> str:
        """Absolute URL for a cache service resource."""
        base_url = self.settings.cache_service_url
        if not base_url:
            raise ConfigurationError(
                "Cache Service Url not found, unable to restore cache.",
                context={"setting": "ACTIONS_CACHE_URL"},
            )
        url = f"{base_url}_apis/artifactcache/{resource}"
        logger.debug("Resource Url", url=url)
        return url

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.settings.CACHE_REQUEST_TIMEOUT_MS / 1000)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the authenticated service client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {self.settings.runtime_token}",
                    "Accept": f"application/json;api-version={self.settings.CACHE_API_VERSION}",
                    "User-Agent": USER_AGENT,
                },
                timeout=self._timeout(),
                transport=self._transport,
            )
        return self._client

    async def archive_client(self) -> httpx.AsyncClient:
        """Get or create the client for signed archive URLs (no bearer token)."""
        if self._archive_client is None:
            self._archive_client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                timeout=self._timeout(),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._archive_client

    async def close(self) -> None:
        """Close the HTTP clients."""
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._archive_client:
            await self._archive_client.aclose()
            self._archive_client = None

    async def request(
        self,
        method: str,
        url: str,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request, mapping httpx transport failures to TransportError."""
        client = client or await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(
                f"Request to cache service failed: {e}",
                context={"method": method, "url": redact_url(url), "error": type(e).__name__},
            ) from e

    async def get_cache_entry(self, keys: Sequence[str], version: str) -> CacheEntry | None:
        """Look up an entry by keys and version.

        Returns:
            The entry, or None when the service answers 204.

        Raises:
            ServiceError: Non-2xx response (after retries where applicable).
            InconsistencyError: 2xx response without an archive location.
        """
        url = self.api_url("cache")
        params = {"keys": ",".join(keys), "version": version}

        async def attempt() -> httpx.Response:
            response = await self.request("GET", url, params=params)
            if response.status_code == 204 or is_success_status(response.status_code):
                return response
            raise ServiceError(
                f"Cache service responded with {response.status_code}",
                status_code=response.status_code,
            )

        response = await self.retry.execute("getCacheEntry", attempt)

        if response.status_code == 204:
            if logger.is_debug():
                await self.log_similar_caches(keys[0], version)
            return None

        result = _json_body(response) or {}
        location = result.get("archiveLocation") or result.get("location")
        if not location:
            # The service promised a hit but gave nowhere to download from
            raise InconsistencyError(
                "Cache not found.",
                context={"status_code": response.status_code, "keys": list(keys)},
            )

        matched_key = result.get("cacheKey") or result.get("key")
        if not matched_key:
            # Restore reports the matched key back to the caller
            raise InconsistencyError(
                "Cache service returned an entry without its key.",
                context={"status_code": response.status_code, "keys": list(keys)},
            )

        entry = CacheEntry(
            key=matched_key,
            location=location,
            creation_time=_parse_time(result.get("creationTime")),
            version=result.get("cacheVersion") or result.get("version") or version,
            scope=result.get("scope"),
        )
        logger.debug(
            "Cache Result",
            key=entry.key,
            version=entry.version,
            scope=entry.scope,
            location=redact_url(entry.location),
        )
        return entry

    async def list_caches(self, key: str) -> list[dict[str, Any]]:
        """List caches stored under a key across versions and scopes."""
        url = self.api_url("caches")

        async def attempt() -> httpx.Response:
            response = await self.request("GET", url, params={"key": key})
            if not is_success_status(response.status_code):
                raise ServiceError(
                    f"Cache service responded with {response.status_code} during list caches",
                    status_code=response.status_code,
                )
            return response

        response = await self.retry.execute("listCache", attempt)
        result = _json_body(response) or {}
        return list(result.get("artifactCaches") or [])

    async def log_similar_caches(self, key: str, version: str) -> None:
        """Log caches sharing the primary key but differing in version or scope.

        Diagnostic only: failures are logged, not raised.
        """
        try:
            caches = await self.list_caches(key)
        except (ServiceError, TransportError, InconsistencyError) as e:
            logger.debug("Unable to list caches for diagnostics", error=str(e))
            return

        if not caches:
            return

        logger.debug(
            f"No matching cache found for cache key '{key}', version '{version}'. "
            "There exist one or more cache(s) with similar key but they have "
            "different version or scope.",
            similar=len(caches),
        )
        for cache in caches:
            logger.debug(
                "Similar cache",
                similar_key=cache.get("cacheKey"),
                cache_version=cache.get("cacheVersion"),
                scope=cache.get("scope"),
                created=cache.get("creationTime"),
            )

    async def reserve_cache(
        self, key: str, version: str, cache_size: int | None = None
    ) -> ReserveResult:
        """Reserve a cache id for key+version.

        Raises:
            ReserveConflictError: Another job holds the reservation (409).
            ValidationError: The service rejected the request (400), typically
                because the cache is over the size cap.
            ServiceError: Any other non-2xx response.
        """
        url = self.api_url("caches")
        body = {"key": key, "version": version, "cacheSize": cache_size}

        async def attempt() -> httpx.Response:
            response = await self.request(
                "POST",
                url,
                content=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
            )
            if is_success_status(response.status_code):
                return response

            message = None
            try:
                message = (_json_body(response) or {}).get("message")
            except (InconsistencyError, AttributeError):
                message = None

            if response.status_code == 409:
                raise ReserveConflictError(
                    f"Unable to reserve cache with key {key}, another job may be "
                    "creating this cache.",
                    context={"key": key, "details": message},
                )
            if response.status_code == 400:
                raise ValidationError(
                    message
                    or (
                        f"Cache size of ~{round((cache_size or 0) / (1024 * 1024))} MB "
                        f"({cache_size} B) is over the data cap limit, not saving cache."
                    ),
                    context={"key": key, "cache_size": cache_size},
                )
            raise ServiceError(
                f"Cache service responded with {response.status_code} during reserve cache.",
                status_code=response.status_code,
                context={"details": message},
            )

        response = await self.retry.execute("reserveCache", attempt)
        result = _json_body(response) or {}
        cache_id = result.get("cacheId")
        if cache_id is None:
            raise InconsistencyError(
                "Cache service reserved the cache without returning a cache id",
                context={"key": key},
            )
        return ReserveResult(success=True, cache_id=int(cache_id))

    async def upload_chunk(self, cache_id: int, data: bytes, start: int, end: int) -> None:
        """PATCH one chunk; retried independently of its siblings."""
        url = self.api_url(f"caches/{cache_id}")
        chunk = ChunkRange(start=start, end=end)
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Range": chunk.content_range(),
        }
        logger.debug(
            f"Uploading chunk of size {chunk.size} bytes at offset {start} "
            f"with content range: {chunk.content_range()}"
        )

        async def attempt() -> None:
            response = await self.request("PATCH", url, content=data, headers=headers)
            if not is_success_status(response.status_code):
                raise ServiceError(
                    f"Cache service responded with {response.status_code} during upload chunk.",
                    status_code=response.status_code,
                    context={"start": start, "end": end},
                )

        await self.retry.execute(f"uploadChunk (start: {start}, end: {end})", attempt)

    async def commit_cache(self, cache_id: int, size: int) -> None:
        """Finalize an upload so the entry becomes visible to lookups."""
        url = self.api_url(f"caches/{cache_id}")

        async def attempt() -> None:
            response = await self.request(
                "POST",
                url,
                content=orjson.dumps({"size": size}),
                headers={"Content-Type": "application/json"},
            )
            if not is_success_status(response.status_code):
                raise ServiceError(
                    f"Cache service responded with {response.status_code} during commit cache.",
                    status_code=response.status_code,
                )

        await self.retry.execute("commitCache", attempt)


class RestBackend:
    """Backend storing archives through the cache REST service."""

    kind = BackendKind.REST

    def __init__(
        self,
        client: CacheServiceClient,
        pool: TransferWorkerPool | None = None,
    ) -> None:
        self.client = client
        self.retry = client.retry
        self.pool = pool

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
    ) -> TransferSummary:
        """Upload the archive in concurrent PATCH chunks."""
        if reservation.cache_id is None:
            raise ValidationError(
                "A cache id is required to upload to the cache service",
                context={"key": key},
            )
        cache_id = reservation.cache_id
        file_size = get_archive_file_size(archive_path)
        pool = self.pool or TransferWorkerPool("uploadCache")

        async with SharedFile(archive_path, "rb") as archive:

            async def upload_range(start: int, end: int) -> None:
                data = await archive.read_range(start, end)
                await self.client.upload_chunk(cache_id, data, start, end)

            logger.debug("Awaiting all uploads")
            return await pool.run(
                file_size,
                options.upload_chunk_size or 1,
                options.upload_concurrency or 1,
                upload_range,
            )

    async def commit(self, reservation: ReserveResult, size: int) -> None:
        if reservation.cache_id is None:
            raise ValidationError("A cache id is required to commit a cache")
        logger.info(f"Cache Size: ~{round(size / (1024 * 1024))} MB ({size} B)")
        await self.client.commit_cache(reservation.cache_id, size)

    async def download(
        self,
        entry: CacheEntry,
        archive_path: Path,
        options: DownloadOptions,
    ) -> None:
        """Download the archive at the entry's location."""
        if options.concurrent_blob_downloads and is_blob_storage_url(entry.location):
            await self.download_concurrent(entry.location, archive_path, options)
        else:
            await self.download_streamed(entry.location, archive_path)

    async def download_streamed(self, url: str, archive_path: Path) -> int:
        """Single streamed GET, verified against Content-Length."""
        client = await self.client.archive_client()

        async with SharedFile(archive_path, "wb") as archive:

            async def attempt() -> int:
                await archive.reset()
                written = 0
                try:
                    async with client.stream("GET", url) as response:
                        if not is_success_status(response.status_code):
                            raise ServiceError(
                                f"Archive download responded with {response.status_code}",
                                status_code=response.status_code,
                            )
                        expected = response.headers.get("Content-Length")
                        async for data in response.aiter_bytes():
                            await archive.append(data)
                            written += len(data)
                except httpx.TransportError as e:
                    raise TransportError(
                        f"Archive download failed: {e}",
                        context={"url": redact_url(url), "error": type(e).__name__},
                    ) from e

                if expected is not None and int(expected) != written:
                    raise TransportError(
                        f"Incomplete download. Expected file size: {expected}, "
                        f"actual file size: {written}",
                        context={"url": redact_url(url)},
                    )
                return written

            written = await self.retry.execute("downloadCache", attempt)

        logger.debug("Archive downloaded", bytes=written, url=redact_url(url))
        return written

    async def archive_size(self, url: str) -> int:
        """Size of the remote archive from a HEAD request."""
        client = await self.client.archive_client()

        async def attempt() -> int:
            response = await self.client.request("HEAD", url, client=client)
            if not is_success_status(response.status_code):
                raise ServiceError(
                    f"Archive HEAD responded with {response.status_code}",
                    status_code=response.status_code,
                )
            length = response.headers.get("Content-Length")
            if length is None:
                raise InconsistencyError(
                    "Archive response has no Content-Length",
                    context={"url": redact_url(url)},
                )
            return int(length)

        return await self.retry.execute("getArchiveSize", attempt)

    async def download_concurrent(
        self, url: str, archive_path: Path, options: DownloadOptions
    ) -> TransferSummary:
        """Download with concurrent ranged GETs written at their offsets."""
        size = await self.archive_size(url)
        client = await self.client.archive_client()
        pool = self.pool or TransferWorkerPool("downloadCache")

        async with SharedFile(archive_path, "wb") as archive:
            await archive.preallocate(size)

            async def download_range(start: int, end: int) -> None:
                segment = ChunkRange(start=start, end=end)

                async def attempt() -> bytes:
                    response = await self.client.request(
                        "GET", url, client=client, headers={"Range": segment.range_header()}
                    )
                    if response.status_code not in (200, 206):
                        raise ServiceError(
                            f"Archive segment download responded with {response.status_code}",
                            status_code=response.status_code,
                            context={"start": start, "end": end},
                        )
                    data = response.content
                    # Servers may ignore Range and send the whole archive
                    if response.status_code == 200 and len(data) == size:
                        data = data[start : end + 1]
                    if len(data) != segment.size:
                        raise TransportError(
                            "Incomplete segment download",
                            context={
                                "start": start,
                                "end": end,
                                "expected": segment.size,
                                "actual": len(data),
                            },
                        )
                    return data

                data = await self.retry.execute(
                    f"downloadSegment (start: {start}, end: {end})", attempt
                )
                await archive.write_at(start, data)

            summary = await pool.run(
                size,
                options.download_chunk_size or 1,
                options.download_concurrency or 1,
                download_range,
            )

        logger.debug(
            "Archive downloaded concurrently",
            bytes=summary.bytes_transferred,
            segments=summary.chunk_count,
            url=redact_url(url),
        )
        return summary
