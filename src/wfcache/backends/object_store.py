"""
S3-compatible object store backend.

Objects are stored under the cache key itself, so there is no reserve or
commit round trip: the multipart upload completing is the commit. Lookup
lists the bucket page by page and resolves keys locally.

boto3 is synchronous; every call runs in a worker thread and inside the
retry executor.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Sequence, TypeVar

import boto3
from boto3.exceptions import Boto3Error, RetriesExceededError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from wfcache.config import S3Config
from wfcache.exceptions import ServiceError, TransferError, TransportError, ValidationError
from wfcache.files import get_archive_file_size
from wfcache.logging import get_logger
from wfcache.options import DownloadOptions, UploadOptions
from wfcache.resolver import CacheEntryResolver
from wfcache.retry import RetryExecutor
from wfcache.types import BackendKind, CacheEntry, ListedObject, ReserveResult

logger = get_logger(__name__)

T = TypeVar("T")


def parse_s3_url(s3_url: str) -> tuple[str, str]:
    """Parse s3://bucket/key into (bucket, key).

    Raises:
        ValidationError: If the URL is not an s3:// URL with bucket and key.
    """
    if not s3_url.startswith("s3://"):
        raise ValidationError(f"Invalid S3 URL format: {s3_url}")
    parts = s3_url[5:].split("/", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValidationError(f"Invalid S3 URL format: {s3_url}")
    return parts[0], parts[1]


def _underlying_error(error: Boto3Error) -> BaseException | None:
    """The botocore error a boto3 transfer error wraps, if any.

    RetriesExceededError keeps it as ``last_exception``; S3UploadFailedError is
    raised while handling the ClientError, so it is the implicit context.
    """
    if isinstance(error, RetriesExceededError) and error.last_exception is not None:
        return error.last_exception
    return error.__cause__ or error.__context__


def map_boto_error(error: Exception, action: str) -> Exception:
    """Translate a botocore or boto3 error into the cache error taxonomy.

    boto3's managed transfers wrap the failing botocore error; the wrapped
    error decides the mapping so throttling stays retryable.
    """
    if isinstance(error, Boto3Error):
        cause = _underlying_error(error)
        if isinstance(cause, (ClientError, BotoCoreError)):
            return map_boto_error(cause, action)
        if isinstance(error, RetriesExceededError) or cause is not None:
            return TransportError(
                f"Error from S3 during {action}: {error}",
                context={"error": type(cause or error).__name__},
            )
        return TransferError(
            f"Error from S3 during {action}: {error}",
            context={"error": type(error).__name__},
        )
    if isinstance(error, ClientError):
        metadata = error.response.get("ResponseMetadata", {})
        status_code = metadata.get("HTTPStatusCode")
        code = error.response.get("Error", {}).get("Code")
        return ServiceError(
            f"Error from S3 during {action}: {error}",
            status_code=status_code,
            context={"code": code},
        )
    if isinstance(error, BotoCoreError):
        return TransportError(
            f"Error from S3 during {action}: {error}",
            context={"error": type(error).__name__},
        )
    return error


class ObjectStoreBackend:
    """Backend storing archives as objects in an S3-compatible bucket."""

    kind = BackendKind.OBJECT_STORE

    def __init__(
        self,
        config: S3Config,
        retry: RetryExecutor,
        client: Any | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            config: Bucket and connection details.
            retry: Executor wrapping every outbound call.
            client: Pre-built boto3 S3 client (used by tests).
        """
        self.config = config
        self.bucket = config.bucket
        self.retry = retry
        self._client = client or boto3.client(
            "s3",
            region_name=config.region,
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
        )
        self.resolver = CacheEntryResolver(self.location_for)

    def location_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    async def close(self) -> None:
        # boto3 clients hold no resources that need explicit release
        return None

    async def _call(self, name: str, fn: Callable[[], T]) -> T:
        """Run a blocking boto3 call in a thread under the retry executor."""

        async def attempt() -> T:
            try:
                return await asyncio.to_thread(fn)
            except (ClientError, BotoCoreError, Boto3Error) as e:
                raise map_boto_error(e, name) from e

        return await self.retry.execute(name, attempt)

    async def iter_pages(self) -> AsyncIterator[list[ListedObject]]:
        """Lazily list the bucket, one page per iteration.

        Stops when the store reports no more pages. Consumers may stop early;
        no further pages are requested once iteration ends.
        """
        token: str | None = None
        page_number = 0

        while True:
            params: dict[str, Any] = {"Bucket": self.bucket}
            if token is not None:
                params["ContinuationToken"] = token

            logger.debug("ListObjects", page=page_number)
            response = await self._call(
                "listObjects",
                lambda params=params: self._client.list_objects_v2(**params),
            )

            page = [
                ListedObject(key=obj["Key"], last_modified=obj["LastModified"])
                for obj in response.get("Contents") or []
                if obj.get("Key") and obj.get("LastModified")
            ]
            logger.debug("Found objects", count=len(page))
            yield page

            if not response.get("IsTruncated"):
                return
            token = response.get("NextContinuationToken")
            if not token:
                return
            page_number += 1

    async def lookup(self, keys: Sequence[str], version: str) -> CacheEntry | None:
        """Resolve keys against the bucket listing.

        The version is not part of object names, so it does not narrow the
        search here.
        """
        entry = await self.resolver.resolve_paginated(keys, self.iter_pages())
        if entry is None:
            logger.debug("No matching object in bucket", bucket=self.bucket)
        return entry

    async def reserve(
        self, key: str, version: str, cache_size: int | None = None
    ) -> ReserveResult:
        # Identity is the object key; there is nothing to reserve
        return ReserveResult(success=True, cache_id=None)

    async def upload(
        self,
        reservation: ReserveResult,
        archive_path: Path,
        key: str,
        options: UploadOptions,
    ) -> None:
        """Multipart upload of the archive under the cache key."""
        chunk_size = options.upload_chunk_size or 8 * 1024 * 1024
        transfer_config = TransferConfig(
            multipart_threshold=chunk_size,
            multipart_chunksize=chunk_size,
            max_concurrency=options.upload_concurrency or 1,
        )
        file_size = get_archive_file_size(archive_path)

        logger.debug(
            "Start upload to S3",
            bucket=self.bucket,
            size=file_size,
            part_size=chunk_size,
            concurrency=options.upload_concurrency,
        )
        try:
            await self._call(
                "uploadFile",
                lambda: self._client.upload_file(
                    str(archive_path), self.bucket, key, Config=transfer_config
                ),
            )
        except (ServiceError, TransportError) as e:
            raise TransferError(
                f"Cache upload failed because {e.message}",
                context={**e.context, "bucket": self.bucket, "key": key},
            ) from e

    async def commit(self, reservation: ReserveResult, size: int) -> None:
        # Completing the multipart upload already made the object visible
        return None

    async def download(
        self,
        entry: CacheEntry,
        archive_path: Path,
        options: DownloadOptions,
    ) -> None:
        """GET the object stored under the entry's key."""
        bucket, key = self.bucket, entry.key
        if entry.location.startswith("s3://"):
            bucket, key = parse_s3_url(entry.location)

        transfer_config = TransferConfig(
            max_concurrency=options.download_concurrency or 1,
        )
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        await self._call(
            "downloadFile",
            lambda: self._client.download_file(
                bucket, key, str(archive_path), Config=transfer_config
            ),
        )
        logger.debug("Archive downloaded from S3", bucket=bucket)
