"""
Storage backends.

Exactly three backends exist and exactly one is active per call:
- RestBackend: cache REST service (PATCH chunk upload, signed-URL download)
- BlobStoreBackend: blob storage SDK for bytes, REST service for metadata
- ObjectStoreBackend: S3-compatible bucket keyed by the cache key

select_backend_kind() picks one from configuration alone; a failing backend
is never replaced by another mid-call.
"""

from __future__ import annotations

from typing import Union

import httpx

from wfcache.backends.blob import BlobStoreBackend
from wfcache.backends.object_store import ObjectStoreBackend
from wfcache.backends.rest import CacheServiceClient, RestBackend
from wfcache.config import S3Config, Settings
from wfcache.pool import TransferWorkerPool
from wfcache.retry import RetryExecutor
from wfcache.types import BackendKind

CacheBackend = Union[RestBackend, BlobStoreBackend, ObjectStoreBackend]


def select_backend_kind(
    s3_config: S3Config | None = None,
    use_blob_sdk: bool = False,
) -> BackendKind:
    """Pick the backend for a call from the optional configuration supplied."""
    if s3_config is not None:
        return BackendKind.OBJECT_STORE
    if use_blob_sdk:
        return BackendKind.BLOB_STORE
    return BackendKind.REST


def build_backend(
    kind: BackendKind,
    settings: Settings,
    retry: RetryExecutor,
    *,
    s3_config: S3Config | None = None,
    signed_upload_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    s3_client: object | None = None,
    pool: TransferWorkerPool | None = None,
) -> CacheBackend:
    """Instantiate the backend for ``kind``."""
    if kind is BackendKind.OBJECT_STORE:
        if s3_config is None:
            raise ValueError("Object store backend requires an S3Config")
        return ObjectStoreBackend(s3_config, retry, client=s3_client)

    client = CacheServiceClient(settings, retry, transport=transport)
    if kind is BackendKind.BLOB_STORE:
        return BlobStoreBackend(client, signed_upload_url=signed_upload_url)
    return RestBackend(client, pool=pool)


__all__ = [
    "BlobStoreBackend",
    "CacheBackend",
    "CacheServiceClient",
    "ObjectStoreBackend",
    "RestBackend",
    "build_backend",
    "select_backend_kind",
]
