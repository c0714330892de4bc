"""
Core types for the cache transfer engine.

This module defines the data structures shared across backends:
- Enums for backend kinds, session states and compression methods
- Frozen dataclasses for immutable records (CacheEntry, ChunkRange, ListedObject)
- Transfer bookkeeping (TransferOutcome, TransferSummary)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class BackendKind(str, Enum):
    """Storage backends a session can talk to. Exactly one is active per call."""

    REST = "rest"
    BLOB_STORE = "blob_store"
    OBJECT_STORE = "object_store"


class CompressionMethod(str, Enum):
    """Archive compression methods that feed into the cache version."""

    GZIP = "gzip"
    ZSTD_WITHOUT_LONG = "zstd-without-long"
    ZSTD = "zstd"


class SessionState(str, Enum):
    """States a CacheSession moves through during restore and save."""

    IDLE = "idle"
    RESOLVING = "resolving"
    FOUND = "found"
    NOT_FOUND = "not_found"
    DOWNLOADING = "downloading"
    RESERVING = "reserving"
    RESERVED = "reserved"
    CONFLICT = "conflict"
    UPLOADING = "uploading"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class CacheEntry:
    """A resolved cache entry.

    The location is resolved once and never re-resolved; for the object store
    it is an ``s3://bucket/key`` locator, for the cache service a signed URL.
    """

    key: str
    location: str
    creation_time: datetime | None = None
    version: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class ReserveResult:
    """Outcome of reserving a write slot.

    cache_id is None on the object store path, which has no server-side ids.
    """

    success: bool
    cache_id: int | None = None


@dataclass(frozen=True)
class ChunkRange:
    """Inclusive byte range [start, end] of an archive file."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def content_range(self) -> str:
        """Content-Range header value; the total size is left as ``*``."""
        return f"bytes {self.start}-{self.end}/*"

    def range_header(self) -> str:
        """Range header value for a ranged GET."""
        return f"bytes={self.start}-{self.end}"


@dataclass(frozen=True)
class ListedObject:
    """One object from a backend listing, as seen by the resolver."""

    key: str
    last_modified: datetime


@dataclass(frozen=True)
class TransferOutcome:
    """Per-chunk result recorded by the worker pool."""

    chunk: ChunkRange
    worker: int
    success: bool
    error: BaseException | None = None


@dataclass
class TransferSummary:
    """Aggregate result of a pooled transfer."""

    total_size: int
    outcomes: list[TransferOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def bytes_transferred(self) -> int:
        return sum(o.chunk.size for o in self.outcomes if o.success)

    @property
    def chunk_count(self) -> int:
        return len(self.outcomes)

    @property
    def success(self) -> bool:
        return all(o.success for o in self.outcomes) and (
            self.bytes_transferred == self.total_size
        )
