"""
Chunk planning and the shared range cursor.

plan_chunks() lazily partitions [0, file_size) into contiguous inclusive
ranges. ChunkCursor hands those ranges out one at a time to concurrent
workers, so a slow chunk never holds up ranges another worker could take.
"""

from __future__ import annotations

import asyncio
from typing import Iterator

from wfcache.types import ChunkRange


def plan_chunks(file_size: int, chunk_size: int, concurrency: int = 1) -> Iterator[ChunkRange]:
    """Lazily plan ascending, disjoint, contiguous ranges covering [0, file_size).

    The final range is clipped to ``file_size - 1``. Concurrency does not
    change the partition; arguments are validated eagerly so a bad pool
    configuration fails before any range is handed out.

    Args:
        file_size: Total bytes in the file.
        chunk_size: Maximum bytes per range.
        concurrency: Number of workers that will consume the ranges.

    Returns:
        Iterator of ChunkRange values in ascending order.
    """
    if file_size < 0:
        raise ValueError(f"file_size must be >= 0, got {file_size}")
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    return _iter_ranges(file_size, chunk_size)


def _iter_ranges(file_size: int, chunk_size: int) -> Iterator[ChunkRange]:
    offset = 0
    while offset < file_size:
        end = min(offset + chunk_size, file_size) - 1
        yield ChunkRange(start=offset, end=end)
        offset = end + 1


class ChunkCursor:
    """Single shared cursor over a chunk plan.

    Claims are serialized by a lock, so each range is handed to exactly one
    worker. Once closed, no further ranges are handed out.
    """

    def __init__(self, file_size: int, chunk_size: int, concurrency: int = 1) -> None:
        self._plan = plan_chunks(file_size, chunk_size, concurrency)
        self._lock = asyncio.Lock()
        self._closed = False
        self.claimed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop handing out ranges."""
        self._closed = True

    async def claim(self) -> ChunkRange | None:
        """Claim the next unclaimed range, or None when exhausted or closed."""
        async with self._lock:
            if self._closed:
                return None
            chunk = next(self._plan, None)
            if chunk is None:
                self._closed = True
                return None
            self.claimed += 1
            return chunk
