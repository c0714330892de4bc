"""
Bounded worker pool for chunked transfers.

A fixed number of asyncio workers drain one ChunkCursor. Each worker claims
a range, runs the transfer function for it, and repeats. The first failure
closes the cursor so no new ranges are claimed; chunks already in flight
finish, then the first failure is raised.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from wfcache.chunks import ChunkCursor
from wfcache.exceptions import CacheError
from wfcache.logging import get_logger
from wfcache.types import TransferOutcome, TransferSummary, utc_now

logger = get_logger(__name__)

TransferFn = Callable[[int, int], Awaitable[object]]


class TransferWorkerPool:
    """Runs a per-chunk transfer function across a bounded set of workers."""

    def __init__(self, name: str = "transfer") -> None:
        """Initialize the pool.

        Args:
            name: Label used in logs.
        """
        self.name = name

    async def run(
        self,
        total_size: int,
        chunk_size: int,
        concurrency: int,
        transfer_fn: TransferFn,
    ) -> TransferSummary:
        """Transfer ``total_size`` bytes in chunks of at most ``chunk_size``.

        Args:
            total_size: Bytes to transfer.
            chunk_size: Maximum bytes per chunk.
            concurrency: Number of workers.
            transfer_fn: Called with inclusive (start, end) for each chunk.

        Returns:
            TransferSummary with one outcome per transferred chunk.

        Raises:
            Exception: The first chunk failure, after all workers have joined.
        """
        cursor = ChunkCursor(total_size, chunk_size, concurrency)
        summary = TransferSummary(total_size=total_size)
        first_error: list[BaseException] = []

        async def worker(index: int) -> None:
            while True:
                chunk = await cursor.claim()
                if chunk is None:
                    return
                try:
                    await transfer_fn(chunk.start, chunk.end)
                except Exception as e:
                    summary.outcomes.append(
                        TransferOutcome(chunk=chunk, worker=index, success=False, error=e)
                    )
                    if not first_error:
                        first_error.append(e)
                        cursor.close()
                        logger.warning(
                            f"{self.name} chunk failed, stopping dispatch",
                            start=chunk.start,
                            end=chunk.end,
                            worker=index,
                            error=str(e),
                        )
                    return
                summary.outcomes.append(
                    TransferOutcome(chunk=chunk, worker=index, success=True)
                )

        logger.debug(
            f"Starting {self.name}",
            total_size=total_size,
            chunk_size=chunk_size,
            concurrency=concurrency,
        )

        await asyncio.gather(*(worker(i) for i in range(concurrency)))
        summary.finished_at = utc_now()

        if first_error:
            error = first_error[0]
            if isinstance(error, CacheError):
                error.context.setdefault("transfer", self.name)
            raise error

        logger.debug(
            f"Finished {self.name}",
            chunks=summary.chunk_count,
            bytes_transferred=summary.bytes_transferred,
        )
        return summary
