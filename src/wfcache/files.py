"""
Shared access to the local archive file during pooled transfers.

The archive is opened once per call. Workers read (upload) or write
(download) disjoint ranges through a single handle; seek+read/write pairs are
serialized by a lock and run in a worker thread so the event loop never
blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from types import TracebackType
from typing import BinaryIO

from wfcache.exceptions import TransferError


def get_archive_file_size(path: Path | str) -> int:
    """Size of the archive file in bytes."""
    try:
        return os.path.getsize(path)
    except OSError as e:
        raise TransferError(
            f"Unable to read archive file size: {e}",
            context={"path": str(path)},
        ) from e


class SharedFile:
    """One file handle shared by concurrent workers.

    Use as an async context manager; the handle is closed exactly once on
    exit, including when a transfer fails.
    """

    def __init__(self, path: Path | str, mode: str = "rb") -> None:
        if mode not in ("rb", "wb", "r+b"):
            raise ValueError(f"Unsupported mode: {mode}")
        self.path = Path(path)
        self.mode = mode
        self._handle: BinaryIO | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> SharedFile:
        self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def open(self) -> None:
        if self._handle is not None:
            return
        try:
            self._handle = open(self.path, self.mode)
        except OSError as e:
            raise TransferError(
                f"Unable to open archive file: {e}",
                context={"path": str(self.path), "mode": self.mode},
            ) from e

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _require_handle(self) -> BinaryIO:
        if self._handle is None:
            raise TransferError("Archive file is not open", context={"path": str(self.path)})
        return self._handle

    async def preallocate(self, size: int) -> None:
        """Size the file up front so segments can land at any offset."""
        handle = self._require_handle()
        async with self._lock:
            await asyncio.to_thread(handle.truncate, size)

    async def read_range(self, start: int, end: int) -> bytes:
        """Read the inclusive byte range [start, end]."""
        handle = self._require_handle()
        size = end - start + 1

        def _read() -> bytes:
            handle.seek(start)
            return handle.read(size)

        async with self._lock:
            try:
                data = await asyncio.to_thread(_read)
            except OSError as e:
                raise TransferError(
                    f"Cache upload failed because file read failed with {e}",
                    context={"path": str(self.path), "start": start, "end": end},
                ) from e

        if len(data) != size:
            raise TransferError(
                "Archive file shrank during upload",
                context={"path": str(self.path), "expected": size, "actual": len(data)},
            )
        return data

    async def write_at(self, offset: int, data: bytes) -> None:
        """Write ``data`` at ``offset``."""
        handle = self._require_handle()

        def _write() -> None:
            handle.seek(offset)
            handle.write(data)

        async with self._lock:
            try:
                await asyncio.to_thread(_write)
            except OSError as e:
                raise TransferError(
                    f"Cache download failed because file write failed with {e}",
                    context={"path": str(self.path), "offset": offset},
                ) from e

    async def append(self, data: bytes) -> None:
        """Write ``data`` at the current position (streamed downloads)."""
        handle = self._require_handle()
        async with self._lock:
            try:
                await asyncio.to_thread(handle.write, data)
            except OSError as e:
                raise TransferError(
                    f"Cache download failed because file write failed with {e}",
                    context={"path": str(self.path)},
                ) from e

    async def reset(self) -> None:
        """Truncate to empty and rewind (before a retried streamed download)."""
        handle = self._require_handle()

        def _reset() -> None:
            handle.seek(0)
            handle.truncate(0)

        async with self._lock:
            await asyncio.to_thread(_reset)
