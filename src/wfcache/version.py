"""
Cache version fingerprint.

The version binds an entry to the path set and archive format it was built
from; two lookups with the same keys but different versions never match.
"""

from __future__ import annotations

import hashlib
import sys
from typing import Sequence

from wfcache.types import CompressionMethod

VERSION_SALT = "1.0"


def get_cache_version(
    paths: Sequence[str],
    compression_method: CompressionMethod | str | None = None,
    enable_cross_os_archive: bool = False,
    platform: str = sys.platform,
) -> str:
    """Compute the hex SHA-256 version for a path list and archive format.

    Args:
        paths: Cached paths, in caller order.
        compression_method: Compression used for the archive, if any.
        enable_cross_os_archive: Allow Windows runners to use archives
            created on other platforms.
        platform: Platform string, defaults to the running interpreter's.

    Returns:
        Lowercase hex digest.
    """
    components = list(paths)

    if compression_method:
        components.append(CompressionMethod(compression_method).value)

    if platform == "win32" and not enable_cross_os_archive:
        components.append("windows-only")

    components.append(VERSION_SALT)

    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()
