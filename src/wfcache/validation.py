"""
Input validation for cache keys, paths and archive sizes.
"""

from __future__ import annotations

from typing import Sequence

from wfcache.exceptions import ValidationError

MAX_KEY_LENGTH = 512
MAX_KEY_COUNT = 10
MAX_ARCHIVE_SIZE = 10 * 1024**3


def check_paths(paths: Sequence[str]) -> None:
    """Require at least one path."""
    if not paths:
        raise ValidationError(
            "Path Validation Error: At least one directory or file path is required",
            context={"field": "paths"},
        )


def check_key(key: str) -> None:
    """Validate a single cache key."""
    if not key:
        raise ValidationError(
            "Key Validation Error: Key must not be empty.",
            context={"field": "key"},
        )
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Key Validation Error: {key} cannot be larger than {MAX_KEY_LENGTH} characters.",
            context={"field": "key", "length": len(key)},
        )
    # Keys travel comma-joined in the lookup query string
    if "," in key:
        raise ValidationError(
            f"Key Validation Error: {key} cannot contain commas.",
            context={"field": "key"},
        )


def check_keys(keys: Sequence[str]) -> None:
    """Validate an ordered key list (primary key first)."""
    if not keys:
        raise ValidationError(
            "Key Validation Error: At least one key is required.",
            context={"field": "keys"},
        )
    if len(keys) > MAX_KEY_COUNT:
        raise ValidationError(
            f"Key Validation Error: Keys are limited to a maximum of {MAX_KEY_COUNT}.",
            context={"field": "keys", "count": len(keys)},
        )
    for key in keys:
        check_key(key)


def check_archive_size(size: int, limit: int = MAX_ARCHIVE_SIZE) -> None:
    """Reject empty archives and archives over the service data cap."""
    if size <= 0:
        raise ValidationError(
            "Archive Validation Error: archive is empty.",
            context={"field": "archive_size", "value": size},
        )
    if size > limit:
        raise ValidationError(
            f"Cache size of ~{round(size / (1024 * 1024))} MB ({size} B) is over "
            f"the {limit // 1024**3}GB limit, not saving cache.",
            context={"field": "archive_size", "value": size, "limit": limit},
        )
