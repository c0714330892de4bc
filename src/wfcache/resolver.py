"""
Cache entry resolution over a key listing.

Given an ordered key list (primary key first, then restore keys) and a
listing of stored objects, picks the entry a restore should use:

1. An object whose key equals the primary key wins outright.
2. Otherwise each restore key is tried in order. An exact key match is
   preferred; failing that, the newest object whose key starts with the
   restore key is used. Among equally new objects the first one in listing
   order wins.
3. The first restore key with any match decides; later keys are ignored.
"""

from __future__ import annotations

from typing import AsyncIterator, Callable, Iterable, Sequence

from wfcache.logging import get_logger
from wfcache.types import CacheEntry, ListedObject

logger = get_logger(__name__)


def match_restore_key(restore_key: str, listing: Sequence[ListedObject]) -> ListedObject | None:
    """Best match for a single restore key, or None."""
    for obj in listing:
        if obj.key == restore_key:
            return obj

    prefix_matches = [obj for obj in listing if obj.key.startswith(restore_key)]
    if not prefix_matches:
        return None

    # max() keeps the first of equal maxima, i.e. listing order breaks ties
    return max(prefix_matches, key=lambda obj: obj.last_modified)


def match_keys(keys: Sequence[str], listing: Iterable[ListedObject]) -> ListedObject | None:
    """Apply primary-then-restore-key matching to a complete listing."""
    if not keys:
        return None

    listing = list(listing)
    primary_key = keys[0]

    for obj in listing:
        if obj.key == primary_key:
            return obj

    for restore_key in keys[1:]:
        found = match_restore_key(restore_key, listing)
        if found is not None:
            return found

    return None


class CacheEntryResolver:
    """Turns listings into CacheEntry values.

    ``locate`` maps a matched object key to the entry's location, which is
    backend specific.
    """

    def __init__(self, locate: Callable[[str], str]) -> None:
        self._locate = locate

    def _to_entry(self, obj: ListedObject) -> CacheEntry:
        return CacheEntry(
            key=obj.key,
            location=self._locate(obj.key),
            creation_time=obj.last_modified,
        )

    def resolve(self, keys: Sequence[str], listing: Iterable[ListedObject]) -> CacheEntry | None:
        """Resolve against a fully materialized listing."""
        found = match_keys(keys, listing)
        return self._to_entry(found) if found is not None else None

    async def resolve_paginated(
        self,
        keys: Sequence[str],
        pages: AsyncIterator[Sequence[ListedObject]],
    ) -> CacheEntry | None:
        """Resolve against a paginated listing.

        Pages are consumed lazily. A primary key hit stops consumption at
        once; otherwise every page is drained before restore keys are
        considered. Errors raised while fetching a page propagate.
        """
        if not keys:
            return None

        primary_key = keys[0]
        seen: list[ListedObject] = []
        page_count = 0

        try:
            async for page in pages:
                page_count += 1
                for obj in page:
                    if obj.key == primary_key:
                        logger.debug(
                            "Primary key matched, stopping listing",
                            pages_read=page_count,
                        )
                        return self._to_entry(obj)
                seen.extend(page)
        finally:
            aclose = getattr(pages, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.debug(
            "Primary key not found, falling back to restore keys",
            pages_read=page_count,
            objects=len(seen),
        )
        return self.resolve(keys, seen)
