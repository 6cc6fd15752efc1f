"""
Named, bounded, TTL-checked in-memory cache regions.

Each region is an insertion-ordered map. Reads are validated against the
region TTL but never delete; stale entries stay readable through
`get_stale` until they are overwritten or evicted. When a region grows past
its cap the oldest-inserted entry goes, regardless of how recently it was
read.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

LISTS = "lists"
RECORDS = "records"
TREES = "trees"
COMMENTS = "comments"
PROFILES = "profiles"

LIST_TTL_SECONDS = int(os.getenv("CATALOGUE_LIST_TTL_SECONDS", "300"))  # 5 minutes
RECORD_TTL_SECONDS = int(os.getenv("CATALOGUE_RECORD_TTL_SECONDS", "600"))
TREE_TTL_SECONDS = int(os.getenv("CATALOGUE_TREE_TTL_SECONDS", "600"))
COMMENT_TTL_SECONDS = int(os.getenv("CATALOGUE_COMMENT_TTL_SECONDS", "120"))
PROFILE_TTL_SECONDS = int(os.getenv("CATALOGUE_PROFILE_TTL_SECONDS", "3600"))

LIST_MAX_ENTRIES = 50
DEFAULT_MAX_ENTRIES = 100


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    stored_at: float


def cache_key(*parts: Any) -> str:
    return "|".join(str(part) for part in parts)


def source_key(sources: list[str] | None) -> str:
    if not sources:
        return "default"
    return ",".join(sorted(set(sources)))


def _json_default(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "to_event"):
        return value.to_event()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def estimate_size(value: Any) -> int:
    """Rough byte size: UTF-8 length of the JSON encoding."""
    if value is None:
        return 0
    try:
        return len(json.dumps(value, default=_json_default).encode("utf-8"))
    except (TypeError, ValueError):
        return len(str(value)) * 2


class CacheRegion:
    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> Any | None:
        """Return the value if present and within TTL, else None."""
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.stored_at > self.ttl_seconds:
            return None
        return entry.value

    def get_stale(self, key: str) -> Any | None:
        """Return the value regardless of age (degraded reads)."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock())
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted %s from cache region %s", evicted, self.name)

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def keys(self) -> list[str]:
        return list(self._entries.keys())

    def size(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def estimate_bytes(self) -> int:
        return sum(
            estimate_size(entry.key) + estimate_size(entry.value)
            for entry in self._entries.values()
        )

    def stats(self) -> dict[str, Any]:
        return {
            "entries": self.size(),
            "bytes": self.estimate_bytes(),
            "ttlSeconds": self.ttl_seconds,
            "maxEntries": self.max_entries,
        }


def default_regions(clock: Callable[[], float] = time.time) -> list[CacheRegion]:
    return [
        CacheRegion(LISTS, LIST_TTL_SECONDS, LIST_MAX_ENTRIES, clock),
        CacheRegion(RECORDS, RECORD_TTL_SECONDS, DEFAULT_MAX_ENTRIES, clock),
        CacheRegion(TREES, TREE_TTL_SECONDS, DEFAULT_MAX_ENTRIES, clock),
        CacheRegion(COMMENTS, COMMENT_TTL_SECONDS, DEFAULT_MAX_ENTRIES, clock),
        CacheRegion(PROFILES, PROFILE_TTL_SECONDS, DEFAULT_MAX_ENTRIES, clock),
    ]


class ContentCache:
    """The process-wide set of cache regions."""

    def __init__(
        self,
        regions: Iterable[CacheRegion] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._regions = {
            region.name: region
            for region in (default_regions(clock) if regions is None else regions)
        }

    def region(self, name: str) -> CacheRegion:
        return self._regions[name]

    @property
    def names(self) -> list[str]:
        return list(self._regions)

    def clear_all(self) -> None:
        for region in self._regions.values():
            region.clear()
        logger.info("Cleared all cache regions")

    def stats(self) -> dict[str, Any]:
        regions = {name: region.stats() for name, region in self._regions.items()}
        return {
            "regions": regions,
            "totalEntries": sum(item["entries"] for item in regions.values()),
            "totalBytes": sum(item["bytes"] for item in regions.values()),
        }
