"""
Cache-first read paths over the relay fan-out.

Every read checks its cache region first and goes to the relays only on a
miss. Interactive calls and the background warmer share these paths, so a
warming pass leaves behind exactly the entries a request would look for.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .assembler import ContentAssembler, DocumentNode
from .cache import COMMENTS, LISTS, PROFILES, RECORDS, TREES, ContentCache, cache_key, source_key
from .fanout import FanOutQueryEngine, NoSourceReachable, QueryResult, RecordNotFound
from .records import (
    KIND_ARTICLE,
    KIND_COMMENT,
    KIND_HIGHLIGHT,
    KIND_INDEX,
    KIND_PROFILE,
    KIND_SECTION,
    AddressReference,
    Coordinate,
    Record,
    Reference,
    references_of,
)

logger = logging.getLogger(__name__)

LIST_DOCUMENTS = "documents"
LIST_ARTICLES = "articles"
LIST_HIGHLIGHTS = "highlights"

DOCUMENT_LIST_LIMIT = int(os.getenv("CATALOGUE_LIST_LIMIT", "10000"))
ARTICLE_LIST_LIMIT = 500
HIGHLIGHT_LIST_LIMIT = 500
COMMENT_POOL_LIMIT = 500
PROFILE_TIMEOUT_SECONDS = 3.0

_LIST_KINDS = {
    LIST_DOCUMENTS: KIND_INDEX,
    LIST_ARTICLES: KIND_ARTICLE,
    LIST_HIGHLIGHTS: KIND_HIGHLIGHT,
}
_LIST_CAPS = {
    LIST_DOCUMENTS: DOCUMENT_LIST_LIMIT,
    LIST_ARTICLES: ARTICLE_LIST_LIMIT,
    LIST_HIGHLIGHTS: HIGHLIGHT_LIST_LIMIT,
}


@dataclass
class SourceHealth:
    """Health state for relay reads."""

    degraded: bool = False
    reason: str | None = None
    failure_count: int = 0
    last_error: str | None = None
    last_error_at: float | None = None
    last_success_at: float | None = None


def list_timeout(limit: int) -> float:
    """Bigger lists get longer to arrive: 15s floor, 120s ceiling."""
    return min(max(15.0, limit / 100), 120.0)


def should_display_highlight(record: Record) -> bool:
    """Keep highlights quoting a URL, an article/section coordinate, or an event id."""
    if record.tag_value("r"):
        return True
    address = record.tag_value("a")
    if address:
        try:
            kind = Coordinate.parse(address).kind
        except ValueError:
            return False
        return kind in (KIND_ARTICLE, KIND_SECTION)
    return bool(record.tag_value("e"))


def comment_filter(reference: Reference) -> dict[str, Any]:
    if isinstance(reference, AddressReference):
        return {"kinds": [KIND_COMMENT], "#A": [str(reference.coordinate)], "limit": COMMENT_POOL_LIMIT}
    return {"kinds": [KIND_COMMENT], "#E": [reference.event_id], "limit": COMMENT_POOL_LIMIT}


class ContentReader:
    """
    Cache-first access to lists, documents, comment pools and profiles.

    Tracks relay health: a query that no source answers marks the reader
    degraded, and the next answered query heals it.
    """

    def __init__(
        self,
        engine: FanOutQueryEngine,
        cache: ContentCache | None = None,
        assembler: ContentAssembler | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._cache = cache or ContentCache(clock=clock)
        self._assembler = assembler or ContentAssembler(engine)
        self._clock = clock
        self._health = SourceHealth()

    @property
    def engine(self) -> FanOutQueryEngine:
        return self._engine

    @property
    def cache(self) -> ContentCache:
        return self._cache

    def _set_degraded(self, reason: str) -> None:
        self._health.degraded = True
        self._health.reason = reason
        self._health.failure_count += 1
        self._health.last_error = reason
        self._health.last_error_at = self._clock()

    def _set_healthy(self) -> None:
        self._health.degraded = False
        self._health.reason = None
        self._health.failure_count = 0
        self._health.last_success_at = self._clock()

    def is_degraded(self) -> bool:
        return self._health.degraded

    def get_health(self) -> dict[str, Any]:
        return {
            "degraded": self._health.degraded,
            "reason": self._health.reason,
            "failureCount": self._health.failure_count,
            "lastError": self._health.last_error,
            "lastErrorAt": self._health.last_error_at,
            "lastSuccessAt": self._health.last_success_at,
            "defaultSources": self._engine.default_sources,
        }

    async def _query(
        self,
        filters: list[dict[str, Any]],
        sources: list[str] | None,
        timeout: float | None = None,
    ) -> QueryResult:
        try:
            result = await self._engine.query(filters, sources, timeout)
        except NoSourceReachable as exc:
            self._set_degraded(str(exc))
            raise
        self._set_healthy()
        return result

    @staticmethod
    def list_limit(name: str, limit: int | None = None) -> int:
        cap = _LIST_CAPS[name]
        return min(limit, cap) if limit else cap

    def list_key(self, name: str, limit: int | None, sources: list[str] | None) -> str:
        return cache_key(name, self.list_limit(name, limit), source_key(sources))

    @staticmethod
    def record_key(reference: Reference, sources: list[str] | None) -> str:
        return cache_key(reference, source_key(sources))

    @staticmethod
    def tree_key(root: Record, sources: list[str] | None) -> str:
        return cache_key(root.reference, root.id, source_key(sources))

    @staticmethod
    def comments_key(reference: Reference, sources: list[str] | None) -> str:
        return cache_key("comments", reference, source_key(sources))

    @staticmethod
    def profile_key(pubkey: str, sources: list[str] | None) -> str:
        return cache_key(pubkey.lower(), source_key(sources))

    def cached_list(
        self, name: str, limit: int | None = None, sources: list[str] | None = None
    ) -> tuple[Record, ...] | None:
        return self._cache.region(LISTS).get(self.list_key(name, limit, sources))

    def stale_list(
        self, name: str, limit: int | None = None, sources: list[str] | None = None
    ) -> tuple[Record, ...] | None:
        return self._cache.region(LISTS).get_stale(self.list_key(name, limit, sources))

    async def fetch_list(
        self, name: str, limit: int | None = None, sources: list[str] | None = None
    ) -> tuple[Record, ...]:
        region = self._cache.region(LISTS)
        key = self.list_key(name, limit, sources)
        cached = region.get(key)
        if cached is not None:
            logger.debug("Using cached %s list (%d records)", name, len(cached))
            return cached

        fetch_limit = self.list_limit(name, limit)
        result = await self._query(
            [{"kinds": [_LIST_KINDS[name]], "limit": fetch_limit}],
            sources,
            list_timeout(fetch_limit),
        )
        records = result.records
        if name == LIST_HIGHLIGHTS:
            records = tuple(record for record in records if should_display_highlight(record))

        region.set(key, records)
        logger.info("Fetched %s list: %d records", name, len(records))
        return records

    async def fetch_documents(
        self, limit: int | None = None, sources: list[str] | None = None
    ) -> tuple[Record, ...]:
        return await self.fetch_list(LIST_DOCUMENTS, limit, sources)

    async def fetch_articles(
        self, limit: int | None = None, sources: list[str] | None = None
    ) -> tuple[Record, ...]:
        return await self.fetch_list(LIST_ARTICLES, limit, sources)

    async def fetch_highlights(
        self, limit: int | None = None, sources: list[str] | None = None
    ) -> tuple[Record, ...]:
        return await self.fetch_list(LIST_HIGHLIGHTS, limit, sources)

    async def fetch_root(self, reference: Reference, sources: list[str] | None = None) -> Record:
        region = self._cache.region(RECORDS)
        key = self.record_key(reference, sources)
        cached = region.get(key)
        if cached is not None:
            logger.debug("Using cached record for %s", reference)
            return cached

        result = await self._query([reference.to_filter()], sources)
        record = next((item for item in result.records if reference.matches(item)), None)
        if record is None:
            raise RecordNotFound(f"{reference} not found on any source")
        region.set(key, record)
        return record

    def remember_root(self, record: Record, sources: list[str] | None = None) -> None:
        """Seed the records region with a record already fetched as part of a list."""
        self._cache.region(RECORDS).set(self.record_key(record.reference, sources), record)

    def stale_root(self, reference: Reference, sources: list[str] | None = None) -> Record | None:
        return self._cache.region(RECORDS).get_stale(self.record_key(reference, sources))

    def find_in_lists(self, reference: Reference) -> Record | None:
        """Search every cached list, newest entry first, for a matching record."""
        for entry in reversed(self._cache.region(LISTS).entries()):
            for record in entry.value:
                if reference.matches(record):
                    return record
        return None

    async def fetch_tree(
        self, root: Record, sources: list[str] | None = None
    ) -> tuple[DocumentNode, ...]:
        region = self._cache.region(TREES)
        key = self.tree_key(root, sources)
        cached = region.get(key)
        if cached is not None:
            logger.debug("Using cached tree for %s", root.identifier)
            return cached

        tree = await self._assembler.assemble(root, set(), sources)
        if not tree and references_of(root):
            # An index that resolves to nothing is an outage, not a document.
            logger.warning("Assembly of %s resolved nothing; not caching", root.identifier)
            return tree
        region.set(key, tree)
        return tree

    def stale_tree(
        self, root: Record, sources: list[str] | None = None
    ) -> tuple[DocumentNode, ...] | None:
        return self._cache.region(TREES).get_stale(self.tree_key(root, sources))

    def cached_comment_pool(
        self, reference: Reference, sources: list[str] | None = None
    ) -> tuple[Record, ...] | None:
        return self._cache.region(COMMENTS).get(self.comments_key(reference, sources))

    def stale_comment_pool(
        self, reference: Reference, sources: list[str] | None = None
    ) -> tuple[Record, ...] | None:
        return self._cache.region(COMMENTS).get_stale(self.comments_key(reference, sources))

    async def fetch_comment_pool(
        self, reference: Reference, sources: list[str] | None = None
    ) -> tuple[Record, ...]:
        region = self._cache.region(COMMENTS)
        key = self.comments_key(reference, sources)
        cached = region.get(key)
        if cached is not None:
            return cached

        result = await self._query([comment_filter(reference)], sources)
        pool = tuple(record for record in result.records if record.kind == KIND_COMMENT)
        region.set(key, pool)
        logger.info("Fetched %d comments for %s", len(pool), reference)
        return pool

    async def fetch_profile_name(
        self, pubkey: str, sources: list[str] | None = None
    ) -> str | None:
        """Display name from the author's kind-0 profile; empty results are cached too."""
        region = self._cache.region(PROFILES)
        key = self.profile_key(pubkey, sources)
        cached = region.get(key)
        if cached is not None:
            return cached or None

        result = await self._query(
            [{"kinds": [KIND_PROFILE], "authors": [pubkey.lower()], "limit": 1}],
            sources,
            PROFILE_TIMEOUT_SECONDS,
        )
        name = ""
        profile = result.first()
        if profile is not None:
            try:
                metadata = json.loads(profile.content)
            except ValueError:
                logger.debug("Unparseable profile metadata for %s", pubkey)
                metadata = {}
            if isinstance(metadata, dict):
                name = str(
                    metadata.get("name") or metadata.get("display_name") or metadata.get("nip05") or ""
                )
        region.set(key, name)
        return name or None

    def stale_profile_name(self, pubkey: str, sources: list[str] | None = None) -> str | None:
        cached = self._cache.region(PROFILES).get_stale(self.profile_key(pubkey, sources))
        return cached or None

    def clear_cache(self) -> None:
        self._cache.clear_all()

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()
