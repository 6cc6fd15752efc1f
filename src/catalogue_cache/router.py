"""
Boundary operations with the stale-data fallback policy.

Live relay data is preferred. When no relay answers, or the root record
cannot be found, the router falls back to whatever the cache still holds
and marks the result stale. Only when nothing live or cached exists does
the original error reach the caller.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .assembler import DocumentNode, collect_records, filter_top_level, flatten
from .fanout import NoSourceReachable, RecordNotFound
from .reader import LIST_ARTICLES, LIST_DOCUMENTS, LIST_HIGHLIGHTS, ContentReader
from .addresses import parse_address, parse_pubkey
from .records import Record, Reference, references_of
from .search import search_records
from .threads import CommentNode, build_threads
from .warmer import BackgroundWarmer

logger = logging.getLogger(__name__)

IDLE_WARM_THRESHOLD_SECONDS = int(os.getenv("CATALOGUE_IDLE_WARM_SECONDS", "60"))


@dataclass(frozen=True)
class DocumentView:
    root: Record
    tree: tuple[DocumentNode, ...]
    content: tuple[Record, ...]
    stale: bool = False


@dataclass(frozen=True)
class CommentsView:
    threads: tuple[CommentNode, ...]
    stale: bool = False

    @property
    def total(self) -> int:
        return sum(node.count() for node in self.threads)


@dataclass(frozen=True)
class ListView:
    records: tuple[Record, ...]
    stale: bool = False


class ContentRouter:
    """Serves documents, comments and lists, falling back to cached data."""

    def __init__(
        self,
        reader: ContentReader,
        warmer: BackgroundWarmer | None = None,
        idle_warm_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._reader = reader
        self._warmer = warmer or BackgroundWarmer(reader, clock=clock)
        self._idle_warm_seconds = (
            IDLE_WARM_THRESHOLD_SECONDS if idle_warm_seconds is None else idle_warm_seconds
        )
        self._last_call_at = 0.0
        self._clock = clock

    @property
    def warmer(self) -> BackgroundWarmer:
        return self._warmer

    def _touch(self) -> None:
        """Schedule a background warm when the gap since the last call exceeds the idle threshold."""
        now = self._clock()
        last = self._last_call_at
        self._last_call_at = now
        if last == 0.0:
            return  # first call; startup already scheduled a warm
        if now - last >= self._idle_warm_seconds:
            logger.info(
                "Idle gap %.1fs >= %ds, scheduling cache warm",
                now - last,
                self._idle_warm_seconds,
            )
            self._warmer.schedule()

    async def _resolve_root(
        self, reference: Reference, sources: list[str] | None
    ) -> tuple[Record, bool]:
        try:
            return await self._reader.fetch_root(reference, sources), False
        except (NoSourceReachable, RecordNotFound) as exc:
            fallback = self._reader.stale_root(reference, sources) or self._reader.find_in_lists(reference)
            if fallback is None:
                raise
            logger.warning("Serving cached record for %s (%s): %s", reference, exc.code, exc.message)
            return fallback, True

    async def get_document(self, address: str, sources: list[str] | None = None) -> DocumentView:
        self._touch()
        reference = parse_address(address)
        root, stale = await self._resolve_root(reference, sources)

        tree = await self._reader.fetch_tree(root, sources)
        if not tree and references_of(root):
            cached_tree = self._reader.stale_tree(root, sources)
            if cached_tree:
                logger.warning("Serving cached tree for %s", reference)
                tree = cached_tree
                stale = True

        return DocumentView(root=root, tree=tree, content=flatten(tree), stale=stale)

    async def export_document(self, address: str, sources: list[str] | None = None) -> ListView:
        """Every record the document is made of: the root first, then the tree in pre-order."""
        view = await self.get_document(address, sources)
        return ListView(collect_records(view.root, view.tree), view.stale)

    async def get_comments(self, address: str, sources: list[str] | None = None) -> CommentsView:
        self._touch()
        reference = parse_address(address)
        try:
            pool = await self._reader.fetch_comment_pool(reference, sources)
        except NoSourceReachable:
            cached = self._reader.stale_comment_pool(reference, sources)
            if cached is None:
                raise
            logger.warning("Serving cached comments for %s", reference)
            return CommentsView(build_threads(cached), stale=True)
        return CommentsView(build_threads(pool))

    async def _list(self, name: str, limit: int | None, sources: list[str] | None) -> ListView:
        self._touch()
        try:
            return ListView(await self._reader.fetch_list(name, limit, sources))
        except NoSourceReachable:
            cached = self._reader.stale_list(name, limit, sources)
            if cached is None:
                raise
            logger.warning("Serving cached %s list", name)
            return ListView(cached, stale=True)

    async def list_documents(
        self, limit: int | None = None, sources: list[str] | None = None
    ) -> ListView:
        """Top-level publication indexes, newest first."""
        view = await self._list(LIST_DOCUMENTS, limit, sources)
        return ListView(tuple(filter_top_level(view.records)), view.stale)

    async def search_documents(
        self, query: str, limit: int | None = None, sources: list[str] | None = None
    ) -> ListView:
        """Every publication index matching `query`, nested ones included, newest first."""
        if not query.strip():
            raise ValueError("empty search query")
        view = await self._list(LIST_DOCUMENTS, limit, sources)
        matches = search_records(view.records, query)
        logger.info("Search %r matched %d of %d documents", query, len(matches), len(view.records))
        return ListView(matches, view.stale)

    async def list_articles(
        self, limit: int | None = None, sources: list[str] | None = None
    ) -> ListView:
        return await self._list(LIST_ARTICLES, limit, sources)

    async def list_highlights(
        self, limit: int | None = None, sources: list[str] | None = None
    ) -> ListView:
        return await self._list(LIST_HIGHLIGHTS, limit, sources)

    async def get_profile_name(
        self, pubkey: str, sources: list[str] | None = None
    ) -> tuple[str | None, bool]:
        self._touch()
        pubkey = parse_pubkey(pubkey)
        try:
            return await self._reader.fetch_profile_name(pubkey, sources), False
        except NoSourceReachable:
            cached = self._reader.stale_profile_name(pubkey, sources)
            if cached is None:
                raise
            return cached, True

    async def check_sources(self, sources: list[str] | None = None) -> list[dict[str, Any]]:
        return await self._reader.engine.probe_all(sources)

    async def warm_all(self, sources: list[str] | None = None) -> dict[str, str]:
        return await self._warmer.warm_all(sources)

    def clear_all_caches(self) -> dict[str, Any]:
        self._reader.clear_cache()
        return self._reader.cache_stats()

    def cache_stats(self) -> dict[str, Any]:
        return self._reader.cache_stats()

    def get_health(self) -> dict[str, Any]:
        return {
            "sources": self._reader.get_health(),
            "warming": self._warmer.status(),
            "cache": self._reader.cache_stats(),
            "lastCallAt": self._last_call_at,
            "idleWarmSeconds": self._idle_warm_seconds,
        }
