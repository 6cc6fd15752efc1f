"""
Background cache warming.

Warms the document, article and highlight lists concurrently; once a list
pass finishes, a dependent pass warms trees and comment pools for the most
recent items of that list. Each region is throttled by its own
WarmingStatus, and a failing region never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .assembler import filter_top_level
from .reader import LIST_ARTICLES, LIST_DOCUMENTS, LIST_HIGHLIGHTS, ContentReader
from .records import Record

logger = logging.getLogger(__name__)

WARM_COOLDOWN_SECONDS = int(os.getenv("CATALOGUE_WARM_COOLDOWN_SECONDS", "1200"))  # 20 minutes
WARM_TOP_N = int(os.getenv("CATALOGUE_WARM_TOP_N", "10"))
WARM_STALE_SECONDS = int(os.getenv("CATALOGUE_WARM_STALE_SECONDS", "600"))

DOCUMENTS = "documents"
ARTICLES = "articles"
HIGHLIGHTS = "highlights"
DOCUMENT_COMMENTS = "document_comments"
ARTICLE_COMMENTS = "article_comments"
WARMABLE_REGIONS = (DOCUMENTS, ARTICLES, HIGHLIGHTS, DOCUMENT_COMMENTS, ARTICLE_COMMENTS)

WARMED = "warmed"
FAILED = "failed"
IN_PROGRESS = "in_progress"
COOLDOWN = "cooldown"
FRESH = "fresh"
NO_ITEMS = "no_items"
DEPENDENCY_FAILED = "dependency_failed"


@dataclass
class WarmingStatus:
    in_progress: bool = False
    last_warmed_at: float | None = None
    started_at: float | None = None
    last_error: str | None = None
    last_outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "inProgress": self.in_progress,
            "lastWarmedAt": self.last_warmed_at,
            "startedAt": self.started_at,
            "lastError": self.last_error,
            "lastOutcome": self.last_outcome,
        }


class WarmerState:
    """Warming status for every region, shared by whoever holds this object."""

    def __init__(self, regions: Iterable[str] = WARMABLE_REGIONS):
        self._statuses = {name: WarmingStatus() for name in regions}

    def status(self, region: str) -> WarmingStatus:
        return self._statuses[region]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: status.to_dict() for name, status in self._statuses.items()}

    def reset(self) -> None:
        for name in self._statuses:
            self._statuses[name] = WarmingStatus()


class BackgroundWarmer:
    def __init__(
        self,
        reader: ContentReader,
        state: WarmerState | None = None,
        cooldown_seconds: float | None = None,
        top_n: int | None = None,
        stale_after_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._reader = reader
        self._state = state or WarmerState()
        self._cooldown_seconds = WARM_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self._top_n = WARM_TOP_N if top_n is None else top_n
        self._stale_after_seconds = (
            WARM_STALE_SECONDS if stale_after_seconds is None else stale_after_seconds
        )
        self._clock = clock
        self._task: asyncio.Task[dict[str, str]] | None = None

    @property
    def state(self) -> WarmerState:
        return self._state

    async def warm_all(self, sources: list[str] | None = None) -> dict[str, str]:
        """Warm every region once and return the outcome per region. Never raises."""
        outcomes: dict[str, str] = {}

        async def documents_then_dependents() -> None:
            outcomes[DOCUMENTS] = await self._run(
                DOCUMENTS,
                lambda: self._list_fresh(LIST_DOCUMENTS, sources),
                lambda: self._warm_list(LIST_DOCUMENTS, sources),
            )
            outcomes[DOCUMENT_COMMENTS] = await self._run_dependent(
                DOCUMENT_COMMENTS,
                outcomes[DOCUMENTS],
                lambda: self._pools_fresh(self._top_documents(sources), sources),
                lambda: self._warm_documents(sources),
            )

        async def articles_then_dependents() -> None:
            outcomes[ARTICLES] = await self._run(
                ARTICLES,
                lambda: self._list_fresh(LIST_ARTICLES, sources),
                lambda: self._warm_list(LIST_ARTICLES, sources),
            )
            outcomes[ARTICLE_COMMENTS] = await self._run_dependent(
                ARTICLE_COMMENTS,
                outcomes[ARTICLES],
                lambda: self._pools_fresh(self._top_articles(sources), sources),
                lambda: self._warm_articles(sources),
            )

        async def highlights() -> None:
            outcomes[HIGHLIGHTS] = await self._run(
                HIGHLIGHTS,
                lambda: self._list_fresh(LIST_HIGHLIGHTS, sources),
                lambda: self._warm_list(LIST_HIGHLIGHTS, sources),
            )

        await asyncio.gather(documents_then_dependents(), articles_then_dependents(), highlights())
        logger.info("Cache warming finished: %s", outcomes)
        return {name: outcomes[name] for name in WARMABLE_REGIONS}

    async def _run(
        self,
        region: str,
        is_fresh: Callable[[], bool],
        warm: Callable[[], Awaitable[str]],
    ) -> str:
        status = self._state.status(region)
        now = self._clock()

        if status.in_progress:
            started_at = status.started_at or now
            if now - started_at <= self._stale_after_seconds:
                logger.debug("Skipping %s warm: already in progress", region)
                return IN_PROGRESS
            logger.warning(
                "Reclaiming %s warm stuck in progress for %.0fs", region, now - started_at
            )

        if status.last_warmed_at is not None and now - status.last_warmed_at < self._cooldown_seconds:
            logger.debug("Skipping %s warm: cooldown", region)
            return COOLDOWN

        if is_fresh():
            status.last_warmed_at = now
            status.last_outcome = FRESH
            return FRESH

        status.in_progress = True
        status.started_at = now
        try:
            outcome = await warm()
        except Exception as exc:
            logger.warning("Warming %s failed: %s", region, exc)
            status.last_error = str(exc) or exc.__class__.__name__
            outcome = FAILED
        else:
            if outcome != NO_ITEMS:
                status.last_warmed_at = self._clock()
            status.last_error = None
        finally:
            status.in_progress = False
            status.started_at = None

        status.last_outcome = outcome
        return outcome

    async def _run_dependent(
        self,
        region: str,
        dependency_outcome: str,
        is_fresh: Callable[[], bool],
        warm: Callable[[], Awaitable[str]],
    ) -> str:
        if dependency_outcome == FAILED:
            self._state.status(region).last_outcome = DEPENDENCY_FAILED
            return DEPENDENCY_FAILED
        if dependency_outcome == IN_PROGRESS:
            # the call warming the list runs this pass once the list lands
            return IN_PROGRESS
        return await self._run(region, is_fresh, warm)

    def _list_fresh(self, name: str, sources: list[str] | None) -> bool:
        return bool(self._reader.cached_list(name, sources=sources))

    def _pools_fresh(self, items: list[Record], sources: list[str] | None) -> bool:
        return bool(items) and all(
            self._reader.cached_comment_pool(record.reference, sources) is not None
            for record in items
        )

    async def _warm_list(self, name: str, sources: list[str] | None) -> str:
        await self._reader.fetch_list(name, sources=sources)
        return WARMED

    def _top_documents(self, sources: list[str] | None) -> list[Record]:
        documents = self._reader.cached_list(LIST_DOCUMENTS, sources=sources) or ()
        return filter_top_level(documents)[: self._top_n]

    def _top_articles(self, sources: list[str] | None) -> list[Record]:
        articles = self._reader.cached_list(LIST_ARTICLES, sources=sources) or ()
        return list(articles[: self._top_n])

    async def _warm_documents(self, sources: list[str] | None) -> str:
        async def warm_one(record: Record) -> None:
            self._reader.remember_root(record, sources)
            await self._reader.fetch_tree(record, sources)
            await self._reader.fetch_comment_pool(record.reference, sources)

        return await self._warm_items(self._top_documents(sources), warm_one)

    async def _warm_articles(self, sources: list[str] | None) -> str:
        async def warm_one(record: Record) -> None:
            self._reader.remember_root(record, sources)
            await self._reader.fetch_comment_pool(record.reference, sources)

        return await self._warm_items(self._top_articles(sources), warm_one)

    async def _warm_items(
        self,
        items: list[Record],
        warm_one: Callable[[Record], Awaitable[None]],
    ) -> str:
        if not items:
            return NO_ITEMS

        results = await asyncio.gather(*(warm_one(record) for record in items), return_exceptions=True)
        errors: list[Exception] = []
        for record, result in zip(items, results):
            if isinstance(result, Exception):
                logger.warning("Warming %s failed: %s", record.identifier, result)
                errors.append(result)
        if len(errors) == len(items):
            raise errors[0]
        return WARMED

    def schedule(self, sources: list[str] | None = None) -> bool:
        """Start warm_all in the background unless a warm task is still running."""
        if self._task is not None and not self._task.done():
            return False
        self._task = asyncio.get_running_loop().create_task(self.warm_all(sources))
        self._task.add_done_callback(self._on_task_done)
        return True

    def _on_task_done(self, task: asyncio.Task[dict[str, str]]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background warm crashed: %s", exc)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def close(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def status(self) -> dict[str, Any]:
        return {
            "regions": self._state.snapshot(),
            "running": self.is_running(),
            "cooldownSeconds": self._cooldown_seconds,
            "topN": self._top_n,
            "staleAfterSeconds": self._stale_after_seconds,
        }
