"""
Fan-out query engine.

Issues one filter set against many relays concurrently and merges the
answers into a single deterministic record set with per-record provenance.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .records import KIND_INDEX, Coordinate, Record
from .relay import DEFAULT_RELAYS, RelaySource

logger = logging.getLogger(__name__)

QUERY_TIMEOUT_SECONDS = float(os.getenv("CATALOGUE_QUERY_TIMEOUT_SECONDS", "10"))
PROBE_TIMEOUT_SECONDS = float(os.getenv("CATALOGUE_PROBE_TIMEOUT_SECONDS", "2"))


class SourceError(RuntimeError):
    """Base error for queries that produced no usable data."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class NoSourceReachable(SourceError):
    """Every source failed or timed out. Safe to retry."""

    retryable = True

    def __init__(self, message: str, failures: dict[str, str] | None = None):
        super().__init__("no_source_reachable", message)
        self.failures = dict(failures or {})


class RecordNotFound(SourceError):
    """Sources answered, but nothing matched."""

    retryable = False

    def __init__(self, message: str):
        super().__init__("record_not_found", message)


@dataclass(frozen=True)
class QueryResult:
    records: tuple[Record, ...] = ()
    provenance: dict[str, frozenset[str]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def first(self) -> Record | None:
        return self.records[0] if self.records else None


def _supersedes(candidate: Record, current: Record) -> bool:
    return (candidate.created_at, candidate.id) > (current.created_at, current.id)


def merge_records(
    batches: Iterable[tuple[str, Iterable[Record]]],
    latest_only: bool = True,
) -> tuple[tuple[Record, ...], dict[str, frozenset[str]]]:
    """Merge per-source batches by id, keeping the newest record per coordinate.

    Ties on created_at go to the lexicographically greater id, so the
    outcome does not depend on arrival order. With `latest_only` off every
    distinct id is kept, which is what a lookup by exact ids wants.
    """
    by_id: dict[str, Record] = {}
    sources_by_id: dict[str, set[str]] = {}
    for source, records in batches:
        for record in records:
            by_id.setdefault(record.id, record)
            sources_by_id.setdefault(record.id, set()).add(source)

    kept: list[Record] = []
    latest: dict[Coordinate, Record] = {}
    for record in by_id.values():
        coordinate = record.coordinate
        if coordinate is None or not latest_only:
            kept.append(record)
            continue
        current = latest.get(coordinate)
        if current is None or _supersedes(record, current):
            latest[coordinate] = record
    kept.extend(latest.values())
    kept.sort(key=lambda record: (-record.created_at, record.id))

    provenance = {record.id: frozenset(sources_by_id[record.id]) for record in kept}
    return tuple(kept), provenance


class FanOutQueryEngine:
    """Runs one logical query against N relays and merges the results."""

    def __init__(
        self,
        relay_source: RelaySource,
        default_sources: list[str] | None = None,
        timeout_seconds: float | None = None,
    ):
        self._relay_source = relay_source
        self._default_sources = list(default_sources or DEFAULT_RELAYS)
        self._timeout_seconds = QUERY_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    @property
    def default_sources(self) -> list[str]:
        return list(self._default_sources)

    def resolve_sources(self, sources: list[str] | None) -> list[str]:
        resolved: list[str] = []
        for source in sources or self._default_sources:
            if source not in resolved:
                resolved.append(source)
        return resolved

    async def query(
        self,
        filters: list[dict[str, Any]],
        sources: list[str] | None = None,
        timeout: float | None = None,
        latest_only: bool = True,
    ) -> QueryResult:
        targets = self.resolve_sources(sources)
        if not targets:
            raise NoSourceReachable("no sources configured")
        deadline = self._timeout_seconds if timeout is None else timeout

        outcomes = await asyncio.gather(
            *(self._query_source(source, filters, deadline) for source in targets)
        )

        batches: list[tuple[str, list[Record]]] = []
        failures: dict[str, str] = {}
        for source, (records, error) in zip(targets, outcomes):
            if error is not None:
                failures[source] = error
                continue
            batches.append((source, records))

        if not batches:
            raise NoSourceReachable(
                f"all {len(targets)} sources failed", failures=failures
            )

        records, provenance = merge_records(batches, latest_only)
        if failures:
            logger.debug(
                "Query answered by %d/%d sources (%d records)",
                len(batches),
                len(targets),
                len(records),
            )
        return QueryResult(records=records, provenance=provenance, failures=failures)

    async def fetch_one(
        self,
        filters: list[dict[str, Any]],
        sources: list[str] | None = None,
        timeout: float | None = None,
    ) -> Record:
        """Return the newest matching record, or raise RecordNotFound."""
        result = await self.query(filters, sources, timeout)
        record = result.first()
        if record is None:
            raise RecordNotFound(f"no record matched {filters!r}")
        return record

    async def _query_source(
        self,
        source: str,
        filters: list[dict[str, Any]],
        timeout: float,
    ) -> tuple[list[Record], str | None]:
        try:
            raw_events = await asyncio.wait_for(
                self._relay_source.fetch(source, filters), timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Source %s timed out after %.1fs", source, timeout)
            return [], f"timeout after {timeout:.1f}s"
        except Exception as exc:
            logger.warning("Source %s failed (%s): %s", source, exc.__class__.__name__, exc)
            return [], f"{exc.__class__.__name__}: {exc}"

        records: list[Record] = []
        for event in raw_events:
            try:
                records.append(Record.from_event(event))
            except ValueError as exc:
                logger.debug("Dropping event from %s: %s", source, exc)
        return records, None

    async def probe(self, source: str, timeout: float | None = None) -> dict[str, Any]:
        """Check that a relay answers a tiny subscription within the probe timeout."""
        deadline = PROBE_TIMEOUT_SECONDS if timeout is None else timeout
        try:
            await asyncio.wait_for(
                self._relay_source.fetch(source, [{"kinds": [KIND_INDEX], "limit": 1}]),
                deadline,
            )
        except asyncio.TimeoutError:
            return {
                "url": source,
                "status": "timeout",
                "error": f"no response within {deadline:g} seconds",
            }
        except Exception as exc:
            return {"url": source, "status": "error", "error": str(exc) or exc.__class__.__name__}
        return {"url": source, "status": "connected", "error": None}

    async def probe_all(
        self, sources: list[str] | None = None, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        targets = self.resolve_sources(sources)
        return list(await asyncio.gather(*(self.probe(source, timeout) for source in targets)))
