"""
Hierarchical content assembly.

An index record (kind 30040) lists its chapters and sections as `a` / `e`
tags. The assembler resolves those references through the fan-out engine,
recursing into nested indexes, and produces an ordered tree. `flatten`
turns the tree into the linear sequence of leaf content for one document.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .fanout import FanOutQueryEngine, NoSourceReachable
from .records import (
    KIND_INDEX,
    AddressReference,
    EventReference,
    Record,
    Reference,
    references_of,
)

logger = logging.getLogger(__name__)

MIN_ROUND_TIMEOUT_SECONDS = 5.0
MAX_ROUND_TIMEOUT_SECONDS = 30.0
PER_REFERENCE_TIMEOUT_SECONDS = 0.2


@dataclass(frozen=True)
class DocumentNode:
    """A resolved record plus its resolved children.

    `linked` marks a record already expanded elsewhere in the tree; it is
    kept in place so the structure stays visible, but never expanded twice.
    """

    record: Record
    children: tuple[DocumentNode, ...] = ()
    linked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.record.to_event(),
            "linked": self.linked,
            "children": [child.to_dict() for child in self.children],
        }


def _round_timeout(reference_count: int) -> float:
    return min(
        max(MIN_ROUND_TIMEOUT_SECONDS, reference_count * PER_REFERENCE_TIMEOUT_SECONDS),
        MAX_ROUND_TIMEOUT_SECONDS,
    )


class ContentAssembler:
    def __init__(self, engine: FanOutQueryEngine):
        self._engine = engine

    async def assemble(
        self,
        root: Record,
        visited: set[str] | None = None,
        sources: list[str] | None = None,
    ) -> tuple[DocumentNode, ...]:
        """Resolve the tree under `root`.

        A leaf root yields itself as the only node. For an index root the
        result is its children in declared tag order. `visited` is shared
        across the whole recursion and is mutated in place.
        """
        if visited is None:
            visited = set()
        visited.add(root.id)
        if not root.is_index:
            return (DocumentNode(root),)
        return await self._expand(root, visited, sources)

    async def _expand(
        self,
        index: Record,
        visited: set[str],
        sources: list[str] | None,
    ) -> tuple[DocumentNode, ...]:
        references = references_of(index)
        if not references:
            return ()

        resolved = await self.resolve(references, sources)

        nodes: list[DocumentNode] = []
        missing = 0
        for reference in references:
            record = resolved.get(reference)
            if record is None:
                missing += 1
                continue
            if record.id in visited:
                nodes.append(DocumentNode(record, linked=True))
                continue
            visited.add(record.id)
            if record.is_index:
                children = await self._expand(record, visited, sources)
                nodes.append(DocumentNode(record, children))
            else:
                nodes.append(DocumentNode(record))

        if missing:
            logger.warning(
                "Partial assembly of %s: %d of %d references unresolved",
                index.identifier,
                missing,
                len(references),
            )
        return tuple(nodes)

    async def resolve(
        self,
        references: list[Reference],
        sources: list[str] | None = None,
    ) -> dict[Reference, Record]:
        """Resolve references in one round: addresses and ids are fetched concurrently."""
        addresses = list(dict.fromkeys(r for r in references if isinstance(r, AddressReference)))
        event_ids = list(
            dict.fromkeys(r.event_id for r in references if isinstance(r, EventReference))
        )
        timeout = _round_timeout(len(addresses) + len(event_ids))

        address_batch, id_batch = await asyncio.gather(
            self._fetch([ref.to_filter() for ref in addresses], sources, timeout),
            # exact ids are immutable: older revisions of a coordinate must survive
            self._fetch(
                [{"ids": event_ids}] if event_ids else [], sources, timeout, latest_only=False
            ),
        )

        by_id = {record.id: record for record in id_batch}
        resolved: dict[Reference, Record] = {}
        for reference in references:
            if isinstance(reference, EventReference):
                record = by_id.get(reference.event_id)
            else:
                record = next((item for item in address_batch if reference.matches(item)), None)
            if record is not None:
                resolved[reference] = record
        return resolved

    async def _fetch(
        self,
        filters: list[dict[str, Any]],
        sources: list[str] | None,
        timeout: float,
        latest_only: bool = True,
    ) -> tuple[Record, ...]:
        if not filters:
            return ()
        try:
            result = await self._engine.query(filters, sources, timeout, latest_only)
        except NoSourceReachable as exc:
            logger.warning("Reference round unresolved, no source reachable: %s", exc)
            return ()
        return result.records


def flatten(tree: Iterable[DocumentNode]) -> tuple[Record, ...]:
    """Pre-order walk yielding every leaf record exactly once."""
    seen: set[str] = set()
    leaves: list[Record] = []

    def walk(nodes: Iterable[DocumentNode]) -> None:
        for node in nodes:
            record = node.record
            if not record.is_index and record.id not in seen:
                seen.add(record.id)
                leaves.append(record)
            walk(node.children)

    walk(tree)
    return tuple(leaves)


def collect_records(root: Record, tree: Iterable[DocumentNode]) -> tuple[Record, ...]:
    """Root plus every record in the tree, each once, in pre-order."""
    seen = {root.id}
    collected = [root]

    def walk(nodes: Iterable[DocumentNode]) -> None:
        for node in nodes:
            if node.record.id not in seen:
                seen.add(node.record.id)
                collected.append(node.record)
            walk(node.children)

    walk(tree)
    return tuple(collected)


def filter_top_level(indexes: Iterable[Record]) -> list[Record]:
    """Drop index records that another index in the same list references."""
    indexes = list(indexes)
    by_id = {record.id: record for record in indexes}
    referenced: set[tuple[str, str]] = set()

    for record in indexes:
        for reference in references_of(record):
            if isinstance(reference, AddressReference):
                if reference.coordinate.kind == KIND_INDEX:
                    referenced.add((reference.coordinate.pubkey, reference.coordinate.identifier))
            else:
                target = by_id.get(reference.event_id)
                if target is not None and target.is_index:
                    referenced.add((target.pubkey, target.identifier))

    top_level = [
        record for record in indexes if (record.pubkey, record.identifier) not in referenced
    ]
    logger.debug("Filtered %d indexes to %d top-level", len(indexes), len(top_level))
    return top_level
