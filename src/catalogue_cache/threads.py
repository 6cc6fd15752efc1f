"""
Reply threading for NIP-22 comments.

Uppercase tags (`A`, `E`) point at the root scope a comment belongs to;
lowercase tags (`e`, `a`) point at its immediate parent. The builder does
not care what the root scope is: it only links comments to other comments
in the same pool.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .records import Coordinate, Record


@dataclass(frozen=True)
class CommentNode:
    record: Record
    replies: tuple[CommentNode, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.record.to_event(),
            "replies": [reply.to_dict() for reply in self.replies],
        }

    def count(self) -> int:
        return 1 + sum(reply.count() for reply in self.replies)


def _sort_key(record: Record) -> tuple[int, str]:
    return record.created_at, record.id


def _parent_id(
    comment: Record,
    by_id: dict[str, Record],
    by_coordinate: dict[str, str],
) -> str | None:
    """Resolve the immediate parent inside the pool: `e` first, then `a`."""
    parent_event_id = comment.tag_value("e")
    if parent_event_id and parent_event_id.lower() in by_id:
        return parent_event_id.lower()

    parent_address = comment.tag_value("a")
    if parent_address:
        try:
            coordinate = str(Coordinate.parse(parent_address))
        except ValueError:
            coordinate = None
        if coordinate in by_coordinate:
            return by_coordinate[coordinate]
        if parent_address.strip().lower() in by_id:
            return parent_address.strip().lower()
    return None


def _break_cycles(parents: dict[str, str | None]) -> None:
    """Promote every comment whose parent chain loops back to itself."""
    cyclic: set[str] = set()
    for comment_id in parents:
        seen = {comment_id}
        current = parents[comment_id]
        while current is not None:
            if current == comment_id:
                cyclic.add(comment_id)
                break
            if current in seen:
                break
            seen.add(current)
            current = parents.get(current)
    for comment_id in cyclic:
        parents[comment_id] = None


def build_threads(comments: Iterable[Record]) -> tuple[CommentNode, ...]:
    """Build reply threads from a flat pool of comments.

    A comment whose parent is not in the pool is promoted to the top level.
    Siblings are ordered by created_at, ties broken by id.
    """
    by_id: dict[str, Record] = {}
    for comment in comments:
        by_id.setdefault(comment.id, comment)

    by_coordinate: dict[str, str] = {}
    for comment in sorted(by_id.values(), key=_sort_key):
        coordinate = comment.coordinate
        if coordinate is not None:
            by_coordinate[str(coordinate)] = comment.id

    parents: dict[str, str | None] = {}
    for comment_id, comment in by_id.items():
        parent_id = _parent_id(comment, by_id, by_coordinate)
        parents[comment_id] = parent_id if parent_id != comment_id else None
    _break_cycles(parents)

    children: dict[str | None, list[Record]] = {}
    for comment_id, parent_id in parents.items():
        children.setdefault(parent_id, []).append(by_id[comment_id])

    def build(parent_id: str | None) -> tuple[CommentNode, ...]:
        return tuple(
            CommentNode(record, build(record.id))
            for record in sorted(children.get(parent_id, []), key=_sort_key)
        )

    return build(None)
