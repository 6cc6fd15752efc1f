"""
Nostr records, coordinates and the references an index record carries.

Records are immutable and identified by their event id. Addressable kinds
(30000-39999) are additionally addressed by a coordinate, which always
points at the newest record published under it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Union

KIND_PROFILE = 0
KIND_CONTACTS = 3
KIND_COMMENT = 1111
KIND_HIGHLIGHT = 9802
KIND_ARTICLE = 30023
KIND_INDEX = 30040
KIND_SECTION = 30041

_EVENT_ID_RE = re.compile(r"^[0-9a-f]{64}$")


def is_replaceable_kind(kind: int) -> bool:
    return kind in (KIND_PROFILE, KIND_CONTACTS) or 10000 <= kind < 20000


def is_addressable_kind(kind: int) -> bool:
    return 30000 <= kind < 40000


@dataclass(frozen=True)
class Coordinate:
    """A (kind, author, identifier) triple addressing the latest record of that shape."""

    kind: int
    pubkey: str
    identifier: str = ""

    def __str__(self) -> str:
        return f"{self.kind}:{self.pubkey}:{self.identifier}"

    @classmethod
    def parse(cls, value: str) -> Coordinate:
        parts = value.strip().split(":", 2)
        if len(parts) != 3 or not parts[0].isdigit() or not parts[1]:
            raise ValueError(f"invalid coordinate: {value!r}")
        return cls(int(parts[0]), parts[1].lower(), parts[2])


@dataclass(frozen=True)
class Record:
    """An immutable, content-addressed Nostr event."""

    id: str
    pubkey: str
    kind: int
    created_at: int
    tags: tuple[tuple[str, ...], ...] = ()
    content: str = ""
    sig: str = ""

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> Record:
        """Build a record from a NIP-01 event dict, raising ValueError if malformed."""
        try:
            tags = tuple(tuple(str(item) for item in tag) for tag in event.get("tags") or ())
            return cls(
                id=str(event["id"]).lower(),
                pubkey=str(event["pubkey"]).lower(),
                kind=int(event["kind"]),
                created_at=int(event["created_at"]),
                tags=tags,
                content=str(event.get("content") or ""),
                sig=str(event.get("sig") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed event: {exc}") from exc

    def to_event(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "kind": self.kind,
            "created_at": self.created_at,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def tag_value(self, name: str) -> str | None:
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def tag_values(self, name: str) -> list[str]:
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]

    @property
    def identifier(self) -> str:
        return self.tag_value("d") or self.id

    @property
    def coordinate(self) -> Coordinate | None:
        if is_addressable_kind(self.kind):
            return Coordinate(self.kind, self.pubkey, self.tag_value("d") or "")
        if is_replaceable_kind(self.kind):
            return Coordinate(self.kind, self.pubkey, "")
        return None

    @property
    def reference(self) -> Reference:
        coordinate = self.coordinate
        if coordinate is not None:
            return AddressReference(coordinate)
        return EventReference(self.id)

    @property
    def title(self) -> str | None:
        return self.tag_value("title") or self.tag_value("T")

    @property
    def is_index(self) -> bool:
        return self.kind == KIND_INDEX


@dataclass(frozen=True)
class EventReference:
    """Immutable pointer to one exact event id."""

    event_id: str

    def __str__(self) -> str:
        return self.event_id

    def to_filter(self) -> dict[str, Any]:
        return {"ids": [self.event_id]}

    def matches(self, record: Record) -> bool:
        return record.id == self.event_id


@dataclass(frozen=True)
class AddressReference:
    """Late-bound pointer to whatever record currently holds a coordinate."""

    coordinate: Coordinate

    def __str__(self) -> str:
        return str(self.coordinate)

    def to_filter(self) -> dict[str, Any]:
        query: dict[str, Any] = {
            "kinds": [self.coordinate.kind],
            "authors": [self.coordinate.pubkey],
        }
        if is_addressable_kind(self.coordinate.kind):
            query["#d"] = [self.coordinate.identifier]
        return query

    def matches(self, record: Record) -> bool:
        return record.coordinate == self.coordinate


Reference = Union[EventReference, AddressReference]


def references_of(record: Record) -> list[Reference]:
    """Return the `a` / `e` references of a record in declared tag order."""
    references: list[Reference] = []
    for tag in record.tags:
        if len(tag) < 2 or not tag[1]:
            continue
        if tag[0] == "a":
            try:
                references.append(AddressReference(Coordinate.parse(tag[1])))
            except ValueError:
                continue
        elif tag[0] == "e" and _EVENT_ID_RE.match(tag[1].lower()):
            references.append(EventReference(tag[1].lower()))
    return references
