"""
Search over publication index records.

A query is tried as an identifier first (hex id or pubkey, npub, nprofile,
note, nevent, naddr) and then as text against the d-tag, title, `C`,
author and summary tags. Text matching runs twice: once case-folded, once
with accents stripped as well.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Iterable

from .addresses import decode_entity, is_entity
from .records import Coordinate, Record

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_NON_WORD_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize_exact(text: str) -> str:
    """Lowercase, punctuation to spaces, whitespace collapsed; accents kept."""
    return _SPACE_RE.sub(" ", _NON_WORD_RE.sub(" ", text.lower())).strip()


def normalize_loose(text: str) -> str:
    """normalize_exact with accents removed."""
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return normalize_exact(stripped)


def _searchable_text(record: Record) -> list[str]:
    fields = [record.tag_value("d") or "", record.title or "", record.tag_value("C") or ""]
    fields.extend(record.tag_values("author"))
    fields.extend(record.tag_values("summary"))
    return [field for field in fields if field]


def _identifiers(query: str) -> tuple[str | None, str | None, Coordinate | None]:
    """(event id, pubkey, coordinate) named by the query, if any."""
    if is_entity(query):
        try:
            entity = decode_entity(query)
        except ValueError as exc:
            logger.debug("Query %r looks like an entity but does not decode: %s", query, exc)
            return None, None, None
        if entity.coordinate is not None:
            return None, None, entity.coordinate
        return entity.event_id, entity.pubkey, None
    if _HEX_RE.match(query):
        # a bare hex string could be either an id or a pubkey
        return query.lower(), query.lower(), None
    return None, None, None


def matches_search(record: Record, query: str) -> bool:
    query = query.strip()
    if not query:
        return False

    event_id, pubkey, coordinate = _identifiers(query)
    if coordinate is not None and record.coordinate == coordinate:
        return True
    if event_id is not None and record.id == event_id:
        return True
    if pubkey is not None:
        if record.pubkey == pubkey or record.id == pubkey:
            return True
        if any(value.lower() == pubkey for value in record.tag_values("p")):
            return True

    fields = _searchable_text(record)
    for normalize in (normalize_exact, normalize_loose):
        needle = normalize(query)
        if needle and any(needle in normalize(field) for field in fields):
            return True
    return False


def search_records(records: Iterable[Record], query: str) -> tuple[Record, ...]:
    return tuple(record for record in records if matches_search(record, query))
