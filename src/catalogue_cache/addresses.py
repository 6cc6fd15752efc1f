"""
Public addresses for records and authors.

Accepts 64-hex ids, `kind:pubkey:identifier` coordinates and the NIP-19
bech32 entities people actually share (npub, nprofile, note, nevent,
naddr), with or without a `nostr:` URI prefix. Bech32 decoding is done
by nostr-sdk.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import nostr_sdk

from .records import AddressReference, Coordinate, EventReference, Reference

ENTITY_PREFIXES = ("npub", "nprofile", "note", "nevent", "naddr")

_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class Entity:
    """A decoded NIP-19 entity. Which fields are set depends on `prefix`."""

    prefix: str
    event_id: str | None = None
    pubkey: str | None = None
    coordinate: Coordinate | None = None


def _strip_uri(value: str) -> str:
    text = value.strip()
    if text.lower().startswith("nostr:"):
        text = text[len("nostr:"):]
    return text


def _prefix(text: str) -> str | None:
    hrp, separator, _ = text.lower().partition("1")
    if separator and hrp in ENTITY_PREFIXES:
        return hrp
    return None


def is_entity(value: str) -> bool:
    return _prefix(_strip_uri(value)) is not None


def decode_entity(value: str) -> Entity:
    """Decode a NIP-19 entity, raising ValueError if it is unknown or malformed."""
    text = _strip_uri(value).lower()
    prefix = _prefix(text)
    if prefix is None:
        raise ValueError(f"not a NIP-19 entity: {value!r}")

    try:
        if prefix == "npub":
            return Entity(prefix, pubkey=nostr_sdk.PublicKey.parse(text).to_hex())
        if prefix == "nprofile":
            profile = nostr_sdk.Nip19Profile.from_bech32(text)
            return Entity(prefix, pubkey=profile.public_key().to_hex())
        if prefix == "note":
            return Entity(prefix, event_id=nostr_sdk.EventId.parse(text).to_hex())
        if prefix == "nevent":
            event = nostr_sdk.Nip19Event.from_bech32(text)
            author = event.author()
            return Entity(
                prefix,
                event_id=event.event_id().to_hex(),
                pubkey=author.to_hex() if author is not None else None,
            )
        coordinate = nostr_sdk.Nip19Coordinate.from_bech32(text).coordinate()
        return Entity(
            prefix,
            pubkey=coordinate.public_key().to_hex(),
            coordinate=Coordinate(
                coordinate.kind().as_u16(),
                coordinate.public_key().to_hex(),
                coordinate.identifier(),
            ),
        )
    except Exception as exc:
        raise ValueError(f"invalid {prefix} entity: {exc}") from exc


def parse_address(value: str) -> Reference:
    """Parse a record address: hex id, coordinate, naddr, nevent or note."""
    text = _strip_uri(value)
    if is_entity(text):
        entity = decode_entity(text)
        if entity.coordinate is not None:
            return AddressReference(entity.coordinate)
        if entity.event_id is not None:
            return EventReference(entity.event_id)
        raise ValueError(f"{entity.prefix} names an author, not a record")
    if _HEX_RE.match(text.lower()):
        return EventReference(text.lower())
    return AddressReference(Coordinate.parse(text))


def parse_pubkey(value: str) -> str:
    """Parse an author: 64-hex pubkey, npub or nprofile."""
    text = _strip_uri(value)
    if is_entity(text):
        entity = decode_entity(text)
        if entity.prefix in ("npub", "nprofile") and entity.pubkey is not None:
            return entity.pubkey
        raise ValueError(f"{entity.prefix} names a record, not an author")
    if _HEX_RE.match(text.lower()):
        return text.lower()
    raise ValueError(f"invalid pubkey: {value!r}")
