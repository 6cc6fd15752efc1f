"""
Relay access over websockets (NIP-01 REQ/EVENT/EOSE subscriptions).

This is the only module that talks to the network. Everything above it
consumes the `RelaySource` protocol, so tests substitute an in-memory fake.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Any, Protocol
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

FALLBACK_RELAYS = [
    "wss://nostr.land",
    "wss://thecitadel.nostr1.com",
    "wss://nostr.wine",
    "wss://orly-relay.imwald.eu",
]
OPEN_TIMEOUT_SECONDS = float(os.getenv("CATALOGUE_OPEN_TIMEOUT_SECONDS", "10"))
MAX_MESSAGE_BYTES = 8 * 1024 * 1024


class RelayError(RuntimeError):
    """Raised when a relay refuses or closes a subscription."""


class RelaySource(Protocol):
    async def fetch(self, source: str, filters: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...


def parse_relay_urls(value: str | list[str] | None) -> list[str]:
    """Normalize relay input (comma/newline separated or a list) to unique ws(s) URLs."""
    if not value:
        return []
    if isinstance(value, str):
        raw = value.replace("\n", ",").split(",")
    else:
        raw = list(value)

    urls: list[str] = []
    for item in raw:
        url = str(item).strip().rstrip("/")
        if not url:
            continue
        parsed = urlparse(url)
        if parsed.scheme not in {"ws", "wss"} or not parsed.netloc:
            logger.warning("Ignoring invalid relay URL: %s", url)
            continue
        if parsed.query or parsed.fragment:
            logger.warning("Ignoring relay URL with query or fragment: %s", url)
            continue
        if url not in urls:
            urls.append(url)
    return urls


DEFAULT_RELAYS = parse_relay_urls(os.getenv("CATALOGUE_RELAYS", "")) or list(FALLBACK_RELAYS)


class WebsocketRelaySource:
    """Opens one short-lived subscription per fetch and reads until EOSE."""

    def __init__(
        self,
        open_timeout_seconds: float | None = None,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ):
        self._open_timeout_seconds = (
            OPEN_TIMEOUT_SECONDS if open_timeout_seconds is None else open_timeout_seconds
        )
        self._max_message_bytes = max_message_bytes

    async def fetch(self, source: str, filters: list[dict[str, Any]]) -> list[dict[str, Any]]:
        subscription_id = uuid.uuid4().hex[:16]
        events: list[dict[str, Any]] = []

        async with websockets.connect(
            source,
            open_timeout=self._open_timeout_seconds,
            max_size=self._max_message_bytes,
        ) as connection:
            await connection.send(json.dumps(["REQ", subscription_id, *filters]))
            async for raw in connection:
                message = self._decode(source, raw)
                if not message or len(message) < 2:
                    continue
                message_type = message[0]
                if message_type == "NOTICE":
                    logger.debug("Notice from %s: %s", source, message[1])
                    continue
                if message[1] != subscription_id:
                    continue
                if message_type == "EVENT" and len(message) >= 3 and isinstance(message[2], dict):
                    events.append(message[2])
                elif message_type == "EOSE":
                    break
                elif message_type == "CLOSED":
                    reason = message[2] if len(message) >= 3 else ""
                    raise RelayError(f"{source} closed subscription: {reason}")

            try:
                await connection.send(json.dumps(["CLOSE", subscription_id]))
            except ConnectionClosed:
                pass

        return events

    @staticmethod
    def _decode(source: str, raw: str | bytes) -> list[Any] | None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Dropping undecodable message from %s", source)
            return None
        return message if isinstance(message, list) else None
