from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from catalogue_cache import relay
from catalogue_cache.relay import RelayError, WebsocketRelaySource, parse_relay_urls
from fakes import make_record


class FakeConnection:
    """Answers a REQ with scripted messages; `{sub}` is replaced by the subscription id."""

    def __init__(self, script: list[list[Any] | str]):
        self.script = script
        self.sent: list[list[Any]] = []
        self._subscription_id: str | None = None

    async def __aenter__(self) -> FakeConnection:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def send(self, message: str) -> None:
        payload = json.loads(message)
        self.sent.append(payload)
        if payload[0] == "REQ":
            self._subscription_id = payload[1]

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        for item in self.script:
            if isinstance(item, str):
                yield item
                continue
            yield json.dumps([self._subscription_id if part == "{sub}" else part for part in item])


def _install(monkeypatch: pytest.MonkeyPatch, connection: FakeConnection) -> list[dict[str, Any]]:
    opened: list[dict[str, Any]] = []

    def fake_connect(uri: str, **kwargs: Any) -> FakeConnection:
        opened.append({"uri": uri, **kwargs})
        return connection

    monkeypatch.setattr(relay.websockets, "connect", fake_connect)
    return opened


def test_parse_relay_urls_normalizes_and_dedupes():
    urls = parse_relay_urls(
        "wss://relay.one/, wss://relay.two\nhttps://not-a-relay, wss://relay.one, ws://local:7777"
    )

    assert urls == ["wss://relay.one", "wss://relay.two", "ws://local:7777"]


def test_parse_relay_urls_rejects_query_and_empty():
    assert parse_relay_urls(None) == []
    assert parse_relay_urls("") == []
    assert parse_relay_urls(["wss://relay.one?x=1", "wss://"]) == []


def test_fetch_collects_events_until_eose(monkeypatch: pytest.MonkeyPatch):
    record = make_record("section")
    connection = FakeConnection(
        [
            ["NOTICE", "hello"],
            "not json",
            ["EVENT", "other-subscription", {"id": "ignored"}],
            ["EVENT", "{sub}", record.to_event()],
            ["EOSE", "{sub}"],
            ["EVENT", "{sub}", {"id": "after-eose"}],
        ]
    )
    opened = _install(monkeypatch, connection)

    events = asyncio.run(
        WebsocketRelaySource(open_timeout_seconds=3).fetch("wss://relay.one", [{"kinds": [30041]}])
    )

    assert events == [record.to_event()]
    assert opened[0]["uri"] == "wss://relay.one"
    assert opened[0]["open_timeout"] == 3
    req, close = connection.sent
    assert req[0] == "REQ" and req[2] == {"kinds": [30041]}
    assert close == ["CLOSE", req[1]]


def test_closed_subscription_raises(monkeypatch: pytest.MonkeyPatch):
    connection = FakeConnection([["CLOSED", "{sub}", "auth-required: sign in"]])
    _install(monkeypatch, connection)

    with pytest.raises(RelayError, match="auth-required"):
        asyncio.run(WebsocketRelaySource().fetch("wss://relay.one", [{"kinds": [1]}]))
