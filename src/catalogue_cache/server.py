"""
MCP server exposing the catalogue cache: documents, comments, lists and diagnostics.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from .addresses import parse_pubkey
from .assembler import DocumentNode
from .fanout import FanOutQueryEngine
from .reader import ContentReader
from .records import Record, references_of
from .relay import WebsocketRelaySource, parse_relay_urls
from .router import ContentRouter, ListView
from .threads import CommentNode
from .warmer import BackgroundWarmer

logger = logging.getLogger(__name__)

ITEMS_PER_PAGE = 50
HIGHLIGHT_PREVIEW_CHARS = 280


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Start warming the caches in the background; stop the warm task on shutdown."""
    try:
        get_warmer().schedule()
    except Exception as exc:
        logger.warning("Initial cache warm could not be scheduled: %s", exc)
    try:
        yield
    finally:
        await get_warmer().close()


mcp = FastMCP(
    "Catalogue Cache",
    instructions=(
        "Catalogue cache over Nostr relays. "
        "Publications (kind 30040 indexes), articles and highlights are fetched "
        "from several relays at once, merged, and cached. When relays are "
        "unreachable, cached data is served and marked with _metadata.stale. "
        "Addresses are naddr/nevent/note entities, 'kind:pubkey:identifier' "
        "coordinates or 64-hex event ids."
    ),
    lifespan=_lifespan,
)

_engine: FanOutQueryEngine | None = None
_reader: ContentReader | None = None
_warmer: BackgroundWarmer | None = None
_router: ContentRouter | None = None


def get_engine() -> FanOutQueryEngine:
    global _engine
    if _engine is None:
        _engine = FanOutQueryEngine(WebsocketRelaySource())
    return _engine


def get_reader() -> ContentReader:
    global _reader
    if _reader is None:
        _reader = ContentReader(get_engine())
    return _reader


def get_warmer() -> BackgroundWarmer:
    global _warmer
    if _warmer is None:
        _warmer = BackgroundWarmer(get_reader())
    return _warmer


def get_router() -> ContentRouter:
    global _router
    if _router is None:
        _router = ContentRouter(get_reader(), get_warmer())
    return _router


def _sources(relays: str | None) -> list[str] | None:
    if not relays:
        return None
    sources = parse_relay_urls(relays)
    if not sources:
        raise ValueError(f"no valid ws:// or wss:// relay URLs in {relays!r}")
    return sources


def _with_metadata(payload: dict[str, Any], stale: bool) -> dict[str, Any]:
    if stale:
        payload["_metadata"] = {"stale": True}
    return payload


def _page(records: tuple[Record, ...], page: int) -> tuple[list[Record], dict[str, Any]]:
    page = max(page, 1)
    total = len(records)
    start = (page - 1) * ITEMS_PER_PAGE
    return list(records[start : start + ITEMS_PER_PAGE]), {
        "page": page,
        "totalPages": max((total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE, 1),
        "totalCount": total,
    }


def _summary(record: Record) -> dict[str, Any]:
    coordinate = record.coordinate
    return {
        "id": record.id,
        "address": str(coordinate) if coordinate is not None else record.id,
        "title": record.title or record.identifier,
        "author": record.pubkey,
        "kind": record.kind,
        "createdAt": record.created_at,
    }


def _highlight_summary(record: Record) -> dict[str, Any]:
    content = record.content
    if len(content) > HIGHLIGHT_PREVIEW_CHARS:
        content = content[:HIGHLIGHT_PREVIEW_CHARS] + "..."
    return {
        "id": record.id,
        "author": record.pubkey,
        "createdAt": record.created_at,
        "content": content,
        "source": record.tag_value("a") or record.tag_value("e") or record.tag_value("r"),
        "context": record.tag_value("context"),
    }


def _tree(nodes: tuple[DocumentNode, ...]) -> list[dict[str, Any]]:
    return [
        {
            **_summary(node.record),
            "linked": node.linked,
            "children": _tree(node.children),
        }
        for node in nodes
    ]


def _threads(nodes: tuple[CommentNode, ...]) -> list[dict[str, Any]]:
    return [
        {
            "id": node.record.id,
            "author": node.record.pubkey,
            "createdAt": node.record.created_at,
            "content": node.record.content,
            "replies": _threads(node.replies),
        }
        for node in nodes
    ]


def _list_payload(
    key: str,
    view: ListView,
    page: int,
    summarize: Callable[[Record], dict[str, Any]],
) -> dict[str, Any]:
    items, paging = _page(view.records, page)
    return _with_metadata({key: [summarize(record) for record in items], **paging}, view.stale)


@mcp.tool()
async def list_documents(page: int = 1, relays: str | None = None) -> dict[str, Any]:
    """List top-level publications (kind 30040 indexes not nested in another index).

    Args:
        page: 1-based page number, 50 items per page.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.

    Returns:
        dict with "documents" (list of {id, address, title, author, kind, createdAt}),
        "page", "totalPages" and "totalCount".
    """
    view = await get_router().list_documents(sources=_sources(relays))
    return _list_payload("documents", view, page, _summary)


@mcp.tool()
async def search_documents(query: str, page: int = 1, relays: str | None = None) -> dict[str, Any]:
    """Search publications by title, author, summary, d-tag, id or pubkey.

    Args:
        query: Free text, a 64-hex id or pubkey, or an npub, nprofile, note,
            nevent or naddr entity.
        page: 1-based page number, 50 items per page.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.

    Returns:
        dict with "documents", "query", "page", "totalPages" and "totalCount".
    """
    view = await get_router().search_documents(query, sources=_sources(relays))
    payload = _list_payload("documents", view, page, _summary)
    payload["query"] = query
    return payload


@mcp.tool()
async def list_articles(page: int = 1, relays: str | None = None) -> dict[str, Any]:
    """List recent long-form articles (kind 30023), newest first.

    Args:
        page: 1-based page number, 50 items per page.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.
    """
    view = await get_router().list_articles(sources=_sources(relays))
    return _list_payload("articles", view, page, _summary)


@mcp.tool()
async def list_highlights(page: int = 1, relays: str | None = None) -> dict[str, Any]:
    """List recent highlights (kind 9802) quoting an article, a section, an event or a URL.

    Args:
        page: 1-based page number, 50 items per page.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.
    """
    view = await get_router().list_highlights(sources=_sources(relays))
    return _list_payload("highlights", view, page, _highlight_summary)


@mcp.tool()
async def get_document(address: str, relays: str | None = None) -> dict[str, Any]:
    """Assemble a publication or article with all of its sections.

    Args:
        address: naddr, nevent or note entity, "kind:pubkey:identifier"
            coordinate, or 64-hex event id.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.

    Returns:
        dict with "root" ({id, address, title, author, kind, createdAt}),
        "tree" (nested summaries with "linked" and "children"), "content"
        (leaf sections in reading order as {id, title, content}) and
        "sectionCount".
    """
    view = await get_router().get_document(address, _sources(relays))
    payload = {
        "root": {**_summary(view.root), "references": len(references_of(view.root))},
        "tree": _tree(view.tree),
        "content": [
            {"id": record.id, "title": record.title, "content": record.content}
            for record in view.content
        ],
        "sectionCount": len(view.content),
    }
    return _with_metadata(payload, view.stale)


@mcp.tool()
async def export_document(address: str, relays: str | None = None) -> dict[str, Any]:
    """Export every record a publication is made of as raw Nostr events.

    Args:
        address: naddr, nevent or note entity, "kind:pubkey:identifier"
            coordinate, or 64-hex event id.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.

    Returns:
        dict with "events" (root first, then the tree in pre-order) and "count".
    """
    view = await get_router().export_document(address, _sources(relays))
    return _with_metadata(
        {"events": [record.to_event() for record in view.records], "count": len(view.records)},
        view.stale,
    )


@mcp.tool()
async def get_comments(address: str, relays: str | None = None) -> dict[str, Any]:
    """Fetch the threaded comments (kind 1111) on a publication or article.

    Args:
        address: naddr, nevent or note entity, "kind:pubkey:identifier"
            coordinate, or 64-hex event id.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.

    Returns:
        dict with "threads" (nested {id, author, createdAt, content, replies})
        and "totalCount".
    """
    view = await get_router().get_comments(address, _sources(relays))
    return _with_metadata({"threads": _threads(view.threads), "totalCount": view.total}, view.stale)


@mcp.tool()
async def get_profile_name(pubkey: str, relays: str | None = None) -> dict[str, Any]:
    """Look up an author's display name from their kind 0 profile.

    Args:
        pubkey: 64-hex public key, npub or nprofile.
        relays: Comma-separated ws(s):// relay URLs overriding the defaults.
    """
    name, stale = await get_router().get_profile_name(pubkey, _sources(relays))
    return _with_metadata({"pubkey": parse_pubkey(pubkey), "name": name}, stale)


@mcp.tool()
async def check_sources(relays: str | None = None) -> dict[str, Any]:
    """Probe each relay with a tiny subscription and report which ones answer."""
    results = await get_router().check_sources(_sources(relays))
    return {
        "sources": results,
        "connected": sum(1 for item in results if item["status"] == "connected"),
        "total": len(results),
    }


@mcp.tool()
async def warm_caches(relays: str | None = None) -> dict[str, Any]:
    """Warm lists, document trees and comment pools now and return the outcome per region."""
    return {"outcomes": await get_router().warm_all(_sources(relays))}


@mcp.tool()
def clear_caches() -> dict[str, Any]:
    """Drop every cached entry and return the (empty) cache statistics."""
    return get_router().clear_all_caches()


@mcp.tool()
def get_cache_stats() -> dict[str, Any]:
    """Return entry counts and estimated bytes per cache region."""
    return get_router().cache_stats()


@mcp.tool()
def get_cache_health() -> dict[str, Any]:
    """Return relay health, warming status and cache statistics."""
    return get_router().get_health()


def main() -> None:
    mcp.run()
