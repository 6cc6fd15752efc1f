from __future__ import annotations

import pytest

from catalogue_cache.cache import (
    COMMENTS,
    LISTS,
    PROFILES,
    RECORDS,
    TREES,
    CacheRegion,
    ContentCache,
    cache_key,
    estimate_size,
    source_key,
)
from fakes import RELAY_A, RELAY_B, FakeClock, make_record


def test_ttl_boundary():
    clock = FakeClock(1000.0)
    region = CacheRegion("lists", ttl_seconds=300, clock=clock)
    region.set("k", "value")

    clock.now = 1000.0 + 300 - 0.001
    assert region.get("k") == "value"

    clock.now = 1000.0 + 300 + 0.001
    assert region.get("k") is None


def test_ttl_miss_keeps_entry_for_stale_reads():
    clock = FakeClock()
    region = CacheRegion("records", ttl_seconds=10, clock=clock)
    region.set("k", "value")
    clock.advance(60)

    assert region.get("k") is None
    assert region.get_stale("k") == "value"
    assert region.size() == 1


def test_set_replaces_value_and_timestamp():
    clock = FakeClock()
    region = CacheRegion("records", ttl_seconds=10, clock=clock)
    region.set("k", "old")
    clock.advance(8)
    region.set("k", "new")
    clock.advance(8)

    assert region.get("k") == "new"
    assert region.entry("k").stored_at == clock.now - 8


def test_eviction_is_fifo_not_lru():
    region = CacheRegion("lists", ttl_seconds=300, max_entries=3, clock=FakeClock())
    for key in ("a", "b", "c"):
        region.set(key, key)

    # reading "a" does not protect it
    assert region.get("a") == "a"
    region.set("d", "d")

    assert region.keys() == ["b", "c", "d"]


def test_overwrite_keeps_insertion_position():
    region = CacheRegion("lists", ttl_seconds=300, max_entries=3, clock=FakeClock())
    for key in ("a", "b", "c"):
        region.set(key, key)
    region.set("a", "again")
    region.set("d", "d")

    assert region.keys() == ["b", "c", "d"]


def test_cap_plus_one_keeps_latest_cap_keys():
    region = CacheRegion("trees", ttl_seconds=600, max_entries=100, clock=FakeClock())
    for n in range(101):
        region.set(f"key-{n}", n)

    assert region.size() == 100
    assert region.keys() == [f"key-{n}" for n in range(1, 101)]


def test_region_rejects_zero_cap():
    with pytest.raises(ValueError):
        CacheRegion("x", ttl_seconds=1, max_entries=0)


def test_default_regions_and_caps():
    cache = ContentCache(clock=FakeClock())

    assert cache.names == [LISTS, RECORDS, TREES, COMMENTS, PROFILES]
    assert cache.region(LISTS).max_entries == 50
    assert cache.region(TREES).max_entries == 100
    assert cache.region(COMMENTS).ttl_seconds < cache.region(LISTS).ttl_seconds
    assert cache.region(LISTS).ttl_seconds < cache.region(TREES).ttl_seconds


def test_stats_and_clear_all():
    cache = ContentCache(clock=FakeClock())
    record = make_record("leaf")
    cache.region(RECORDS).set("leaf", record)
    cache.region(LISTS).set("documents", (record,))

    stats = cache.stats()

    assert stats["totalEntries"] == 2
    assert stats["regions"][RECORDS]["entries"] == 1
    assert stats["regions"][TREES]["entries"] == 0
    assert stats["totalBytes"] == sum(item["bytes"] for item in stats["regions"].values())
    assert stats["regions"][RECORDS]["bytes"] > len(record.content)

    cache.clear_all()

    assert cache.stats()["totalEntries"] == 0
    assert cache.stats()["totalBytes"] == 0


def test_estimate_size_counts_utf8_bytes():
    assert estimate_size("abc") == len('"abc"')
    assert estimate_size(None) == 0
    assert estimate_size({"k": "é"}) == len('{"k": "\\u00e9"}')


def test_keys_are_independent_of_source_order():
    assert source_key(None) == "default"
    assert source_key([]) == "default"
    assert source_key([RELAY_B, RELAY_A, RELAY_B]) == source_key([RELAY_A, RELAY_B])
    assert cache_key("documents", 500, "default") == "documents|500|default"
