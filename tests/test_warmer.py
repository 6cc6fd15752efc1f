from __future__ import annotations

import asyncio

from catalogue_cache.cache import ContentCache
from catalogue_cache.fanout import FanOutQueryEngine
from catalogue_cache.reader import LIST_DOCUMENTS, ContentReader
from catalogue_cache.records import KIND_ARTICLE
from catalogue_cache.warmer import (
    ARTICLE_COMMENTS,
    ARTICLES,
    COOLDOWN,
    DEPENDENCY_FAILED,
    DOCUMENT_COMMENTS,
    DOCUMENTS,
    FAILED,
    FRESH,
    HIGHLIGHTS,
    IN_PROGRESS,
    NO_ITEMS,
    WARMED,
    BackgroundWarmer,
    WarmerState,
)
from fakes import (
    RELAY_A,
    RELAY_B,
    FakeClock,
    FakeSource,
    make_comment,
    make_index,
    make_record,
)

SOURCES = [RELAY_A, RELAY_B]


def _setup(source: FakeSource, clock: FakeClock | None = None, **kwargs):
    clock = clock or FakeClock()
    engine = FanOutQueryEngine(source, default_sources=SOURCES, timeout_seconds=1)
    reader = ContentReader(engine, ContentCache(clock=clock), clock=clock)
    warmer = BackgroundWarmer(reader, WarmerState(), cooldown_seconds=1200, clock=clock, **kwargs)
    return reader, warmer


def _populated_source() -> FakeSource:
    leaf = make_record("leaf")
    book = make_index("book", [leaf])
    article = make_record("post", kind=KIND_ARTICLE)
    source = FakeSource()
    source.add(RELAY_A, leaf, book, article)
    source.add(RELAY_A, make_comment("on-book", 10, root=book), make_comment("on-post", 11, root=article))
    return source


def test_first_warm_populates_every_region():
    source = _populated_source()
    reader, warmer = _setup(source)

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes == {
        DOCUMENTS: WARMED,
        ARTICLES: WARMED,
        HIGHLIGHTS: WARMED,
        DOCUMENT_COMMENTS: WARMED,
        ARTICLE_COMMENTS: WARMED,
    }
    book = reader.cached_list(LIST_DOCUMENTS)[0]
    assert reader.cached_comment_pool(book.reference) is not None
    assert reader.stale_tree(book) is not None
    assert all(status["inProgress"] is False for status in warmer.status()["regions"].values())


def test_second_warm_within_cooldown_touches_no_network():
    source = _populated_source()
    clock = FakeClock()
    _, warmer = _setup(source, clock)
    asyncio.run(warmer.warm_all())
    calls = len(source.calls)

    clock.advance(600)
    outcomes = asyncio.run(warmer.warm_all())

    assert set(outcomes.values()) == {COOLDOWN}
    assert len(source.calls) == calls


def test_warm_after_cooldown_runs_again():
    source = _populated_source()
    clock = FakeClock()
    _, warmer = _setup(source, clock)
    asyncio.run(warmer.warm_all())

    clock.advance(1201)
    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[DOCUMENTS] == WARMED
    assert outcomes[DOCUMENT_COMMENTS] == WARMED


def test_fresh_cache_entries_are_not_refetched():
    source = _populated_source()
    reader, warmer = _setup(source)
    asyncio.run(reader.fetch_documents())
    asyncio.run(reader.fetch_articles())
    calls = len(source.calls)

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[DOCUMENTS] == FRESH
    assert outcomes[ARTICLES] == FRESH
    assert outcomes[HIGHLIGHTS] == WARMED
    assert outcomes[DOCUMENT_COMMENTS] == WARMED
    assert warmer.state.status(DOCUMENTS).last_warmed_at is not None
    # highlights list plus dependent tree and comment rounds, nothing for the fresh lists
    list_calls = [call for call in source.calls[calls:] if call[1][0].get("kinds") == [30040]]
    assert list_calls == []


def test_failing_region_does_not_stop_the_others():
    source = _populated_source()
    source.failing_kinds.add(KIND_ARTICLE)
    _, warmer = _setup(source)

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[ARTICLES] == FAILED
    assert outcomes[ARTICLE_COMMENTS] == DEPENDENCY_FAILED
    assert outcomes[DOCUMENTS] == WARMED
    assert outcomes[HIGHLIGHTS] == WARMED
    status = warmer.state.status(ARTICLES)
    assert status.in_progress is False
    assert status.last_warmed_at is None
    assert status.last_error.startswith("all 2 sources failed")


def test_failed_region_is_retried_on_next_call():
    source = _populated_source()
    source.failing_kinds.add(KIND_ARTICLE)
    _, warmer = _setup(source)
    asyncio.run(warmer.warm_all())

    source.failing_kinds.clear()
    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[ARTICLES] == WARMED
    assert outcomes[ARTICLE_COMMENTS] == WARMED
    assert warmer.state.status(ARTICLES).last_error is None


def test_empty_list_leaves_nothing_for_dependents():
    _, warmer = _setup(FakeSource())

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[DOCUMENTS] == WARMED
    assert outcomes[DOCUMENT_COMMENTS] == NO_ITEMS
    assert outcomes[ARTICLE_COMMENTS] == NO_ITEMS


def test_region_in_progress_is_skipped():
    clock = FakeClock()
    _, warmer = _setup(_populated_source(), clock)
    status = warmer.state.status(HIGHLIGHTS)
    status.in_progress = True
    status.started_at = clock.now

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[HIGHLIGHTS] == IN_PROGRESS
    assert outcomes[DOCUMENTS] == WARMED


def test_abandoned_in_progress_flag_is_reclaimed():
    clock = FakeClock()
    _, warmer = _setup(_populated_source(), clock, stale_after_seconds=600)
    status = warmer.state.status(HIGHLIGHTS)
    status.in_progress = True
    status.started_at = clock.now - 601

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[HIGHLIGHTS] == WARMED
    assert status.in_progress is False


def test_top_n_limits_dependent_items():
    books = [make_index(f"book-{n}", [], created_at=1000 + n) for n in range(5)]
    source = FakeSource()
    source.add(RELAY_A, *books)
    reader, warmer = _setup(source, top_n=2)

    asyncio.run(warmer.warm_all())

    warmed = [book for book in books if reader.cached_comment_pool(book.reference) is not None]
    assert warmed == books[-2:]


def test_independent_states_do_not_share_status():
    first = WarmerState()
    second = WarmerState()
    first.status(DOCUMENTS).in_progress = True

    assert second.status(DOCUMENTS).in_progress is False
    first.reset()
    assert first.status(DOCUMENTS).in_progress is False


def test_schedule_runs_at_most_one_background_task():
    source = _populated_source()
    source.delays[RELAY_A] = 0.01
    _, warmer = _setup(source)

    async def scenario():
        assert warmer.schedule() is True
        assert warmer.schedule() is False
        assert warmer.is_running()
        while warmer.is_running():
            await asyncio.sleep(0.01)
        return warmer.status()

    status = asyncio.run(scenario())

    assert status["running"] is False
    assert status["regions"][DOCUMENTS]["lastOutcome"] == WARMED


def test_close_cancels_running_task():
    source = _populated_source()
    source.delays[RELAY_A] = 5
    _, warmer = _setup(source)

    async def scenario():
        warmer.schedule()
        await asyncio.sleep(0.01)
        await warmer.close()
        return warmer.is_running()

    assert asyncio.run(scenario()) is False
    assert warmer.state.status(DOCUMENTS).in_progress is False


def test_overlapping_warms_still_warm_comment_pools():
    source = _populated_source()
    source.delays[RELAY_A] = 0.05
    reader, warmer = _setup(source)

    async def warm_twice():
        return await asyncio.gather(warmer.warm_all(), warmer.warm_all())

    first, second = asyncio.run(warm_twice())

    assert first[DOCUMENTS] == WARMED
    assert first[DOCUMENT_COMMENTS] == WARMED
    assert first[ARTICLE_COMMENTS] == WARMED
    assert second[DOCUMENTS] == IN_PROGRESS
    assert second[DOCUMENT_COMMENTS] == IN_PROGRESS
    assert second[ARTICLE_COMMENTS] == IN_PROGRESS
    book = reader.cached_list(LIST_DOCUMENTS)[0]
    assert reader.cached_comment_pool(book.reference) is not None


def test_no_items_does_not_start_the_cooldown():
    source = FakeSource()
    clock = FakeClock()
    reader, warmer = _setup(source, clock)
    asyncio.run(warmer.warm_all())
    assert warmer.state.status(DOCUMENT_COMMENTS).last_warmed_at is None

    source.add(RELAY_A, make_index("late-book", []))
    reader.clear_cache()
    asyncio.run(reader.fetch_documents())
    clock.advance(60)
    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[DOCUMENTS] == COOLDOWN
    assert outcomes[DOCUMENT_COMMENTS] == WARMED


def test_explicit_zero_settings_are_honoured():
    clock = FakeClock()
    _, warmer = _setup(_populated_source(), clock, top_n=0, stale_after_seconds=0)
    status = warmer.state.status(HIGHLIGHTS)
    status.in_progress = True
    status.started_at = clock.now - 1

    outcomes = asyncio.run(warmer.warm_all())

    assert outcomes[DOCUMENT_COMMENTS] == NO_ITEMS
    assert outcomes[HIGHLIGHTS] == WARMED
    assert warmer.status()["topN"] == 0
