"""Fetch orchestration tests: dedup, retry, caching and supersession."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest

from kiyya.cache import CacheConfig, CollectionCache
from kiyya.config import Settings
from kiyya.errors import ErrorCategory
from kiyya.models import CollectionQuery, ContentItem
from kiyya.orchestrator import (
    CollectionSession,
    ContentOrchestrator,
    FetchState,
    FetchStatus,
)
from kiyya.retry import RetryConfig


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeCatalog:
    """Delegate returning deterministic items per query and recording calls."""

    def __init__(
        self,
        *,
        delay: float = 0.0,
        page_sizes: dict[int, int] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.delay = delay
        self.page_sizes = page_sizes or {}
        self.error = error
        self.calls: list[CollectionQuery] = []

    async def __call__(self, query: CollectionQuery) -> list[ContentItem]:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        prefix = "-".join(query.tags) or "all"
        count = self.page_sizes.get(query.page, query.limit)
        return [
            ContentItem(
                claim_id=f"{prefix}-p{query.page}-{index}",
                title=f"{prefix} {query.page}.{index}",
                tags=query.tags,
            )
            for index in range(count)
        ]


class RecordingCache(CollectionCache):
    def __init__(self) -> None:
        super().__init__()
        self.operations: list[str] = []

    def get_collection(self, collection_id: str) -> list[ContentItem] | None:
        self.operations.append(f"get:{collection_id}")
        return super().get_collection(collection_id)

    def store_collection(self, collection_id: str, items: Any) -> None:
        self.operations.append(f"store:{collection_id}")
        super().store_collection(collection_id, items)


def build(fetch: Any, **kwargs: Any) -> ContentOrchestrator:
    kwargs.setdefault("cache", CollectionCache())
    kwargs.setdefault("sleep", RecordingSleep())
    return ContentOrchestrator(fetch, **kwargs)


def ids(state: FetchState) -> list[str]:
    return [item.claim_id for item in state.content]


@pytest.mark.anyio("asyncio")
async def test_full_page_reports_more_content() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog)

    state = await orchestrator.request_collection({"tags": ["movie"], "limit": 20})

    assert state.status is FetchStatus.SUCCESS
    assert len(state.content) == 20
    assert state.has_more is True
    assert state.from_cache is False
    assert state.error is None


@pytest.mark.anyio("asyncio")
async def test_short_page_reports_no_more_content() -> None:
    orchestrator = build(FakeCatalog(page_sizes={1: 3}))

    state = await orchestrator.request_collection({"tags": ["movie"], "limit": 20})

    assert len(state.content) == 3
    assert state.has_more is False


@pytest.mark.anyio("asyncio")
async def test_concurrent_requests_share_one_delegate_call() -> None:
    catalog = FakeCatalog(delay=0.3)
    orchestrator = build(catalog)
    query = CollectionQuery(tags=["series"])

    first = asyncio.ensure_future(orchestrator.request_collection(query))
    await asyncio.sleep(0.05)
    assert orchestrator.state.loading
    assert orchestrator.in_flight(query.collection_id)
    second = await orchestrator.request_collection(query)
    first_state = await first

    assert len(catalog.calls) == 1
    assert first_state.status is FetchStatus.SUCCESS
    assert second.status is FetchStatus.SUCCESS
    assert ids(first_state) == ids(second)
    assert not orchestrator.in_flight(query.collection_id)


@pytest.mark.anyio("asyncio")
async def test_tag_order_does_not_create_a_second_fetch() -> None:
    catalog = FakeCatalog(delay=0.05)
    orchestrator = build(catalog)

    first = asyncio.ensure_future(
        orchestrator.request_collection({"tags": ["series", "comedy_series"]})
    )
    await asyncio.sleep(0)
    await orchestrator.request_collection({"tags": ["comedy_series", "series"]})
    await first

    assert len(catalog.calls) == 1


@pytest.mark.anyio("asyncio")
async def test_persistent_timeout_retries_then_surfaces_error() -> None:
    catalog = FakeCatalog(error=RuntimeError("Request timeout"))
    sleep = RecordingSleep()
    orchestrator = build(
        catalog,
        sleep=sleep,
        retry_config=RetryConfig(max_retries=3, initial_delay=1.0, backoff_multiplier=2),
    )

    state = await orchestrator.request_collection({"tags": ["movie"]})

    assert len(catalog.calls) == 4
    assert [round(delay * 1000) for delay in sleep.delays] == [1000, 2000, 4000]
    assert state.status is FetchStatus.ERROR
    assert state.error is not None
    assert state.error.category is ErrorCategory.TIMEOUT
    assert state.error.retryable is True
    assert state.content == []
    assert state.has_more is False
    assert not orchestrator.in_flight(CollectionQuery(tags=["movie"]).collection_id)


@pytest.mark.anyio("asyncio")
async def test_cached_collection_is_served_without_fetching() -> None:
    catalog = FakeCatalog()
    cache = CollectionCache()
    first = build(catalog, cache=cache)
    second = build(catalog, cache=cache)

    fetched = await first.request_collection({"tags": ["kids"], "limit": 5})
    cached = await second.request_collection({"tags": ["kids"], "limit": 5})

    assert len(catalog.calls) == 1
    assert fetched.from_cache is False
    assert cached.from_cache is True
    assert cached.status is FetchStatus.SUCCESS
    assert cached.content is cache.get_collection(CollectionQuery(tags=["kids"], limit=5).collection_id)
    assert cached.has_more is True


@pytest.mark.anyio("asyncio")
async def test_force_refresh_and_refetch_bypass_cached_copy() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog)

    await orchestrator.request_collection({"tags": ["movie"], "limit": 5})
    forced = await orchestrator.request_collection(
        {"tags": ["movie"], "limit": 5, "forceRefresh": True}
    )
    refetched = await orchestrator.refetch()

    assert len(catalog.calls) == 3
    assert forced.from_cache is False
    assert refetched.from_cache is False
    assert refetched.collection_id == CollectionQuery(tags=["movie"], limit=5).collection_id


@pytest.mark.anyio("asyncio")
async def test_cache_bypass_never_touches_the_cache() -> None:
    catalog = FakeCatalog()
    cache = RecordingCache()
    orchestrator = build(catalog, cache=cache, use_cache=False)

    await orchestrator.request_collection({"tags": ["movie"]})
    await orchestrator.request_collection({"tags": ["movie"]})

    assert cache.operations == []
    assert len(catalog.calls) == 2
    assert orchestrator.caching_enabled is False


@pytest.mark.anyio("asyncio")
async def test_without_cache_every_request_fetches() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog, cache=None)

    await orchestrator.request_collection({"tags": ["movie"]})
    state = await orchestrator.request_collection({"tags": ["movie"]})

    assert len(catalog.calls) == 2
    assert state.from_cache is False


@pytest.mark.anyio("asyncio")
async def test_offline_fails_fast_without_retrying() -> None:
    catalog = FakeCatalog()
    sleep = RecordingSleep()
    orchestrator = build(catalog, sleep=sleep, is_online=lambda: False)

    state = await orchestrator.request_collection({"tags": ["movie"]})

    assert catalog.calls == []
    assert sleep.delays == []
    assert state.status is FetchStatus.ERROR
    assert state.error is not None
    assert state.error.category is ErrorCategory.OFFLINE
    assert state.error.retryable is False


@pytest.mark.anyio("asyncio")
async def test_load_more_appends_pages_until_exhausted() -> None:
    catalog = FakeCatalog(page_sizes={3: 1})
    orchestrator = build(catalog)

    await orchestrator.request_collection({"tags": ["movie"], "limit": 2})
    second = await orchestrator.load_more()

    assert ids(second) == ["movie-p1-0", "movie-p1-1", "movie-p2-0", "movie-p2-1"]
    assert second.page == 2
    assert second.has_more is True

    third = await orchestrator.load_more()
    assert len(third.content) == 5
    assert third.has_more is False

    calls = len(catalog.calls)
    unchanged = await orchestrator.load_more()
    assert len(catalog.calls) == calls
    assert unchanged is third


@pytest.mark.anyio("asyncio")
async def test_load_more_failure_keeps_existing_content() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog, retry_config=RetryConfig(max_retries=0))

    await orchestrator.request_collection({"tags": ["movie"], "limit": 2})
    catalog.error = RuntimeError("network down")
    state = await orchestrator.load_more()

    assert state.status is FetchStatus.ERROR
    assert state.error is not None
    assert state.error.category is ErrorCategory.NETWORK
    assert ids(state) == ["movie-p1-0", "movie-p1-1"]
    assert state.has_more is False


@pytest.mark.anyio("asyncio")
async def test_failed_refetch_clears_content() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog, retry_config=RetryConfig(max_retries=0))

    await orchestrator.request_collection({"tags": ["movie"], "limit": 2})
    catalog.error = RuntimeError("Invalid payload")
    state = await orchestrator.refetch()

    assert state.status is FetchStatus.ERROR
    assert state.error is not None
    assert state.error.category is ErrorCategory.VALIDATION
    assert state.content == []


@pytest.mark.anyio("asyncio")
async def test_result_for_an_abandoned_query_is_ignored() -> None:
    gate = asyncio.Event()

    class GatedCatalog(FakeCatalog):
        async def __call__(self, query: CollectionQuery) -> list[ContentItem]:
            if "movie" in query.tags:
                await gate.wait()
            return await super().__call__(query)

    catalog = GatedCatalog()
    cache = CollectionCache()
    orchestrator = build(catalog, cache=cache)
    movies = CollectionQuery(tags=["movie"], limit=2)
    series = CollectionQuery(tags=["series"], limit=2)

    pending = asyncio.ensure_future(orchestrator.request_collection(movies))
    await asyncio.sleep(0)
    current = await orchestrator.request_collection(series)
    gate.set()
    await pending

    assert ids(current) == ["series-p1-0", "series-p1-1"]
    assert orchestrator.state.collection_id == series.collection_id
    assert ids(orchestrator.state) == ["series-p1-0", "series-p1-1"]
    # The finished fetch is still worth caching.
    assert movies.collection_id in cache


@pytest.mark.anyio("asyncio")
async def test_reset_supersedes_running_fetch() -> None:
    catalog = FakeCatalog(delay=0.05)
    cache = RecordingCache()
    orchestrator = build(catalog, cache=cache)
    query = CollectionQuery(tags=["movie"])

    pending = asyncio.ensure_future(orchestrator.request_collection(query))
    await asyncio.sleep(0.01)
    orchestrator.reset()
    await pending

    assert orchestrator.state.status is FetchStatus.IDLE
    assert orchestrator.state.content == []
    assert f"store:{query.collection_id}" not in cache.operations
    assert not orchestrator.in_flight(query.collection_id)


@pytest.mark.anyio("asyncio")
async def test_dispose_and_restart_reuse_the_running_fetch() -> None:
    active = 0
    peak = 0
    calls = 0

    async def slow_catalog(query: CollectionQuery) -> list[ContentItem]:
        nonlocal active, peak, calls
        calls += 1
        active += 1
        peak = max(peak, active)
        try:
            await asyncio.sleep(0.05)
        finally:
            active -= 1
        return [ContentItem(claim_id=f"ep-{index}", title=f"Ep {index}") for index in range(2)]

    cache = RecordingCache()
    orchestrator = build(slow_catalog, cache=cache)
    first = CollectionSession(orchestrator, {"tags": ["series"]})
    pending = asyncio.ensure_future(first.start())
    await asyncio.sleep(0.01)
    first.dispose()
    assert orchestrator.state.status is FetchStatus.IDLE

    second = CollectionSession(orchestrator, {"tags": ["series"]})
    restarted = asyncio.ensure_future(second.start())
    await asyncio.sleep(0)
    assert orchestrator.state.status is FetchStatus.LOADING
    state = await restarted
    await pending

    assert calls == 1
    assert peak == 1
    assert state.status is FetchStatus.SUCCESS
    assert ids(state) == ["ep-0", "ep-1"]
    collection_id = orchestrator.resolve_query({"tags": ["series"]}).collection_id
    assert f"store:{collection_id}" in cache.operations
    assert not orchestrator.in_flight(collection_id)


@pytest.mark.anyio("asyncio")
async def test_cache_hit_reports_more_content_like_a_fresh_fetch() -> None:
    cache = CollectionCache(CacheConfig(max_items_in_memory=100))
    query = {"tags": ["movie"], "limit": 150}
    fresh_catalog = FakeCatalog()
    cached_catalog = FakeCatalog()

    fresh = await build(fresh_catalog, cache=cache).request_collection(query)
    cached = await build(cached_catalog, cache=cache).request_collection(query)

    assert [call.limit for call in fresh_catalog.calls] == [100]
    assert cached_catalog.calls == []
    assert cached.from_cache is True
    assert fresh.has_more is cached.has_more is True
    assert ids(fresh) == ids(cached)
    assert len(cached.content) == 100


@pytest.mark.anyio("asyncio")
async def test_subscribers_see_each_transition() -> None:
    orchestrator = build(FakeCatalog())
    seen: list[FetchStatus] = []

    def broken(state: FetchState) -> None:
        raise RuntimeError("listener bug")

    orchestrator.subscribe(broken)
    unsubscribe = orchestrator.subscribe(lambda state: seen.append(state.status))

    await orchestrator.request_collection({"tags": ["movie"]})
    unsubscribe()
    unsubscribe()
    await orchestrator.refetch()

    assert seen == [FetchStatus.LOADING, FetchStatus.SUCCESS]


@pytest.mark.anyio("asyncio")
async def test_default_limit_applies_only_when_unset() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog, default_limit=7)

    await orchestrator.request_collection({"tags": ["movie"]})
    await orchestrator.request_collection({"tags": ["movie"], "limit": 3})

    assert [call.limit for call in catalog.calls] == [7, 3]


@pytest.mark.anyio("asyncio")
async def test_delegate_payloads_are_validated() -> None:
    async def mapping_payload(query: CollectionQuery) -> Any:
        return {"items": []}

    async def raw_items(query: CollectionQuery) -> Any:
        return [{"claim_id": "abc", "title": "Raw", "tags": ["Movie"]}]

    rejected = await build(
        mapping_payload, retry_config=RetryConfig(max_retries=0)
    ).request_collection({"tags": ["movie"]})
    accepted = await build(raw_items).request_collection({"tags": ["movie"]})

    assert rejected.status is FetchStatus.ERROR
    assert rejected.error is not None
    assert rejected.error.category is ErrorCategory.VALIDATION
    assert accepted.content == [ContentItem(claim_id="abc", title="Raw", tags=("movie",))]


def test_from_settings_wires_cache_and_retry() -> None:
    settings = Settings(_env_file=None, CACHE_ENABLED=False, RETRY_MAX_RETRIES=1, DEFAULT_PAGE_SIZE=9)
    orchestrator = ContentOrchestrator.from_settings(FakeCatalog(), settings)

    assert orchestrator.caching_enabled is False
    assert orchestrator.resolve_query({"tags": ["movie"]}).limit == 9


@pytest.mark.parametrize("seed", range(8))
def test_interleaved_requests_fetch_each_collection_once(seed: int) -> None:
    rng = random.Random(seed)
    choices = [["movie"], ["series"], ["kids"], ["movie", "comedy_movies"]]
    requested = [rng.choice(choices) for _ in range(rng.randint(2, 8))]

    async def runner() -> tuple[FakeCatalog, ContentOrchestrator, list[FetchState]]:
        catalog = FakeCatalog(delay=rng.uniform(0.001, 0.02))
        orchestrator = build(catalog, cache=CollectionCache(CacheConfig(max_collections=10)))
        tasks = []
        for tags in requested:
            tasks.append(asyncio.ensure_future(orchestrator.request_collection({"tags": tags, "limit": 2})))
            await asyncio.sleep(rng.uniform(0, 0.01))
        states = await asyncio.gather(*tasks)
        return catalog, orchestrator, list(states)

    catalog, orchestrator, _ = asyncio.run(runner())

    distinct = {CollectionQuery(tags=tags, limit=2).collection_id for tags in requested}
    fetched = [call.collection_id for call in catalog.calls]
    assert sorted(fetched) == sorted(distinct)
    last = CollectionQuery(tags=requested[-1], limit=2)
    assert orchestrator.state.status is FetchStatus.SUCCESS
    assert orchestrator.state.collection_id == last.collection_id
    assert all(item.tags == last.tags for item in orchestrator.state.content)


@pytest.mark.anyio("asyncio")
async def test_session_update_with_same_collection_is_a_no_op() -> None:
    catalog = FakeCatalog()
    orchestrator = build(catalog)
    changes: list[FetchStatus] = []

    session = CollectionSession(
        orchestrator, {"tags": ["movie"]}, on_change=lambda state: changes.append(state.status)
    )
    with pytest.raises(RuntimeError):
        await session.update({"tags": ["movie"]})

    await session.start()
    await session.update({"tags": ["movie"]})
    await session.update(CollectionQuery(tags=["movie"]))
    assert len(catalog.calls) == 1

    await session.update({"tags": ["series"]})
    assert len(catalog.calls) == 2
    assert changes[-1] is FetchStatus.SUCCESS

    session.dispose()
    assert not session.active
    assert orchestrator.state.status is FetchStatus.IDLE


@pytest.mark.anyio("asyncio")
async def test_session_context_manager_disposes() -> None:
    catalog = FakeCatalog(page_sizes={2: 0})
    orchestrator = build(catalog)

    async with CollectionSession(orchestrator, {"tags": ["kids"], "limit": 3}) as session:
        assert session.active
        assert session.state.status is FetchStatus.SUCCESS
        more = await session.load_more()
        assert len(more.content) == 3
        assert more.has_more is False
        refreshed = await session.refetch()
        assert refreshed.from_cache is False

    assert not session.active
    assert orchestrator.state.status is FetchStatus.IDLE
