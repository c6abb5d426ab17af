"""Deduplicated, retried, cache-aware collection fetching."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Sequence

from pydantic import ValidationError

from .cache import CollectionCache
from .config import Settings
from .errors import CatalogOfflineError, CatalogValidationError, ClassifiedError, classify
from .models import CollectionQuery, ContentItem
from .retry import DEFAULT_RETRY_CONFIG, RetryConfig, SleepFunc, run_with_backoff

logger = logging.getLogger(__name__)

FetchDelegate = Callable[[CollectionQuery], Awaitable[Sequence[Any]]]
StateListener = Callable[["FetchState"], object]

# Upper bound for appended pages when no cache supplies one.
DEFAULT_APPEND_CAP = 200


class FetchStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class FetchState:
    """Snapshot published to consumers after every transition."""

    status: FetchStatus = FetchStatus.IDLE
    content: list[ContentItem] = field(default_factory=list)
    error: ClassifiedError | None = None
    has_more: bool = False
    from_cache: bool = False
    collection_id: str | None = None
    page: int = 1

    @property
    def loading(self) -> bool:
        return self.status is FetchStatus.LOADING

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "content": [item.model_dump(mode="json") for item in self.content],
            "error": self.error.to_payload() if self.error else None,
            "hasMore": self.has_more,
            "fromCache": self.from_cache,
            "page": self.page,
        }


@dataclass(slots=True)
class _InFlight:
    task: asyncio.Task[None]
    token: int
    owner: str
    append: bool


class ContentOrchestrator:
    """Fetches collections for one consumer and publishes its state.

    At most one fetch runs per collection id; later callers for the same id
    wait on the running one instead of starting another. Each started fetch
    takes a token from a per-id counter, and a settled fetch only touches
    state when its token is still the newest for that id and its collection
    is still the one this orchestrator is showing. A fetch superseded by
    ``reset`` keeps its in-flight marker until it settles, and a caller that
    asks for the same collection again takes it back over.
    """

    def __init__(
        self,
        fetch: FetchDelegate,
        *,
        cache: CollectionCache | None = None,
        use_cache: bool = True,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        is_online: Callable[[], bool] | None = None,
        default_limit: int | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self._cache = cache if use_cache else None
        self._retry_config = retry_config
        self._is_online = is_online
        self._default_limit = default_limit
        self._sleep = sleep

        self._state = FetchState()
        self._query: CollectionQuery | None = None
        self._active_id: str | None = None
        self._inflight: dict[str, _InFlight] = {}
        self._tokens: dict[str, int] = {}
        self._counter = itertools.count(1)
        self._listeners: list[StateListener] = []

    @classmethod
    def from_settings(
        cls,
        fetch: FetchDelegate,
        settings: Settings,
        *,
        cache: CollectionCache | None = None,
        **kwargs: Any,
    ) -> "ContentOrchestrator":
        if settings.cache_enabled and cache is None:
            cache = CollectionCache(settings.cache_config)
        return cls(
            fetch,
            cache=cache,
            use_cache=settings.cache_enabled,
            retry_config=settings.retry_config,
            default_limit=settings.default_page_size,
            **kwargs,
        )

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def query(self) -> CollectionQuery | None:
        return self._query

    @property
    def caching_enabled(self) -> bool:
        return self._cache is not None

    def in_flight(self, collection_id: str) -> bool:
        return collection_id in self._inflight

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener`` for every published state; returns an unsubscriber."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def resolve_query(
        self, query: CollectionQuery | Mapping[str, Any] | None
    ) -> CollectionQuery:
        """Validate ``query``, apply the default page size and cap it at the cache size."""

        if query is None:
            resolved = CollectionQuery()
        elif isinstance(query, CollectionQuery):
            resolved = query
        else:
            resolved = CollectionQuery.model_validate(query)
        if self._default_limit is not None and "limit" not in resolved.model_fields_set:
            resolved = resolved.model_copy(update={"limit": self._default_limit})
        if self._cache is not None and 0 < self._cache.max_items < resolved.limit:
            # A page larger than the cache keeps would come back truncated on a hit.
            logger.debug(
                "Clamping page size %s to cache limit %s",
                resolved.limit,
                self._cache.max_items,
            )
            resolved = resolved.model_copy(update={"limit": self._cache.max_items})
        return resolved

    async def request_collection(
        self, query: CollectionQuery | Mapping[str, Any] | None = None
    ) -> FetchState:
        """Fetch the collection described by ``query`` and return the settled state.

        Never raises for delegate failures; they surface as an ``error`` state.
        """

        resolved = self.resolve_query(query)
        collection_id = resolved.collection_id
        self._query = resolved
        self._active_id = collection_id
        return await self._fetch_or_attach(resolved, owner=collection_id, append=False)

    async def refetch(self) -> FetchState:
        """Fetch the current collection again, ignoring any cached copy."""

        if self._query is None:
            return self._state
        query = self._query.model_copy(update={"force_refresh": True})
        collection_id = query.collection_id
        self._active_id = collection_id
        return await self._fetch_or_attach(query, owner=collection_id, append=False)

    async def load_more(self) -> FetchState:
        """Append the next page of the current collection."""

        if self._query is None or self._active_id is None or not self._state.has_more:
            return self._state
        next_query = self._query.model_copy(
            update={"page": self._state.page + 1, "force_refresh": False}
        )
        return await self._fetch_or_attach(next_query, owner=self._active_id, append=True)

    def reset(self) -> None:
        """Return to ``idle`` and supersede every fetch that is still running.

        Running fetches are not aborted. Their results are ignored when they
        settle unless the same collection is requested again first.
        """

        for collection_id in self._inflight:
            self._tokens[collection_id] = next(self._counter)
        self._query = None
        self._active_id = None
        self._publish(FetchState())

    async def _fetch_or_attach(
        self, query: CollectionQuery, *, owner: str, append: bool
    ) -> FetchState:
        collection_id = query.collection_id
        running = self._inflight.get(collection_id)
        while running is not None and (running.owner != owner or running.append != append):
            logger.debug("Waiting for unrelated fetch of %s to settle", collection_id)
            await asyncio.shield(running.task)
            running = self._inflight.get(collection_id)
        if running is None:
            return await self._start(query, owner=owner, append=append)

        logger.debug("Attaching to in-flight fetch for %s", collection_id)
        if self._tokens.get(collection_id) != running.token:
            logger.debug("Reclaiming superseded fetch for %s", collection_id)
            self._tokens[collection_id] = running.token
            if self._state.status is FetchStatus.IDLE:
                self._publish(
                    FetchState(
                        status=FetchStatus.LOADING,
                        collection_id=owner,
                        page=query.page,
                    )
                )
        await asyncio.shield(running.task)
        return self._state

    async def _start(
        self, query: CollectionQuery, *, owner: str, append: bool
    ) -> FetchState:
        collection_id = query.collection_id
        token = next(self._counter)
        self._tokens[collection_id] = token

        if self._is_online is not None and not self._is_online():
            logger.debug("Offline; skipping fetch for %s", collection_id)
            self._apply_failure(
                CatalogOfflineError("No internet connection"),
                owner=owner,
                append=append,
                page=query.page,
            )
            return self._state

        if self._cache is not None and not query.force_refresh:
            cached = self._cache.get_collection(collection_id)
            if cached is not None:
                logger.debug("Cache hit for %s (%s items)", collection_id, len(cached))
                self._apply_success(
                    query, cached, owner=owner, append=append, from_cache=True
                )
                return self._state
            logger.debug("Cache miss for %s", collection_id)

        if append:
            loading = replace(self._state, status=FetchStatus.LOADING, error=None)
        else:
            keep = self._state.content if self._state.collection_id == owner else []
            loading = FetchState(
                status=FetchStatus.LOADING,
                content=keep,
                has_more=self._state.has_more if keep else False,
                collection_id=owner,
                page=self._state.page if keep else query.page,
            )
        self._publish(loading)

        task = asyncio.ensure_future(self._run(query, token, owner=owner, append=append))
        self._inflight[collection_id] = _InFlight(
            task=task, token=token, owner=owner, append=append
        )
        await asyncio.shield(task)
        return self._state

    async def _run(
        self, query: CollectionQuery, token: int, *, owner: str, append: bool
    ) -> None:
        collection_id = query.collection_id

        async def _attempt() -> list[ContentItem]:
            return _coerce_items(await self._fetch(query))

        try:
            items = await run_with_backoff(
                _attempt,
                self._retry_config,
                sleep=self._sleep,
                label=f"fetch {collection_id}",
            )
        except Exception as exc:
            self._release(collection_id)
            if not self._is_current(collection_id, token, owner):
                logger.debug("Discarding superseded failure for %s", collection_id)
                return
            self._apply_failure(exc, owner=owner, append=append, page=query.page)
            return

        self._release(collection_id)
        if self._tokens.get(collection_id) != token:
            logger.debug("Discarding superseded result for %s", collection_id)
            return
        if self._cache is not None:
            self._cache.store_collection(collection_id, items)
        if self._active_id != owner:
            logger.debug("Discarding result for inactive collection %s", collection_id)
            return
        self._apply_success(query, items, owner=owner, append=append, from_cache=False)

    def _release(self, collection_id: str) -> None:
        running = self._inflight.get(collection_id)
        if running is not None and running.task is asyncio.current_task():
            del self._inflight[collection_id]

    def _is_current(self, collection_id: str, token: int, owner: str) -> bool:
        return self._tokens.get(collection_id) == token and self._active_id == owner

    def _apply_success(
        self,
        query: CollectionQuery,
        items: list[ContentItem],
        *,
        owner: str,
        append: bool,
        from_cache: bool,
    ) -> None:
        if append:
            cap = self._cache.max_items if self._cache is not None else DEFAULT_APPEND_CAP
            content = [*self._state.content, *items][:cap]
        else:
            content = items
        self._publish(
            FetchState(
                status=FetchStatus.SUCCESS,
                content=content,
                error=None,
                has_more=len(items) == query.limit,
                from_cache=from_cache,
                collection_id=owner,
                page=query.page,
            )
        )

    def _apply_failure(
        self, failure: Exception, *, owner: str, append: bool, page: int
    ) -> None:
        classified = classify(failure)
        logger.warning(
            "Fetch for %s failed (%s): %s", owner, classified.category.value, failure
        )
        if append:
            # A failed page keeps what is already on screen.
            state = replace(
                self._state,
                status=FetchStatus.ERROR,
                error=classified,
                has_more=False,
                from_cache=False,
            )
        else:
            state = FetchState(
                status=FetchStatus.ERROR,
                content=[],
                error=classified,
                has_more=False,
                from_cache=False,
                collection_id=owner,
                page=page,
            )
        self._publish(state)

    def _publish(self, state: FetchState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener %r failed", listener)


class CollectionSession:
    """Binds one consumer's query to an orchestrator over its lifetime.

    ``update`` with a query that maps to the collection already being shown
    does nothing unless the orchestrator is idle.
    """

    def __init__(
        self,
        orchestrator: ContentOrchestrator,
        query: CollectionQuery | Mapping[str, Any] | None = None,
        *,
        on_change: StateListener | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._query = orchestrator.resolve_query(query) if query is not None else None
        self._on_change = on_change
        self._unsubscribe: Callable[[], None] | None = None
        self._started = False

    @property
    def state(self) -> FetchState:
        return self._orchestrator.state

    @property
    def active(self) -> bool:
        return self._started

    async def start(self) -> FetchState:
        if not self._started and self._on_change is not None:
            self._unsubscribe = self._orchestrator.subscribe(self._on_change)
        self._started = True
        if self._query is None:
            return self.state
        return await self._orchestrator.request_collection(self._query)

    async def update(self, query: CollectionQuery | Mapping[str, Any]) -> FetchState:
        if not self.active:
            raise RuntimeError("Session is not started")
        resolved = self._orchestrator.resolve_query(query)
        current = self._orchestrator.query
        if (
            self.state.status is not FetchStatus.IDLE
            and current is not None
            and current.collection_id == resolved.collection_id
        ):
            return self.state
        self._query = resolved
        return await self._orchestrator.request_collection(resolved)

    async def refetch(self) -> FetchState:
        return await self._orchestrator.refetch()

    async def load_more(self) -> FetchState:
        return await self._orchestrator.load_more()

    def dispose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._started = False
        self._orchestrator.reset()

    async def __aenter__(self) -> "CollectionSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.dispose()


def _coerce_items(result: Any) -> list[ContentItem]:
    if result is None or isinstance(result, (str, bytes, Mapping)):
        raise CatalogValidationError("Invalid response from catalog: expected a list of items")
    if isinstance(result, list) and all(isinstance(item, ContentItem) for item in result):
        return result
    try:
        return [
            item if isinstance(item, ContentItem) else ContentItem.model_validate(item)
            for item in result
        ]
    except (TypeError, ValidationError) as exc:
        raise CatalogValidationError(f"Invalid content data: {exc}") from exc
