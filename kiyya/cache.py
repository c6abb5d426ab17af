"""Bounded in-memory store for fetched collections."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .models import ContentItem

logger = logging.getLogger(__name__)

# Rough footprint of one item including tags, URLs and metadata.
APPROX_ITEM_BYTES = 2048
# Each access buys a collection this many seconds of protection from eviction.
ACCESS_WEIGHT_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Limits and sweep behaviour for a :class:`CollectionCache`."""

    max_items_in_memory: int = 200
    max_collections: int = 10
    collection_ttl: float = 300.0
    auto_cleanup: bool = True
    cleanup_interval: float = 60.0

    def __post_init__(self) -> None:
        if self.max_items_in_memory < 0:
            raise ValueError("max_items_in_memory must not be negative")
        if self.max_collections < 1:
            raise ValueError("max_collections must be at least 1")


@dataclass(slots=True)
class _CacheEntry:
    id: str
    items: list[ContentItem]
    last_accessed: float
    access_count: int = 1

    @property
    def size(self) -> int:
        return len(self.items) * APPROX_ITEM_BYTES


@dataclass(frozen=True, slots=True)
class CollectionStats:
    id: str
    item_count: int
    size: int
    last_accessed: float
    access_count: int


@dataclass(frozen=True, slots=True)
class CacheStats:
    total_collections: int
    total_items: int
    estimated_size_bytes: int
    collections: list[CollectionStats] = field(default_factory=list)


class CollectionCache:
    """Maps collection ids to ordered item lists.

    Shared by every orchestrator that opts into caching. ``get_collection``
    returns the stored list itself so consumers may compare by identity.
    The optional background sweep needs a running event loop and is started
    with :meth:`start_auto_cleanup`.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def max_items(self) -> int:
        return self._config.max_items_in_memory

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, collection_id: object) -> bool:
        return collection_id in self._entries

    def store_collection(self, collection_id: str, items: Sequence[ContentItem]) -> None:
        """Replace the entry for ``collection_id``, keeping the first ``max_items``."""

        limited = list(items[: self._config.max_items_in_memory])
        existing = self._entries.get(collection_id)
        self._entries[collection_id] = _CacheEntry(
            id=collection_id,
            items=limited,
            last_accessed=self._clock(),
            access_count=existing.access_count + 1 if existing else 1,
        )
        if len(self._entries) > self._config.max_collections:
            self._evict_least_used(keep=collection_id)

    def get_collection(self, collection_id: str) -> list[ContentItem] | None:
        entry = self._entries.get(collection_id)
        if entry is None:
            return None
        entry.last_accessed = self._clock()
        entry.access_count += 1
        return entry.items

    def remove_collection(self, collection_id: str) -> bool:
        return self._entries.pop(collection_id, None) is not None

    def clear_all(self) -> None:
        self._entries.clear()

    def stats(self) -> CacheStats:
        collections = [
            CollectionStats(
                id=entry.id,
                item_count=len(entry.items),
                size=entry.size,
                last_accessed=entry.last_accessed,
                access_count=entry.access_count,
            )
            for entry in self._entries.values()
        ]
        return CacheStats(
            total_collections=len(collections),
            total_items=sum(stat.item_count for stat in collections),
            estimated_size_bytes=sum(stat.size for stat in collections),
            collections=collections,
        )

    def cleanup_expired(self) -> list[str]:
        """Drop entries idle for longer than the TTL and return their ids."""

        now = self._clock()
        expired = [
            entry.id
            for entry in self._entries.values()
            if now - entry.last_accessed > self._config.collection_ttl
        ]
        for collection_id in expired:
            del self._entries[collection_id]
        if expired:
            logger.debug("Cleaned up %s expired collections", len(expired))
        return expired

    def start_auto_cleanup(self) -> None:
        if not self._config.auto_cleanup:
            return
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop_auto_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    @property
    def auto_cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def destroy(self) -> None:
        await self.stop_auto_cleanup()
        self.clear_all()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval)
            try:
                self.cleanup_expired()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Cache sweep failed: %s", exc)

    def _evict_least_used(self, *, keep: str) -> None:
        candidates = sorted(
            (entry for entry in self._entries.values() if entry.id != keep),
            key=lambda entry: entry.last_accessed
            + entry.access_count * ACCESS_WEIGHT_SECONDS,
        )
        overflow = len(self._entries) - self._config.max_collections
        for entry in candidates[:overflow]:
            del self._entries[entry.id]
            logger.debug("Evicted cached collection %s", entry.id)
