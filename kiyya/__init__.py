"""Kiyya content acquisition and series organization engine."""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS: dict[str, str] = {
    "CatalogError": "kiyya.errors",
    "ClassifiedError": "kiyya.errors",
    "ErrorCategory": "kiyya.errors",
    "classify": "kiyya.errors",
    "RetryConfig": "kiyya.retry",
    "RETRY_PRESETS": "kiyya.retry",
    "run_with_backoff": "kiyya.retry",
    "CacheConfig": "kiyya.cache",
    "CollectionCache": "kiyya.cache",
    "CollectionSession": "kiyya.orchestrator",
    "ContentOrchestrator": "kiyya.orchestrator",
    "FetchState": "kiyya.orchestrator",
    "FetchStatus": "kiyya.orchestrator",
    "CollectionQuery": "kiyya.models",
    "ContentItem": "kiyya.models",
    "Playlist": "kiyya.models",
    "organize": "kiyya.series",
    "parse_episode_title": "kiyya.series",
    "Settings": "kiyya.config",
    "get_settings": "kiyya.config",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module 'kiyya' has no attribute {name}")
