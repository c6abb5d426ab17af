"""Base category vocabulary used to route catalog content."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .models import ContentItem

UNCATEGORIZED = "uncategorized"
SERIES_CONTAINER_TAG = "__series_container__"


@dataclass(frozen=True)
class FilterDefinition:
    """A genre filter offered inside a category."""

    label: str
    tag: str


@dataclass(frozen=True)
class CategoryDefinition:
    """Describes a top-level category and the base tag that selects it."""

    key: str
    label: str
    base_tag: str
    filters: tuple[FilterDefinition, ...] = ()
    series_like: bool = False


CATEGORIES: tuple[CategoryDefinition, ...] = (
    CategoryDefinition(
        key="movies",
        label="Movies",
        base_tag="movie",
        filters=(
            FilterDefinition(label="Comedy", tag="comedy_movies"),
            FilterDefinition(label="Action", tag="action_movies"),
            FilterDefinition(label="Romance", tag="romance_movies"),
        ),
    ),
    CategoryDefinition(
        key="series",
        label="Series",
        base_tag="series",
        filters=(
            FilterDefinition(label="Comedy", tag="comedy_series"),
            FilterDefinition(label="Action", tag="action_series"),
            FilterDefinition(label="Romance", tag="romance_series"),
        ),
        series_like=True,
    ),
    CategoryDefinition(
        key="sitcoms",
        label="Sitcoms",
        base_tag="sitcom",
        series_like=True,
    ),
    CategoryDefinition(
        key="kids",
        label="Kids",
        base_tag="kids",
        filters=(
            FilterDefinition(label="Comedy", tag="comedy_kids"),
            FilterDefinition(label="Action", tag="action_kids"),
        ),
    ),
    CategoryDefinition(
        key="hero",
        label="Featured",
        base_tag="hero_trailer",
    ),
)

BASE_TAGS: tuple[str, ...] = tuple(category.base_tag for category in CATEGORIES)
SERIES_TAGS: tuple[str, ...] = tuple(
    category.base_tag for category in CATEGORIES if category.series_like
)


def is_base_tag(tag: str) -> bool:
    return tag in BASE_TAGS


def is_filter_tag(tag: str) -> bool:
    return base_tag_for_filter(tag) is not None


def base_tag_for_filter(tag: str) -> str | None:
    """Return the base tag owning a filter tag, if any."""

    for category in CATEGORIES:
        if any(entry.tag == tag for entry in category.filters):
            return category.base_tag
    return None


def category_tags(key: str) -> tuple[str, ...]:
    """Return the base tag followed by every filter tag for a category key."""

    for category in CATEGORIES:
        if category.key == key:
            return (category.base_tag, *(entry.tag for entry in category.filters))
    raise KeyError(f"Unknown category {key}")


def base_tags_of(item: ContentItem) -> tuple[str, ...]:
    """Return the base tags present on an item, in vocabulary order."""

    return tuple(tag for tag in BASE_TAGS if item.has_tag(tag))


def primary_category(item: ContentItem) -> str | None:
    """Return the item's single base tag.

    Items carrying no base tag, or more than one, have no primary category.
    """

    tags = base_tags_of(item)
    if len(tags) != 1:
        return None
    return tags[0]


def is_series_tagged(
    item: ContentItem, series_tags: Iterable[str] = SERIES_TAGS
) -> bool:
    return any(item.has_tag(tag) for tag in series_tags)


def categorize(items: Iterable[ContentItem]) -> dict[str, list[ContentItem]]:
    """Bucket items by primary category, preserving input order per bucket."""

    buckets: dict[str, list[ContentItem]] = {tag: [] for tag in BASE_TAGS}
    buckets[UNCATEGORIZED] = []
    for item in items:
        buckets[primary_category(item) or UNCATEGORIZED].append(item)
    return buckets
