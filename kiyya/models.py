"""Pydantic models describing catalog content, queries and series structure."""

from __future__ import annotations

import logging
from typing import Any, Literal, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
)

from .utils import normalize_tags, series_key_from_name, split_season_suffix

logger = logging.getLogger(__name__)

StreamType = Literal["mp4", "hls"]


class VideoUrl(BaseModel):
    """A playable URL for one quality of a claim."""

    model_config = ConfigDict(frozen=True)

    url: str
    quality: str
    type: StreamType = "hls"
    codec: str | None = None


class ContentItem(BaseModel):
    """A single remote claim returned by a fetch delegate.

    Instances are immutable; a re-fetch produces new instances.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    claim_id: str = Field(min_length=1)
    title: str = "Untitled"
    description: str | None = None
    tags: tuple[str, ...] = ()
    thumbnail_url: str | None = None
    duration: int | None = Field(default=None, ge=0)
    release_time: int = 0
    video_urls: dict[str, VideoUrl] = Field(default_factory=dict)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: object) -> tuple[str, ...]:
        return normalize_tags(value)

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


class CollectionQuery(BaseModel):
    """Parameters identifying a named collection of content."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tags: tuple[str, ...] = ()
    text: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=500)
    force_refresh: bool = Field(
        default=False,
        validation_alias=AliasChoices("force_refresh", "forceRefresh"),
    )

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: object) -> tuple[str, ...]:
        return normalize_tags(value)

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        if isinstance(value, str):
            collapsed = " ".join(value.split())
            return collapsed or None
        return value

    @property
    def collection_id(self) -> str:
        """Return the cache and deduplication key for this query.

        Tag order is irrelevant to the remote catalog, so tags are sorted.
        ``force_refresh`` changes how a collection is obtained, not which
        collection it is, and is therefore not part of the key.
        """

        tags = ",".join(sorted(self.tags))
        text = (self.text or "").casefold()
        return f"content:tags={tags};text={text};page={self.page};limit={self.limit}"

    def next_page(self) -> "CollectionQuery":
        return self.model_copy(update={"page": self.page + 1, "force_refresh": False})

    def first_page(self) -> "CollectionQuery":
        return self.model_copy(update={"page": 1})


class PlaylistItem(BaseModel):
    """A claim's slot within a playlist."""

    model_config = ConfigDict(frozen=True)

    claim_id: str = Field(min_length=1)
    position: int = Field(ge=0)
    episode_number: int | None = Field(default=None, ge=1)
    season_number: int | None = Field(default=None, ge=1)


class Playlist(BaseModel):
    """Authoritative episode ordering for one season of a series."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    title: str = ""
    claim_id: str = ""
    season_number: int | None = Field(default=None, ge=1)
    series_key: str | None = None
    items: tuple[PlaylistItem, ...] = ()

    @property
    def resolved_series_key(self) -> str:
        if self.series_key:
            return self.series_key
        name, _ = split_season_suffix(self.title)
        return series_key_from_name(name)

    @property
    def resolved_season_number(self) -> int | None:
        if self.season_number is not None:
            return self.season_number
        _, season = split_season_suffix(self.title)
        return season or None

    def ordered_items(self) -> list[PlaylistItem]:
        return sorted(self.items, key=lambda item: item.position)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Playlist":
        """Build a playlist, skipping malformed entries individually.

        Raises ``ValueError`` only when the playlist header itself is unusable.
        """

        if not isinstance(data, Mapping):
            raise ValueError("Playlist payload must be a mapping")

        raw_items = data.get("items") or []
        if not isinstance(raw_items, (list, tuple)):
            raw_items = []

        playlist_id = data.get("id") or data.get("claim_id")
        items: list[PlaylistItem] = []
        seen_positions: set[int] = set()
        for index, entry in enumerate(raw_items):
            if isinstance(entry, PlaylistItem):
                item = entry
            elif isinstance(entry, Mapping):
                try:
                    item = PlaylistItem.model_validate(entry)
                except ValidationError as exc:
                    logger.warning(
                        "Skipping malformed entry %s in playlist %s: %s",
                        index,
                        playlist_id,
                        exc.errors()[0].get("msg") if exc.errors() else exc,
                    )
                    continue
            else:
                logger.warning(
                    "Skipping non-mapping entry %s in playlist %s", index, playlist_id
                )
                continue
            if item.position in seen_positions:
                logger.warning(
                    "Skipping duplicate position %s in playlist %s",
                    item.position,
                    playlist_id,
                )
                continue
            seen_positions.add(item.position)
            items.append(item)

        header = {
            key: data.get(key)
            for key in ("title", "claim_id", "season_number", "series_key")
            if data.get(key) is not None
        }
        try:
            return cls(id=str(playlist_id or ""), items=tuple(items), **header)
        except ValidationError as exc:
            raise ValueError(f"Malformed playlist {playlist_id!r}") from exc


class Episode(BaseModel):
    """An episode placed within a season."""

    model_config = ConfigDict(frozen=True)

    claim_id: str
    title: str
    episode_number: int
    season_number: int
    thumbnail_url: str | None = None
    duration: int | None = None

    @classmethod
    def from_content(
        cls, content: ContentItem, *, episode_number: int, season_number: int
    ) -> "Episode":
        return cls(
            claim_id=content.claim_id,
            title=content.title,
            episode_number=episode_number,
            season_number=season_number,
            thumbnail_url=content.thumbnail_url,
            duration=content.duration,
        )


class Season(BaseModel):
    """Ordered episodes of one season."""

    number: int
    episodes: list[Episode] = Field(default_factory=list)
    inferred: bool = False
    playlist_id: str | None = None


class SeriesInfo(BaseModel):
    """A reconstructed series with its seasons in ascending order."""

    series_key: str
    title: str
    seasons: list[Season] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_episodes(self) -> int:
        return sum(len(season.episodes) for season in self.seasons)

    def season(self, number: int) -> Season | None:
        for season in self.seasons:
            if season.number == number:
                return season
        return None


class OrganizedContent(BaseModel):
    """Result of organizing a flat item list into series."""

    series: dict[str, SeriesInfo] = Field(default_factory=dict)
    non_series_content: list[ContentItem] = Field(default_factory=list)
    unclassified: list[ContentItem] = Field(default_factory=list)
