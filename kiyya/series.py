"""Series reconstruction from flat catalog items.

Episodes are grouped into series and seasons from two sources:

* Playlists are authoritative. Inside a playlist-backed season the episode
  order is the playlist ``position`` order, whatever episode numbers the
  playlist or the titles carry.
* Items that no playlist mentions fall back to title parsing
  (``Name S01E02 - Title`` and friends). Those seasons are marked
  ``inferred`` and sorted by parsed episode number.

Series-tagged items that neither source can place are returned in
``OrganizedContent.unclassified`` rather than dropped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence, Union

from .categories import SERIES_CONTAINER_TAG, SERIES_TAGS, is_series_tagged
from .models import (
    ContentItem,
    Episode,
    OrganizedContent,
    Playlist,
    Season,
    SeriesInfo,
)
from .utils import series_key_from_name, split_season_suffix

logger = logging.getLogger(__name__)

_SEPARATOR = r"(?:\s*[-–—:|]\s*|\s+)"

_TITLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Show S01E02 - Title / Show S1E2 Title / Show S01 E02
    re.compile(
        rf"^(?P<series>.+?)\s+S(?P<season>\d{{1,3}})\s*E(?P<episode>\d{{1,4}})"
        rf"(?:{_SEPARATOR}(?P<title>.*))?$",
        re.IGNORECASE,
    ),
    # Show 1x02 - Title
    re.compile(
        rf"^(?P<series>.+?)\s+(?P<season>\d{{1,2}})x(?P<episode>\d{{1,3}})"
        rf"(?:{_SEPARATOR}(?P<title>.*))?$",
        re.IGNORECASE,
    ),
    # Show Season 1 Episode 2 - Title
    re.compile(
        rf"^(?P<series>.+?)\s+Season\s+(?P<season>\d{{1,3}})\s+Episode\s+(?P<episode>\d{{1,4}})"
        rf"(?:{_SEPARATOR}(?P<title>.*))?$",
        re.IGNORECASE,
    ),
    # Show S01E02Title
    re.compile(
        r"^(?P<series>.+?)\s+S(?P<season>\d{1,3})E(?P<episode>\d{1,4})(?P<title>[A-Za-z].*)$",
        re.IGNORECASE,
    ),
)


@dataclass(frozen=True, slots=True)
class ParsedTitle:
    series: str
    season: int
    episode: int
    episode_title: str = ""

    @property
    def series_key(self) -> str:
        return series_key_from_name(self.series)


@dataclass(frozen=True, slots=True)
class Unparsed:
    title: str


TitleParse = Union[ParsedTitle, Unparsed]


def parse_episode_title(title: str) -> TitleParse:
    """Parse an episode title into series name, season and episode numbers."""

    text = (title or "").strip()
    for pattern in _TITLE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        series = match.group("series").strip(" -–—:|")
        if not series:
            continue
        return ParsedTitle(
            series=series,
            season=int(match.group("season")),
            episode=int(match.group("episode")),
            episode_title=(match.group("title") or "").strip(),
        )
    return Unparsed(title=text)


def episodes_from_playlist(
    playlist: Playlist, content_map: Mapping[str, ContentItem]
) -> list[Episode]:
    """Return the playlist's episodes in ascending ``position`` order.

    Numbers come from the playlist entry first, then the title, then the
    position (episode) or 1 (season). They never affect the order.
    """

    episodes: list[Episode] = []
    for entry in playlist.ordered_items():
        content = content_map.get(entry.claim_id)
        if content is None:
            continue
        episode_number = entry.episode_number
        season_number = entry.season_number or playlist.resolved_season_number
        if episode_number is None or season_number is None:
            parsed = parse_episode_title(content.title)
            if isinstance(parsed, ParsedTitle):
                episode_number = episode_number or parsed.episode
                season_number = season_number or parsed.season
        episodes.append(
            Episode.from_content(
                content,
                episode_number=episode_number or entry.position + 1,
                season_number=season_number or 1,
            )
        )
    return episodes


def organize(
    items: Iterable[ContentItem],
    playlists: Iterable[Playlist | Mapping[str, Any]] = (),
    *,
    series_tags: Sequence[str] = SERIES_TAGS,
) -> OrganizedContent:
    """Reconstruct series from ``items`` using ``playlists`` where available.

    The result depends only on the arguments: the same input always yields an
    equal result, including ordering.
    """

    series_items: list[ContentItem] = []
    non_series: list[ContentItem] = []
    content_map: dict[str, ContentItem] = {}
    for item in items:
        if not is_series_tagged(item, series_tags):
            non_series.append(item)
            continue
        if item.claim_id in content_map:
            continue
        content_map[item.claim_id] = item
        series_items.append(item)

    series_map: dict[str, SeriesInfo] = {}
    claimed: set[str] = set()

    for playlist in _coerce_playlists(playlists):
        claimed.update(entry.claim_id for entry in playlist.items)
        episodes = episodes_from_playlist(playlist, content_map)
        if not episodes:
            continue
        series_key = playlist.resolved_series_key
        info = series_map.get(series_key)
        if info is None:
            name, _ = split_season_suffix(playlist.title)
            info = SeriesInfo(series_key=series_key, title=name or series_key)
            series_map[series_key] = info
        info.seasons.append(
            Season(
                number=playlist.resolved_season_number or 1,
                episodes=episodes,
                inferred=False,
                playlist_id=playlist.id,
            )
        )

    inferred: dict[str, dict[int, list[Episode]]] = {}
    inferred_titles: dict[str, str] = {}
    unplaced: set[str] = set()
    for item in series_items:
        if item.claim_id in claimed:
            continue
        parsed = parse_episode_title(item.title)
        if isinstance(parsed, Unparsed):
            unplaced.add(item.claim_id)
            continue
        series_key = parsed.series_key
        inferred_titles.setdefault(series_key, parsed.series)
        inferred.setdefault(series_key, {}).setdefault(parsed.season, []).append(
            Episode.from_content(
                item, episode_number=parsed.episode, season_number=parsed.season
            )
        )

    for series_key, seasons in inferred.items():
        info = series_map.get(series_key)
        if info is None:
            info = SeriesInfo(series_key=series_key, title=inferred_titles[series_key])
            series_map[series_key] = info
        authoritative = {season.number for season in info.seasons}
        for number in sorted(seasons):
            episodes = sorted(seasons[number], key=lambda episode: episode.episode_number)
            if number in authoritative:
                # Splicing these into a playlist-backed season would break its order.
                unplaced.update(episode.claim_id for episode in episodes)
                continue
            info.seasons.append(Season(number=number, episodes=episodes, inferred=True))

    for info in series_map.values():
        info.seasons.sort(key=lambda season: season.number)

    return OrganizedContent(
        series=series_map,
        non_series_content=non_series,
        unclassified=[item for item in series_items if item.claim_id in unplaced],
    )


def _coerce_playlists(
    playlists: Iterable[Playlist | Mapping[str, Any]],
) -> list[Playlist]:
    valid: list[Playlist] = []
    for index, raw in enumerate(playlists or ()):
        if isinstance(raw, Playlist):
            valid.append(raw)
            continue
        if not isinstance(raw, Mapping):
            logger.warning("Skipping playlist %s: unsupported type %s", index, type(raw).__name__)
            continue
        try:
            valid.append(Playlist.from_payload(raw))
        except ValueError as exc:
            logger.warning("Skipping playlist %s: %s", index, exc)
    return valid


def series_for_claim(
    claim_id: str,
    items: Iterable[ContentItem],
    playlists: Iterable[Playlist | Mapping[str, Any]] = (),
) -> SeriesInfo | None:
    """Return the series containing ``claim_id``, if any."""

    organized = organize(items, playlists)
    for info in organized.series.values():
        for season in info.seasons:
            if any(episode.claim_id == claim_id for episode in season.episodes):
                return info
    return None


def _locate(episode: Episode, series: SeriesInfo) -> tuple[int, int] | None:
    for season_index, season in enumerate(series.seasons):
        for episode_index, candidate in enumerate(season.episodes):
            if candidate.claim_id == episode.claim_id:
                return season_index, episode_index
    return None


def next_episode(current: Episode, series: SeriesInfo) -> Episode | None:
    """Return the episode after ``current``, moving into the next season if needed."""

    location = _locate(current, series)
    if location is None:
        return None
    season_index, episode_index = location
    episodes = series.seasons[season_index].episodes
    if episode_index + 1 < len(episodes):
        return episodes[episode_index + 1]
    for season in series.seasons[season_index + 1 :]:
        if season.episodes:
            return season.episodes[0]
    return None


def previous_episode(current: Episode, series: SeriesInfo) -> Episode | None:
    location = _locate(current, series)
    if location is None:
        return None
    season_index, episode_index = location
    if episode_index > 0:
        return series.seasons[season_index].episodes[episode_index - 1]
    for season in reversed(series.seasons[:season_index]):
        if season.episodes:
            return season.episodes[-1]
    return None


@dataclass(frozen=True, slots=True)
class SeasonValidation:
    valid: bool
    duplicates: list[int] = field(default_factory=list)
    gaps: list[int] = field(default_factory=list)


def validate_season_ordering(season: Season) -> SeasonValidation:
    """Report repeated and missing episode numbers within a season."""

    counts: dict[int, int] = {}
    for episode in season.episodes:
        counts[episode.episode_number] = counts.get(episode.episode_number, 0) + 1
    duplicates = sorted(number for number, count in counts.items() if count > 1)

    numbers = sorted(counts)
    gaps: list[int] = []
    for current, following in zip(numbers, numbers[1:]):
        gaps.extend(range(current + 1, following))

    return SeasonValidation(
        valid=not duplicates and not gaps, duplicates=duplicates, gaps=gaps
    )


def series_representative(
    series: SeriesInfo, items: Iterable[ContentItem]
) -> ContentItem | None:
    """Return the content item of the series' first episode."""

    if not series.seasons or not series.seasons[0].episodes:
        return None
    first = series.seasons[0].episodes[0]
    for item in items:
        if item.claim_id == first.claim_id:
            return item
    return None


def series_to_content_item(series: SeriesInfo, representative: ContentItem) -> ContentItem:
    """Return a card-sized stand-in for a whole series."""

    season_count = len(series.seasons)
    plural = "s" if season_count != 1 else ""
    return representative.model_copy(
        update={
            "title": series.title,
            "description": f"{season_count} season{plural} • {series.total_episodes} episodes",
            "tags": (*representative.tags, SERIES_CONTAINER_TAG),
        }
    )


def group_for_display(
    items: Sequence[ContentItem],
    playlists: Iterable[Playlist | Mapping[str, Any]] = (),
) -> list[ContentItem]:
    """Collapse each series into one card, followed by everything else."""

    organized = organize(items, playlists)
    grouped: list[ContentItem] = []
    for info in organized.series.values():
        representative = series_representative(info, items)
        if representative is not None:
            grouped.append(series_to_content_item(info, representative))
    grouped.extend(organized.non_series_content)
    grouped.extend(organized.unclassified)
    return grouped
