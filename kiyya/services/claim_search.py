"""Reference fetch delegate backed by the catalog's ``claim_search`` API."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

import httpx

from ..config import Settings
from ..errors import (
    CatalogError,
    CatalogNetworkError,
    CatalogTimeoutError,
    CatalogValidationError,
)
from ..models import CollectionQuery, ContentItem, Playlist, PlaylistItem, VideoUrl
from ..utils import normalize_tags, series_key_from_name, split_season_suffix

logger = logging.getLogger(__name__)

PlaybackUrlBuilder = Callable[[str], Optional[str]]


class ClaimSearchClient:
    """Fetch collections and playlists from a JSON-RPC catalog proxy.

    ``fetch_collection`` matches the fetch delegate signature expected by
    :class:`~kiyya.orchestrator.ContentOrchestrator`.
    """

    _PLAYLIST_PAGE_SIZE = 50

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_url: str,
        channel_id: str | None = None,
        playback_url: PlaybackUrlBuilder | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._client = http_client
        self._api_url = api_url
        self._channel_id = channel_id
        self._playback_url = playback_url
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        playback_url: PlaybackUrlBuilder | None = None,
    ) -> "ClaimSearchClient":
        return cls(
            http_client,
            api_url=str(settings.catalog_api_url),
            channel_id=settings.catalog_channel_id,
            playback_url=playback_url,
            timeout=settings.catalog_request_timeout,
        )

    async def fetch_collection(self, query: CollectionQuery) -> list[ContentItem]:
        """Return one page of stream claims matching ``query``."""

        params: dict[str, Any] = {
            "page": query.page,
            "page_size": query.limit,
            "order_by": ["release_time"],
        }
        if self._channel_id:
            params["channel"] = self._channel_id
        if query.tags:
            params["any_tags"] = list(query.tags)
        if query.text:
            params["text"] = query.text

        data = await self._call("claim_search", params)
        items: list[ContentItem] = []
        for raw in _claim_items(data):
            item = self.parse_claim(raw)
            if item is not None:
                items.append(item)
        logger.debug(
            "claim_search page %s returned %s usable claims", query.page, len(items)
        )
        return items

    async def fetch_playlists(self) -> list[Playlist]:
        """Return the channel's collection claims as playlists."""

        params: dict[str, Any] = {
            "claim_type": ["collection"],
            "page_size": self._PLAYLIST_PAGE_SIZE,
            "page": 1,
        }
        if self._channel_id:
            params["channel"] = self._channel_id

        data = await self._call("claim_search", params)
        playlists: list[Playlist] = []
        for raw in _claim_items(data):
            playlist = parse_playlist_claim(raw)
            if playlist is not None:
                playlists.append(playlist)
        return playlists

    def parse_claim(self, raw: Any) -> ContentItem | None:
        """Convert a raw claim into a :class:`ContentItem` or ``None`` if unusable."""

        if not isinstance(raw, Mapping):
            logger.warning("Skipping non-object claim: %r", raw)
            return None
        claim_id = str(raw.get("claim_id") or "").strip()
        if not claim_id:
            logger.warning("Skipping claim without claim_id")
            return None
        if not _is_stream(raw):
            logger.warning("Skipping non-stream claim %s", claim_id)
            return None

        value = raw.get("value") if isinstance(raw.get("value"), Mapping) else {}
        video_urls: dict[str, VideoUrl] = {}
        if self._playback_url is not None:
            url = self._playback_url(claim_id)
            if url:
                video_urls["master"] = VideoUrl(url=url, quality="master", type="hls")

        return ContentItem(
            claim_id=claim_id,
            title=_first_text(value.get("title"), raw.get("title"), raw.get("name"))
            or "Untitled",
            description=_first_text(value.get("description"), raw.get("description")),
            tags=normalize_tags(_first_list(value.get("tags"), raw.get("tags"))),
            thumbnail_url=_thumbnail(value, raw),
            duration=_duration(value),
            release_time=_as_int(value.get("release_time"))
            or _as_int(raw.get("timestamp"))
            or _as_int(raw.get("release_time"))
            or 0,
            video_urls=video_urls,
        )

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(
                self._api_url,
                params={"m": method},
                json={"jsonrpc": "2.0", "method": method, "params": params},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise CatalogTimeoutError(f"Catalog request timed out: {method}") from exc
        except httpx.HTTPStatusError as exc:
            raise CatalogNetworkError(
                f"Catalog connection failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise CatalogNetworkError(f"Catalog connection failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogValidationError("Invalid JSON returned by catalog") from exc
        if not isinstance(payload, Mapping):
            raise CatalogValidationError("Invalid response envelope from catalog")

        error = payload.get("error")
        if error or payload.get("success") is False:
            message = error.get("message") if isinstance(error, Mapping) else error
            raise CatalogError(f"Catalog rejected {method}: {message or 'unknown error'}")

        return payload["data"] if "data" in payload else payload.get("result")


def parse_playlist_claim(raw: Any) -> Playlist | None:
    """Convert a collection claim into a :class:`Playlist` in claim-list order."""

    if not isinstance(raw, Mapping):
        return None
    claim_id = str(raw.get("claim_id") or "").strip()
    if not claim_id:
        logger.warning("Skipping collection without claim_id")
        return None

    value = raw.get("value") if isinstance(raw.get("value"), Mapping) else {}
    title = _first_text(value.get("title"), raw.get("title"), raw.get("name")) or ""
    if not title:
        logger.warning("Collection %s has no title", claim_id)
    name, season_number = split_season_suffix(title)

    items = [
        PlaylistItem(claim_id=entry.strip(), position=position)
        for position, entry in enumerate(value.get("claims") or [])
        if isinstance(entry, str) and entry.strip()
    ]
    return Playlist.from_payload(
        {
            "id": claim_id,
            "claim_id": claim_id,
            "title": title,
            "season_number": season_number or None,
            "series_key": series_key_from_name(name) if name else None,
            "items": items,
        }
    )


def _claim_items(data: Any) -> list[Any]:
    if not isinstance(data, Mapping):
        raise CatalogValidationError("Invalid catalog data: missing result object")
    items = data.get("items")
    if not isinstance(items, list):
        raise CatalogValidationError("Invalid catalog data: no items array")
    return items


def _is_stream(raw: Mapping[str, Any]) -> bool:
    value_type = raw.get("value_type")
    if value_type is not None:
        return value_type == "stream"
    value = raw.get("value")
    source = value.get("source") if isinstance(value, Mapping) else None
    return isinstance(source, Mapping) and bool(source.get("sd_hash"))


def _first_text(*candidates: Any) -> str | None:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _first_list(*candidates: Any) -> list[Any]:
    for candidate in candidates:
        if isinstance(candidate, list):
            return candidate
    return []


def _http_url(candidate: Any) -> str | None:
    if isinstance(candidate, Mapping):
        candidate = candidate.get("url")
    if isinstance(candidate, str) and candidate.startswith("http"):
        return candidate
    return None


def _thumbnail(value: Mapping[str, Any], raw: Mapping[str, Any]) -> str | None:
    for candidate in (
        value.get("thumbnail"),
        raw.get("thumbnail"),
        value.get("cover"),
        value.get("image"),
    ):
        url = _http_url(candidate)
        if url:
            return url
    return None


def _duration(value: Mapping[str, Any]) -> int | None:
    video = value.get("video") if isinstance(value.get("video"), Mapping) else {}
    for candidate in (video.get("duration"), value.get("duration"), value.get("length")):
        duration = _as_int(candidate)
        if duration is not None and duration >= 0:
            return duration
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
