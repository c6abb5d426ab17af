"""Utility helpers for the Kiyya engine."""

from __future__ import annotations

import re
import unicodedata


def series_key_from_name(name: str) -> str:
    """Return the grouping key shared by every episode of a series.

    Punctuation is dropped rather than turned into a separator so that
    ``"Grey's Anatomy"`` and ``"Greys Anatomy"`` land on the same key.
    """

    normalized = unicodedata.normalize("NFKD", name or "")
    normalized = normalized.encode("ascii", "ignore").decode("ascii").lower()
    normalized = re.sub(r"[^a-z0-9\s-]", "", normalized)
    words = normalized.replace("-", " ").split()
    return "-".join(words) or "untitled"


def normalize_tags(values: object) -> tuple[str, ...]:
    """Trim, lower-case and de-duplicate tags while keeping their order."""

    if values is None:
        return ()
    if isinstance(values, str):
        raw_values = [values]
    else:
        try:
            raw_values = list(values)  # type: ignore[call-overload]
        except TypeError:
            return ()

    cleaned: list[str] = []
    for entry in raw_values:
        if not isinstance(entry, str):
            continue
        tag = entry.strip().lower()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return tuple(cleaned)


_SEASON_SUFFIX = re.compile(
    r"\s*[-–:|]?\s*\b(?:season|series|s)\s*(\d{1,3})\s*$", re.IGNORECASE
)


def split_season_suffix(title: str) -> tuple[str, int | None]:
    """Split a playlist title such as ``"Show - Season 2"`` into name and season."""

    text = (title or "").strip()
    match = _SEASON_SUFFIX.search(text)
    if not match or match.start() == 0:
        return text, None
    return text[: match.start()].strip(" -–:|"), int(match.group(1))
