from __future__ import annotations

import re
import unicodedata


_NOISE_WORDS = r"(remaster(ed)?|remix(ed)?|live|acoustic|demo|radio edit|single version|album version|extended|edit)"

# Applied in order; each removes one family of catalog/noise decorations.
_NOISE_PATTERNS = [
    re.compile(r"\s*[-–—]\s*(\d{4}\s+)?" + _NOISE_WORDS + r"\s*\d*\s*", re.IGNORECASE),
    re.compile(r"\s*\(\s*(\d{4}\s+)?" + _NOISE_WORDS + r"\s*\d*\s*\)", re.IGNORECASE),
    re.compile(r"\s*\[\s*(\d{4}\s+)?" + _NOISE_WORDS + r"\s*\d*\s*\]", re.IGNORECASE),
    re.compile(r"\s*\(\d{4}(\s*remaster)?\)", re.IGNORECASE),
    re.compile(r"\s*\[\d{4}(\s*remaster)?\]", re.IGNORECASE),
    re.compile(r"\s*(\(|\[)?\s*\b(feat\.?|ft\.?|featuring|with)\s+[^)\]]+(\)|\])?", re.IGNORECASE),
    re.compile(r"\s*[-–—]\s*bonus\s*track", re.IGNORECASE),
    re.compile(r"\s*\(bonus\s*track\)", re.IGNORECASE),
    re.compile(r"\s*[-–—]\s*(deluxe|special|expanded|anniversary)\s*(edition|version)?", re.IGNORECASE),
]

_SINGLE_QUOTES_PATTERN = re.compile(r"[‘’‚‛]")
_DOUBLE_QUOTES_PATTERN = re.compile(r"[“”„‟]")
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s'\"-]", re.UNICODE)
_MULTISPACE_PATTERN = re.compile(r"\s+")

TRACK_URI_PREFIX = "spotify:track:"


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def normalize_text(value: str) -> str:
    """Lowercase, strip diacritics, unify quotes/ampersands and drop punctuation."""
    value = (value or "").lower()
    value = _strip_diacritics(value)
    value = _SINGLE_QUOTES_PATTERN.sub("'", value)
    value = _DOUBLE_QUOTES_PATTERN.sub('"', value)
    value = value.replace("&", "and")
    value = _PUNCTUATION_PATTERN.sub(" ", value)
    return _MULTISPACE_PATTERN.sub(" ", value).strip()


def _sanitize_once(value: str) -> str:
    for pattern in _NOISE_PATTERNS:
        value = pattern.sub("", value)
    return normalize_text(value)


def sanitize_name(value: str) -> str:
    """Remove remaster/live/feat./edition decorations and normalize the rest.

    Patterns are re-applied until the result is stable: normalization can expose
    a decoration that punctuation or diacritics were hiding, e.g. "x - !edit".
    Every pass after the first only removes characters, so the loop terminates.

    Example:
        >>> sanitize_name("Bohemian Rhapsody - 2011 Remaster")
        'bohemian rhapsody'
    """
    current = _sanitize_once(value or "")
    while True:
        following = _sanitize_once(current)
        if following == current:
            return current
        current = following


def make_match_key(artist_name: str, track_name: str) -> str:
    return f"{normalize_text(artist_name)}::{normalize_text(track_name)}"


def is_valid_track_uri(uri: object) -> bool:
    return (
        isinstance(uri, str)
        and uri.startswith(TRACK_URI_PREFIX)
        and len(uri) > len(TRACK_URI_PREFIX)
    )
