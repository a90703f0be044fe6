"""Source URL canonicalisation and per-type source configuration."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit


class SourceType(str, Enum):
    RSS = "rss"
    YOUTUBE_CHANNEL = "youtube-channel"
    YOUTUBE_PLAYLIST = "youtube-playlist"
    WEB_PAGE = "web-page"


class InvalidSourceURLError(ValueError):
    """Raised when a string cannot be interpreted as an http(s) source URL."""


@dataclass(frozen=True, slots=True)
class NormalizedSource:
    source_type: SourceType
    identifier: str
    canonical_url: str

    @property
    def duplicate_key(self) -> str:
        return duplicate_key(self.source_type, self.identifier)


_YOUTUBE_HOST_RE = re.compile(r"(^|\.)youtube\.com$")
_DEFAULT_PORTS = {"http": 80, "https": 443}
_FEED_HINTS = ("/feed", "/feeds", ".rss", ".xml", ".atom", ".rdf")
_TRACKING_KEYS = {"utm", "fbclid"}


def duplicate_key(source_type: SourceType | str, identifier: str) -> str:
    type_value = source_type.value if isinstance(source_type, SourceType) else str(source_type)
    return f"{type_value}::{identifier.lower()}"


def _is_youtube_host(host: str) -> bool:
    return bool(_YOUTUBE_HOST_RE.search(host)) or host == "youtu.be"


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered in _TRACKING_KEYS or lowered.startswith("utm_")


def _looks_like_feed(host: str, path: str) -> bool:
    if host.startswith("feeds."):
        return True
    lowered = path.lower()
    return any(lowered.endswith(hint) or f"{hint}/" in lowered for hint in _FEED_HINTS)


def _detect_youtube(path: str, query: list[tuple[str, str]]) -> tuple[SourceType, str, list[tuple[str, str]]] | None:
    playlist_id = next((value for key, value in query if key == "list" and value), None)
    if playlist_id:
        return SourceType.YOUTUBE_PLAYLIST, playlist_id, [("list", playlist_id)]

    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return None
    head = segments[0]
    if head.startswith("@") and len(head) > 1:
        return SourceType.YOUTUBE_CHANNEL, head, []
    if len(segments) >= 2:
        name = segments[1]
        if head == "channel":
            return SourceType.YOUTUBE_CHANNEL, name, []
        if head == "c":
            return SourceType.YOUTUBE_CHANNEL, f"c:{name}", []
        if head == "user":
            return SourceType.YOUTUBE_CHANNEL, f"user:{name}", []
    return None


def normalize_source_url(raw_url: str) -> NormalizedSource:
    """Canonicalise ``raw_url`` into a ``(source_type, identifier, canonical_url)`` tuple."""

    candidate = (raw_url or "").strip()
    if not candidate:
        raise InvalidSourceURLError("URL must not be empty")

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as exc:
        raise InvalidSourceURLError(f"Unparseable URL {candidate!r}") from exc

    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise InvalidSourceURLError(f"Unsupported URL scheme {parts.scheme!r}")
    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidSourceURLError(f"URL {candidate!r} has no host")

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parts.path.rstrip("/")
    query = parse_qsl(parts.query, keep_blank_values=True)

    youtube_match = None
    if _is_youtube_host(host):
        youtube_match = _detect_youtube(path, query)
        query = youtube_match[2] if youtube_match else []
    else:
        query = [(key, value) for key, value in query if not _is_tracking_param(key)]

    search = f"?{urlencode(query)}" if query else ""
    canonical_url = f"{scheme}://{netloc}{path}{search}"

    if youtube_match:
        source_type, identifier, _ = youtube_match
        return NormalizedSource(source_type, identifier, canonical_url)

    if _looks_like_feed(host, path):
        return NormalizedSource(SourceType.RSS, canonical_url, canonical_url)

    return NormalizedSource(SourceType.WEB_PAGE, f"{netloc}{path}{search}", canonical_url)


# Source configuration ------------------------------------------------------------

def build_default_config(source_type: SourceType | str, identifier: str) -> dict[str, Any] | None:
    """Return the adapter config stored alongside a freshly registered source."""

    source_type = SourceType(source_type)
    if source_type is SourceType.YOUTUBE_CHANNEL:
        return {"youtube": {"channel": identifier}}
    if source_type is SourceType.YOUTUBE_PLAYLIST:
        return {"youtube": {"playlist": identifier}}
    if source_type is SourceType.RSS:
        return {"rss": {"canonical": True}}
    return None


def _youtube_section(config: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if not isinstance(config, Mapping):
        return {}
    section = config.get("youtube")
    return section if isinstance(section, Mapping) else {}


def _first_text(section: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = section.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def youtube_channel_from_config(config: Mapping[str, Any] | None) -> str | None:
    return _first_text(_youtube_section(config), "channel", "channelId")


def youtube_playlist_from_config(config: Mapping[str, Any] | None) -> str | None:
    return _first_text(_youtube_section(config), "playlist", "playlistId")


__all__ = [
    "InvalidSourceURLError",
    "NormalizedSource",
    "SourceType",
    "build_default_config",
    "duplicate_key",
    "normalize_source_url",
    "youtube_channel_from_config",
    "youtube_playlist_from_config",
]
