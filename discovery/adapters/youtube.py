"""YouTube Data API adapter for channel and playlist sources."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote, urljoin

from . import (
    AdapterResult,
    ContentType,
    FailureReason,
    IngestionContext,
    IngestionInput,
    ItemEnvelope,
    ItemValidationError,
    MAX_TITLE_LENGTH,
    NETWORK_RETRY_MINUTES,
    status_failure_reason,
    transport_failure,
    validate_normalized_item,
)
from ..config import YoutubeConfig, clamp_youtube_max_results
from ..normalization import derive_published_at, create_excerpt, sanitize_html_content
from ..sources import (
    InvalidSourceURLError,
    SourceType,
    normalize_source_url,
    youtube_channel_from_config,
    youtube_playlist_from_config,
)

LOGGER = logging.getLogger(__name__)

ADAPTER_NAME = "youtube"
MAX_REQUEST_HOPS = 2
SEARCH_MAX_RESULTS = 5

_CHANNEL_ID_RE = re.compile(r"^UC[0-9A-Za-z_-]{3,}$")
_DURATION_RE = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?$", re.IGNORECASE)

PLAYLIST_ITEMS = "playlistItems"
CHANNEL_UPLOADS = "channelUploads"
RESOLVE_HANDLE = "resolveHandle"
RESOLVE_USERNAME = "resolveUsername"
SEARCH_CHANNEL = "searchChannel"
_LOOKUP_TYPES = {RESOLVE_HANDLE, RESOLVE_USERNAME, SEARCH_CHANNEL}


@dataclass(slots=True)
class YoutubeRequest:
    type: str
    url: str
    params: dict[str, str] = field(default_factory=dict)
    channel_id: str | None = None
    playlist_id: str | None = None


def _endpoint(base_url: str, resource: str) -> str:
    base = base_url if base_url.endswith("/") else f"{base_url}/"
    return urljoin(base, resource)


def build_youtube_request(public_url: str, config: YoutubeConfig) -> YoutubeRequest:
    """Translate a public channel or playlist URL into a Data API request."""

    normalized = normalize_source_url(public_url)
    max_results = str(clamp_youtube_max_results(config.max_results or 50))
    identifier = normalized.identifier

    if normalized.source_type is SourceType.YOUTUBE_PLAYLIST:
        request = YoutubeRequest(
            type=PLAYLIST_ITEMS,
            url=_endpoint(config.base_url, "playlistItems"),
            params={"part": "snippet,contentDetails", "playlistId": identifier, "maxResults": max_results},
            playlist_id=identifier,
        )
    elif normalized.source_type is SourceType.YOUTUBE_CHANNEL and _CHANNEL_ID_RE.match(identifier):
        uploads = f"UU{identifier[2:]}"
        request = YoutubeRequest(
            type=CHANNEL_UPLOADS,
            url=_endpoint(config.base_url, "playlistItems"),
            params={"part": "snippet,contentDetails", "playlistId": uploads, "maxResults": max_results},
            channel_id=identifier,
            playlist_id=uploads,
        )
    elif normalized.source_type is SourceType.YOUTUBE_CHANNEL and identifier.startswith("@"):
        request = YoutubeRequest(
            type=RESOLVE_HANDLE,
            url=_endpoint(config.base_url, "channels"),
            params={"part": "id", "forHandle": identifier},
        )
    elif normalized.source_type is SourceType.YOUTUBE_CHANNEL and identifier.startswith("user:"):
        request = YoutubeRequest(
            type=RESOLVE_USERNAME,
            url=_endpoint(config.base_url, "channels"),
            params={"part": "id", "forUsername": identifier[len("user:"):]},
        )
    elif normalized.source_type is SourceType.YOUTUBE_CHANNEL:
        query = identifier[len("c:"):] if identifier.startswith("c:") else identifier
        request = YoutubeRequest(
            type=SEARCH_CHANNEL,
            url=_endpoint(config.base_url, "search"),
            params={"part": "snippet", "type": "channel", "q": query, "maxResults": str(SEARCH_MAX_RESULTS)},
        )
    else:
        raise InvalidSourceURLError(f"{public_url!r} is not a YouTube channel or playlist URL")

    if config.api_key:
        request.params["key"] = config.api_key
    return request


def channel_public_url(identifier: str) -> str:
    if identifier.startswith("@"):
        return f"https://www.youtube.com/{quote(identifier, safe='@')}"
    if identifier.startswith("user:"):
        return f"https://www.youtube.com/user/{quote(identifier[len('user:'):])}"
    if identifier.startswith("c:"):
        return f"https://www.youtube.com/c/{quote(identifier[len('c:'):])}"
    return f"https://www.youtube.com/channel/{quote(identifier)}"


def _public_url_for(source: IngestionInput) -> str:
    playlist = youtube_playlist_from_config(source.config)
    if playlist:
        return f"https://www.youtube.com/playlist?list={quote(playlist)}"
    channel = youtube_channel_from_config(source.config)
    if channel:
        return channel_public_url(channel)
    return source.canonical_url or source.url


def _youtube_failure_reason(status: int) -> FailureReason:
    if status in (403, 429):
        return FailureReason.YOUTUBE_QUOTA
    if status == 404:
        return FailureReason.YOUTUBE_NOT_FOUND
    return status_failure_reason(status)


def _extract_channel_id(request: YoutubeRequest, payload: Any) -> str | None:
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return None
    if request.type in (RESOLVE_HANDLE, RESOLVE_USERNAME):
        first = items[0] if items else None
        channel_id = first.get("id") if isinstance(first, dict) else None
        return channel_id.strip() if isinstance(channel_id, str) and channel_id.strip() else None
    for item in items:
        if not isinstance(item, dict):
            continue
        direct = item.get("id")
        if isinstance(direct, dict) and isinstance(direct.get("channelId"), str) and direct["channelId"].strip():
            return direct["channelId"].strip()
        snippet = item.get("snippet")
        if isinstance(snippet, dict) and isinstance(snippet.get("channelId"), str) and snippet["channelId"].strip():
            return snippet["channelId"].strip()
    return None


def extract_video_id(item: dict[str, Any]) -> str | None:
    raw_id = item.get("id")
    if isinstance(raw_id, dict) and isinstance(raw_id.get("videoId"), str):
        return raw_id["videoId"]
    details = item.get("contentDetails")
    if isinstance(details, dict) and isinstance(details.get("videoId"), str):
        return details["videoId"]
    snippet = item.get("snippet")
    resource = snippet.get("resourceId") if isinstance(snippet, dict) else None
    if isinstance(resource, dict) and isinstance(resource.get("videoId"), str):
        return resource["videoId"]
    if isinstance(raw_id, str) and raw_id:
        return raw_id
    return None


def iso_duration_to_seconds(duration: str | None) -> int | None:
    if not duration:
        return None
    match = _DURATION_RE.match(duration)
    if not match:
        return None
    hours, minutes, seconds = (int(group or 0) for group in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def _transcript_text(transcript: Any) -> tuple[str, bool]:
    if not transcript:
        return "", False
    if isinstance(transcript, str):
        text = transcript.strip()
        return text, bool(text)
    if isinstance(transcript, dict):
        text = str(transcript.get("text") or "").strip()
        available = transcript.get("available")
        return text, bool(text) if available is None else bool(available)
    return "", False


def fetch_youtube_source(source: IngestionInput, context: IngestionContext) -> AdapterResult:
    config = context.youtube
    requests_metadata: list[dict[str, Any]] = []
    try:
        request = build_youtube_request(_public_url_for(source), config)
    except InvalidSourceURLError as exc:
        return AdapterResult.failure(
            FailureReason.UNKNOWN_ERROR,
            {"adapter": ADAPTER_NAME, "message": "Failed to build YouTube Data API request"},
            error=exc,
        )

    resolved_channel_id: str | None = request.channel_id
    playlist_id: str | None = request.playlist_id
    payload: Any = None

    try:
        for _hop in range(MAX_REQUEST_HOPS):
            response = context.fetcher.get(request.url, params=request.params, cancel_event=context.cancel_event)
            requests_metadata.append({"type": request.type, "url": request.url, "status": response.status_code})
            raw_response = {"status": response.status_code, "headers": response.headers, "body": response.text}

            if not response.ok:
                reason = _youtube_failure_reason(response.status_code)
                return AdapterResult.failure(
                    reason,
                    {"adapter": ADAPTER_NAME, "status": response.status_code, "requests": requests_metadata},
                    raw=raw_response,
                    retry_in_minutes=NETWORK_RETRY_MINUTES if reason is FailureReason.HTTP_5XX else None,
                )

            try:
                body = json.loads(response.text or "null")
            except ValueError as exc:
                return AdapterResult.failure(
                    FailureReason.PARSER_ERROR,
                    {"adapter": ADAPTER_NAME, "status": response.status_code, "requests": requests_metadata},
                    raw=raw_response,
                    error=exc,
                )

            if request.type not in _LOOKUP_TYPES:
                payload = body
                resolved_channel_id = request.channel_id or resolved_channel_id
                playlist_id = request.playlist_id
                break

            channel_id = _extract_channel_id(request, body)
            if not channel_id:
                return AdapterResult.failure(
                    FailureReason.YOUTUBE_NOT_FOUND,
                    {
                        "adapter": ADAPTER_NAME,
                        "status": response.status_code,
                        "requests": requests_metadata,
                        "message": "Unable to resolve channel identifier from YouTube response",
                    },
                    raw=raw_response,
                )
            resolved_channel_id = channel_id
            request = build_youtube_request(f"https://www.youtube.com/channel/{quote(channel_id)}", config)
    except Exception as exc:
        LOGGER.debug("YouTube fetch failed for source %s: %s", source.source_id, exc)
        result = transport_failure(ADAPTER_NAME, exc)
        result.metadata["requests"] = requests_metadata
        return result

    if payload is None:
        return AdapterResult.failure(
            FailureReason.UNKNOWN_ERROR,
            {
                "adapter": ADAPTER_NAME,
                "message": "Failed to retrieve playlist items after request hops",
                "requests": requests_metadata,
            },
        )

    raw_items = payload.get("items") if isinstance(payload, dict) else None
    api_items = [item for item in raw_items if isinstance(item, dict)] if isinstance(raw_items, list) else []
    now = context.now()
    skipped: list[dict[str, Any]] = []
    items: list[ItemEnvelope] = []

    for api_item in api_items:
        video_id = extract_video_id(api_item)
        if not video_id:
            skipped.append({"reason": "missing_video_id", "videoId": None})
            continue

        snippet = api_item.get("snippet") if isinstance(api_item.get("snippet"), dict) else {}
        details = api_item.get("contentDetails") if isinstance(api_item.get("contentDetails"), dict) else {}
        transcript, transcript_available = _transcript_text(api_item.get("transcript"))
        description = str(snippet.get("description") or "")
        title = str(snippet.get("title") or "").strip()
        body = sanitize_html_content(transcript or description or title)
        if not body:
            skipped.append({"reason": "empty_body", "videoId": video_id})
            continue

        published = derive_published_at(
            [snippet.get("publishedAt"), details.get("videoPublishedAt")], now, "api", "fallback"
        )
        duration_seconds = iso_duration_to_seconds(details.get("duration"))

        try:
            normalized = validate_normalized_item(
                {
                    "external_id": video_id,
                    "title": title[:MAX_TITLE_LENGTH] or f"YouTube Video {video_id}",
                    "url": f"https://www.youtube.com/watch?v={quote(video_id)}",
                    "content_type": ContentType.YOUTUBE,
                    "published_at": published.published_at,
                    "published_at_source": published.source,
                    "fetched_at": now,
                    "extracted_body": body,
                    "excerpt": create_excerpt(body),
                }
            )
        except ItemValidationError as exc:
            skipped.append({"reason": "validation_error", "videoId": video_id, "detail": str(exc)})
            continue

        items.append(
            ItemEnvelope(
                normalized=normalized,
                raw_payload=api_item,
                source_metadata={
                    "contentType": ContentType.YOUTUBE.value,
                    "videoId": video_id,
                    "channelId": snippet.get("channelId") or resolved_channel_id,
                    "playlistId": snippet.get("playlistId") or playlist_id,
                    "transcriptAvailable": transcript_available,
                    "durationSeconds": duration_seconds,
                },
            )
        )

    page_info = payload.get("pageInfo") if isinstance(payload, dict) else None
    total_items = page_info.get("totalResults") if isinstance(page_info, dict) else None

    return AdapterResult.success(
        items,
        {
            "adapter": ADAPTER_NAME,
            "itemCount": len(items),
            "totalItems": total_items if isinstance(total_items, int) else len(api_items),
            "skippedCount": len(skipped),
            "skipped": skipped,
            "requests": requests_metadata,
            "channelId": resolved_channel_id,
            "playlistId": playlist_id,
        },
    )


__all__ = [
    "YoutubeRequest",
    "build_youtube_request",
    "channel_public_url",
    "extract_video_id",
    "fetch_youtube_source",
    "iso_duration_to_seconds",
]
