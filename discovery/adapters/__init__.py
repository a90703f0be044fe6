"""Adapter interfaces and data models for discovery source fetching."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping
from urllib.parse import urlsplit

import httpx

from ..config import YoutubeConfig
from ..http_client import FetchCancelledError, HttpFetcher
from ..normalization import parse_timestamp
from ..sources import SourceType

MAX_TITLE_LENGTH = 500
NETWORK_RETRY_MINUTES = 5


class FailureReason(str, Enum):
    NETWORK_ERROR = "network_error"
    HTTP_4XX = "http_4xx"
    HTTP_5XX = "http_5xx"
    TIMEOUT = "timeout"
    PARSER_ERROR = "parser_error"
    YOUTUBE_QUOTA = "youtube_quota"
    YOUTUBE_NOT_FOUND = "youtube_not_found"
    UNKNOWN_ERROR = "unknown_error"


class ContentType(str, Enum):
    ARTICLE = "article"
    RSS = "rss"
    YOUTUBE = "youtube"


PUBLISHED_AT_SOURCES = frozenset({"original", "fallback", "feed", "api"})


class ItemValidationError(ValueError):
    """Raised when a candidate item does not satisfy the normalized item schema."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues))
        self.issues = issues


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class NormalizedItem:
    external_id: str
    title: str
    url: str
    content_type: ContentType
    published_at: datetime | None
    published_at_source: str
    fetched_at: datetime
    extracted_body: str
    excerpt: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "title": self.title,
            "url": self.url,
            "contentType": self.content_type.value,
            "publishedAt": _isoformat(self.published_at),
            "publishedAtSource": self.published_at_source,
            "fetchedAt": _isoformat(self.fetched_at),
            "extractedBody": self.extracted_body,
            "excerpt": self.excerpt,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "NormalizedItem":
        if not isinstance(payload, Mapping):
            raise ItemValidationError(["normalized payload must be an object"])
        published_raw = payload.get("publishedAt")
        fetched_raw = payload.get("fetchedAt")
        return validate_normalized_item(
            {
                "external_id": payload.get("externalId"),
                "title": payload.get("title"),
                "url": payload.get("url"),
                "content_type": payload.get("contentType"),
                "published_at": parse_timestamp(published_raw) if isinstance(published_raw, str) else None,
                "published_at_source": payload.get("publishedAtSource"),
                "fetched_at": parse_timestamp(fetched_raw) if isinstance(fetched_raw, str) else None,
                "extracted_body": payload.get("extractedBody"),
                "excerpt": payload.get("excerpt"),
            }
        )


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.netloc)


def validate_normalized_item(candidate: Mapping[str, Any]) -> NormalizedItem:
    """Check ``candidate`` against the normalized item schema; never coerces bad values."""

    issues: list[str] = []

    def _text(key: str) -> str:
        value = candidate.get(key)
        if not isinstance(value, str) or not value.strip():
            issues.append(f"{key} must be a non-empty string")
            return ""
        return value

    external_id = _text("external_id")
    title = _text("title")
    if len(title) > MAX_TITLE_LENGTH:
        issues.append(f"title must be at most {MAX_TITLE_LENGTH} characters")
    url = _text("url")
    if url and not _is_http_url(url):
        issues.append("url must be an absolute http(s) URL")
    extracted_body = _text("extracted_body")

    content_type: ContentType | None = None
    try:
        content_type = ContentType(candidate.get("content_type"))
    except ValueError:
        issues.append("content_type is not supported")

    published_at = candidate.get("published_at")
    if published_at is not None and not isinstance(published_at, datetime):
        issues.append("published_at must be a datetime")
    published_at_source = candidate.get("published_at_source")
    if published_at_source not in PUBLISHED_AT_SOURCES:
        issues.append("published_at_source is not supported")
    fetched_at = candidate.get("fetched_at")
    if not isinstance(fetched_at, datetime):
        issues.append("fetched_at must be a datetime")
    excerpt = candidate.get("excerpt")
    if excerpt is not None and not isinstance(excerpt, str):
        issues.append("excerpt must be a string")

    if issues:
        raise ItemValidationError(issues)

    return NormalizedItem(
        external_id=external_id.strip(),
        title=title.strip(),
        url=url.strip(),
        content_type=content_type,
        published_at=published_at,
        published_at_source=published_at_source,
        fetched_at=fetched_at,
        extracted_body=extracted_body,
        excerpt=excerpt,
    )


@dataclass(slots=True)
class ItemEnvelope:
    normalized: NormalizedItem
    raw_payload: dict[str, Any]
    source_metadata: dict[str, Any]


@dataclass(slots=True)
class AdapterResult:
    ok: bool
    items: list[ItemEnvelope] = field(default_factory=list)
    failure_reason: FailureReason | None = None
    retry_in_minutes: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] | None = None
    error: BaseException | None = None

    @classmethod
    def success(
        cls,
        items: list[ItemEnvelope],
        metadata: dict[str, Any],
        *,
        raw: dict[str, Any] | None = None,
    ) -> "AdapterResult":
        return cls(ok=True, items=items, metadata=metadata, raw=raw)

    @classmethod
    def failure(
        cls,
        reason: FailureReason,
        metadata: dict[str, Any],
        *,
        raw: dict[str, Any] | None = None,
        retry_in_minutes: int | None = None,
        error: BaseException | None = None,
    ) -> "AdapterResult":
        return cls(
            ok=False,
            failure_reason=FailureReason(reason),
            metadata=metadata,
            raw=raw,
            retry_in_minutes=retry_in_minutes,
            error=error,
        )


@dataclass(slots=True)
class IngestionInput:
    source_id: str
    client_id: str
    source_type: SourceType
    url: str
    canonical_url: str | None = None
    config: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        # Unknown source types are rejected here, before any dispatch happens.
        self.source_type = SourceType(self.source_type)


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class IngestionContext:
    fetcher: HttpFetcher
    now: Callable[[], datetime] = _default_now
    youtube: YoutubeConfig = field(default_factory=YoutubeConfig)
    cancel_event: threading.Event | None = None


def status_failure_reason(status: int) -> FailureReason:
    if status >= 500:
        return FailureReason.HTTP_5XX
    if status >= 400:
        return FailureReason.HTTP_4XX
    return FailureReason.UNKNOWN_ERROR


def transport_failure(adapter: str, exc: Exception) -> AdapterResult:
    """Map an exception raised while fetching to a typed adapter failure."""

    if isinstance(exc, (FetchCancelledError, httpx.TimeoutException)):
        return AdapterResult.failure(
            FailureReason.TIMEOUT,
            {"adapter": adapter, "message": str(exc)},
            error=exc,
        )
    return AdapterResult.failure(
        FailureReason.NETWORK_ERROR,
        {"adapter": adapter, "message": str(exc)},
        retry_in_minutes=NETWORK_RETRY_MINUTES,
        error=exc,
    )


def http_status_failure(adapter: str, response, reason: FailureReason | None = None, **extra_metadata) -> AdapterResult:
    failure_reason = reason or status_failure_reason(response.status_code)
    return AdapterResult.failure(
        failure_reason,
        {"adapter": adapter, "status": response.status_code, **extra_metadata},
        raw={
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": response.headers,
            "body": response.text,
        },
        retry_in_minutes=NETWORK_RETRY_MINUTES if failure_reason is FailureReason.HTTP_5XX else None,
    )


__all__ = [
    "AdapterResult",
    "ContentType",
    "FailureReason",
    "IngestionContext",
    "IngestionInput",
    "ItemEnvelope",
    "ItemValidationError",
    "NormalizedItem",
    "PUBLISHED_AT_SOURCES",
    "http_status_failure",
    "status_failure_reason",
    "transport_failure",
    "validate_normalized_item",
]
