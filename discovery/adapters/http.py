"""HTTP adapter for single web pages and selector-driven article lists."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from . import (
    AdapterResult,
    ContentType,
    FailureReason,
    IngestionContext,
    IngestionInput,
    ItemEnvelope,
    ItemValidationError,
    http_status_failure,
    transport_failure,
    validate_normalized_item,
)
from ..normalization import (
    create_excerpt,
    derive_published_at,
    extract_meta_content,
    normalize_title,
    parse_timestamp,
    sanitize_html_content,
)
from ..source_config import DEFAULT_TRANSFORM_REPLACEMENT, WEB_LIST_FIELDS, regex_flags, web_list_from_config

LOGGER = logging.getLogger(__name__)

ADAPTER_NAME = "http"
MAX_LIST_ITEMS = 100
LIST_ITEM_BODY_LENGTH = 2000
LIST_EXCERPT_SOURCE_LENGTH = 1000

_TITLE_META_KEYS = ("og:title", "twitter:title")
_PUBLISHED_META_KEYS = (
    "article:published_time",
    "og:published_time",
    "pubdate",
    "date",
    "dc.date",
    "dc.date.issued",
)
_LANGUAGE_META_KEYS = ("og:locale", "language", "content-language")
_UNIX_SECONDS_RE = re.compile(r"^\d{10}$")
_UNIX_MILLIS_RE = re.compile(r"^\d{13}$")

_WEB_LIST_KEYS = ("webListConfigured", "webListAttempted", "webListApplied", "listItemCount", "webListIssues")


def _metadata(status: int, body_length: int, item_count: int, **extra) -> dict:
    metadata: dict[str, Any] = {
        "adapter": ADAPTER_NAME,
        "status": status,
        "contentLength": body_length,
        "itemCount": item_count,
        "skippedCount": 0,
        **extra,
    }
    if isinstance(metadata.get("skipped"), list):
        metadata["skippedCount"] = len(metadata["skipped"])
    if not metadata.get("webListConfigured"):
        for key in _WEB_LIST_KEYS:
            metadata.pop(key, None)
    return metadata


def _extract_title(soup: BeautifulSoup) -> str | None:
    meta_title = extract_meta_content(soup, _TITLE_META_KEYS)
    if meta_title:
        return meta_title
    if soup.title is not None:
        return soup.title.get_text() or None
    return None


def _extract_time_datetime(soup: BeautifulSoup) -> str | None:
    time_tag = soup.find("time", attrs={"datetime": True})
    return time_tag.get("datetime") if time_tag else None


def _extract_language(soup: BeautifulSoup) -> str | None:
    language = extract_meta_content(soup, _LANGUAGE_META_KEYS)
    if not language and soup.html is not None:
        language = soup.html.get("lang")
    return language.strip().lower() if language and language.strip() else None


# Web lists -------------------------------------------------------------------------

def _apply_value_transform(transform: dict[str, str] | None, value: str) -> tuple[str, str]:
    """Return ``(value, state)`` where state is ``applied``, ``missed`` or ``none``."""

    if not transform:
        return value, "none"
    flags = transform.get("flags") or ""
    try:
        matcher = re.compile(transform["pattern"], regex_flags(flags))
        if not matcher.search(value):
            return value, "missed"
        replacement = transform.get("replacement", DEFAULT_TRANSFORM_REPLACEMENT)
        return matcher.sub(replacement, value, count=0 if "g" in flags else 1), "applied"
    except (re.error, IndexError):
        return value, "missed"


def _extract_selector_value(root: Tag, descriptor: dict[str, Any]) -> tuple[str | None, str]:
    target = root.select_one(descriptor["selector"]) if descriptor.get("selector") else root
    if target is None:
        return None, "none"
    attribute = descriptor.get("attribute")
    raw_value = target.get(attribute) if attribute else target.get_text()
    if isinstance(raw_value, list):
        raw_value = " ".join(raw_value)
    if not raw_value or not raw_value.strip():
        return None, "none"
    value, state = _apply_value_transform(descriptor.get("valueTransform"), raw_value.strip())
    return value.strip() or None, state


def _resolve_absolute_url(value: str | None, base_url: str) -> str | None:
    if not value or not value.strip():
        return None
    try:
        resolved = urljoin(base_url, value.strip())
        scheme = urlsplit(resolved).scheme
    except ValueError:
        return None
    return resolved if scheme in ("http", "https") else None


def _resolve_list_published_at(raw: str | None, now: datetime) -> tuple[datetime, str, str | None]:
    if raw is None:
        return now, "fallback", None
    text = raw.strip()
    parsed: datetime | None = None
    if _UNIX_SECONDS_RE.match(text):
        parsed = datetime.fromtimestamp(int(text), tz=timezone.utc)
    elif _UNIX_MILLIS_RE.match(text):
        parsed = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    else:
        parsed = parse_timestamp(text)
    if parsed is None:
        return now, "fallback", text or raw
    return parsed, "original", None


def _first_text(node: Tag | None) -> str | None:
    if node is None:
        return None
    text = node.get_text().strip()
    return text or None


def _build_list_item(
    element: Tag,
    index: int,
    web_list: dict[str, Any],
    base_url: str,
    now: datetime,
    transform_stats: dict[str, int],
) -> tuple[ItemEnvelope | None, dict[str, Any] | None]:
    item_html = str(element)
    fields: dict[str, str] = {}
    transform_states: dict[str, str] = {}
    for name in WEB_LIST_FIELDS:
        descriptor = web_list["fields"].get(name)
        if not descriptor:
            continue
        value, state = _extract_selector_value(element, descriptor)
        if state == "applied":
            transform_stats["applied"] += 1
        elif state == "missed":
            transform_stats["misses"] += 1
        if state != "none":
            transform_states[name] = state
        if value:
            fields[name] = value

    anchor = element.find("a")
    anchor_href = None
    if anchor is not None and anchor.get("href"):
        anchor_href = anchor["href"].strip() or None
    url = _resolve_absolute_url(fields.get("url") or anchor_href, base_url)
    if url is None:
        return None, {
            "reason": "missing_url",
            "index": index,
            "details": {"anchorHref": anchor_href, "configuredUrl": fields.get("url")},
        }

    raw_title = (
        fields.get("title")
        or _first_text(anchor)
        or _first_text(element.find(["h1", "h2", "h3"]))
        or _first_text(element)
        or url
    )
    title = normalize_title(raw_title) or url

    body = sanitize_html_content(item_html).strip()
    if not body:
        body = sanitize_html_content(element.get_text().strip() or title, LIST_ITEM_BODY_LENGTH).strip() or title

    excerpt_source = sanitize_html_content(fields.get("excerpt") or body, LIST_EXCERPT_SOURCE_LENGTH)
    excerpt = create_excerpt(excerpt_source) if excerpt_source else None

    timestamp_candidate = fields.get("timestamp")
    if timestamp_candidate is None and anchor is not None and anchor.get("data-published"):
        timestamp_candidate = anchor["data-published"].strip()
    if timestamp_candidate is None:
        time_tag = element.find("time", attrs={"datetime": True})
        if time_tag is not None:
            timestamp_candidate = time_tag["datetime"].strip()
    if timestamp_candidate is None:
        timestamp_candidate = _first_text(element.find("time"))
    published_at, published_source, invalid_timestamp = _resolve_list_published_at(timestamp_candidate, now)

    try:
        normalized = validate_normalized_item(
            {
                "external_id": url,
                "title": title[:500],
                "url": url,
                "content_type": ContentType.ARTICLE,
                "published_at": published_at,
                "published_at_source": published_source,
                "fetched_at": now,
                "extracted_body": body,
                "excerpt": excerpt,
            }
        )
    except ItemValidationError as exc:
        return None, {"reason": "validation_failed", "index": index, "details": {"issues": exc.issues}}

    raw_payload: dict[str, Any] = {"index": index, "html": item_html, "resolvedUrl": url, "fields": fields}
    if transform_states:
        raw_payload["valueTransformStates"] = transform_states
    if timestamp_candidate:
        raw_payload["timestampCandidate"] = timestamp_candidate
    if invalid_timestamp:
        raw_payload["invalidTimestamp"] = invalid_timestamp

    envelope = ItemEnvelope(
        normalized=normalized,
        raw_payload=raw_payload,
        source_metadata={"contentType": ContentType.ARTICLE.value, "canonicalUrl": url},
    )
    return envelope, None


def extract_list_items(
    soup: BeautifulSoup, web_list: dict[str, Any], base_url: str, now: datetime
) -> tuple[list[ItemEnvelope], dict[str, Any]]:
    """Split a listing page into one item per ``itemSelector`` match inside the container.

    Returns the extracted envelopes and the web list telemetry merged into
    the adapter metadata. An empty list means the page falls back to
    single-article extraction.
    """

    metadata: dict[str, Any] = {
        "webListConfigured": True,
        "webListAttempted": True,
        "webListApplied": False,
        "listItemCount": 0,
        "paginationDepth": 1,
        "valueTransformApplied": 0,
        "valueTransformMisses": 0,
    }
    issues: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []

    container = soup.select_one(web_list["listContainerSelector"])
    if container is None:
        issues.append({"reason": "list_container_not_found", "selector": web_list["listContainerSelector"]})
        metadata["webListIssues"] = issues
        return [], metadata

    nodes = container.select(web_list["itemSelector"])
    metadata["candidateCount"] = len(nodes)
    if not nodes:
        issues.append({"reason": "list_items_not_found", "selector": web_list["itemSelector"]})
        metadata["webListIssues"] = issues
        return [], metadata

    if len(nodes) > MAX_LIST_ITEMS:
        skipped.append({"reason": "max_items_exceeded", "limit": MAX_LIST_ITEMS, "skipped": len(nodes) - MAX_LIST_ITEMS})

    items: list[ItemEnvelope] = []
    seen_urls: set[str] = set()
    transform_stats = {"applied": 0, "misses": 0}
    for index, element in enumerate(nodes[:MAX_LIST_ITEMS]):
        envelope, skip = _build_list_item(element, index, web_list, base_url, now, transform_stats)
        if envelope is None:
            skipped.append(skip)
            continue
        url = envelope.normalized.url
        if url in seen_urls:
            skipped.append({"reason": "duplicate_url", "index": index, "details": {"url": url}})
            continue
        seen_urls.add(url)
        items.append(envelope)

    metadata.update(
        valueTransformApplied=transform_stats["applied"],
        valueTransformMisses=transform_stats["misses"],
        webListApplied=bool(items),
        listItemCount=len(items),
        processedCount=len(items),
        uniqueUrlCount=len(seen_urls),
    )
    if skipped:
        metadata["skipped"] = skipped
    if not items:
        issues.append({"reason": "no_items_extracted", "selector": web_list["itemSelector"]})
    if issues:
        metadata["webListIssues"] = issues
    return items, metadata


# Adapter ---------------------------------------------------------------------------

def fetch_http_source(source: IngestionInput, context: IngestionContext) -> AdapterResult:
    try:
        response = context.fetcher.get(source.url, cancel_event=context.cancel_event)
    except Exception as exc:
        LOGGER.debug("HTTP fetch failed for source %s: %s", source.source_id, exc)
        return transport_failure(ADAPTER_NAME, exc)

    if not response.ok:
        return http_status_failure(ADAPTER_NAME, response)

    body = response.text
    raw_response = {"status": response.status_code, "headers": response.headers, "body": body}
    now = context.now()
    final_url = response.url or source.canonical_url or source.url
    soup = BeautifulSoup(body, "html.parser")

    list_metadata: dict[str, Any] = {}
    web_list = web_list_from_config(source.config)
    if web_list is not None:
        list_items, list_metadata = extract_list_items(soup, web_list, final_url, now)
        if list_items:
            return AdapterResult.success(
                list_items,
                _metadata(response.status_code, len(body), len(list_items), **list_metadata),
                raw={"status": response.status_code, "headers": response.headers},
            )
        LOGGER.info(
            "Web list extraction found no items for source %s; falling back to the whole page",
            source.source_id,
        )

    sanitized_body = sanitize_html_content(body)
    if not sanitized_body:
        return AdapterResult.failure(
            FailureReason.PARSER_ERROR,
            _metadata(
                response.status_code, len(body), 0, **list_metadata, message="Empty body after sanitization"
            ),
            raw=raw_response,
        )

    title = normalize_title(_extract_title(soup)) or normalize_title(final_url) or "Untitled Article"
    published = derive_published_at(
        [extract_meta_content(soup, _PUBLISHED_META_KEYS), _extract_time_datetime(soup)],
        now,
    )

    try:
        normalized = validate_normalized_item(
            {
                "external_id": final_url,
                "title": title[:500],
                "url": final_url,
                "content_type": ContentType.ARTICLE,
                "published_at": published.published_at,
                "published_at_source": published.source,
                "fetched_at": now,
                "extracted_body": sanitized_body,
                "excerpt": create_excerpt(sanitized_body),
            }
        )
    except ItemValidationError as exc:
        return AdapterResult.failure(
            FailureReason.PARSER_ERROR,
            _metadata(response.status_code, len(body), 0, **list_metadata, validationIssues=exc.issues),
            raw=raw_response,
        )

    envelope = ItemEnvelope(
        normalized=normalized,
        # Response headers stay out of the hashed payload so an unchanged page deduplicates.
        raw_payload={"status": response.status_code, "url": final_url, "body": body},
        source_metadata={
            "contentType": ContentType.ARTICLE.value,
            "canonicalUrl": final_url,
            "language": _extract_language(soup),
        },
    )
    return AdapterResult.success(
        [envelope],
        _metadata(response.status_code, len(body), 1, **list_metadata),
        raw={"status": response.status_code, "headers": response.headers},
    )


__all__ = ["MAX_LIST_ITEMS", "extract_list_items", "fetch_http_source"]
