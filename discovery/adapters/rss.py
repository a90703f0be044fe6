"""RSS and Atom feed adapter.

Entries are located with regular expressions rather than an XML parser so that
slightly malformed feeds still yield their well-formed entries. Each entry is
normalised on its own; entries that fail are reported in ``metadata.skipped``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache

from . import (
    AdapterResult,
    ContentType,
    IngestionContext,
    IngestionInput,
    ItemEnvelope,
    ItemValidationError,
    MAX_TITLE_LENGTH,
    http_status_failure,
    transport_failure,
    validate_normalized_item,
)
from ..normalization import create_excerpt, derive_published_at, sanitize_html_content, strip_html

LOGGER = logging.getLogger(__name__)

ADAPTER_NAME = "rss"

_RSS_ITEM_RE = re.compile(r"<item[\s>][\s\S]*?</item>", re.IGNORECASE)
_ATOM_ENTRY_RE = re.compile(r"<entry[\s>][\s\S]*?</entry>", re.IGNORECASE)
_CDATA_RE = re.compile(r"<!\[CDATA\[([\s\S]*?)\]\]>", re.IGNORECASE)
_CATEGORY_RE = re.compile(r"<category[^>]*>([\s\S]*?)</category>", re.IGNORECASE)
_CATEGORY_TERM_RE = re.compile(r"<category\s+[^>]*term=[\"']([^\"']+)[\"']", re.IGNORECASE)
_ATOM_LINK_RE = re.compile(r"<link\s+[^>]*href=[\"']([^\"']+)[\"']", re.IGNORECASE)


@dataclass(slots=True)
class FeedEntry:
    guid: str | None
    link: str | None
    title: str | None
    description: str | None
    content: str | None
    published: str | None
    categories: list[str] = field(default_factory=list)
    source: str = ""


@lru_cache(maxsize=32)
def _tag_pattern(tag: str) -> re.Pattern[str]:
    escaped = re.escape(tag)
    return re.compile(rf"<{escaped}(?:\s[^>]*)?>([\s\S]*?)</{escaped}>", re.IGNORECASE)


def _match_tag(source: str, tag: str) -> str | None:
    match = _tag_pattern(tag).search(source)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _match_text(source: str, tag: str) -> str | None:
    value = _match_tag(source, tag)
    if value is None:
        return None
    cdata = _CDATA_RE.search(value)
    if cdata:
        return cdata.group(1).strip() or None
    return value


def _parse_link(source: str) -> str | None:
    link = _match_tag(source, "link")
    if link:
        return link
    match = _ATOM_LINK_RE.search(source)
    return match.group(1).strip() if match else None


def _parse_categories(source: str) -> list[str]:
    categories = [value.strip() for value in _CATEGORY_RE.findall(source) if value.strip()]
    categories.extend(value.strip() for value in _CATEGORY_TERM_RE.findall(source) if value.strip())
    return categories


def _parse_rss_item(source: str) -> FeedEntry:
    link = _parse_link(source)
    return FeedEntry(
        guid=_match_text(source, "guid") or link,
        link=link,
        title=_match_text(source, "title"),
        description=_match_text(source, "description"),
        content=_match_text(source, "content:encoded"),
        published=_match_tag(source, "pubDate") or _match_tag(source, "dc:date"),
        categories=_parse_categories(source),
        source=source,
    )


def _parse_atom_entry(source: str) -> FeedEntry:
    link = _parse_link(source)
    return FeedEntry(
        guid=_match_text(source, "id") or link,
        link=link,
        title=_match_text(source, "title"),
        description=_match_text(source, "summary"),
        content=_match_text(source, "content"),
        published=_match_tag(source, "published") or _match_tag(source, "updated"),
        categories=_parse_categories(source),
        source=source,
    )


def parse_feed_entries(feed: str) -> tuple[str, list[FeedEntry]]:
    """Return the detected feed format and its entries."""

    items = _RSS_ITEM_RE.findall(feed)
    if items:
        return "rss", [_parse_rss_item(item) for item in items]
    entries = _ATOM_ENTRY_RE.findall(feed)
    if entries:
        return "atom", [_parse_atom_entry(entry) for entry in entries]
    return "rss", []


def fetch_rss_source(source: IngestionInput, context: IngestionContext) -> AdapterResult:
    try:
        response = context.fetcher.get(source.url, cancel_event=context.cancel_event)
    except Exception as exc:
        LOGGER.debug("Feed fetch failed for source %s: %s", source.source_id, exc)
        return transport_failure(ADAPTER_NAME, exc)

    if not response.ok:
        return http_status_failure(ADAPTER_NAME, response)

    feed_format, entries = parse_feed_entries(response.text)
    now = context.now()
    feed_url = source.canonical_url or source.url
    skipped: list[dict] = []
    items: list[ItemEnvelope] = []

    for entry in entries:
        entry_id = entry.guid or entry.link
        raw_body = entry.content or entry.description or ""
        extracted = sanitize_html_content(raw_body or entry.title or "")
        if not extracted:
            skipped.append({"reason": "empty_content", "entryId": entry_id})
            continue

        link = entry.link or feed_url
        external_id = entry.guid or link
        title = (strip_html(entry.title) if entry.title else strip_html(link))[:MAX_TITLE_LENGTH]
        published = derive_published_at([entry.published], now, "feed", "fallback")

        try:
            normalized = validate_normalized_item(
                {
                    "external_id": external_id,
                    "title": title or "Untitled Entry",
                    "url": link,
                    "content_type": ContentType.RSS,
                    "published_at": published.published_at,
                    "published_at_source": published.source,
                    "fetched_at": now,
                    "extracted_body": extracted,
                    "excerpt": create_excerpt(extracted),
                }
            )
        except ItemValidationError as exc:
            skipped.append({"reason": "validation_error", "entryId": external_id, "detail": str(exc)})
            continue

        source_metadata = {
            "contentType": ContentType.RSS.value,
            "feedUrl": feed_url,
            "entryId": external_id,
        }
        if entry.categories:
            source_metadata["categories"] = entry.categories
        items.append(
            ItemEnvelope(
                normalized=normalized,
                raw_payload={"source": entry.source},
                source_metadata=source_metadata,
            )
        )

    if skipped:
        LOGGER.warning("Skipped %d of %d feed entries for source %s", len(skipped), len(entries), source.source_id)

    return AdapterResult.success(
        items,
        {
            "adapter": ADAPTER_NAME,
            "format": feed_format,
            "itemCount": len(items),
            "entryCount": len(entries),
            "skippedCount": len(skipped),
            "skipped": skipped,
        },
        raw={"status": response.status_code, "headers": response.headers},
    )


__all__ = ["FeedEntry", "fetch_rss_source", "parse_feed_entries"]
