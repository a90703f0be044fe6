"""Text extraction and normalisation helpers shared by the fetch adapters."""

from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Iterable, Sequence

from bs4 import BeautifulSoup, Comment

LOGGER = logging.getLogger(__name__)

DEFAULT_BODY_LENGTH = 5_000
DEFAULT_EXCERPT_LENGTH = 320

# Keep output ASCII friendly.
_SMART_CHARACTERS = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2014": "--",
    "\u2013": "-",
    "\u2026": "...",
    "\u00a0": " ",
    "\u2009": " ",
    "\u200a": " ",
    "\u200b": "",
}
_SMART_RE = re.compile("[" + "".join(_SMART_CHARACTERS) + "]")

_STRIPPED_TAGS = ("head", "script", "style", "noscript", "template", "iframe")
_BOILERPLATE_TAGS = ("nav", "header", "footer", "aside", "form")
_BLOCK_TAGS = (
    "p", "div", "li", "ul", "ol", "tr", "table", "section", "article",
    "blockquote", "pre", "td", "th", "h1", "h2", "h3", "h4", "h5", "h6",
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_INLINE_SPACE_RE = re.compile(r"[^\S\n]+")
_NEWLINE_PADDING_RE = re.compile(r" *\n *")
_NEWLINE_RUN_RE = re.compile(r"\n{2,}")
_RESIDUAL_BOILERPLATE_RE = re.compile(
    r"^(?:(?:navigation|menu|advertisement)\b[\s:|\-]*)+", re.IGNORECASE
)


@dataclass(frozen=True, slots=True)
class PublishedAt:
    published_at: datetime
    source: str


def replace_smart_characters(text: str) -> str:
    return _SMART_RE.sub(lambda match: _SMART_CHARACTERS[match.group(0)], text)


def _collapse_whitespace(text: str) -> str:
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = _NEWLINE_PADDING_RE.sub("\n", text)
    text = _NEWLINE_RUN_RE.sub("\n", text)
    return text.strip()


def _extract_text(markup: str) -> str:
    if not markup:
        return ""
    if "<" not in markup:
        decoded = html_lib.unescape(markup)
    else:
        soup = BeautifulSoup(markup, "html.parser")
        for comment in soup.find_all(string=lambda value: isinstance(value, Comment)):
            comment.extract()
        for tag in soup.find_all(_STRIPPED_TAGS + _BOILERPLATE_TAGS):
            # Nested matches are already gone once their ancestor is decomposed.
            if not tag.decomposed:
                tag.decompose()
        for br in soup.find_all("br"):
            br.replace_with("\n")
        for block in soup.find_all(_BLOCK_TAGS):
            block.insert_before("\n")
        decoded = soup.get_text()
    return _collapse_whitespace(replace_smart_characters(decoded))


def _strip_residual_boilerplate(text: str) -> str:
    return _RESIDUAL_BOILERPLATE_RE.sub("", text.lstrip()).lstrip()


def truncate_preserving_sentences(text: str, max_length: int) -> str:
    """Cut ``text`` to at most ``max_length`` characters on a sentence boundary."""

    if len(text) <= max_length:
        return text

    pieces: list[str] = []
    total = 0
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        candidate = sentence.strip()
        if not candidate:
            continue
        added = len(candidate) + (1 if pieces else 0)
        if total + added > max_length:
            break
        pieces.append(candidate)
        total += added

    if not pieces:
        return text[:max_length].rstrip()
    return " ".join(pieces)


def sanitize_html_content(markup: str | None, max_length: int = DEFAULT_BODY_LENGTH) -> str:
    """Strip markup and boilerplate from ``markup`` and return bounded plain text."""

    text = _strip_residual_boilerplate(_extract_text(markup or ""))
    return truncate_preserving_sentences(text, max_length)


def strip_html(markup: str | None) -> str:
    return _extract_text(markup or "")


def create_excerpt(text: str | None, max_length: int = DEFAULT_EXCERPT_LENGTH) -> str | None:
    if not text:
        return None
    truncated = truncate_preserving_sentences(text, max_length)
    return truncated if len(truncated) == len(text) else f"{truncated}..."


def normalize_title(raw_title: str | None) -> str | None:
    if not raw_title:
        return None
    cleaned = " ".join(replace_smart_characters(html_lib.unescape(raw_title)).split())
    return cleaned or None


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse ISO-8601 or RFC 2822 timestamps into aware UTC datetimes."""

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            LOGGER.debug("Failed to parse timestamp '%s'", text)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def derive_published_at(
    candidates: Iterable[str | None],
    fallback: datetime,
    candidate_source: str = "original",
    fallback_source: str = "fallback",
) -> PublishedAt:
    for candidate in candidates:
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return PublishedAt(parsed, candidate_source)
    return PublishedAt(fallback, fallback_source)


def extract_meta_content(soup: BeautifulSoup, keys: Sequence[str]) -> str | None:
    """Return the ``content`` of the first ``<meta>`` whose name/property is in ``keys``."""

    wanted = {key.lower() for key in keys}
    for meta in soup.find_all("meta"):
        key = (meta.get("name") or meta.get("property") or "").strip().lower()
        if key not in wanted:
            continue
        content = meta.get("content")
        if content is not None:
            return content
    return None


__all__ = [
    "PublishedAt",
    "create_excerpt",
    "derive_published_at",
    "extract_meta_content",
    "normalize_title",
    "parse_timestamp",
    "replace_smart_characters",
    "sanitize_html_content",
    "strip_html",
    "truncate_preserving_sentences",
]
