"""Validation and normalisation of per-source adapter configuration.

Stored source configs use camelCase keys. Input may use either the stored
shape or the snake_case form operators write by hand, for example::

    {"webList": {"list_container_selector": "ul.news",
                 "item_selector": "li",
                 "fields": {"title": "h3", "url": {"selector": "a", "attribute": "href"}}}}

Selector shorthands (a bare string) are expanded to ``{"selector": ...}``.
Value transforms are Python regular expressions; ``replacement`` uses
``re.sub`` template syntax and defaults to ``\\1``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

DEFAULT_WEB_LIST_MAX_DEPTH = 5
MAX_WEB_LIST_DEPTH = 20
WEB_LIST_FIELDS = ("title", "excerpt", "url", "timestamp")
DEFAULT_TRANSFORM_REPLACEMENT = r"\1"

_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_ALLOWED_FLAGS = set("gimsuy")
_LEGACY_PLACEHOLDER_RE = re.compile(r"\{\{\s*value\s*\}\}")


class InvalidSourceConfigError(ValueError):
    """Raised when a source configuration cannot be validated."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues))
        self.issues = issues


def regex_flags(flags: str | None) -> int:
    value = 0
    for flag in flags or "":
        value |= _FLAG_MAP.get(flag, 0)
    return value


def _pick(section: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in section:
            return section[key]
    return None


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_transform(raw: Any, path: str, issues: list[str]) -> dict[str, str] | None:
    if not isinstance(raw, Mapping):
        issues.append(f"{path}: value transform must be an object")
        return None
    pattern = _text(raw.get("pattern"))
    if pattern is None:
        issues.append(f"{path}.pattern: required")
        return None
    flags = raw.get("flags")
    if flags is not None and (not isinstance(flags, str) or not set(flags.strip()) <= _ALLOWED_FLAGS):
        issues.append(f"{path}.flags: invalid regex flags {flags!r}")
        return None
    try:
        re.compile(pattern, regex_flags(flags))
    except re.error as exc:
        issues.append(f"{path}.pattern: {exc}")
        return None
    transform = {"pattern": pattern}
    if flags and flags.strip():
        transform["flags"] = flags.strip()
    replacement = raw.get("replacement")
    if replacement is not None:
        if not isinstance(replacement, str):
            issues.append(f"{path}.replacement: must be a string")
            return None
        transform["replacement"] = replacement
    return transform


def _legacy_template_transform(template: str) -> tuple[dict[str, str], list[str]]:
    warnings: list[str] = []
    escaped = template.replace("\\", "\\\\")
    if _LEGACY_PLACEHOLDER_RE.search(template):
        replacement = _LEGACY_PLACEHOLDER_RE.sub(lambda _match: r"\1", escaped)
    else:
        replacement = escaped + r"\1"
    if "{{" in _LEGACY_PLACEHOLDER_RE.sub("", template):
        warnings.append("Legacy value template contains unsupported placeholders and may need manual review")
    return {"pattern": "^(.*)$", "replacement": replacement}, warnings


def _parse_selector(raw: Any, path: str, issues: list[str]) -> dict[str, Any] | None:
    if isinstance(raw, str):
        raw = {"selector": raw}
    if not isinstance(raw, Mapping):
        issues.append(f"{path}: selector must be a string or an object")
        return None
    selector = _text(raw.get("selector"))
    if selector is None:
        issues.append(f"{path}.selector: required")
        return None
    parsed: dict[str, Any] = {"selector": selector}
    attribute = raw.get("attribute")
    if attribute is not None:
        if _text(attribute) is None:
            issues.append(f"{path}.attribute: must be a non-empty string")
            return None
        parsed["attribute"] = attribute.strip()

    transform_raw = _pick(raw, "valueTransform", "value_transform")
    template = _text(_pick(raw, "valueTemplate", "value_template"))
    if transform_raw is not None:
        transform = _parse_transform(transform_raw, f"{path}.valueTransform", issues)
        if transform is None:
            return None
        parsed["valueTransform"] = transform
    elif template is not None:
        transform, warnings = _legacy_template_transform(template)
        parsed["valueTransform"] = transform
        parsed["legacyValueTemplate"] = template
        if warnings:
            parsed["valueTransformWarnings"] = warnings
    return parsed


def _parse_pagination(raw: Any, issues: list[str]) -> dict[str, Any] | None:
    if raw is None or raw is False:
        return None
    if isinstance(raw, str):
        raw = {"next_page": raw}
    if not isinstance(raw, Mapping):
        issues.append("webList.pagination: must be a selector or an object")
        return None
    next_page = _parse_selector(_pick(raw, "nextPage", "next_page"), "webList.pagination.nextPage", issues)
    depth_raw = _pick(raw, "maxDepth", "max_depth")
    if depth_raw is None:
        depth = DEFAULT_WEB_LIST_MAX_DEPTH
    else:
        try:
            depth = int(str(depth_raw).strip())
        except ValueError:
            depth = 0
        if not 1 <= depth <= MAX_WEB_LIST_DEPTH:
            issues.append(f"webList.pagination.maxDepth: must be between 1 and {MAX_WEB_LIST_DEPTH}")
            return None
    if next_page is None:
        return None
    return {"nextPage": next_page, "maxDepth": depth}


def parse_web_list_config(raw: Any, issues: list[str]) -> dict[str, Any] | None:
    if not isinstance(raw, Mapping):
        issues.append("webList: must be an object")
        return None
    container = _text(_pick(raw, "listContainerSelector", "list_container_selector"))
    item = _text(_pick(raw, "itemSelector", "item_selector"))
    if container is None:
        issues.append("webList.listContainerSelector: required")
    if item is None:
        issues.append("webList.itemSelector: required")

    fields: dict[str, Any] = {}
    raw_fields = raw.get("fields") or {}
    if not isinstance(raw_fields, Mapping):
        issues.append("webList.fields: must be an object")
        raw_fields = {}
    for name in WEB_LIST_FIELDS:
        if raw_fields.get(name) is None:
            continue
        selector = _parse_selector(raw_fields[name], f"webList.fields.{name}", issues)
        if selector is not None:
            fields[name] = selector

    pagination = _parse_pagination(raw.get("pagination"), issues)
    if container is None or item is None:
        return None
    config: dict[str, Any] = {"listContainerSelector": container, "itemSelector": item, "fields": fields}
    if pagination is not None:
        config["pagination"] = pagination
    return config


def parse_source_config(raw: Any) -> dict[str, Any]:
    """Validate ``raw`` and return the normalised config, raising on any issue.

    ``None`` yields an empty config. Unknown top-level keys are preserved.
    """

    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise InvalidSourceConfigError([f"Invalid JSON string provided for source configuration: {exc}"]) from exc
    if not isinstance(raw, Mapping):
        raise InvalidSourceConfigError(["Source configuration must be an object"])

    issues: list[str] = []
    config: dict[str, Any] = {
        key: value for key, value in raw.items() if key not in ("youtube", "rss", "webList", "web_list")
    }

    youtube = raw.get("youtube")
    if youtube is not None:
        if isinstance(youtube, Mapping):
            section = {key: value for key, value in youtube.items() if key not in ("channelId", "playlistId")}
            channel = _text(_pick(youtube, "channel", "channelId"))
            playlist = _text(_pick(youtube, "playlist", "playlistId"))
            section.pop("channel", None)
            section.pop("playlist", None)
            if channel:
                section["channel"] = channel
            if playlist:
                section["playlist"] = playlist
            if section:
                config["youtube"] = section
        else:
            issues.append("youtube: must be an object")

    rss = raw.get("rss")
    if rss is not None:
        if isinstance(rss, Mapping):
            if "canonical" in rss and not isinstance(rss["canonical"], bool):
                issues.append("rss.canonical: must be a boolean")
            elif rss:
                config["rss"] = dict(rss)
        else:
            issues.append("rss: must be an object")

    web_list_raw = _pick(raw, "webList", "web_list")
    if web_list_raw is not None:
        web_list = parse_web_list_config(web_list_raw, issues)
        if web_list is not None:
            config["webList"] = web_list

    if issues:
        raise InvalidSourceConfigError(issues)
    return config


def web_list_from_config(config: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Return the validated ``webList`` section of a stored config, if it is usable."""

    if not isinstance(config, Mapping) or config.get("webList") is None:
        return None
    return parse_web_list_config(config["webList"], [])


__all__ = [
    "DEFAULT_TRANSFORM_REPLACEMENT",
    "DEFAULT_WEB_LIST_MAX_DEPTH",
    "InvalidSourceConfigError",
    "WEB_LIST_FIELDS",
    "parse_source_config",
    "parse_web_list_config",
    "regex_flags",
    "web_list_from_config",
]
