"""Adapter registry mapping every source type to its fetch function."""

from __future__ import annotations

from typing import Callable, Dict

from .adapters import AdapterResult, IngestionContext, IngestionInput
from .adapters.http import fetch_http_source
from .adapters.rss import fetch_rss_source
from .adapters.youtube import fetch_youtube_source
from .sources import SourceType

Adapter = Callable[[IngestionInput, IngestionContext], AdapterResult]

_ADAPTER_REGISTRY: Dict[SourceType, Adapter] = {
    SourceType.WEB_PAGE: fetch_http_source,
    SourceType.RSS: fetch_rss_source,
    SourceType.YOUTUBE_CHANNEL: fetch_youtube_source,
    SourceType.YOUTUBE_PLAYLIST: fetch_youtube_source,
}

_missing = set(SourceType) - set(_ADAPTER_REGISTRY)
if _missing:  # pragma: no cover - import time guard
    raise RuntimeError(f"No adapter registered for source types: {sorted(item.value for item in _missing)}")


def get_adapter(source_type: SourceType | str) -> Adapter:
    """Return the adapter registered for the given source type."""

    try:
        return _ADAPTER_REGISTRY[SourceType(source_type)]
    except (KeyError, ValueError) as exc:
        raise KeyError(f"Unknown source type '{source_type}'") from exc


def execute_ingestion_adapter(source: IngestionInput, context: IngestionContext) -> AdapterResult:
    return get_adapter(source.source_type)(source, context)


__all__ = ["Adapter", "execute_ingestion_adapter", "get_adapter"]
