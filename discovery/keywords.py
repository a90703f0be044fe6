"""Client keyword lookup with a TTL cache, and per-client feature flags."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from models import ClientFeatureFlag, DiscoveryKeyword

from .events import KEYWORD_UPDATED, DiscoveryEvent, EventBus

LOGGER = logging.getLogger(__name__)

FEATURE_DISCOVERY_AGENT = "discovery-agent"
DEFAULT_KEYWORD_CACHE_TTL_SECONDS = 300.0


class KeywordProvider(Protocol):
    def get_keywords(self, client_id: str) -> list[str]:
        ...


class FeatureFlagProvider(Protocol):
    def is_enabled(self, client_id: str, feature: str) -> bool:
        ...


class DatabaseKeywordProvider:
    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def get_keywords(self, client_id: str) -> list[str]:
        with self._session_factory() as session:
            rows = (
                session.query(DiscoveryKeyword.keyword)
                .filter(DiscoveryKeyword.client_id == client_id)
                .order_by(DiscoveryKeyword.created_at.asc(), DiscoveryKeyword.keyword.asc())
                .all()
            )
        return [row.keyword for row in rows]


class DatabaseFeatureFlags:
    """Reads ``client_feature_flags``; a missing row means the feature is off."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def is_enabled(self, client_id: str, feature: str = FEATURE_DISCOVERY_AGENT) -> bool:
        try:
            with self._session_factory() as session:
                row = (
                    session.query(ClientFeatureFlag.enabled)
                    .filter(ClientFeatureFlag.client_id == client_id, ClientFeatureFlag.feature == feature)
                    .one_or_none()
                )
        except SQLAlchemyError:
            LOGGER.exception("Feature flag lookup failed for client %s (%s)", client_id, feature)
            raise
        return bool(row.enabled) if row is not None else False


@dataclass(slots=True)
class _CacheEntry:
    keywords: tuple[str, ...]
    fetched_at: float


class KeywordCache:
    """Per-client keyword cache.

    Entries are served until ``ttl_seconds`` elapse or until an explicit
    invalidation, typically triggered by a ``keyword.updated`` event.
    """

    def __init__(
        self,
        provider: KeywordProvider,
        *,
        ttl_seconds: float = DEFAULT_KEYWORD_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def get_keywords(self, client_id: str) -> list[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(client_id)
            if entry is not None and now - entry.fetched_at < self._ttl_seconds:
                return list(entry.keywords)

        keywords = tuple(self._provider.get_keywords(client_id))
        with self._lock:
            self._entries[client_id] = _CacheEntry(keywords=keywords, fetched_at=now)
        return list(keywords)

    def invalidate(self, client_id: str | None = None) -> None:
        with self._lock:
            if client_id is None:
                self._entries.clear()
            else:
                self._entries.pop(client_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _handle_event(self, event: DiscoveryEvent) -> None:
        if event.type != KEYWORD_UPDATED:
            return
        client_id = event.payload.get("clientId")
        self.invalidate(client_id if isinstance(client_id, str) and client_id else None)

    def bind(self, bus: EventBus) -> Callable[[], None]:
        """Invalidate cached keywords whenever ``bus`` carries a keyword update."""

        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = bus.subscribe(self._handle_event)
        return self._unsubscribe


__all__ = [
    "DEFAULT_KEYWORD_CACHE_TTL_SECONDS",
    "DatabaseFeatureFlags",
    "DatabaseKeywordProvider",
    "FEATURE_DISCOVERY_AGENT",
    "FeatureFlagProvider",
    "KeywordCache",
    "KeywordProvider",
]
