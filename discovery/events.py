"""In-process publish/subscribe bus for discovery lifecycle events."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)

EVENT_VERSION = 1

INGESTION_STARTED = "ingestion.started"
INGESTION_COMPLETED = "ingestion.completed"
INGESTION_FAILED = "ingestion.failed"
INGEST_ERROR = "ingest.error"
SOURCE_HEALTH = "source.health"
SCORE_COMPLETE = "discovery.score.complete"
QUEUE_UPDATED = "discovery.queue.updated"
SCORING_FAILED = "discovery.scoring.failed"
KEYWORD_UPDATED = "keyword.updated"


@dataclass(slots=True)
class DiscoveryEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    version: int = EVENT_VERSION


EventHandler = Callable[[DiscoveryEvent], None]


class EventBus:
    """Synchronous fan-out to subscribed handlers.

    Handlers run on the publishing thread. A handler that raises is logged and
    the remaining handlers still receive the event. After ``close()`` the bus
    drops every subscriber and ignores further publishes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[EventHandler] = []
        self._closed = False

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            if self._closed:
                raise RuntimeError("EventBus is closed")
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers.remove(handler)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, event: DiscoveryEvent) -> None:
        with self._lock:
            if self._closed:
                LOGGER.debug("Dropping %s event published after close", event.type)
                return
            handlers = tuple(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                LOGGER.exception("Event handler failed for %s", event.type)

    def emit(self, event_type: str, payload: dict[str, Any], *, version: int = EVENT_VERSION) -> None:
        self.publish(DiscoveryEvent(type=event_type, payload=payload, version=version))

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._handlers.clear()


__all__ = [
    "DiscoveryEvent",
    "EVENT_VERSION",
    "EventBus",
    "EventHandler",
    "INGESTION_COMPLETED",
    "INGESTION_FAILED",
    "INGESTION_STARTED",
    "INGEST_ERROR",
    "KEYWORD_UPDATED",
    "QUEUE_UPDATED",
    "SCORE_COMPLETE",
    "SCORING_FAILED",
    "SOURCE_HEALTH",
]
