"""Shared test doubles."""

from __future__ import annotations

import threading

from discovery.events import DiscoveryEvent, EventBus


class EventCollector:
    """Subscriber that records every event it receives."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self.events: list[DiscoveryEvent] = []
        self._lock = threading.Lock()
        if bus is not None:
            bus.subscribe(self)

    def __call__(self, event: DiscoveryEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[DiscoveryEvent]:
        with self._lock:
            return [event for event in self.events if event.type == event_type]
