import unittest

from discovery.events import DiscoveryEvent, EventBus
from tests.helpers import EventCollector


class EventBusTestCase(unittest.TestCase):
    def test_handlers_receive_events_in_subscription_order(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe(lambda event: seen.append(("first", event.type)))
        bus.subscribe(lambda event: seen.append(("second", event.type)))

        bus.emit("ingestion.started", {"sourceId": "s"})

        self.assertEqual(seen, [("first", "ingestion.started"), ("second", "ingestion.started")])

    def test_failing_handler_does_not_block_others(self) -> None:
        bus = EventBus()
        collector = EventCollector(bus)

        def broken(event: DiscoveryEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe(broken)
        late = EventCollector(bus)

        with self.assertLogs("discovery.events", level="ERROR"):
            bus.emit("ingest.error", {"reason": "timeout"})

        self.assertEqual(len(collector.events), 1)
        self.assertEqual(len(late.events), 1)

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        collector = EventCollector()
        unsubscribe = bus.subscribe(collector)

        bus.emit("a", {})
        unsubscribe()
        unsubscribe()
        bus.emit("b", {})

        self.assertEqual([event.type for event in collector.events], ["a"])

    def test_closed_bus_drops_events_and_rejects_subscribers(self) -> None:
        bus = EventBus()
        collector = EventCollector(bus)
        bus.close()

        bus.emit("a", {})

        self.assertTrue(bus.closed)
        self.assertEqual(collector.events, [])
        with self.assertRaises(RuntimeError):
            bus.subscribe(collector)

    def test_collector_filters_by_type(self) -> None:
        bus = EventBus()
        collector = EventCollector(bus)
        bus.emit("a", {"n": 1})
        bus.emit("b", {"n": 2}, version=2)
        bus.emit("a", {"n": 3})

        self.assertEqual([event.payload["n"] for event in collector.of_type("a")], [1, 3])
        self.assertEqual(collector.of_type("b")[0].version, 2)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
