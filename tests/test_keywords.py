import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from discovery.events import KEYWORD_UPDATED, EventBus
from discovery.keywords import (
    FEATURE_DISCOVERY_AGENT,
    DatabaseFeatureFlags,
    DatabaseKeywordProvider,
    KeywordCache,
)
from models import Base, ClientFeatureFlag, DiscoveryKeyword


class FakeClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class CountingProvider:
    def __init__(self, keywords) -> None:
        self.keywords = keywords
        self.calls = []

    def get_keywords(self, client_id: str) -> list[str]:
        self.calls.append(client_id)
        return list(self.keywords.get(client_id, []))


class KeywordCacheTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.provider = CountingProvider({"acme": ["widget", "launch"], "beta": ["gadget"]})
        self.cache = KeywordCache(self.provider, ttl_seconds=60, clock=self.clock)

    def test_entries_are_served_until_ttl_expires(self) -> None:
        self.assertEqual(self.cache.get_keywords("acme"), ["widget", "launch"])
        self.clock.value += 59
        self.cache.get_keywords("acme")
        self.assertEqual(self.provider.calls, ["acme"])

        self.clock.value += 1
        self.cache.get_keywords("acme")
        self.assertEqual(self.provider.calls, ["acme", "acme"])

    def test_returned_list_is_a_copy(self) -> None:
        keywords = self.cache.get_keywords("acme")
        keywords.append("mutated")
        self.assertEqual(self.cache.get_keywords("acme"), ["widget", "launch"])

    def test_invalidate_one_or_all(self) -> None:
        self.cache.get_keywords("acme")
        self.cache.get_keywords("beta")
        self.assertEqual(len(self.cache), 2)

        self.cache.invalidate("acme")
        self.assertEqual(len(self.cache), 1)
        self.cache.invalidate()
        self.assertEqual(len(self.cache), 0)

    def test_keyword_update_event_invalidates_client(self) -> None:
        bus = EventBus()
        self.cache.bind(bus)
        self.cache.get_keywords("acme")
        self.cache.get_keywords("beta")

        bus.emit(KEYWORD_UPDATED, {"clientId": "acme"})
        self.assertEqual(len(self.cache), 1)

        bus.emit("ingestion.started", {"clientId": "beta"})
        self.assertEqual(len(self.cache), 1)

        bus.emit(KEYWORD_UPDATED, {})
        self.assertEqual(len(self.cache), 0)

    def test_rebinding_replaces_subscription(self) -> None:
        first, second = EventBus(), EventBus()
        self.cache.bind(first)
        self.cache.bind(second)
        self.cache.get_keywords("acme")

        first.emit(KEYWORD_UPDATED, {"clientId": "acme"})
        self.assertEqual(len(self.cache), 1)
        second.emit(KEYWORD_UPDATED, {"clientId": "acme"})
        self.assertEqual(len(self.cache), 0)


class DatabaseProvidersTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine)
        with self.session_factory() as session:
            session.add_all(
                [
                    DiscoveryKeyword(client_id="acme", keyword="widget"),
                    DiscoveryKeyword(client_id="beta", keyword="gadget"),
                    ClientFeatureFlag(client_id="acme", feature=FEATURE_DISCOVERY_AGENT, enabled=True),
                    ClientFeatureFlag(client_id="beta", feature=FEATURE_DISCOVERY_AGENT, enabled=False),
                ]
            )
            session.commit()

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_keywords_are_scoped_to_client(self) -> None:
        provider = DatabaseKeywordProvider(self.session_factory)

        self.assertEqual(provider.get_keywords("acme"), ["widget"])
        self.assertEqual(provider.get_keywords("gamma"), [])

    def test_feature_flags(self) -> None:
        flags = DatabaseFeatureFlags(self.session_factory)

        self.assertTrue(flags.is_enabled("acme"))
        self.assertFalse(flags.is_enabled("beta"))
        self.assertFalse(flags.is_enabled("gamma"))
        self.assertFalse(flags.is_enabled("acme", "other-feature"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
