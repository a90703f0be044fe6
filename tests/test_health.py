import unittest
from datetime import datetime, timedelta, timezone

from discovery.events import SOURCE_HEALTH, EventBus
from discovery.health import (
    ERROR,
    HEALTHY,
    STREAK_FAILURE,
    STREAK_STALE,
    STREAK_SUCCESS,
    WARNING,
    HealthSnapshot,
    HealthStreak,
    compute_health_after_fetch,
    compute_stale_health,
    publish_source_health,
    status_for_failures,
    to_iso,
)
from tests.helpers import EventCollector

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)


class HealthStatusTestCase(unittest.TestCase):
    def test_status_thresholds(self) -> None:
        self.assertEqual(status_for_failures(0), HEALTHY)
        self.assertEqual(status_for_failures(1), WARNING)
        self.assertEqual(status_for_failures(2), WARNING)
        self.assertEqual(status_for_failures(3), ERROR)
        self.assertEqual(status_for_failures(10), ERROR)

    def test_streaks_follow_outcomes(self) -> None:
        snapshot = None
        failures = 0
        outcomes = [False, False, True, True, False]
        observed = []
        for index, success in enumerate(outcomes):
            snapshot = compute_health_after_fetch(
                snapshot,
                previous_failures=failures,
                success=success,
                completed_at=NOW + timedelta(minutes=index),
                failure_reason=None if success else "timeout",
                last_success_at=snapshot.last_success_at if snapshot else None,
            )
            failures = snapshot.consecutive_failures
            observed.append((snapshot.streak.type, snapshot.streak.count, snapshot.status))

        self.assertEqual(
            observed,
            [
                (STREAK_FAILURE, 1, WARNING),
                (STREAK_FAILURE, 2, WARNING),
                (STREAK_SUCCESS, 1, HEALTHY),
                (STREAK_SUCCESS, 2, HEALTHY),
                (STREAK_FAILURE, 1, WARNING),
            ],
        )
        self.assertEqual(snapshot.last_success_at, NOW + timedelta(minutes=3))
        self.assertEqual(snapshot.failure_reason, "timeout")

    def test_stale_keeps_first_stale_time(self) -> None:
        first = compute_stale_health(
            None,
            consecutive_failures=3,
            now=NOW,
            last_fetched_at=None,
            last_success_at=None,
            failure_reason="http_5xx",
        )
        second = compute_stale_health(
            first,
            consecutive_failures=3,
            now=NOW + timedelta(hours=1),
            last_fetched_at=None,
            last_success_at=None,
        )

        self.assertEqual(first.status, ERROR)
        self.assertEqual(first.streak, HealthStreak(STREAK_STALE, 1))
        self.assertEqual(second.streak, HealthStreak(STREAK_STALE, 2))
        self.assertEqual(second.stale_since, NOW)
        self.assertEqual(second.observed_at, NOW + timedelta(hours=1))

    def test_json_round_trip(self) -> None:
        snapshot = compute_stale_health(
            None,
            consecutive_failures=1,
            now=NOW,
            last_fetched_at=NOW - timedelta(days=2),
            last_success_at=NOW - timedelta(days=3),
            failure_reason="timeout",
        )
        payload = snapshot.to_json()

        self.assertEqual(payload["observedAt"], "2024-05-02T12:00:00Z")
        self.assertEqual(payload["staleSince"], "2024-05-02T12:00:00Z")
        self.assertEqual(payload["streak"], {"type": "stale", "count": 1})
        self.assertEqual(HealthSnapshot.from_json(payload), snapshot)

    def test_invalid_json_is_ignored(self) -> None:
        self.assertIsNone(HealthSnapshot.from_json(None))
        self.assertIsNone(HealthSnapshot.from_json({"status": "bogus", "observedAt": "2024-05-02T12:00:00Z"}))
        self.assertIsNone(HealthSnapshot.from_json({"status": HEALTHY}))

    def test_to_iso_treats_naive_as_utc(self) -> None:
        self.assertEqual(to_iso(datetime(2024, 5, 2, 12, 0)), "2024-05-02T12:00:00Z")
        self.assertIsNone(to_iso(None))


class PublishHealthTestCase(unittest.TestCase):
    def test_publishes_failure_details(self) -> None:
        bus = EventBus()
        collector = EventCollector(bus)
        health = compute_health_after_fetch(
            None, previous_failures=2, success=False, completed_at=NOW, failure_reason="http_5xx"
        )

        publish_source_health(
            bus, client_id="acme", source_id="src-1", source_type="rss", health=health, attempt=2
        )

        (event,) = collector.of_type(SOURCE_HEALTH)
        self.assertEqual(event.version, 1)
        self.assertEqual(
            event.payload,
            {
                "clientId": "acme",
                "sourceId": "src-1",
                "sourceType": "rss",
                "status": ERROR,
                "lastFetchedAt": "2024-05-02T12:00:00Z",
                "observedAt": "2024-05-02T12:00:00Z",
                "consecutiveFailures": 3,
                "failureReason": "http_5xx",
                "attempt": 2,
            },
        )

    def test_success_omits_optional_fields(self) -> None:
        bus = EventBus()
        collector = EventCollector(bus)
        health = compute_health_after_fetch(None, previous_failures=0, success=True, completed_at=NOW)

        publish_source_health(bus, client_id="acme", source_id="src-1", source_type="rss", health=health)
        publish_source_health(None, client_id="acme", source_id="src-1", source_type="rss", health=health)

        (event,) = collector.events
        self.assertNotIn("attempt", event.payload)
        self.assertNotIn("failureReason", event.payload)
        self.assertNotIn("staleSince", event.payload)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
