"""Per-source health snapshots, outcome streaks and health event publishing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .events import EVENT_VERSION, SOURCE_HEALTH, EventBus
from .normalization import parse_timestamp

LOGGER = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
ERROR = "error"

STREAK_SUCCESS = "success"
STREAK_FAILURE = "failure"
STREAK_STALE = "stale"

ERROR_FAILURE_THRESHOLD = 3


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def status_for_failures(consecutive_failures: int) -> str:
    if consecutive_failures >= ERROR_FAILURE_THRESHOLD:
        return ERROR
    if consecutive_failures > 0:
        return WARNING
    return HEALTHY


@dataclass(frozen=True, slots=True)
class HealthStreak:
    type: str
    count: int


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    status: str
    observed_at: datetime
    last_fetched_at: datetime | None
    last_success_at: datetime | None
    consecutive_failures: int
    streak: HealthStreak
    failure_reason: str | None = None
    stale_since: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "observedAt": to_iso(self.observed_at),
            "lastFetchedAt": to_iso(self.last_fetched_at),
            "lastSuccessAt": to_iso(self.last_success_at),
            "consecutiveFailures": self.consecutive_failures,
            "streak": {"type": self.streak.type, "count": self.streak.count},
        }
        if self.failure_reason:
            payload["failureReason"] = self.failure_reason
        if self.stale_since is not None:
            payload["staleSince"] = to_iso(self.stale_since)
        return payload

    @classmethod
    def from_json(cls, payload: Any) -> "HealthSnapshot | None":
        if not isinstance(payload, Mapping):
            return None
        observed_at = parse_timestamp(payload.get("observedAt"))
        status = payload.get("status")
        if observed_at is None or status not in (HEALTHY, WARNING, ERROR):
            return None
        streak_raw = payload.get("streak")
        streak = None
        if isinstance(streak_raw, Mapping) and isinstance(streak_raw.get("count"), int):
            streak = HealthStreak(type=str(streak_raw.get("type")), count=streak_raw["count"])
        failures = payload.get("consecutiveFailures")
        return cls(
            status=status,
            observed_at=observed_at,
            last_fetched_at=parse_timestamp(payload.get("lastFetchedAt")),
            last_success_at=parse_timestamp(payload.get("lastSuccessAt")),
            consecutive_failures=failures if isinstance(failures, int) else 0,
            streak=streak or HealthStreak(type=STREAK_SUCCESS, count=0),
            failure_reason=payload.get("failureReason") or None,
            stale_since=parse_timestamp(payload.get("staleSince")),
        )


def next_streak(previous: HealthSnapshot | None, outcome: str) -> HealthStreak:
    """Increment the streak while the outcome type repeats, else restart at 1."""

    if previous is not None and previous.streak.type == outcome and previous.streak.count > 0:
        return HealthStreak(type=outcome, count=previous.streak.count + 1)
    return HealthStreak(type=outcome, count=1)


def compute_health_after_fetch(
    previous: HealthSnapshot | None,
    *,
    previous_failures: int,
    success: bool,
    completed_at: datetime,
    failure_reason: str | None = None,
    last_success_at: datetime | None = None,
) -> HealthSnapshot:
    consecutive_failures = 0 if success else max(0, previous_failures) + 1
    return HealthSnapshot(
        status=status_for_failures(consecutive_failures),
        observed_at=completed_at,
        last_fetched_at=completed_at,
        last_success_at=completed_at if success else last_success_at,
        consecutive_failures=consecutive_failures,
        streak=next_streak(previous, STREAK_SUCCESS if success else STREAK_FAILURE),
        failure_reason=None if success else failure_reason,
    )


def compute_stale_health(
    previous: HealthSnapshot | None,
    *,
    consecutive_failures: int,
    now: datetime,
    last_fetched_at: datetime | None,
    last_success_at: datetime | None,
    failure_reason: str | None = None,
) -> HealthSnapshot:
    stale_since = previous.stale_since if previous is not None and previous.stale_since else now
    return HealthSnapshot(
        status=status_for_failures(max(0, consecutive_failures)),
        observed_at=now,
        last_fetched_at=last_fetched_at,
        last_success_at=last_success_at,
        consecutive_failures=max(0, consecutive_failures),
        streak=next_streak(previous, STREAK_STALE),
        failure_reason=failure_reason,
        stale_since=stale_since,
    )


def publish_source_health(
    bus: EventBus | None,
    *,
    client_id: str,
    source_id: str,
    source_type: str,
    health: HealthSnapshot,
    attempt: int | None = None,
) -> None:
    if bus is None:
        return
    payload: dict[str, Any] = {
        "clientId": client_id,
        "sourceId": source_id,
        "sourceType": source_type,
        "status": health.status,
        "lastFetchedAt": to_iso(health.last_fetched_at),
        "observedAt": to_iso(health.observed_at),
        "consecutiveFailures": health.consecutive_failures,
    }
    if health.failure_reason:
        payload["failureReason"] = health.failure_reason
    if attempt is not None:
        payload["attempt"] = attempt
    if health.stale_since is not None:
        payload["staleSince"] = to_iso(health.stale_since)
    try:
        bus.emit(SOURCE_HEALTH, payload, version=EVENT_VERSION)
    except Exception:  # pragma: no cover - bus swallows handler errors already
        LOGGER.exception("Failed to publish health for source %s", source_id)


__all__ = [
    "ERROR",
    "HEALTHY",
    "HealthSnapshot",
    "HealthStreak",
    "STREAK_FAILURE",
    "STREAK_STALE",
    "STREAK_SUCCESS",
    "WARNING",
    "compute_health_after_fetch",
    "compute_stale_health",
    "next_streak",
    "publish_source_health",
    "status_for_failures",
    "to_iso",
]
