"""Failure classification and retry planning for source fetch attempts."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

from .adapters import AdapterResult, FailureReason
from .config import RetryConfig

LOGGER = logging.getLogger(__name__)

RETRYABLE_REASONS = frozenset(
    {
        FailureReason.NETWORK_ERROR,
        FailureReason.TIMEOUT,
        FailureReason.HTTP_5XX,
        FailureReason.YOUTUBE_QUOTA,
    }
)


@dataclass(slots=True)
class RetryClassification:
    retryable: bool
    retry_in_minutes: int | None
    reason: str
    from_retry_after_header: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "retryable": self.retryable,
            "retryInMinutes": self.retry_in_minutes,
            "reason": self.reason,
            "fromRetryAfterHeader": self.from_retry_after_header,
        }


def _status_from(result: AdapterResult) -> int | None:
    for container in (result.metadata, result.raw):
        if isinstance(container, Mapping):
            status = container.get("status")
            if isinstance(status, int) and not isinstance(status, bool):
                return status
    return None


def _header(headers: Any, name: str) -> str | None:
    if not isinstance(headers, Mapping):
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == wanted and value is not None:
            return str(value)
    return None


def extract_retry_after_minutes(result: AdapterResult, now: datetime) -> int | None:
    """Return the ``Retry-After`` hint in whole minutes, rounded up."""

    raw = result.raw if isinstance(result.raw, Mapping) else {}
    value = _header(raw.get("headers"), "retry-after")
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None and math.isfinite(seconds):
        return max(0, math.ceil(seconds / 60))

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        LOGGER.debug("Ignoring unparseable Retry-After header %r", value)
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    delta_seconds = (retry_at - now).total_seconds()
    if delta_seconds <= 0:
        return 0
    return math.ceil(delta_seconds / 60)


def _is_retryable(reason: FailureReason, status: int | None) -> bool:
    if reason in RETRYABLE_REASONS:
        return True
    return reason is FailureReason.HTTP_4XX and status == 429


def classify_failure(
    result: AdapterResult,
    attempt: int,
    now: datetime,
    retry_config: RetryConfig | None = None,
) -> RetryClassification:
    """Decide whether a failed attempt should be retried and after how long.

    The delay is the largest of the exponential base delay, the adapter's
    suggested delay and any ``Retry-After`` header, clamped to
    ``[1, max_delay_minutes]``. Once ``attempt`` reaches ``max_attempts`` the
    outcome is ``exhausted`` even for transient failures.
    """

    config = retry_config or RetryConfig()
    if result.ok or result.failure_reason is None:
        return RetryClassification(retryable=False, retry_in_minutes=None, reason="none")

    reason = FailureReason(result.failure_reason)
    if not _is_retryable(reason, _status_from(result)):
        return RetryClassification(retryable=False, retry_in_minutes=None, reason="permanent")

    max_delay = max(1, config.max_delay_minutes)
    base_delay = min(2 ** max(0, attempt - 1) * config.base_delay_minutes, max_delay)
    retry_after = extract_retry_after_minutes(result, now)
    candidates = [
        value
        for value in (base_delay, result.retry_in_minutes, retry_after)
        if isinstance(value, (int, float)) and value >= 0
    ]
    delay = max(1, min(max_delay, math.ceil(max(candidates))))
    from_header = retry_after is not None

    if attempt >= config.max_attempts:
        return RetryClassification(
            retryable=False,
            retry_in_minutes=delay,
            reason="exhausted",
            from_retry_after_header=from_header,
        )
    return RetryClassification(
        retryable=True,
        retry_in_minutes=delay,
        reason="transient",
        from_retry_after_header=from_header,
    )


__all__ = [
    "RETRYABLE_REASONS",
    "RetryClassification",
    "classify_failure",
    "extract_retry_after_minutes",
]
