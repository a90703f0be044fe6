"""Relevance scoring for discovered items and the inline scoring step of ingestion."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from .adapters import ItemValidationError, NormalizedItem
from .config import ScoringConfig, ScoringConfigCache, clamp01
from .events import EVENT_VERSION, QUEUE_UPDATED, SCORE_COMPLETE, SCORING_FAILED, EventBus
from .health import to_iso
from .keywords import FEATURE_DISCOVERY_AGENT, FeatureFlagProvider, KeywordProvider
from .repository import DiscoveryRepository, ItemRecord, ScoreRecord

LOGGER = logging.getLogger(__name__)

KEYWORD_MATCH_DAMPING = 2
SCORE_PRECISION = 4

STATUS_SCORED = "scored"
STATUS_SUPPRESSED = "suppressed"


class ScoringErrorCode(str, Enum):
    DISABLED = "DISCOVERY_SCORING_DISABLED"
    NOT_FOUND = "DISCOVERY_SCORING_NOT_FOUND"
    INVALID_ITEM = "DISCOVERY_SCORING_INVALID_ITEM"


@dataclass(slots=True)
class ScoringError:
    code: ScoringErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def item_ids(self) -> list[str]:
        """Item ids named by the error details, if any."""

        ids = self.details.get("itemIds")
        if isinstance(ids, list):
            collected = [value for value in ids if isinstance(value, str) and value]
            if collected:
                return collected
        invalid = self.details.get("invalidItems")
        if isinstance(invalid, list):
            return [
                entry["itemId"]
                for entry in invalid
                if isinstance(entry, Mapping) and isinstance(entry.get("itemId"), str) and entry["itemId"]
            ]
        return []


@dataclass(slots=True)
class ScoreResult:
    item_id: str
    client_id: str
    source_id: str
    score: float
    components: dict[str, float]
    applied_threshold: float
    status: str
    weights_version: int
    matched_keywords: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ScoreItemsResponse:
    ok: bool
    results: list[ScoreResult] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    error: ScoringError | None = None


# Components ----------------------------------------------------------------------

def round_score(value: float) -> float:
    return round(value, SCORE_PRECISION)


def compute_keyword_score(title: str, body: str, keywords: Sequence[str]) -> tuple[float, list[str]]:
    """Coverage of unique keywords in ``title`` + ``body``, boosted by the raw match count."""

    if not keywords:
        return 0.0, []
    text = f"{title} {body}".lower()
    seen: set[str] = set()
    matched: list[str] = []
    for keyword in keywords:
        original = (keyword or "").strip()
        if not original:
            continue
        lowered = original.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        if lowered in text:
            matched.append(original)
    if not seen or not matched:
        return 0.0, []
    matches = len(matched)
    coverage = matches / len(seen)
    influence = matches / (matches + KEYWORD_MATCH_DAMPING)
    return clamp01(coverage + (1 - coverage) * influence), matched


def compute_recency_score(reference: datetime | None, half_life_hours: float, now: datetime) -> float:
    if reference is None:
        return 0.0
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    age_seconds = (now - reference).total_seconds()
    if age_seconds <= 0:
        return 1.0
    age_hours = age_seconds / 3600
    return clamp01(math.pow(0.5, age_hours / half_life_hours))


def compute_source_score(
    content_type: str | None,
    source_metadata: Mapping[str, Any] | None,
    multipliers: Mapping[str, float],
) -> float:
    if not content_type and isinstance(source_metadata, Mapping):
        candidate = source_metadata.get("contentType")
        content_type = candidate if isinstance(candidate, str) else None
    multiplier = multipliers.get(content_type or "", multipliers.get("article", 1.0))
    return clamp01(multiplier)


def composite_score(components: Mapping[str, float], config: ScoringConfig) -> float:
    weights = config.weights
    return clamp01(
        components["keyword"] * weights.keyword
        + components["recency"] * weights.recency
        + components["source"] * weights.source
    )


def score_normalized_item(
    item: ItemRecord,
    normalized: NormalizedItem,
    keywords: Sequence[str],
    config: ScoringConfig,
    now: datetime,
) -> ScoreResult:
    keyword_score, matched = compute_keyword_score(normalized.title, normalized.extracted_body, keywords)
    recency_score = compute_recency_score(
        normalized.published_at or item.fetched_at, config.recency_half_life_hours, now
    )
    source_score = compute_source_score(
        normalized.content_type.value if normalized.content_type else None,
        item.source_metadata,
        config.source_multipliers,
    )
    components = {"keyword": keyword_score, "recency": recency_score, "source": source_score}
    score = composite_score(components, config)
    return ScoreResult(
        item_id=item.id,
        client_id=item.client_id,
        source_id=item.source_id,
        score=round_score(score),
        components={name: round_score(value) for name, value in components.items()},
        applied_threshold=config.threshold,
        status=STATUS_SCORED if score >= config.threshold else STATUS_SUPPRESSED,
        weights_version=config.weights_version,
        matched_keywords=matched,
    )


# Engine --------------------------------------------------------------------------

def _invalid_reason(normalized_payload: Any) -> tuple[str | None, NormalizedItem | None]:
    if isinstance(normalized_payload, Mapping):
        body = normalized_payload.get("extractedBody")
        if not isinstance(body, str) or not body.strip():
            return "extracted_body_missing", None
    try:
        return None, NormalizedItem.from_payload(normalized_payload)
    except ItemValidationError:
        return "normalized_payload_invalid", None


class ScoringEngine:
    """Scores persisted items for their client's keywords and the active scoring config."""

    def __init__(
        self,
        repository: DiscoveryRepository,
        *,
        keywords: KeywordProvider,
        feature_flags: FeatureFlagProvider,
        config_cache: ScoringConfigCache | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._keywords = keywords
        self._feature_flags = feature_flags
        self._config_cache = config_cache or ScoringConfigCache()
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def config(self) -> ScoringConfig:
        return self._config_cache.get()

    def score_items(self, item_ids: Sequence[str], *, now: datetime | None = None) -> ScoreItemsResponse:
        """Score ``item_ids`` as one batch; any missing, disabled or invalid item fails the batch."""

        config = self._config_cache.get()
        unique_ids = list(dict.fromkeys(item_id.strip() for item_id in item_ids if item_id and item_id.strip()))
        if not unique_ids:
            return ScoreItemsResponse(ok=True, results=[], config=config.snapshot())

        items = self._repository.fetch_items_by_ids(unique_ids)
        items_by_id = {item.id: item for item in items}
        missing = [item_id for item_id in unique_ids if item_id not in items_by_id]
        if missing:
            return self._failure(
                ScoringErrorCode.NOT_FOUND,
                "One or more discovery items could not be found.",
                {"itemIds": missing},
            )

        ordered = [items_by_id[item_id] for item_id in unique_ids]
        by_client: dict[str, list[ItemRecord]] = {}
        for item in ordered:
            by_client.setdefault(item.client_id, []).append(item)

        for client_id, client_items in by_client.items():
            if not self._feature_flags.is_enabled(client_id, FEATURE_DISCOVERY_AGENT):
                return self._failure(
                    ScoringErrorCode.DISABLED,
                    "Discovery scoring is not enabled for this client.",
                    {"clientId": client_id, "itemIds": [item.id for item in client_items]},
                )

        keywords_by_client = {client_id: self._keywords.get_keywords(client_id) for client_id in by_client}
        current = now or self._now()

        invalid_items: list[dict[str, str]] = []
        results: list[ScoreResult] = []
        for item in ordered:
            reason, normalized = _invalid_reason(item.normalized)
            if reason is not None:
                invalid_items.append({"itemId": item.id, "reason": reason})
                continue
            results.append(
                score_normalized_item(item, normalized, keywords_by_client.get(item.client_id, []), config, current)
            )

        if invalid_items:
            return self._failure(
                ScoringErrorCode.INVALID_ITEM,
                "One or more discovery items are missing required data for scoring.",
                {"invalidItems": invalid_items},
            )
        return ScoreItemsResponse(ok=True, results=results, config=config.snapshot())

    @staticmethod
    def _failure(code: ScoringErrorCode, message: str, details: dict[str, Any]) -> ScoreItemsResponse:
        return ScoreItemsResponse(ok=False, error=ScoringError(code=code, message=message, details=details))


# Inline scoring ------------------------------------------------------------------

@dataclass(slots=True)
class InlineScoringMetrics:
    attempted: bool = False
    duration_ms: int | None = None
    pending_before: int | None = None
    pending_after: int | None = None
    scored_count: int | None = None
    suppressed_count: int | None = None
    skipped_reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"attempted": self.attempted}
        optional = {
            "durationMs": self.duration_ms,
            "pendingBefore": self.pending_before,
            "pendingAfter": self.pending_after,
            "scoredCount": self.scored_count,
            "suppressedCount": self.suppressed_count,
            "skippedReason": self.skipped_reason,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def run_inline_scoring(
    *,
    client_id: str,
    source_id: str,
    item_ids: Sequence[str],
    engine: ScoringEngine,
    repository: DiscoveryRepository,
    feature_flags: FeatureFlagProvider,
    bus: EventBus | None,
    pending_threshold: float,
    now: Callable[[], datetime],
) -> InlineScoringMetrics:
    """Score freshly inserted items unless the client is disabled or backlogged.

    Never raises: failures are recorded on the returned metrics.
    """

    if not item_ids:
        return InlineScoringMetrics(attempted=False, skipped_reason="no_new_items")

    metrics = InlineScoringMetrics()

    def _emit(event_type: str, payload: dict[str, Any]) -> None:
        if bus is not None:
            bus.emit(event_type, payload, version=EVENT_VERSION)

    try:
        if not feature_flags.is_enabled(client_id, FEATURE_DISCOVERY_AGENT):
            metrics.skipped_reason = "feature_disabled"
            LOGGER.info("Inline scoring skipped for client %s (source %s): feature disabled", client_id, source_id)
            return metrics

        pending_before = repository.count_pending(client_id)
        metrics.pending_before = pending_before
        if pending_before > pending_threshold:
            metrics.skipped_reason = "backlog"
            LOGGER.warning(
                "Inline scoring deferred for client %s (source %s): %d pending exceeds threshold %s",
                client_id,
                source_id,
                pending_before,
                pending_threshold,
            )
            _emit(
                QUEUE_UPDATED,
                {
                    "clientId": client_id,
                    "pendingCount": pending_before,
                    "updatedAt": to_iso(now()),
                    "reason": "backlog",
                },
            )
            return metrics

        metrics.attempted = True
        scoring_start = now()
        response = engine.score_items(item_ids, now=scoring_start)
        scoring_end = now()
        metrics.duration_ms = _elapsed_ms(scoring_start, scoring_end)

        if not response.ok:
            error = response.error
            metrics.skipped_reason = "error"
            metrics.error_code = error.code.value
            metrics.error_message = error.message
            reset_ids = error.item_ids() or list(item_ids)
            repository.reset_to_pending(reset_ids)
            _emit(
                SCORING_FAILED,
                {
                    "clientId": client_id,
                    "itemIds": reset_ids,
                    "errorCode": error.code.value,
                    "errorMessage": error.message,
                    "details": error.details,
                    "occurredAt": to_iso(scoring_end),
                },
            )
            LOGGER.error(
                "Inline scoring failed for client %s (source %s): %s %s",
                client_id,
                source_id,
                error.code.value,
                error.message,
            )
            return metrics

        metrics.scored_count = sum(1 for result in response.results if result.status == STATUS_SCORED)
        metrics.suppressed_count = sum(1 for result in response.results if result.status == STATUS_SUPPRESSED)

        scored_at = now()
        repository.upsert_scores(
            ScoreRecord(
                item_id=result.item_id,
                score=result.score,
                keyword_score=result.components["keyword"],
                recency_score=result.components["recency"],
                source_score=result.components["source"],
                applied_threshold=result.applied_threshold,
                status=result.status,
                scored_at=scored_at,
                weights_version=result.weights_version,
                components=dict(result.components),
                metadata={"configSnapshot": response.config, "topics": result.matched_keywords},
            )
            for result in response.results
        )

        pending_after = repository.count_pending(client_id)
        metrics.pending_after = pending_after

        scored_at_iso = to_iso(scored_at)
        for result in response.results:
            _emit(
                SCORE_COMPLETE,
                {
                    "clientId": result.client_id,
                    "itemId": result.item_id,
                    "sourceId": result.source_id,
                    "score": result.score,
                    "status": result.status,
                    "components": result.components,
                    "appliedThreshold": result.applied_threshold,
                    "weightsVersion": result.weights_version,
                    "scoredAt": scored_at_iso,
                },
            )
        _emit(
            QUEUE_UPDATED,
            {
                "clientId": client_id,
                "pendingCount": pending_after,
                "scoredDelta": metrics.scored_count,
                "suppressedDelta": metrics.suppressed_count,
                "updatedAt": scored_at_iso,
                "reason": "scoring",
            },
        )
    except Exception as exc:
        metrics.skipped_reason = "error"
        metrics.error_message = str(exc)
        LOGGER.exception("Inline scoring raised unexpectedly for client %s (source %s)", client_id, source_id)

    return metrics


__all__ = [
    "InlineScoringMetrics",
    "KEYWORD_MATCH_DAMPING",
    "ScoreItemsResponse",
    "ScoreResult",
    "ScoringEngine",
    "ScoringError",
    "ScoringErrorCode",
    "compute_keyword_score",
    "compute_recency_score",
    "compute_source_score",
    "composite_score",
    "run_inline_scoring",
    "score_normalized_item",
]
