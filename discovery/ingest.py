"""Command-line entrypoint and coordinator for discovery source ingestion."""

from __future__ import annotations

import argparse
import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base, generate_uuid7

from .adapters import AdapterResult, FailureReason, IngestionContext, IngestionInput
from .config import IngestConfig, ScoringConfigCache, _env_float, load_ingest_config
from .events import (
    EVENT_VERSION,
    INGEST_ERROR,
    INGESTION_COMPLETED,
    INGESTION_FAILED,
    INGESTION_STARTED,
    DiscoveryEvent,
    EventBus,
)
from .health import publish_source_health, to_iso
from .http_client import HttpFetcher
from .ingestion import execute_ingestion_adapter
from .keywords import (
    DEFAULT_KEYWORD_CACHE_TTL_SECONDS,
    FEATURE_DISCOVERY_AGENT,
    DatabaseFeatureFlags,
    DatabaseKeywordProvider,
    FeatureFlagProvider,
    KeywordCache,
)
from .repository import CompletionRecord, DiscoveryRepository, HealthUpdate, SourceRecord
from .retry import classify_failure
from .scoring import ScoringEngine, run_inline_scoring

LOGGER = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass(slots=True)
class IngestionStats:
    total_due: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "totalDue": self.total_due,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def _adapter_telemetry(result: AdapterResult | None) -> dict[str, Any]:
    if result is None:
        return {}
    adapter = result.metadata.get("adapter", "unknown") if result.metadata else "unknown"
    if result.ok:
        return {"adapter": adapter, "itemsFetched": len(result.items), "metadata": result.metadata or None}
    return {
        "adapter": adapter,
        "metadata": result.metadata or None,
        "error": {
            "message": str(result.error) if result.error is not None else None,
            "name": type(result.error).__name__ if result.error is not None else None,
        },
    }


class SourceProcessor:
    """Runs claim, fetch with retries, persist, score and complete for one source."""

    def __init__(
        self,
        repository: DiscoveryRepository,
        *,
        fetcher: HttpFetcher,
        scorer: ScoringEngine,
        feature_flags: FeatureFlagProvider,
        config: IngestConfig | None = None,
        bus: EventBus | None = None,
        now: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._repository = repository
        self._fetcher = fetcher
        self._scorer = scorer
        self._feature_flags = feature_flags
        self._config = config or IngestConfig()
        self._bus = bus
        self._now = now
        self._sleep = sleep
        self._cancel_event = cancel_event

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish(DiscoveryEvent(type=event_type, payload=payload, version=EVENT_VERSION))
        except Exception:
            LOGGER.exception("Failed to emit %s for source %s", event_type, payload.get("sourceId"))

    def _context(self) -> IngestionContext:
        return IngestionContext(
            fetcher=self._fetcher,
            now=self._now,
            youtube=self._config.youtube,
            cancel_event=self._cancel_event,
        )

    def _run_adapter(self, claimed: SourceRecord) -> AdapterResult:
        try:
            source_input = IngestionInput(
                source_id=claimed.id,
                client_id=claimed.client_id,
                source_type=claimed.source_type,
                url=claimed.url,
                canonical_url=claimed.canonical_url,
                config=claimed.config,
            )
            return execute_ingestion_adapter(source_input, self._context())
        except Exception as exc:
            LOGGER.exception("Adapter raised for source %s", claimed.id)
            return AdapterResult.failure(FailureReason.UNKNOWN_ERROR, {"adapter": "unknown"}, error=exc)

    def process(self, source: SourceRecord) -> str:
        if not self._feature_flags.is_enabled(source.client_id, FEATURE_DISCOVERY_AGENT):
            deferred_to = self._repository.defer(source.id, self._now())
            LOGGER.info(
                "Skipping source %s: discovery disabled for client %s (next check %s)",
                source.id,
                source.client_id,
                to_iso(deferred_to),
            )
            return OUTCOME_SKIPPED

        claimed = self._repository.claim(source.id, self._now())
        if claimed is None:
            LOGGER.debug("Source %s already claimed or no longer due", source.id)
            return OUTCOME_SKIPPED

        run_id = str(generate_uuid7())
        started_at = self._now()
        scheduled_at = source.next_fetch_at or started_at
        self._emit(
            INGESTION_STARTED,
            {
                "runId": run_id,
                "clientId": claimed.client_id,
                "sourceId": claimed.id,
                "sourceType": claimed.source_type,
                "scheduledAt": to_iso(scheduled_at),
                "startedAt": to_iso(started_at),
            },
        )

        retry_config = self._config.retry
        max_attempts = max(1, retry_config.max_attempts)
        success = False
        failure_reason: str | None = None
        retry_in_minutes: int | None = None
        next_retry_at: datetime | None = None
        adapter_result: AdapterResult | None = None
        permanent_failure_attempt: int | None = None
        attempts: list[dict[str, Any]] = []
        run_metrics: dict[str, Any] = {}
        issues: list[dict[str, Any]] = []
        health_update: HealthUpdate | None = None

        try:
            for attempt in range(1, max_attempts + 1):
                attempt_started_at = self._now()
                result = self._run_adapter(claimed)
                adapter_result = result
                attempt_completed_at = self._now()
                attempt_duration_ms = _elapsed_ms(attempt_started_at, attempt_completed_at)
                adapter_name = result.metadata.get("adapter") if result.metadata else None
                if not isinstance(adapter_name, str):
                    adapter_name = run_metrics.get("adapter", "unknown")
                run_metrics["adapter"] = adapter_name

                if result.ok:
                    metadata = result.metadata or {}
                    skipped = metadata.get("skipped") if isinstance(metadata.get("skipped"), list) else []
                    for key in ("entryCount", "totalItems"):
                        if isinstance(metadata.get(key), int):
                            run_metrics[key] = metadata[key]
                    run_metrics["normalizedCount"] = len(result.items)
                    run_metrics["skippedCount"] = len(skipped)
                    if skipped:
                        issues.append({"reason": "adapter_skipped", "count": len(skipped), "details": skipped})

                    try:
                        persisted = self._repository.save_items(claimed.client_id, claimed.id, result.items)
                    except Exception as exc:
                        LOGGER.exception("Failed to persist items for source %s", claimed.id)
                        result = AdapterResult.failure(
                            FailureReason.UNKNOWN_ERROR, {"adapter": adapter_name}, error=exc
                        )
                        adapter_result = result
                    else:
                        run_metrics["insertedCount"] = len(persisted.inserted)
                        run_metrics["duplicateCount"] = len(persisted.duplicates)
                        if persisted.duplicates:
                            issues.append({"reason": "duplicate", "count": len(persisted.duplicates)})

                        scoring = run_inline_scoring(
                            client_id=claimed.client_id,
                            source_id=claimed.id,
                            item_ids=[item.id for item in persisted.inserted],
                            engine=self._scorer,
                            repository=self._repository,
                            feature_flags=self._feature_flags,
                            bus=self._bus,
                            pending_threshold=self._config.scoring_pending_threshold,
                            now=self._now,
                        )
                        run_metrics["scoring"] = scoring.as_dict()

                        success = True
                        failure_reason = None
                        retry_in_minutes = None
                        next_retry_at = None
                        attempts.append(
                            {
                                "attempt": attempt,
                                "startedAt": to_iso(attempt_started_at),
                                "completedAt": to_iso(attempt_completed_at),
                                "durationMs": attempt_duration_ms,
                                "success": True,
                                "retryInMinutes": None,
                                "nextRetryAt": None,
                            }
                        )
                        break

                failure_reason = FailureReason(result.failure_reason).value
                classification = classify_failure(
                    result, attempt, attempt_completed_at, replace(retry_config, max_attempts=max_attempts)
                )
                retry_in_minutes = classification.retry_in_minutes
                next_retry_at = (
                    attempt_completed_at + timedelta(minutes=retry_in_minutes)
                    if retry_in_minutes is not None
                    else None
                )
                attempts.append(
                    {
                        "attempt": attempt,
                        "startedAt": to_iso(attempt_started_at),
                        "completedAt": to_iso(attempt_completed_at),
                        "durationMs": attempt_duration_ms,
                        "success": False,
                        "failureReason": failure_reason,
                        "retryInMinutes": retry_in_minutes,
                        "nextRetryAt": to_iso(next_retry_at),
                        "retryReason": classification.reason,
                        "retryAfterOverride": classification.from_retry_after_header,
                    }
                )
                LOGGER.info(
                    "Source %s attempt %d/%d failed with %s (%s)",
                    claimed.id,
                    attempt,
                    max_attempts,
                    failure_reason,
                    classification.reason,
                )

                if not classification.retryable:
                    if classification.reason == "permanent":
                        permanent_failure_attempt = attempt
                    break

                if retry_in_minutes and retry_in_minutes > 0:
                    self._sleep(retry_in_minutes * 60)
        finally:
            if not success and not failure_reason:
                failure_reason = FailureReason.UNKNOWN_ERROR.value

            completed_at = self._now()
            duration_ms = _elapsed_ms(started_at, completed_at)
            if failure_reason:
                run_metrics["failureReason"] = failure_reason

            record = CompletionRecord(
                run_id=run_id,
                source_id=claimed.id,
                client_id=claimed.client_id,
                started_at=started_at,
                completed_at=completed_at,
                fetch_interval_minutes=claimed.fetch_interval_minutes,
                success=success,
                failure_reason=failure_reason,
                retry_in_minutes=retry_in_minutes,
                telemetry={
                    "durationMs": duration_ms,
                    **_adapter_telemetry(adapter_result),
                    "attempts": attempts,
                    "attemptCount": len(attempts),
                    "maxAttempts": max_attempts,
                    "nextRetryAt": to_iso(next_retry_at),
                },
                metrics={**run_metrics, "issues": issues},
            )
            try:
                health_update = self._repository.complete(record)
            except Exception:
                LOGGER.exception("Failed to persist completion for source %s (run %s)", claimed.id, run_id)
                try:
                    health_update = self._repository.release(record)
                except Exception:
                    LOGGER.exception(
                        "Failed to reset source %s after completion error; it stays running until intervention",
                        claimed.id,
                    )

            completed_payload: dict[str, Any] = {
                "runId": run_id,
                "clientId": claimed.client_id,
                "sourceId": claimed.id,
                "sourceType": claimed.source_type,
                "startedAt": to_iso(started_at),
                "completedAt": to_iso(completed_at),
                "durationMs": duration_ms,
                "success": success,
                "attempt": len(attempts),
                "maxAttempts": max_attempts,
                "attempts": attempts,
                "metrics": run_metrics,
            }
            if failure_reason:
                completed_payload["failureReason"] = failure_reason
            if retry_in_minutes is not None:
                completed_payload["retryInMinutes"] = retry_in_minutes
            if next_retry_at is not None:
                completed_payload["nextRetryAt"] = to_iso(next_retry_at)
            self._emit(INGESTION_COMPLETED, completed_payload)

            if not success:
                failed_payload: dict[str, Any] = {
                    "runId": run_id,
                    "clientId": claimed.client_id,
                    "sourceId": claimed.id,
                    "sourceType": claimed.source_type,
                    "failureReason": failure_reason,
                    "attempt": len(attempts),
                    "maxAttempts": max_attempts,
                }
                if retry_in_minutes is not None:
                    failed_payload["retryInMinutes"] = retry_in_minutes
                if next_retry_at is not None:
                    failed_payload["nextRetryAt"] = to_iso(next_retry_at)
                self._emit(INGESTION_FAILED, failed_payload)
            elif issues:
                self._emit(
                    INGEST_ERROR,
                    {
                        "runId": run_id,
                        "clientId": claimed.client_id,
                        "sourceId": claimed.id,
                        "sourceType": claimed.source_type,
                        "issues": issues,
                    },
                )

            if health_update is not None:
                publish_source_health(
                    self._bus,
                    client_id=claimed.client_id,
                    source_id=claimed.id,
                    source_type=claimed.source_type,
                    health=health_update.health,
                    attempt=None if success else (permanent_failure_attempt or len(attempts)),
                )

        return OUTCOME_SUCCEEDED if success else OUTCOME_FAILED


def run_ingestion_job(
    repository: DiscoveryRepository,
    *,
    scorer: ScoringEngine,
    feature_flags: FeatureFlagProvider,
    config: IngestConfig | None = None,
    bus: EventBus | None = None,
    fetcher: HttpFetcher | None = None,
    transport=None,
    now: Callable[[], datetime] | None = None,
    worker_limit: int | None = None,
    batch_size: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
    cancel_event: threading.Event | None = None,
) -> IngestionStats:
    """Process every due source with at most ``worker_limit`` sources in flight.

    A failure inside one source is counted and never aborts the batch.
    """

    config = config or load_ingest_config()
    now_fn = now or _utc_now
    workers = worker_limit if worker_limit and worker_limit > 0 else max(1, config.worker_limit)
    if batch_size is None or batch_size <= 0:
        batch_size = replace(config, worker_limit=workers).effective_batch_size()

    due_sources = repository.list_due(batch_size, now_fn())
    stats = IngestionStats(total_due=len(due_sources))
    if not due_sources:
        LOGGER.info("No discovery sources due")
        return stats

    owns_fetcher = fetcher is None
    if fetcher is None:
        fetcher = HttpFetcher(config, transport=transport)
    processor = SourceProcessor(
        repository,
        fetcher=fetcher,
        scorer=scorer,
        feature_flags=feature_flags,
        config=config,
        bus=bus,
        now=now_fn,
        sleep=sleep,
        cancel_event=cancel_event,
    )

    queue: deque[SourceRecord] = deque(due_sources)
    future_to_source: dict[Future[str], SourceRecord] = {}

    try:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="discovery-ingest") as executor:

            def _refill() -> None:
                while len(future_to_source) < workers and queue:
                    source = queue.popleft()
                    stats.processed += 1
                    future_to_source[executor.submit(processor.process, source)] = source

            _refill()
            while future_to_source:
                done, _ = wait(tuple(future_to_source), return_when=FIRST_COMPLETED)
                for finished in done:
                    source = future_to_source.pop(finished)
                    try:
                        outcome = finished.result()
                    except Exception:
                        LOGGER.exception("Failed to process discovery source %s", source.id)
                        stats.failed += 1
                        continue
                    if outcome == OUTCOME_SUCCEEDED:
                        stats.succeeded += 1
                    elif outcome == OUTCOME_SKIPPED:
                        stats.skipped += 1
                    else:
                        stats.failed += 1
                _refill()
    finally:
        if owns_fetcher:
            fetcher.close()

    LOGGER.info(
        "Processed %d of %d due sources: %d succeeded, %d failed, %d skipped",
        stats.processed,
        stats.total_due,
        stats.succeeded,
        stats.failed,
        stats.skipped,
    )
    return stats


@dataclass(slots=True)
class IngestionServices:
    repository: DiscoveryRepository
    scorer: ScoringEngine
    feature_flags: DatabaseFeatureFlags
    keyword_cache: KeywordCache


def build_services(session_factory, bus: EventBus | None = None) -> IngestionServices:
    """Wire the database backed collaborators used by the coordinator."""

    repository = DiscoveryRepository(session_factory)
    feature_flags = DatabaseFeatureFlags(session_factory)
    keyword_cache = KeywordCache(
        DatabaseKeywordProvider(session_factory),
        ttl_seconds=_env_float(
            None, "DISCOVERY_KEYWORD_CACHE_TTL_SECONDS", DEFAULT_KEYWORD_CACHE_TTL_SECONDS, minimum=1
        ),
    )
    if bus is not None:
        keyword_cache.bind(bus)
    scorer = ScoringEngine(
        repository,
        keywords=keyword_cache,
        feature_flags=feature_flags,
        config_cache=ScoringConfigCache(),
    )
    return IngestionServices(
        repository=repository,
        scorer=scorer,
        feature_flags=feature_flags,
        keyword_cache=keyword_cache,
    )


def log_event(event: DiscoveryEvent) -> None:
    LOGGER.debug("event %s v%d %s", event.type, event.version, event.payload)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fetch due discovery sources and score new items")
    parser.add_argument("--db-url", type=str, default=None, help="SQLAlchemy database URL (defaults to DISCOVERY_DATABASE_URL)")
    parser.add_argument("--workers", type=int, default=None, help="Maximum number of sources processed concurrently")
    parser.add_argument("--batch-size", type=int, default=None, help="Maximum number of due sources loaded per run")
    return parser


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config = load_ingest_config()
    if args.db_url:
        config.db_url = args.db_url
    if args.workers is not None:
        if args.workers <= 0:
            parser.error("--workers must be positive")
        config.worker_limit = args.workers
    if args.batch_size is not None:
        if args.batch_size <= 0:
            parser.error("--batch-size must be positive")
        config.batch_size = args.batch_size
    if not config.db_url:
        parser.error("--db-url is required when DISCOVERY_DATABASE_URL is unset")

    engine = create_engine(config.db_url)
    Base.metadata.create_all(engine)  # ensure required tables exist before queries
    SessionLocal = sessionmaker(bind=engine)

    bus = EventBus()
    bus.subscribe(log_event)
    services = build_services(SessionLocal, bus)
    try:
        stats = run_ingestion_job(
            services.repository,
            scorer=services.scorer,
            feature_flags=services.feature_flags,
            config=config,
            bus=bus,
        )
    finally:
        bus.close()
        engine.dispose()

    return 0 if stats.failed == 0 else 1


__all__ = [
    "IngestionServices",
    "IngestionStats",
    "SourceProcessor",
    "build_arg_parser",
    "build_services",
    "configure_logging",
    "log_event",
    "main",
    "run_ingestion_job",
]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
