"""Configuration utilities shared by the discovery ingestion and scoring pipeline."""

from __future__ import annotations

import logging
import math
import os
import threading
from dataclasses import dataclass, field
from typing import Mapping, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "discovery-ingestor/1.0"
DEFAULT_WORKER_LIMIT = 3
MAX_BATCH_MULTIPLIER = 4
DEFAULT_SCORING_PENDING_THRESHOLD = 500
MAX_SCORING_PENDING_THRESHOLD = 100_000
DEFAULT_STALE_WARNING_HOURS = 24

DEFAULT_YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3/"
YOUTUBE_MAX_RESULTS_CAP = 50

CONTENT_TYPES = ("article", "rss", "youtube")


def _read(environ: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    source = os.environ if environ is None else environ
    value = source.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(
    environ: Optional[Mapping[str, str]],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = _read(environ, name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        LOGGER.warning("Invalid integer %r for %s; using default %s", raw, name, default)
        return default
    if (minimum is not None and parsed < minimum) or (maximum is not None and parsed > maximum):
        LOGGER.warning("Value %s for %s is out of range; using default %s", parsed, name, default)
        return default
    return parsed


def _env_float(
    environ: Optional[Mapping[str, str]],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    raw = _read(environ, name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        LOGGER.warning("Invalid number %r for %s; using default %s", raw, name, default)
        return default
    if not math.isfinite(parsed):
        return default
    if (minimum is not None and parsed < minimum) or (maximum is not None and parsed > maximum):
        LOGGER.warning("Value %s for %s is out of range; using default %s", parsed, name, default)
        return default
    return parsed


def clamp01(value: float) -> float:
    if not math.isfinite(value) or value <= 0:
        return 0.0
    if value >= 1:
        return 1.0
    return value


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    max_delay_minutes: int = 15
    base_delay_minutes: int = 1


@dataclass(slots=True)
class YoutubeConfig:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_YOUTUBE_API_BASE_URL
    max_results: int = YOUTUBE_MAX_RESULTS_CAP


@dataclass(slots=True)
class IngestConfig:
    db_url: Optional[str] = None
    worker_limit: int = DEFAULT_WORKER_LIMIT
    batch_size: Optional[int] = None
    request_timeout: float = 15.0
    user_agent: str = DEFAULT_USER_AGENT
    retry: RetryConfig = field(default_factory=RetryConfig)
    youtube: YoutubeConfig = field(default_factory=YoutubeConfig)
    scoring_pending_threshold: float = DEFAULT_SCORING_PENDING_THRESHOLD
    stale_warning_hours: int = DEFAULT_STALE_WARNING_HOURS

    def effective_batch_size(self) -> int:
        if self.batch_size and self.batch_size > 0:
            return self.batch_size
        workers = max(1, self.worker_limit)
        return max(workers * MAX_BATCH_MULTIPLIER, workers)


def clamp_youtube_max_results(value: int) -> int:
    return min(max(value, 1), YOUTUBE_MAX_RESULTS_CAP)


def _resolve_pending_threshold(environ: Optional[Mapping[str, str]]) -> float:
    raw = _read(environ, "DISCOVERY_SCORING_PENDING_THRESHOLD")
    if raw is None:
        return DEFAULT_SCORING_PENDING_THRESHOLD
    try:
        parsed = int(raw)
    except ValueError:
        return DEFAULT_SCORING_PENDING_THRESHOLD
    if parsed < 0:
        return DEFAULT_SCORING_PENDING_THRESHOLD
    if parsed == 0:
        return math.inf
    return min(max(parsed, 1), MAX_SCORING_PENDING_THRESHOLD)


def load_ingest_config(environ: Optional[Mapping[str, str]] = None) -> IngestConfig:
    """Build an :class:`IngestConfig` from environment variables with safe fallbacks."""

    retry = RetryConfig(
        max_attempts=_env_int(environ, "INGESTION_RETRY_MAX_ATTEMPTS", 3, minimum=1, maximum=10),
        max_delay_minutes=_env_int(environ, "INGESTION_RETRY_MAX_DELAY_MINUTES", 15, minimum=1, maximum=60),
    )

    max_results = YOUTUBE_MAX_RESULTS_CAP
    raw_max_results = _read(environ, "YOUTUBE_API_MAX_RESULTS")
    if raw_max_results is not None:
        try:
            max_results = clamp_youtube_max_results(int(raw_max_results))
        except ValueError:
            LOGGER.warning("Invalid YOUTUBE_API_MAX_RESULTS %r; using %d", raw_max_results, max_results)

    youtube = YoutubeConfig(
        api_key=_read(environ, "YOUTUBE_API_KEY"),
        base_url=_read(environ, "YOUTUBE_DATA_API_BASE_URL") or DEFAULT_YOUTUBE_API_BASE_URL,
        max_results=max_results,
    )

    batch_size = _env_int(environ, "DISCOVERY_INGEST_BATCH_SIZE", 0, minimum=1)

    return IngestConfig(
        db_url=_read(environ, "DISCOVERY_DATABASE_URL"),
        worker_limit=_env_int(environ, "DISCOVERY_INGEST_WORKERS", DEFAULT_WORKER_LIMIT, minimum=1),
        batch_size=batch_size or None,
        request_timeout=_env_float(environ, "DISCOVERY_HTTP_TIMEOUT_SECONDS", 15.0, minimum=0.1),
        user_agent=_read(environ, "DISCOVERY_USER_AGENT") or DEFAULT_USER_AGENT,
        retry=retry,
        youtube=youtube,
        scoring_pending_threshold=_resolve_pending_threshold(environ),
        stale_warning_hours=_env_int(
            environ, "DISCOVERY_STALE_WARNING_HOURS", DEFAULT_STALE_WARNING_HOURS, minimum=1
        ),
    )


# Scoring -----------------------------------------------------------------------

DEFAULT_COMPONENT_WEIGHTS = {"keyword": 0.5, "recency": 0.3, "source": 0.2}
DEFAULT_SOURCE_MULTIPLIERS = {"article": 1.0, "rss": 0.85, "youtube": 0.75}
DEFAULT_THRESHOLD = 0.6
DEFAULT_RECENCY_HALF_LIFE_HOURS = 48.0
DEFAULT_WEIGHTS_VERSION = 1


@dataclass(frozen=True, slots=True)
class ComponentWeights:
    keyword: float
    recency: float
    source: float

    def normalized(self) -> "ComponentWeights":
        total = self.keyword + self.recency + self.source
        if not math.isfinite(total) or total <= 0:
            return ComponentWeights(**DEFAULT_COMPONENT_WEIGHTS)
        return ComponentWeights(
            keyword=self.keyword / total,
            recency=self.recency / total,
            source=self.source / total,
        )

    def as_dict(self) -> dict[str, float]:
        return {"keyword": self.keyword, "recency": self.recency, "source": self.source}


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    weights: ComponentWeights = field(default_factory=lambda: ComponentWeights(**DEFAULT_COMPONENT_WEIGHTS))
    source_multipliers: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_SOURCE_MULTIPLIERS))
    threshold: float = DEFAULT_THRESHOLD
    recency_half_life_hours: float = DEFAULT_RECENCY_HALF_LIFE_HOURS
    weights_version: int = DEFAULT_WEIGHTS_VERSION

    def snapshot(self) -> dict[str, object]:
        return {
            "weights": self.weights.as_dict(),
            "threshold": self.threshold,
            "recencyHalfLifeHours": self.recency_half_life_hours,
            "weightsVersion": self.weights_version,
        }


def load_scoring_config(environ: Optional[Mapping[str, str]] = None) -> ScoringConfig:
    raw_weights = ComponentWeights(
        keyword=_env_float(environ, "DISCOVERY_SCORING_KEYWORD_WEIGHT", DEFAULT_COMPONENT_WEIGHTS["keyword"], minimum=0),
        recency=_env_float(environ, "DISCOVERY_SCORING_RECENCY_WEIGHT", DEFAULT_COMPONENT_WEIGHTS["recency"], minimum=0),
        source=_env_float(environ, "DISCOVERY_SCORING_SOURCE_WEIGHT", DEFAULT_COMPONENT_WEIGHTS["source"], minimum=0),
    )
    multipliers = {
        content_type: clamp01(
            _env_float(
                environ,
                f"DISCOVERY_SCORING_SOURCE_WEIGHT_{content_type.upper()}",
                DEFAULT_SOURCE_MULTIPLIERS[content_type],
                minimum=0,
            )
        )
        for content_type in CONTENT_TYPES
    }
    threshold = clamp01(
        _env_float(environ, "DISCOVERY_SCORING_THRESHOLD", DEFAULT_THRESHOLD, minimum=0, maximum=1)
    )
    half_life = max(
        1.0,
        _env_float(
            environ,
            "DISCOVERY_SCORING_RECENCY_HALF_LIFE_HOURS",
            DEFAULT_RECENCY_HALF_LIFE_HOURS,
            minimum=1,
        ),
    )
    weights_version = int(
        _env_float(environ, "DISCOVERY_SCORING_WEIGHTS_VERSION", DEFAULT_WEIGHTS_VERSION, minimum=1)
    ) or DEFAULT_WEIGHTS_VERSION

    return ScoringConfig(
        weights=raw_weights.normalized(),
        source_multipliers=multipliers,
        threshold=threshold,
        recency_half_life_hours=half_life,
        weights_version=weights_version,
    )


class ScoringConfigCache:
    """Resolves the scoring configuration once and serves it until reset."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ
        self._lock = threading.Lock()
        self._config: ScoringConfig | None = None

    def get(self) -> ScoringConfig:
        with self._lock:
            if self._config is None:
                self._config = load_scoring_config(self._environ)
            return self._config

    def reset(self) -> None:
        with self._lock:
            self._config = None


# Task runner -------------------------------------------------------------------

DEFAULT_INGEST_INTERVAL_SECONDS = 60
DEFAULT_STALE_SCAN_INTERVAL_SECONDS = 3600
DEFAULT_TASK_QUEUE = "discovery"


def _env_bool(environ: Optional[Mapping[str, str]], name: str, default: bool) -> bool:
    raw = _read(environ, name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class WorkerSettings:
    """Broker, schedule and pool settings for the periodic discovery tasks.

    A schedule interval of ``0`` disables that periodic task.
    """

    db_url: Optional[str] = None
    broker_url: str = "memory://"
    result_backend: str = "cache+memory://"
    always_eager: bool = True
    task_queue: str = DEFAULT_TASK_QUEUE
    ingest_interval_seconds: int = DEFAULT_INGEST_INTERVAL_SECONDS
    stale_scan_interval_seconds: int = DEFAULT_STALE_SCAN_INTERVAL_SECONDS
    pool_size: int = 2
    max_overflow: int = 0
    pool_recycle: int = 1800

    def engine_options(self) -> dict[str, object]:
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


def load_worker_settings(environ: Optional[Mapping[str, str]] = None) -> WorkerSettings:
    """Read task runner settings; broker and backend default to the database when one is set."""

    db_url = _read(environ, "DISCOVERY_DATABASE_URL")
    broker_url = _read(environ, "DISCOVERY_CELERY_BROKER_URL")
    backend_url = _read(environ, "DISCOVERY_CELERY_RESULT_BACKEND")
    if broker_url is None and db_url:
        broker_url = db_url if db_url.startswith("sqla+") else f"sqla+{db_url}"
    if backend_url is None and db_url:
        backend_url = db_url if db_url.startswith("db+") else f"db+{db_url}"

    return WorkerSettings(
        db_url=db_url,
        broker_url=broker_url or "memory://",
        result_backend=backend_url or "cache+memory://",
        always_eager=_env_bool(environ, "DISCOVERY_CELERY_TASK_ALWAYS_EAGER", True),
        task_queue=_read(environ, "DISCOVERY_CELERY_QUEUE") or DEFAULT_TASK_QUEUE,
        ingest_interval_seconds=_env_int(
            environ, "DISCOVERY_INGEST_INTERVAL_SECONDS", DEFAULT_INGEST_INTERVAL_SECONDS, minimum=0
        ),
        stale_scan_interval_seconds=_env_int(
            environ, "DISCOVERY_STALE_SCAN_INTERVAL_SECONDS", DEFAULT_STALE_SCAN_INTERVAL_SECONDS, minimum=0
        ),
        pool_size=_env_int(environ, "DISCOVERY_DB_POOL_SIZE", 2, minimum=1),
        max_overflow=_env_int(environ, "DISCOVERY_DB_MAX_OVERFLOW", 0, minimum=0),
        pool_recycle=_env_int(environ, "DISCOVERY_DB_POOL_RECYCLE", 1800, minimum=0),
    )



__all__ = [
    "ComponentWeights",
    "IngestConfig",
    "RetryConfig",
    "ScoringConfig",
    "ScoringConfigCache",
    "WorkerSettings",
    "YoutubeConfig",
    "clamp01",
    "clamp_youtube_max_results",
    "load_ingest_config",
    "load_scoring_config",
    "load_worker_settings",
]
