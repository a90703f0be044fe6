"""Celery tasks that run the ingestion coordinator and the stale source scan."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .celery_app import INGEST_TASK, STALE_TASK, celery_app
from .config import load_ingest_config, load_worker_settings
from .events import EventBus
from .ingest import build_services, log_event, run_ingestion_job
from .repository import DiscoveryPersistenceError, DiscoveryRepository
from .stale import run_mark_stale_job


LOGGER = logging.getLogger(__name__)

_SQLITE_PREFIX = "sqlite"


@lru_cache(maxsize=8)
def _session_factory(db_url: str):
    options = {} if db_url.startswith(_SQLITE_PREFIX) else load_worker_settings().engine_options()
    engine = create_engine(db_url, **options)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


def _resolve_db_url(db_url: Optional[str]) -> str:
    resolved = db_url or load_ingest_config().db_url
    if not resolved:
        raise RuntimeError("DISCOVERY_DATABASE_URL is not configured")
    return resolved


@celery_app.task(name=INGEST_TASK, bind=True)
def ingest_sources_task(
    self: Task,
    db_url: Optional[str] = None,
    worker_limit: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> dict[str, Any]:
    config = load_ingest_config()
    session_factory = _session_factory(_resolve_db_url(db_url))

    bus = EventBus()
    bus.subscribe(log_event)
    services = build_services(session_factory, bus)
    try:
        stats = run_ingestion_job(
            services.repository,
            scorer=services.scorer,
            feature_flags=services.feature_flags,
            config=config,
            bus=bus,
            worker_limit=worker_limit,
            batch_size=batch_size,
        )
    except DiscoveryPersistenceError as exc:
        LOGGER.exception("Ingestion task could not load due sources")
        raise self.retry(exc=exc, countdown=30, max_retries=3)
    finally:
        bus.close()

    return stats.as_dict()


@celery_app.task(name=STALE_TASK, bind=True)
def mark_stale_sources_task(
    self: Task,
    db_url: Optional[str] = None,
    threshold_hours: Optional[int] = None,
) -> dict[str, Any]:
    session_factory = _session_factory(_resolve_db_url(db_url))
    bus = EventBus()
    bus.subscribe(log_event)
    try:
        return run_mark_stale_job(
            DiscoveryRepository(session_factory),
            bus=bus,
            threshold_hours=threshold_hours,
        )
    finally:
        bus.close()


__all__ = ["ingest_sources_task", "mark_stale_sources_task"]
