"""Celery application wiring for the periodic discovery jobs."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from celery import Celery

from .config import WorkerSettings, load_worker_settings

INGEST_TASK = "discovery.ingest_sources"
STALE_TASK = "discovery.mark_stale_sources"


def build_beat_schedule(settings: WorkerSettings) -> dict[str, dict[str, Any]]:
    """Periodic entries for the ingest and stale jobs.

    Each entry expires after one interval so a backlog of missed ticks is not
    replayed when workers come back.
    """

    entries = {
        "discovery-ingest-due-sources": (INGEST_TASK, settings.ingest_interval_seconds),
        "discovery-mark-stale-sources": (STALE_TASK, settings.stale_scan_interval_seconds),
    }
    schedule: dict[str, dict[str, Any]] = {}
    for key, (task_name, interval) in entries.items():
        if not interval:
            continue
        schedule[key] = {
            "task": task_name,
            "schedule": float(interval),
            "options": {"queue": settings.task_queue, "expires": float(interval)},
        }
    return schedule


def create_celery_app(environ: Optional[Mapping[str, str]] = None) -> Celery:
    settings = load_worker_settings(environ)
    app = Celery(
        "discovery",
        broker=settings.broker_url,
        backend=settings.result_backend,
        include=["discovery.tasks"],
    )
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_always_eager=settings.always_eager,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_default_queue=settings.task_queue,
        task_routes={
            INGEST_TASK: {"queue": settings.task_queue},
            STALE_TASK: {"queue": settings.task_queue},
        },
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        beat_schedule=build_beat_schedule(settings),
    )
    if settings.result_backend.startswith("db+"):
        app.conf.database_engine_options = settings.engine_options()
        app.conf.database_short_lived_sessions = True
    return app


celery_app = create_celery_app()


__all__ = ["INGEST_TASK", "STALE_TASK", "build_beat_schedule", "celery_app", "create_celery_app"]
