"""Periodic scan that flags sources which have not completed a fetch recently."""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .config import load_ingest_config
from .events import EventBus
from .health import publish_source_health
from .repository import DiscoveryRepository

LOGGER = logging.getLogger(__name__)


def run_mark_stale_job(
    repository: DiscoveryRepository,
    *,
    bus: EventBus | None = None,
    threshold_hours: int | None = None,
    now: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    """Mark sources idle for longer than ``threshold_hours`` and publish their health.

    Errors are logged and re-raised to the caller.
    """

    hours = threshold_hours if threshold_hours and threshold_hours > 0 else load_ingest_config().stale_warning_hours
    current = (now or (lambda: datetime.now(timezone.utc)))()
    cutoff = current - timedelta(hours=hours)

    try:
        updates = repository.mark_stale(cutoff, current)
    except Exception:
        LOGGER.exception("Stale source scan failed (threshold %dh)", hours)
        raise

    for update in updates:
        publish_source_health(
            bus,
            client_id=update.client_id,
            source_id=update.source_id,
            source_type=update.source_type,
            health=update.health,
        )

    if updates:
        LOGGER.info("Marked %d sources stale (no completed fetch in %dh)", len(updates), hours)
    else:
        LOGGER.debug("No stale sources found (threshold %dh)", hours)
    return {"updated": len(updates), "thresholdHours": hours}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flag discovery sources that have not fetched recently")
    parser.add_argument("--db-url", type=str, default=None, help="SQLAlchemy database URL (defaults to DISCOVERY_DATABASE_URL)")
    parser.add_argument("--hours", type=int, default=None, help="Override DISCOVERY_STALE_WARNING_HOURS")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    config = load_ingest_config()
    db_url = args.db_url or config.db_url
    if not db_url:
        parser.error("--db-url is required when DISCOVERY_DATABASE_URL is unset")
    if args.hours is not None and args.hours <= 0:
        parser.error("--hours must be positive")

    engine = create_engine(db_url)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)

    try:
        summary = run_mark_stale_job(
            DiscoveryRepository(SessionLocal),
            threshold_hours=args.hours or config.stale_warning_hours,
        )
    finally:
        engine.dispose()
    LOGGER.info("Stale scan summary: %s", summary)
    return 0


__all__ = ["build_arg_parser", "main", "run_mark_stale_job"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
