"""Register a discovery source for a client from the command line."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure the repository root is importable when executing from the scripts/ directory.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from discovery.repository import DiscoveryPersistenceError, DiscoveryRepository, DuplicateSourceError
from discovery.source_config import InvalidSourceConfigError
from discovery.sources import InvalidSourceURLError
from models import Base


LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Normalize a feed, YouTube channel/playlist or web page URL and store it as a "
            "discovery source for the given client."
        )
    )
    parser.add_argument(
        "--db-url",
        default=os.getenv("DISCOVERY_DATABASE_URL"),
        help="SQLAlchemy database URL. Defaults to DISCOVERY_DATABASE_URL.",
    )
    parser.add_argument("--client-id", required=True, help="Client that owns the source.")
    parser.add_argument(
        "--interval",
        type=int,
        default=60,
        help="Fetch interval in minutes (default: 60).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Adapter configuration as a JSON object, e.g. a webList selector map.",
    )
    parser.add_argument("url", help="Source URL to register.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    args = parse_args(sys.argv[1:] if argv is None else argv)
    if not args.db_url:
        LOGGER.error("No database URL provided; pass --db-url or set DISCOVERY_DATABASE_URL")
        return 2

    engine = create_engine(args.db_url)
    Base.metadata.create_all(engine)
    repository = DiscoveryRepository(sessionmaker(bind=engine))

    try:
        source = repository.register_source(
            args.client_id,
            args.url,
            fetch_interval_minutes=args.interval,
            config=args.config,
        )
    except InvalidSourceURLError as exc:
        LOGGER.error("Invalid source URL %s: %s", args.url, exc)
        return 2
    except InvalidSourceConfigError as exc:
        LOGGER.error("Invalid source configuration: %s", "; ".join(exc.issues))
        return 2
    except DuplicateSourceError as exc:
        LOGGER.warning("Source already registered (%s)", exc.duplicate_key)
        return 1
    except DiscoveryPersistenceError:
        LOGGER.exception("Failed to register source %s", args.url)
        return 1
    finally:
        engine.dispose()

    print(
        json.dumps(
            {
                "id": source.id,
                "clientId": source.client_id,
                "sourceType": source.source_type,
                "canonicalUrl": source.canonical_url,
                "identifier": source.identifier,
                "config": source.config,
            },
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
