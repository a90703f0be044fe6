"""Database persistence for discovery sources, ingest runs, items and scores."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    DiscoveryIngestRun,
    DiscoveryItem,
    DiscoveryScore,
    DiscoverySource,
    generate_uuid7,
)

from .adapters import ItemEnvelope
from .dedupe import compute_raw_hash
from .health import HealthSnapshot, compute_health_after_fetch, compute_stale_health
from .source_config import parse_source_config
from .sources import build_default_config, normalize_source_url

LOGGER = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

ITEM_PENDING = "pending_scoring"
ITEM_SCORED = "scored"
ITEM_SUPPRESSED = "suppressed"

DEFAULT_FETCH_INTERVAL_MINUTES = 60


class DiscoveryPersistenceError(RuntimeError):
    """Raised when a discovery repository operation fails at the database layer."""


class DuplicateSourceError(DiscoveryPersistenceError):
    """Raised when a client registers a source it already tracks."""

    def __init__(self, message: str, duplicate_key: str) -> None:
        super().__init__(message)
        self.duplicate_key = duplicate_key


class DiscoveryItemsClientMismatchError(ValueError):
    """Raised when a batch of items to persist spans more than one client."""


def _to_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _as_uuids(values: Iterable[uuid.UUID | str]) -> list[uuid.UUID]:
    result: list[uuid.UUID] = []
    for value in values:
        try:
            result.append(_as_uuid(value))
        except ValueError:
            LOGGER.debug("Ignoring malformed item id %r", value)
    return result


def compute_next_fetch_at(
    completed_at: datetime,
    fetch_interval_minutes: int,
    retry_in_minutes: int | None = None,
) -> datetime:
    """Schedule the next fetch after a retry hint when present, else after the cadence."""

    if retry_in_minutes is not None and retry_in_minutes >= 0:
        offset = retry_in_minutes
    else:
        offset = fetch_interval_minutes
    return completed_at + timedelta(minutes=offset)


@dataclass(slots=True)
class SourceRecord:
    id: str
    client_id: str
    source_type: str
    url: str
    canonical_url: str
    identifier: str
    config: dict[str, Any] | None
    fetch_interval_minutes: int
    next_fetch_at: datetime | None
    last_fetch_status: str
    last_fetch_started_at: datetime | None
    last_fetch_completed_at: datetime | None
    last_failure_reason: str | None
    last_success_at: datetime | None
    consecutive_failure_count: int
    health: HealthSnapshot | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, row: DiscoverySource) -> "SourceRecord":
        return cls(
            id=str(row.id),
            client_id=row.client_id,
            source_type=row.source_type,
            url=row.url,
            canonical_url=row.canonical_url,
            identifier=row.identifier,
            config=row.config_json,
            fetch_interval_minutes=row.fetch_interval_minutes or DEFAULT_FETCH_INTERVAL_MINUTES,
            next_fetch_at=_from_db(row.next_fetch_at),
            last_fetch_status=row.last_fetch_status or STATUS_IDLE,
            last_fetch_started_at=_from_db(row.last_fetch_started_at),
            last_fetch_completed_at=_from_db(row.last_fetch_completed_at),
            last_failure_reason=row.last_failure_reason,
            last_success_at=_from_db(row.last_success_at),
            consecutive_failure_count=row.consecutive_failure_count or 0,
            health=HealthSnapshot.from_json(row.health_json),
            created_at=_from_db(row.created_at),
        )


@dataclass(slots=True)
class CompletionRecord:
    run_id: str
    source_id: str
    client_id: str
    started_at: datetime
    completed_at: datetime
    fetch_interval_minutes: int
    success: bool
    failure_reason: str | None = None
    retry_in_minutes: int | None = None
    telemetry: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        return max(0, int((self.completed_at - self.started_at).total_seconds() * 1000))


@dataclass(slots=True)
class HealthUpdate:
    source_id: str
    client_id: str
    source_type: str
    health: HealthSnapshot
    next_fetch_at: datetime


@dataclass(slots=True)
class StaleSourceUpdate:
    source_id: str
    client_id: str
    source_type: str
    health: HealthSnapshot


@dataclass(slots=True)
class ItemToPersist:
    client_id: str
    source_id: str
    envelope: ItemEnvelope


@dataclass(slots=True)
class InsertedItem:
    id: str
    raw_hash: str


@dataclass(slots=True)
class PersistResult:
    inserted: list[InsertedItem] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ItemRecord:
    id: str
    client_id: str
    source_id: str
    status: str
    title: str
    url: str
    raw_hash: str
    fetched_at: datetime | None
    published_at: datetime | None
    normalized: Any
    source_metadata: dict[str, Any]

    @classmethod
    def from_model(cls, row: DiscoveryItem) -> "ItemRecord":
        return cls(
            id=str(row.id),
            client_id=row.client_id,
            source_id=str(row.source_id),
            status=row.status,
            title=row.title,
            url=row.url,
            raw_hash=row.raw_hash,
            fetched_at=_from_db(row.fetched_at),
            published_at=_from_db(row.published_at),
            normalized=row.normalized_json,
            source_metadata=row.source_metadata_json or {},
        )


@dataclass(slots=True)
class ScoreRecord:
    item_id: str
    score: float
    keyword_score: float
    recency_score: float
    source_score: float
    applied_threshold: float
    status: str
    scored_at: datetime
    weights_version: int = 1
    components: dict[str, float] | None = None
    metadata: dict[str, Any] | None = None


class DiscoveryRepository:
    """Scheduler, claim store and item persistence backed by SQLAlchemy sessions."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    # Sources ---------------------------------------------------------------------

    def register_source(
        self,
        client_id: str,
        url: str,
        *,
        fetch_interval_minutes: int = DEFAULT_FETCH_INTERVAL_MINUTES,
        config: Optional[dict[str, Any] | str] = None,
    ) -> SourceRecord:
        """Normalise ``url``, validate ``config`` and store a new idle source.

        Raises ``InvalidSourceURLError`` or ``InvalidSourceConfigError`` before
        touching the database, and ``DuplicateSourceError`` when the client
        already tracks the same source.
        """

        normalized = normalize_source_url(url)
        key = normalized.duplicate_key
        source_config = {
            **(build_default_config(normalized.source_type, normalized.identifier) or {}),
            **parse_source_config(config),
        } or None
        try:
            with self._session_factory() as session:
                existing = (
                    session.query(DiscoverySource.id)
                    .filter(
                        DiscoverySource.client_id == client_id,
                        DiscoverySource.source_type == normalized.source_type.value,
                        func.lower(DiscoverySource.identifier) == normalized.identifier.lower(),
                    )
                    .first()
                )
                if existing is not None:
                    raise DuplicateSourceError(f"Source already exists for client {client_id}: {key}", key)

                source = DiscoverySource(
                    id=generate_uuid7(),
                    client_id=client_id,
                    url=url.strip(),
                    canonical_url=normalized.canonical_url,
                    source_type=normalized.source_type.value,
                    identifier=normalized.identifier,
                    config_json=source_config,
                    fetch_interval_minutes=max(1, fetch_interval_minutes),
                    last_fetch_status=STATUS_IDLE,
                    consecutive_failure_count=0,
                )
                session.add(source)
                session.commit()
                return SourceRecord.from_model(source)
        except IntegrityError as exc:
            raise DuplicateSourceError(f"Source already exists for client {client_id}: {key}", key) from exc
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def get_source(self, source_id: str) -> SourceRecord | None:
        try:
            with self._session_factory() as session:
                row = session.get(DiscoverySource, _as_uuid(source_id))
                return SourceRecord.from_model(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def list_due(self, limit: int, now: datetime) -> list[SourceRecord]:
        """Return up to ``limit`` idle sources whose next fetch time has passed."""

        if limit <= 0:
            return []
        db_now = _to_db(now)
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(DiscoverySource)
                    .filter(
                        or_(DiscoverySource.next_fetch_at.is_(None), DiscoverySource.next_fetch_at <= db_now),
                        DiscoverySource.last_fetch_status != STATUS_RUNNING,
                    )
                    .order_by(DiscoverySource.next_fetch_at.asc().nulls_first(), DiscoverySource.created_at.asc())
                    .limit(limit)
                    .all()
                )
                return [SourceRecord.from_model(row) for row in rows]
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def claim(self, source_id: str, now: datetime) -> SourceRecord | None:
        """Atomically flip a due, idle source to ``running``.

        Returns ``None`` when another worker already holds the source or it is
        no longer due. The conditional update is the only mutual exclusion
        between concurrent schedulers.
        """

        db_now = _to_db(now)
        source_uuid = _as_uuid(source_id)
        statement = (
            update(DiscoverySource)
            .where(
                DiscoverySource.id == source_uuid,
                DiscoverySource.last_fetch_status != STATUS_RUNNING,
                or_(DiscoverySource.next_fetch_at.is_(None), DiscoverySource.next_fetch_at <= db_now),
            )
            .values(last_fetch_status=STATUS_RUNNING, last_fetch_started_at=db_now, updated_at=db_now)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as session:
                result = session.execute(statement)
                if result.rowcount != 1:
                    session.rollback()
                    return None
                session.commit()
                row = session.get(DiscoverySource, source_uuid)
                return SourceRecord.from_model(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def _apply_fetch_outcome(self, source: DiscoverySource, record: CompletionRecord) -> HealthUpdate:
        next_fetch_at = compute_next_fetch_at(
            record.completed_at, record.fetch_interval_minutes, record.retry_in_minutes
        )
        health = compute_health_after_fetch(
            HealthSnapshot.from_json(source.health_json),
            previous_failures=source.consecutive_failure_count or 0,
            success=record.success,
            completed_at=record.completed_at,
            failure_reason=record.failure_reason,
            last_success_at=_from_db(source.last_success_at),
        )
        completed_at = _to_db(record.completed_at)
        source.last_fetch_status = STATUS_SUCCESS if record.success else STATUS_FAILURE
        source.last_fetch_completed_at = completed_at
        source.last_failure_reason = None if record.success else record.failure_reason
        source.next_fetch_at = _to_db(next_fetch_at)
        source.consecutive_failure_count = health.consecutive_failures
        source.health_json = health.to_json()
        source.updated_at = completed_at
        if record.success:
            source.last_success_at = completed_at
        return HealthUpdate(
            source_id=str(source.id),
            client_id=source.client_id,
            source_type=source.source_type,
            health=health,
            next_fetch_at=next_fetch_at,
        )

    def complete(self, record: CompletionRecord) -> HealthUpdate:
        """Record the run audit row and the new source state in one transaction."""

        try:
            with self._session_factory() as session:
                source = session.get(DiscoverySource, _as_uuid(record.source_id))
                if source is None:
                    raise DiscoveryPersistenceError(f"Discovery source {record.source_id} not found")
                session.add(
                    DiscoveryIngestRun(
                        id=generate_uuid7(),
                        run_id=record.run_id,
                        client_id=record.client_id,
                        source_id=source.id,
                        status="succeeded" if record.success else "failed",
                        started_at=_to_db(record.started_at),
                        completed_at=_to_db(record.completed_at),
                        duration_ms=record.duration_ms,
                        failure_reason=record.failure_reason,
                        retry_in_minutes=record.retry_in_minutes,
                        metrics_json=record.metrics or {},
                        telemetry_json=record.telemetry or {},
                    )
                )
                update_result = self._apply_fetch_outcome(source, record)
                session.commit()
                return update_result
        except DiscoveryPersistenceError:
            raise
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def release(self, record: CompletionRecord) -> HealthUpdate:
        """Reset a claimed source without writing the run audit row."""

        try:
            with self._session_factory() as session:
                source = session.get(DiscoverySource, _as_uuid(record.source_id))
                if source is None:
                    raise DiscoveryPersistenceError(f"Discovery source {record.source_id} not found")
                update_result = self._apply_fetch_outcome(source, record)
                session.commit()
                return update_result
        except DiscoveryPersistenceError:
            raise
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def defer(self, source_id: str, now: datetime) -> datetime | None:
        """Push a due, idle source one fetch interval past ``now`` without a fetch.

        Status, health and failure counters are untouched. Returns the new
        ``next_fetch_at`` or ``None`` when the source is running or not due.
        """

        db_now = _to_db(now)
        source_uuid = _as_uuid(source_id)
        try:
            with self._session_factory() as session:
                source = session.get(DiscoverySource, source_uuid)
                if source is None:
                    return None
                next_fetch_at = compute_next_fetch_at(now, source.fetch_interval_minutes)
                result = session.execute(
                    update(DiscoverySource)
                    .where(
                        DiscoverySource.id == source_uuid,
                        DiscoverySource.last_fetch_status != STATUS_RUNNING,
                        or_(DiscoverySource.next_fetch_at.is_(None), DiscoverySource.next_fetch_at <= db_now),
                    )
                    .values(next_fetch_at=_to_db(next_fetch_at))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None
                session.commit()
                return next_fetch_at
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def mark_stale(self, cutoff: datetime, now: datetime) -> list[StaleSourceUpdate]:
        """Flag idle sources with no completed fetch since ``cutoff``.

        ``next_fetch_at`` is left untouched.
        """

        db_cutoff = _to_db(cutoff)
        last_activity = func.coalesce(DiscoverySource.last_fetch_completed_at, DiscoverySource.created_at)
        updates: list[StaleSourceUpdate] = []
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(DiscoverySource)
                    .filter(
                        DiscoverySource.last_fetch_status != STATUS_RUNNING,
                        last_activity < db_cutoff,
                    )
                    .order_by(DiscoverySource.created_at.asc())
                    .all()
                )
                for source in rows:
                    health = compute_stale_health(
                        HealthSnapshot.from_json(source.health_json),
                        consecutive_failures=source.consecutive_failure_count or 0,
                        now=now,
                        last_fetched_at=_from_db(source.last_fetch_completed_at),
                        last_success_at=_from_db(source.last_success_at),
                        failure_reason=source.last_failure_reason,
                    )
                    source.health_json = health.to_json()
                    source.updated_at = _to_db(now)
                    updates.append(
                        StaleSourceUpdate(
                            source_id=str(source.id),
                            client_id=source.client_id,
                            source_type=source.source_type,
                            health=health,
                        )
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc
        return updates

    # Items -----------------------------------------------------------------------

    def save_items(self, client_id: str, source_id: str, envelopes: Sequence[ItemEnvelope]) -> PersistResult:
        return self.insert_items(
            [ItemToPersist(client_id=client_id, source_id=source_id, envelope=envelope) for envelope in envelopes]
        )

    def insert_items(self, items: Sequence[ItemToPersist]) -> PersistResult:
        """Insert items whose raw hash is new for the client.

        Hashes already stored, or repeated inside the batch, are reported as
        duplicates. A unique conflict raised by a concurrent writer triggers one
        re-read of the stored hashes before giving up.
        """

        if not items:
            return PersistResult()
        client_ids = {item.client_id for item in items}
        if len(client_ids) != 1:
            raise DiscoveryItemsClientMismatchError("insert_items expects all items to share the same client_id")
        (client_id,) = client_ids
        hashed = [(compute_raw_hash(item.envelope.raw_payload), item) for item in items]

        for attempt in (1, 2):
            try:
                return self._insert_new_hashes(client_id, hashed)
            except IntegrityError as exc:
                if attempt == 2:
                    raise DiscoveryPersistenceError(str(exc)) from exc
                LOGGER.info("Concurrent insert detected for client %s; re-checking stored hashes", client_id)
            except SQLAlchemyError as exc:
                raise DiscoveryPersistenceError(str(exc)) from exc
        raise DiscoveryPersistenceError("unreachable")  # pragma: no cover

    def _insert_new_hashes(self, client_id: str, hashed: list[tuple[str, ItemToPersist]]) -> PersistResult:
        with self._session_factory() as session:
            existing = self._existing_hashes(session, client_id, {raw_hash for raw_hash, _ in hashed})
            result = PersistResult()
            seen: set[str] = set()
            rows: list[DiscoveryItem] = []
            for raw_hash, item in hashed:
                if raw_hash in existing or raw_hash in seen:
                    result.duplicates.append(raw_hash)
                    continue
                seen.add(raw_hash)
                normalized = item.envelope.normalized
                row = DiscoveryItem(
                    id=generate_uuid7(),
                    client_id=client_id,
                    source_id=_as_uuid(item.source_id),
                    external_id=normalized.external_id,
                    raw_hash=raw_hash,
                    title=normalized.title,
                    url=normalized.url,
                    status=ITEM_PENDING,
                    fetched_at=_to_db(normalized.fetched_at),
                    published_at=_to_db(normalized.published_at),
                    published_at_source=normalized.published_at_source,
                    normalized_json=normalized.to_payload(),
                    raw_payload_json=item.envelope.raw_payload,
                    source_metadata_json=item.envelope.source_metadata,
                )
                rows.append(row)
                result.inserted.append(InsertedItem(id=str(row.id), raw_hash=raw_hash))
            if rows:
                session.add_all(rows)
                session.commit()
            return result

    @staticmethod
    def _existing_hashes(session: Session, client_id: str, hashes: set[str]) -> set[str]:
        if not hashes:
            return set()
        rows = (
            session.query(DiscoveryItem.raw_hash)
            .filter(DiscoveryItem.client_id == client_id, DiscoveryItem.raw_hash.in_(list(hashes)))
            .all()
        )
        return {row.raw_hash for row in rows}

    def fetch_items_by_ids(self, item_ids: Sequence[str]) -> list[ItemRecord]:
        ids = _as_uuids(item_ids)
        if not ids:
            return []
        try:
            with self._session_factory() as session:
                rows = session.query(DiscoveryItem).filter(DiscoveryItem.id.in_(ids)).all()
                return [ItemRecord.from_model(row) for row in rows]
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def reset_to_pending(self, item_ids: Sequence[str]) -> int:
        ids = _as_uuids(item_ids)
        if not ids:
            return 0
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(DiscoveryItem)
                    .where(DiscoveryItem.id.in_(ids))
                    .values(status=ITEM_PENDING)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    def count_pending(self, client_id: str | None = None) -> int:
        try:
            with self._session_factory() as session:
                query = session.query(func.count(DiscoveryItem.id)).filter(DiscoveryItem.status == ITEM_PENDING)
                if client_id:
                    query = query.filter(DiscoveryItem.client_id == client_id)
                return int(query.scalar() or 0)
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc

    # Scores ----------------------------------------------------------------------

    def _apply_score(self, session: Session, record: ScoreRecord) -> None:
        item_uuid = _as_uuid(record.item_id)
        item = session.get(DiscoveryItem, item_uuid)
        if item is None:
            raise DiscoveryPersistenceError(f"Discovery item {record.item_id} not found")
        score = session.get(DiscoveryScore, item_uuid)
        if score is None:
            score = DiscoveryScore(item_id=item_uuid)
            session.add(score)
        score.score = record.score
        score.keyword_score = record.keyword_score
        score.recency_score = record.recency_score
        score.source_score = record.source_score
        score.applied_threshold = record.applied_threshold
        score.weights_version = record.weights_version or 1
        score.components_json = record.components or {
            "keyword": record.keyword_score,
            "recency": record.recency_score,
            "source": record.source_score,
        }
        score.metadata_json = record.metadata or {}
        score.status_outcome = record.status
        score.scored_at = _to_db(record.scored_at)
        item.status = record.status

    def upsert_score(self, record: ScoreRecord) -> None:
        """Insert or replace the score for an item and move the item to the score outcome."""

        self.upsert_scores([record])

    def upsert_scores(self, records: Iterable[ScoreRecord]) -> int:
        """Write every score in one transaction; any failure leaves all items untouched."""

        batch = list(records)
        if not batch:
            return 0
        try:
            with self._session_factory() as session:
                for record in batch:
                    self._apply_score(session, record)
                session.commit()
        except DiscoveryPersistenceError:
            raise
        except SQLAlchemyError as exc:
            raise DiscoveryPersistenceError(str(exc)) from exc
        return len(batch)


__all__ = [
    "CompletionRecord",
    "DiscoveryItemsClientMismatchError",
    "DiscoveryPersistenceError",
    "DiscoveryRepository",
    "DuplicateSourceError",
    "HealthUpdate",
    "InsertedItem",
    "ItemRecord",
    "ItemToPersist",
    "PersistResult",
    "ScoreRecord",
    "SourceRecord",
    "StaleSourceUpdate",
    "compute_next_fetch_at",
]
