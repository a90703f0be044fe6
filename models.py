from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()


class DiscoverySource(Base):
    __tablename__ = 'discovery_sources'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    client_id = Column(String(100), nullable=False, index=True)
    url = Column(String(2000), nullable=False)
    canonical_url = Column(String(2000), nullable=False)
    source_type = Column(String(32), nullable=False)
    identifier = Column(String(2000), nullable=False)
    config_json = Column(JSON)

    fetch_interval_minutes = Column(Integer, nullable=False, default=60)
    next_fetch_at = Column(DateTime, index=True)
    last_fetch_status = Column(String(16), nullable=False, default='idle')
    last_fetch_started_at = Column(DateTime)
    last_fetch_completed_at = Column(DateTime)
    last_failure_reason = Column(String(64))
    last_success_at = Column(DateTime)
    consecutive_failure_count = Column(Integer, nullable=False, default=0)
    health_json = Column(JSON)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    runs = relationship("DiscoveryIngestRun", back_populates="source")

    def __repr__(self):
        return (
            f"<DiscoverySource(id={self.id}, client='{self.client_id}', "
            f"type='{self.source_type}', identifier='{self.identifier[:40]}')>"
        )


# Functional index so identifier uniqueness ignores case.
Index(
    'ux_discovery_sources_client_type_identifier',
    DiscoverySource.client_id,
    DiscoverySource.source_type,
    func.lower(DiscoverySource.identifier),
    unique=True,
)


class DiscoveryIngestRun(Base):
    __tablename__ = 'discovery_ingest_runs'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    run_id = Column(String(64), nullable=False, unique=True)
    client_id = Column(String(100), nullable=False, index=True)
    source_id = Column(Uuid(as_uuid=True), ForeignKey('discovery_sources.id', ondelete='CASCADE'), nullable=False)
    status = Column(String(16), nullable=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    failure_reason = Column(String(64))
    retry_in_minutes = Column(Integer)
    metrics_json = Column(JSON)
    telemetry_json = Column(JSON)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    source = relationship("DiscoverySource", back_populates="runs")

    __table_args__ = (
        Index('ix_discovery_ingest_runs_source_started', 'source_id', 'started_at'),
    )

    def __repr__(self):
        return f"<DiscoveryIngestRun(run_id={self.run_id}, source_id={self.source_id}, status='{self.status}')>"


class DiscoveryItem(Base):
    __tablename__ = 'discovery_items'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    client_id = Column(String(100), nullable=False, index=True)
    source_id = Column(Uuid(as_uuid=True), ForeignKey('discovery_sources.id', ondelete='CASCADE'), nullable=False)
    external_id = Column(String(2000), nullable=False)
    raw_hash = Column(String(64), nullable=False)
    title = Column(String(500), nullable=False)
    url = Column(String(2000), nullable=False)
    status = Column(String(32), nullable=False, default='pending_scoring', index=True)
    fetched_at = Column(DateTime, nullable=False)
    published_at = Column(DateTime)
    published_at_source = Column(String(16), nullable=False)
    normalized_json = Column(JSON, nullable=False)
    raw_payload_json = Column(JSON, nullable=False)
    source_metadata_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    score = relationship("DiscoveryScore", back_populates="item", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('client_id', 'raw_hash', name='ux_discovery_items_client_hash'),
    )

    def __repr__(self):
        return f"<DiscoveryItem(id={self.id}, client='{self.client_id}', title='{self.title[:30]}...')>"


class DiscoveryScore(Base):
    __tablename__ = 'discovery_scores'

    item_id = Column(Uuid(as_uuid=True), ForeignKey('discovery_items.id', ondelete='CASCADE'), primary_key=True)
    score = Column(Float, nullable=False)
    keyword_score = Column(Float, nullable=False)
    recency_score = Column(Float, nullable=False)
    source_score = Column(Float, nullable=False)
    applied_threshold = Column(Float, nullable=False)
    weights_version = Column(Integer, nullable=False, default=1)
    components_json = Column(JSON, nullable=False)
    metadata_json = Column(JSON)
    status_outcome = Column(String(16), nullable=False)
    scored_at = Column(DateTime, nullable=False)

    item = relationship("DiscoveryItem", back_populates="score")

    def __repr__(self):
        return f"<DiscoveryScore(item_id={self.item_id}, score={self.score}, status='{self.status_outcome}')>"


class DiscoveryKeyword(Base):
    __tablename__ = 'discovery_keywords'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    client_id = Column(String(100), nullable=False, index=True)
    keyword = Column(Text, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    def __repr__(self):
        return f"<DiscoveryKeyword(client='{self.client_id}', keyword='{self.keyword}')>"


Index(
    'ux_discovery_keywords_client_keyword',
    DiscoveryKeyword.client_id,
    func.lower(DiscoveryKeyword.keyword),
    unique=True,
)


class ClientFeatureFlag(Base):
    __tablename__ = 'client_feature_flags'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    client_id = Column(String(100), nullable=False)
    feature = Column(String(100), nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('client_id', 'feature', name='ux_client_feature_flags_client_feature'),
    )

    def __repr__(self):
        return f"<ClientFeatureFlag(client='{self.client_id}', feature='{self.feature}', enabled={self.enabled})>"
