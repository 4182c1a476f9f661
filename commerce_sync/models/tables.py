"""
Canonical store and sync audit tables

Jobs and runs keep their searchable columns as real columns and the rest of
the aggregate as JSON, so history queries can filter in SQL.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Index

from commerce_sync.models.base import Base
from commerce_sync.utils.helpers import utcnow


class CanonicalRecordRow(Base):
    """
    Canonical commerce entity (order, product, customer, ...)

    The sync engine is the only writer for platform-originated rows.
    """
    __tablename__ = "canonical_records"

    id = Column(String, primary_key=True)
    store_id = Column(String, index=True, nullable=False)
    record_type = Column(String, index=True, nullable=False)
    platform = Column(String, nullable=True)
    source_id = Column(String, nullable=True)

    fields = Column(JSON, nullable=False, default=dict)
    raw_data = Column(JSON, nullable=True)
    content_hash = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False, default=1)

    updated_at = Column(DateTime(timezone=True), nullable=False)
    written_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_canonical_records_store_type", "store_id", "record_type"),
    )


class SnapshotRow(Base):
    """Pre-mutation copy of the canonical records a run touched"""
    __tablename__ = "sync_snapshots"

    id = Column(String, primary_key=True)
    run_id = Column(String, index=True, nullable=False)
    captured_at = Column(DateTime(timezone=True), nullable=False)

    records = Column(JSON, nullable=False, default=list)
    created_ids = Column(JSON, nullable=False, default=list)
    absent_ids = Column(JSON, nullable=False, default=list)


class SyncJobRow(Base):
    """Sync job definition"""
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True)
    platform = Column(String, nullable=False)
    store_id = Column(String, index=True, nullable=False)
    schedule = Column(String, nullable=True)
    status = Column(String, index=True, nullable=False)
    exclusive = Column(Boolean, default=False)

    sync_types = Column(JSON, nullable=False, default=list)
    config = Column(JSON, nullable=False, default=dict)
    credentials = Column(JSON, nullable=False, default=dict)
    deferred_records = Column(JSON, nullable=False, default=list)

    last_sync_timestamp = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)


class SyncRunRow(Base):
    """One execution of a sync job; kept for the audit trail"""
    __tablename__ = "sync_runs"

    id = Column(String, primary_key=True)
    job_id = Column(String, index=True, nullable=False)
    store_id = Column(String, index=True, nullable=False)
    status = Column(String, index=True, nullable=False)
    strategy = Column(String, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), index=True, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    payload = Column(JSON, nullable=False, default=dict)
