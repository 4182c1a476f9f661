"""
SQLAlchemy-backed repositories

Sessions are short-lived and opened per call, the same way the sync status
helpers commit and close their own session.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import desc, func
from sqlalchemy.orm import sessionmaker

from commerce_sync.errors import StoreWriteError
from commerce_sync.models.base import SessionLocal
from commerce_sync.models.records import CanonicalRecord, Platform, Snapshot
from commerce_sync.models.sync import (
    JobStatus,
    SyncJob,
    SyncJobConfig,
    SyncRun,
)
from commerce_sync.models.tables import (
    CanonicalRecordRow,
    SnapshotRow,
    SyncJobRow,
    SyncRunRow,
)
from commerce_sync.storage.base import CanonicalStore, RunStore, SnapshotStore
from commerce_sync.utils.helpers import parse_datetime, utcnow
from commerce_sync.utils.logger import log


def _row_to_record(row: CanonicalRecordRow) -> CanonicalRecord:
    return CanonicalRecord(
        id=row.id,
        store_id=row.store_id,
        type=row.record_type,
        fields=dict(row.fields or {}),
        version=row.version,
        updated_at=parse_datetime(row.updated_at),
        platform=Platform.parse(row.platform) if row.platform else None,
        source_id=row.source_id,
        raw_data=dict(row.raw_data or {}),
    )


class SqlCanonicalStore(CanonicalStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    async def get(self, record_id: str) -> Optional[CanonicalRecord]:
        with self.session_factory() as db:
            row = db.get(CanonicalRecordRow, record_id)
            return _row_to_record(row) if row else None

    async def get_many(self, record_ids: Iterable[str]) -> Dict[str, CanonicalRecord]:
        ids = list(record_ids)
        if not ids:
            return {}

        with self.session_factory() as db:
            rows = db.query(CanonicalRecordRow).filter(CanonicalRecordRow.id.in_(ids)).all()
            return {row.id: _row_to_record(row) for row in rows}

    async def upsert(self, record: CanonicalRecord) -> CanonicalRecord:
        with self.session_factory() as db:
            try:
                row = db.get(CanonicalRecordRow, record.id)
                if not row:
                    row = CanonicalRecordRow(id=record.id)
                    db.add(row)

                row.store_id = record.store_id
                row.record_type = record.type
                row.platform = record.platform.value if record.platform else None
                row.source_id = record.source_id
                row.fields = dict(record.fields)
                row.raw_data = dict(record.raw_data)
                row.content_hash = record.content_hash
                row.version = record.version
                row.updated_at = record.updated_at

                db.commit()
            except Exception as e:
                db.rollback()
                log.error(f"Failed to write canonical record {record.id}: {e}")
                raise StoreWriteError(f"Failed to write {record.id}: {e}", record_id=record.id) from e

        return record

    async def delete(self, record_id: str) -> bool:
        with self.session_factory() as db:
            try:
                deleted = db.query(CanonicalRecordRow).filter(
                    CanonicalRecordRow.id == record_id
                ).delete()
                db.commit()
                return deleted > 0
            except Exception as e:
                db.rollback()
                log.error(f"Failed to delete canonical record {record_id}: {e}")
                raise StoreWriteError(f"Failed to delete {record_id}: {e}", record_id=record_id) from e

    async def list_ids(self, store_id: str, record_type: Optional[str] = None) -> List[str]:
        with self.session_factory() as db:
            query = db.query(CanonicalRecordRow.id).filter(CanonicalRecordRow.store_id == store_id)
            if record_type is not None:
                query = query.filter(CanonicalRecordRow.record_type == record_type)
            return sorted(row.id for row in query.all())


class SqlSnapshotStore(SnapshotStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    async def save(self, snapshot: Snapshot) -> None:
        data = snapshot.to_dict()
        with self.session_factory() as db:
            row = db.get(SnapshotRow, snapshot.id)
            if not row:
                row = SnapshotRow(id=snapshot.id)
                db.add(row)

            row.run_id = snapshot.run_id
            row.captured_at = snapshot.captured_at
            row.records = data["records"]
            row.created_ids = data["createdIds"]
            row.absent_ids = data["absentIds"]
            db.commit()

    async def get(self, snapshot_id: str) -> Optional[Snapshot]:
        with self.session_factory() as db:
            row = db.get(SnapshotRow, snapshot_id)
            if not row:
                return None

            return Snapshot.from_dict({
                "id": row.id,
                "runId": row.run_id,
                "capturedAt": row.captured_at,
                "records": row.records,
                "createdIds": row.created_ids,
                "absentIds": row.absent_ids,
            })

    async def delete(self, snapshot_id: str) -> bool:
        with self.session_factory() as db:
            deleted = db.query(SnapshotRow).filter(SnapshotRow.id == snapshot_id).delete()
            db.commit()
            return deleted > 0


class SqlRunStore(RunStore):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @staticmethod
    def _row_to_job(row: SyncJobRow) -> SyncJob:
        return SyncJob(
            id=row.id,
            platform=Platform.parse(row.platform),
            store_id=row.store_id,
            credentials=dict(row.credentials or {}),
            sync_types=list(row.sync_types or []),
            config=SyncJobConfig.from_dict(row.config),
            schedule=row.schedule,
            status=JobStatus(row.status),
            exclusive=bool(row.exclusive),
            last_sync_timestamp=parse_datetime(row.last_sync_timestamp),
            deferred_records=list(row.deferred_records or []),
            created_at=parse_datetime(row.created_at),
            updated_at=parse_datetime(row.updated_at),
            cancelled_at=parse_datetime(row.cancelled_at),
        )

    async def save_job(self, job: SyncJob) -> None:
        job.updated_at = utcnow()
        with self.session_factory() as db:
            row = db.get(SyncJobRow, job.id)
            if not row:
                row = SyncJobRow(id=job.id, created_at=job.created_at)
                db.add(row)

            row.platform = job.platform.value
            row.store_id = job.store_id
            row.schedule = job.schedule
            row.status = job.status.value
            row.exclusive = job.exclusive
            row.sync_types = list(job.sync_types)
            row.config = job.config.to_dict()
            row.credentials = dict(job.credentials)
            row.deferred_records = list(job.deferred_records)
            row.last_sync_timestamp = job.last_sync_timestamp
            row.updated_at = job.updated_at
            row.cancelled_at = job.cancelled_at
            db.commit()

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        with self.session_factory() as db:
            row = db.get(SyncJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def list_jobs(self, store_id: Optional[str] = None) -> List[SyncJob]:
        with self.session_factory() as db:
            query = db.query(SyncJobRow)
            if store_id is not None:
                query = query.filter(SyncJobRow.store_id == store_id)
            return [self._row_to_job(row) for row in query.order_by(SyncJobRow.created_at).all()]

    async def save_run(self, run: SyncRun) -> None:
        with self.session_factory() as db:
            row = db.get(SyncRunRow, run.id)
            if not row:
                row = SyncRunRow(id=run.id, created_at=run.created_at)
                db.add(row)

            row.job_id = run.job_id
            row.store_id = run.store_id
            row.status = run.status.value
            row.strategy = run.strategy.value
            row.started_at = run.started_at
            row.completed_at = run.completed_at
            row.payload = run.to_dict()
            db.commit()

    async def get_run(self, run_id: str) -> Optional[SyncRun]:
        with self.session_factory() as db:
            row = db.get(SyncRunRow, run_id)
            return SyncRun.from_dict(row.payload) if row else None

    async def list_runs(
        self,
        job_id: Optional[str] = None,
        store_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[SyncRun]:
        with self.session_factory() as db:
            query = db.query(SyncRunRow)
            if job_id is not None:
                query = query.filter(SyncRunRow.job_id == job_id)
            if store_id is not None:
                query = query.filter(SyncRunRow.store_id == store_id)
            # Pending runs have no start time yet
            reference = func.coalesce(SyncRunRow.started_at, SyncRunRow.created_at)
            if start is not None:
                query = query.filter(reference >= start)
            if end is not None:
                query = query.filter(reference <= end)

            rows = query.order_by(desc(reference)).all()
            return [SyncRun.from_dict(row.payload) for row in rows]
