"""
Dict-backed repositories

Every read and write copies, so callers can never mutate stored state by
holding on to a returned object.
"""
import copy
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from commerce_sync.models.records import CanonicalRecord, Snapshot
from commerce_sync.models.sync import SyncJob, SyncRun
from commerce_sync.storage.base import CanonicalStore, RunStore, SnapshotStore
from commerce_sync.utils.helpers import utcnow


class InMemoryCanonicalStore(CanonicalStore):

    def __init__(self, records: Optional[Iterable[CanonicalRecord]] = None):
        self._records: Dict[str, CanonicalRecord] = {}
        for record in records or []:
            self._records[record.id] = record.clone()

    async def get(self, record_id: str) -> Optional[CanonicalRecord]:
        record = self._records.get(record_id)
        return record.clone() if record else None

    async def get_many(self, record_ids: Iterable[str]) -> Dict[str, CanonicalRecord]:
        return {
            record_id: self._records[record_id].clone()
            for record_id in record_ids
            if record_id in self._records
        }

    async def upsert(self, record: CanonicalRecord) -> CanonicalRecord:
        self._records[record.id] = record.clone()
        return record

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def list_ids(self, store_id: str, record_type: Optional[str] = None) -> List[str]:
        return sorted(
            record.id for record in self._records.values()
            if record.store_id == store_id and (record_type is None or record.type == record_type)
        )

    def __len__(self) -> int:
        return len(self._records)


class InMemorySnapshotStore(SnapshotStore):

    def __init__(self):
        self._snapshots: Dict[str, Snapshot] = {}

    async def save(self, snapshot: Snapshot) -> None:
        self._snapshots[snapshot.id] = copy.deepcopy(snapshot)

    async def get(self, snapshot_id: str) -> Optional[Snapshot]:
        snapshot = self._snapshots.get(snapshot_id)
        return copy.deepcopy(snapshot) if snapshot else None

    async def delete(self, snapshot_id: str) -> bool:
        return self._snapshots.pop(snapshot_id, None) is not None


class InMemoryRunStore(RunStore):

    def __init__(self):
        self._jobs: Dict[str, SyncJob] = {}
        self._runs: Dict[str, SyncRun] = {}

    async def save_job(self, job: SyncJob) -> None:
        job.updated_at = utcnow()
        self._jobs[job.id] = copy.deepcopy(job)

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_jobs(self, store_id: Optional[str] = None) -> List[SyncJob]:
        return [
            copy.deepcopy(job) for job in self._jobs.values()
            if store_id is None or job.store_id == store_id
        ]

    async def save_run(self, run: SyncRun) -> None:
        self._runs[run.id] = copy.deepcopy(run)

    async def get_run(self, run_id: str) -> Optional[SyncRun]:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def list_runs(
        self,
        job_id: Optional[str] = None,
        store_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[SyncRun]:
        runs = []
        for run in self._runs.values():
            if job_id is not None and run.job_id != job_id:
                continue
            if store_id is not None and run.store_id != store_id:
                continue
            reference = run.started_at or run.created_at
            if start is not None and reference < start:
                continue
            if end is not None and reference > end:
                continue
            runs.append(copy.deepcopy(run))

        runs.sort(key=lambda r: r.started_at or r.created_at, reverse=True)
        return runs
