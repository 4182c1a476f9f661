"""
Repository interfaces for everything the sync engine persists

The engine and scheduler only talk to these interfaces; the persistence
technology is chosen by whoever wires the SyncService together.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from commerce_sync.models.records import CanonicalRecord, Snapshot
from commerce_sync.models.sync import SyncJob, SyncRun


class CanonicalStore(ABC):
    """Canonical records, written per record id"""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[CanonicalRecord]:
        pass

    @abstractmethod
    async def get_many(self, record_ids: Iterable[str]) -> Dict[str, CanonicalRecord]:
        """Return the records that exist, keyed by id"""
        pass

    @abstractmethod
    async def upsert(self, record: CanonicalRecord) -> CanonicalRecord:
        """Create or replace the record with the same id"""
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Delete a record; False when it did not exist"""
        pass

    @abstractmethod
    async def list_ids(self, store_id: str, record_type: Optional[str] = None) -> List[str]:
        pass


class SnapshotStore(ABC):

    @abstractmethod
    async def save(self, snapshot: Snapshot) -> None:
        pass

    @abstractmethod
    async def get(self, snapshot_id: str) -> Optional[Snapshot]:
        pass

    @abstractmethod
    async def delete(self, snapshot_id: str) -> bool:
        pass


class RunStore(ABC):
    """Job definitions and the run audit trail"""

    @abstractmethod
    async def save_job(self, job: SyncJob) -> None:
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        pass

    @abstractmethod
    async def list_jobs(self, store_id: Optional[str] = None) -> List[SyncJob]:
        pass

    @abstractmethod
    async def save_run(self, run: SyncRun) -> None:
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[SyncRun]:
        pass

    @abstractmethod
    async def list_runs(
        self,
        job_id: Optional[str] = None,
        store_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[SyncRun]:
        """Runs matching all given filters, newest first"""
        pass
