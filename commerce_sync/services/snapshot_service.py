"""
Snapshot Manager

Captures pre-mutation copies of canonical records so a failed or cancelled
run can be reverted.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable

from commerce_sync.errors import SnapshotNotFoundError
from commerce_sync.models.records import Snapshot
from commerce_sync.models.sync import new_id
from commerce_sync.storage.base import CanonicalStore, SnapshotStore
from commerce_sync.utils.helpers import utcnow
from commerce_sync.utils.logger import log


@dataclass
class RestoreResult:
    success: bool
    snapshot_id: str
    records_reverted: int = 0
    records_deleted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "snapshotId": self.snapshot_id,
            "recordsReverted": self.records_reverted,
            "recordsDeleted": self.records_deleted,
        }


class SnapshotManager:
    """
    Owns snapshot capture and restore

    A run captures once before its first write and extends the same snapshot
    before every later write, so the snapshot always covers every record the
    run touched.
    """

    def __init__(self, canonical_store: CanonicalStore, snapshot_store: SnapshotStore):
        self.canonical_store = canonical_store
        self.snapshot_store = snapshot_store

    async def capture(self, run_id: str, affected_ids: Iterable[str]) -> Snapshot:
        """
        Take a snapshot of the records a run is about to touch

        Args:
            run_id: Owning run
            affected_ids: Canonical ids the first write will touch

        Returns:
            Saved Snapshot
        """
        ids = list(dict.fromkeys(affected_ids))
        existing = await self.canonical_store.get_many(ids)

        snapshot = Snapshot(
            id=new_id("snap"),
            run_id=run_id,
            captured_at=utcnow(),
            records=[existing[record_id].clone() for record_id in ids if record_id in existing],
            absent_ids=[record_id for record_id in ids if record_id not in existing],
        )
        await self.snapshot_store.save(snapshot)

        log.info(
            f"Snapshot {snapshot.id} captured for run {run_id}: "
            f"{len(snapshot.records)} records, {len(snapshot.absent_ids)} new ids"
        )
        return snapshot

    async def extend(self, snapshot_id: str, ids: Iterable[str]) -> Snapshot:
        """Add ids not covered yet, as they exist right now"""
        snapshot = await self._get(snapshot_id)
        covered = set(snapshot.covered_ids)
        new_ids = [record_id for record_id in dict.fromkeys(ids) if record_id not in covered]
        if not new_ids:
            return snapshot

        existing = await self.canonical_store.get_many(new_ids)
        for record_id in new_ids:
            if record_id in existing:
                snapshot.records.append(existing[record_id].clone())
            else:
                snapshot.absent_ids.append(record_id)

        await self.snapshot_store.save(snapshot)
        return snapshot

    async def mark_created(self, snapshot_id: str, ids: Iterable[str]) -> None:
        """Record ids the run created, so restore deletes them"""
        snapshot = await self._get(snapshot_id)
        known = set(snapshot.created_ids)
        added = [record_id for record_id in ids if record_id not in known]
        if added:
            snapshot.created_ids.extend(added)
            await self.snapshot_store.save(snapshot)

    async def restore(self, snapshot_id: str) -> RestoreResult:
        """
        Put every covered record back to its captured content

        Records the run created are deleted. Restored records get a version
        above the current one so versions never go backwards; fields and
        updatedAt are exactly what was captured.

        Raises:
            SnapshotNotFoundError: snapshot missing or pruned
        """
        snapshot = await self._get(snapshot_id)
        result = RestoreResult(success=True, snapshot_id=snapshot_id)

        current = await self.canonical_store.get_many(
            [record.id for record in snapshot.records]
        )

        for captured in snapshot.records:
            restored = captured.clone()
            live = current.get(captured.id)
            restored.version = max(captured.version, live.version if live else 0) + 1
            await self.canonical_store.upsert(restored)
            result.records_reverted += 1

        for record_id in snapshot.created_ids:
            if await self.canonical_store.delete(record_id):
                result.records_deleted += 1
                result.records_reverted += 1

        log.info(
            f"Snapshot {snapshot_id} restored: {result.records_reverted} records reverted "
            f"({result.records_deleted} created records removed)"
        )
        return result

    async def prune(self, snapshot_id: str) -> bool:
        """Delete a snapshot; it can no longer be restored"""
        deleted = await self.snapshot_store.delete(snapshot_id)
        if deleted:
            log.info(f"Snapshot {snapshot_id} pruned")
        return deleted

    async def get(self, snapshot_id: str) -> Snapshot:
        return await self._get(snapshot_id)

    async def _get(self, snapshot_id: str) -> Snapshot:
        snapshot = await self.snapshot_store.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        return snapshot
