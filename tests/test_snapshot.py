"""
Snapshot capture / restore tests.

Guards against:
1. Restore resurrecting records the run created
2. Restored versions going backwards
3. Pruned snapshots still being restorable
"""
import pytest

from commerce_sync.errors import SnapshotNotFoundError

from conftest import order_id, stored_order


async def test_restore_reverts_updates_and_deletes_creations(snapshot_manager, canonical_store):
    original = stored_order(1, total="1.00")
    await canonical_store.upsert(original)

    snapshot = await snapshot_manager.capture("run_1", [order_id(1), order_id(2)])
    assert snapshot.absent_ids == [order_id(2)]

    changed = stored_order(1, total="9.00")
    changed.version = 2
    await canonical_store.upsert(changed)
    await snapshot_manager.mark_created(snapshot.id, [order_id(2)])
    await canonical_store.upsert(stored_order(2))

    result = await snapshot_manager.restore(snapshot.id)

    assert result.success
    assert result.records_deleted == 1
    assert result.records_reverted == 2
    restored = await canonical_store.get(order_id(1))
    assert restored.fields == original.fields
    assert restored.version == 3
    assert await canonical_store.get(order_id(2)) is None


async def test_extend_only_adds_uncovered_ids(snapshot_manager, canonical_store):
    await canonical_store.upsert(stored_order(1, total="1.00"))
    snapshot = await snapshot_manager.capture("run_1", [order_id(1)])

    # Later write already changed record 1; extend must keep the first copy
    await canonical_store.upsert(stored_order(1, total="5.00"))
    await canonical_store.upsert(stored_order(3))
    extended = await snapshot_manager.extend(snapshot.id, [order_id(1), order_id(3)])

    by_id = {record.id: record for record in extended.records}
    assert by_id[order_id(1)].fields["total"] == "1.00"
    assert order_id(3) in by_id


async def test_snapshot_is_isolated_from_later_writes(snapshot_manager, canonical_store):
    await canonical_store.upsert(stored_order(1, total="1.00"))
    snapshot = await snapshot_manager.capture("run_1", [order_id(1)])

    snapshot.records[0].fields["total"] = "mutated"

    stored = await snapshot_manager.get(snapshot.id)
    assert stored.records[0].fields["total"] == "1.00"


async def test_pruned_snapshot_cannot_be_restored(snapshot_manager):
    snapshot = await snapshot_manager.capture("run_1", [])

    assert await snapshot_manager.prune(snapshot.id)
    assert not await snapshot_manager.prune(snapshot.id)
    with pytest.raises(SnapshotNotFoundError):
        await snapshot_manager.restore(snapshot.id)
