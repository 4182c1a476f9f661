"""
SyncService facade tests.

Guards against:
1. Strategy calls mutating the template job's config or watermark
2. Rollback of runs that are not failed or cancelled
3. Request validation errors leaking as pydantic exceptions
"""
import pytest

from commerce_sync.errors import ConfigurationError, ConnectorError, InvalidTransitionError, RunNotFoundError
from commerce_sync.models.sync import RunStatus
from commerce_sync.services.notification_service import NotificationService
from commerce_sync.services.sync_service import SyncService

from conftest import BASE_TIME, FakeConnector, make_order, order_id

SHOPIFY_JOB = {
    "platform": "shopify",
    "storeId": "store_1",
    "credentials": {"shopDomain": "demo.myshopify.com", "accessToken": "x"},
    "syncTypes": ["orders"],
    "config": {"batchSize": 100},
}


@pytest.fixture
def connector():
    return FakeConnector({"orders": [make_order(n) for n in range(1, 21)]})


@pytest.fixture
def service(connector, retry_policy, settings, sleeper, canonical_store):
    return SyncService(
        canonical_store=canonical_store,
        connector_factory=lambda platform: connector,
        notifier=NotificationService(),
        retry_policy=retry_policy,
        settings=settings,
        sleep=sleeper,
    )


async def test_empty_stores_are_used_as_given(canonical_store, snapshot_store, run_store):
    service = SyncService(canonical_store=canonical_store, snapshot_store=snapshot_store, run_store=run_store)

    assert service.canonical_store is canonical_store
    assert service.snapshot_store is snapshot_store
    assert service.run_store is run_store
    assert service.scheduler.run_store is run_store


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def test_schedule_sync_job(service):
    job = await service.schedule_sync_job({**SHOPIFY_JOB, "schedule": "0 */6 * * *"})

    assert job["status"] == "scheduled"
    assert job["syncTypes"] == ["orders"]
    assert job["config"]["batchSize"] == 100
    assert job["nextRun"] is not None
    assert [j["id"] for j in await service.list_jobs("store_1")] == [job["id"]]


async def test_schedule_sync_job_rejects_bad_params(service):
    with pytest.raises(ConfigurationError):
        await service.schedule_sync_job({"platform": "shopify", "storeId": "store_1", "syncTypes": []})
    with pytest.raises(ConfigurationError):
        await service.schedule_sync_job({**SHOPIFY_JOB, "schedule": "99 * * * *"})
    with pytest.raises(ConfigurationError):
        await service.schedule_sync_job({**SHOPIFY_JOB, "platform": "magento"})


async def test_status_by_run_or_job_id(service):
    job = await service.schedule_sync_job({**SHOPIFY_JOB, "jobId": "job_orders"})
    result = await service.incremental_sync({"jobId": job["id"]})

    by_run = await service.get_sync_status(result["runId"])
    by_job = await service.get_sync_status("job_orders")

    assert by_run == by_job
    assert by_run["progress"]["processedRecords"] == 20
    with pytest.raises(RunNotFoundError):
        await service.get_sync_status("nothing")


async def test_history(service):
    job = await service.schedule_sync_job(SHOPIFY_JOB)
    await service.full_sync({"jobId": job["id"]})
    await service.full_sync({"jobId": job["id"]})

    history = await service.get_sync_history({"jobId": job["id"], "limit": 1, "dateRange": {"start": "2020-01-01T00:00:00Z"}})

    assert history["totalRuns"] == 2
    assert len(history["runs"]) == 1
    assert history["successRate"] == 1.0
    assert history["runs"][0]["strategy"] == "full"

    with pytest.raises(ConfigurationError):
        await service.get_sync_history({"limit": -1})


async def test_cancel_sync_job(service):
    job = await service.schedule_sync_job(SHOPIFY_JOB)

    assert await service.cancel_sync_job(job["id"])
    assert not await service.cancel_sync_job(job["id"])


# ---------------------------------------------------------------------------
# Ad-hoc and strategy syncs
# ---------------------------------------------------------------------------

async def test_adhoc_shopify_sync(service, canonical_store):
    result = await service.sync_shopify_data({
        "shopDomain": "demo.myshopify.com",
        "accessToken": "x",
        "syncTypes": ["orders"],
        "lastSyncAt": (BASE_TIME.replace(minute=10)).isoformat(),
    })

    assert result["success"]
    assert result["storeId"] == "demo.myshopify.com"
    # Orders 10..20 were updated at or after lastSyncAt
    assert result["recordsCreated"] == 11
    assert await canonical_store.get(order_id(20, store_id="demo.myshopify.com")) is not None


async def test_adhoc_sync_defaults_to_all_connector_types(service):
    result = await service.sync_platform_data("shopify", {"storeId": "store_9", "strategy": "full"})

    assert result["strategy"] == "full"
    assert {batch["syncType"] for batch in result["batches"]} == {"orders", "products", "customers"}
    assert result["recordsCreated"] == 20


async def test_adhoc_sync_rejects_unknown_strategy(service):
    with pytest.raises(ConfigurationError):
        await service.sync_platform_data("shopify", {"storeId": "s", "strategy": "turbo"})


async def test_adhoc_custom_sync_needs_endpoints(service):
    with pytest.raises(ConfigurationError):
        await service.sync_custom_data({"storeId": "s", "config": {"apiUrl": "https://x"}})


async def test_batch_sync_derives_one_shot_job(service):
    template = await service.schedule_sync_job(SHOPIFY_JOB)

    result = await service.batch_sync({
        "storeId": "store_1",
        "dataType": "orders",
        "totalRecords": 20,
        "batchSize": 5,
        "parallelization": 2,
    })

    assert result["strategy"] == "batch"
    assert result["totalBatches"] == 4
    assert result["recordsProcessed"] == 20
    assert result["jobId"] != template["id"]

    unchanged = await service.scheduler.run_store.get_job(template["id"])
    assert unchanged.config.batch_size == 100
    assert unchanged.config.total_records is None
    assert unchanged.last_sync_timestamp is None


async def test_full_sync_for_store_without_job_needs_platform(service):
    with pytest.raises(ConfigurationError):
        await service.full_sync({"storeId": "store_new", "dataTypes": ["orders"]})

    result = await service.full_sync({
        "storeId": "store_new",
        "platform": "shopify",
        "dataTypes": ["orders"],
    })
    assert result["recordsCreated"] == 20


async def test_strategy_sync_with_memory_limit_adapts(service):
    await service.schedule_sync_job(SHOPIFY_JOB)

    result = await service.full_sync({
        "storeId": "store_1",
        "dataType": "orders",
        "batchSize": 10,
        "optimization": {"memoryLimit": "100KB"},
    })

    assert result["batchesReduced"]
    assert result["recordsCreated"] == 20


async def test_top_level_memory_limit_reduces_batches(service, connector):
    connector.data["orders"] = [make_order(n) for n in range(1, 41)]
    await service.schedule_sync_job(SHOPIFY_JOB)

    result = await service.full_sync({
        "storeId": "store_1",
        "batchSize": 10,
        "memoryLimit": "100KB",
        "adaptiveBatching": True,
    })

    assert result["batchesReduced"]
    assert "Reduced batch size due to memory constraints" in result["warnings"]
    assert result["recordsCreated"] == 40
    limits = [call.limit for call in connector.calls]
    assert limits[0] == 10
    assert min(limits) < 10


# ---------------------------------------------------------------------------
# Record operations
# ---------------------------------------------------------------------------

def test_validate_transform_resolve(service):
    validation = service.validate_sync_data(
        [{"id": "1", "total": "100.00", "currency": "USD"}, {"id": "2", "total": "50.00", "currency": "XYZ"}],
        {"requiredFields": ["id", "total", "currency"],
         "validations": {"currency": {"type": "string", "enum": ["USD", "EUR", "GBP"]}}},
    )
    assert validation["valid"] is False
    assert validation["errors"] == ["Record 2: invalid currency 'XYZ'"]

    [record] = service.transform_data(
        [{"id": 7, "total_price": "10.00"}],
        {"platform": "shopify", "record_type": "orders", "store_id": "s1",
         "mappings": {"total_price": "total"}, "calculations": {"total_cents": "total * 100"}},
    )
    assert record["id"] == "s1:shopify:orders:7"
    assert record["fields"] == {"total": "10.00", "total_cents": 1000.0}

    resolution = service.resolve_sync_conflict(
        [{"recordId": "order_123", "type": "field_mismatch", "field": "total",
          "sourceValue": "100.00", "targetValue": "95.00"}],
        {"fieldMismatches": "prefer_source"},
    )
    assert resolution["conflictsResolved"] == 1
    assert resolution["resolutions"][0]["action"] == "used_source_value"


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

async def test_rollback_failed_run(service, connector, canonical_store):
    connector.data["orders"] = [make_order(n) for n in range(1, 151)]
    connector.failures = [None] + [ConnectorError("down", status_code=503) for _ in range(4)]
    job = await service.schedule_sync_job(SHOPIFY_JOB)

    failed = await service.incremental_sync({"jobId": job["id"]})
    assert failed["status"] == "failed"
    assert len(canonical_store) == 100

    rollback = await service.rollback_sync({"jobId": job["id"], "reason": "bad upstream data"})

    assert rollback["success"]
    assert rollback["runId"] == failed["runId"]
    assert rollback["recordsDeleted"] == 100
    assert rollback["snapshotRestored"] == failed["snapshotId"]
    assert rollback["rollbackDuration"] >= 0
    assert len(canonical_store) == 0

    status = await service.get_sync_status(failed["runId"])
    assert status["status"] == RunStatus.ROLLED_BACK.value

    with pytest.raises(InvalidTransitionError):
        await service.rollback_sync({"jobId": job["id"]})


async def test_rollback_rejects_completed_runs_and_foreign_snapshots(service):
    job_a = await service.schedule_sync_job({**SHOPIFY_JOB, "jobId": "job_a"})
    job_b = await service.schedule_sync_job({**SHOPIFY_JOB, "jobId": "job_b"})
    result = await service.full_sync({"jobId": job_a["id"]})

    with pytest.raises(InvalidTransitionError):
        await service.rollback_sync({"jobId": job_a["id"]})
    with pytest.raises(ConfigurationError):
        await service.rollback_sync({"jobId": job_b["id"], "rollbackToSnapshot": result["snapshotId"]})
    with pytest.raises(InvalidTransitionError):
        await service.rollback_sync({"jobId": job_a["id"], "rollbackToSnapshot": result["snapshotId"]})


async def test_notify_never_raises(service):
    assert await service.notify_sync_completion({"success": True, "runId": "r"}, {"channels": ["pager"]}) is False


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def test_database_backed_service_and_snapshot_pruning(connector, retry_policy, settings, sleeper):
    service = SyncService.with_database(
        "sqlite://",
        connector_factory=lambda platform: connector,
        retry_policy=retry_policy,
        settings=settings,
        sleep=sleeper,
    )
    service.start()

    job = await service.schedule_sync_job({**SHOPIFY_JOB, "schedule": "0 0 * * *"})
    result = await service.full_sync({"jobId": job["id"]})

    assert result["recordsCreated"] == 20
    assert await service.canonical_store.get(order_id(20)) is not None
    assert await service.prune_snapshot(result["snapshotId"])
    assert not await service.prune_snapshot(result["snapshotId"])

    await service.cleanup()
    assert not service.scheduler.scheduler.running
    assert connector.closed
