"""
Shared fixtures: in-memory stores, a scripted connector and zero-delay retries.
"""
import asyncio
import copy
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from commerce_sync.config import Settings
from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.models.records import CanonicalRecord, Platform
from commerce_sync.models.sync import SyncJob, SyncJobConfig
from commerce_sync.services.snapshot_service import SnapshotManager
from commerce_sync.services.sync_engine import SyncStrategyEngine
from commerce_sync.services.transform_service import canonical_id
from commerce_sync.storage.memory import InMemoryCanonicalStore, InMemoryRunStore, InMemorySnapshotStore
from commerce_sync.utils.helpers import parse_datetime
from commerce_sync.utils.retry import RetryPolicy

STORE_ID = "store_1"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_order(n: int, updated_at: Optional[datetime] = None, **fields) -> Dict[str, Any]:
    data = {
        "id": n,
        "total": f"{10 + n}.00",
        "currency": "USD",
        "updated_at": (updated_at or BASE_TIME + timedelta(minutes=n)).isoformat(),
    }
    data.update(fields)
    return data


def order_id(n: int, store_id: str = STORE_ID, record_type: str = "orders") -> str:
    return canonical_id(store_id, Platform.SHOPIFY, record_type, n)


def stored_order(n: int, **fields) -> CanonicalRecord:
    """Canonical order as an earlier run would have written it"""
    data = make_order(n, updated_at=BASE_TIME - timedelta(days=1))
    data.update(fields)
    return CanonicalRecord(
        id=order_id(n),
        store_id=STORE_ID,
        type="orders",
        fields=data,
        version=1,
        updated_at=BASE_TIME - timedelta(days=1),
        platform=Platform.SHOPIFY,
        source_id=str(n),
    )


def make_job(job_id: str = "job_1", config: Optional[Dict[str, Any]] = None, **kwargs) -> SyncJob:
    kwargs.setdefault("platform", Platform.SHOPIFY)
    kwargs.setdefault("store_id", STORE_ID)
    kwargs.setdefault("credentials", {})
    kwargs.setdefault("sync_types", ["orders"])
    return SyncJob(id=job_id, config=SyncJobConfig.from_dict(config or {}), **kwargs)


class FakeConnector(BaseConnector):
    """
    Serves records from memory

    Records are filtered by updated_at >= since and paged by offset or by a
    numeric cursor. `failures` is a queue consumed one entry per call: an
    exception is raised, None lets the call through. Items with "_deleted"
    are reported as deletions.
    """

    platform = Platform.SHOPIFY
    RESOURCES = {"orders": "orders", "products": "products", "customers": "customers"}
    MAX_PAGE_SIZE = 250

    def __init__(
        self,
        data: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        supports_offset: bool = True,
        report_total: bool = True,
        failures: Optional[List[Optional[Exception]]] = None,
        rate_limit_hint: Optional[float] = None,
        on_fetch: Optional[Callable[[int], Any]] = None
    ):
        super().__init__(requests_per_second=0)
        self.data = {key: list(value) for key, value in (data or {}).items()}
        self.supports_offset = supports_offset
        self.report_total = report_total
        self.failures = list(failures or [])
        self.rate_limit_hint = rate_limit_hint
        self.on_fetch = on_fetch
        self.calls: List[FetchWindow] = []
        self.closed = False

    def _matching(self, sync_type: str, since: Optional[datetime]) -> List[Dict[str, Any]]:
        items = self.data.get(sync_type, [])
        if since is None:
            return items
        return [item for item in items if parse_datetime(item.get("updated_at")) >= since]

    async def _fetch(self, credentials, sync_type, window):
        self.calls.append(copy.copy(window))
        # Let parallel batch workers interleave
        await asyncio.sleep(0)

        if self.on_fetch is not None:
            result = self.on_fetch(len(self.calls))
            if inspect.isawaitable(result):
                await result

        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure

        items = self._matching(sync_type, window.since)
        start = int(window.cursor) if window.cursor else (window.offset or 0)
        chunk = items[start:start + window.limit]
        end = start + len(chunk)

        return ConnectorPage(
            records=[
                self._make_record(dict(item), sync_type, window.cursor, deleted=bool(item.get("_deleted")))
                for item in chunk
            ],
            next_cursor=str(end) if end < len(items) else None,
            rate_limit_hint=self.rate_limit_hint,
            total_count=len(items) if self.report_total else None,
        )

    async def aclose(self):
        self.closed = True


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=4, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def settings():
    return Settings(sync_batch_size=100, sync_parallelism=4, sync_record_size_bytes=10240)


@pytest.fixture
def canonical_store():
    return InMemoryCanonicalStore()


@pytest.fixture
def snapshot_store():
    return InMemorySnapshotStore()


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def snapshot_manager(canonical_store, snapshot_store):
    return SnapshotManager(canonical_store, snapshot_store)


@pytest.fixture
def engine(canonical_store, snapshot_manager, run_store, retry_policy, settings, sleeper):
    return SyncStrategyEngine(
        canonical_store=canonical_store,
        snapshot_manager=snapshot_manager,
        run_store=run_store,
        retry_policy=retry_policy,
        settings=settings,
        sleep=sleeper,
    )
