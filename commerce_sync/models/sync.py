"""
Sync job and sync run models

A SyncJob is the durable definition of work; a SyncRun is one execution of
it. Runs only change state through SyncRun.transition(), which enforces:

    pending -> running -> completed | failed | cancelled
    pending -> cancelled            (queued run cancelled before it started)
    failed | cancelled -> rolled_back
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from commerce_sync.errors import ConfigurationError, InvalidTransitionError
from commerce_sync.models.records import Platform
from commerce_sync.utils.helpers import parse_datetime, parse_size, utcnow


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncStrategy(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    BATCH = "batch"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.ROLLED_BACK,
})

_RUN_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.FAILED: {RunStatus.ROLLED_BACK},
    RunStatus.CANCELLED: {RunStatus.ROLLED_BACK},
    RunStatus.COMPLETED: set(),
    RunStatus.ROLLED_BACK: set(),
}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key, so both snake_case and camelCase payloads work"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class SyncJobConfig:
    """
    Per-job tuning. None values fall back to the environment settings.

    validation / transforms are keyed by sync type and hold the raw schema and
    transform-config dicts; the services parse them.
    """
    batch_size: Optional[int] = None
    parallelism: Optional[int] = None
    incremental: bool = True
    memory_limit: Optional[int] = None  # bytes
    adaptive_batching: bool = False
    rollback_enabled: bool = True
    rollback_on_failure: bool = False
    total_records: Optional[int] = None
    dependencies: Dict[str, Dict[str, str]] = field(default_factory=dict)
    validation: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    transforms: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    conflict_strategy: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncJobConfig":
        data = data or {}
        batch_size = _pick(data, "batch_size", "batchSize")
        parallelism = _pick(data, "parallelism", "parallelization")

        if batch_size is not None and int(batch_size) < 1:
            raise ConfigurationError(f"batchSize must be >= 1, got {batch_size}")
        if parallelism is not None and int(parallelism) < 1:
            raise ConfigurationError(f"parallelism must be >= 1, got {parallelism}")

        optimization = data.get("optimization") or {}
        memory_limit = _pick(data, "memory_limit", "memoryLimit",
                             default=optimization.get("memoryLimit"))

        return cls(
            batch_size=int(batch_size) if batch_size is not None else None,
            parallelism=int(parallelism) if parallelism is not None else None,
            incremental=bool(_pick(data, "incremental", default=True)),
            memory_limit=parse_size(memory_limit),
            adaptive_batching=bool(_pick(data, "adaptive_batching", "adaptiveBatching", default=False)),
            rollback_enabled=bool(_pick(data, "rollback_enabled", "rollbackEnabled", default=True)),
            rollback_on_failure=bool(_pick(data, "rollback_on_failure", "rollbackOnFailure", default=False)),
            total_records=_pick(data, "total_records", "totalRecords"),
            dependencies=dict(_pick(data, "dependencies", default={})),
            validation=dict(_pick(data, "validation", "schemas", default={})),
            transforms=dict(_pick(data, "transforms", "transform", default={})),
            conflict_strategy=dict(_pick(data, "conflict_strategy", "conflictStrategy", default={})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchSize": self.batch_size,
            "parallelism": self.parallelism,
            "incremental": self.incremental,
            "memoryLimit": self.memory_limit,
            "adaptiveBatching": self.adaptive_batching,
            "rollbackEnabled": self.rollback_enabled,
            "rollbackOnFailure": self.rollback_on_failure,
            "totalRecords": self.total_records,
            "dependencies": self.dependencies,
            "validation": self.validation,
            "transforms": self.transforms,
            "conflictStrategy": self.conflict_strategy,
        }


@dataclass
class SyncJob:
    """Durable definition of recurring or one-shot sync work"""
    id: str
    platform: Platform
    store_id: str
    credentials: Dict[str, Any]
    sync_types: List[str]
    config: SyncJobConfig = field(default_factory=SyncJobConfig)
    schedule: Optional[str] = None  # cron expression; None = on demand
    status: JobStatus = JobStatus.SCHEDULED
    exclusive: bool = False
    last_sync_timestamp: Optional[datetime] = None
    # Raw payloads held back by missing dependencies, replayed on the next run
    deferred_records: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        # Ordered set: keep first occurrence
        seen = []
        for sync_type in self.sync_types:
            if sync_type not in seen:
                seen.append(sync_type)
        self.sync_types = seen

    @property
    def is_recurring(self) -> bool:
        return bool(self.schedule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "platform": self.platform.value,
            "storeId": self.store_id,
            "schedule": self.schedule,
            "syncTypes": list(self.sync_types),
            "config": self.config.to_dict(),
            "status": self.status.value,
            "exclusive": self.exclusive,
            "lastSyncTimestamp": self.last_sync_timestamp.isoformat() if self.last_sync_timestamp else None,
            "deferredRecords": len(self.deferred_records),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class BatchResult:
    """Outcome of one batch iteration"""
    batch_id: int
    sync_type: str
    status: str = "completed"  # completed, failed
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    retries: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "syncType": self.sync_type,
            "status": self.status,
            "recordsProcessed": self.records_processed,
            "recordsCreated": self.records_created,
            "recordsUpdated": self.records_updated,
            "recordsSkipped": self.records_skipped,
            "retries": self.retries,
            "duration": round(self.duration_seconds, 3),
            "error": self.error,
        }


@dataclass
class SyncRun:
    """
    One execution of a SyncJob

    records_processed is only ever changed through add_counts(), so it always
    equals created + updated + skipped.
    """
    id: str
    job_id: str
    store_id: str
    platform: Platform
    strategy: SyncStrategy
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    deleted_records: int = 0
    total_records: Optional[int] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    snapshot_id: Optional[str] = None
    last_sync_timestamp: Optional[datetime] = None
    batches: List[BatchResult] = field(default_factory=list)
    batches_reduced: bool = False
    flagged_record_ids: List[str] = field(default_factory=list)
    rollback_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def new_records(self) -> int:
        return self.records_created

    @property
    def updated_records(self) -> int:
        # Deletions are mutations of existing records and are counted as updates
        return self.records_updated - self.deleted_records

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()

    def transition(self, target: RunStatus) -> None:
        if target not in _RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Run {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        now = utcnow()
        if target == RunStatus.RUNNING:
            self.started_at = now
        elif target in TERMINAL_RUN_STATUSES and target != RunStatus.ROLLED_BACK:
            self.completed_at = now

    def add_counts(self, created: int = 0, updated: int = 0, skipped: int = 0, deleted: int = 0) -> None:
        self.records_created += created
        self.records_updated += updated
        self.records_skipped += skipped
        self.deleted_records += deleted
        self.records_processed += created + updated + skipped

    def record_error(self, entry: Dict[str, Any]) -> None:
        self.errors.append(entry)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "storeId": self.store_id,
            "platform": self.platform.value,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "recordsProcessed": self.records_processed,
            "recordsCreated": self.records_created,
            "recordsUpdated": self.records_updated,
            "recordsSkipped": self.records_skipped,
            "newRecords": self.new_records,
            "updatedRecords": self.updated_records,
            "deletedRecords": self.deleted_records,
            "totalRecords": self.total_records,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "snapshotId": self.snapshot_id,
            "lastSyncTimestamp": self.last_sync_timestamp.isoformat() if self.last_sync_timestamp else None,
            "batches": [batch.to_dict() for batch in self.batches],
            "batchesReduced": self.batches_reduced,
            "flaggedRecordIds": list(self.flagged_record_ids),
            "rollbackReason": self.rollback_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncRun":
        run = cls(
            id=data["id"],
            job_id=data["jobId"],
            store_id=data.get("storeId", ""),
            platform=Platform.parse(data.get("platform", "custom")),
            strategy=SyncStrategy(data.get("strategy", "incremental")),
            status=RunStatus(data.get("status", "pending")),
            created_at=parse_datetime(data.get("createdAt")) or utcnow(),
            started_at=parse_datetime(data.get("startedAt")),
            completed_at=parse_datetime(data.get("completedAt")),
            total_records=data.get("totalRecords"),
            errors=list(data.get("errors") or []),
            warnings=list(data.get("warnings") or []),
            snapshot_id=data.get("snapshotId"),
            last_sync_timestamp=parse_datetime(data.get("lastSyncTimestamp")),
            batches_reduced=bool(data.get("batchesReduced")),
            flagged_record_ids=list(data.get("flaggedRecordIds") or []),
            rollback_reason=data.get("rollbackReason"),
        )
        run.records_created = int(data.get("recordsCreated") or 0)
        run.records_updated = int(data.get("recordsUpdated") or 0)
        run.records_skipped = int(data.get("recordsSkipped") or 0)
        run.deleted_records = int(data.get("deletedRecords") or 0)
        run.records_processed = run.records_created + run.records_updated + run.records_skipped
        run.batches = [
            BatchResult(
                batch_id=b.get("batchId", 0),
                sync_type=b.get("syncType", ""),
                status=b.get("status", "completed"),
                records_processed=b.get("recordsProcessed", 0),
                records_created=b.get("recordsCreated", 0),
                records_updated=b.get("recordsUpdated", 0),
                records_skipped=b.get("recordsSkipped", 0),
                retries=b.get("retries", 0),
                duration_seconds=b.get("duration", 0.0),
                error=b.get("error"),
            )
            for b in data.get("batches") or []
        ]
        return run
