"""Domain models for the sync engine"""

from commerce_sync.models.records import (
    Platform,
    ConflictType,
    RawRecord,
    CanonicalRecord,
    Conflict,
    Snapshot
)

from commerce_sync.models.sync import (
    RunStatus,
    JobStatus,
    SyncStrategy,
    TERMINAL_RUN_STATUSES,
    SyncJobConfig,
    SyncJob,
    SyncRun,
    BatchResult,
    new_id
)

__all__ = [
    "Platform",
    "ConflictType",
    "RawRecord",
    "CanonicalRecord",
    "Conflict",
    "Snapshot",
    "RunStatus",
    "JobStatus",
    "SyncStrategy",
    "TERMINAL_RUN_STATUSES",
    "SyncJobConfig",
    "SyncJob",
    "SyncRun",
    "BatchResult",
    "new_id",
]
