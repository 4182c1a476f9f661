"""Repositories for canonical records, snapshots, jobs and runs"""

from commerce_sync.storage.base import CanonicalStore, SnapshotStore, RunStore
from commerce_sync.storage.memory import (
    InMemoryCanonicalStore,
    InMemorySnapshotStore,
    InMemoryRunStore
)

__all__ = [
    "CanonicalStore",
    "SnapshotStore",
    "RunStore",
    "InMemoryCanonicalStore",
    "InMemorySnapshotStore",
    "InMemoryRunStore",
]
