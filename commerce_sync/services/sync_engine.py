"""
Sync Strategy Engine

Runs one SyncRun of a SyncJob with one of three strategies:

- full:        every record of every sync type, watermark ignored, snapshot always
- incremental: records changed since the job's watermark
- batch:       known total split into fixed-size batches, bounded parallelism

Every batch goes through the same pipeline:

    fetch -> validate -> transform -> detect conflicts -> resolve -> snapshot -> write

Fetch and write are retried per batch with the job's RetryPolicy. Counters
are committed to the run only after the batch's writes succeed, so a retried
batch never counts twice.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from commerce_sync.config import Settings, get_settings
from commerce_sync.connectors.base import BaseConnector, ConnectorPage, FetchWindow
from commerce_sync.errors import (
    ConflictUnresolvedError,
    InvalidTransitionError,
    RecordValidationError,
    SnapshotNotFoundError,
    SyncError,
    error_to_dict,
)
from commerce_sync.models.records import CanonicalRecord, RawRecord
from commerce_sync.models.sync import (
    BatchResult,
    RunStatus,
    SyncJob,
    SyncRun,
    SyncStrategy,
    new_id,
)
from commerce_sync.services.conflict_service import ConflictResolver, ResolutionStrategy
from commerce_sync.services.snapshot_service import SnapshotManager
from commerce_sync.services.transform_service import TransformConfig, TransformService, canonical_id
from commerce_sync.services.validation_service import ValidationSchema, ValidationService
from commerce_sync.storage.base import CanonicalStore, RunStore
from commerce_sync.utils.cancellation import CancellationToken
from commerce_sync.utils.helpers import utcnow
from commerce_sync.utils.logger import log
from commerce_sync.utils.retry import RetryPolicy, retry_async

MEMORY_WARNING = "Reduced batch size due to memory constraints"


@dataclass
class RunResult:
    """Outcome of one run, as reported to callers and notifiers"""
    run_id: str
    job_id: str
    status: RunStatus
    strategy: SyncStrategy
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    new_records: int = 0
    updated_records: int = 0
    deleted_records: int = 0
    total_records: Optional[int] = None
    batches: List[BatchResult] = field(default_factory=list)
    batches_reduced: bool = False
    warnings: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    flagged_record_ids: List[str] = field(default_factory=list)
    last_sync_timestamp: Optional[datetime] = None
    snapshot_id: Optional[str] = None
    duration_seconds: float = 0.0
    store_id: str = ""
    platform: str = ""

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @classmethod
    def from_run(cls, run: SyncRun) -> "RunResult":
        return cls(
            run_id=run.id,
            job_id=run.job_id,
            status=run.status,
            strategy=run.strategy,
            records_processed=run.records_processed,
            records_created=run.records_created,
            records_updated=run.records_updated,
            records_skipped=run.records_skipped,
            new_records=run.new_records,
            updated_records=run.updated_records,
            deleted_records=run.deleted_records,
            total_records=run.total_records,
            batches=list(run.batches),
            batches_reduced=run.batches_reduced,
            warnings=list(run.warnings),
            errors=list(run.errors),
            flagged_record_ids=list(run.flagged_record_ids),
            last_sync_timestamp=run.last_sync_timestamp,
            snapshot_id=run.snapshot_id,
            duration_seconds=run.duration_seconds or 0.0,
            store_id=run.store_id,
            platform=run.platform.value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "runId": self.run_id,
            "jobId": self.job_id,
            "storeId": self.store_id,
            "platform": self.platform,
            "status": self.status.value,
            "strategy": self.strategy.value,
            "recordsProcessed": self.records_processed,
            "recordsCreated": self.records_created,
            "recordsUpdated": self.records_updated,
            "recordsSkipped": self.records_skipped,
            "newRecords": self.new_records,
            "updatedRecords": self.updated_records,
            "deletedRecords": self.deleted_records,
            "totalRecords": self.total_records,
            "totalBatches": len(self.batches),
            "batches": [batch.to_dict() for batch in self.batches],
            "batchesReduced": self.batches_reduced,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "flaggedRecordIds": list(self.flagged_record_ids),
            "lastSyncTimestamp": self.last_sync_timestamp.isoformat() if self.last_sync_timestamp else None,
            "snapshotId": self.snapshot_id,
            "duration": round(self.duration_seconds, 3),
        }


@dataclass
class _Pipeline:
    """Per sync type processing config"""
    sync_type: str
    schema: ValidationSchema
    transform: TransformConfig
    dependencies: Dict[str, str]


@dataclass
class _BatchPlan:
    """Everything one batch will write, computed before touching the store"""
    writes: Dict[str, CanonicalRecord] = field(default_factory=dict)
    deletes: List[str] = field(default_factory=list)
    # id -> record after this batch (None = deleted)
    view: Dict[str, Optional[CanonicalRecord]] = field(default_factory=dict)
    created_ids: List[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    deferred: List[Dict[str, Any]] = field(default_factory=list)
    conflicts_resolved: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped


class _RunState:
    """Mutable state of one run, owned by the run and passed explicitly"""

    def __init__(self, job: SyncJob, run: SyncRun, connector: BaseConnector,
                 token: CancellationToken, batch_size: int, snapshot_enabled: bool,
                 resolution: ResolutionStrategy):
        self.job = job
        self.run = run
        self.connector = connector
        self.token = token
        self.batch_size = batch_size
        self.snapshot_enabled = snapshot_enabled
        self.resolution = resolution
        # Records this run has written (None = deleted), for duplicate detection
        self.written: Dict[str, Optional[CanonicalRecord]] = {}
        self.created_ids: Set[str] = set()
        self.pending_deferred: List[Dict[str, Any]] = list(job.deferred_records)
        self.new_deferred: List[Dict[str, Any]] = []
        self.failure: Optional[Exception] = None
        self.snapshot_lock = asyncio.Lock()
        self._batch_counter = 0

    def next_batch_id(self) -> int:
        self._batch_counter += 1
        return self._batch_counter

    @property
    def should_stop(self) -> bool:
        return self.failure is not None or self.token.cancelled


class SyncStrategyEngine:
    """
    Orchestrates connectors, validation, transformation, conflict resolution
    and snapshots into sync runs.
    """

    def __init__(
        self,
        canonical_store: CanonicalStore,
        snapshot_manager: SnapshotManager,
        run_store: Optional[RunStore] = None,
        validator: Optional[ValidationService] = None,
        transformer: Optional[TransformService] = None,
        resolver: Optional[ConflictResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
        sleep=asyncio.sleep
    ):
        self.canonical_store = canonical_store
        self.snapshot_manager = snapshot_manager
        self.run_store = run_store
        self.validator = validator or ValidationService()
        self.transformer = transformer or TransformService()
        self.resolver = resolver or ConflictResolver()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.settings = settings or get_settings()
        self.sleep = sleep

    @staticmethod
    def select_strategy(job: SyncJob) -> SyncStrategy:
        """Batch when the volume is known, else incremental or full per job config"""
        if job.config.total_records is not None:
            return SyncStrategy.BATCH
        if job.config.incremental:
            return SyncStrategy.INCREMENTAL
        return SyncStrategy.FULL

    def new_run(self, job: SyncJob, strategy: Optional[SyncStrategy] = None) -> SyncRun:
        return SyncRun(
            id=new_id("run"),
            job_id=job.id,
            store_id=job.store_id,
            platform=job.platform,
            strategy=strategy or self.select_strategy(job),
        )

    async def execute(
        self,
        job: SyncJob,
        connector: BaseConnector,
        strategy: Optional[SyncStrategy] = None,
        token: Optional[CancellationToken] = None,
        run: Optional[SyncRun] = None
    ) -> RunResult:
        """
        Execute one run of a job

        The job's watermark and deferred records are updated in place; the
        caller persists the job.

        Args:
            job: Job definition
            connector: Connector for job.platform
            strategy: Force a strategy; default from select_strategy()
            token: Cancellation token checked between batches
            run: Pending run created by the caller (scheduler), or None

        Returns:
            RunResult of the terminal run
        """
        run = run or self.new_run(job, strategy)
        if strategy is not None:
            run.strategy = strategy
        token = token or CancellationToken()

        batch_size = job.config.batch_size or self.settings.sync_batch_size
        batch_size = max(1, min(batch_size, connector.MAX_PAGE_SIZE))

        run.transition(RunStatus.RUNNING)
        await self._save_run(run)

        previous_watermark = job.last_sync_timestamp
        log.info(
            f"Run {run.id} started: job {job.id}, {job.platform.value} store {job.store_id}, "
            f"strategy={run.strategy.value}, sync_types={job.sync_types}, batch_size={batch_size}"
        )

        state = None
        try:
            resolution = ResolutionStrategy.from_dict(job.config.conflict_strategy)
            state = _RunState(
                job=job,
                run=run,
                connector=connector,
                token=token,
                batch_size=batch_size,
                snapshot_enabled=run.strategy == SyncStrategy.FULL or job.config.rollback_enabled,
                resolution=resolution,
            )

            for sync_type in job.sync_types:
                if state.should_stop:
                    break
                pipeline = self._build_pipeline(job, sync_type)
                await self._replay_deferred(state, pipeline)
                if state.should_stop:
                    break

                if run.strategy == SyncStrategy.BATCH:
                    await self._run_batches(state, pipeline)
                elif run.strategy == SyncStrategy.INCREMENTAL:
                    await self._run_sequential(state, pipeline, since=previous_watermark)
                else:
                    await self._run_sequential(state, pipeline, since=None)

        except Exception as e:
            # Configuration errors and anything unexpected outside a batch
            log.error(f"Run {run.id} aborted: {type(e).__name__}: {e}")
            run.record_error(error_to_dict(e))
            if state is None:
                run.transition(RunStatus.FAILED)
                run.last_sync_timestamp = previous_watermark
                await self._save_run(run)
                return RunResult.from_run(run)
            state.failure = state.failure or e

        await self._finish(state, previous_watermark)
        return RunResult.from_run(run)

    # ==================== STRATEGIES ====================

    async def _run_sequential(self, state: _RunState, pipeline: _Pipeline, since: Optional[datetime]):
        """
        Full and incremental: pages in fetch order, one at a time

        Offset-capable connectors are walked by offset so a reduced batch size
        never skips or repeats records; the rest follow the platform cursor.
        """
        use_offset = state.connector.supports_offset
        cursor = None
        offset = 0 if use_offset else None
        first_page = True

        while not state.should_stop:
            window = FetchWindow(since=since, cursor=cursor, offset=offset, limit=state.batch_size)
            page = await self._process_batch(state, pipeline, window)
            if page is None:
                return

            if first_page and page.total_count is not None:
                state.run.total_records = (state.run.total_records or 0) + page.total_count
            first_page = False

            if not page.records:
                return
            if use_offset:
                offset += len(page.records)
                if len(page.records) < window.limit:
                    return
                if page.total_count is not None and offset >= page.total_count:
                    return
            else:
                cursor = page.next_cursor
                if not cursor:
                    return

            if page.rate_limit_hint:
                log.debug(f"Run {state.run.id}: pausing {page.rate_limit_hint:.1f}s for rate limit")
                await self.sleep(page.rate_limit_hint)

    async def _run_batches(self, state: _RunState, pipeline: _Pipeline):
        """
        Batch: split the known total into windows and process them with a
        worker pool of job parallelism
        """
        job, run = state.job, state.run

        if not state.connector.supports_offset:
            log.warning(
                f"Run {run.id}: {state.connector.name} has no offset access, "
                f"batch sync falls back to sequential cursor pages"
            )
            await self._run_sequential(state, pipeline, since=None)
            return

        total = job.config.total_records
        start = 0
        if total is None:
            # Fetch the first batch to learn the total
            page = await self._process_batch(
                state, pipeline, FetchWindow(offset=0, limit=state.batch_size)
            )
            if page is None or not page.records:
                return
            start = len(page.records)
            total = page.total_count
            if total is None:
                await self._run_sequential_from(state, pipeline, start)
                return

        run.total_records = (run.total_records or 0) + total
        parallelism = job.config.parallelism or self.settings.sync_parallelism
        next_offset = start

        async def worker():
            nonlocal next_offset
            while not state.should_stop and next_offset < total:
                # No await between reading and bumping next_offset
                offset = next_offset
                limit = min(state.batch_size, total - offset)
                next_offset += limit
                page = await self._process_batch(state, pipeline, FetchWindow(offset=offset, limit=limit))
                if page is not None and page.rate_limit_hint:
                    await self.sleep(page.rate_limit_hint)

        log.info(f"Run {run.id}: batch sync of {total} {pipeline.sync_type} with parallelism {parallelism}")
        await asyncio.gather(*(worker() for _ in range(max(1, parallelism))))
        run.batches.sort(key=lambda batch: batch.batch_id)

    async def _run_sequential_from(self, state: _RunState, pipeline: _Pipeline, offset: int):
        while not state.should_stop:
            window = FetchWindow(offset=offset, limit=state.batch_size)
            page = await self._process_batch(state, pipeline, window)
            if page is None or len(page.records) < window.limit:
                return
            offset += len(page.records)

    async def _replay_deferred(self, state: _RunState, pipeline: _Pipeline):
        """Re-inject records a previous run held back for missing dependencies"""
        items = [item for item in state.pending_deferred if item.get("syncType") == pipeline.sync_type]
        if not items:
            return

        log.info(f"Run {state.run.id}: replaying {len(items)} deferred {pipeline.sync_type}")
        records = [
            RawRecord(data=dict(item["data"]), platform=state.job.platform, record_type=pipeline.sync_type)
            for item in items
        ]
        page = await self._process_batch(state, pipeline, None, replay=records)
        if page is not None:
            state.pending_deferred = [item for item in state.pending_deferred if item not in items]

    # ==================== BATCH PIPELINE ====================

    async def _process_batch(
        self,
        state: _RunState,
        pipeline: _Pipeline,
        window: Optional[FetchWindow],
        replay: Optional[List[RawRecord]] = None
    ) -> Optional[ConnectorPage]:
        """
        Run one batch through the pipeline

        Returns:
            The fetched page, or None when the batch failed the run
        """
        run = state.run
        batch = BatchResult(batch_id=state.next_batch_id(), sync_type=pipeline.sync_type)
        started = time.monotonic()
        label = f"Run {run.id} {pipeline.sync_type} batch {batch.batch_id}"

        try:
            if replay is not None:
                page = ConnectorPage(records=replay)
            else:
                page, fetch_stats = await retry_async(
                    lambda: state.connector.fetch_page(state.job.credentials, pipeline.sync_type, window),
                    self.retry_policy,
                    operation_name=f"{label} fetch",
                    sleep=self.sleep,
                )
                batch.retries += fetch_stats.retries

            plan, read_stats = await retry_async(
                lambda: self._plan_batch(state, pipeline, page.records),
                self.retry_policy,
                operation_name=f"{label} read",
                sleep=self.sleep,
            )
            batch.retries += read_stats.retries

            _, write_stats = await retry_async(
                lambda: self._apply_plan(state, plan),
                self.retry_policy,
                operation_name=f"{label} write",
                sleep=self.sleep,
            )
            batch.retries += write_stats.retries

        except Exception as e:
            batch.status = "failed"
            batch.error = f"{type(e).__name__}: {e}"
            batch.duration_seconds = time.monotonic() - started
            run.batches.append(batch)
            run.record_error(error_to_dict(e))
            state.failure = state.failure or e

            if isinstance(e, SyncError) and not e.retryable:
                log.error(f"{label} failed fatally, stopping run: {e}")
            else:
                log.error(f"{label} failed after retries: {e}")
            await self._save_run(run)
            return None

        self._commit_plan(state, plan)
        batch.records_processed = plan.processed
        batch.records_created = plan.created
        batch.records_updated = plan.updated
        batch.records_skipped = plan.skipped
        batch.duration_seconds = time.monotonic() - started
        run.batches.append(batch)

        log.info(
            f"{label}: {len(page.records)} fetched, {plan.created} created, {plan.updated} updated, "
            f"{plan.skipped} skipped, {plan.conflicts_resolved} conflicts resolved"
            + (f", {batch.retries} retries" if batch.retries else "")
        )

        self._adapt_batch_size(state)
        await self._save_run(run)
        return page

    async def _plan_batch(self, state: _RunState, pipeline: _Pipeline, records: List[RawRecord]) -> _BatchPlan:
        """
        Validate, transform, detect and resolve conflicts for one batch

        Only reads from the canonical store; nothing is written here.
        """
        plan = _BatchPlan()
        job = state.job

        live = [(index, record) for index, record in enumerate(records) if not record.deleted]
        validation = self.validator.validate([record for _, record in live], pipeline.schema)
        plan.warnings.extend(validation.warnings)

        invalid = {live[i][0]: validation.errors_by_index[i] for i in validation.invalid_indexes}

        # (raw, canonical or None, tombstone id or None) in fetch order
        items = []
        for index, raw in enumerate(records):
            if index in invalid:
                plan.skipped += 1
                for message in invalid[index]:
                    plan.errors.append(RecordValidationError(message, record_id=raw.source_id).to_dict())
                continue

            if raw.deleted:
                if raw.source_id is None:
                    plan.skipped += 1
                    continue
                tombstone_id = canonical_id(job.store_id, raw.platform, pipeline.sync_type, raw.source_id)
                items.append((raw, None, tombstone_id))
                continue

            try:
                record = self.transformer.transform_record(raw, pipeline.transform)
            except RecordValidationError as e:
                plan.skipped += 1
                plan.errors.append(e.to_dict() if e.record_id else error_to_dict(e, raw.source_id))
                continue
            items.append((raw, record, None))

        lookup_ids = []
        for _, record, tombstone_id in items:
            if record is None:
                lookup_ids.append(tombstone_id)
                continue
            lookup_ids.append(record.id)
            for field_name, dependency_type in pipeline.dependencies.items():
                value = record.fields.get(field_name, record.raw_data.get(field_name))
                if value not in (None, ""):
                    lookup_ids.append(canonical_id(job.store_id, record.platform, dependency_type, value))

        existing = await self.canonical_store.get_many(list(dict.fromkeys(lookup_ids)))

        def current(record_id: str) -> Optional[CanonicalRecord]:
            if record_id in plan.view:
                return plan.view[record_id]
            if record_id in state.written:
                return state.written[record_id]
            return existing.get(record_id)

        def seen_this_run(record_id: str) -> bool:
            return record_id in plan.view or record_id in state.written

        known_ids = set(existing)
        known_ids.update(record_id for record_id, record in state.written.items() if record is not None)

        for raw, record, tombstone_id in items:
            if record is None:
                target = current(tombstone_id)
                if target is None:
                    plan.skipped += 1
                    continue
                plan.updated += 1
                plan.deleted += 1
                plan.view[tombstone_id] = None
                plan.writes.pop(tombstone_id, None)
                plan.deletes.append(tombstone_id)
                known_ids.discard(tombstone_id)
                continue

            target = current(record.id)
            missing = self.resolver.missing_dependencies(record, pipeline.dependencies, known_ids)
            conflict = self.resolver.detect_one(
                record, target, written_this_run=seen_this_run(record.id), missing=missing
            )

            final = record
            if conflict is not None:
                try:
                    resolution = self.resolver.resolve_one(conflict, state.resolution)
                except ConflictUnresolvedError as e:
                    plan.skipped += 1
                    plan.flagged.append(record.id)
                    plan.errors.append(e.to_dict())
                    continue

                plan.conflicts_resolved += 1
                if resolution.flagged_for_review:
                    plan.flagged.append(record.id)
                if resolution.retry:
                    plan.skipped += 1
                    plan.deferred.append({
                        "syncType": pipeline.sync_type,
                        "data": dict(raw.data),
                        "missing": list(conflict.missing),
                        "deferredAt": utcnow().isoformat(),
                    })
                    continue
                if resolution.record is None:
                    plan.skipped += 1
                    continue

                final = record.clone()
                final.fields = resolution.record
                final.updated_at = resolution.updated_at or record.updated_at

            if target is not None and final.content_hash == target.content_hash:
                plan.skipped += 1  # unchanged
                continue

            if target is None:
                final.version = 1
                plan.created += 1
                plan.created_ids.append(final.id)
            else:
                final.version = target.version + 1
                plan.updated += 1

            if final.id in plan.deletes:
                plan.deletes.remove(final.id)
            plan.view[final.id] = final
            plan.writes[final.id] = final
            known_ids.add(final.id)

        return plan

    async def _apply_plan(self, state: _RunState, plan: _BatchPlan) -> None:
        """Snapshot then write; safe to repeat after a partial failure"""
        touched = list(plan.writes) + plan.deletes
        if not touched:
            return

        if state.snapshot_enabled:
            await self._ensure_snapshot(state, touched, plan.created_ids)

        for record in plan.writes.values():
            await self.canonical_store.upsert(record)
        for record_id in plan.deletes:
            await self.canonical_store.delete(record_id)

    async def _ensure_snapshot(self, state: _RunState, ids: List[str], created_ids: List[str]) -> None:
        run = state.run
        async with state.snapshot_lock:
            if run.snapshot_id is None:
                snapshot = await self.snapshot_manager.capture(run.id, ids)
                run.snapshot_id = snapshot.id
            else:
                await self.snapshot_manager.extend(run.snapshot_id, ids)
            # Marked before the writes, so a half-applied batch still rolls back
            if created_ids:
                await self.snapshot_manager.mark_created(run.snapshot_id, created_ids)

    def _commit_plan(self, state: _RunState, plan: _BatchPlan) -> None:
        run = state.run
        state.written.update(plan.view)
        state.created_ids.update(plan.created_ids)
        state.new_deferred.extend(plan.deferred)
        run.add_counts(created=plan.created, updated=plan.updated, skipped=plan.skipped, deleted=plan.deleted)
        for entry in plan.errors:
            run.record_error(entry)
        run.warnings.extend(plan.warnings)
        for record_id in plan.flagged:
            if record_id not in run.flagged_record_ids:
                run.flagged_record_ids.append(record_id)

    def _adapt_batch_size(self, state: _RunState) -> None:
        """
        Halve the batch size once the processed volume exceeds the memory
        limit. Never grows back within a run.
        """
        config = state.job.config
        if not config.adaptive_batching or not config.memory_limit or state.batch_size <= 1:
            return

        estimated = state.run.records_processed * self.settings.sync_record_size_bytes
        if estimated <= config.memory_limit:
            return

        old_size = state.batch_size
        state.batch_size = max(1, old_size // 2)
        state.run.batches_reduced = True
        if MEMORY_WARNING not in state.run.warnings:
            state.run.warnings.append(MEMORY_WARNING)
        log.warning(
            f"Run {state.run.id}: {MEMORY_WARNING} "
            f"({old_size} -> {state.batch_size}, ~{estimated} bytes processed, limit {config.memory_limit})"
        )

    # ==================== FINALIZATION ====================

    async def _finish(self, state: _RunState, previous_watermark: Optional[datetime]) -> None:
        run, job = state.run, state.job

        job.deferred_records = state.pending_deferred + state.new_deferred

        if state.failure is not None:
            run.transition(RunStatus.FAILED)
            run.last_sync_timestamp = previous_watermark
        elif state.token.cancelled:
            run.transition(RunStatus.CANCELLED)
            run.warnings.append(f"Run cancelled between batches: {state.token.reason}")
            run.last_sync_timestamp = previous_watermark
        else:
            run.transition(RunStatus.COMPLETED)
            if run.strategy != SyncStrategy.BATCH:
                # Everything changed before the run started has been seen
                watermark = run.started_at
                if previous_watermark and previous_watermark > watermark:
                    watermark = previous_watermark
                job.last_sync_timestamp = watermark
            run.last_sync_timestamp = job.last_sync_timestamp

        if run.total_records is None and run.status == RunStatus.COMPLETED:
            run.total_records = run.records_processed

        log.info(
            f"Run {run.id} {run.status.value}: processed={run.records_processed} "
            f"created={run.records_created} updated={run.records_updated} "
            f"skipped={run.records_skipped} deleted={run.deleted_records} "
            f"errors={len(run.errors)} in {run.duration_seconds or 0:.1f}s"
        )

        if run.status == RunStatus.FAILED and job.config.rollback_on_failure and run.snapshot_id:
            await self.rollback_run(run, reason=f"automatic rollback after failure: {state.failure}")

        await self._save_run(run)

    async def rollback_run(self, run: SyncRun, reason: Optional[str] = None, snapshot_id: Optional[str] = None):
        """
        Restore a failed or cancelled run's snapshot and mark it rolled_back

        Raises:
            InvalidTransitionError: the run is not failed or cancelled
            SnapshotNotFoundError: no snapshot, or it was pruned
        """
        if run.status not in (RunStatus.FAILED, RunStatus.CANCELLED):
            raise InvalidTransitionError(
                f"Run {run.id} is {run.status.value}; only failed or cancelled runs can be rolled back"
            )

        target_snapshot = snapshot_id or run.snapshot_id
        if not target_snapshot:
            raise SnapshotNotFoundError(f"Run {run.id} has no snapshot to restore")

        restore = await self.snapshot_manager.restore(target_snapshot)
        run.transition(RunStatus.ROLLED_BACK)
        run.rollback_reason = reason
        log.warning(f"Run {run.id} rolled back ({restore.records_reverted} records): {reason}")
        await self._save_run(run)
        return restore

    def _build_pipeline(self, job: SyncJob, sync_type: str) -> _Pipeline:
        config = job.config
        schema_data = config.validation.get(sync_type)
        schema = (
            ValidationSchema.from_dict(schema_data) if schema_data
            else ValidationSchema(type=sync_type, required_fields=["id"])
        )
        transform_data = dict(config.transforms.get(sync_type) or {})
        transform_data.update({"platform": job.platform, "record_type": sync_type, "store_id": job.store_id})
        return _Pipeline(
            sync_type=sync_type,
            schema=schema,
            transform=TransformConfig.from_dict(transform_data),
            dependencies=dict(config.dependencies.get(sync_type) or {}),
        )

    async def _save_run(self, run: SyncRun) -> None:
        if self.run_store is not None:
            await self.run_store.save_run(run)
