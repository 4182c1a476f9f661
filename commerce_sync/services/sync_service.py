"""
Sync Service
Single entry point for scheduling, running, inspecting and rolling back syncs.

Wires the stores, the strategy engine, the snapshot manager, the scheduler and
the notifier together. Every operation takes and returns plain dicts so it can
sit behind any transport.
"""
import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from commerce_sync.config import Settings, get_settings
from commerce_sync.connectors import get_connector
from commerce_sync.errors import ConfigurationError, InvalidTransitionError, JobNotFoundError, RunNotFoundError
from commerce_sync.models.records import Platform
from commerce_sync.models.sync import JobStatus, RunStatus, SyncJob, SyncJobConfig, SyncStrategy, new_id
from commerce_sync.scheduler import JobScheduler
from commerce_sync.schemas import (
    RollbackRequest,
    ScheduleSyncJobRequest,
    StrategySyncRequest,
    SyncHistoryParams,
    parse_request,
)
from commerce_sync.services.conflict_service import ConflictResolver
from commerce_sync.services.notification_service import NotificationService
from commerce_sync.services.snapshot_service import SnapshotManager
from commerce_sync.services.sync_engine import RunResult, SyncStrategyEngine
from commerce_sync.services.transform_service import TransformService
from commerce_sync.services.validation_service import ValidationService
from commerce_sync.storage.base import CanonicalStore, RunStore, SnapshotStore
from commerce_sync.storage.memory import InMemoryCanonicalStore, InMemoryRunStore, InMemorySnapshotStore
from commerce_sync.utils.helpers import parse_datetime
from commerce_sync.utils.logger import log
from commerce_sync.utils.retry import RetryPolicy

# Keys of an ad-hoc sync request that are not platform credentials
_REQUEST_KEYS = (
    "storeId", "syncTypes", "lastSyncAt", "jobConfig", "notification", "strategy", "platformId",
)

_ROLLBACK_STATUSES = (RunStatus.FAILED, RunStatus.CANCELLED)


class SyncService:
    """
    Commerce data sync facade

    Usage:
        service = SyncService()
        service.start()
        job = await service.schedule_sync_job({
            "storeId": "store_123",
            "platform": "shopify",
            "credentials": {"shopDomain": "...", "accessToken": "..."},
            "schedule": "0 */6 * * *",
            "syncTypes": ["orders", "products"],
            "config": {"incremental": True, "batchSize": 50},
        })
        ...
        await service.cleanup()
    """

    def __init__(
        self,
        canonical_store: Optional[CanonicalStore] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        run_store: Optional[RunStore] = None,
        connector_factory=get_connector,
        notifier: Optional[NotificationService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        sleep=asyncio.sleep
    ):
        self.settings = settings or get_settings()
        self.canonical_store = canonical_store if canonical_store is not None else InMemoryCanonicalStore()
        self.snapshot_store = snapshot_store if snapshot_store is not None else InMemorySnapshotStore()
        self.run_store = run_store if run_store is not None else InMemoryRunStore()

        self.validator = ValidationService()
        self.transformer = TransformService()
        self.resolver = ConflictResolver()
        self.snapshot_manager = SnapshotManager(self.canonical_store, self.snapshot_store)
        self.notifier = notifier or NotificationService()

        self.engine = SyncStrategyEngine(
            canonical_store=self.canonical_store,
            snapshot_manager=self.snapshot_manager,
            run_store=self.run_store,
            validator=self.validator,
            transformer=self.transformer,
            resolver=self.resolver,
            retry_policy=retry_policy,
            settings=self.settings,
            sleep=sleep,
        )
        self.scheduler = JobScheduler(
            engine=self.engine,
            run_store=self.run_store,
            connector_factory=connector_factory,
            notifier=self.notifier,
            scheduler=scheduler,
        )

    @classmethod
    def with_database(cls, database_url: Optional[str] = None, **kwargs) -> "SyncService":
        """Service backed by the SQLAlchemy stores; creates tables if needed"""
        from commerce_sync.models.base import init_db, make_engine, make_session_factory
        from commerce_sync.storage.sql import SqlCanonicalStore, SqlRunStore, SqlSnapshotStore

        engine = make_engine(database_url or get_settings().database_url)
        init_db(engine)
        session_factory = make_session_factory(engine)
        return cls(
            canonical_store=SqlCanonicalStore(session_factory),
            snapshot_store=SqlSnapshotStore(session_factory),
            run_store=SqlRunStore(session_factory),
            **kwargs
        )

    def start(self):
        self.scheduler.start()

    async def cleanup(self):
        """Stop the scheduler and close connector HTTP clients"""
        await self.scheduler.shutdown()

    # ==================== JOBS ====================

    async def schedule_sync_job(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a recurring (cron) or on-demand sync job

        Args:
            params: {platform, storeId, credentials, schedule, syncTypes,
                     config, exclusive?, notification?}

        Returns:
            Job dict with nextRun

        Raises:
            ConfigurationError: invalid params, schedule or job config
            ScheduleConflictError: exclusive overlap with another job
        """
        request = parse_request(ScheduleSyncJobRequest, params)
        job = SyncJob(
            id=request.job_id or new_id("job"),
            platform=Platform.parse(request.platform),
            store_id=request.store_id,
            credentials=dict(request.credentials),
            sync_types=list(request.sync_types),
            config=SyncJobConfig.from_dict(request.config),
            schedule=request.schedule,
            exclusive=request.exclusive,
        )
        await self.scheduler.schedule(job, request.notification)

        data = job.to_dict()
        next_run = self.scheduler.next_run_time(job.id)
        data["nextRun"] = next_run.isoformat() if next_run else None
        return data

    async def cancel_sync_job(self, job_id: str) -> bool:
        return await self.scheduler.cancel(job_id)

    async def get_sync_status(self, run_id: str) -> Dict[str, Any]:
        """
        Progress of a run

        A job id is accepted too and reports the job's latest run.
        """
        if await self.run_store.get_run(run_id) is None:
            runs = await self.run_store.list_runs(job_id=run_id)
            if not runs:
                raise RunNotFoundError(f"Run not found: {run_id}")
            run_id = runs[0].id
        return await self.scheduler.status(run_id)

    async def get_sync_history(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run history for a store or job

        Args:
            params: {storeId?, jobId?, limit, offset, dateRange: {start, end}}

        Returns:
            {runs, totalRuns, successRate, limit, offset}
        """
        request = parse_request(SyncHistoryParams, params)
        date_range = request.date_range
        return await self.scheduler.history(
            store_id=request.store_id,
            job_id=request.job_id,
            limit=request.limit,
            offset=request.offset,
            start=date_range.start if date_range else None,
            end=date_range.end if date_range else None,
        )

    async def list_jobs(self, store_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.scheduler.list_jobs(store_id)

    # ==================== AD-HOC SYNC ====================

    async def sync_platform_data(self, platform: Union[str, Platform], connection_params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run one sync right now for a platform

        Args:
            platform: shopify, woocommerce, stripe or custom
            connection_params: platform credentials at the top level (for
                custom: under "config") plus storeId, syncTypes, lastSyncAt,
                jobConfig, strategy

        Returns:
            RunResult dict
        """
        platform = Platform.parse(platform)
        params = dict(connection_params or {})
        job = self._adhoc_job(platform, params)
        log.info(f"Ad-hoc {platform.value} sync for store {job.store_id}: {job.sync_types}")

        strategy = params.get("strategy")
        if strategy is not None:
            try:
                strategy = SyncStrategy(strategy)
            except ValueError:
                raise ConfigurationError(
                    f"Unknown strategy '{strategy}'. Valid options: {', '.join(s.value for s in SyncStrategy)}"
                )

        await self.scheduler.schedule(job, params.get("notification"))
        result = await self.scheduler.trigger(job.id, strategy)
        return result.to_dict()

    def _adhoc_job(self, platform: Platform, params: Dict[str, Any]) -> SyncJob:
        if platform == Platform.CUSTOM:
            credentials = dict(params.get("config") or {})
            job_config = params.get("jobConfig") or {}
        else:
            credentials = {
                key: value for key, value in params.items()
                if key not in _REQUEST_KEYS and key != "config"
            }
            job_config = params.get("jobConfig") or params.get("config") or {}

        store_id = (
            params.get("storeId") or params.get("platformId") or params.get("accountId")
            or params.get("shopDomain") or params.get("storeUrl")
        )
        if not store_id:
            raise ConfigurationError(f"{platform.value} sync needs a storeId")

        sync_types = params.get("syncTypes") or self._default_sync_types(platform, credentials)
        if not sync_types:
            raise ConfigurationError(f"{platform.value} sync needs at least one sync type")

        job = SyncJob(
            id=new_id("job"),
            platform=platform,
            store_id=str(store_id),
            credentials=credentials,
            sync_types=list(sync_types),
            config=SyncJobConfig.from_dict(job_config),
        )
        job.last_sync_timestamp = parse_datetime(params.get("lastSyncAt"))
        return job

    def _default_sync_types(self, platform: Platform, credentials: Dict[str, Any]) -> List[str]:
        if platform == Platform.CUSTOM:
            return list((credentials.get("endpoints") or {}).keys())
        return list(self.scheduler.connector_for(platform).RESOURCES)

    async def sync_shopify_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.sync_platform_data(Platform.SHOPIFY, params)

    async def sync_woocommerce_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.sync_platform_data(Platform.WOOCOMMERCE, params)

    async def sync_stripe_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.sync_platform_data(Platform.STRIPE, params)

    async def sync_custom_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self.sync_platform_data(Platform.CUSTOM, params)

    # ==================== STRATEGIES ====================

    async def full_sync(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Every record of the requested types, watermark ignored"""
        return await self._run_strategy(params, SyncStrategy.FULL)

    async def incremental_sync(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Records changed since lastSyncAt, or since the job's watermark"""
        return await self._run_strategy(params, SyncStrategy.INCREMENTAL)

    async def batch_sync(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Fixed-size batches with bounded parallelism"""
        return await self._run_strategy(params, SyncStrategy.BATCH)

    async def _run_strategy(self, params: Dict[str, Any], strategy: SyncStrategy) -> Dict[str, Any]:
        """
        Run a strategy for an existing job, or for a derived one-shot job

        A plain {jobId} request runs the job itself. Anything that narrows the
        data types or changes tuning runs a one-shot copy instead, so the
        job's own config and watermark stay untouched.
        """
        request = parse_request(StrategySyncRequest, params)
        template = await self._find_template(request)
        overrides = request.config_overrides()

        if template is not None and request.job_id and not request.sync_types \
                and not overrides and request.last_sync_at is None:
            result = await self.scheduler.trigger(template.id, strategy)
            return result.to_dict()

        job = self._derive_job(template, request, overrides)
        await self.scheduler.schedule(job)
        result = await self.scheduler.trigger(job.id, strategy)
        return result.to_dict()

    async def _find_template(self, request: StrategySyncRequest) -> Optional[SyncJob]:
        if request.job_id:
            return await self._get_job(request.job_id)
        if not request.store_id:
            raise ConfigurationError("Either jobId or storeId is required")

        wanted = set(request.sync_types)
        candidates = [
            job for job in await self.run_store.list_jobs(store_id=request.store_id)
            if job.status != JobStatus.CANCELLED
            and (request.platform is None or job.platform == Platform.parse(request.platform))
            and wanted <= set(job.sync_types)
        ]
        candidates.sort(key=lambda job: job.created_at)
        return candidates[0] if candidates else None

    @staticmethod
    def _derive_job(template: Optional[SyncJob], request: StrategySyncRequest,
                    overrides: Dict[str, Any]) -> SyncJob:
        platform = request.platform or (template.platform if template else None)
        if platform is None:
            raise ConfigurationError(
                f"Store {request.store_id} has no sync job; platform and credentials are required"
            )

        sync_types = request.sync_types or (list(template.sync_types) if template else [])
        config = template.config.to_dict() if template else {}
        config.update(overrides)

        job = SyncJob(
            id=new_id("job"),
            platform=Platform.parse(platform),
            store_id=request.store_id or template.store_id,
            credentials=dict(request.credentials or (template.credentials if template else {})),
            sync_types=sync_types,
            config=SyncJobConfig.from_dict(config),
        )
        job.last_sync_timestamp = request.last_sync_at or (template.last_sync_timestamp if template else None)
        return job

    # ==================== RECORD OPERATIONS ====================

    def validate_sync_data(self, records: Sequence[Dict[str, Any]], schema: Dict[str, Any]) -> Dict[str, Any]:
        return self.validator.validate(records, schema).to_dict()

    def transform_data(self, records: Sequence[Dict[str, Any]], transform_config: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.transformer.transform(records, transform_config)]

    def resolve_sync_conflict(self, conflicts: Sequence[Dict[str, Any]], strategy: Dict[str, Any]) -> Dict[str, Any]:
        return self.resolver.resolve(conflicts, strategy).to_dict()

    # ==================== ROLLBACK ====================

    async def rollback_sync(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Restore the snapshot of a job's failed or cancelled run

        Args:
            params: {jobId, rollbackToSnapshot?, reason?}. Without a snapshot
                id the job's latest failed or cancelled run is rolled back.

        Returns:
            {success, runId, recordsReverted, recordsDeleted, snapshotRestored,
             rollbackDuration (seconds)}

        Raises:
            JobNotFoundError, SnapshotNotFoundError
            InvalidTransitionError: no run of the job can be rolled back
        """
        request = parse_request(RollbackRequest, params)
        started = time.monotonic()
        job = await self._get_job(request.job_id)

        if request.rollback_to_snapshot:
            snapshot = await self.snapshot_manager.get(request.rollback_to_snapshot)
            run = await self.run_store.get_run(snapshot.run_id)
            if run is None or run.job_id != job.id:
                raise ConfigurationError(
                    f"Snapshot {snapshot.id} does not belong to a run of job {job.id}"
                )
        else:
            runs = await self.run_store.list_runs(job_id=job.id)
            run = next((r for r in runs if r.status in _ROLLBACK_STATUSES), None)
            if run is None:
                raise InvalidTransitionError(f"Job {job.id} has no failed or cancelled run to roll back")

        restore = await self.engine.rollback_run(
            run, reason=request.reason, snapshot_id=request.rollback_to_snapshot
        )
        return {
            "success": restore.success,
            "runId": run.id,
            "recordsReverted": restore.records_reverted,
            "recordsDeleted": restore.records_deleted,
            "snapshotRestored": restore.snapshot_id,
            "rollbackDuration": round(time.monotonic() - started, 3),
        }

    async def prune_snapshot(self, snapshot_id: str) -> bool:
        return await self.snapshot_manager.prune(snapshot_id)

    # ==================== NOTIFICATIONS ====================

    async def notify_sync_completion(
        self,
        run_result: Union[RunResult, Dict[str, Any]],
        notification_config: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Deliver a run notification; False on failure, never raises"""
        return await self.notifier.notify_sync_completion(run_result, notification_config)

    async def _get_job(self, job_id: str) -> SyncJob:
        job = await self.run_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

