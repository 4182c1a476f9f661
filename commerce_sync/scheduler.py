"""
Scheduler for sync jobs

Uses APScheduler to fire recurring jobs from their cron expressions; on-demand
jobs are fired with trigger(). Runs of the same job never overlap: a second
trigger waits on the job's lock and starts once the active run is terminal.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from commerce_sync.config import get_settings
from commerce_sync.connectors import get_connector
from commerce_sync.connectors.base import BaseConnector
from commerce_sync.errors import (
    ConfigurationError,
    InvalidTransitionError,
    JobNotFoundError,
    RunNotFoundError,
    ScheduleConflictError,
)
from commerce_sync.models.records import Platform
from commerce_sync.models.sync import JobStatus, RunStatus, SyncJob, SyncStrategy
from commerce_sync.services.conflict_service import ResolutionStrategy
from commerce_sync.services.notification_service import NotificationService
from commerce_sync.services.sync_engine import RunResult, SyncStrategyEngine
from commerce_sync.storage.base import RunStore
from commerce_sync.utils.cancellation import CancellationToken
from commerce_sync.utils.helpers import safe_divide, utcnow
from commerce_sync.utils.logger import log


def parse_cron(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Build a CronTrigger from a standard 5-field crontab expression

    Raises:
        ConfigurationError: invalid expression or timezone
    """
    try:
        tz = ZoneInfo(timezone or get_settings().sync_timezone)
        return CronTrigger.from_crontab(expression, timezone=tz)
    except (ValueError, KeyError) as e:
        raise ConfigurationError(f"Invalid schedule expression {expression!r}: {e}")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobScheduler:
    """
    Owns job lifecycle: scheduled -> running -> completed / failed / cancelled

    Recurring jobs go back to scheduled after each run; one-shot jobs keep the
    outcome of their run.
    """

    def __init__(
        self,
        engine: SyncStrategyEngine,
        run_store: RunStore,
        connector_factory: Callable[[Platform], BaseConnector] = get_connector,
        notifier: Optional[NotificationService] = None,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.engine = engine
        self.run_store = run_store
        self.connector_factory = connector_factory
        self.notifier = notifier or NotificationService()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=ZoneInfo(get_settings().sync_timezone))
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._connectors: Dict[Platform, BaseConnector] = {}
        self._notification_configs: Dict[str, Dict[str, Any]] = {}

    # ==================== LIFECYCLE ====================

    def start(self):
        """Start firing recurring jobs; needs a running event loop"""
        if not self.scheduler.running:
            self.scheduler.start()
            log.info("Sync scheduler started")

    async def shutdown(self):
        """Stop the scheduler and close connector clients"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler may defer the shutdown to the next loop iteration
            for _ in range(10):
                if not self.scheduler.running:
                    break
                await asyncio.sleep(0)
            log.info("Sync scheduler stopped")

        for connector in self._connectors.values():
            await connector.aclose()
        self._connectors.clear()

    # ==================== JOBS ====================

    async def schedule(self, job: SyncJob, notification_config: Optional[Dict[str, Any]] = None) -> SyncJob:
        """
        Register a job and, when it has a cron expression, its recurrence

        Raises:
            ConfigurationError: bad cron expression, platform, sync type or job config
            ScheduleConflictError: exclusive job overlapping an active job of
                the same store and sync type
        """
        trigger = parse_cron(job.schedule) if job.schedule else None
        self._check_config(job)

        if job.exclusive:
            for other in await self.run_store.list_jobs(store_id=job.store_id):
                if other.id == job.id or other.status == JobStatus.CANCELLED:
                    continue
                overlap = set(other.sync_types) & set(job.sync_types)
                if overlap:
                    raise ScheduleConflictError(
                        f"Job {other.id} already syncs {', '.join(sorted(overlap))} "
                        f"for store {job.store_id}"
                    )

        job.status = JobStatus.SCHEDULED
        await self.run_store.save_job(job)
        self._tokens[job.id] = CancellationToken()
        if notification_config is not None:
            self._notification_configs[job.id] = notification_config

        if trigger is not None:
            self.scheduler.add_job(
                self._fire,
                trigger=trigger,
                args=[job.id],
                id=job.id,
                name=f"{job.platform.value} sync for {job.store_id}",
                replace_existing=True,
                # Overlapping fires queue on the job lock instead of being dropped
                max_instances=10,
                coalesce=True,
            )

        log.info(
            f"Scheduled job {job.id}: {job.platform.value} store {job.store_id}, "
            f"sync_types={job.sync_types}, schedule={job.schedule or 'on demand'}"
        )
        return job

    def _check_config(self, job: SyncJob) -> None:
        """Fail at schedule time rather than inside the first run"""
        if not job.sync_types:
            raise ConfigurationError("A sync job needs at least one sync type")
        connector = self.connector_for(job.platform)
        if connector.RESOURCES:
            for sync_type in job.sync_types:
                connector.resource_for(sync_type)

        ResolutionStrategy.from_dict(job.config.conflict_strategy)
        for sync_type in job.sync_types:
            self.engine._build_pipeline(job, sync_type)

    async def trigger(self, job_id: str, strategy: Optional[SyncStrategy] = None) -> RunResult:
        """
        Run a job now

        Waits for an active run of the same job to finish first.

        Raises:
            JobNotFoundError: unknown job
            InvalidTransitionError: job was cancelled
        """
        job = await self._get_job(job_id)
        if job.status == JobStatus.CANCELLED:
            raise InvalidTransitionError(f"Job {job_id} is cancelled")

        run = self.engine.new_run(job, strategy)
        await self.run_store.save_run(run)

        token = self._tokens.setdefault(job_id, CancellationToken())
        lock = self._locks.setdefault(job_id, asyncio.Lock())

        if lock.locked():
            log.info(f"Run {run.id} queued behind the active run of job {job_id}")

        async with lock:
            # Reload: the previous run moved the watermark
            job = await self._get_job(job_id)

            if token.cancelled or job.status == JobStatus.CANCELLED:
                run.transition(RunStatus.CANCELLED)
                run.warnings.append("Job cancelled before the run started")
                await self.run_store.save_run(run)
                return RunResult.from_run(run)

            job.status = JobStatus.RUNNING
            await self.run_store.save_job(job)

            result = await self.engine.execute(
                job,
                self.connector_for(job.platform),
                strategy=run.strategy,
                token=token,
                run=run,
            )

            if token.cancelled:
                job.status = JobStatus.CANCELLED
                job.cancelled_at = job.cancelled_at or utcnow()
            elif job.is_recurring:
                job.status = JobStatus.SCHEDULED
            elif result.status == RunStatus.COMPLETED:
                job.status = JobStatus.COMPLETED
            else:
                job.status = JobStatus.FAILED
            await self.run_store.save_job(job)

        await self.notifier.notify_sync_completion(result, self._notification_configs.get(job_id))
        return result

    async def _fire(self, job_id: str):
        """APScheduler entry point"""
        try:
            await self.trigger(job_id)
        except Exception as e:
            log.error(f"Scheduled run of job {job_id} failed to start: {type(e).__name__}: {e}")

    async def cancel(self, job_id: str, reason: str = "cancelled by operator") -> bool:
        """
        Cancel a job

        Cooperative: an active run stops at the next batch boundary and keeps
        what it already wrote; queued runs never start.

        Returns:
            True if the job was cancelled, False if unknown or already cancelled
        """
        job = await self.run_store.get_job(job_id)
        if job is None or job.status == JobStatus.CANCELLED:
            return False

        self._tokens.setdefault(job_id, CancellationToken()).cancel(reason)
        job.status = JobStatus.CANCELLED
        job.cancelled_at = utcnow()
        await self.run_store.save_job(job)

        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)

        log.info(f"Cancelled job {job_id}: {reason}")
        return True

    # ==================== QUERIES ====================

    async def status(self, run_id: str) -> Dict[str, Any]:
        """
        Progress of one run

        Returns:
            {jobId, runId, status, progress: {totalRecords, processedRecords,
            percentage}, startedAt, estimatedCompletion, completedAt}
        """
        run = await self.run_store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")

        total = run.total_records
        processed = run.records_processed
        if run.status == RunStatus.COMPLETED:
            percentage = 100.0
        elif total:
            percentage = round(min(100.0, processed / total * 100), 1)
        else:
            percentage = 0.0

        return {
            "jobId": run.job_id,
            "runId": run.id,
            "status": run.status.value,
            "progress": {
                "totalRecords": total,
                "processedRecords": processed,
                "percentage": percentage,
            },
            "startedAt": _isoformat(run.started_at),
            "estimatedCompletion": _isoformat(self._estimate_completion(run)),
            "completedAt": _isoformat(run.completed_at),
            "errors": len(run.errors),
        }

    @staticmethod
    def _estimate_completion(run) -> Optional[datetime]:
        """Extrapolate from the throughput observed so far"""
        if run.is_terminal:
            return run.completed_at
        if run.status != RunStatus.RUNNING or not run.started_at or not run.total_records:
            return None
        if run.records_processed <= 0:
            return None

        now = utcnow()
        elapsed = (now - run.started_at).total_seconds()
        rate = run.records_processed / max(elapsed, 1e-6)
        remaining = max(run.total_records - run.records_processed, 0)
        return now + timedelta(seconds=remaining / rate)

    async def history(
        self,
        store_id: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Run history, newest first

        successRate is completed / terminal runs over the whole filtered
        window, not just the returned page.
        """
        runs = await self.run_store.list_runs(job_id=job_id, store_id=store_id, start=start, end=end)
        terminal = [run for run in runs if run.is_terminal]
        completed = sum(1 for run in terminal if run.status == RunStatus.COMPLETED)

        page = runs[offset:offset + limit] if limit else runs[offset:]
        return {
            "runs": [run.to_dict() for run in page],
            "totalRuns": len(runs),
            "successRate": round(safe_divide(completed, len(terminal)), 4),
            "limit": limit,
            "offset": offset,
        }

    async def list_jobs(self, store_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Jobs with their next fire time"""
        jobs = []
        for job in await self.run_store.list_jobs(store_id=store_id):
            data = job.to_dict()
            next_run = self.next_run_time(job.id)
            data["nextRunTime"] = next_run.isoformat() if next_run else None
            jobs.append(data)
        return jobs

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        scheduled = self.scheduler.get_job(job_id)
        if scheduled is None:
            return None
        next_run = getattr(scheduled, "next_run_time", None)
        if next_run is None and not self.scheduler.running:
            # Not computed until the scheduler starts
            return scheduled.trigger.get_next_fire_time(None, utcnow())
        return next_run

    # ==================== HELPERS ====================

    async def _get_job(self, job_id: str) -> SyncJob:
        job = await self.run_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def connector_for(self, platform: Platform) -> BaseConnector:
        platform = Platform.parse(platform)
        if platform not in self._connectors:
            self._connectors[platform] = self.connector_factory(platform)
        return self._connectors[platform]
