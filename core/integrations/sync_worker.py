"""
Sync worker.

Runs inbound (and the outbound half of bidirectional) sync jobs for an
integration. Jobs execute as asyncio tasks off the request path:

    pending -> running -> completed | failed | cancelled

- The adapter's `sync_inbound` is paged by an opaque cursor. The cursor is
  persisted on the job and on the integration after every page, so a
  retried or later incremental job resumes from the last confirmed page.
- Items are applied one at a time through a SyncItemProcessor; one item's
  failure is counted and the batch continues.
- A batch-level failure marks the job failed and downgrades the
  integration. The last good cursor is kept.
- At most one non-terminal job exists per integration.
- Cancelling a running job is cooperative: it takes effect at the next
  item boundary, and the cursor of the interrupted page is not advanced.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Callable
from datetime import datetime

from core.config import SyncSettings, parse_frequency
from core.integrations.errors import (
    ConnectorError,
    InvalidTransition,
    NotConnected,
    SyncInProgress,
    SyncJobNotFound,
    SyncUnsupported,
)
from core.integrations.handoff import ItemOutcome, SyncItemProcessor
from core.integrations.manager import IntegrationManager
from core.integrations.observability import ObservabilityService
from core.integrations.records import Integration, SyncJob, utcnow
from core.integrations.states import (
    IntegrationStatus,
    LogLevel,
    SyncDirection,
    SyncStatus,
    SyncType,
    ensure_transition,
    is_terminal,
)
from core.integrations.store import ConnectorStore

logger = logging.getLogger(__name__)

_INBOUND = (SyncDirection.INBOUND, SyncDirection.BIDIRECTIONAL)
_OUTBOUND = (SyncDirection.OUTBOUND, SyncDirection.BIDIRECTIONAL)


class SyncCancelled(Exception):
    """Raised inside a running job when cancellation was requested."""


class SyncWorker:
    def __init__(
        self,
        manager: IntegrationManager,
        store: ConnectorStore,
        observability: ObservabilityService,
        processor: SyncItemProcessor,
        settings: SyncSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.store = store
        self.observability = observability
        self.processor = processor
        self.settings = settings or SyncSettings()
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}
        # Entries vanish once no coroutine holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._cancelled: set[str] = set()

    def _lock(self, integration_id: str) -> asyncio.Lock:
        lock = self._locks.get(integration_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[integration_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    async def create_sync_job(
        self,
        integration_id: str,
        tenant_id: str,
        direction: SyncDirection = SyncDirection.INBOUND,
        sync_type: SyncType = SyncType.INCREMENTAL,
        cursor: str | None = None,
        triggered_by: str | None = None,
        run: bool = True,
    ) -> SyncJob:
        """Create a pending job and, unless *run* is False, start it in the background."""
        integration = await self.manager.get_integration(integration_id, tenant_id)
        if integration.status != IntegrationStatus.CONNECTED:
            raise NotConnected(f"Integration {integration_id} is {integration.status.value}")
        if direction in _INBOUND:
            adapter = self.manager.get_adapter(integration.connector_id)
            if adapter is None or not adapter.supports_inbound_sync:
                raise SyncUnsupported(f"{integration.connector_id} does not support inbound sync")

        async with self._lock(integration.id):
            active = await self.store.get_active_sync_job(integration.id)
            if active is not None:
                raise SyncInProgress(f"Sync job {active.id} is still {active.status.value}")
            if cursor is None and sync_type == SyncType.INCREMENTAL:
                cursor = integration.sync_cursor
            job = await self.store.create_sync_job(
                SyncJob(
                    tenant_id=integration.tenant_id,
                    integration_id=integration.id,
                    connector_id=integration.connector_id,
                    direction=direction,
                    sync_type=sync_type,
                    cursor=cursor,
                    triggered_by=triggered_by,
                    created_at=self._clock(),
                )
            )

        await self.manager.audit.record(
            tenant_id, "sync.trigger", integration.id, triggered_by,
            {"job_id": job.id, "direction": direction.value, "sync_type": sync_type.value},
        )
        logger.info(f"[sync] Created {sync_type.value} job {job.id} for integration {integration.id}")
        if run:
            self._start(job.id)
        return job

    def _start(self, job_id: str) -> None:
        task = asyncio.create_task(self.run_job(job_id))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    async def drain(self) -> None:
        """Wait for every running job task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> SyncJob:
        job = await self.store.get_sync_job(job_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")

        async with self._lock(job.integration_id):
            job = await self.store.get_sync_job(job_id)
            if job.status != SyncStatus.PENDING:
                return job
            ensure_transition(job.status, SyncStatus.RUNNING)
            job = await self.store.update_sync_job(job.id, status=SyncStatus.RUNNING, started_at=self._clock())

        integration = await self.store.get_integration(job.integration_id)
        if integration is None:
            return await self._finish(job, SyncStatus.FAILED, error="Integration no longer exists")

        await self.observability.log_event(
            integration, LogLevel.INFO, f"Sync job {job.id} started", operation="sync",
            details={"job_id": job.id, "cursor": job.cursor},
        )
        try:
            if job.direction in _INBOUND:
                job = await self._run_inbound(job, integration)
            if job.direction in _OUTBOUND:
                await self.observability.log_event(
                    integration, LogLevel.INFO, "No queued outbound changes", operation="sync",
                    details={"job_id": job.id},
                )
        except SyncCancelled:
            job = await self._finish(job, SyncStatus.CANCELLED)
            await self.observability.log_event(
                integration, LogLevel.INFO, f"Sync job {job.id} cancelled", operation="sync",
                details={"job_id": job.id, "items_processed": job.items_processed},
            )
            return job
        except ConnectorError as exc:
            return await self._fail(job, integration, exc)
        except Exception as exc:
            logger.exception(f"[sync] Job {job.id} crashed")
            return await self._fail(job, integration, exc)

        job = await self._finish(job, SyncStatus.COMPLETED)
        await self.store.update_integration(integration.id, last_sync_at=job.completed_at)
        await self.observability.log_event(
            integration, LogLevel.INFO,
            f"Sync job {job.id} completed: {job.items_processed} processed, {job.items_failed} failed",
            operation="sync",
            details={"job_id": job.id},
        )
        return job

    async def _run_inbound(self, job: SyncJob, integration: Integration) -> SyncJob:
        adapter = self.manager.require_adapter(integration.connector_id)
        credentials = await self.manager.load_credentials(integration)
        cursor = job.cursor
        counts = {
            "items_processed": job.items_processed,
            "items_created": job.items_created,
            "items_updated": job.items_updated,
            "items_failed": job.items_failed,
        }

        for _ in range(self.settings.max_pages_per_job):
            await self._check_cancel(job.id, persisted=True)
            page = await self.manager.call_adapter(
                integration, "sync_inbound", adapter.sync_inbound(credentials, cursor)
            )
            for item in page.items:
                if job.id in self._cancelled:
                    await self.store.update_sync_job(job.id, **counts)
                    raise SyncCancelled(job.id)
                try:
                    outcome = await self.processor.process(integration, item)
                except Exception as exc:
                    counts["items_failed"] += 1
                    await self.observability.log_event(
                        integration, LogLevel.WARN, f"Sync item failed: {exc}", operation="sync_item",
                        details={"job_id": job.id, "item_id": item.get("id")},
                    )
                else:
                    key = "items_created" if outcome == ItemOutcome.CREATED else "items_updated"
                    counts[key] += 1
                counts["items_processed"] += 1

            cursor = page.next_cursor
            job = await self.store.update_sync_job(job.id, cursor=cursor, **counts)
            await self.store.update_integration(integration.id, sync_cursor=cursor)
            if not cursor:
                break
        return job

    async def _check_cancel(self, job_id: str, persisted: bool = False) -> None:
        if job_id in self._cancelled:
            raise SyncCancelled(job_id)
        if persisted:
            current = await self.store.get_sync_job(job_id)
            if current is not None and current.cancel_requested:
                raise SyncCancelled(job_id)

    async def _fail(self, job: SyncJob, integration: Integration, exc: Exception) -> SyncJob:
        message = str(exc) or type(exc).__name__
        job = await self._finish(job, SyncStatus.FAILED, error=message)
        current = await self.store.get_integration(integration.id)
        if current is not None and current.status != IntegrationStatus.DISCONNECTED:
            if isinstance(exc, ConnectorError):
                await self.manager.downgrade(current, exc)
            else:
                await self.manager.mark_error(current, f"Sync failed: {message}")
        logger.warning(f"[sync] Job {job.id} failed: {message}")
        return job

    async def _finish(self, job: SyncJob, status: SyncStatus, error: str | None = None) -> SyncJob:
        current = await self.store.get_sync_job(job.id)
        ensure_transition(current.status, status)
        self._cancelled.discard(job.id)
        return await self.store.update_sync_job(
            job.id, status=status, error_message=error, completed_at=self._clock()
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def cancel_sync_job(self, job_id: str, tenant_id: str, user_id: str | None = None) -> SyncJob:
        """Pending jobs cancel immediately; running jobs stop at the next item. Terminal jobs are returned as-is."""
        job = await self._job(job_id, tenant_id)
        async with self._lock(job.integration_id):
            job = await self._job(job_id, tenant_id)
            if is_terminal(job.status):
                return job
            if job.status == SyncStatus.PENDING:
                ensure_transition(job.status, SyncStatus.CANCELLED)
                job = await self.store.update_sync_job(
                    job.id, status=SyncStatus.CANCELLED, cancel_requested=True, completed_at=self._clock()
                )
            else:
                self._cancelled.add(job.id)
                job = await self.store.update_sync_job(job.id, cancel_requested=True)

        await self.manager.audit.record(
            tenant_id, "sync.cancel", job.integration_id, user_id, {"job_id": job.id},
        )
        return job

    async def retry_sync_job(self, job_id: str, tenant_id: str, user_id: str | None = None) -> SyncJob:
        """Start a new job from the cursor a failed or cancelled job last persisted."""
        job = await self._job(job_id, tenant_id)
        if job.status not in (SyncStatus.FAILED, SyncStatus.CANCELLED):
            raise InvalidTransition(f"Only failed or cancelled jobs can be retried (job is {job.status.value})")
        return await self.create_sync_job(
            job.integration_id,
            tenant_id,
            direction=job.direction,
            sync_type=job.sync_type,
            cursor=job.cursor,
            triggered_by=user_id or job.triggered_by,
        )

    async def list_jobs(self, integration_id: str, tenant_id: str, limit: int = 20) -> list[SyncJob]:
        await self.manager.get_integration(integration_id, tenant_id)
        return await self.store.list_sync_jobs(integration_id, tenant_id, limit=limit)

    async def _job(self, job_id: str, tenant_id: str) -> SyncJob:
        job = await self.store.get_sync_job(job_id, tenant_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        return job

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_due_syncs(self, now: datetime | None = None) -> list[SyncJob]:
        """Create a job for every connected, sync-enabled integration whose interval has elapsed."""
        now = now or self._clock()
        created = []
        for integration in await self.store.list_integrations(status=IntegrationStatus.CONNECTED):
            sync_settings = integration.sync_settings
            if not sync_settings.get("enabled"):
                continue
            interval = parse_frequency(sync_settings.get("frequency"), self.settings.default_frequency)
            if integration.last_sync_at is not None and now - integration.last_sync_at < interval:
                continue
            try:
                direction = SyncDirection(sync_settings.get("direction") or SyncDirection.INBOUND.value)
            except ValueError:
                direction = SyncDirection.INBOUND
            try:
                job = await self.create_sync_job(
                    integration.id,
                    integration.tenant_id,
                    direction=direction,
                    triggered_by="scheduler",
                )
            except (SyncInProgress, SyncUnsupported, NotConnected) as exc:
                logger.debug(f"[sync] Skipping {integration.id}: {exc}")
                continue
            except ConnectorError as exc:
                logger.warning(f"[sync] Could not schedule {integration.id}: {exc}")
                continue
            created.append(job)
        if created:
            logger.info(f"[sync] Scheduled {len(created)} due sync jobs")
        return created
