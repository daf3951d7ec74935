"""
Periodic engine ticks on an APScheduler AsyncIOScheduler.

Three interval jobs:
- due sync check (SYNC_SCHEDULER_INTERVAL, default 5 minutes)
- expired OAuth state purge (every minute)
- threshold health checks (every 15 minutes)

Each tick is also a plain coroutine method so tests can drive it with an
explicit ``now`` instead of waiting on the scheduler.
"""
from __future__ import annotations

import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import SyncSettings
from core.integrations.manager import IntegrationManager
from core.integrations.observability import ObservabilityService
from core.integrations.records import SyncJob
from core.integrations.sync_worker import SyncWorker

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        worker: SyncWorker,
        manager: IntegrationManager,
        observability: ObservabilityService,
        settings: SyncSettings | None = None,
    ):
        self.worker = worker
        self.manager = manager
        self.observability = observability
        self.settings = settings or SyncSettings()
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # --- Ticks ---

    async def tick_due_syncs(self, now: datetime | None = None) -> list[SyncJob]:
        return await self.worker.schedule_due_syncs(now)

    async def tick_purge_oauth_states(self) -> int:
        return await self.manager.purge_oauth_states()

    async def tick_health_checks(self) -> int:
        reports = await self.observability.run_health_checks()
        return sum(1 for report in reports if not report.healthy)

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the scheduler on the running event loop."""
        if self.running:
            return
        scheduler = AsyncIOScheduler()
        jobs = (
            (self.tick_due_syncs, self.settings.scheduler_interval_seconds, "connector_due_syncs", "Due sync check"),
            (self.tick_purge_oauth_states, self.settings.oauth_purge_interval_seconds, "oauth_state_purge", "OAuth state purge"),
            (self.tick_health_checks, self.settings.health_check_interval_seconds, "integration_health", "Integration health checks"),
        )
        for func, seconds, job_id, name in jobs:
            scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=name,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"[scheduler] Started (sync check every {self.settings.scheduler_interval_seconds}s)"
        )

    async def shutdown(self) -> None:
        """Stop ticking and wait for running sync jobs."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("[scheduler] Shut down")
        self._scheduler = None
        await self.worker.drain()
