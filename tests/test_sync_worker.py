"""Test sync jobs: paging, cursor resumption, cancellation and scheduling."""
import asyncio
import gc
from datetime import timedelta

import httpx
import pytest

from core.integrations.errors import (
    InvalidTransition,
    NotConnected,
    SyncInProgress,
    SyncUnsupported,
)
from core.integrations.handoff import ItemOutcome, QueueEventSink, SinkItemProcessor, SyncItemProcessor
from core.integrations.records import Integration, utcnow
from core.integrations.states import IntegrationStatus, SyncDirection, SyncStatus, SyncType

ISSUES = "https://api.github.com/issues"
GITHUB_USER = "https://api.github.com/user"
LAST_PAGE = 3


class IssuePages:
    """Three pages of two issues each, linked by rel="next"."""

    def __init__(self):
        self.fail_pages = set()
        self.pages_served = []

    def __call__(self, request):
        page = int(request.url.params.get("page", "1"))
        self.pages_served.append(page)
        if page in self.fail_pages:
            return httpx.Response(500, text="upstream error")
        issues = [{"id": page * 10 + n, "number": page * 10 + n, "title": f"Issue {page}.{n}"} for n in (1, 2)]
        headers = {}
        if page < LAST_PAGE:
            headers["Link"] = f'<{ISSUES}?page={page + 1}>; rel="next"'
        return httpx.Response(200, json=issues, headers=headers)


class BlockingProcessor(SyncItemProcessor):
    """Holds the first item until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.items = []

    async def process(self, integration, item):
        if not self.items:
            self.started.set()
            await self.release.wait()
        self.items.append(item)
        return ItemOutcome.CREATED


class FailingProcessor(SyncItemProcessor):
    async def process(self, integration, item):
        if item["id"] % 2 == 0:
            raise ValueError("rejected by consumer")
        return ItemOutcome.CREATED


async def connect_github(services, provider, **config):
    provider.add("GET", GITHUB_USER, {"status_code": 200, "json": {"login": "octocat"}})
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "gho"}, config or None)
    assert integration.status == IntegrationStatus.CONNECTED
    return integration


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sync_runs_all_pages(services, provider):
    pages = IssuePages()
    provider.add("GET", ISSUES, pages)
    integration = await connect_github(services, provider)

    job = await services.sync_worker.create_sync_job(integration.id, "t1", triggered_by="u1")
    assert job.status == SyncStatus.PENDING
    await services.sync_worker.drain()

    job = await services.store.get_sync_job(job.id)
    assert job.status == SyncStatus.COMPLETED
    assert (job.items_processed, job.items_created, job.items_failed) == (6, 6, 0)
    assert job.cursor is None
    assert pages.pages_served == [1, 2, 3]

    synced = services.sink.drain_nowait()
    assert len(synced) == 6
    assert synced[0].type == "github.item.synced"

    current = await services.manager.get_integration(integration.id, "t1")
    assert current.last_sync_at == job.completed_at
    assert current.sync_cursor is None


@pytest.mark.asyncio
async def test_failed_page_resumes_from_last_cursor(services, provider):
    pages = IssuePages()
    pages.fail_pages.add(2)
    provider.add("GET", ISSUES, pages)
    integration = await connect_github(services, provider)
    worker = services.sync_worker

    failed = await worker.create_sync_job(integration.id, "t1")
    await worker.drain()
    failed = await services.store.get_sync_job(failed.id)
    assert failed.status == SyncStatus.FAILED
    assert failed.cursor == "2"
    assert failed.items_processed == 2
    assert "HTTP 500" in failed.error_message

    current = await services.manager.get_integration(integration.id, "t1")
    assert current.status == IntegrationStatus.ERROR
    assert current.sync_cursor == "2"

    pages.fail_pages.clear()
    result = await services.manager.test_integration_connection(integration.id, "t1")
    assert result["ok"]

    retried = await worker.retry_sync_job(failed.id, "t1", "u1")
    assert retried.cursor == "2"
    await worker.drain()
    retried = await services.store.get_sync_job(retried.id)
    assert retried.status == SyncStatus.COMPLETED
    assert retried.items_processed == 4
    assert pages.pages_served == [1, 2, 2, 3]


@pytest.mark.asyncio
async def test_incremental_job_starts_from_integration_cursor(services, provider):
    pages = IssuePages()
    provider.add("GET", ISSUES, pages)
    integration = await connect_github(services, provider)
    await services.store.update_integration(integration.id, sync_cursor="3")

    incremental = await services.sync_worker.create_sync_job(integration.id, "t1", run=False)
    assert incremental.cursor == "3"
    await services.sync_worker.cancel_sync_job(incremental.id, "t1")

    full = await services.sync_worker.create_sync_job(integration.id, "t1", sync_type=SyncType.FULL, run=False)
    assert full.cursor is None


@pytest.mark.asyncio
async def test_item_failures_do_not_fail_the_job(build_services, provider):
    services = build_services(processor=FailingProcessor())
    pages = IssuePages()
    provider.add("GET", ISSUES, pages)
    integration = await connect_github(services, provider)

    job = await services.sync_worker.create_sync_job(integration.id, "t1")
    await services.sync_worker.drain()
    job = await services.store.get_sync_job(job.id)
    assert job.status == SyncStatus.COMPLETED
    assert job.items_processed == 6
    assert job.items_failed == 3
    assert job.items_created == 3


@pytest.mark.asyncio
async def test_bidirectional_logs_outbound_half(services, provider):
    provider.add("GET", ISSUES, IssuePages())
    integration = await connect_github(services, provider)
    job = await services.sync_worker.create_sync_job(integration.id, "t1", direction=SyncDirection.BIDIRECTIONAL)
    await services.sync_worker.drain()

    job = await services.store.get_sync_job(job.id)
    assert job.status == SyncStatus.COMPLETED
    messages = [entry.message for entry in await services.observability.list_logs(integration.id, "t1")]
    assert "No queued outbound changes" in messages


# ---------------------------------------------------------------------------
# Preconditions and overlap
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_one_active_job_per_integration(services, provider):
    integration = await connect_github(services, provider)
    worker = services.sync_worker

    results = await asyncio.gather(
        worker.create_sync_job(integration.id, "t1", run=False),
        worker.create_sync_job(integration.id, "t1", run=False),
        return_exceptions=True,
    )
    assert sum(isinstance(r, SyncInProgress) for r in results) == 1
    with pytest.raises(SyncInProgress):
        await worker.create_sync_job(integration.id, "t1", run=False)


@pytest.mark.asyncio
async def test_sync_unsupported_connector(services):
    integration = await services.manager.connect_integration("t1", "stripe", "u1", {"secret_key": "sk"}, {"test_mode": True})
    with pytest.raises(SyncUnsupported):
        await services.sync_worker.create_sync_job(integration.id, "t1")


@pytest.mark.asyncio
async def test_sync_requires_connected(services, provider):
    integration = await connect_github(services, provider)
    await services.manager.mark_error(integration, "broken")
    with pytest.raises(NotConnected):
        await services.sync_worker.create_sync_job(integration.id, "t1")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_pending_job(services, provider, audit_sink):
    integration = await connect_github(services, provider)
    worker = services.sync_worker
    job = await worker.create_sync_job(integration.id, "t1", run=False)

    cancelled = await worker.cancel_sync_job(job.id, "t1", "u1")
    assert cancelled.status == SyncStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert "sync.cancel" in audit_sink.actions()

    assert (await worker.run_job(job.id)).status == SyncStatus.CANCELLED
    again = await worker.cancel_sync_job(job.id, "t1", "u1")
    assert again.status == SyncStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_running_job_at_item_boundary(build_services, provider):
    processor = BlockingProcessor()
    services = build_services(processor=processor)
    provider.add("GET", ISSUES, IssuePages())
    integration = await connect_github(services, provider)
    worker = services.sync_worker

    job = await worker.create_sync_job(integration.id, "t1")
    await asyncio.wait_for(processor.started.wait(), timeout=5)

    requested = await worker.cancel_sync_job(job.id, "t1", "u1")
    assert requested.status == SyncStatus.RUNNING
    assert requested.cancel_requested

    processor.release.set()
    await worker.drain()

    job = await services.store.get_sync_job(job.id)
    assert job.status == SyncStatus.CANCELLED
    assert job.items_processed == 1
    assert job.cursor is None
    current = await services.manager.get_integration(integration.id, "t1")
    assert current.sync_cursor is None
    assert current.status == IntegrationStatus.CONNECTED


@pytest.mark.asyncio
async def test_retry_only_failed_or_cancelled(services, provider):
    provider.add("GET", ISSUES, IssuePages())
    integration = await connect_github(services, provider)
    job = await services.sync_worker.create_sync_job(integration.id, "t1")
    await services.sync_worker.drain()
    with pytest.raises(InvalidTransition):
        await services.sync_worker.retry_sync_job(job.id, "t1")


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_schedule_due_syncs(services, provider):
    provider.add("GET", ISSUES, IssuePages())
    integration = await connect_github(services, provider)
    await services.manager.connect_integration(
        "t1", "stripe", "u1", {"secret_key": "sk"}, {"test_mode": True, "sync_settings": {"enabled": True}}
    )
    scheduler = services.scheduler

    created = await scheduler.tick_due_syncs()
    assert [job.integration_id for job in created] == [integration.id]
    assert created[0].triggered_by == "scheduler"
    await services.sync_worker.drain()

    now = utcnow()
    assert await scheduler.tick_due_syncs(now + timedelta(minutes=10)) == []
    later = await scheduler.tick_due_syncs(now + timedelta(hours=2))
    assert len(later) == 1
    await services.sync_worker.drain()


@pytest.mark.asyncio
async def test_schedule_respects_frequency_and_enabled(services, provider):
    provider.add("GET", ISSUES, IssuePages())
    integration = await connect_github(services, provider, sync_settings={"frequency": "15m"})
    await services.store.update_integration(integration.id, last_sync_at=utcnow())

    assert await services.sync_worker.schedule_due_syncs(utcnow() + timedelta(minutes=5)) == []
    assert len(await services.sync_worker.schedule_due_syncs(utcnow() + timedelta(minutes=20))) == 1
    await services.sync_worker.drain()

    await services.manager.connect_integration(
        "t1", "github", "u1", {"access_token": "gho"}, {"sync_settings": {"enabled": False}}
    )
    assert await services.sync_worker.schedule_due_syncs(utcnow() + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_scheduler_lifecycle(services):
    scheduler = services.scheduler
    assert not scheduler.running
    scheduler.start()
    assert scheduler.running
    await scheduler.shutdown()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_scheduler_purges_and_checks_health(services, provider):
    await connect_github(services, provider)
    assert await services.scheduler.tick_purge_oauth_states() == 0
    unhealthy = await services.scheduler.tick_health_checks()
    assert unhealthy == 1  # sync enabled but never run


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_integration_locks_are_dropped_after_use(services, provider):
    provider.add("GET", ISSUES, IssuePages())
    integration = await connect_github(services, provider)

    await services.sync_worker.create_sync_job(integration.id, "t1")
    await services.sync_worker.drain()
    gc.collect()
    assert len(services.sync_worker._locks) == 0


@pytest.mark.asyncio
async def test_sink_processor_remembers_only_recent_ids():
    processor = SinkItemProcessor(QueueEventSink(), max_seen=2)
    integration = Integration(tenant_id="t1", connector_id="github")

    outcomes = [await processor.process(integration, {"id": item_id}) for item_id in (1, 2, 1, 3, 2, 3)]
    assert outcomes == [
        ItemOutcome.CREATED,
        ItemOutcome.CREATED,
        ItemOutcome.UPDATED,
        ItemOutcome.CREATED,
        ItemOutcome.CREATED,
        ItemOutcome.UPDATED,
    ]
    assert len(processor._seen) == 2
