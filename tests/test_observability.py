"""Test integration logs, metrics, health checks and alerts."""
import json

import pytest

from core.integrations.errors import AlertNotFound, IntegrationNotFound
from core.integrations.observability import API_CALL, RATE_LIMITED
from core.integrations.states import AlertSeverity, IntegrationStatus, LogLevel
from core.integrations.store import InMemoryConnectorStore


async def connect_stripe(services, tenant_id="t1"):
    return await services.manager.connect_integration(
        tenant_id, "stripe", "u1", {"secret_key": "sk"}, {"test_mode": True}
    )


def stripe_body(event_id):
    return json.dumps({"id": event_id, "type": "charge.succeeded", "data": {"object": {"id": "ch_1"}}}).encode()


class BrokenLogStore(InMemoryConnectorStore):
    async def append_log(self, log):
        raise RuntimeError("log table unavailable")


# ---------------------------------------------------------------------------
# Logs and metrics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_log_event_and_list(services):
    integration = await connect_stripe(services)
    entry = await services.observability.log_event(
        integration, LogLevel.WARN, "Something odd", operation="custom", details={"k": "v"}
    )
    assert entry.integration_id == integration.id
    assert entry.tenant_id == "t1"

    logs = await services.observability.list_logs(integration.id, "t1")
    assert "Something odd" in [log.message for log in logs]
    assert "Integration connected" in [log.message for log in logs]
    assert len(await services.observability.list_logs(integration.id, "t1", limit=1)) == 1

    with pytest.raises(IntegrationNotFound):
        await services.observability.list_logs(integration.id, "t2")


@pytest.mark.asyncio
async def test_log_write_failure_is_swallowed(build_services):
    services = build_services(store=BrokenLogStore())
    integration = await connect_stripe(services)
    assert await services.observability.log_event(integration, LogLevel.INFO, "dropped") is None


@pytest.mark.asyncio
async def test_metrics_counts(services):
    integration = await connect_stripe(services)
    for event_id in ("evt_1", "evt_2", "evt_2"):
        await services.ingestion.receive("stripe", integration.webhook_token, {}, stripe_body(event_id))

    observability = services.observability
    await observability.log_event(integration, LogLevel.DEBUG, "sync_inbound", operation=API_CALL)
    await observability.log_event(integration, LogLevel.WARN, "Rate limited", operation=RATE_LIMITED)
    await services.manager.mark_error(integration, "provider down")

    metrics = await observability.get_metrics(integration.id, "t1")
    assert metrics["events_today"] == 2
    assert metrics["events_this_month"] == 2
    assert metrics["failed_events_this_week"] == 0
    assert metrics["api_calls_today"] == 1
    assert metrics["rate_limit_hits"] == 1
    assert metrics["errors_today"] == 1
    assert metrics["status"] == "error"
    assert metrics["last_error"] == "provider down"
    assert metrics["last_event_at"] is not None
    assert metrics["last_sync_status"] is None


# ---------------------------------------------------------------------------
# Health and alerts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_healthy_integration(services):
    integration = await connect_stripe(services)
    report = await services.observability.check_health(integration.id, "t1")
    assert report.healthy
    assert report.to_dict()["issues"] == []
    assert await services.observability.list_alerts("t1") == []


@pytest.mark.asyncio
async def test_error_status_raises_deduplicated_alerts(services):
    integration = await connect_stripe(services)
    await services.manager.mark_error(integration, "provider down")
    observability = services.observability

    report = await observability.check_health(integration.id, "t1")
    assert not report.healthy
    assert {issue.kind for issue in report.issues} == {"status", "recent_error"}
    assert "Recent error: provider down" in report.to_dict()["issues"]

    again = await observability.check_health(integration.id, "t1")
    alerts = await observability.list_alerts("t1", integration.id)
    assert len(alerts) == 2
    assert {alert.occurrences for alert in alerts} == {2}
    assert {a.id for a in report.alerts} == {a.id for a in again.alerts}


@pytest.mark.asyncio
async def test_auth_failed_is_critical(services):
    integration = await connect_stripe(services)
    await services.manager.mark_error(integration, "token revoked", status=IntegrationStatus.AUTH_FAILED)
    report = await services.observability.check_health(integration.id, "t1")
    status_issue = next(issue for issue in report.issues if issue.kind == "status")
    assert status_issue.severity == AlertSeverity.CRITICAL


@pytest.mark.asyncio
async def test_acknowledge_alert(services, audit_sink):
    integration = await connect_stripe(services)
    await services.manager.mark_error(integration, "provider down")
    observability = services.observability
    report = await observability.check_health(integration.id, "t1")
    alert = report.alerts[0]

    acked = await observability.acknowledge_alert(alert.id, "t1", "u1")
    assert acked.acknowledged
    assert acked.acknowledged_by == "u1"
    assert (await observability.acknowledge_alert(alert.id, "t1", "u2")).acknowledged_by == "u1"
    assert audit_sink.actions().count("alert.acknowledge") == 1
    record = audit_sink.records[-1]
    assert (record.resource_type, record.resource_id, record.user_id) == ("alert", alert.id, "u1")

    with pytest.raises(AlertNotFound):
        await observability.acknowledge_alert(alert.id, "t2")

    assert alert.id not in [a.id for a in await observability.list_alerts("t1")]
    assert alert.id in [a.id for a in await observability.list_alerts("t1", include_acknowledged=True)]

    # The same condition after acknowledgement opens a fresh alert.
    await observability.check_health(integration.id, "t1")
    fresh = [a for a in await observability.list_alerts("t1") if a.kind == alert.kind]
    assert len(fresh) == 1
    assert fresh[0].id != alert.id
    assert fresh[0].occurrences == 1


@pytest.mark.asyncio
async def test_stale_sync_when_never_run(services, provider):
    provider.add("GET", "https://api.github.com/user", {"status_code": 200, "json": {"login": "octocat"}})
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "gho"})
    report = await services.observability.check_health(integration.id, "t1")
    assert [issue.message for issue in report.issues] == ["No syncs performed yet"]
    assert report.issues[0].severity == AlertSeverity.INFO


@pytest.mark.asyncio
async def test_run_health_checks_covers_every_tenant(services):
    healthy = await connect_stripe(services, "t1")
    broken = await connect_stripe(services, "t2")
    await services.manager.mark_error(broken, "provider down")

    reports = await services.observability.run_health_checks()
    by_id = {report.integration_id: report for report in reports}
    assert by_id[healthy.id].healthy
    assert not by_id[broken.id].healthy

    assert len(await services.observability.run_health_checks("t1")) == 1
    assert await services.observability.list_alerts("t1") == []
    assert len(await services.observability.list_alerts("t2")) == 2
