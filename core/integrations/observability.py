"""
Per-integration observability.

- IntegrationLog writes, mirrored into the Python logger
- Rolling-window metrics (today / week / month) over webhook events,
  logs and sync jobs
- Threshold health checks that raise deduplicated Alerts
- Adapter request statistics

This service only reads engine state; the one thing it writes is its own
logs and alerts, and a failure to write them never reaches the caller.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from core.config import AlertSettings
from core.integrations.adapters import AdapterRegistry
from core.integrations.audit import AuditTrail
from core.integrations.errors import AlertNotFound, IntegrationNotFound
from core.integrations.records import Alert, Integration, IntegrationLog, utcnow
from core.integrations.states import AlertSeverity, IntegrationStatus, LogLevel, WebhookStatus
from core.integrations.store import ConnectorStore

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

# Operation names counted by get_metrics.
API_CALL = "api_call"
RATE_LIMITED = "rate_limited"


@dataclass
class HealthIssue:
    kind: str
    severity: AlertSeverity
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "severity": self.severity.value, "message": self.message}


@dataclass
class HealthReport:
    integration_id: str
    healthy: bool
    issues: list[HealthIssue] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "integration_id": self.integration_id,
            "healthy": self.healthy,
            "issues": [issue.message for issue in self.issues],
            "details": [issue.to_dict() for issue in self.issues],
            "alerts": [alert.to_dict() for alert in self.alerts],
            "checked_at": self.checked_at.isoformat(),
        }


class ObservabilityService:
    def __init__(
        self,
        store: ConnectorStore,
        adapters: AdapterRegistry | None = None,
        settings: AlertSettings | None = None,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.adapters = adapters or AdapterRegistry()
        self.settings = settings or AlertSettings()
        self.audit = audit or AuditTrail()
        self._clock = clock

    # --- Logs ---

    async def log_event(
        self,
        integration: Integration,
        level: LogLevel,
        message: str,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> IntegrationLog | None:
        """Store an IntegrationLog. Returns None if the write failed."""
        logger.log(
            _PY_LEVELS[level],
            f"[integration:{integration.connector_id}] {message} "
            f"(integration={integration.id}, operation={operation})",
        )
        entry = IntegrationLog(
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            connector_id=integration.connector_id,
            level=level,
            message=message,
            operation=operation,
            details=details or {},
            duration_ms=duration_ms,
            created_at=self._clock(),
        )
        try:
            return await self.store.append_log(entry)
        except Exception as exc:
            logger.warning(f"[observability] Failed to store log for {integration.id}: {exc}")
            return None

    async def list_logs(self, integration_id: str, tenant_id: str, limit: int = 100) -> list[IntegrationLog]:
        await self._integration(integration_id, tenant_id)
        return await self.store.list_logs(integration_id, tenant_id, limit=limit)

    # --- Metrics ---

    async def get_metrics(self, integration_id: str, tenant_id: str) -> dict[str, Any]:
        integration = await self._integration(integration_id, tenant_id)
        now = self._clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week = now - timedelta(days=7)
        month = now - timedelta(days=30)
        store = self.store

        jobs = await store.list_sync_jobs(integration_id, tenant_id, limit=1)
        last_job = jobs[0] if jobs else None

        return {
            "integration_id": integration.id,
            "connector_id": integration.connector_id,
            "status": integration.status.value,
            "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
            "last_event_at": integration.last_event_at.isoformat() if integration.last_event_at else None,
            "last_error": integration.last_error,
            "last_error_at": integration.last_error_at.isoformat() if integration.last_error_at else None,
            "events_today": await store.count_webhook_events(integration_id, today),
            "events_this_week": await store.count_webhook_events(integration_id, week),
            "events_this_month": await store.count_webhook_events(integration_id, month),
            "failed_events_this_week": await store.count_webhook_events(
                integration_id, week, status=WebhookStatus.FAILED
            ),
            "errors_today": await store.count_logs(integration_id, today, level=LogLevel.ERROR),
            "errors_this_week": await store.count_logs(integration_id, week, level=LogLevel.ERROR),
            "api_calls_today": await store.count_logs(integration_id, today, operation=API_CALL),
            "api_calls_this_week": await store.count_logs(integration_id, week, operation=API_CALL),
            "rate_limit_hits": await store.count_logs(integration_id, week, operation=RATE_LIMITED),
            "last_sync_status": last_job.status.value if last_job else None,
            "last_sync_items_processed": last_job.items_processed if last_job else None,
            "last_sync_items_failed": last_job.items_failed if last_job else None,
        }

    def adapter_stats(self) -> list[dict[str, Any]]:
        return self.adapters.stats()

    # --- Health ---

    async def check_health(self, integration_id: str, tenant_id: str) -> HealthReport:
        """Evaluate thresholds and raise or bump one alert per failing check."""
        integration = await self._integration(integration_id, tenant_id)
        now = self._clock()
        issues = await self._evaluate(integration, now)

        alerts: list[Alert] = []
        for issue in issues:
            alert = Alert(
                tenant_id=integration.tenant_id,
                integration_id=integration.id,
                kind=issue.kind,
                severity=issue.severity,
                message=issue.message,
                created_at=now,
                last_seen_at=now,
            )
            try:
                stored, created = await self.store.upsert_alert(alert)
            except Exception as exc:
                logger.warning(f"[observability] Failed to store alert {alert.dedupe_key}: {exc}")
                continue
            if created:
                logger.warning(f"[observability] Alert raised for {integration.id}: {issue.message}")
            alerts.append(stored)

        return HealthReport(
            integration_id=integration.id,
            healthy=not issues,
            issues=issues,
            alerts=alerts,
            checked_at=now,
        )

    async def _evaluate(self, integration: Integration, now: datetime) -> list[HealthIssue]:
        issues: list[HealthIssue] = []
        settings = self.settings

        if integration.status in (IntegrationStatus.ERROR, IntegrationStatus.AUTH_FAILED):
            severity = (
                AlertSeverity.CRITICAL
                if integration.status == IntegrationStatus.AUTH_FAILED
                else AlertSeverity.WARNING
            )
            issues.append(HealthIssue("status", severity, f"Integration status: {integration.status.value}"))

        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        errors_today = await self.store.count_logs(integration.id, today, level=LogLevel.ERROR)
        if errors_today > settings.error_threshold:
            issues.append(
                HealthIssue("error_rate", AlertSeverity.WARNING, f"High error rate: {errors_today} errors today")
            )

        if integration.sync_settings.get("enabled"):
            if integration.last_sync_at is None:
                issues.append(HealthIssue("stale_sync", AlertSeverity.INFO, "No syncs performed yet"))
            else:
                hours = (now - integration.last_sync_at).total_seconds() / 3600
                if hours > settings.stale_sync_hours:
                    issues.append(
                        HealthIssue("stale_sync", AlertSeverity.WARNING, f"Last sync was {int(hours)} hours ago")
                    )

        if integration.last_error and integration.last_error_at:
            if now - integration.last_error_at < timedelta(minutes=settings.recent_error_minutes):
                issues.append(
                    HealthIssue("recent_error", AlertSeverity.WARNING, f"Recent error: {integration.last_error}")
                )
        return issues

    async def run_health_checks(self, tenant_id: str | None = None) -> list[HealthReport]:
        """Check every live integration; one failing check never stops the rest."""
        reports = []
        for integration in await self.store.list_integrations(tenant_id=tenant_id):
            try:
                reports.append(await self.check_health(integration.id, integration.tenant_id))
            except Exception as exc:
                logger.warning(f"[observability] Health check failed for {integration.id}: {exc}")
        unhealthy = sum(1 for r in reports if not r.healthy)
        logger.info(f"[observability] Health checks complete: {len(reports)} checked, {unhealthy} unhealthy")
        return reports

    # --- Alerts ---

    async def list_alerts(
        self, tenant_id: str, integration_id: str | None = None, include_acknowledged: bool = False
    ) -> list[Alert]:
        return await self.store.list_alerts(tenant_id, integration_id, include_acknowledged)

    async def acknowledge_alert(self, alert_id: str, tenant_id: str, user_id: str | None = None) -> Alert:
        alert = await self.store.get_alert(alert_id, tenant_id)
        if alert is None:
            raise AlertNotFound(f"Alert {alert_id} not found")
        if alert.acknowledged:
            return alert
        alert = await self.store.update_alert(
            alert_id,
            acknowledged=True,
            acknowledged_by=user_id,
            acknowledged_at=self._clock(),
        )
        await self.audit.record(
            tenant_id, "alert.acknowledge", alert.id, user_id,
            {"integration_id": alert.integration_id, "kind": alert.kind}, resource_type="alert",
        )
        return alert

    async def _integration(self, integration_id: str, tenant_id: str) -> Integration:
        integration = await self.store.get_integration(integration_id, tenant_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        return integration
