"""
Connector storage interface and in-memory implementation.

ConnectorStore is the only persistence seam the engine uses. The
IntegrationManager, ingestion pipeline, sync worker and observability
service are written against it; `SqlConnectorStore` backs production and
`InMemoryConnectorStore` backs tests and local runs.

Store contract:
- At most one non-deleted Integration per (tenant, connector).
- WebhookEvent is unique on (tenant, connector, provider_event_id);
  `insert_webhook_event` is insert-if-absent.
- `claim_webhook_event` is a compare-and-swap into ``processing``; only
  the caller holding the claim hands the event off.
- `consume_oauth_state` deletes and returns in one step.
- Records returned are copies; changes go through `update_*`.
"""
from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from core.integrations.errors import (
    AlertNotFound,
    IntegrationNotFound,
    SyncJobNotFound,
    WebhookEventNotFound,
)
from core.integrations.records import (
    Alert,
    Integration,
    IntegrationLog,
    OAuthState,
    SyncJob,
    WebhookEvent,
    utcnow,
)
from core.integrations.states import (
    IntegrationStatus,
    LogLevel,
    TERMINAL_SYNC_STATES,
    WebhookStatus,
)

# Fields a reconnect overwrites on the live row.
RECONNECT_FIELDS = ("credentials_ref", "config", "status", "last_error", "last_error_at", "token_expires_at")


class ConnectorStore(ABC):
    """Async persistence for integrations, webhook events, sync jobs and observability."""

    # --- Integrations ---

    @abstractmethod
    async def upsert_integration(self, integration: Integration) -> tuple[Integration, bool]:
        """Create the live row for (tenant, connector) or update it in place.

        Returns (integration, created).
        """

    @abstractmethod
    async def get_integration(
        self, integration_id: str, tenant_id: str | None = None, include_deleted: bool = False
    ) -> Integration | None: ...

    @abstractmethod
    async def get_active_integration(self, tenant_id: str, connector_id: str) -> Integration | None: ...

    @abstractmethod
    async def find_integration_by_webhook_token(self, connector_id: str, token: str) -> Integration | None:
        """Live integration for *connector_id* whose id or webhook token equals *token*."""

    @abstractmethod
    async def list_integrations(
        self, tenant_id: str | None = None, status: IntegrationStatus | None = None
    ) -> list[Integration]:
        """Live integrations, optionally filtered."""

    @abstractmethod
    async def update_integration(self, integration_id: str, **changes: Any) -> Integration: ...

    # --- OAuth state ---

    @abstractmethod
    async def save_oauth_state(self, state: OAuthState) -> None: ...

    @abstractmethod
    async def consume_oauth_state(self, token: str, now: datetime) -> OAuthState | None:
        """Atomically remove *token*; None when absent or expired."""

    @abstractmethod
    async def purge_expired_oauth_states(self, now: datetime) -> int: ...

    # --- Webhook events ---

    @abstractmethod
    async def insert_webhook_event(self, event: WebhookEvent) -> tuple[WebhookEvent, bool]:
        """Insert unless the idempotency key exists. Returns (stored_event, created)."""

    @abstractmethod
    async def get_webhook_event(
        self, tenant_id: str, connector_id: str, provider_event_id: str
    ) -> WebhookEvent | None: ...

    @abstractmethod
    async def get_webhook_event_by_id(self, event_id: str, tenant_id: str | None = None) -> WebhookEvent | None: ...

    @abstractmethod
    async def update_webhook_event(self, event_id: str, **changes: Any) -> WebhookEvent: ...

    @abstractmethod
    async def claim_webhook_event(
        self,
        event_id: str,
        statuses: Sequence[WebhookStatus],
        claimed_at: datetime,
        stale_before: datetime | None = None,
        count_retry: bool = False,
    ) -> WebhookEvent | None:
        """Compare-and-swap an event into ``processing``.

        The claim succeeds when the event's status is one of *statuses*, or
        when it is ``processing`` with a claim taken at or before
        *stale_before*. Returns the claimed event, or None when the event is
        missing or held by another caller.
        """

    @abstractmethod
    async def count_webhook_events(
        self, integration_id: str, since: datetime, status: WebhookStatus | None = None
    ) -> int: ...

    @abstractmethod
    async def list_webhook_events(
        self, integration_id: str, tenant_id: str, limit: int = 50, status: WebhookStatus | None = None
    ) -> list[WebhookEvent]: ...

    # --- Sync jobs ---

    @abstractmethod
    async def create_sync_job(self, job: SyncJob) -> SyncJob: ...

    @abstractmethod
    async def get_sync_job(self, job_id: str, tenant_id: str | None = None) -> SyncJob | None: ...

    @abstractmethod
    async def update_sync_job(self, job_id: str, **changes: Any) -> SyncJob: ...

    @abstractmethod
    async def get_active_sync_job(self, integration_id: str) -> SyncJob | None:
        """Most recent non-terminal job for the integration, if any."""

    @abstractmethod
    async def list_sync_jobs(self, integration_id: str, tenant_id: str, limit: int = 20) -> list[SyncJob]:
        """Newest first."""

    # --- Logs ---

    @abstractmethod
    async def append_log(self, log: IntegrationLog) -> IntegrationLog: ...

    @abstractmethod
    async def list_logs(self, integration_id: str, tenant_id: str, limit: int = 100) -> list[IntegrationLog]:
        """Newest first."""

    @abstractmethod
    async def count_logs(
        self,
        integration_id: str,
        since: datetime,
        level: LogLevel | None = None,
        operation: str | None = None,
    ) -> int: ...

    # --- Alerts ---

    @abstractmethod
    async def upsert_alert(self, alert: Alert) -> tuple[Alert, bool]:
        """Insert, or bump the open (unacknowledged) alert with the same dedupe key."""

    @abstractmethod
    async def get_alert(self, alert_id: str, tenant_id: str) -> Alert | None: ...

    @abstractmethod
    async def update_alert(self, alert_id: str, **changes: Any) -> Alert: ...

    @abstractmethod
    async def list_alerts(
        self, tenant_id: str, integration_id: str | None = None, include_acknowledged: bool = False
    ) -> list[Alert]: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryConnectorStore(ConnectorStore):
    """
    In-memory ConnectorStore. Replace backing store for production.

    Mutating methods contain no awaits, so each call runs to completion on
    the event loop without interleaving.
    """

    def __init__(self) -> None:
        self._integrations: dict[str, Integration] = {}
        self._oauth_states: dict[str, OAuthState] = {}
        self._webhooks: dict[str, WebhookEvent] = {}
        self._webhook_keys: dict[tuple[str, str, str], str] = {}
        self._jobs: dict[str, SyncJob] = {}
        self._logs: list[IntegrationLog] = []
        self._alerts: dict[str, Alert] = {}

    @staticmethod
    def _copy(record):
        return copy.deepcopy(record) if record is not None else None

    # --- Integrations ---

    def _live(self, tenant_id: str, connector_id: str) -> Integration | None:
        for integration in self._integrations.values():
            if (
                integration.tenant_id == tenant_id
                and integration.connector_id == connector_id
                and integration.deleted_at is None
            ):
                return integration
        return None

    async def upsert_integration(self, integration: Integration) -> tuple[Integration, bool]:
        existing = self._live(integration.tenant_id, integration.connector_id)
        if existing is None:
            stored = copy.deepcopy(integration)
            self._integrations[stored.id] = stored
            return self._copy(stored), True
        changes = {name: copy.deepcopy(getattr(integration, name)) for name in RECONNECT_FIELDS}
        updated = replace(existing, updated_at=utcnow(), **changes)
        self._integrations[existing.id] = updated
        return self._copy(updated), False

    async def get_integration(self, integration_id, tenant_id=None, include_deleted=False):
        integration = self._integrations.get(integration_id)
        if integration is None:
            return None
        if tenant_id is not None and integration.tenant_id != tenant_id:
            return None
        if integration.deleted_at is not None and not include_deleted:
            return None
        return self._copy(integration)

    async def get_active_integration(self, tenant_id, connector_id):
        return self._copy(self._live(tenant_id, connector_id))

    async def find_integration_by_webhook_token(self, connector_id, token):
        for integration in self._integrations.values():
            if integration.connector_id != connector_id or integration.deleted_at is not None:
                continue
            if integration.id == token or integration.config.get("webhook_token") == token:
                return self._copy(integration)
        return None

    async def list_integrations(self, tenant_id=None, status=None):
        result = [
            i for i in self._integrations.values()
            if i.deleted_at is None
            and (tenant_id is None or i.tenant_id == tenant_id)
            and (status is None or i.status == status)
        ]
        result.sort(key=lambda i: i.created_at)
        return [self._copy(i) for i in result]

    async def update_integration(self, integration_id, **changes):
        integration = self._integrations.get(integration_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        changes.setdefault("updated_at", utcnow())
        updated = replace(integration, **copy.deepcopy(changes))
        self._integrations[integration_id] = updated
        return self._copy(updated)

    # --- OAuth state ---

    async def save_oauth_state(self, state):
        self._oauth_states[state.token] = copy.deepcopy(state)

    async def consume_oauth_state(self, token, now):
        state = self._oauth_states.pop(token, None)
        if state is None or state.is_expired(now):
            return None
        return state

    async def purge_expired_oauth_states(self, now):
        expired = [token for token, state in self._oauth_states.items() if state.is_expired(now)]
        for token in expired:
            del self._oauth_states[token]
        return len(expired)

    # --- Webhook events ---

    async def insert_webhook_event(self, event):
        key = (event.tenant_id, event.connector_id, event.provider_event_id)
        existing_id = self._webhook_keys.get(key)
        if existing_id is not None:
            return self._copy(self._webhooks[existing_id]), False
        stored = copy.deepcopy(event)
        self._webhooks[stored.id] = stored
        self._webhook_keys[key] = stored.id
        return self._copy(stored), True

    async def get_webhook_event(self, tenant_id, connector_id, provider_event_id):
        event_id = self._webhook_keys.get((tenant_id, connector_id, provider_event_id))
        return self._copy(self._webhooks.get(event_id)) if event_id else None

    async def get_webhook_event_by_id(self, event_id, tenant_id=None):
        event = self._webhooks.get(event_id)
        if event is None or (tenant_id is not None and event.tenant_id != tenant_id):
            return None
        return self._copy(event)

    async def update_webhook_event(self, event_id, **changes):
        event = self._webhooks.get(event_id)
        if event is None:
            raise WebhookEventNotFound(f"Webhook event {event_id} not found")
        updated = replace(event, **copy.deepcopy(changes))
        self._webhooks[event_id] = updated
        return self._copy(updated)

    async def claim_webhook_event(self, event_id, statuses, claimed_at, stale_before=None, count_retry=False):
        event = self._webhooks.get(event_id)
        if event is None:
            return None
        stale = (
            stale_before is not None
            and event.status == WebhookStatus.PROCESSING
            and event.claimed_at is not None
            and event.claimed_at <= stale_before
        )
        if event.status not in statuses and not stale:
            return None
        claimed = replace(
            event,
            status=WebhookStatus.PROCESSING,
            claimed_at=claimed_at,
            retry_count=event.retry_count + 1 if count_retry else event.retry_count,
        )
        self._webhooks[event_id] = claimed
        return self._copy(claimed)

    async def count_webhook_events(self, integration_id, since, status=None):
        return sum(
            1 for e in self._webhooks.values()
            if e.integration_id == integration_id
            and e.received_at >= since
            and (status is None or e.status == status)
        )

    async def list_webhook_events(self, integration_id, tenant_id, limit=50, status=None):
        events = [
            e for e in self._webhooks.values()
            if e.integration_id == integration_id
            and e.tenant_id == tenant_id
            and (status is None or e.status == status)
        ]
        events.sort(key=lambda e: e.received_at, reverse=True)
        return [self._copy(e) for e in events[:limit]]

    # --- Sync jobs ---

    async def create_sync_job(self, job):
        self._jobs[job.id] = copy.deepcopy(job)
        return self._copy(job)

    async def get_sync_job(self, job_id, tenant_id=None):
        job = self._jobs.get(job_id)
        if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
            return None
        return self._copy(job)

    async def update_sync_job(self, job_id, **changes):
        job = self._jobs.get(job_id)
        if job is None:
            raise SyncJobNotFound(f"Sync job {job_id} not found")
        updated = replace(job, **copy.deepcopy(changes))
        self._jobs[job_id] = updated
        return self._copy(updated)

    async def get_active_sync_job(self, integration_id):
        active = [
            j for j in self._jobs.values()
            if j.integration_id == integration_id and j.status not in TERMINAL_SYNC_STATES
        ]
        active.sort(key=lambda j: j.created_at, reverse=True)
        return self._copy(active[0]) if active else None

    async def list_sync_jobs(self, integration_id, tenant_id, limit=20):
        jobs = [j for j in self._jobs.values() if j.integration_id == integration_id and j.tenant_id == tenant_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [self._copy(j) for j in jobs[:limit]]

    # --- Logs ---

    async def append_log(self, log):
        self._logs.append(copy.deepcopy(log))
        return log

    async def list_logs(self, integration_id, tenant_id, limit=100):
        logs = [entry for entry in self._logs if entry.integration_id == integration_id and entry.tenant_id == tenant_id]
        logs.sort(key=lambda entry: entry.created_at, reverse=True)
        return [self._copy(entry) for entry in logs[:limit]]

    async def count_logs(self, integration_id, since, level=None, operation=None):
        return sum(
            1 for entry in self._logs
            if entry.integration_id == integration_id
            and entry.created_at >= since
            and (level is None or entry.level == level)
            and (operation is None or entry.operation == operation)
        )

    # --- Alerts ---

    async def upsert_alert(self, alert):
        for existing in self._alerts.values():
            if existing.dedupe_key == alert.dedupe_key and existing.tenant_id == alert.tenant_id and not existing.acknowledged:
                updated = replace(
                    existing,
                    occurrences=existing.occurrences + 1,
                    last_seen_at=alert.last_seen_at,
                    message=alert.message,
                    severity=alert.severity,
                )
                self._alerts[existing.id] = updated
                return self._copy(updated), False
        self._alerts[alert.id] = copy.deepcopy(alert)
        return self._copy(alert), True

    async def get_alert(self, alert_id, tenant_id):
        alert = self._alerts.get(alert_id)
        if alert is None or alert.tenant_id != tenant_id:
            return None
        return self._copy(alert)

    async def update_alert(self, alert_id, **changes):
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(f"Alert {alert_id} not found")
        updated = replace(alert, **copy.deepcopy(changes))
        self._alerts[alert_id] = updated
        return self._copy(updated)

    async def list_alerts(self, tenant_id, integration_id=None, include_acknowledged=False):
        alerts = [
            a for a in self._alerts.values()
            if a.tenant_id == tenant_id
            and (integration_id is None or a.integration_id == integration_id)
            and (include_acknowledged or not a.acknowledged)
        ]
        alerts.sort(key=lambda a: a.last_seen_at, reverse=True)
        return [self._copy(a) for a in alerts]
