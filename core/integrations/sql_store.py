"""SQLAlchemy-backed ConnectorStore.

Each method runs in its own short transaction from an async session
factory (see core.database). Uniqueness guarantees come from the
constraints declared in core.models.connectors; IntegrityError on the
idempotency key or the live-integration index is translated into the
store contract's "already exists" results.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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
    NormalizedEvent,
    OAuthState,
    SyncJob,
    WebhookEvent,
    utcnow,
)
from core.integrations.states import (
    AlertSeverity,
    IntegrationStatus,
    LogLevel,
    SyncDirection,
    SyncStatus,
    SyncType,
    TERMINAL_SYNC_STATES,
    WebhookStatus,
)
from core.integrations.store import RECONNECT_FIELDS, ConnectorStore
from core.models.connectors import (
    AlertRow,
    IntegrationLogRow,
    IntegrationRow,
    OAuthStateRow,
    SyncJobRow,
    WebhookEventRow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row <-> record mapping
# ---------------------------------------------------------------------------

def _aware(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; every stored value is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, NormalizedEvent):
        return value.to_dict()
    return value


def _integration(row: IntegrationRow) -> Integration:
    return Integration(
        id=row.id,
        tenant_id=row.tenant_id,
        connector_id=row.connector_id,
        credentials_ref=row.credentials_ref,
        config=dict(row.config or {}),
        status=IntegrationStatus(row.status),
        created_by=row.created_by,
        last_sync_at=_aware(row.last_sync_at),
        last_event_at=_aware(row.last_event_at),
        last_error=row.last_error,
        last_error_at=_aware(row.last_error_at),
        token_expires_at=_aware(row.token_expires_at),
        sync_cursor=row.sync_cursor,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        deleted_at=_aware(row.deleted_at),
    )


def _oauth_state(row: OAuthStateRow) -> OAuthState:
    return OAuthState(
        token=row.token,
        tenant_id=row.tenant_id,
        connector_id=row.connector_id,
        user_id=row.user_id,
        redirect_url=row.redirect_url,
        expires_at=_aware(row.expires_at),
        created_at=_aware(row.created_at),
    )


def _webhook(row: WebhookEventRow) -> WebhookEvent:
    return WebhookEvent(
        id=row.id,
        tenant_id=row.tenant_id,
        integration_id=row.integration_id,
        connector_id=row.connector_id,
        provider_event_id=row.provider_event_id,
        provider_event_type=row.provider_event_type,
        raw_payload=dict(row.raw_payload or {}),
        normalized=NormalizedEvent.from_dict(row.normalized),
        signature_valid=row.signature_valid,
        status=WebhookStatus(row.status),
        error=row.error,
        retry_count=row.retry_count,
        received_at=_aware(row.received_at),
        processed_at=_aware(row.processed_at),
        claimed_at=_aware(row.claimed_at),
    )


def _sync_job(row: SyncJobRow) -> SyncJob:
    return SyncJob(
        id=row.id,
        tenant_id=row.tenant_id,
        integration_id=row.integration_id,
        connector_id=row.connector_id,
        direction=SyncDirection(row.direction),
        sync_type=SyncType(row.sync_type),
        status=SyncStatus(row.status),
        cursor=row.cursor,
        items_processed=row.items_processed,
        items_created=row.items_created,
        items_updated=row.items_updated,
        items_failed=row.items_failed,
        error_message=row.error_message,
        cancel_requested=row.cancel_requested,
        triggered_by=row.triggered_by,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


def _log(row: IntegrationLogRow) -> IntegrationLog:
    return IntegrationLog(
        id=row.id,
        tenant_id=row.tenant_id,
        integration_id=row.integration_id,
        connector_id=row.connector_id,
        level=LogLevel(row.level),
        operation=row.operation,
        message=row.message,
        details=dict(row.details or {}),
        duration_ms=row.duration_ms,
        created_at=_aware(row.created_at),
    )


def _alert(row: AlertRow) -> Alert:
    return Alert(
        id=row.id,
        tenant_id=row.tenant_id,
        integration_id=row.integration_id,
        kind=row.kind,
        severity=AlertSeverity(row.severity),
        message=row.message,
        dedupe_key=row.dedupe_key,
        occurrences=row.occurrences,
        acknowledged=row.acknowledged,
        acknowledged_by=row.acknowledged_by,
        acknowledged_at=_aware(row.acknowledged_at),
        created_at=_aware(row.created_at),
        last_seen_at=_aware(row.last_seen_at),
    )


def _apply(row: Any, changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        if key in ("id", "tenant_id", "created_at") or not hasattr(row, key):
            raise AttributeError(f"{type(row).__name__} has no updatable field {key!r}")
        setattr(row, key, _column_value(value))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SqlConnectorStore(ConnectorStore):
    """ConnectorStore over an async SQLAlchemy session factory.

    Usage::

        from core.database import get_session_factory
        store = SqlConnectorStore(get_session_factory())
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    # --- Integrations ---

    async def _live_row(self, session: AsyncSession, tenant_id: str, connector_id: str) -> IntegrationRow | None:
        stmt = (
            select(IntegrationRow)
            .where(
                IntegrationRow.tenant_id == tenant_id,
                IntegrationRow.connector_id == connector_id,
                IntegrationRow.deleted_at.is_(None),
            )
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _upsert_once(self, integration: Integration) -> tuple[Integration, bool]:
        async with self._sessions() as session, session.begin():
            row = await self._live_row(session, integration.tenant_id, integration.connector_id)
            if row is None:
                row = IntegrationRow(
                    id=integration.id,
                    tenant_id=integration.tenant_id,
                    connector_id=integration.connector_id,
                    credentials_ref=integration.credentials_ref,
                    config=integration.config,
                    status=integration.status.value,
                    created_by=integration.created_by,
                    token_expires_at=integration.token_expires_at,
                    created_at=integration.created_at,
                    updated_at=integration.updated_at,
                )
                session.add(row)
                await session.flush()
                return _integration(row), True
            _apply(row, {name: getattr(integration, name) for name in RECONNECT_FIELDS})
            row.updated_at = utcnow()
            await session.flush()
            return _integration(row), False

    async def upsert_integration(self, integration):
        try:
            return await self._upsert_once(integration)
        except IntegrityError:
            # A concurrent connect inserted the live row first; update it instead.
            logger.info(
                f"[store] Concurrent connect for {integration.tenant_id}/{integration.connector_id}; retrying as update"
            )
            return await self._upsert_once(integration)

    async def get_integration(self, integration_id, tenant_id=None, include_deleted=False):
        async with self._sessions() as session:
            stmt = select(IntegrationRow).where(IntegrationRow.id == integration_id)
            if tenant_id is not None:
                stmt = stmt.where(IntegrationRow.tenant_id == tenant_id)
            if not include_deleted:
                stmt = stmt.where(IntegrationRow.deleted_at.is_(None))
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _integration(row) if row else None

    async def get_active_integration(self, tenant_id, connector_id):
        async with self._sessions() as session:
            stmt = select(IntegrationRow).where(
                IntegrationRow.tenant_id == tenant_id,
                IntegrationRow.connector_id == connector_id,
                IntegrationRow.deleted_at.is_(None),
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _integration(row) if row else None

    async def find_integration_by_webhook_token(self, connector_id, token):
        async with self._sessions() as session:
            stmt = select(IntegrationRow).where(
                IntegrationRow.connector_id == connector_id,
                IntegrationRow.deleted_at.is_(None),
            )
            for row in (await session.execute(stmt)).scalars():
                if row.id == token or (row.config or {}).get("webhook_token") == token:
                    return _integration(row)
            return None

    async def list_integrations(self, tenant_id=None, status=None):
        async with self._sessions() as session:
            stmt = select(IntegrationRow).where(IntegrationRow.deleted_at.is_(None))
            if tenant_id is not None:
                stmt = stmt.where(IntegrationRow.tenant_id == tenant_id)
            if status is not None:
                stmt = stmt.where(IntegrationRow.status == status.value)
            stmt = stmt.order_by(IntegrationRow.created_at)
            return [_integration(row) for row in (await session.execute(stmt)).scalars()]

    async def update_integration(self, integration_id, **changes):
        async with self._sessions() as session, session.begin():
            row = await session.get(IntegrationRow, integration_id, with_for_update=True)
            if row is None:
                raise IntegrationNotFound(f"Integration {integration_id} not found")
            changes.setdefault("updated_at", utcnow())
            _apply(row, changes)
            await session.flush()
            return _integration(row)

    # --- OAuth state ---

    async def save_oauth_state(self, state):
        async with self._sessions() as session, session.begin():
            session.add(
                OAuthStateRow(
                    token=state.token,
                    tenant_id=state.tenant_id,
                    connector_id=state.connector_id,
                    user_id=state.user_id,
                    redirect_url=state.redirect_url,
                    expires_at=state.expires_at,
                    created_at=state.created_at,
                )
            )

    async def consume_oauth_state(self, token, now):
        async with self._sessions() as session, session.begin():
            stmt = delete(OAuthStateRow).where(OAuthStateRow.token == token).returning(OAuthStateRow)
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            state = _oauth_state(row)
        return None if state.is_expired(now) else state

    async def purge_expired_oauth_states(self, now):
        async with self._sessions() as session, session.begin():
            result = await session.execute(delete(OAuthStateRow).where(OAuthStateRow.expires_at <= now))
            return result.rowcount or 0

    # --- Webhook events ---

    async def insert_webhook_event(self, event):
        try:
            async with self._sessions() as session, session.begin():
                session.add(
                    WebhookEventRow(
                        id=event.id,
                        tenant_id=event.tenant_id,
                        integration_id=event.integration_id,
                        connector_id=event.connector_id,
                        provider_event_id=event.provider_event_id,
                        provider_event_type=event.provider_event_type,
                        raw_payload=event.raw_payload,
                        normalized=event.normalized.to_dict() if event.normalized else None,
                        signature_valid=event.signature_valid,
                        status=event.status.value,
                        error=event.error,
                        retry_count=event.retry_count,
                        received_at=event.received_at,
                        processed_at=event.processed_at,
                        claimed_at=event.claimed_at,
                    )
                )
        except IntegrityError:
            existing = await self.get_webhook_event(event.tenant_id, event.connector_id, event.provider_event_id)
            if existing is None:
                raise
            return existing, False
        return event, True

    async def get_webhook_event(self, tenant_id, connector_id, provider_event_id):
        async with self._sessions() as session:
            stmt = select(WebhookEventRow).where(
                WebhookEventRow.tenant_id == tenant_id,
                WebhookEventRow.connector_id == connector_id,
                WebhookEventRow.provider_event_id == provider_event_id,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _webhook(row) if row else None

    async def get_webhook_event_by_id(self, event_id, tenant_id=None):
        async with self._sessions() as session:
            row = await session.get(WebhookEventRow, event_id)
            if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                return None
            return _webhook(row)

    async def update_webhook_event(self, event_id, **changes):
        async with self._sessions() as session, session.begin():
            row = await session.get(WebhookEventRow, event_id, with_for_update=True)
            if row is None:
                raise WebhookEventNotFound(f"Webhook event {event_id} not found")
            _apply(row, changes)
            await session.flush()
            return _webhook(row)

    async def claim_webhook_event(self, event_id, statuses, claimed_at, stale_before=None, count_retry=False):
        claimable = WebhookEventRow.status.in_([status.value for status in statuses])
        if stale_before is not None:
            claimable = or_(
                claimable,
                and_(
                    WebhookEventRow.status == WebhookStatus.PROCESSING.value,
                    WebhookEventRow.claimed_at <= stale_before,
                ),
            )
        values: dict[str, Any] = {"status": WebhookStatus.PROCESSING.value, "claimed_at": claimed_at}
        if count_retry:
            values["retry_count"] = WebhookEventRow.retry_count + 1
        async with self._sessions() as session, session.begin():
            stmt = (
                update(WebhookEventRow)
                .where(WebhookEventRow.id == event_id, claimable)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if not result.rowcount:
                return None
        return await self.get_webhook_event_by_id(event_id)

    async def count_webhook_events(self, integration_id, since, status=None):
        async with self._sessions() as session:
            stmt = select(func.count()).select_from(WebhookEventRow).where(
                WebhookEventRow.integration_id == integration_id,
                WebhookEventRow.received_at >= since,
            )
            if status is not None:
                stmt = stmt.where(WebhookEventRow.status == status.value)
            return (await session.execute(stmt)).scalar() or 0

    async def list_webhook_events(self, integration_id, tenant_id, limit=50, status=None):
        async with self._sessions() as session:
            stmt = select(WebhookEventRow).where(
                WebhookEventRow.integration_id == integration_id,
                WebhookEventRow.tenant_id == tenant_id,
            )
            if status is not None:
                stmt = stmt.where(WebhookEventRow.status == status.value)
            stmt = stmt.order_by(WebhookEventRow.received_at.desc()).limit(limit)
            return [_webhook(row) for row in (await session.execute(stmt)).scalars()]

    # --- Sync jobs ---

    async def create_sync_job(self, job):
        async with self._sessions() as session, session.begin():
            session.add(
                SyncJobRow(
                    id=job.id,
                    tenant_id=job.tenant_id,
                    integration_id=job.integration_id,
                    connector_id=job.connector_id,
                    direction=job.direction.value,
                    sync_type=job.sync_type.value,
                    status=job.status.value,
                    cursor=job.cursor,
                    items_processed=job.items_processed,
                    items_created=job.items_created,
                    items_updated=job.items_updated,
                    items_failed=job.items_failed,
                    error_message=job.error_message,
                    cancel_requested=job.cancel_requested,
                    triggered_by=job.triggered_by,
                    created_at=job.created_at,
                    updated_at=job.created_at,
                )
            )
        return job

    async def get_sync_job(self, job_id, tenant_id=None):
        async with self._sessions() as session:
            row = await session.get(SyncJobRow, job_id)
            if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                return None
            return _sync_job(row)

    async def update_sync_job(self, job_id, **changes):
        async with self._sessions() as session, session.begin():
            row = await session.get(SyncJobRow, job_id, with_for_update=True)
            if row is None:
                raise SyncJobNotFound(f"Sync job {job_id} not found")
            _apply(row, changes)
            await session.flush()
            return _sync_job(row)

    async def get_active_sync_job(self, integration_id):
        async with self._sessions() as session:
            stmt = (
                select(SyncJobRow)
                .where(
                    SyncJobRow.integration_id == integration_id,
                    SyncJobRow.status.not_in([s.value for s in TERMINAL_SYNC_STATES]),
                )
                .order_by(SyncJobRow.created_at.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _sync_job(row) if row else None

    async def list_sync_jobs(self, integration_id, tenant_id, limit=20):
        async with self._sessions() as session:
            stmt = (
                select(SyncJobRow)
                .where(SyncJobRow.integration_id == integration_id, SyncJobRow.tenant_id == tenant_id)
                .order_by(SyncJobRow.created_at.desc())
                .limit(limit)
            )
            return [_sync_job(row) for row in (await session.execute(stmt)).scalars()]

    # --- Logs ---

    async def append_log(self, log):
        async with self._sessions() as session, session.begin():
            session.add(
                IntegrationLogRow(
                    id=log.id,
                    tenant_id=log.tenant_id,
                    integration_id=log.integration_id,
                    connector_id=log.connector_id,
                    level=log.level.value,
                    operation=log.operation,
                    message=log.message,
                    details=log.details,
                    duration_ms=log.duration_ms,
                    created_at=log.created_at,
                    updated_at=log.created_at,
                )
            )
        return log

    async def list_logs(self, integration_id, tenant_id, limit=100):
        async with self._sessions() as session:
            stmt = (
                select(IntegrationLogRow)
                .where(
                    IntegrationLogRow.integration_id == integration_id,
                    IntegrationLogRow.tenant_id == tenant_id,
                )
                .order_by(IntegrationLogRow.created_at.desc())
                .limit(limit)
            )
            return [_log(row) for row in (await session.execute(stmt)).scalars()]

    async def count_logs(self, integration_id, since, level=None, operation=None):
        async with self._sessions() as session:
            stmt = select(func.count()).select_from(IntegrationLogRow).where(
                IntegrationLogRow.integration_id == integration_id,
                IntegrationLogRow.created_at >= since,
            )
            if level is not None:
                stmt = stmt.where(IntegrationLogRow.level == level.value)
            if operation is not None:
                stmt = stmt.where(IntegrationLogRow.operation == operation)
            return (await session.execute(stmt)).scalar() or 0

    # --- Alerts ---

    async def upsert_alert(self, alert):
        async with self._sessions() as session, session.begin():
            stmt = (
                select(AlertRow)
                .where(
                    AlertRow.tenant_id == alert.tenant_id,
                    AlertRow.dedupe_key == alert.dedupe_key,
                    AlertRow.acknowledged.is_(False),
                )
                .with_for_update()
            )
            row = (await session.execute(stmt)).scalars().first()
            if row is not None:
                row.occurrences += 1
                row.last_seen_at = alert.last_seen_at
                row.message = alert.message
                row.severity = alert.severity.value
                await session.flush()
                return _alert(row), False
            row = AlertRow(
                id=alert.id,
                tenant_id=alert.tenant_id,
                integration_id=alert.integration_id,
                kind=alert.kind,
                severity=alert.severity.value,
                message=alert.message,
                dedupe_key=alert.dedupe_key,
                occurrences=alert.occurrences,
                acknowledged=alert.acknowledged,
                last_seen_at=alert.last_seen_at,
                created_at=alert.created_at,
                updated_at=alert.created_at,
            )
            session.add(row)
            await session.flush()
            return _alert(row), True

    async def get_alert(self, alert_id, tenant_id):
        async with self._sessions() as session:
            row = await session.get(AlertRow, alert_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return _alert(row)

    async def update_alert(self, alert_id, **changes):
        async with self._sessions() as session, session.begin():
            row = await session.get(AlertRow, alert_id, with_for_update=True)
            if row is None:
                raise AlertNotFound(f"Alert {alert_id} not found")
            _apply(row, changes)
            await session.flush()
            return _alert(row)

    async def list_alerts(self, tenant_id, integration_id=None, include_acknowledged=False):
        async with self._sessions() as session:
            stmt = select(AlertRow).where(AlertRow.tenant_id == tenant_id)
            if integration_id is not None:
                stmt = stmt.where(AlertRow.integration_id == integration_id)
            if not include_acknowledged:
                stmt = stmt.where(AlertRow.acknowledged.is_(False))
            stmt = stmt.order_by(AlertRow.last_seen_at.desc())
            return [_alert(row) for row in (await session.execute(stmt)).scalars()]
