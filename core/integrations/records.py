"""
Connector engine records.

Plain dataclasses shared by every ConnectorStore implementation and the
services built on top of it. Stores hand out copies; services persist
changes through the store's update methods, never by mutating a record
they were given.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from core.integrations.states import (
    AlertSeverity,
    IntegrationStatus,
    LogLevel,
    SyncDirection,
    SyncStatus,
    SyncType,
    WebhookStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Integration
# ---------------------------------------------------------------------------

@dataclass
class Integration:
    """A tenant's live connection to one connector."""
    tenant_id: str
    connector_id: str
    credentials_ref: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    status: IntegrationStatus = IntegrationStatus.CONNECTED
    created_by: str | None = None
    id: str = field(default_factory=new_id)
    last_sync_at: datetime | None = None
    last_event_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    token_expires_at: datetime | None = None
    sync_cursor: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def test_mode(self) -> bool:
        return bool(self.config.get("test_mode"))

    @property
    def webhook_secret(self) -> str | None:
        return self.config.get("webhook_secret") or None

    @property
    def webhook_token(self) -> str | None:
        return self.config.get("webhook_token") or None

    @property
    def sync_settings(self) -> dict[str, Any]:
        return dict(self.config.get("sync_settings") or {})

    def to_dict(self) -> dict[str, Any]:
        """Public view; the webhook secret and credential reference never leave the process."""
        config = {k: v for k, v in self.config.items() if k != "webhook_secret"}
        config["webhook_secret_configured"] = bool(self.webhook_secret)
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "connector_id": self.connector_id,
            "status": self.status.value,
            "config": config,
            "created_by": self.created_by,
            "last_sync_at": _iso(self.last_sync_at),
            "last_event_at": _iso(self.last_event_at),
            "last_error": self.last_error,
            "last_error_at": _iso(self.last_error_at),
            "token_expires_at": _iso(self.token_expires_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "deleted_at": _iso(self.deleted_at),
        }


# ---------------------------------------------------------------------------
# OAuth state
# ---------------------------------------------------------------------------

@dataclass
class OAuthState:
    """Single-use CSRF token for an in-flight OAuth authorization."""
    token: str
    tenant_id: str
    connector_id: str
    user_id: str | None
    expires_at: datetime
    redirect_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ---------------------------------------------------------------------------
# Normalized events and webhook receipts
# ---------------------------------------------------------------------------

@dataclass
class NormalizedEvent:
    """Platform-uniform {type, data, timestamp} shape."""
    type: str
    data: dict[str, Any]
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, value: dict[str, Any] | None) -> "NormalizedEvent | None":
        if not value:
            return None
        return cls(type=value["type"], data=value.get("data") or {}, timestamp=value["timestamp"])


@dataclass
class WebhookEvent:
    tenant_id: str
    integration_id: str
    connector_id: str
    provider_event_id: str
    provider_event_type: str
    raw_payload: dict[str, Any] = field(default_factory=dict)
    normalized: NormalizedEvent | None = None
    signature_valid: bool = False
    status: WebhookStatus = WebhookStatus.PENDING
    error: str | None = None
    retry_count: int = 0
    id: str = field(default_factory=new_id)
    received_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
    claimed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "integration_id": self.integration_id,
            "connector_id": self.connector_id,
            "provider_event_id": self.provider_event_id,
            "provider_event_type": self.provider_event_type,
            "normalized": self.normalized.to_dict() if self.normalized else None,
            "signature_valid": self.signature_valid,
            "status": self.status.value,
            "error": self.error,
            "retry_count": self.retry_count,
            "received_at": _iso(self.received_at),
            "processed_at": _iso(self.processed_at),
            "claimed_at": _iso(self.claimed_at),
        }


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

@dataclass
class SyncPage:
    """One page returned by an adapter's inbound sync."""
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


@dataclass
class SyncJob:
    tenant_id: str
    integration_id: str
    connector_id: str
    direction: SyncDirection = SyncDirection.INBOUND
    sync_type: SyncType = SyncType.INCREMENTAL
    status: SyncStatus = SyncStatus.PENDING
    cursor: str | None = None
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_failed: int = 0
    error_message: str | None = None
    cancel_requested: bool = False
    triggered_by: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "integration_id": self.integration_id,
            "connector_id": self.connector_id,
            "direction": self.direction.value,
            "sync_type": self.sync_type.value,
            "status": self.status.value,
            "cursor": self.cursor,
            "items_processed": self.items_processed,
            "items_created": self.items_created,
            "items_updated": self.items_updated,
            "items_failed": self.items_failed,
            "error_message": self.error_message,
            "cancel_requested": self.cancel_requested,
            "triggered_by": self.triggered_by,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

@dataclass
class IntegrationLog:
    tenant_id: str
    integration_id: str
    connector_id: str
    level: LogLevel
    message: str
    operation: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    duration_ms: float | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "connector_id": self.connector_id,
            "level": self.level.value,
            "operation": self.operation,
            "message": self.message,
            "details": self.details,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Alert:
    tenant_id: str
    integration_id: str
    kind: str
    severity: AlertSeverity
    message: str
    dedupe_key: str = ""
    occurrences: int = 1
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.dedupe_key:
            self.dedupe_key = f"{self.integration_id}:{self.kind}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "kind": self.kind,
            "severity": self.severity.value,
            "message": self.message,
            "dedupe_key": self.dedupe_key,
            "occurrences": self.occurrences,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "created_at": _iso(self.created_at),
            "last_seen_at": _iso(self.last_seen_at),
        }
