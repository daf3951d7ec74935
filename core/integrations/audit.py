"""
Audit records for state-changing integration operations.

Every connect, disconnect, connection test, token refresh, sync trigger,
outbound action, webhook reprocess and alert acknowledgement produces one
AuditRecord. Sinks must not be able to break the operation
being audited: `AuditTrail.record` logs sink failures as warnings and
returns normally.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from core.integrations.records import new_id, utcnow

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "credential", "authorization")


@dataclass
class AuditRecord:
    tenant_id: str
    action: str                  # e.g. "integration.connect"
    resource_type: str = "integration"
    resource_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


def redact(details: dict[str, Any]) -> dict[str, Any]:
    """Replace values whose key looks like a secret, at any depth."""
    return {
        key: "[REDACTED]" if any(marker in key.lower() for marker in SENSITIVE_KEYS) else _redact_value(value)
        for key, value in details.items()
    }


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return redact(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class AuditSink(ABC):
    @abstractmethod
    async def write(self, record: AuditRecord) -> None: ...


class LoggingAuditSink(AuditSink):
    """Writes audit records to the ``audit`` logger."""

    def __init__(self, logger_name: str = "audit"):
        self._logger = logging.getLogger(logger_name)

    async def write(self, record: AuditRecord) -> None:
        self._logger.info(
            f"[audit] {record.action} {record.resource_type}={record.resource_id} "
            f"tenant={record.tenant_id} user={record.user_id} details={record.details}"
        )


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def write(self, record: AuditRecord) -> None:
        self.records.append(record)

    def actions(self) -> list[str]:
        return [r.action for r in self.records]


class AuditTrail:
    """Front door used by services; never raises."""

    def __init__(self, sink: AuditSink | None = None):
        self.sink = sink or LoggingAuditSink()

    async def record(
        self,
        tenant_id: str,
        action: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        resource_type: str = "integration",
    ) -> None:
        record = AuditRecord(
            tenant_id=tenant_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=user_id,
            details=redact(details or {}),
        )
        try:
            await self.sink.write(record)
        except Exception as exc:
            logger.warning(f"[audit] Failed to write {action} for {resource_id}: {exc}")
