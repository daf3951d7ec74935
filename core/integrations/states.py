"""Enum-based state machines for integrations, webhook events and sync jobs.

Each lifecycle is a `str` enum plus an explicit transition table. Callers
check `can_transition()` or call `ensure_transition()`, which raises
InvalidTransition for anything the table does not allow.
"""

from __future__ import annotations

from enum import Enum

from core.integrations.errors import InvalidTransition


# ---------------------------------------------------------------------------
# State definitions
# ---------------------------------------------------------------------------

class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    AUTH_FAILED = "auth_failed"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------

# A brand-new integration starts in CONNECTED; there is no "absent" member.
_INTEGRATION_TRANSITIONS: dict[IntegrationStatus, list[IntegrationStatus]] = {
    IntegrationStatus.CONNECTED: [
        IntegrationStatus.CONNECTED,
        IntegrationStatus.ERROR,
        IntegrationStatus.AUTH_FAILED,
        IntegrationStatus.DISCONNECTED,
    ],
    IntegrationStatus.ERROR: [
        IntegrationStatus.ERROR,
        IntegrationStatus.CONNECTED,
        IntegrationStatus.AUTH_FAILED,
        IntegrationStatus.DISCONNECTED,
    ],
    IntegrationStatus.AUTH_FAILED: [
        IntegrationStatus.AUTH_FAILED,
        IntegrationStatus.CONNECTED,
        IntegrationStatus.ERROR,
        IntegrationStatus.DISCONNECTED,
    ],
    IntegrationStatus.DISCONNECTED: [],  # terminal; reconnecting creates a new row
}

_WEBHOOK_TRANSITIONS: dict[WebhookStatus, list[WebhookStatus]] = {
    WebhookStatus.PENDING: [WebhookStatus.PROCESSING, WebhookStatus.PROCESSED, WebhookStatus.FAILED],
    WebhookStatus.PROCESSING: [WebhookStatus.PROCESSING, WebhookStatus.PROCESSED, WebhookStatus.FAILED],
    WebhookStatus.FAILED: [WebhookStatus.PROCESSING, WebhookStatus.PROCESSED, WebhookStatus.FAILED],
    WebhookStatus.PROCESSED: [],
}

_SYNC_TRANSITIONS: dict[SyncStatus, list[SyncStatus]] = {
    SyncStatus.PENDING: [SyncStatus.RUNNING, SyncStatus.CANCELLED],
    SyncStatus.RUNNING: [SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED],
    SyncStatus.COMPLETED: [],
    SyncStatus.FAILED: [],
    SyncStatus.CANCELLED: [],
}

_TABLES: dict[type, dict] = {
    IntegrationStatus: _INTEGRATION_TRANSITIONS,
    WebhookStatus: _WEBHOOK_TRANSITIONS,
    SyncStatus: _SYNC_TRANSITIONS,
}

TERMINAL_SYNC_STATES = frozenset(
    {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}
)


def can_transition(current: Enum, target: Enum) -> bool:
    """Check whether moving from *current* to *target* is allowed."""
    table = _TABLES.get(type(current))
    if table is None or type(target) is not type(current):
        return False
    return target in table.get(current, [])


def ensure_transition(current: Enum, target: Enum) -> Enum:
    """Return *target* if the transition is valid, raise otherwise."""
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot transition from {current.value} to {target.value}"
        )
    return target


def get_allowed_transitions(current: Enum) -> list[Enum]:
    """Return the list of states reachable from *current*."""
    table = _TABLES.get(type(current), {})
    return list(table.get(current, []))


def is_terminal(status: SyncStatus) -> bool:
    return status in TERMINAL_SYNC_STATES
