"""
Connector integration and webhook ingestion engine.

- ConnectorRegistry: static catalog of connectors and their capabilities
- CredentialVault: AES-GCM encryption of stored credential maps
- AdapterBase / AdapterRegistry: per-provider HTTP adapters with
  rate-limit-aware retry
- IntegrationManager: OAuth state, connect/disconnect, tests, refresh
- WebhookIngestionPipeline: signature check, idempotent dedup,
  normalization, hand-off
- SyncWorker / SyncScheduler: cursor-based inbound sync jobs
- ObservabilityService: logs, rolling metrics, health alerts
"""
from core.integrations.adapter_base import AdapterBase, AdapterStats
from core.integrations.adapters import AdapterRegistry
from core.integrations.errors import ConnectorError
from core.integrations.handoff import EventSink, HandoffEvent, QueueEventSink
from core.integrations.ingestion import IngestionResult, InboundWebhook, WebhookIngestionPipeline
from core.integrations.manager import IntegrationManager
from core.integrations.observability import ObservabilityService
from core.integrations.records import (
    Alert,
    Integration,
    IntegrationLog,
    NormalizedEvent,
    OAuthState,
    SyncJob,
    SyncPage,
    WebhookEvent,
)
from core.integrations.registry import ConnectorDefinition, ConnectorRegistry
from core.integrations.scheduler import SyncScheduler
from core.integrations.services import ConnectorServices
from core.integrations.store import ConnectorStore, InMemoryConnectorStore
from core.integrations.sync_worker import SyncWorker
from core.integrations.vault import CredentialVault

__all__ = [
    # Catalog & adapters
    "AdapterBase",
    "AdapterRegistry",
    "AdapterStats",
    "ConnectorDefinition",
    "ConnectorRegistry",
    "CredentialVault",
    # Services
    "ConnectorServices",
    "IntegrationManager",
    "ObservabilityService",
    "SyncScheduler",
    "SyncWorker",
    "WebhookIngestionPipeline",
    # Storage
    "ConnectorStore",
    "InMemoryConnectorStore",
    # Records
    "Alert",
    "HandoffEvent",
    "InboundWebhook",
    "IngestionResult",
    "Integration",
    "IntegrationLog",
    "NormalizedEvent",
    "OAuthState",
    "SyncJob",
    "SyncPage",
    "WebhookEvent",
    # Hand-off
    "EventSink",
    "QueueEventSink",
    # Errors
    "ConnectorError",
]
