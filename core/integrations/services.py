"""
Wiring for the connector engine.

`ConnectorServices.build()` assembles registry, vault, adapters, store and
the four services from one ConnectorSettings. The API process builds it
once at startup; tests build it with an in-memory store, an
`httpx.MockTransport` and a no-op sleep.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx

from core.config import ConnectorSettings
from core.integrations.adapter_base import SleepFn
from core.integrations.adapters import AdapterRegistry
from core.integrations.audit import AuditSink, AuditTrail
from core.integrations.handoff import EventSink, QueueEventSink, SinkItemProcessor, SyncItemProcessor
from core.integrations.ingestion import WebhookIngestionPipeline
from core.integrations.manager import IntegrationManager
from core.integrations.oauth_manager import OAuthCodeExchanger
from core.integrations.observability import ObservabilityService
from core.integrations.records import utcnow
from core.integrations.registry import ConnectorRegistry
from core.integrations.scheduler import SyncScheduler
from core.integrations.store import ConnectorStore, InMemoryConnectorStore
from core.integrations.sync_worker import SyncWorker
from core.integrations.vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass
class ConnectorServices:
    settings: ConnectorSettings
    registry: ConnectorRegistry
    vault: CredentialVault
    adapters: AdapterRegistry
    store: ConnectorStore
    sink: EventSink
    audit: AuditTrail
    observability: ObservabilityService
    manager: IntegrationManager
    ingestion: WebhookIngestionPipeline
    sync_worker: SyncWorker
    scheduler: SyncScheduler

    @classmethod
    def build(
        cls,
        settings: ConnectorSettings | None = None,
        store: ConnectorStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
        sink: EventSink | None = None,
        audit: AuditSink | None = None,
        processor: SyncItemProcessor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "ConnectorServices":
        settings = settings or ConnectorSettings.default()
        if store is None:
            store = cls._default_store(settings)

        registry = ConnectorRegistry()
        vault = CredentialVault(settings.vault.encryption_key)
        adapters = AdapterRegistry.build(registry, settings, transport=transport, sleep=sleep)
        sink = sink or QueueEventSink()
        trail = AuditTrail(audit)

        observability = ObservabilityService(store, adapters, settings.alerts, audit=trail, clock=clock)
        manager = IntegrationManager(
            store,
            vault,
            registry,
            adapters,
            observability,
            settings=settings,
            audit=trail,
            exchanger=OAuthCodeExchanger(transport=transport, timeout=settings.retry.timeout),
            clock=clock,
        )
        ingestion = WebhookIngestionPipeline(
            manager, store, observability, sink, settings=settings.webhooks, clock=clock
        )
        worker = SyncWorker(
            manager,
            store,
            observability,
            processor or SinkItemProcessor(sink),
            settings=settings.sync,
            clock=clock,
        )
        scheduler = SyncScheduler(worker, manager, observability, settings=settings.sync)

        logger.info(
            f"[services] Connector engine ready ({len(registry)} connectors, store={type(store).__name__})"
        )
        return cls(
            settings=settings,
            registry=registry,
            vault=vault,
            adapters=adapters,
            store=store,
            sink=sink,
            audit=trail,
            observability=observability,
            manager=manager,
            ingestion=ingestion,
            sync_worker=worker,
            scheduler=scheduler,
        )

    @staticmethod
    def _default_store(settings: ConnectorSettings) -> ConnectorStore:
        if settings.store_backend == "memory":
            logger.warning("[services] Using in-memory connector store; data is lost on restart")
            return InMemoryConnectorStore()
        from core.database import get_session_factory
        from core.integrations.sql_store import SqlConnectorStore

        return SqlConnectorStore(get_session_factory())
