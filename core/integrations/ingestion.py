"""
Webhook ingestion pipeline.

Per inbound delivery:
1. resolve the integration and require status ``connected``
2. verify the provider signature when a webhook secret is configured
3. look up the idempotency key (tenant, connector, provider event id)
4. normalize through the connector's adapter (generic passthrough otherwise)
5. insert-if-absent; only the request that created the row claims it
   (``pending`` -> ``processing``), hands the event to the downstream
   sink, then marks it ``processed``
6. mirror receipt, success and failure into observability

Providers deliver at least once. The unique idempotency key plus step 5
make application at most once: a concurrent duplicate loses the insert
and gets the stored record back.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import parse_qsl

from core.config import WebhookSettings
from core.integrations.adapter_base import AdapterBase, body_fingerprint
from core.integrations.errors import (
    IntegrationNotFound,
    InvalidSignature,
    NotConnected,
    UnsupportedAction,
    WebhookEventNotFound,
)
from core.integrations.handoff import EventSink, HandoffEvent
from core.integrations.manager import IntegrationManager
from core.integrations.observability import ObservabilityService
from core.integrations.records import Integration, NormalizedEvent, WebhookEvent, utcnow
from core.integrations.simulation import generate_mock_webhook
from core.integrations.states import IntegrationStatus, LogLevel, WebhookStatus, ensure_transition
from core.integrations.store import ConnectorStore
from core.integrations.webhooks import extract_signature, sign_payload, verify_signature

logger = logging.getLogger(__name__)


@dataclass
class InboundWebhook:
    connector_id: str
    tenant_id: str | None
    provider_event_id: str
    provider_event_type: str
    payload: dict[str, Any]
    raw_body: bytes
    signature: str | None = None
    timestamp: str | None = None


@dataclass
class IngestionResult:
    ok: bool
    webhook_id: str
    status: WebhookStatus
    duplicate: bool = False
    delivered: int = 0
    normalized: NormalizedEvent | None = None
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ok": self.ok,
            "webhook_id": self.webhook_id,
            "status": self.status.value,
            "delivered": self.delivered,
            "duplicate": self.duplicate,
        }
        if self.normalized is not None:
            body["event"] = self.normalized.to_dict()
        if self.error:
            body["error"] = self.error
        return body


def parse_body(raw_body: bytes) -> dict[str, Any]:
    """JSON object body; form-encoded bodies (Slack slash commands) become a flat dict."""
    if not raw_body:
        return {}
    try:
        value = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return dict(parse_qsl(raw_body.decode("utf-8", "replace")))
    return value if isinstance(value, dict) else {"data": value}


def generic_normalize(connector_id: str, event_type: str, payload: dict[str, Any], received_at: datetime) -> NormalizedEvent:
    if not event_type or event_type == "unknown":
        event_type = f"{connector_id}.event"
    return NormalizedEvent(type=event_type, data=payload, timestamp=received_at.isoformat())


class WebhookIngestionPipeline:
    def __init__(
        self,
        manager: IntegrationManager,
        store: ConnectorStore,
        observability: ObservabilityService,
        sink: EventSink,
        settings: WebhookSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.store = store
        self.observability = observability
        self.sink = sink
        self.settings = settings or WebhookSettings()
        self._clock = clock

    # ------------------------------------------------------------------
    # HTTP entry point
    # ------------------------------------------------------------------

    async def receive(
        self,
        connector_id: str,
        token: str,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> IngestionResult:
        """Handle ``POST /webhooks/{connector_id}/{token}``."""
        integration = await self.manager.find_webhook_integration(connector_id, token)
        lowered = {k.lower(): v for k, v in headers.items()}
        payload = parse_body(raw_body)
        adapter = self.manager.get_adapter(connector_id)

        if adapter is not None:
            event_id = adapter.extract_event_id(payload, lowered, raw_body)
            event_type = adapter.extract_event_type(payload, lowered)
        else:
            event_id, event_type = self._generic_ids(payload, lowered, raw_body)

        signature, timestamp = extract_signature(connector_id, lowered)
        inbound = InboundWebhook(
            connector_id=connector_id,
            tenant_id=integration.tenant_id,
            provider_event_id=event_id,
            provider_event_type=event_type,
            payload=payload,
            raw_body=raw_body,
            signature=signature,
            timestamp=timestamp,
        )
        return await self.ingest(inbound, integration=integration)

    @staticmethod
    def _generic_ids(
        payload: dict[str, Any], headers: Mapping[str, str], raw_body: bytes
    ) -> tuple[str, str]:
        event_id = payload.get("id") or payload.get("event_id") or headers.get("x-webhook-id")
        event_type = payload.get("type") or payload.get("event") or headers.get("x-webhook-event")
        return (
            str(event_id) if event_id not in (None, "") else body_fingerprint(raw_body),
            str(event_type) if event_type else "unknown",
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def ingest(self, inbound: InboundWebhook, integration: Integration | None = None) -> IngestionResult:
        if integration is None:
            if inbound.tenant_id is None:
                raise IntegrationNotFound("Tenant is required to resolve the integration")
            integration = await self.store.get_active_integration(inbound.tenant_id, inbound.connector_id)
            if integration is None:
                raise IntegrationNotFound(
                    f"No {inbound.connector_id} integration for tenant {inbound.tenant_id}"
                )
        if integration.status != IntegrationStatus.CONNECTED:
            raise NotConnected(f"Integration {integration.id} is {integration.status.value}")

        received_at = self._clock()
        signature_valid = await self._verify(integration, inbound, received_at)

        existing = await self.store.get_webhook_event(
            integration.tenant_id, inbound.connector_id, inbound.provider_event_id
        )
        if existing is not None:
            return await self._duplicate(integration, existing)

        normalized, error = self._normalize(integration, inbound, received_at)
        stored, created = await self.store.insert_webhook_event(
            WebhookEvent(
                tenant_id=integration.tenant_id,
                integration_id=integration.id,
                connector_id=inbound.connector_id,
                provider_event_id=inbound.provider_event_id,
                provider_event_type=inbound.provider_event_type,
                raw_payload=inbound.payload,
                normalized=normalized,
                signature_valid=signature_valid,
                status=WebhookStatus.PENDING,
                received_at=received_at,
            )
        )
        if not created:
            return await self._duplicate(integration, stored)

        await self.manager.record_event_received(integration, received_at)
        await self.observability.log_event(
            integration, LogLevel.INFO,
            f"Webhook received: {inbound.provider_event_type}",
            operation="webhook_received",
            details={"webhook_id": stored.id, "provider_event_id": inbound.provider_event_id},
        )

        if normalized is None:
            return await self._fail(integration, stored, error or "Normalization failed")
        claimed = await self.store.claim_webhook_event(stored.id, (WebhookStatus.PENDING,), self._clock())
        if claimed is None:
            # An operator reprocess took the event first.
            return await self._duplicate(integration, await self.store.get_webhook_event_by_id(stored.id))
        return await self._hand_off(integration, claimed, normalized)

    async def _verify(self, integration: Integration, inbound: InboundWebhook, received_at: datetime) -> bool:
        """True when the delivery passed verification or the integration has no secret to verify against."""
        secret = integration.webhook_secret
        if not secret:
            logger.debug(f"[webhooks] No webhook secret for integration {integration.id}; accepting unsigned")
            return True
        if not inbound.signature:
            await self.observability.log_event(
                integration, LogLevel.WARN, "Webhook rejected: missing signature", operation="webhook_rejected"
            )
            raise InvalidSignature("Missing webhook signature", missing=True)
        valid = verify_signature(
            inbound.connector_id,
            secret,
            inbound.raw_body,
            inbound.signature,
            timestamp=inbound.timestamp,
            tolerance=self.settings.timestamp_tolerance_seconds,
            now=received_at.timestamp(),
        )
        if not valid:
            await self.observability.log_event(
                integration, LogLevel.WARN, "Webhook rejected: invalid signature", operation="webhook_rejected"
            )
            raise InvalidSignature("Invalid webhook signature")
        return True

    def _normalize(
        self,
        integration: Integration,
        inbound: InboundWebhook,
        received_at: datetime,
    ) -> tuple[NormalizedEvent | None, str | None]:
        adapter: AdapterBase | None = self.manager.get_adapter(inbound.connector_id)
        if adapter is None:
            return generic_normalize(
                inbound.connector_id, inbound.provider_event_type, inbound.payload, received_at
            ), None
        try:
            return adapter.normalize_webhook_event(
                inbound.provider_event_type, inbound.payload, received_at
            ), None
        except Exception as exc:
            logger.exception(
                f"[webhooks] Normalization failed for {inbound.connector_id} event "
                f"{inbound.provider_event_id} (integration {integration.id})"
            )
            return None, f"{type(exc).__name__}: {exc}"

    async def _hand_off(
        self, integration: Integration, event: WebhookEvent, normalized: NormalizedEvent
    ) -> IngestionResult:
        try:
            await self.sink.deliver(
                HandoffEvent(
                    tenant_id=integration.tenant_id,
                    integration_id=integration.id,
                    connector_id=integration.connector_id,
                    type=normalized.type,
                    data=normalized.data,
                    timestamp=normalized.timestamp,
                    provider_event_id=event.provider_event_id,
                )
            )
        except Exception as exc:
            logger.exception(f"[webhooks] Hand-off failed for webhook {event.id}")
            return await self._fail(integration, event, f"Delivery failed: {exc}")

        ensure_transition(event.status, WebhookStatus.PROCESSED)
        event = await self.store.update_webhook_event(
            event.id,
            status=WebhookStatus.PROCESSED,
            normalized=normalized,
            error=None,
            processed_at=self._clock(),
        )
        await self.observability.log_event(
            integration, LogLevel.INFO,
            f"Webhook processed: {normalized.type}",
            operation="webhook_processed",
            details={"webhook_id": event.id},
        )
        logger.info(f"[webhooks] Processed {integration.connector_id} event {event.provider_event_id}")
        return IngestionResult(
            ok=True, webhook_id=event.id, status=event.status, delivered=1, normalized=normalized
        )

    async def _fail(self, integration: Integration, event: WebhookEvent, error: str) -> IngestionResult:
        ensure_transition(event.status, WebhookStatus.FAILED)
        event = await self.store.update_webhook_event(event.id, status=WebhookStatus.FAILED, error=error)
        await self.observability.log_event(
            integration, LogLevel.ERROR,
            f"Webhook processing failed: {error}",
            operation="webhook_failed",
            details={"webhook_id": event.id},
        )
        return IngestionResult(ok=False, webhook_id=event.id, status=event.status, error=error)

    async def _duplicate(self, integration: Integration, event: WebhookEvent) -> IngestionResult:
        await self.observability.log_event(
            integration, LogLevel.DEBUG,
            f"Duplicate webhook ignored: {event.provider_event_id}",
            operation="webhook_duplicate",
            details={"webhook_id": event.id},
        )
        return IngestionResult(
            ok=True,
            webhook_id=event.id,
            status=event.status,
            duplicate=True,
            normalized=event.normalized,
            error=event.error,
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def reprocess_webhook(
        self,
        event_id: str,
        tenant_id: str,
        user_id: str | None = None,
        integration_id: str | None = None,
    ) -> WebhookEvent:
        """Retry a failed (or stuck pending) event. Processed events are returned unchanged.

        The event is claimed in the store before hand-off, so concurrent
        reprocess calls from any worker deliver it at most once. A claim
        older than ``claim_timeout_seconds`` is treated as abandoned.
        """
        event = await self.store.get_webhook_event_by_id(event_id, tenant_id)
        if event is None or (integration_id is not None and event.integration_id != integration_id):
            raise WebhookEventNotFound(f"Webhook event {event_id} not found")
        if event.status == WebhookStatus.PROCESSED:
            return event

        integration = await self.store.get_integration(event.integration_id, tenant_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {event.integration_id} not found")

        now = self._clock()
        claimed = await self.store.claim_webhook_event(
            event.id,
            (WebhookStatus.FAILED, WebhookStatus.PENDING),
            now,
            stale_before=now - timedelta(seconds=self.settings.claim_timeout_seconds),
            count_retry=True,
        )
        if claimed is None:
            logger.info(f"[webhooks] Webhook {event.id} is already being processed")
            return await self.store.get_webhook_event_by_id(event.id, tenant_id)

        inbound = InboundWebhook(
            connector_id=claimed.connector_id,
            tenant_id=claimed.tenant_id,
            provider_event_id=claimed.provider_event_id,
            provider_event_type=claimed.provider_event_type,
            payload=claimed.raw_payload,
            raw_body=b"",
        )
        normalized, error = self._normalize(integration, inbound, claimed.received_at)
        await self.manager.audit.record(
            tenant_id, "webhook.reprocess", claimed.id, user_id,
            {"retry_count": claimed.retry_count}, resource_type="webhook_event",
        )
        if normalized is None:
            await self._fail(integration, claimed, error or "Normalization failed")
        else:
            await self._hand_off(integration, claimed, normalized)
        return await self.store.get_webhook_event_by_id(event_id, tenant_id)

    async def list_webhook_events(
        self,
        integration_id: str,
        tenant_id: str,
        limit: int = 50,
        status: WebhookStatus | None = None,
    ) -> list[WebhookEvent]:
        await self.manager.get_integration(integration_id, tenant_id)
        return await self.store.list_webhook_events(integration_id, tenant_id, limit=limit, status=status)

    async def simulate_webhook(
        self,
        integration_id: str,
        tenant_id: str,
        event_type: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> IngestionResult:
        """Run a mock provider delivery through the full pipeline (test mode only)."""
        integration = await self.manager.get_integration(integration_id, tenant_id)
        if not integration.test_mode:
            raise UnsupportedAction("Webhook simulation is only available in test mode")

        now = self._clock()
        mock = generate_mock_webhook(integration.connector_id, event_type, now)
        body = json.dumps(payload if payload is not None else mock.payload).encode("utf-8")
        headers = {"Content-Type": "application/json", **mock.headers}
        if integration.webhook_secret:
            headers.update(
                sign_payload(integration.connector_id, integration.webhook_secret, body, int(now.timestamp()))
            )
        logger.info(f"[webhooks] Simulating {mock.event_type} for integration {integration.id}")
        return await self.receive(
            integration.connector_id, integration.webhook_token or integration.id, headers, body
        )
