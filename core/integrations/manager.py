"""
Integration lifecycle management.

The IntegrationManager is the only component that touches plaintext
credentials. It owns:
- OAuth state tokens (single-use, time-boxed CSRF protection)
- connect / reconnect / disconnect of a tenant's integration
- connection tests and token refresh, with status bookkeeping
- outbound actions through the connector's adapter

Status changes always go through `states.ensure_transition`. Credential
failures and provider errors downgrade an integration to ``error`` (or
``auth_failed``); they never delete it.

Vault work runs in a worker thread so a slow key derivation or a large
blob never blocks the event loop that serves webhook traffic.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from core.config import ConnectorSettings
from core.integrations.adapter_base import AdapterBase
from core.integrations.adapters import AdapterRegistry
from core.integrations.audit import AuditTrail
from core.integrations.errors import (
    AuthFailed,
    ConfigurationError,
    ConnectionFailed,
    ConnectorError,
    ConnectorNotFound,
    ConnectorUnavailable,
    DecryptionFailed,
    IntegrationNotFound,
    NotConnected,
    OAuthStateNotFound,
    RateLimited,
    UnsupportedAction,
)
from core.integrations.normalizer import parse_mappings
from core.integrations.oauth_manager import OAuthCodeExchanger, build_authorize_url
from core.integrations.observability import API_CALL, RATE_LIMITED, ObservabilityService
from core.integrations.records import Integration, OAuthState, utcnow
from core.integrations.registry import ConnectorDefinition, ConnectorRegistry
from core.integrations.states import IntegrationStatus, LogLevel, ensure_transition
from core.integrations.store import ConnectorStore
from core.integrations.vault import CredentialVault

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IntegrationManager:
    def __init__(
        self,
        store: ConnectorStore,
        vault: CredentialVault,
        registry: ConnectorRegistry,
        adapters: AdapterRegistry,
        observability: ObservabilityService,
        settings: ConnectorSettings | None = None,
        audit: AuditTrail | None = None,
        exchanger: OAuthCodeExchanger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.adapters = adapters
        self.observability = observability
        self.settings = settings or ConnectorSettings.default()
        self.audit = audit or AuditTrail()
        self.exchanger = exchanger or OAuthCodeExchanger()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_definition(self, connector_id: str) -> ConnectorDefinition:
        definition = self.registry.get(connector_id)
        if definition is None:
            raise ConnectorNotFound(f"Connector {connector_id} not found")
        return definition

    def get_adapter(self, connector_id: str) -> AdapterBase | None:
        return self.adapters.get(connector_id)

    def require_adapter(self, connector_id: str) -> AdapterBase:
        adapter = self.adapters.get(connector_id)
        if adapter is None:
            raise UnsupportedAction(f"No adapter available for {connector_id}")
        return adapter

    async def get_integration(self, integration_id: str, tenant_id: str) -> Integration:
        integration = await self.store.get_integration(integration_id, tenant_id)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        return integration

    async def list_integrations(
        self, tenant_id: str, status: IntegrationStatus | None = None
    ) -> list[Integration]:
        return await self.store.list_integrations(tenant_id=tenant_id, status=status)

    async def find_webhook_integration(self, connector_id: str, token: str) -> Integration:
        """Resolve the integration addressed by a webhook URL token."""
        integration = await self.store.find_integration_by_webhook_token(connector_id, token)
        if integration is None:
            raise IntegrationNotFound(f"No {connector_id} integration for this webhook URL")
        return integration

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def generate_oauth_state(
        self,
        tenant_id: str,
        connector_id: str,
        user_id: str | None,
        redirect_url: str | None = None,
    ) -> str:
        token = secrets.token_urlsafe(32)
        now = self._clock()
        await self.store.save_oauth_state(
            OAuthState(
                token=token,
                tenant_id=tenant_id,
                connector_id=connector_id,
                user_id=user_id,
                expires_at=now + timedelta(seconds=self.settings.oauth.state_ttl_seconds),
                redirect_url=redirect_url,
                created_at=now,
            )
        )
        return token

    async def validate_oauth_state(self, token: str) -> OAuthState:
        """Consume *token*. A second call with the same token raises OAuthStateNotFound."""
        state = await self.store.consume_oauth_state(token, self._clock())
        if state is None:
            raise OAuthStateNotFound("OAuth state is invalid, expired or already used")
        return state

    async def purge_oauth_states(self) -> int:
        purged = await self.store.purge_expired_oauth_states(self._clock())
        if purged:
            logger.info(f"[oauth] Purged {purged} expired OAuth states")
        return purged

    async def build_authorization_url(
        self,
        tenant_id: str,
        connector_id: str,
        user_id: str | None,
        redirect_url: str | None = None,
    ) -> tuple[str, str]:
        """Return (authorization_url, state) for an OAuth connector."""
        definition = self._require_active(connector_id)
        client = self.settings.oauth.client_for(connector_id)
        if not definition.oauth_enabled:
            raise ConfigurationError(f"{connector_id} does not use OAuth")
        if client is None:
            raise ConfigurationError(f"OAuth client for {connector_id} is not configured")

        state = await self.generate_oauth_state(tenant_id, connector_id, user_id, redirect_url)
        url = build_authorize_url(definition, client, self.settings.oauth.redirect_uri, state)
        return url, state

    async def complete_oauth(self, code: str, state_token: str) -> tuple[Integration, OAuthState]:
        """Validate state, exchange the code and connect. Returns (integration, state)."""
        state = await self.validate_oauth_state(state_token)
        definition = self._require_active(state.connector_id)
        credentials = await self.exchanger.exchange_code(
            definition,
            self.settings.oauth.client_for(definition.id),
            code,
            self.settings.oauth.redirect_uri,
        )
        integration = await self.connect_integration(
            state.tenant_id, state.connector_id, state.user_id, credentials
        )
        return integration, state

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def _default_config(self, connector_id: str) -> dict[str, Any]:
        adapter = self.adapters.get(connector_id)
        return {
            "test_mode": False,
            "sync_settings": {
                "enabled": bool(adapter and adapter.supports_inbound_sync),
                "direction": "inbound",
                "frequency": self.settings.sync.default_frequency,
            },
        }

    async def connect_integration(
        self,
        tenant_id: str,
        connector_id: str,
        user_id: str | None,
        credentials: dict[str, Any],
        config: dict[str, Any] | None = None,
    ) -> Integration:
        """Create or update the tenant's integration for *connector_id*.

        Reconnecting updates the live row in place. The connection test that
        follows is non-fatal: a failure leaves the integration in ``error``.
        Test-mode integrations skip it.
        """
        self._require_active(connector_id)
        config = config or {}

        existing = await self.store.get_active_integration(tenant_id, connector_id)
        merged = self._default_config(connector_id)
        if existing is not None:
            ensure_transition(existing.status, IntegrationStatus.CONNECTED)
            merged.update(existing.config)
        sync_settings = {**merged["sync_settings"], **(config.get("sync_settings") or {})}
        merged.update(config)
        merged["sync_settings"] = sync_settings
        merged.setdefault("webhook_token", secrets.token_urlsafe(24))

        credentials_ref = await asyncio.to_thread(self.vault.encrypt, credentials)
        now = self._clock()
        integration, created = await self.store.upsert_integration(
            Integration(
                tenant_id=tenant_id,
                connector_id=connector_id,
                credentials_ref=credentials_ref,
                config=merged,
                status=IntegrationStatus.CONNECTED,
                created_by=user_id,
                token_expires_at=self._expiry(credentials, now),
                created_at=now,
                updated_at=now,
            )
        )

        action = "integration.connect" if created else "integration.reconnect"
        await self.audit.record(
            tenant_id, action, integration.id, user_id,
            {"connector_id": connector_id, "test_mode": integration.test_mode},
        )
        await self.observability.log_event(
            integration, LogLevel.INFO,
            "Integration connected" if created else "Integration reconnected",
            operation="connect",
        )

        if integration.test_mode:
            logger.info(f"[manager] {connector_id} connected in test mode for tenant {tenant_id}")
            return integration

        adapter = self.adapters.get(connector_id)
        if adapter is None:
            return integration
        try:
            ok = await self.call_adapter(integration, "test_connection", adapter.test_connection(credentials))
        except AuthFailed as exc:
            return await self.mark_error(integration, str(exc), IntegrationStatus.AUTH_FAILED)
        except ConnectorError as exc:
            return await self.mark_error(integration, f"Connection test failed: {exc}")
        if not ok:
            return await self.mark_error(integration, "Connection test failed")
        return integration

    async def disconnect_integration(
        self, integration_id: str, tenant_id: str, user_id: str | None = None
    ) -> Integration:
        """Revoke provider tokens (best effort) and soft-delete. Safe to repeat."""
        integration = await self.store.get_integration(integration_id, tenant_id, include_deleted=True)
        if integration is None:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        if integration.is_deleted:
            return integration

        await self._revoke(integration)

        ensure_transition(integration.status, IntegrationStatus.DISCONNECTED)
        integration = await self.store.update_integration(
            integration.id,
            status=IntegrationStatus.DISCONNECTED,
            deleted_at=self._clock(),
        )
        await self.audit.record(
            tenant_id, "integration.disconnect", integration.id, user_id,
            {"connector_id": integration.connector_id},
        )
        await self.observability.log_event(
            integration, LogLevel.INFO, "Integration disconnected", operation="disconnect"
        )
        return integration

    async def _revoke(self, integration: Integration) -> None:
        adapter = self.adapters.get(integration.connector_id)
        if adapter is None or integration.test_mode:
            return
        try:
            credentials = await asyncio.to_thread(self.vault.decrypt, integration.credentials_ref)
            revoked = await adapter.revoke_tokens(credentials)
        except ConnectorError as exc:
            logger.warning(f"[manager] Token revocation failed for {integration.id}: {exc}")
            return
        if revoked:
            logger.info(f"[manager] Revoked provider tokens for {integration.id}")

    # ------------------------------------------------------------------
    # Credentials and status
    # ------------------------------------------------------------------

    async def load_credentials(self, integration: Integration) -> dict[str, Any]:
        """Decrypt credentials. A failure downgrades the integration to error."""
        try:
            return await asyncio.to_thread(self.vault.decrypt, integration.credentials_ref)
        except DecryptionFailed as exc:
            await self.mark_error(integration, f"Credential decryption failed: {exc}")
            raise

    async def mark_error(
        self,
        integration: Integration,
        message: str,
        status: IntegrationStatus = IntegrationStatus.ERROR,
    ) -> Integration:
        ensure_transition(integration.status, status)
        updated = await self.store.update_integration(
            integration.id,
            status=status,
            last_error=message,
            last_error_at=self._clock(),
        )
        await self.observability.log_event(updated, LogLevel.ERROR, message, operation="status")
        return updated

    async def mark_connected(self, integration: Integration) -> Integration:
        ensure_transition(integration.status, IntegrationStatus.CONNECTED)
        if integration.status == IntegrationStatus.CONNECTED and not integration.last_error:
            return integration
        return await self.store.update_integration(
            integration.id, status=IntegrationStatus.CONNECTED, last_error=None
        )

    async def record_event_received(self, integration: Integration, at: datetime | None = None) -> None:
        await self.store.update_integration(integration.id, last_event_at=at or self._clock())

    async def downgrade(self, integration: Integration, exc: ConnectorError) -> Integration:
        if isinstance(exc, AuthFailed):
            return await self.mark_error(integration, str(exc), IntegrationStatus.AUTH_FAILED)
        return await self.mark_error(integration, str(exc))

    # ------------------------------------------------------------------
    # Adapter-backed operations
    # ------------------------------------------------------------------

    async def test_integration_connection(
        self, integration_id: str, tenant_id: str, user_id: str | None = None
    ) -> dict[str, Any]:
        integration = await self.get_integration(integration_id, tenant_id)
        adapter = self.get_adapter(integration.connector_id)
        if adapter is None:
            return {"ok": True, "status": integration.status.value, "message": "No live test for this connector"}

        error: str | None = None
        try:
            credentials = await self.load_credentials(integration)
            ok = await self.call_adapter(integration, "test_connection", adapter.test_connection(credentials))
        except DecryptionFailed as exc:
            ok, error = False, str(exc)
            integration = await self.get_integration(integration_id, tenant_id)
        except (AuthFailed, ConnectionFailed, RateLimited) as exc:
            ok, error = False, str(exc)
            integration = await self.downgrade(integration, exc)
        else:
            if ok:
                integration = await self.mark_connected(integration)
            else:
                error = "Connection test failed"
                integration = await self.mark_error(integration, error)

        details: dict[str, Any] = {"ok": ok, "status": integration.status.value}
        if error:
            details["error"] = error
        await self.audit.record(tenant_id, "integration.test", integration.id, user_id, details)
        return {"ok": ok, "status": integration.status.value, "error": error}

    async def refresh_integration_tokens(
        self, integration_id: str, tenant_id: str, user_id: str | None = None
    ) -> Integration:
        integration = await self.get_integration(integration_id, tenant_id)
        adapter = self.require_adapter(integration.connector_id)
        credentials = await self.load_credentials(integration)

        try:
            tokens = await self.call_adapter(integration, "refresh_tokens", adapter.refresh_tokens(credentials))
        except (AuthFailed, ConnectionFailed, RateLimited) as exc:
            await self.downgrade(integration, exc)
            raise

        merged = {**credentials, **{k: v for k, v in tokens.items() if v is not None}}
        credentials_ref = await asyncio.to_thread(self.vault.encrypt, merged)
        ensure_transition(integration.status, IntegrationStatus.CONNECTED)
        integration = await self.store.update_integration(
            integration.id,
            credentials_ref=credentials_ref,
            token_expires_at=self._expiry(tokens, self._clock()),
            status=IntegrationStatus.CONNECTED,
            last_error=None,
        )
        await self.audit.record(tenant_id, "integration.token_refresh", integration.id, user_id)
        await self.observability.log_event(
            integration, LogLevel.INFO, "Tokens refreshed", operation="token_refresh"
        )
        return integration

    async def perform_outbound_action(
        self,
        integration_id: str,
        tenant_id: str,
        user_id: str | None,
        action: str,
        data: dict[str, Any],
    ) -> Any:
        integration = await self.get_integration(integration_id, tenant_id)
        if integration.status != IntegrationStatus.CONNECTED:
            raise NotConnected(f"Integration {integration_id} is {integration.status.value}")
        adapter = self.require_adapter(integration.connector_id)
        credentials = await self.load_credentials(integration)

        try:
            result = await self.call_adapter(
                integration, f"action:{action}", adapter.perform_outbound_action(action, credentials, data)
            )
        except (AuthFailed, ConnectionFailed) as exc:
            await self.downgrade(integration, exc)
            raise

        await self.audit.record(
            tenant_id, "integration.action", integration.id, user_id, {"action": action}
        )
        return result

    async def update_field_mappings(
        self,
        integration_id: str,
        tenant_id: str,
        user_id: str | None,
        mappings: list[dict[str, Any]],
    ) -> Integration:
        integration = await self.get_integration(integration_id, tenant_id)
        parsed = parse_mappings(mappings)
        config = {**integration.config, "field_mappings": [m.to_dict() for m in parsed]}
        integration = await self.store.update_integration(integration.id, config=config)
        await self.audit.record(
            tenant_id, "integration.mappings_update", integration.id, user_id, {"count": len(parsed)}
        )
        return integration

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_active(self, connector_id: str) -> ConnectorDefinition:
        definition = self.get_definition(connector_id)
        if not definition.is_active:
            raise ConnectorUnavailable(f"Connector {connector_id} is {definition.status.value}")
        return definition

    @staticmethod
    def _expiry(tokens: dict[str, Any], now: datetime) -> datetime | None:
        try:
            seconds = int(tokens.get("expires_in") or 0)
        except (TypeError, ValueError):
            return None
        return now + timedelta(seconds=seconds) if seconds > 0 else None

    async def call_adapter(self, integration: Integration, operation: str, call: Awaitable[T]) -> T:
        """Await an adapter call, logging it as an API call with its duration."""
        start = time.monotonic()
        try:
            return await call
        except RateLimited as exc:
            await self.observability.log_event(
                integration, LogLevel.WARN, f"Rate limited during {operation}",
                operation=RATE_LIMITED, details={"attempts": exc.attempts},
            )
            raise
        finally:
            await self.observability.log_event(
                integration, LogLevel.DEBUG, operation,
                operation=API_CALL,
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )
