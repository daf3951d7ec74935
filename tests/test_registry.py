"""Test connector catalog and lifecycle state machines."""
import pytest

from core.config import parse_frequency
from core.integrations.errors import InvalidTransition
from core.integrations.registry import ConnectorCategory, ConnectorRegistry, oauth_connector_ids
from core.integrations.states import (
    IntegrationStatus,
    SyncStatus,
    WebhookStatus,
    can_transition,
    ensure_transition,
    get_allowed_transitions,
)


def test_registry_lookup():
    registry = ConnectorRegistry()
    gmail = registry.get("gmail")
    assert gmail is not None
    assert gmail.oauth_enabled
    assert gmail.capabilities.inbound
    assert registry.get("nope") is None
    assert "stripe" in registry


def test_registry_category_filter():
    registry = ConnectorRegistry()
    messaging = {d.id for d in registry.list_by_category(ConnectorCategory.MESSAGING)}
    assert {"slack", "telegram", "whatsapp"} <= messaging
    assert registry.list_by_category("messaging") == registry.list_by_category(ConnectorCategory.MESSAGING)
    assert registry.list_by_category("unknown") == []


def test_definition_to_dict():
    data = ConnectorRegistry().get("slack").to_dict()
    assert data["category"] == "messaging"
    assert data["capabilities"]["webhooks"] is True
    assert "client_secret" not in data


def test_oauth_connector_ids():
    ids = oauth_connector_ids()
    assert "gmail" in ids and "github" in ids
    assert "stripe" not in ids


def test_integration_transitions():
    assert can_transition(IntegrationStatus.CONNECTED, IntegrationStatus.ERROR)
    assert can_transition(IntegrationStatus.AUTH_FAILED, IntegrationStatus.CONNECTED)
    assert not can_transition(IntegrationStatus.DISCONNECTED, IntegrationStatus.CONNECTED)
    assert get_allowed_transitions(IntegrationStatus.DISCONNECTED) == []


def test_webhook_transitions():
    assert can_transition(WebhookStatus.PENDING, WebhookStatus.PROCESSED)
    assert can_transition(WebhookStatus.FAILED, WebhookStatus.PROCESSED)
    assert not can_transition(WebhookStatus.PROCESSED, WebhookStatus.FAILED)
    assert can_transition(WebhookStatus.FAILED, WebhookStatus.PROCESSING)
    assert not can_transition(WebhookStatus.PROCESSED, WebhookStatus.PROCESSING)


def test_sync_transitions():
    assert ensure_transition(SyncStatus.PENDING, SyncStatus.RUNNING) == SyncStatus.RUNNING
    with pytest.raises(InvalidTransition):
        ensure_transition(SyncStatus.COMPLETED, SyncStatus.RUNNING)
    assert not can_transition(SyncStatus.PENDING, WebhookStatus.PROCESSED)


def test_parse_frequency():
    assert parse_frequency("15m").total_seconds() == 900
    assert parse_frequency("2h").total_seconds() == 7200
    assert parse_frequency("1d").total_seconds() == 86400
    assert parse_frequency("bogus").total_seconds() == 3600
    assert parse_frequency("0m", default="30m").total_seconds() == 1800
    assert parse_frequency(None).total_seconds() == 3600
