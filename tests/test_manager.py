"""Test integration lifecycle: OAuth, connect, disconnect, refresh and actions."""
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from core.integrations.errors import (
    ConfigurationError,
    ConnectorNotFound,
    DecryptionFailed,
    IntegrationNotFound,
    InvalidFieldMapping,
    NotConnected,
    OAuthStateNotFound,
    RefreshUnsupported,
)
from core.integrations.records import OAuthState, utcnow
from core.integrations.states import IntegrationStatus

GITHUB_USER = "https://api.github.com/user"
GMAIL_PROFILE = "https://gmail.googleapis.com/gmail/v1/users/me/profile"
GOOGLE_TOKEN = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE = "https://oauth2.googleapis.com/revoke"


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authorization_url_carries_state(services):
    url, state = await services.manager.build_authorization_url("t1", "gmail", "u1", "/settings")
    query = parse_qs(urlparse(url).query)
    assert query["state"] == [state]
    assert query["client_id"] == ["gmail-client"]
    assert query["access_type"] == ["offline"]
    assert query["redirect_uri"] == ["https://app.example.com/api/connectors/oauth/callback"]


@pytest.mark.asyncio
async def test_oauth_state_is_single_use(services):
    manager = services.manager
    token = await manager.generate_oauth_state("t1", "gmail", "u1", "/back")
    state = await manager.validate_oauth_state(token)
    assert (state.tenant_id, state.connector_id, state.redirect_url) == ("t1", "gmail", "/back")
    with pytest.raises(OAuthStateNotFound):
        await manager.validate_oauth_state(token)


@pytest.mark.asyncio
async def test_expired_oauth_state_rejected_and_purged(services):
    past = utcnow() - timedelta(minutes=1)
    await services.store.save_oauth_state(
        OAuthState(token="old", tenant_id="t1", connector_id="gmail", user_id=None, expires_at=past)
    )
    await services.store.save_oauth_state(
        OAuthState(token="older", tenant_id="t1", connector_id="gmail", user_id=None, expires_at=past)
    )
    with pytest.raises(OAuthStateNotFound):
        await services.manager.validate_oauth_state("old")
    assert await services.manager.purge_oauth_states() == 1


@pytest.mark.asyncio
async def test_oauth_requires_oauth_connector_and_client(build_services):
    services = build_services()
    with pytest.raises(ConfigurationError):
        await services.manager.build_authorization_url("t1", "telegram", "u1")
    with pytest.raises(ConfigurationError):
        await services.manager.build_authorization_url("t1", "jira", "u1")


@pytest.mark.asyncio
async def test_complete_oauth_connects(services, provider, audit_sink):
    provider.add("POST", GOOGLE_TOKEN, {"status_code": 200, "json": {"access_token": "ya29", "refresh_token": "r1", "expires_in": 3600}})
    provider.add("GET", GMAIL_PROFILE, {"status_code": 200, "json": {"emailAddress": "me@example.com"}})

    _, state = await services.manager.build_authorization_url("t1", "gmail", "u1", "/done")
    integration, consumed = await services.manager.complete_oauth("auth-code", state)

    assert integration.status == IntegrationStatus.CONNECTED
    assert integration.token_expires_at is not None
    assert consumed.redirect_url == "/done"
    creds = services.vault.decrypt(integration.credentials_ref)
    assert creds["access_token"] == "ya29"
    assert creds["refresh_token"] == "r1"
    assert audit_sink.actions() == ["integration.connect"]
    with pytest.raises(OAuthStateNotFound):
        await services.manager.complete_oauth("auth-code", state)


# ---------------------------------------------------------------------------
# Connect / disconnect
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_connect_unknown_connector(services):
    with pytest.raises(ConnectorNotFound):
        await services.manager.connect_integration("t1", "myspace", "u1", {"api_key": "x"})


@pytest.mark.asyncio
async def test_connect_runs_connection_test(services, provider):
    provider.add("GET", GITHUB_USER, {"status_code": 200, "json": {"login": "octocat"}})
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "gho"})
    assert integration.status == IntegrationStatus.CONNECTED
    assert integration.webhook_token
    assert integration.sync_settings == {"enabled": True, "direction": "inbound", "frequency": "1h"}
    assert len(provider.calls("GET", GITHUB_USER)) == 1


@pytest.mark.asyncio
async def test_connect_failed_check_sets_error(services, provider):
    provider.add("GET", GITHUB_USER, {"status_code": 500, "text": "oops"})
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "gho"})
    assert integration.status == IntegrationStatus.ERROR
    assert "Connection test failed" in integration.last_error


@pytest.mark.asyncio
async def test_connect_rejected_credentials_sets_auth_failed(services, provider):
    provider.add("GET", GITHUB_USER, {"status_code": 401, "json": {"message": "Bad credentials"}})
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "bad"})
    assert integration.status == IntegrationStatus.AUTH_FAILED


@pytest.mark.asyncio
async def test_test_mode_skips_connection_check(services, provider):
    integration = await services.manager.connect_integration(
        "t1", "github", "u1", {"access_token": "gho"}, {"test_mode": True}
    )
    assert integration.status == IntegrationStatus.CONNECTED
    assert integration.test_mode
    assert provider.requests == []


@pytest.mark.asyncio
async def test_reconnect_updates_in_place(services, audit_sink):
    manager = services.manager
    first = await manager.connect_integration(
        "t1", "stripe", "u1", {"secret_key": "sk_1"}, {"test_mode": True, "webhook_secret": "whsec"}
    )
    second = await manager.connect_integration("t1", "stripe", "u2", {"secret_key": "sk_2"}, {"label": "prod"})

    assert second.id == first.id
    assert second.webhook_token == first.webhook_token
    assert second.config["webhook_secret"] == "whsec"
    assert second.config["label"] == "prod"
    assert services.vault.decrypt(second.credentials_ref) == {"secret_key": "sk_2"}
    assert audit_sink.actions() == ["integration.connect", "integration.reconnect"]
    assert len(await manager.list_integrations("t1")) == 1


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(services, audit_sink):
    manager = services.manager
    integration = await manager.connect_integration("t1", "stripe", "u1", {"secret_key": "sk"}, {"test_mode": True})

    first = await manager.disconnect_integration(integration.id, "t1", "u1")
    second = await manager.disconnect_integration(integration.id, "t1", "u1")

    assert first.status == second.status == IntegrationStatus.DISCONNECTED
    assert second.deleted_at == first.deleted_at
    assert audit_sink.actions().count("integration.disconnect") == 1
    with pytest.raises(IntegrationNotFound):
        await manager.get_integration(integration.id, "t1")

    again = await manager.connect_integration("t1", "stripe", "u1", {"secret_key": "sk"}, {"test_mode": True})
    assert again.id != integration.id


@pytest.mark.asyncio
async def test_disconnect_revokes_google_tokens(services, provider):
    provider.add("GET", GMAIL_PROFILE, {"status_code": 200, "json": {"emailAddress": "me@example.com"}})
    provider.add("POST", GOOGLE_REVOKE, {"status_code": 200})
    integration = await services.manager.connect_integration(
        "t1", "gmail", "u1", {"access_token": "a", "refresh_token": "r"}
    )
    await services.manager.disconnect_integration(integration.id, "t1")
    revokes = provider.calls("POST", GOOGLE_REVOKE)
    assert len(revokes) == 1
    assert b"token=r" in revokes[0].content


@pytest.mark.asyncio
async def test_disconnect_survives_revoke_failure(services, provider):
    provider.add("GET", GMAIL_PROFILE, {"status_code": 200, "json": {"emailAddress": "me@example.com"}})
    provider.add("POST", GOOGLE_REVOKE, {"status_code": 429})
    integration = await services.manager.connect_integration("t1", "gmail", "u1", {"access_token": "a"})
    result = await services.manager.disconnect_integration(integration.id, "t1")
    assert result.status == IntegrationStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_tenant_isolation(services):
    integration = await services.manager.connect_integration("t1", "stripe", "u1", {"secret_key": "sk"}, {"test_mode": True})
    with pytest.raises(IntegrationNotFound):
        await services.manager.get_integration(integration.id, "t2")
    assert await services.manager.list_integrations("t2") == []


# ---------------------------------------------------------------------------
# Credentials, refresh and actions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_undecryptable_credentials_downgrade(services):
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "x"}, {"test_mode": True})
    integration = await services.store.update_integration(integration.id, credentials_ref="v1:corrupted")
    with pytest.raises(DecryptionFailed):
        await services.manager.load_credentials(integration)
    current = await services.manager.get_integration(integration.id, "t1")
    assert current.status == IntegrationStatus.ERROR
    assert "decryption" in current.last_error.lower()


@pytest.mark.asyncio
async def test_refresh_tokens_reencrypts(services, provider, audit_sink):
    provider.add("POST", GOOGLE_TOKEN, {"status_code": 200, "json": {"access_token": "fresh", "expires_in": 600}})
    integration = await services.manager.connect_integration(
        "t1", "gmail", "u1", {"access_token": "stale", "refresh_token": "r1"}, {"test_mode": True}
    )
    refreshed = await services.manager.refresh_integration_tokens(integration.id, "t1", "u1")
    assert services.vault.decrypt(refreshed.credentials_ref) == {
        "access_token": "fresh", "refresh_token": "r1", "expires_in": 600,
    }
    assert refreshed.token_expires_at is not None
    assert "integration.token_refresh" in audit_sink.actions()


@pytest.mark.asyncio
async def test_refresh_unsupported_keeps_status(services):
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "x"}, {"test_mode": True})
    with pytest.raises(RefreshUnsupported):
        await services.manager.refresh_integration_tokens(integration.id, "t1")
    current = await services.manager.get_integration(integration.id, "t1")
    assert current.status == IntegrationStatus.CONNECTED


@pytest.mark.asyncio
async def test_connection_test_recovers_status(services, provider):
    provider.add(
        "GET", GITHUB_USER,
        {"status_code": 500},
        {"status_code": 200, "json": {"login": "octocat"}},
    )
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "x"})
    assert integration.status == IntegrationStatus.ERROR

    result = await services.manager.test_integration_connection(integration.id, "t1", "u1")
    assert result == {"ok": True, "status": "connected", "error": None}


@pytest.mark.asyncio
async def test_failed_connection_test_is_audited(services, provider, audit_sink):
    provider.add(
        "GET", GITHUB_USER,
        {"status_code": 200, "json": {"login": "octocat"}},
        {"status_code": 401, "json": {"message": "Bad credentials"}},
    )
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "x"})
    assert integration.status == IntegrationStatus.CONNECTED

    result = await services.manager.test_integration_connection(integration.id, "t1", "u1")
    assert result["ok"] is False
    assert result["status"] == "auth_failed"

    record = audit_sink.records[-1]
    assert record.action == "integration.test"
    assert record.user_id == "u1"
    assert record.details["ok"] is False
    assert record.details["status"] == "auth_failed"
    assert "error" in record.details


@pytest.mark.asyncio
async def test_outbound_action_requires_connected(services, provider):
    provider.add("POST", "https://slack.com/api/auth.test", {"status_code": 200, "json": {"ok": False, "error": "invalid_auth"}})
    integration = await services.manager.connect_integration("t1", "slack", "u1", {"access_token": "x"})
    assert integration.status == IntegrationStatus.AUTH_FAILED
    with pytest.raises(NotConnected):
        await services.manager.perform_outbound_action(integration.id, "t1", "u1", "post_message", {"channel": "C"})


@pytest.mark.asyncio
async def test_outbound_action_logs_api_call(services, provider, audit_sink):
    provider.add("POST", "https://slack.com/api/chat.postMessage", {"status_code": 200, "json": {"ok": True, "ts": "1"}})
    integration = await services.manager.connect_integration("t1", "slack", "u1", {"access_token": "x"}, {"test_mode": True})
    result = await services.manager.perform_outbound_action(
        integration.id, "t1", "u1", "post_message", {"channel": "C1", "text": "hello"}
    )
    assert result["ok"] is True
    assert "integration.action" in audit_sink.actions()
    metrics = await services.observability.get_metrics(integration.id, "t1")
    assert metrics["api_calls_today"] == 1


@pytest.mark.asyncio
async def test_update_field_mappings(services):
    integration = await services.manager.connect_integration("t1", "github", "u1", {"access_token": "x"}, {"test_mode": True})
    updated = await services.manager.update_field_mappings(
        integration.id, "t1", "u1", [{"source_field": "title", "target_field": "subject", "transform": "strip"}]
    )
    assert updated.config["field_mappings"] == [
        {"source_field": "title", "target_field": "subject", "transform": "strip", "default": None}
    ]
    with pytest.raises(InvalidFieldMapping):
        await services.manager.update_field_mappings(integration.id, "t1", "u1", [{"source_field": "title"}])
