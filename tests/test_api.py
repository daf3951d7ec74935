"""Test the HTTP surface through FastAPI's TestClient."""
import json
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from core.integrations.webhooks import sign_payload

ADMIN = {"X-Tenant-ID": "t1", "X-User-ID": "u1", "X-User-Role": "tenant_admin"}
MEMBER = {"X-Tenant-ID": "t1", "X-User-ID": "u2", "X-User-Role": "agent"}
SECRET = "whsec_api"


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def create_stripe(client, **config):
    resp = client.post(
        "/api/integrations",
        json={"connector_id": "stripe", "credentials": {"secret_key": "sk"}, "config": {"test_mode": True, **config}},
        headers=ADMIN,
    )
    assert resp.status_code == 201
    return resp.json()


def stripe_body(event_id="evt_api"):
    return json.dumps({"id": event_id, "type": "charge.succeeded", "data": {"object": {"id": "ch_1"}}}).encode()


async def mark_error(services, integration_id):
    integration = await services.manager.get_integration(integration_id, "t1")
    await services.manager.mark_error(integration, "provider down")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def test_health_and_root(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert "gmail" in client.get("/").json()["connectors"]


def test_list_connectors(client):
    resp = client.get("/api/connectors")
    assert resp.status_code == 200
    ids = [c["id"] for c in resp.json()["data"]]
    assert "stripe" in ids and "slack" in ids

    payments = client.get("/api/connectors", params={"category": "payments"}).json()["data"]
    assert {c["id"] for c in payments} >= {"stripe"}
    assert all(c["category"] == "payments" for c in payments)


def test_unknown_connector(client):
    assert client.get("/api/connectors/nope").status_code == 404


def test_adapter_stats_count_rate_limits(client, provider):
    provider.add("GET", "https://api.github.com/user", {"status_code": 429})
    created = client.post(
        "/api/integrations",
        json={"connector_id": "github", "credentials": {"access_token": "gho"}},
        headers=ADMIN,
    )
    assert created.status_code == 201
    assert created.json()["status"] == "error"

    assert client.get("/api/connectors/stats", headers=MEMBER).status_code == 403
    stats = {s["connector_id"]: s for s in client.get("/api/connectors/stats", headers=ADMIN).json()["data"]}
    assert stats["github"]["total_requests"] == 3
    assert stats["github"]["rate_limited"] == 3
    assert stats["github"]["failed"] == 3
    assert stats["stripe"]["total_requests"] == 0


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------

def test_mutations_require_admin(client):
    resp = client.post(
        "/api/integrations",
        json={"connector_id": "stripe", "credentials": {"secret_key": "sk"}},
        headers=MEMBER,
    )
    assert resp.status_code == 403


def test_create_and_read_integration(client):
    created = create_stripe(client, webhook_secret=SECRET)
    assert created["status"] == "connected"
    assert "credentials_ref" not in created
    assert "webhook_secret" not in created["config"]
    assert created["config"]["webhook_secret_configured"] is True

    listed = client.get("/api/integrations", headers=MEMBER).json()["data"]
    assert [i["id"] for i in listed] == [created["id"]]
    assert client.get(f"/api/integrations/{created['id']}", headers=MEMBER).status_code == 200


def test_other_tenant_cannot_see_integration(client):
    created = create_stripe(client)
    other = {**ADMIN, "X-Tenant-ID": "t2"}
    resp = client.get(f"/api/integrations/{created['id']}", headers=other)
    assert resp.status_code == 404
    assert resp.json()["code"] == "integration_not_found"
    assert client.get("/api/integrations", headers=other).json()["data"] == []


def test_oauth_create_returns_authorization_url(client):
    resp = client.post(
        "/api/integrations",
        json={"connector_id": "slack", "redirect_url": "/settings/integrations"},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    body = resp.json()
    query = parse_qs(urlparse(body["authorization_url"]).query)
    assert query["state"] == [body["state"]]
    assert query["client_id"] == ["slack-client"]


def test_credentials_required_without_oauth(client):
    resp = client.post("/api/integrations", json={"connector_id": "telegram"}, headers=ADMIN)
    assert resp.status_code == 400


def test_absolute_redirect_rejected(client):
    resp = client.post(
        "/api/integrations",
        json={"connector_id": "slack", "redirect_url": "https://evil.example.com"},
        headers=ADMIN,
    )
    assert resp.status_code == 422


def test_oauth_callback_errors_redirect(client):
    resp = client.get("/api/connectors/oauth/callback", params={"code": "c"}, follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/integrations?error=missing_state"

    resp = client.get(
        "/api/connectors/oauth/callback", params={"code": "c", "state": "forged"}, follow_redirects=False
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "/integrations?error=invalid_state"


def test_oauth_denied_consumes_state(client):
    started = client.post(
        "/api/integrations",
        json={"connector_id": "slack", "redirect_url": "/settings"},
        headers=ADMIN,
    ).json()
    params = {"state": started["state"], "error": "access_denied"}
    resp = client.get("/api/connectors/oauth/callback", params=params, follow_redirects=False)
    assert resp.headers["location"] == "/settings?error=access_denied"

    resp = client.get(
        "/api/connectors/oauth/callback",
        params={"state": started["state"], "code": "c"},
        follow_redirects=False,
    )
    assert resp.headers["location"] == "/integrations?error=invalid_state"


def test_revoke_is_idempotent(client):
    created = create_stripe(client)
    first = client.post(f"/api/integrations/{created['id']}/revoke", headers=ADMIN)
    second = client.post(f"/api/integrations/{created['id']}/revoke", headers=ADMIN)
    assert first.status_code == second.status_code == 200
    assert second.json()["status"] == "disconnected"
    assert client.get(f"/api/integrations/{created['id']}", headers=ADMIN).status_code == 404


def test_invalid_mapping_rejected(client):
    created = create_stripe(client)
    resp = client.put(
        f"/api/integrations/{created['id']}/mappings",
        json={"mappings": [{"source_field": "a", "target_field": "b", "transform": "explode"}]},
        headers=ADMIN,
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_field_mapping"


def test_action_missing_field_is_400(client):
    created = client.post(
        "/api/integrations",
        json={"connector_id": "github", "credentials": {"access_token": "gho"}, "config": {"test_mode": True}},
        headers=ADMIN,
    ).json()
    resp = client.post(
        f"/api/integrations/{created['id']}/actions",
        json={"action": "create_issue", "data": {"repository": "octo/repo"}},
        headers=ADMIN,
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "unsupported_action"


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def test_signed_webhook_accepted(client, services):
    created = create_stripe(client, webhook_secret=SECRET)
    token = created["config"]["webhook_token"]
    body = stripe_body()

    resp = client.post(f"/api/webhooks/stripe/{token}", content=body, headers=sign_payload("stripe", SECRET, body))
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["event"]["type"] == "stripe.charge.succeeded"

    again = client.post(f"/api/webhooks/stripe/{token}", content=body, headers=sign_payload("stripe", SECRET, body))
    assert again.json()["duplicate"] is True
    assert len(services.sink.drain_nowait()) == 1

    events = client.get(f"/api/integrations/{created['id']}/webhooks", headers=ADMIN).json()["data"]
    assert len(events) == 1


def test_webhook_signature_failures(client):
    created = create_stripe(client, webhook_secret=SECRET)
    token = created["config"]["webhook_token"]
    headers = sign_payload("stripe", SECRET, stripe_body())

    tampered = client.post(f"/api/webhooks/stripe/{token}", content=stripe_body("evt_other"), headers=headers)
    assert tampered.status_code == 403
    assert tampered.json()["code"] == "invalid_signature"

    missing = client.post(f"/api/webhooks/stripe/{token}", content=stripe_body())
    assert missing.status_code == 401


def test_webhook_unknown_token(client):
    assert client.post("/api/webhooks/stripe/missing", content=stripe_body()).status_code == 404


def test_failed_webhook_returns_500_and_reprocess(client):
    created = client.post(
        "/api/integrations",
        json={"connector_id": "gmail", "credentials": {"access_token": "a"}, "config": {"test_mode": True}},
        headers=ADMIN,
    ).json()
    body = json.dumps({"message": {"data": "%%%", "messageId": "m-api"}}).encode()

    resp = client.post(f"/api/webhooks/gmail/{created['config']['webhook_token']}", content=body)
    assert resp.status_code == 500
    assert resp.json()["ok"] is False
    assert resp.json()["status"] == "failed"

    webhook_id = resp.json()["webhook_id"]
    reprocessed = client.post(
        f"/api/integrations/{created['id']}/webhooks/{webhook_id}/reprocess", headers=ADMIN
    ).json()
    assert reprocessed["status"] == "failed"
    assert reprocessed["retry_count"] == 1


def test_simulate_route(client):
    created = create_stripe(client, webhook_secret=SECRET)
    resp = client.post(f"/api/integrations/{created['id']}/simulate", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


# ---------------------------------------------------------------------------
# Sync jobs, observability and alerts
# ---------------------------------------------------------------------------

def test_sync_unsupported_is_400(client):
    created = create_stripe(client)
    resp = client.post(f"/api/integrations/{created['id']}/sync", headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["code"] == "sync_unsupported"


def test_sync_job_routes(client, provider):
    provider.add("GET", "https://api.github.com/issues", {"status_code": 200, "json": [{"id": 1, "title": "A"}]})
    created = client.post(
        "/api/integrations",
        json={"connector_id": "github", "credentials": {"access_token": "gho"}, "config": {"test_mode": True}},
        headers=ADMIN,
    ).json()

    resp = client.post(f"/api/integrations/{created['id']}/sync", json={"sync_type": "full"}, headers=ADMIN)
    assert resp.status_code == 202
    job_id = resp.json()["id"]

    cancel = client.post(f"/api/sync-jobs/{job_id}/cancel", headers=ADMIN)
    assert cancel.status_code == 200
    assert client.post("/api/sync-jobs/missing/cancel", headers=ADMIN).status_code == 404

    jobs = client.get(f"/api/integrations/{created['id']}/sync-jobs", headers=ADMIN).json()["data"]
    assert [job["id"] for job in jobs] == [job_id]


def test_logs_metrics_health_and_alerts(client, services):
    created = create_stripe(client)
    integration_id = created["id"]

    logs = client.get(f"/api/integrations/{integration_id}/logs", params={"limit": 5}, headers=ADMIN).json()["data"]
    assert logs[0]["message"] == "Integration connected"
    assert client.get(f"/api/integrations/{integration_id}/logs", params={"limit": 0}, headers=ADMIN).status_code == 422

    metrics = client.get(f"/api/integrations/{integration_id}/metrics", headers=ADMIN).json()
    assert metrics["status"] == "connected"

    client.portal.call(mark_error, services, integration_id)
    health = client.get(f"/api/integrations/{integration_id}/health", headers=ADMIN).json()
    assert health["healthy"] is False

    alerts = client.get("/api/alerts", headers=ADMIN).json()["data"]
    assert {a["kind"] for a in alerts} == {"status", "recent_error"}

    acked = client.post(f"/api/alerts/{alerts[0]['id']}/acknowledge", headers=ADMIN)
    assert acked.json()["acknowledged"] is True
    assert len(client.get("/api/alerts", headers=ADMIN).json()["data"]) == 1
    assert len(client.get("/api/alerts", params={"include_acknowledged": True}, headers=ADMIN).json()["data"]) == 2
