"""Shared fixtures: an in-memory engine wired to a fake provider transport."""
from collections import defaultdict

import httpx
import pytest

from core.config import ConnectorSettings, OAuthClient, OAuthSettings, VaultSettings
from core.integrations.audit import InMemoryAuditSink
from core.integrations.services import ConnectorServices
from core.integrations.store import InMemoryConnectorStore


class FakeProvider:
    """Routes httpx requests by (method, url without query) to canned responses.

    A route holds a list of responses consumed in order; the last one repeats.
    Entries are dicts of httpx.Response kwargs or callables taking the request.
    """

    def __init__(self):
        self.routes = defaultdict(list)
        self.requests = []

    def add(self, method, url, *responses):
        self.routes[(method.upper(), url)].extend(responses)
        return self

    def handler(self, request):
        self.requests.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        queue = self.routes.get((request.method, url))
        if not queue:
            return httpx.Response(404, json={"error": "no route"})
        planned = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(planned):
            return planned(request)
        return httpx.Response(**planned)

    def calls(self, method, url):
        return [
            r for r in self.requests
            if r.method == method.upper() and f"{r.url.scheme}://{r.url.host}{r.url.path}" == url
        ]


def make_settings(**overrides):
    values = {
        "vault": VaultSettings(encryption_key="test-encryption-key"),
        "oauth": OAuthSettings(
            redirect_uri="https://app.example.com/api/connectors/oauth/callback",
            clients={
                "gmail": OAuthClient("gmail-client", "gmail-secret"),
                "slack": OAuthClient("slack-client", "slack-secret"),
                "github": OAuthClient("github-client", "github-secret"),
            },
        ),
        "store_backend": "memory",
    }
    values.update(overrides)
    return ConnectorSettings(**values)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def build_services(provider, sleeps, audit_sink):
    """Factory so a test can swap the sink, processor or store."""

    async def sleep(seconds):
        sleeps.append(seconds)

    def build(**kwargs):
        kwargs.setdefault("settings", make_settings())
        kwargs.setdefault("store", InMemoryConnectorStore())
        kwargs.setdefault("audit", audit_sink)
        return ConnectorServices.build(
            transport=httpx.MockTransport(provider.handler),
            sleep=sleep,
            **kwargs,
        )

    return build


@pytest.fixture
def services(build_services):
    return build_services()
