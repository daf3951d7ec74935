"""
Provider adapters keyed by connector id.

The adapter set is chosen once at startup by `AdapterRegistry.build()`.
Connectors without an adapter (for example ``generic_webhook``) fall back
to generic passthrough normalization in the ingestion pipeline.
"""
from __future__ import annotations

from typing import Any

import httpx

from core.config import ConnectorSettings
from core.integrations.adapter_base import AdapterBase, SleepFn
from core.integrations.adapters.github import GitHubAdapter
from core.integrations.adapters.gmail import GmailAdapter
from core.integrations.adapters.slack import SlackAdapter
from core.integrations.adapters.stripe import StripeAdapter
from core.integrations.adapters.telegram import TelegramAdapter
from core.integrations.registry import ConnectorRegistry

ADAPTER_CLASSES: dict[str, type[AdapterBase]] = {
    cls.connector_id: cls
    for cls in (GmailAdapter, SlackAdapter, GitHubAdapter, StripeAdapter, TelegramAdapter)
}


class AdapterRegistry:
    """Lookup of adapter instances by connector id."""

    def __init__(self, adapters: list[AdapterBase] | None = None):
        self._adapters: dict[str, AdapterBase] = {}
        for adapter in adapters or []:
            self.register(adapter)

    @classmethod
    def build(
        cls,
        registry: ConnectorRegistry,
        settings: ConnectorSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
    ) -> "AdapterRegistry":
        adapters = [
            adapter_cls(
                definition=registry.get(connector_id),
                retry=settings.retry,
                oauth_client=settings.oauth.client_for(connector_id),
                transport=transport,
                sleep=sleep,
            )
            for connector_id, adapter_cls in ADAPTER_CLASSES.items()
            if connector_id in registry
        ]
        return cls(adapters)

    def register(self, adapter: AdapterBase) -> None:
        self._adapters[adapter.connector_id] = adapter

    def get(self, connector_id: str) -> AdapterBase | None:
        return self._adapters.get(connector_id)

    def __contains__(self, connector_id: str) -> bool:
        return connector_id in self._adapters

    def stats(self) -> list[dict[str, Any]]:
        return [adapter.stats.to_dict() for adapter in self._adapters.values()]


__all__ = [
    "ADAPTER_CLASSES",
    "AdapterRegistry",
    "GitHubAdapter",
    "GmailAdapter",
    "SlackAdapter",
    "StripeAdapter",
    "TelegramAdapter",
]
