"""
Connector Registry: static catalog of available connectors.

Definitions are immutable and loaded at import time. Lookups return None
for unknown ids so callers decide how to surface the absence.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConnectorCategory(str, Enum):
    EMAIL = "email"
    CALENDAR = "calendar"
    MESSAGING = "messaging"
    TELEPHONY = "telephony"
    DEV_TOOLS = "dev_tools"
    PAYMENTS = "payments"
    STORAGE = "storage"
    ANALYTICS = "analytics"
    OTHER = "other"


class ConnectorLifecycle(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"
    BETA = "beta"


@dataclass(frozen=True)
class ConnectorCapabilities:
    inbound: bool = False
    outbound: bool = False
    bidirectional: bool = False
    webhooks: bool = False
    polling: bool = False
    attachments: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "inbound": self.inbound,
            "outbound": self.outbound,
            "bidirectional": self.bidirectional,
            "webhooks": self.webhooks,
            "polling": self.polling,
            "attachments": self.attachments,
        }


@dataclass(frozen=True)
class ConnectorDefinition:
    id: str
    display_name: str
    description: str
    category: ConnectorCategory
    capabilities: ConnectorCapabilities
    oauth_enabled: bool = False
    oauth_authorize_url: str | None = None
    oauth_token_url: str | None = None
    oauth_revoke_url: str | None = None
    oauth_scopes: tuple[str, ...] = ()
    api_key_required: bool = False
    webhook_supported: bool = False
    webhook_docs_url: str | None = None
    status: ConnectorLifecycle = ConnectorLifecycle.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ConnectorLifecycle.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category.value,
            "oauth_enabled": self.oauth_enabled,
            "oauth_scopes": list(self.oauth_scopes),
            "api_key_required": self.api_key_required,
            "webhook_supported": self.webhook_supported,
            "webhook_docs_url": self.webhook_docs_url,
            "capabilities": self.capabilities.to_dict(),
            "status": self.status.value,
        }


_GOOGLE_AUTH = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE = "https://oauth2.googleapis.com/revoke"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

_DEFINITIONS: tuple[ConnectorDefinition, ...] = (
    ConnectorDefinition(
        id="gmail",
        display_name="Gmail",
        description="Receive emails as tickets and send replies",
        category=ConnectorCategory.EMAIL,
        oauth_enabled=True,
        oauth_authorize_url=_GOOGLE_AUTH,
        oauth_token_url=_GOOGLE_TOKEN,
        oauth_revoke_url=_GOOGLE_REVOKE,
        oauth_scopes=(
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.send",
            "https://www.googleapis.com/auth/gmail.modify",
        ),
        webhook_supported=True,
        webhook_docs_url="https://developers.google.com/gmail/api/guides/push",
        capabilities=ConnectorCapabilities(
            inbound=True, outbound=True, webhooks=True, polling=True, attachments=True
        ),
    ),
    ConnectorDefinition(
        id="google_calendar",
        display_name="Google Calendar",
        description="Sync calendar events and create reminders for tickets",
        category=ConnectorCategory.CALENDAR,
        oauth_enabled=True,
        oauth_authorize_url=_GOOGLE_AUTH,
        oauth_token_url=_GOOGLE_TOKEN,
        oauth_revoke_url=_GOOGLE_REVOKE,
        oauth_scopes=(
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/calendar.events",
        ),
        webhook_supported=True,
        webhook_docs_url="https://developers.google.com/calendar/api/guides/push",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True, polling=True),
    ),
    ConnectorDefinition(
        id="telegram",
        display_name="Telegram",
        description="Receive and send messages through a Telegram bot",
        category=ConnectorCategory.MESSAGING,
        api_key_required=True,
        webhook_supported=True,
        webhook_docs_url="https://core.telegram.org/bots/api#setwebhook",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True, attachments=True),
    ),
    ConnectorDefinition(
        id="slack",
        display_name="Slack",
        description="Team notifications and messages from a Slack workspace",
        category=ConnectorCategory.MESSAGING,
        oauth_enabled=True,
        oauth_authorize_url="https://slack.com/oauth/v2/authorize",
        oauth_token_url="https://slack.com/api/oauth.v2.access",
        oauth_revoke_url="https://slack.com/api/auth.revoke",
        oauth_scopes=("channels:read", "chat:write", "im:read", "im:write", "users:read"),
        webhook_supported=True,
        webhook_docs_url="https://api.slack.com/apis/connections/events-api",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True, attachments=True),
    ),
    ConnectorDefinition(
        id="whatsapp",
        display_name="WhatsApp Business",
        description="WhatsApp Business messaging via Twilio or Meta",
        category=ConnectorCategory.MESSAGING,
        api_key_required=True,
        webhook_supported=True,
        webhook_docs_url="https://www.twilio.com/docs/whatsapp/webhook",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True, attachments=True),
    ),
    ConnectorDefinition(
        id="twilio",
        display_name="Twilio",
        description="Phone calls and SMS via Twilio",
        category=ConnectorCategory.TELEPHONY,
        api_key_required=True,
        webhook_supported=True,
        webhook_docs_url="https://www.twilio.com/docs/usage/webhooks",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True),
    ),
    ConnectorDefinition(
        id="github",
        display_name="GitHub",
        description="Link GitHub issues and pull requests to tickets",
        category=ConnectorCategory.DEV_TOOLS,
        oauth_enabled=True,
        oauth_authorize_url="https://github.com/login/oauth/authorize",
        oauth_token_url="https://github.com/login/oauth/access_token",
        oauth_scopes=("repo",),
        webhook_supported=True,
        webhook_docs_url="https://docs.github.com/en/webhooks",
        capabilities=ConnectorCapabilities(
            inbound=True, outbound=True, webhooks=True, bidirectional=True, polling=True
        ),
    ),
    ConnectorDefinition(
        id="jira",
        display_name="Jira",
        description="Sync tickets with Jira issues",
        category=ConnectorCategory.DEV_TOOLS,
        oauth_enabled=True,
        oauth_authorize_url="https://auth.atlassian.com/authorize",
        oauth_token_url="https://auth.atlassian.com/oauth/token",
        oauth_scopes=("read:jira-work", "write:jira-work", "offline_access"),
        webhook_supported=True,
        webhook_docs_url="https://developer.atlassian.com/cloud/jira/platform/webhooks/",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True, bidirectional=True),
    ),
    ConnectorDefinition(
        id="stripe",
        display_name="Stripe",
        description="Receive payment webhooks and link invoices to tickets",
        category=ConnectorCategory.PAYMENTS,
        api_key_required=True,
        webhook_supported=True,
        webhook_docs_url="https://stripe.com/docs/webhooks",
        capabilities=ConnectorCapabilities(inbound=True, webhooks=True),
    ),
    ConnectorDefinition(
        id="paypal",
        display_name="PayPal",
        description="Receive PayPal payment webhooks",
        category=ConnectorCategory.PAYMENTS,
        oauth_enabled=True,
        oauth_authorize_url="https://www.paypal.com/connect",
        oauth_token_url="https://api-m.paypal.com/v1/oauth2/token",
        oauth_scopes=("https://uri.paypal.com/services/invoicing",),
        webhook_supported=True,
        webhook_docs_url="https://developer.paypal.com/api/rest/webhooks/",
        capabilities=ConnectorCapabilities(inbound=True, webhooks=True),
    ),
    ConnectorDefinition(
        id="google_drive",
        display_name="Google Drive",
        description="Sync file attachments with Google Drive",
        category=ConnectorCategory.STORAGE,
        oauth_enabled=True,
        oauth_authorize_url=_GOOGLE_AUTH,
        oauth_token_url=_GOOGLE_TOKEN,
        oauth_revoke_url=_GOOGLE_REVOKE,
        oauth_scopes=(
            "https://www.googleapis.com/auth/drive.readonly",
            "https://www.googleapis.com/auth/drive.file",
        ),
        webhook_supported=True,
        webhook_docs_url="https://developers.google.com/drive/api/guides/push",
        capabilities=ConnectorCapabilities(inbound=True, outbound=True, webhooks=True, attachments=True),
    ),
    ConnectorDefinition(
        id="generic_webhook",
        display_name="Generic Webhook",
        description="Receive signed webhooks from any service",
        category=ConnectorCategory.OTHER,
        webhook_supported=True,
        capabilities=ConnectorCapabilities(inbound=True, webhooks=True),
    ),
)


class ConnectorRegistry:
    """Read-only lookup over connector definitions."""

    def __init__(self, definitions: tuple[ConnectorDefinition, ...] = _DEFINITIONS):
        self._definitions: dict[str, ConnectorDefinition] = {d.id: d for d in definitions}

    def get(self, connector_id: str) -> ConnectorDefinition | None:
        return self._definitions.get(connector_id)

    def list_all(self) -> list[ConnectorDefinition]:
        return list(self._definitions.values())

    def list_active(self) -> list[ConnectorDefinition]:
        return [d for d in self._definitions.values() if d.is_active]

    def list_by_category(self, category: ConnectorCategory | str) -> list[ConnectorDefinition]:
        """Active connectors in *category*; unknown categories yield an empty list."""
        value = category.value if isinstance(category, ConnectorCategory) else category
        return [d for d in self.list_active() if d.category.value == value]

    def __contains__(self, connector_id: str) -> bool:
        return connector_id in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


def oauth_connector_ids() -> list[str]:
    return [d.id for d in _DEFINITIONS if d.oauth_enabled]
