"""
OAuth2 authorization helpers for connectors.

- Authorization URL construction (per-provider extras such as Google's
  offline access and Atlassian's audience)
- Authorization code exchange against each provider's token endpoint,
  including the non-standard response shapes of Slack, GitHub and PayPal

State tokens (CSRF) are owned by the IntegrationManager and persisted in
the ConnectorStore; this module is stateless.
"""
from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from core.config import OAuthClient
from core.integrations.errors import AuthFailed, ConfigurationError, ConnectionFailed
from core.integrations.registry import ConnectorDefinition

logger = logging.getLogger(__name__)

GOOGLE_CONNECTORS = frozenset({"gmail", "google_calendar", "google_drive"})


def build_authorize_url(
    definition: ConnectorDefinition,
    client: OAuthClient | None,
    redirect_uri: str,
    state: str,
) -> str:
    """Provider authorization URL carrying *state*."""
    if not definition.oauth_enabled or not definition.oauth_authorize_url:
        raise ConfigurationError(f"{definition.id} does not use OAuth")
    if client is None:
        raise ConfigurationError(f"OAuth client for {definition.id} is not configured")

    separator = "," if definition.id == "slack" else " "
    params = {
        "client_id": client.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": separator.join(definition.oauth_scopes),
        "state": state,
    }
    if definition.id in GOOGLE_CONNECTORS:
        params["access_type"] = "offline"
        params["prompt"] = "consent"
    elif definition.id == "jira":
        params["audience"] = "api.atlassian.com"
        params["prompt"] = "consent"
    return f"{definition.oauth_authorize_url}?{urlencode(params)}"


class OAuthCodeExchanger:
    """Exchanges authorization codes for token sets."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 15.0):
        self._transport = transport
        self._timeout = timeout

    async def exchange_code(
        self,
        definition: ConnectorDefinition,
        client: OAuthClient | None,
        code: str,
        redirect_uri: str,
    ) -> dict[str, Any]:
        """Return a credential map with at least ``access_token``."""
        if not definition.oauth_token_url:
            raise ConfigurationError(f"{definition.id} has no token endpoint")
        if client is None:
            raise ConfigurationError(f"OAuth client for {definition.id} is not configured")

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        headers = {"Accept": "application/json"}
        auth: tuple[str, str] | None = None
        request_kwargs: dict[str, Any] = {}

        if definition.id == "paypal":
            # PayPal authenticates the client with HTTP Basic only.
            auth = (client.client_id, client.client_secret)
            request_kwargs["data"] = form
        elif definition.id == "jira":
            request_kwargs["json"] = {
                **form,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            }
        else:
            request_kwargs["data"] = {
                **form,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as http:
                resp = await http.post(
                    definition.oauth_token_url,
                    headers=headers,
                    auth=auth,
                    **request_kwargs,
                )
        except httpx.TransportError as exc:
            raise ConnectionFailed(f"{definition.id} token exchange failed: {exc}") from exc

        if not resp.is_success:
            raise AuthFailed(f"{definition.id} token exchange rejected: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except json.JSONDecodeError as exc:
            raise ConnectionFailed(f"{definition.id} token exchange: malformed response") from exc

        credentials = self._credentials_from(definition.id, data)
        logger.info(f"[oauth] Exchanged authorization code for {definition.id}")
        return credentials

    @staticmethod
    def _credentials_from(connector_id: str, data: dict[str, Any]) -> dict[str, Any]:
        if connector_id == "slack":
            if not data.get("ok"):
                raise AuthFailed(f"slack token exchange: {data.get('error', 'unknown error')}")
            user = data.get("authed_user") or {}
            access_token = data.get("access_token") or user.get("access_token")
            refresh_token = data.get("refresh_token") or user.get("refresh_token")
            extra = {"team_id": (data.get("team") or {}).get("id"), "bot_user_id": data.get("bot_user_id")}
        else:
            # GitHub reports failures with 200 + {"error": ...}
            if data.get("error"):
                raise AuthFailed(
                    f"{connector_id} token exchange: {data.get('error_description') or data['error']}"
                )
            access_token = data.get("access_token")
            refresh_token = data.get("refresh_token")
            extra = {}

        if not access_token:
            raise AuthFailed(f"{connector_id} token exchange returned no access_token")

        scope = data.get("scope")
        credentials = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": data.get("expires_in"),
            "token_type": data.get("token_type", "Bearer"),
            "scope": scope.replace(",", " ").split() if isinstance(scope, str) else scope,
            **extra,
        }
        return {k: v for k, v in credentials.items() if v is not None}
