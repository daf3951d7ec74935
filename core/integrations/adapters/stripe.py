"""Stripe adapter: payment event webhooks."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from core.integrations.adapter_base import AdapterBase, epoch_to_iso
from core.integrations.errors import AuthFailed, ConnectionFailed, RefreshUnsupported
from core.integrations.records import NormalizedEvent

API_ROOT = "https://api.stripe.com/v1"


class StripeAdapter(AdapterBase):
    connector_id = "stripe"

    def auth_headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        secret_key = credentials.get("secret_key") or credentials.get("api_key")
        if not secret_key:
            raise AuthFailed("Stripe secret key required")
        return {"Authorization": f"Bearer {secret_key}"}

    async def test_connection(self, credentials: dict[str, Any]) -> bool:
        resp = await self.authorized_request("GET", f"{API_ROOT}/account", credentials)
        account = self.json_body(resp, "account lookup")
        if not isinstance(account, dict) or not account.get("id"):
            raise ConnectionFailed("stripe account lookup: malformed response")
        return True

    async def refresh_tokens(self, credentials: dict[str, Any]) -> dict[str, Any]:
        raise RefreshUnsupported("Stripe secret keys cannot be refreshed")

    def normalize_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> NormalizedEvent:
        obj = (payload.get("data") or {}).get("object") or payload
        event_type = event_type or payload.get("type") or "unknown"
        return NormalizedEvent(
            type=f"stripe.{event_type}",
            data={
                "id": obj.get("id"),
                "object": obj.get("object"),
                "type": event_type,
                "amount": obj.get("amount"),
                "currency": obj.get("currency"),
                "customer": obj.get("customer"),
                "status": obj.get("status"),
                "metadata": obj.get("metadata") or {},
            },
            timestamp=epoch_to_iso(payload.get("created")) or received_at.isoformat(),
        )
