"""Telegram bot adapter: update normalization and message sending."""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from core.integrations.adapter_base import AdapterBase, epoch_to_iso
from core.integrations.errors import AuthFailed, ConnectionFailed, RefreshUnsupported, UnsupportedAction
from core.integrations.records import NormalizedEvent

API_ROOT = "https://api.telegram.org"

_UPDATE_KINDS = ("message", "edited_message", "channel_post", "callback_query")


class TelegramAdapter(AdapterBase):
    connector_id = "telegram"

    def _bot_url(self, credentials: dict[str, Any], method: str) -> str:
        token = credentials.get("bot_token") or credentials.get("api_key")
        if not token:
            raise AuthFailed("Telegram bot token required")
        return f"{API_ROOT}/bot{token}/{method}"

    async def test_connection(self, credentials: dict[str, Any]) -> bool:
        resp = await self.request("GET", self._bot_url(credentials, "getMe"))
        data = self.json_body(resp, "getMe")
        if not isinstance(data, dict):
            raise ConnectionFailed("telegram getMe: malformed response")
        return bool(data.get("ok") and data.get("result"))

    async def refresh_tokens(self, credentials: dict[str, Any]) -> dict[str, Any]:
        raise RefreshUnsupported("Telegram bot tokens cannot be refreshed")

    def normalize_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> NormalizedEvent:
        message = payload.get("message") or payload.get("edited_message")
        if isinstance(message, dict):
            return NormalizedEvent(
                type="message.edited" if "edited_message" in payload else "message.received",
                data={
                    "message_id": message.get("message_id"),
                    "chat_id": (message.get("chat") or {}).get("id"),
                    "from_id": (message.get("from") or {}).get("id"),
                    "text": message.get("text"),
                    "date": message.get("date"),
                },
                timestamp=epoch_to_iso(message.get("date")) or received_at.isoformat(),
            )
        query = payload.get("callback_query")
        if isinstance(query, dict):
            return NormalizedEvent(
                type="callback.received",
                data={
                    "query_id": query.get("id"),
                    "message_id": (query.get("message") or {}).get("message_id"),
                    "from_id": (query.get("from") or {}).get("id"),
                    "data": query.get("data"),
                },
                timestamp=received_at.isoformat(),
            )
        return NormalizedEvent(
            type=event_type or "telegram.unknown",
            data=payload,
            timestamp=received_at.isoformat(),
        )

    def extract_event_id(self, payload: dict[str, Any], headers: Mapping[str, str], raw_body: bytes) -> str:
        if payload.get("update_id") is not None:
            return str(payload["update_id"])
        return super().extract_event_id(payload, headers, raw_body)

    def extract_event_type(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str:
        for kind in _UPDATE_KINDS:
            if kind in payload:
                return kind
        return super().extract_event_type(payload, headers)

    async def perform_outbound_action(
        self,
        action: str,
        credentials: dict[str, Any],
        data: dict[str, Any],
    ) -> Any:
        if action != "send_message":
            raise UnsupportedAction(f"Unsupported action for telegram: {action}")
        self.require_fields(action, data, "chat_id", "text")
        body = {
            "chat_id": data["chat_id"],
            "text": data["text"],
            "parse_mode": data.get("parse_mode", "HTML"),
            "reply_to_message_id": data.get("reply_to_message_id"),
        }
        resp = await self.request(
            "POST",
            self._bot_url(credentials, "sendMessage"),
            json={k: v for k, v in body.items() if v is not None},
        )
        return self.json_body(resp, "sendMessage")
