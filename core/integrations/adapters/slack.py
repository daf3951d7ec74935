"""Slack adapter: Events API normalization and message posting."""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from core.integrations.adapter_base import AdapterBase, epoch_to_iso
from core.integrations.errors import AuthFailed, ConnectionFailed, UnsupportedAction
from core.integrations.records import NormalizedEvent

API_ROOT = "https://slack.com/api"

_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_revoked", "token_expired", "account_inactive"}


class SlackAdapter(AdapterBase):
    connector_id = "slack"

    async def test_connection(self, credentials: dict[str, Any]) -> bool:
        resp = await self.authorized_request("POST", f"{API_ROOT}/auth.test", credentials)
        data = self.json_body(resp, "auth.test")
        if not isinstance(data, dict):
            raise ConnectionFailed("slack auth.test: malformed response")
        if not data.get("ok"):
            if data.get("error") in _AUTH_ERRORS:
                raise AuthFailed(f"slack auth.test: {data['error']}")
            return False
        return bool(data.get("user_id"))

    def normalize_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> NormalizedEvent:
        event = payload.get("event")
        if isinstance(event, dict):
            return NormalizedEvent(
                type=f"slack.{event.get('type', 'unknown')}",
                data={
                    "event_ts": event.get("event_ts"),
                    "channel": event.get("channel"),
                    "user": event.get("user"),
                    "text": event.get("text"),
                    "ts": event.get("ts"),
                    "thread_ts": event.get("thread_ts"),
                    "team": payload.get("team_id"),
                },
                timestamp=epoch_to_iso(event.get("event_ts")) or received_at.isoformat(),
            )
        if payload.get("text") is not None and payload.get("command") is None:
            return NormalizedEvent(
                type="message.received",
                data={
                    "text": payload.get("text"),
                    "channel": payload.get("channel_name"),
                    "user": payload.get("user_name"),
                    "timestamp": payload.get("timestamp"),
                },
                timestamp=epoch_to_iso(payload.get("timestamp")) or received_at.isoformat(),
            )
        return NormalizedEvent(
            type=event_type or "slack.unknown",
            data=payload,
            timestamp=received_at.isoformat(),
        )

    def extract_event_id(self, payload: dict[str, Any], headers: Mapping[str, str], raw_body: bytes) -> str:
        if payload.get("event_id"):
            return str(payload["event_id"])
        return super().extract_event_id(payload, headers, raw_body)

    def extract_event_type(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str:
        event = payload.get("event")
        if isinstance(event, dict) and event.get("type"):
            return str(event["type"])
        return super().extract_event_type(payload, headers)

    async def perform_outbound_action(
        self,
        action: str,
        credentials: dict[str, Any],
        data: dict[str, Any],
    ) -> Any:
        if action != "post_message":
            raise UnsupportedAction(f"Unsupported action for slack: {action}")
        self.require_fields(action, data, "channel")
        body = {
            "channel": data["channel"],
            "text": data.get("text"),
            "blocks": data.get("blocks"),
            "thread_ts": data.get("thread_ts"),
        }
        resp = await self.authorized_request(
            "POST",
            f"{API_ROOT}/chat.postMessage",
            credentials,
            json={k: v for k, v in body.items() if v is not None},
        )
        result = self.json_body(resp, "chat.postMessage")
        if not result.get("ok"):
            raise ConnectionFailed(f"Slack API error: {result.get('error')}")
        return result

    async def revoke_tokens(self, credentials: dict[str, Any]) -> bool:
        if not credentials.get("access_token"):
            return False
        resp = await self.authorized_request("POST", f"{API_ROOT}/auth.revoke", credentials)
        return bool(self.json_body(resp, "auth.revoke").get("revoked"))
