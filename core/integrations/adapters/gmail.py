"""Gmail adapter: Pub/Sub push notifications, message sync and sending."""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
from collections.abc import Mapping
from datetime import datetime
from email.message import EmailMessage
from typing import Any

from core.integrations.adapter_base import AdapterBase
from core.integrations.errors import ConnectionFailed, NormalizationFailed, UnsupportedAction
from core.integrations.records import NormalizedEvent, SyncPage

API_ROOT = "https://gmail.googleapis.com/gmail/v1/users/me"
PAGE_SIZE = 50


class GmailAdapter(AdapterBase):
    connector_id = "gmail"

    async def test_connection(self, credentials: dict[str, Any]) -> bool:
        resp = await self.authorized_request("GET", f"{API_ROOT}/profile", credentials)
        profile = self.json_body(resp, "profile lookup")
        if not isinstance(profile, dict) or not profile.get("emailAddress"):
            raise ConnectionFailed("gmail profile lookup: malformed response")
        return True

    def normalize_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> NormalizedEvent:
        message = payload.get("message") or {}
        if message.get("data"):
            try:
                decoded = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
            except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise NormalizationFailed(f"Undecodable Pub/Sub message data: {exc}") from exc
            return NormalizedEvent(
                type="email.received",
                data={
                    "message_id": message.get("messageId"),
                    "history_id": decoded.get("historyId"),
                    "email_address": decoded.get("emailAddress"),
                },
                timestamp=message.get("publishTime") or received_at.isoformat(),
            )
        return NormalizedEvent(
            type=event_type or "email.unknown",
            data=payload,
            timestamp=received_at.isoformat(),
        )

    def extract_event_id(self, payload: dict[str, Any], headers: Mapping[str, str], raw_body: bytes) -> str:
        message = payload.get("message") or {}
        if message.get("messageId"):
            return str(message["messageId"])
        return super().extract_event_id(payload, headers, raw_body)

    def extract_event_type(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str:
        if (payload.get("message") or {}).get("data"):
            return "email.received"
        return super().extract_event_type(payload, headers)

    async def sync_inbound(self, credentials: dict[str, Any], cursor: str | None) -> SyncPage:
        params: dict[str, Any] = {"maxResults": PAGE_SIZE}
        if cursor:
            params["pageToken"] = cursor
        resp = await self.authorized_request("GET", f"{API_ROOT}/messages", credentials, params=params)
        listing = self.json_body(resp, "message listing")

        async def fetch(message_id: str) -> dict[str, Any]:
            detail = await self.authorized_request("GET", f"{API_ROOT}/messages/{message_id}", credentials)
            return self.json_body(detail, "message fetch")

        details = await asyncio.gather(*(fetch(m["id"]) for m in listing.get("messages") or []))
        items = [
            {
                "id": msg.get("id"),
                "thread_id": msg.get("threadId"),
                "snippet": msg.get("snippet"),
                "label_ids": msg.get("labelIds", []),
                "internal_date": msg.get("internalDate"),
                "payload": msg.get("payload"),
            }
            for msg in details
        ]
        return SyncPage(items=items, next_cursor=listing.get("nextPageToken"))

    async def perform_outbound_action(
        self,
        action: str,
        credentials: dict[str, Any],
        data: dict[str, Any],
    ) -> Any:
        if action != "send_email":
            raise UnsupportedAction(f"Unsupported action for gmail: {action}")
        self.require_fields(action, data, "to")
        message = EmailMessage()
        message["To"] = data["to"]
        message["Subject"] = data.get("subject", "")
        if data.get("from"):
            message["From"] = data["from"]
        message.set_content(data.get("body", ""))
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")

        body: dict[str, Any] = {"raw": raw}
        if data.get("thread_id"):
            body["threadId"] = data["thread_id"]
        resp = await self.authorized_request("POST", f"{API_ROOT}/messages/send", credentials, json=body)
        return self.json_body(resp, "send_email")

    async def revoke_tokens(self, credentials: dict[str, Any]) -> bool:
        token = credentials.get("refresh_token") or credentials.get("access_token")
        if not token or self.definition is None or not self.definition.oauth_revoke_url:
            return False
        resp = await self.request(
            "POST",
            self.definition.oauth_revoke_url,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return resp.is_success
