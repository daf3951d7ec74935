"""Mock provider webhooks for integrations in test mode.

Each mock carries a fresh provider event id, so repeated simulations are
distinct deliveries rather than duplicates.
"""
from __future__ import annotations

import base64
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

DEFAULT_EVENT_TYPES = {
    "gmail": "email.received",
    "slack": "message.received",
    "github": "issues",
    "stripe": "payment_intent.succeeded",
    "telegram": "message.received",
}


@dataclass
class MockWebhook:
    event_type: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _gmail(event_type: str, now: datetime, event_id: str) -> MockWebhook:
    notification = {"emailAddress": "test@example.com", "historyId": str(int(now.timestamp()))}
    return MockWebhook(
        event_type,
        {
            "message": {
                "data": base64.b64encode(json.dumps(notification).encode("utf-8")).decode("ascii"),
                "messageId": event_id,
                "publishTime": now.isoformat(),
            },
            "subscription": "projects/test/subscriptions/gmail",
        },
    )


def _slack(event_type: str, now: datetime, event_id: str) -> MockWebhook:
    ts = f"{now.timestamp():.6f}"
    return MockWebhook(
        event_type,
        {
            "type": "event_callback",
            "event_id": event_id,
            "team_id": "T123456",
            "event": {
                "type": "message",
                "text": "Test message",
                "user": "U123456",
                "channel": "C123456",
                "ts": ts,
                "event_ts": ts,
            },
        },
    )


def _github(event_type: str, now: datetime, event_id: str) -> MockWebhook:
    return MockWebhook(
        event_type,
        {
            "action": "opened",
            "issue": {
                "id": 12345,
                "number": 1,
                "title": "Test Issue",
                "body": "This is a test issue",
                "state": "open",
                "html_url": "https://github.com/test/repo/issues/1",
                "created_at": now.isoformat(),
            },
            "repository": {"full_name": "test/repo"},
            "sender": {"login": "testuser"},
        },
        headers={"X-GitHub-Event": event_type, "X-GitHub-Delivery": event_id},
    )


def _stripe(event_type: str, now: datetime, event_id: str) -> MockWebhook:
    return MockWebhook(
        event_type,
        {
            "id": f"evt_{event_id.replace('-', '')[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(now.timestamp()),
            "data": {
                "object": {
                    "id": "pi_test123",
                    "amount": 2000,
                    "currency": "usd",
                    "status": "succeeded",
                    "customer": "cus_test123",
                    "metadata": {},
                }
            },
        },
    )


def _telegram(event_type: str, now: datetime, event_id: str) -> MockWebhook:
    return MockWebhook(
        event_type,
        {
            "update_id": uuid.UUID(event_id).int % 10**9,
            "message": {
                "message_id": uuid.UUID(event_id).int % 10**6,
                "chat": {"id": 123456789, "type": "private"},
                "from": {"id": 987654321, "first_name": "Test", "username": "testuser"},
                "text": "Test message",
                "date": int(now.timestamp()),
            },
        },
    )


_BUILDERS = {
    "gmail": _gmail,
    "slack": _slack,
    "github": _github,
    "stripe": _stripe,
    "telegram": _telegram,
}


def generate_mock_webhook(connector_id: str, event_type: str | None, now: datetime) -> MockWebhook:
    event_type = event_type or DEFAULT_EVENT_TYPES.get(connector_id, f"{connector_id}.test")
    event_id = str(uuid.uuid4())
    builder = _BUILDERS.get(connector_id)
    if builder is not None:
        return builder(event_type, now, event_id)
    return MockWebhook(
        event_type,
        {"id": f"mock_{event_id}", "type": event_type, "timestamp": now.isoformat()},
    )
