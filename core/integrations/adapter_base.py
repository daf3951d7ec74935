"""
Connector Adapter Framework.

Every provider adapter inherits from AdapterBase. Provides:
- The uniform adapter contract (connection test, token refresh, webhook
  normalization, optional inbound sync and outbound actions)
- Rate-limit-aware retry around every outbound HTTP call (429 / Retry-After)
- Bearer auth from stored credential maps
- Provider event id / type extraction for webhook receipts
- Request statistics (latency, failures, rate-limit hits)
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urlparse

import httpx

from core.config import OAuthClient, RetrySettings
from core.integrations.errors import (
    AuthFailed,
    ConfigurationError,
    ConnectionFailed,
    RateLimited,
    RefreshUnsupported,
    SyncUnsupported,
    UnsupportedAction,
)
from core.integrations.records import NormalizedEvent, SyncPage
from core.integrations.registry import ConnectorDefinition

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass
class AdapterStats:
    """Request statistics for one adapter instance."""
    connector_id: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited: int = 0
    avg_latency_ms: float = 0.0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None

    def record(self, latency_ms: float, success: bool, error: str | None = None) -> None:
        self.total_requests += 1
        self.avg_latency_ms += (latency_ms - self.avg_latency_ms) / self.total_requests
        now = datetime.now(timezone.utc)
        if success:
            self.successful_requests += 1
            self.last_success = now
        else:
            self.failed_requests += 1
            self.last_failure = now
            self.last_error = error

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "total_requests": self.total_requests,
            "successful": self.successful_requests,
            "failed": self.failed_requests,
            "rate_limited": self.rate_limited,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def epoch_to_iso(value: Any) -> str | None:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def body_fingerprint(raw_body: bytes) -> str:
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


# ---------------------------------------------------------------------------
# AdapterBase
# ---------------------------------------------------------------------------

class AdapterBase(ABC):
    """
    Base class for all connector adapters.

    Subclasses set ``connector_id`` and implement ``test_connection`` and
    ``normalize_webhook_event``. Sync, outbound actions and revocation are
    optional overrides.
    """

    connector_id: str = ""

    def __init__(
        self,
        definition: ConnectorDefinition | None = None,
        retry: RetrySettings | None = None,
        oauth_client: OAuthClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
    ):
        self.definition = definition
        self.retry = retry or RetrySettings()
        self.oauth_client = oauth_client
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self.stats = AdapterStats(connector_id=self.connector_id)

    # --- Contract ---

    @abstractmethod
    async def test_connection(self, credentials: dict[str, Any]) -> bool:
        """Return True when the provider accepts the credentials."""

    @abstractmethod
    def normalize_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> NormalizedEvent:
        """Translate a raw provider payload. Must not perform I/O."""

    async def refresh_tokens(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """OAuth2 refresh_token grant against the connector's token endpoint."""
        definition = self.definition
        if definition is None or not definition.oauth_enabled or not definition.oauth_token_url:
            raise RefreshUnsupported(f"{self.connector_id} does not support token refresh")
        refresh_token = credentials.get("refresh_token")
        if not refresh_token:
            raise AuthFailed("No refresh token available")
        client = self._require_oauth_client()

        resp = await self.request(
            "POST",
            definition.oauth_token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client.client_id,
                "client_secret": client.client_secret,
            },
            headers={"Accept": "application/json"},
        )
        if resp.status_code in (400, 401):
            raise AuthFailed(f"Token refresh rejected: {resp.text[:200]}")
        data = self.json_body(resp, "token refresh")
        if not data.get("access_token"):
            raise AuthFailed("Token refresh response had no access_token")
        return {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token") or refresh_token,
            "expires_in": data.get("expires_in"),
        }

    async def sync_inbound(self, credentials: dict[str, Any], cursor: str | None) -> SyncPage:
        raise SyncUnsupported(f"{self.connector_id} does not support inbound sync")

    async def perform_outbound_action(
        self,
        action: str,
        credentials: dict[str, Any],
        data: dict[str, Any],
    ) -> Any:
        raise UnsupportedAction(f"Unsupported action for {self.connector_id}: {action}")

    async def revoke_tokens(self, credentials: dict[str, Any]) -> bool:
        """Revoke provider-side tokens. Returns False when the provider has no revocation."""
        return False

    @property
    def supports_inbound_sync(self) -> bool:
        return type(self).sync_inbound is not AdapterBase.sync_inbound

    # --- Webhook receipt helpers ---

    def extract_event_id(
        self,
        payload: dict[str, Any],
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> str:
        event_id = payload.get("id") if isinstance(payload, dict) else None
        if event_id not in (None, ""):
            return str(event_id)
        return body_fingerprint(raw_body)

    def extract_event_type(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str:
        event_type = payload.get("type") if isinstance(payload, dict) else None
        return str(event_type) if event_type else "unknown"

    # --- HTTP ---

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request through the retry wrapper.

        HTTP 429 and transport errors are retried up to ``retry.max_retries``
        total attempts. A running delay starts at ``retry.backoff_base``:
        a 429 doubles it before sleeping unless Retry-After replaces it, and
        a transport error sleeps the current delay then doubles it. Each
        sleep is capped at ``retry.backoff_max``. Returns the response for
        every other status.
        """
        attempts = max(1, self.retry.max_retries)
        delay = self.retry.backoff_base
        async with httpx.AsyncClient(transport=self._transport, timeout=self.retry.timeout) as client:
            for attempt in range(1, attempts + 1):
                start = time.monotonic()
                try:
                    resp = await client.request(method, url, **kwargs)
                except httpx.TransportError as exc:
                    self.stats.record((time.monotonic() - start) * 1000, False, str(exc))
                    if attempt == attempts:
                        raise ConnectionFailed(
                            f"{self.connector_id} request failed after {attempt} attempts: {exc}"
                        ) from exc
                    wait = delay
                    delay *= 2
                else:
                    latency = (time.monotonic() - start) * 1000
                    if resp.status_code != 429:
                        self.stats.record(latency, resp.is_success, None if resp.is_success else f"HTTP {resp.status_code}")
                        return resp
                    self.stats.rate_limited += 1
                    self.stats.record(latency, False, "HTTP 429")
                    if attempt == attempts:
                        raise RateLimited(
                            f"{self.connector_id} rate limited after {attempt} attempts",
                            attempts=attempt,
                        )
                    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                    delay = retry_after if retry_after is not None else delay * 2
                    wait = delay

                wait = min(wait, self.retry.backoff_max)
                logger.info(
                    f"[adapter:{self.connector_id}] Retrying {method} {urlparse(url).netloc} in {wait:.1f}s "
                    f"(attempt {attempt}/{attempts})"
                )
                await self._sleep(wait)

        raise ConnectionFailed(f"{self.connector_id} request failed")  # pragma: no cover

    async def authorized_request(
        self,
        method: str,
        url: str,
        credentials: dict[str, Any],
        **kwargs: Any,
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self.auth_headers(credentials))
        return await self.request(method, url, headers=headers, **kwargs)

    def auth_headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        token = credentials.get("access_token") or credentials.get("api_key") or credentials.get("token")
        if not token:
            raise AuthFailed(f"No usable credentials for {self.connector_id}")
        return {"Authorization": f"Bearer {token}"}

    def check_response(self, resp: httpx.Response, context: str) -> httpx.Response:
        if resp.status_code in (401, 403):
            raise AuthFailed(f"{self.connector_id} {context}: HTTP {resp.status_code}")
        if not resp.is_success:
            raise ConnectionFailed(f"{self.connector_id} {context}: HTTP {resp.status_code} {resp.text[:200]}")
        return resp

    def json_body(self, resp: httpx.Response, context: str) -> Any:
        """Checked JSON body; malformed responses become ConnectionFailed."""
        self.check_response(resp, context)
        try:
            return resp.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise ConnectionFailed(f"{self.connector_id} {context}: malformed response") from exc

    def require_fields(self, action: str, data: dict[str, Any], *names: str) -> None:
        missing = [name for name in names if data.get(name) in (None, "")]
        if missing:
            raise UnsupportedAction(f"{self.connector_id} {action} requires {', '.join(missing)}")

    def _require_oauth_client(self) -> OAuthClient:
        if self.oauth_client is None:
            raise ConfigurationError(f"OAuth client for {self.connector_id} is not configured")
        return self.oauth_client
