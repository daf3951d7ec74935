"""Dataclass-based configuration for the connector engine.

Every tunable lives on a frozen dataclass with a sensible default, and
`ConnectorSettings.from_env()` builds the whole tree from environment
variables at process start. Services receive the settings object they
need; nothing reads os.environ after startup.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta


# ---------------------------------------------------------------------------
# Nested config sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VaultSettings:
    """Credential vault secret; None means the dev key is used."""

    encryption_key: str | None = None


@dataclass(frozen=True)
class RetrySettings:
    """Rate-limit-aware retry wrapper for outbound provider calls."""

    max_retries: int = 3  # total attempts
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 30.0
    timeout: float = 30.0


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class OAuthSettings:
    redirect_uri: str = "http://localhost:8000/api/connectors/oauth/callback"
    success_redirect: str = "/integrations"
    state_ttl_seconds: int = 600
    clients: dict[str, OAuthClient] = field(default_factory=dict)

    def client_for(self, connector_id: str) -> OAuthClient | None:
        return self.clients.get(connector_id)


@dataclass(frozen=True)
class WebhookSettings:
    timestamp_tolerance_seconds: int = 300
    # A processing claim older than this can be taken over by reprocess.
    claim_timeout_seconds: int = 300


@dataclass(frozen=True)
class SyncSettings:
    scheduler_interval_seconds: int = 300
    default_frequency: str = "1h"
    max_pages_per_job: int = 10
    oauth_purge_interval_seconds: int = 60
    health_check_interval_seconds: int = 900


@dataclass(frozen=True)
class AlertSettings:
    error_threshold: int = 10  # errors today
    stale_sync_hours: int = 24
    recent_error_minutes: int = 60


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectorSettings:
    """Complete configuration for the connector engine.

    Usage::

        settings = ConnectorSettings.from_env()
        vault = CredentialVault(settings.vault.encryption_key)
    """

    vault: VaultSettings = field(default_factory=VaultSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    webhooks: WebhookSettings = field(default_factory=WebhookSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    store_backend: str = "sql"

    @classmethod
    def default(cls) -> "ConnectorSettings":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, connector_ids: list[str] | None = None) -> "ConnectorSettings":
        """Create config from environment variables.

        OAuth clients are read as ``{CONNECTOR}_CLIENT_ID`` and
        ``{CONNECTOR}_CLIENT_SECRET`` for each id in *connector_ids*
        (defaults to every OAuth connector in the registry).
        """
        if connector_ids is None:
            from core.integrations.registry import oauth_connector_ids

            connector_ids = oauth_connector_ids()

        clients = {}
        for connector_id in connector_ids:
            prefix = connector_id.upper()
            client_id = os.getenv(f"{prefix}_CLIENT_ID")
            client_secret = os.getenv(f"{prefix}_CLIENT_SECRET")
            if client_id and client_secret:
                clients[connector_id] = OAuthClient(client_id, client_secret)

        defaults_oauth = OAuthSettings()
        defaults_retry = RetrySettings()
        defaults_sync = SyncSettings()
        defaults_alerts = AlertSettings()

        return cls(
            vault=VaultSettings(encryption_key=os.getenv("CREDENTIAL_ENCRYPTION_KEY") or None),
            retry=RetrySettings(
                max_retries=int(os.getenv("ADAPTER_MAX_RETRIES", defaults_retry.max_retries)),
                backoff_base=float(os.getenv("ADAPTER_BACKOFF_BASE", defaults_retry.backoff_base)),
                backoff_max=float(os.getenv("ADAPTER_BACKOFF_MAX", defaults_retry.backoff_max)),
                timeout=float(os.getenv("ADAPTER_TIMEOUT", defaults_retry.timeout)),
            ),
            oauth=OAuthSettings(
                redirect_uri=os.getenv("OAUTH_REDIRECT_URI", defaults_oauth.redirect_uri),
                success_redirect=os.getenv("OAUTH_SUCCESS_REDIRECT", defaults_oauth.success_redirect),
                state_ttl_seconds=int(os.getenv("OAUTH_STATE_TTL_SECONDS", defaults_oauth.state_ttl_seconds)),
                clients=clients,
            ),
            webhooks=WebhookSettings(
                timestamp_tolerance_seconds=int(os.getenv("WEBHOOK_TIMESTAMP_TOLERANCE", "300")),
                claim_timeout_seconds=int(os.getenv("WEBHOOK_CLAIM_TIMEOUT", "300")),
            ),
            sync=SyncSettings(
                scheduler_interval_seconds=int(
                    os.getenv("SYNC_SCHEDULER_INTERVAL", defaults_sync.scheduler_interval_seconds)
                ),
                default_frequency=os.getenv("SYNC_DEFAULT_FREQUENCY", defaults_sync.default_frequency),
                max_pages_per_job=int(os.getenv("SYNC_MAX_PAGES", defaults_sync.max_pages_per_job)),
            ),
            alerts=AlertSettings(
                error_threshold=int(os.getenv("ALERT_ERROR_THRESHOLD", defaults_alerts.error_threshold)),
                stale_sync_hours=int(os.getenv("ALERT_STALE_SYNC_HOURS", defaults_alerts.stale_sync_hours)),
                recent_error_minutes=int(
                    os.getenv("ALERT_RECENT_ERROR_MINUTES", defaults_alerts.recent_error_minutes)
                ),
            ),
            store_backend=os.getenv("CONNECTOR_STORE", "sql").lower(),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_FREQUENCY_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_frequency(value: str | None, default: str = "1h") -> timedelta:
    """Parse a sync frequency like ``15m`` or ``1h``.

    Invalid or missing values fall back to *default*.
    """
    match = _FREQUENCY_RE.match((value or "").strip())
    if not match or int(match.group(1)) == 0:
        match = _FREQUENCY_RE.match(default)
        if not match:
            return timedelta(hours=1)
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])
