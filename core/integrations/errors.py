"""
Connector error taxonomy.

Every failure the engine surfaces to callers is a ConnectorError subclass.
The HTTP layer maps them to responses via `status_code` and `code`, so
routes never need to translate errors themselves.
"""
from __future__ import annotations


class ConnectorError(Exception):
    """Base class for all connector engine errors."""

    status_code: int = 500
    code: str = "connector_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFound(ConnectorError):
    status_code = 404
    code = "not_found"


class ConnectorNotFound(NotFound):
    code = "connector_not_found"


class IntegrationNotFound(NotFound):
    code = "integration_not_found"


class OAuthStateNotFound(NotFound):
    code = "oauth_state_not_found"


class SyncJobNotFound(NotFound):
    code = "sync_job_not_found"


class AlertNotFound(NotFound):
    code = "alert_not_found"


class WebhookEventNotFound(NotFound):
    code = "webhook_event_not_found"


# ---------------------------------------------------------------------------
# Lifecycle / input
# ---------------------------------------------------------------------------

class NotConnected(ConnectorError):
    status_code = 409
    code = "not_connected"


class ConnectorUnavailable(ConnectorError):
    status_code = 400
    code = "connector_unavailable"


class SyncInProgress(ConnectorError):
    status_code = 409
    code = "sync_in_progress"


class InvalidTransition(ConnectorError, ValueError):
    status_code = 409
    code = "invalid_transition"


class UnsupportedAction(ConnectorError):
    status_code = 400
    code = "unsupported_action"


class SyncUnsupported(ConnectorError):
    status_code = 400
    code = "sync_unsupported"


class InvalidFieldMapping(ConnectorError):
    status_code = 400
    code = "invalid_field_mapping"


class ConfigurationError(ConnectorError):
    status_code = 500
    code = "configuration_error"


# ---------------------------------------------------------------------------
# Untrusted input
# ---------------------------------------------------------------------------

class InvalidSignature(ConnectorError):
    """Webhook signature missing (401) or not matching (403)."""

    code = "invalid_signature"

    def __init__(self, message: str = "", missing: bool = False):
        super().__init__(message or ("Signature required" if missing else "Signature mismatch"))
        self.missing = missing
        self.status_code = 401 if missing else 403


class AuthFailed(ConnectorError):
    status_code = 401
    code = "auth_failed"


# ---------------------------------------------------------------------------
# Provider / data integrity
# ---------------------------------------------------------------------------

class RateLimited(ConnectorError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "", attempts: int = 0):
        super().__init__(message or f"Rate limited after {attempts} attempts")
        self.attempts = attempts


class DecryptionFailed(ConnectorError):
    status_code = 500
    code = "decryption_failed"


class ConnectionFailed(ConnectorError):
    status_code = 502
    code = "connection_failed"


class RefreshUnsupported(ConnectorError):
    status_code = 400
    code = "refresh_unsupported"


class NormalizationFailed(ConnectorError):
    status_code = 500
    code = "normalization_failed"
