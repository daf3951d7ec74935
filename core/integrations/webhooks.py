"""
Inbound webhook signature schemes.

Verifies provider signatures over the exact raw request body:
- GitHub: X-Hub-Signature-256 (sha256=) with X-Hub-Signature (sha1=) fallback
- Slack: X-Slack-Signature v0 over "v0:{timestamp}:{body}"
- Stripe: Stripe-Signature t=...,v1=... over "{t}.{body}"
- Generic: X-Webhook-Signature / X-Signature, prefixed or bare hex

All digest comparisons are constant-time. The matching `sign_*` helpers
produce headers a provider would send and are used by webhook simulation.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Mapping

SLACK_VERSION = "v0"

_ALGORITHMS = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}
_HEX_LENGTHS = {64: "sha256", 40: "sha1"}

SIGNATURE_HEADERS: dict[str, tuple[str, ...]] = {
    "github": ("x-hub-signature-256", "x-hub-signature"),
    "slack": ("x-slack-signature",),
    "stripe": ("stripe-signature",),
}
GENERIC_SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")
TIMESTAMP_HEADERS = {"slack": "x-slack-request-timestamp"}


def _digest(secret: str, message: bytes, algorithm: str = "sha256") -> str:
    return hmac.new(secret.encode("utf-8"), message, _ALGORITHMS[algorithm]).hexdigest()


def _matches(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("ascii", "ignore"))


def _within_tolerance(timestamp: str | None, tolerance: int, now: float | None) -> bool:
    try:
        sent = int(str(timestamp).strip())
    except (TypeError, ValueError):
        return False
    now = time.time() if now is None else now
    return abs(now - sent) <= tolerance


def _split_prefixed(signature: str) -> tuple[str, str] | None:
    """Return (algorithm, hex) for ``sha256=...`` / ``sha1=...`` / bare hex."""
    signature = signature.strip()
    prefix, sep, value = signature.partition("=")
    if sep and prefix.lower() in _ALGORITHMS:
        return prefix.lower(), value
    algorithm = _HEX_LENGTHS.get(len(signature))
    if algorithm is None:
        return None
    return algorithm, signature


# ---------------------------------------------------------------------------
# Header extraction
# ---------------------------------------------------------------------------

def extract_signature(connector_id: str, headers: Mapping[str, str]) -> tuple[str | None, str | None]:
    """Return (signature, timestamp) from request headers for *connector_id*."""
    lowered = {k.lower(): v for k, v in headers.items()}
    names = SIGNATURE_HEADERS.get(connector_id, GENERIC_SIGNATURE_HEADERS)
    signature = next((lowered[name] for name in names if lowered.get(name)), None)
    timestamp_header = TIMESTAMP_HEADERS.get(connector_id)
    timestamp = lowered.get(timestamp_header) if timestamp_header else None
    return signature, timestamp


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def verify_hmac(secret: str, body: bytes, signature: str) -> bool:
    """Generic scheme: ``sha256=<hex>``, ``sha1=<hex>`` or bare hex."""
    parsed = _split_prefixed(signature)
    if parsed is None:
        return False
    algorithm, value = parsed
    return _matches(_digest(secret, body, algorithm), value)


def verify_slack(
    secret: str,
    body: bytes,
    signature: str,
    timestamp: str | None,
    tolerance: int = 300,
    now: float | None = None,
) -> bool:
    if not timestamp or not _within_tolerance(timestamp, tolerance, now):
        return False
    version, sep, value = signature.partition("=")
    if not sep or version != SLACK_VERSION:
        return False
    base = f"{SLACK_VERSION}:{timestamp}:".encode("utf-8") + body
    return _matches(_digest(secret, base), value)


def parse_stripe_header(header: str) -> tuple[str | None, list[str]]:
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe(
    secret: str,
    body: bytes,
    header: str,
    tolerance: int = 300,
    now: float | None = None,
) -> bool:
    timestamp, signatures = parse_stripe_header(header)
    if not timestamp or not signatures or not _within_tolerance(timestamp, tolerance, now):
        return False
    expected = _digest(secret, f"{timestamp}.".encode("utf-8") + body)
    # Evaluate every candidate so timing does not depend on which one matched.
    results = [_matches(expected, candidate) for candidate in signatures]
    return any(results)


def verify_signature(
    connector_id: str,
    secret: str,
    body: bytes,
    signature: str,
    timestamp: str | None = None,
    tolerance: int = 300,
    now: float | None = None,
) -> bool:
    """Dispatch to the connector's scheme."""
    if connector_id == "slack":
        return verify_slack(secret, body, signature, timestamp, tolerance, now)
    if connector_id == "stripe":
        return verify_stripe(secret, body, signature, tolerance, now)
    return verify_hmac(secret, body, signature)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------

def sign_payload(
    connector_id: str,
    secret: str,
    body: bytes,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Headers a provider would send for *body*."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    if connector_id == "github":
        return {"X-Hub-Signature-256": f"sha256={_digest(secret, body)}"}
    if connector_id == "slack":
        base = f"{SLACK_VERSION}:{timestamp}:".encode("utf-8") + body
        return {
            "X-Slack-Signature": f"{SLACK_VERSION}={_digest(secret, base)}",
            "X-Slack-Request-Timestamp": str(timestamp),
        }
    if connector_id == "stripe":
        digest = _digest(secret, f"{timestamp}.".encode("utf-8") + body)
        return {"Stripe-Signature": f"t={timestamp},v1={digest}"}
    return {"X-Webhook-Signature": f"sha256={_digest(secret, body)}"}
