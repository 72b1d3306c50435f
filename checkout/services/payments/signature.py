"""
Gateway callback authentication.

Accepted, in order:
- HMAC-SHA256 of the raw body with WEBHOOK_SECRET in X-Signature / X-Webhook-Signature,
  either the bare hex digest or "t=<unix>,v1=<hex>" (timestamp checked against tolerance);
- x-api-key equal to the gateway API key.
With no secret configured, non-production environments accept unsigned callbacks.
"""
import hashlib
import hmac
import logging
import time

from checkout.core.config import settings

logger = logging.getLogger(__name__)


def parse_signature_header(header: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep and key and value:
            parts[key.strip()] = value.strip()
    return parts


def _timestamp_fresh(raw_ts: str, tolerance: int, now: float | None = None) -> bool:
    try:
        ts = int(raw_ts)
    except ValueError:
        return False
    now = now if now is not None else time.time()
    return abs(now - ts) <= tolerance


def verify_hmac_signature(
    raw_body: bytes,
    signature: str | None,
    secret: str,
    tolerance: int | None = None,
    now: float | None = None,
) -> bool:
    if not signature or not secret:
        return False
    parsed = parse_signature_header(signature)
    provided = parsed.get("v1") or parsed.get("sha256") or signature.strip()
    timestamp = parsed.get("t")
    if timestamp is not None:
        tol = tolerance if tolerance is not None else settings.webhook_timestamp_tolerance_seconds
        if not _timestamp_fresh(timestamp, tol, now):
            logger.warning("webhook_signature_stale", extra={"reason": "timestamp_outside_tolerance"})
            return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8"))


def verify_webhook_request(
    raw_body: bytes,
    signature: str | None,
    api_key: str | None,
    now: float | None = None,
) -> bool:
    secret = settings.webhook_secret
    if secret and verify_hmac_signature(raw_body, signature, secret, now=now):
        return True
    gateway_key = settings.zenopay_api_key
    if api_key and gateway_key and hmac.compare_digest(api_key.encode("utf-8"), gateway_key.encode("utf-8")):
        return True
    if not secret and not settings.is_production:
        logger.warning("webhook_unsigned_accepted", extra={"reason": "webhook_secret_not_configured"})
        return True
    return False
