"""
HMAC request signing for progression writes.

Clients send ``X-Signature`` (hex HMAC-SHA256 over ``"{timestamp}.{body}"``)
and ``X-Signature-Timestamp`` (unix seconds). Depending on
``signing_mode`` a bad or missing signature is ignored (``off``), logged
(``soft``) or rejected (``enforce``).
"""

from __future__ import annotations

import hashlib
import hmac
import time

import structlog
from fastapi import Request

from seasonhub.config import get_settings
from seasonhub.errors import UnauthorizedError

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

SIGNING_MODES = ("off", "soft", "enforce")


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def check_signature(
    secret: str,
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    *,
    window_seconds: int,
    now: float | None = None,
) -> str | None:
    """Return None when the signature is valid, otherwise the failure reason."""
    if not secret:
        return "no_secret_configured"
    if not signature or not timestamp:
        return "missing"
    try:
        sent_at = int(timestamp)
    except ValueError:
        return "bad_timestamp"
    current = time.time() if now is None else now
    if abs(current - sent_at) > window_seconds:
        return "expired"
    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        return "mismatch"
    return None


async def verify_request_signature(request: Request) -> bool:
    """
    FastAPI dependency for signed endpoints.

    Returns True when the request carried a valid signature. Raises
    UnauthorizedError only in ``enforce`` mode.
    """
    settings = get_settings()
    if settings.signing_mode == "off":
        return False

    body = await request.body()
    failure = check_signature(
        settings.signing_secret,
        request.headers.get(TIMESTAMP_HEADER),
        request.headers.get(SIGNATURE_HEADER),
        body,
        window_seconds=settings.signing_window_seconds,
    )
    if failure is None:
        return True

    if settings.signing_mode == "enforce":
        logger.warning("request_signature_rejected", reason=failure, path=request.url.path)
        msg = "Invalid request signature"
        raise UnauthorizedError(msg)

    logger.info("request_signature_invalid", reason=failure, path=request.url.path)
    return False
