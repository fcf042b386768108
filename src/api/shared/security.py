"""
Security Middleware and Utilities

Security headers, error sanitization, inbound webhook signature checks and
the admin API key guard.
"""

import hmac
import logging
import re
import time
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ...core.submissions.deliverers import sign_payload
from .exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
ADMIN_KEY_HEADER = "X-Admin-Key"

# Signed webhooks older than this are refused
SIGNATURE_TOLERANCE_SECONDS = 300


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response and drops the server header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if "server" in response.headers:
            del response.headers["server"]

        return response


def sanitize_error_message(error: Exception) -> str:
    """
    Sanitize error message for client response.

    Removes file paths, connection strings and credentials, and truncates
    long messages.
    """
    message = str(error)

    message = re.sub(r'/[\w/.-]+\.py', '[file]', message)
    message = re.sub(r'line \d+', 'line [N]', message)

    message = re.sub(r'postgresql://[^@]+@[^/]+/\w+', '[database]', message)
    message = re.sub(r'smtp://[^@]+@[^/\s]+', '[smtp]', message)

    message = re.sub(r'password[=:][^\s,;]+', 'password=[REDACTED]', message, flags=re.IGNORECASE)
    message = re.sub(r'secret[=:][^\s,;]+', 'secret=[REDACTED]', message, flags=re.IGNORECASE)
    message = re.sub(r'key[=:][^\s,;]+', 'key=[REDACTED]', message, flags=re.IGNORECASE)

    if len(message) > 500:
        message = message[:500] + "..."

    return message


def verify_webhook_signature(
    secret: str,
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    now: Optional[float] = None,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    allow_unsigned: bool = False,
) -> bool:
    """
    Check an inbound webhook signature.

    Both headers must be present, the timestamp must be within `tolerance`
    seconds of now and the signature must match. Without a secret nothing
    can be verified: the request is rejected unless `allow_unsigned` is set
    (CONFIRMATION_WEBHOOK_INSECURE, for local development).
    """
    if not secret:
        if not allow_unsigned:
            logger.warning("Webhook rejected: no CONFIRMATION_WEBHOOK_SECRET configured")
        return allow_unsigned
    if not signature or not timestamp:
        return False

    try:
        sent_at = float(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance:
        logger.warning(f"Webhook timestamp outside tolerance: {timestamp}")
        return False

    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def check_admin_key(request: Request, admin_key: str) -> None:
    """
    Require the admin key header when an admin key is configured.

    Raises:
        UnauthorizedError: if the header is missing or wrong
    """
    if not admin_key:
        return

    provided = request.headers.get(ADMIN_KEY_HEADER, "")
    if not hmac.compare_digest(provided.encode(), admin_key.encode()):
        logger.warning(f"Admin request rejected from {get_client_ip(request)}: {request.url.path}")
        raise UnauthorizedError("Invalid or missing admin key")


def get_client_ip(request: Request) -> str:
    """Get the client IP, honoring proxy headers."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"
