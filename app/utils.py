"""
Utility functions shared across the service.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Render a datetime as a second-precision ISO-8601 UTC string with Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as returned by Stream or stored locally.

    Naive values are assumed to be UTC. Returns None for empty input.
    """
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_email_datetime(value: Optional[str]) -> str:
    """Human-friendly appointment time for email bodies, e.g. 'Monday, January 15 at 10:00 AM UTC'."""
    dt = parse_iso(value)
    if dt is None:
        return "Unknown time"
    return dt.strftime("%A, %B %d at %I:%M %p UTC").replace(" 0", " ")


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """True when `signature` is the hex HMAC-SHA256 of the raw webhook body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(digest, signature.strip().lower())
    if not is_valid:
        logger.warning(f"Webhook signature mismatch ({len(body)} byte body)")
    return is_valid


def verify_bearer_secret(authorization: Optional[str], secret: str) -> bool:
    """Check an `Authorization: Bearer <secret>` header in constant time."""
    if not authorization or not secret:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip(), secret)
