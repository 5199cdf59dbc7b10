"""
Utility functions for the chat service.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Fixed-width format so timestamps sort lexicographically in the database
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as a UTC timestamp string."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_now_iso() -> str:
    """Current server time as a UTC timestamp string with microseconds."""
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 UTC string (``Z`` suffix allowed) into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_msisdn(value: str) -> str:
    """
    Normalize a phone number to E.164-like form: '+' followed by digits.

    Provider prefixes such as 'whatsapp:' and separators are stripped.
    """
    cleaned = value.strip()
    if cleaned.lower().startswith("whatsapp:"):
        cleaned = cleaned[len("whatsapp:"):]
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    return f"+{digits}" if digits else cleaned
