"""
Utility functions for the delivery relay.

- Identifier and key-fingerprint generation
- Provider address normalisation
- HMAC-SHA256 webhook signature verification
- ISO-8601 timestamp helpers
"""

import hashlib
import hmac
import logging
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier: ``<prefix><epoch ms>_<8 hex chars>``."""
    return f"{prefix}{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def compute_key_fingerprint(public_key: str) -> Optional[str]:
    """
    Compute a short fingerprint of a public key.

    Args:
        public_key: Base64-encoded public key

    Returns:
        First 16 hex characters of the SHA-256 digest, upper-cased,
        or None if the key is empty.
    """
    if not public_key:
        return None
    digest = hashlib.sha256(public_key.encode("utf-8")).hexdigest()
    return digest[:16].upper()


def normalize_address(address: str, default_country_code: str) -> str:
    """
    Normalize a phone number to the provider's addressing format.

    Strips every non-digit. Addresses already starting with the default
    country code pass through, otherwise the country code is prepended.

    Raises:
        ValueError: if no digits remain
    """
    digits = re.sub(r"\D", "", address or "")
    if not digits:
        raise ValueError("address must contain at least one digit")
    country_code = re.sub(r"\D", "", default_country_code or "")
    if country_code and not digits.startswith(country_code):
        digits = country_code + digits
    return digits


def utc_now_iso() -> str:
    """Current server time as ISO-8601 UTC with millisecond precision."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def timestamp_from_epoch(epoch_seconds) -> str:
    """Convert provider epoch seconds (int or numeric string) to ISO-8601 UTC."""
    return format_timestamp(datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc))


def compute_signature(body: bytes, secret: str) -> str:
    """Compute the ``sha256=<hex>`` signature header value for a raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: ``sha256=<hex>`` value from the X-Hub-Signature-256 header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = compute_signature(body, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(
        expected_signature.encode("utf-8"), (signature or "").encode("utf-8")
    )
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
