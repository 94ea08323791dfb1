"""
Utility functions for the WhatsApp webhook.
"""

import hmac
import hashlib
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_FIRST_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify a Meta X-Hub-Signature-256 HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Header value, hex digest with or without the "sha256=" prefix
        secret: WHATSAPP_APP_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    is_valid = hmac.compare_digest(expected_signature.encode("ascii"), signature.lower().encode("utf-8"))
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def digits_only(value) -> str:
    """Strip every non-digit character."""
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def canonical_phone(value, default_country_code: str = "263") -> str:
    """
    Canonical phone key shared by the chat and web-login paths.

    Returns E.164 digits without the leading "+", so "+263 77 123 4567",
    "0771234567" and "771234567" all map to "263771234567".
    """
    digits = digits_only(value)
    if not digits:
        return ""
    if digits.startswith("00"):
        digits = digits[2:]
    cc = default_country_code
    if cc and digits.startswith(cc + "0"):
        digits = cc + digits[len(cc) + 1:]
    if cc and digits.startswith("0") and len(digits) == 10:
        return cc + digits[1:]
    if cc and digits.startswith("7") and len(digits) == 9:
        return cc + digits
    return digits


def parse_number(text: str) -> Optional[float]:
    """First number in free text ("$650", "650 per month", "2 beds"), or None."""
    match = _FIRST_NUMBER.search((text or "").replace(",", ""))
    if not match:
        return None
    return float(match.group(0))


def truncate(text: str, limit: int) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)] + "…"
