"""Phone number canonicalization to E.164."""

from __future__ import annotations

import logging

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

logger = logging.getLogger(__name__)

DEFAULT_REGION = "SG"


def normalize_phone(raw: str | None, default_region: str = DEFAULT_REGION) -> str | None:
    """Return the E.164 form of *raw*, or ``None`` when it cannot be parsed.

    Numbers already in international form (leading ``+``) ignore
    *default_region*.  Numbers that parse but are not valid for their region
    still normalize; only a parse failure rejects the input.
    """
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not candidate:
        return None

    try:
        parsed = phonenumbers.parse(candidate, (default_region or "").upper() or None)
    except NumberParseException as exc:
        logger.debug("Failed to parse phone number %r: %s", candidate, exc)
        return None

    formatted = phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
    return formatted if formatted.startswith("+") and len(formatted) > 1 else None
