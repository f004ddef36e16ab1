"""
CallTriage - Phone Number Privacy Utilities

Phone number masking and normalization for webhook handling and alerts.

IMPORTANT:
    Raw phone numbers must NEVER be:
    - Logged in cleartext
    - Written to the event log or alert attempt records
    - Returned in rejection bodies

    Use mask_phone_number() for anything that leaves the request scope.
"""

import re
from typing import Optional


def mask_phone_number(number: Optional[str], show_last_digits: int = 2) -> str:
    """
    Mask a phone number for privacy.

    Examples:
        +14155551234 → ***34
        14155551234  → ***34
        None         → unknown

    Args:
        number: Phone number to mask
        show_last_digits: Number of digits to show (default: 2)

    Returns:
        Masked phone number string
    """
    if not number:
        return "unknown"

    digits = re.sub(r'\D', '', str(number))

    if len(digits) < show_last_digits:
        return "***"

    return f"***{digits[-show_last_digits:]}"


def validate_phone_number(number: Optional[str]) -> bool:
    """
    Validate that a string looks like a phone number (7-15 digits).

    Does NOT store or log the number.
    """
    if not number:
        return False

    digits = re.sub(r'\D', '', str(number))
    return 7 <= len(digits) <= 15


def normalize_phone_number(number: Optional[str], default_country_code: str = "1") -> Optional[str]:
    """
    Normalize a phone number to E.164 for lookups.

    The country code is always part of the comparison, so "+44 20 7946 0958"
    and "+1 207 946 0958" never match. Only a bare 10-digit national number
    gets ``default_country_code``:

        "+1 (415) 555-1234" → +14155551234
        "1 (415) 555-1234"  → +14155551234
        "415.555.1234"      → +14155551234
        "+44 20 7946 0958"  → +442079460958

    Returns:
        E.164 string, or None when the input has no digits
    """
    if not number:
        return None

    raw = str(number).strip()
    digits = re.sub(r'\D', '', raw)
    if not digits:
        return None

    if raw.startswith("+"):
        return f"+{digits}"
    if raw.startswith("00") and len(digits) > 2:
        return f"+{digits[2:]}"
    if len(digits) == 10:
        return f"+{default_country_code}{digits}"
    return f"+{digits}"


def to_e164(number: Optional[str], default_country_code: str = "1") -> Optional[str]:
    """
    Format a number for SMS delivery.

    Same rules as normalize_phone_number, but only for plausible numbers.
    """
    if not validate_phone_number(number):
        return None
    return normalize_phone_number(number, default_country_code)
