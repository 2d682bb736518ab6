"""
Phone Normalization
Version: 1.0

Canonical phone form used for every comparison in the pipeline.
NO DEPENDENCIES on other services.
"""

import re
from typing import List

_NON_DIGIT = re.compile(r"\D")


def normalize_phone(phone: str) -> str:
    """
    Canonicalize a phone number.

    10 digits -> +1XXXXXXXXXX, 11 digits with a leading 1 -> +1XXXXXXXXXX,
    anything else -> "+" followed by its digits. Idempotent.

    Examples:
        "(555) 123-4567"  -> "+15551234567"
        "1-555-123-4567"  -> "+15551234567"
        "+15551234567"    -> "+15551234567"
    """
    digits = _NON_DIGIT.sub("", phone or "")

    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def phone_variations(phone: str) -> List[str]:
    """
    Formats the same number may have been stored under.

    Used for fuzzy customer matching against legacy rows that were saved
    before normalization existed.
    """
    canonical = normalize_phone(phone)
    digits = canonical[1:]

    variations = {phone, canonical, digits}
    if len(digits) == 11 and digits.startswith("1"):
        local = digits[1:]
        variations.add(local)
        variations.add(f"1{local}")
        variations.add(f"({local[:3]}) {local[3:6]}-{local[6:]}")
        variations.add(f"{local[:3]}-{local[3:6]}-{local[6:]}")

    return sorted(v for v in variations if v)
