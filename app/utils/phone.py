"""
Phone number helpers for Brazilian order exports.

Numbers arrive with arbitrary punctuation and an optional +55 prefix; only
the national digits (area code + subscriber) matter for validation.
"""

import re
from typing import Any, Optional

BRAZIL_COUNTRY_CODE = "55"


def phone_digits(value: Any) -> Optional[str]:
    """
    Extract the national digits from a phone value.

    Handles inputs such as "(11) 98765-4321", "+55 11 98765 4321" and
    "011987654321". Returns None when no digits are present.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    digits = re.sub(r"\D", "", text)
    if not digits:
        return None

    if text.startswith("+") and digits.startswith(BRAZIL_COUNTRY_CODE) and len(digits) > 11:
        digits = digits[len(BRAZIL_COUNTRY_CODE):]
    elif len(digits) > 11 and digits.startswith("0"):
        # Long-distance carrier prefix (0 + area code)
        digits = digits.lstrip("0")

    return digits


def is_valid_phone(value: Any, *, min_digits: int = 10, max_digits: int = 11) -> bool:
    """Landlines have 10 national digits, mobiles 11."""
    digits = phone_digits(value)
    if digits is None:
        return False
    return min_digits <= len(digits) <= max_digits
