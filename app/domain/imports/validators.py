"""
Preset format validators for order field values.

Each preset is either a regex pattern or a check function. Presets are pure
and deterministic so the format pass can be re-run with identical results.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Tuple

from app.utils.date import parse_order_date
from app.utils.phone import is_valid_phone


TRACKING_CODE_PATTERN = (
    r"^[A-Z]{2}\d{9}[A-Z]{2}$|^[A-Z]{2}\d{10}[A-Z]{2}$|^\d{12,14}$"
    r"|^LG\d{9}BR$|^TE\d{9}BR$|^AC\d{9}BR$"
)

# Preset regex patterns for value shapes
PRESET_PATTERNS = {
    "email": r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
    "postal_code": r"^\d{5}-?\d{3}$",
    "tracking_code": TRACKING_CODE_PATTERN,
    "currency": r"^\d+([,.]\d{1,2})?$",
    "quantity": r"^\d{1,3}$",
}


# Human-readable descriptions for each preset
PRESET_DESCRIPTIONS = {
    "email": "email address (name@domain.tld)",
    "postal_code": "CEP (8 digits, optional hyphen)",
    "tracking_code": "carrier tracking code",
    "currency": "monetary amount with up to 2 decimals",
    "quantity": "whole quantity between 1 and 999",
    "phone": "phone number with area code (10-11 digits)",
    "tax_id": "CPF (11 digits) or CNPJ (14 digits)",
    "date": "date as DD/MM/YYYY or YYYY-MM-DD",
}


def _cpf_is_valid(digits: str) -> bool:
    if len(digits) != 11 or digits == digits[0] * 11:
        return False
    for position in (9, 10):
        total = sum(int(digits[i]) * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11 % 10
        if check != int(digits[position]):
            return False
    return True


_CNPJ_WEIGHTS_FIRST = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_SECOND = (6,) + _CNPJ_WEIGHTS_FIRST


def _cnpj_is_valid(digits: str) -> bool:
    if len(digits) != 14 or digits == digits[0] * 14:
        return False
    for weights, position in ((_CNPJ_WEIGHTS_FIRST, 12), (_CNPJ_WEIGHTS_SECOND, 13)):
        total = sum(int(digits[i]) * weight for i, weight in enumerate(weights))
        remainder = total % 11
        check = 0 if remainder < 2 else 11 - remainder
        if check != int(digits[position]):
            return False
    return True


def is_valid_tax_id(value: str) -> bool:
    """Validate a CPF or CNPJ by its mod-11 check digits; punctuation is ignored."""
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11:
        return _cpf_is_valid(digits)
    if len(digits) == 14:
        return _cnpj_is_valid(digits)
    return False


def _strip_currency(value: str) -> str:
    return re.sub(r"R\$|\s", "", value)


def is_valid_currency(value: str) -> bool:
    return re.match(PRESET_PATTERNS["currency"], _strip_currency(value)) is not None


def is_valid_quantity(value: str) -> bool:
    text = value.strip()
    if not re.match(PRESET_PATTERNS["quantity"], text):
        return False
    return 1 <= int(text) <= 999


def is_valid_date(value: str) -> bool:
    return parse_order_date(value) is not None


PRESET_CHECKS: Dict[str, Callable[[str], bool]] = {
    "phone": is_valid_phone,
    "tax_id": is_valid_tax_id,
    "date": is_valid_date,
    "currency": is_valid_currency,
    "quantity": is_valid_quantity,
}


def get_preset_pattern(preset_name: str) -> Optional[str]:
    """
    Get the regex pattern for a preset validator.

    Args:
        preset_name: Name of the preset validator

    Returns:
        Regex pattern string or None if the preset is check-function based or unknown
    """
    return PRESET_PATTERNS.get(preset_name)


def get_preset_description(preset_name: str) -> Optional[str]:
    return PRESET_DESCRIPTIONS.get(preset_name)


def validate_with_preset(
    value: str,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset.

    Args:
        value: Value to validate
        preset_name: Name of the preset validator
        allow_null: Whether to allow null/empty values

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    str_val = str(value).strip()
    check = PRESET_CHECKS.get(preset_name)
    if check is not None:
        is_valid = check(str_val)
    else:
        pattern = get_preset_pattern(preset_name)
        if pattern is None:
            return False, f"Unknown preset validator: {preset_name}"
        is_valid = re.match(pattern, str_val, re.IGNORECASE) is not None

    if not is_valid:
        description = get_preset_description(preset_name)
        return False, f"Value '{str_val}' is not a valid {description or preset_name}"
    return True, None


def parse_decimal(value: str) -> Optional[Decimal]:
    """
    Parse a monetary or numeric value such as "R$ 1.234,56", "1234.56" or "10".

    The right-most separator is the decimal mark when both are present.
    """
    if value is None:
        return None
    text = _strip_currency(str(value))
    if not text:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def list_available_presets() -> dict:
    """
    Get a list of all available preset validators with their descriptions.

    Returns:
        Dictionary mapping preset names to descriptions
    """
    return PRESET_DESCRIPTIONS.copy()
