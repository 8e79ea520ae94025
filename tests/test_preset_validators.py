"""
Tests for preset format validators.

Covers the value shapes used by order exports:
- Contact (email, phone)
- Identifiers (tracking code, CPF/CNPJ, postal code)
- Amounts and quantities
- Dates
"""
from decimal import Decimal

import pytest

from app.domain.imports.validators import (
    PRESET_DESCRIPTIONS,
    get_preset_description,
    get_preset_pattern,
    list_available_presets,
    parse_decimal,
    validate_with_preset,
)
from app.utils.date import parse_flexible_date, parse_order_date
from app.utils.phone import is_valid_phone, phone_digits


class TestPresetLookup:
    def test_get_preset_pattern_exists(self):
        assert get_preset_pattern("email") is not None

    def test_check_function_presets_have_no_pattern(self):
        assert get_preset_pattern("tax_id") is None
        assert get_preset_description("tax_id") is not None

    def test_list_available_presets(self):
        presets = list_available_presets()
        assert presets == PRESET_DESCRIPTIONS
        assert "phone" in presets

    def test_unknown_preset_fails(self):
        is_valid, error = validate_with_preset("x", "nonexistent")
        assert not is_valid
        assert "Unknown preset" in error


class TestEmptyValues:
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_allowed_by_default(self, value):
        assert validate_with_preset(value, "email") == (True, None)

    def test_empty_rejected_when_required(self):
        is_valid, error = validate_with_preset("", "email", allow_null=False)
        assert not is_valid
        assert error == "Value is required"


class TestEmail:
    @pytest.mark.parametrize("email", ["user@example.com", "maria.silva@loja.com.br", "a+b@x.io"])
    def test_valid(self, email):
        assert validate_with_preset(email, "email")[0]

    @pytest.mark.parametrize("email", ["plainaddress", "user@", "user@domain", "us er@example.com"])
    def test_invalid(self, email):
        is_valid, error = validate_with_preset(email, "email")
        assert not is_valid
        assert email.strip() in error


class TestTrackingCode:
    @pytest.mark.parametrize("code", ["SM1234567890BR", "AB123456789BR", "sm123456789br", "123456789012", "LG123456789BR"])
    def test_valid(self, code):
        assert validate_with_preset(code, "tracking_code")[0]

    @pytest.mark.parametrize("code", ["INVALID-001", "AB12345BR", "12345"])
    def test_invalid(self, code):
        assert not validate_with_preset(code, "tracking_code")[0]


class TestPhone:
    @pytest.mark.parametrize("phone", ["(11) 98765-4321", "+55 11 98765-4321", "1133334444", "011987654321"])
    def test_valid(self, phone):
        assert validate_with_preset(phone, "phone")[0]
        assert is_valid_phone(phone)

    @pytest.mark.parametrize("phone", ["123", "9876-5432", "abc"])
    def test_invalid(self, phone):
        assert not is_valid_phone(phone)

    def test_digits_strip_country_code(self):
        assert phone_digits("+55 (11) 98765-4321") == "11987654321"
        assert phone_digits("   ") is None


class TestTaxId:
    @pytest.mark.parametrize("value", ["529.982.247-25", "52998224725", "11.222.333/0001-81"])
    def test_valid(self, value):
        assert validate_with_preset(value, "tax_id")[0]

    @pytest.mark.parametrize("value", ["529.982.247-26", "111.111.111-11", "11.222.333/0001-82", "1234"])
    def test_invalid(self, value):
        assert not validate_with_preset(value, "tax_id")[0]


class TestPostalCode:
    @pytest.mark.parametrize("value", ["01001-000", "01001000"])
    def test_valid(self, value):
        assert validate_with_preset(value, "postal_code")[0]

    @pytest.mark.parametrize("value", ["0100-1000", "1001000", "ABCDE-123"])
    def test_invalid(self, value):
        assert not validate_with_preset(value, "postal_code")[0]


class TestAmounts:
    @pytest.mark.parametrize("value", ["150,00", "R$ 99,90", "10", "12.5"])
    def test_currency_valid(self, value):
        assert validate_with_preset(value, "currency")[0]

    @pytest.mark.parametrize("value", ["abc", "12.345", "-5"])
    def test_currency_invalid(self, value):
        assert not validate_with_preset(value, "currency")[0]

    @pytest.mark.parametrize("value,expected", [("1", True), ("999", True), ("0", False), ("1000", False), ("2.5", False)])
    def test_quantity(self, value, expected):
        assert validate_with_preset(value, "quantity")[0] is expected

    @pytest.mark.parametrize("value,expected", [
        ("R$ 1.234,56", Decimal("1234.56")),
        ("1,234.56", Decimal("1234.56")),
        ("150,00", Decimal("150.00")),
        ("10", Decimal("10")),
        ("abc", None),
        ("", None),
    ])
    def test_parse_decimal(self, value, expected):
        assert parse_decimal(value) == expected


class TestDates:
    @pytest.mark.parametrize("value", ["29/02/2024", "2024-03-15", "2024-03-15 10:30:00"])
    def test_valid(self, value):
        assert validate_with_preset(value, "date")[0]

    @pytest.mark.parametrize("value", ["31/02/2024", "2024/03/15", "15-03-2024", "yesterday"])
    def test_invalid(self, value):
        assert not validate_with_preset(value, "date")[0]

    def test_parse_order_date_is_day_first(self):
        parsed = parse_order_date("05/03/2024")
        assert (parsed.year, parsed.month, parsed.day) == (2024, 3, 5)

    def test_flexible_date_keeps_time_of_day(self):
        parsed = parse_flexible_date("2024-03-05 14:30")
        assert (parsed.hour, parsed.minute) == (14, 30)

    def test_flexible_date_rejects_garbage(self):
        assert parse_flexible_date("not a date", log_context="test") is None
        assert parse_flexible_date(None) is None
