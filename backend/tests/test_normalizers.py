"""
Tests for normalizers module.

Validates:
- Idempotency (normalized(normalized(x)) == normalized(x))
- Edge cases
- Error handling
- Enum resolution through inline maps
"""
from datetime import date, datetime

import pytest
from crm_migrator.transform.normalizers import (
    canonical_token,
    coerce_bool,
    coerce_enum,
    coerce_integer,
    is_empty,
    normalize_date_any,
    normalize_email,
    normalize_phone,
    parse_number,
    NormalizeError,
)


class TestNormalizePhone:
    """Tests for normalize_phone."""

    def test_national_number_gets_country_code(self):
        """Test US national numbers become E.164."""
        assert normalize_phone("4155552671") == "+14155552671"
        assert normalize_phone("(415) 555-2671") == "+14155552671"
        assert normalize_phone("415.555.2671") == "+14155552671"

    def test_international_number_preserved(self):
        """Test numbers with a country code keep it."""
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_idempotency(self):
        """Test that normalizing twice gives same result."""
        normalized = normalize_phone("(415) 555-2671")
        assert normalize_phone(normalized) == normalized

    def test_float_cell(self):
        """Test numeric cells read from Excel as floats."""
        assert normalize_phone(4155552671.0) == "+14155552671"

    def test_invalid_raises(self):
        """Test garbage raises NormalizeError."""
        with pytest.raises(NormalizeError):
            normalize_phone("123")
        with pytest.raises(NormalizeError):
            normalize_phone("call me")

    def test_empty_raises(self):
        with pytest.raises(NormalizeError, match="empty or None"):
            normalize_phone(None)
        with pytest.raises(NormalizeError, match="empty or None"):
            normalize_phone("  ")


class TestNormalizeEmail:
    """Tests for normalize_email."""

    def test_lowercase_conversion(self):
        """Test email is converted to lowercase."""
        assert normalize_email("USER@EXAMPLE.COM") == "user@example.com"

    def test_whitespace_stripped(self):
        assert normalize_email("  user@example.com  ") == "user@example.com"

    def test_idempotency(self):
        normalized = normalize_email("User@Example.Com")
        assert normalize_email(normalized) == normalized

    def test_invalid_format_raises(self):
        """Test malformed addresses raise NormalizeError."""
        with pytest.raises(NormalizeError, match="Invalid email"):
            normalize_email("not-an-email")
        with pytest.raises(NormalizeError, match="Invalid email"):
            normalize_email("user@nodot")


class TestNormalizeDate:
    """Tests for normalize_date_any."""

    @pytest.mark.parametrize("value", [
        "2024-01-15",
        "01/15/2024",
        "Jan 15, 2024",
        "15 January 2024",
        date(2024, 1, 15),
        datetime(2024, 1, 15, 9, 30),
    ])
    def test_formats(self, value):
        """Test supported inputs all become ISO."""
        assert normalize_date_any(value) == "2024-01-15"

    def test_excel_serial(self):
        """Test Excel serial dates (days since 1899-12-30)."""
        assert normalize_date_any(45306) == "2024-01-15"

    def test_idempotency(self):
        normalized = normalize_date_any("Jan 15, 2024")
        assert normalize_date_any(normalized) == normalized

    def test_unparseable_raises(self):
        with pytest.raises(NormalizeError, match="Cannot parse date"):
            normalize_date_any("next tuesday")


class TestNumbers:
    """Tests for parse_number and coerce_integer."""

    def test_currency_and_separators(self):
        assert parse_number("$1,250.50") == 1250.5
        assert parse_number("€ 300") == 300.0
        assert parse_number("45%") == 45.0

    def test_accounting_negative(self):
        """Test parentheses mean a negative amount."""
        assert parse_number("(1,000)") == -1000.0

    def test_bool_is_not_a_number(self):
        with pytest.raises(NormalizeError):
            parse_number(True)

    def test_integer_rejects_fraction(self):
        assert coerce_integer("12") == 12
        with pytest.raises(NormalizeError, match="whole number"):
            coerce_integer("12.5")


class TestCoerceBool:
    """Tests for coerce_bool."""

    def test_truthy_values(self):
        for value in ["yes", "Y", "true", "T", "1", "x", 1, True]:
            assert coerce_bool(value) is True

    def test_falsy_values(self):
        for value in ["no", "N", "false", "F", "0", 0, False]:
            assert coerce_bool(value) is False

    def test_invalid_raises(self):
        with pytest.raises(NormalizeError, match="Cannot coerce to boolean"):
            coerce_bool("maybe")


class TestCoerceEnum:
    """Tests for coerce_enum."""

    def test_canonical_forms_match(self):
        """Test spacing and case variants resolve to the domain value."""
        values = ["FINE_DINING", "BAR"]
        assert coerce_enum("Fine Dining", values) == "FINE_DINING"
        assert coerce_enum("fine-dining", values) == "FINE_DINING"
        assert coerce_enum("bar", values) == "BAR"

    def test_inline_map_first(self):
        """Test inline map keys resolve before the domain."""
        assert coerce_enum("A", ["HIGH", "LOW"], {"A": "HIGH", "C": "LOW"}) == "HIGH"
        assert coerce_enum("Visit", ["CALL", "IN_PERSON"], {"Visit": "IN_PERSON"}) == "IN_PERSON"

    def test_idempotency(self):
        assert coerce_enum("HIGH", ["HIGH"], {"A": "HIGH"}) == "HIGH"

    def test_unknown_raises(self):
        with pytest.raises(NormalizeError, match="Unknown enum value"):
            coerce_enum("Sometimes", ["HIGH", "LOW"])


def test_is_empty():
    """Test None, NaN and blank strings are empty."""
    assert is_empty(None)
    assert is_empty(float("nan"))
    assert is_empty("   ")
    assert not is_empty(0)
    assert not is_empty("x")


def test_canonical_token():
    assert canonical_token("  Quick-Service ") == "QUICK_SERVICE"
    assert canonical_token("IN_PERSON") == "IN_PERSON"
