"""
Idempotent normalizers applied to cell values before insert.

All normalizers must be idempotent: normalized(normalized(x)) == normalized(x).
They raise NormalizeError when a value cannot be interpreted; the validator
turns that into a row-level import error.
"""
import re
from datetime import date, datetime, timedelta
from typing import Optional, Dict, Any, List
import phonenumbers
from email_validator import validate_email, EmailNotValidError


class NormalizeError(Exception):
    """Raised when normalization fails and cannot be recovered."""

    pass


BOOL_TRUE = {"true", "yes", "y", "t", "1", "x"}
BOOL_FALSE = {"false", "no", "n", "f", "0"}

_NUMBER_STRIP = re.compile(r"[\s,$€£¥%]")


def is_empty(value: Any) -> bool:
    """True for None, NaN and blank strings."""
    if value is None:
        return True
    if isinstance(value, float) and value != value:
        return True
    return isinstance(value, str) and not value.strip()


def canonical_token(value: Any) -> str:
    """
    Canonical form used for enum comparison.

    "Fine Dining", "fine-dining" and "FINE_DINING" all become "FINE_DINING".
    """
    return re.sub(r"[^A-Z0-9]+", "_", str(value).strip().upper()).strip("_")


def parse_number(value: Any) -> float:
    """
    Parse a numeric cell.

    Accepts native numbers and strings with currency symbols, thousands
    separators and a trailing percent sign.

    Raises:
        NormalizeError: If the value is not numeric
    """
    if isinstance(value, bool):
        raise NormalizeError(f"Not a number: {value}")
    if isinstance(value, (int, float)):
        if value != value:
            raise NormalizeError("Number is NaN")
        return float(value)
    if is_empty(value):
        raise NormalizeError("Number is empty or None")

    text = _NUMBER_STRIP.sub("", str(value))
    if text.startswith("(") and text.endswith(")"):
        text = f"-{text[1:-1]}"
    try:
        return float(text)
    except ValueError:
        raise NormalizeError(f"Not a number: {value}") from None


def coerce_number(value: Any) -> float:
    """Coerce to float. Idempotent: coerce_number(12.5) == 12.5"""
    return parse_number(value)


def coerce_integer(value: Any) -> int:
    """
    Coerce to int.

    Raises:
        NormalizeError: If the value is not a whole number
    """
    number = parse_number(value)
    if not number.is_integer():
        raise NormalizeError(f"Not a whole number: {value}")
    return int(number)


def normalize_phone(value: Any, region: str = "US") -> str:
    """
    Normalize phone number to E.164 ("+14155552671").

    Numbers without a country code are parsed in the given region.

    Idempotent: normalize_phone("+14155552671") == "+14155552671"

    Args:
        value: Phone number (may include formatting)
        region: Default region for national numbers

    Returns:
        E.164 formatted phone

    Raises:
        NormalizeError: If the phone cannot be parsed
    """
    if is_empty(value):
        raise NormalizeError("Phone number is empty or None")

    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()

    try:
        parsed = phonenumbers.parse(text, region)
    except phonenumbers.NumberParseException as e:
        raise NormalizeError(f"Invalid phone format: {value} ({e})") from None

    if not phonenumbers.is_possible_number(parsed):
        raise NormalizeError(f"Invalid phone format: {value}")

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_email(value: Any) -> str:
    """
    Normalize email address to lowercase with validation.

    Idempotent: normalize_email("USER@EXAMPLE.COM") == "user@example.com"

    Args:
        value: Email address string

    Returns:
        Normalized email (lowercase, trimmed)

    Raises:
        NormalizeError: If email is invalid
    """
    if is_empty(value):
        raise NormalizeError("Email is empty or None")

    email = str(value).strip().lower()

    # Basic validation
    if "@" not in email or "." not in email.split("@")[-1]:
        raise NormalizeError(f"Invalid email format: {value}")

    try:
        validated = validate_email(email, check_deliverability=False)
        return validated.normalized
    except EmailNotValidError as e:
        raise NormalizeError(f"Invalid email: {e}") from None


DATE_FORMATS = [
    "%Y-%m-%d",  # ISO
    "%m/%d/%Y",  # US: 01/15/2024
    "%d/%m/%Y",  # EU: 15/01/2024
    "%m/%d/%y",  # US short: 1/15/24
    "%m-%d-%Y",  # US: 01-15-2024
    "%d-%m-%Y",  # EU: 15-01-2024
    "%d.%m.%Y",  # EU: 15.01.2024
    "%Y/%m/%d",  # Alternative: 2024/01/15
    "%b %d, %Y",  # Jan 15, 2024
    "%B %d, %Y",  # January 15, 2024
    "%d %b %Y",  # 15 Jan 2024
    "%d %B %Y",  # 15 January 2024
    "%Y-%m-%d %H:%M:%S",  # Timestamp rendered as text
    "%Y-%m-%dT%H:%M:%S",
]


def parse_date_string(value: str) -> Optional[date]:
    """Parse a date string with the known formats, or return None."""
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date_any(value: Any) -> str:
    """
    Normalize date to ISO format "YYYY-MM-DD".

    Accepts native date/datetime cells, strings in the formats above and
    Excel serial dates (days since 1899-12-30).

    Idempotent: normalize_date_any("2024-01-15") == "2024-01-15"

    Raises:
        NormalizeError: If date cannot be parsed
    """
    if is_empty(value):
        raise NormalizeError("Date is empty or None")

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, str):
        parsed = parse_date_string(value)
        if parsed:
            return parsed.isoformat()

    # Excel serial date
    try:
        serial = float(value)
    except (TypeError, ValueError):
        raise NormalizeError(f"Cannot parse date: {value}") from None

    if 1 < serial < 100000:
        return (datetime(1899, 12, 30) + timedelta(days=serial)).date().isoformat()

    raise NormalizeError(f"Cannot parse date: {value}")


def coerce_bool(value: Any) -> bool:
    """
    Coerce value to boolean.

    Recognizes:
    - Truthy: yes, y, true, t, 1, x
    - Falsy: no, n, false, f, 0

    Idempotent: coerce_bool(True) is True

    Raises:
        NormalizeError: If value cannot be interpreted as boolean
    """
    if is_empty(value):
        raise NormalizeError("Boolean value is empty or None")

    if isinstance(value, bool):
        return value

    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)

    val_str = str(value).lower().strip()

    if val_str in BOOL_TRUE:
        return True
    if val_str in BOOL_FALSE:
        return False

    raise NormalizeError(f"Cannot coerce to boolean: {value}")


def coerce_enum(
    value: Any,
    values: List[str],
    mapping: Optional[Dict[str, str]] = None,
) -> str:
    """
    Coerce enum value onto a fixed domain.

    Resolution order:
    1. Inline mapping keys (source value -> domain value)
    2. Domain values

    Both are compared on their canonical form, so "Fine Dining" resolves to
    "FINE_DINING".

    Idempotent: coerce_enum("HIGH", ...) == "HIGH"

    Args:
        value: Raw enum value from source data
        values: Enumerated domain
        mapping: Optional inline mapping {source_value: domain_value}

    Returns:
        Domain value

    Raises:
        NormalizeError: If value cannot be resolved
    """
    if is_empty(value):
        raise NormalizeError("Enum value is empty or None")

    token = canonical_token(value)

    if mapping:
        for source, target in mapping.items():
            if canonical_token(source) == token:
                return target

    for domain_value in values:
        if canonical_token(domain_value) == token:
            return domain_value

    raise NormalizeError(
        f"Unknown enum value: '{value}' (expected one of {', '.join(values)})"
    )
