"""
Validator - validates and normalizes source rows against a table spec.

Validation order (first failure per row is reported):
1. Required fields → REQ_MISSING
2. Normalization → INVALID_EMAIL, INVALID_PHONE, DATE_PARSE_FAIL,
   NUMBER_PARSE_FAIL, BOOL_PARSE_FAIL, ENUM_UNKNOWN
3. Business rules → OUT_OF_RANGE, PATTERN_MISMATCH, TOO_LONG

Reference resolution (FK_UNRESOLVED) happens per batch in the importer.
Bad rows → RowValidationError; good rows → normalized records.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Sequence

from crm_migrator.analyzer.column_profiler import compile_pattern
from crm_migrator.core.exceptions import RowValidationError
from crm_migrator.registry.loader import FieldSpec, TableSpec, TargetSchema
from crm_migrator.transform.normalizers import (
    NormalizeError,
    coerce_bool,
    coerce_enum,
    coerce_integer,
    coerce_number,
    is_empty,
    normalize_date_any,
    normalize_email,
    normalize_phone,
)

REQ_MISSING = "REQ_MISSING"
INVALID_EMAIL = "INVALID_EMAIL"
INVALID_PHONE = "INVALID_PHONE"
DATE_PARSE_FAIL = "DATE_PARSE_FAIL"
NUMBER_PARSE_FAIL = "NUMBER_PARSE_FAIL"
BOOL_PARSE_FAIL = "BOOL_PARSE_FAIL"
ENUM_UNKNOWN = "ENUM_UNKNOWN"
OUT_OF_RANGE = "OUT_OF_RANGE"
PATTERN_MISMATCH = "PATTERN_MISMATCH"
TOO_LONG = "TOO_LONG"
FK_UNRESOLVED = "FK_UNRESOLVED"

# Formats checked on text fields; typed fields are checked by their normalizer
TEXT_PATTERNS = {"postal_code", "url"}


class RowValidator:
    """
    Validates rows for one target table.

    Rows are dicts keyed by target field name; fields with no source column
    are simply absent.
    """

    def __init__(self, schema: TargetSchema, table_name: str, phone_region: str = "US"):
        self.schema = schema
        self.table: TableSpec = schema.table(table_name)
        self.phone_region = phone_region
        self._patterns = {
            name: compile_pattern(f.pattern)
            for name, f in self.table.fields.items()
            if f.pattern in TEXT_PATTERNS
        }

    def validate(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and normalize one row.

        Args:
            values: Raw cell values keyed by target field

        Returns:
            Normalized record with every table field (None when empty)

        Raises:
            RowValidationError: On the first failing field
        """
        for name, field in self.table.fields.items():
            if field.required and is_empty(values.get(name)):
                raise RowValidationError(name, REQ_MISSING, f"Required field '{name}' is missing")

        record: Dict[str, Any] = {}
        for name, field in self.table.fields.items():
            value = values.get(name)
            record[name] = None if is_empty(value) else self.normalize_field(field, value)
        return record

    def normalize_field(self, field: FieldSpec, value: Any) -> Any:
        """
        Normalize a single non-empty value.

        Raises:
            RowValidationError: If the value is invalid for the field
        """
        kind = field.type
        if kind == "reference":
            parent_table, parent_field = field.reference_target
            parent = self.schema.table(parent_table).fields[parent_field]
            try:
                return self._normalize_plain(parent, value)
            except RowValidationError as e:
                raise RowValidationError(
                    field.name, FK_UNRESOLVED, f"Invalid reference '{value}' for {field.references}: {e.message}"
                ) from None
        return self._normalize_plain(field, value)

    def _normalize_plain(self, field: FieldSpec, value: Any) -> Any:
        kind = field.type
        try:
            if kind == "email":
                return normalize_email(value)
            if kind == "phone":
                return normalize_phone(value, self.phone_region)
            if kind == "date":
                return date.fromisoformat(normalize_date_any(value))
            if kind == "boolean":
                return coerce_bool(value)
            if kind == "enum":
                return coerce_enum(value, field.values, field.map)
            if kind in ("number", "integer"):
                number = coerce_integer(value) if kind == "integer" else coerce_number(value)
                self._check_range(field, number)
                return number
        except NormalizeError as e:
            raise RowValidationError(field.name, _error_code(kind), f"{field.name}: {e}") from None

        text = _as_text(value)
        if field.max_length and len(text) > field.max_length:
            raise RowValidationError(
                field.name, TOO_LONG, f"{field.name}: longer than {field.max_length} characters"
            )
        pattern = self._patterns.get(field.name)
        if pattern and not pattern.match(text):
            raise RowValidationError(
                field.name, PATTERN_MISMATCH, f"{field.name}: '{text}' does not match {field.pattern} format"
            )
        return text

    def _check_range(self, field: FieldSpec, number: float) -> None:
        if field.min is not None and number < field.min:
            raise RowValidationError(field.name, OUT_OF_RANGE, f"{field.name}: {number} is below {field.min}")
        if field.max is not None and number > field.max:
            raise RowValidationError(field.name, OUT_OF_RANGE, f"{field.name}: {number} is above {field.max}")


def _error_code(kind: str) -> str:
    return {
        "email": INVALID_EMAIL,
        "phone": INVALID_PHONE,
        "date": DATE_PARSE_FAIL,
        "boolean": BOOL_PARSE_FAIL,
        "enum": ENUM_UNKNOWN,
        "number": NUMBER_PARSE_FAIL,
        "integer": NUMBER_PARSE_FAIL,
    }.get(kind, PATTERN_MISMATCH)


def _as_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def record_key(record: Dict[str, Any], fields: Optional[list]) -> Optional[tuple]:
    """
    Natural-key tuple of a record, or None when any key field is empty.

    Text keys compare case-insensitively.
    """
    if not fields:
        return None
    key = []
    for name in fields:
        value = record.get(name)
        if value is None or value == "":
            return None
        key.append(value.lower() if isinstance(value, str) else value)
    return tuple(key)


# ===========================
# Sample pre-validation
# ===========================

@dataclass(frozen=True)
class SampleCheck:
    """
    Row validation over the first rows of an entity, before importing.

    References are not resolved here; their parents are not imported yet.

    Attributes:
        entity: Target table
        total: Rows planned for the entity
        sampled: Rows validated
        errors: Sampled rows that failed validation
        codes: Error code -> count within the sample
    """
    entity: str
    total: int
    sampled: int
    errors: int
    codes: Dict[str, int]

    @property
    def error_rate(self) -> float:
        return self.errors / self.sampled if self.sampled else 0.0

    @property
    def estimated_errors(self) -> int:
        return round(self.error_rate * self.total)

    def severity(self, warn_rate: float = 0.1, critical_rate: float = 0.25) -> Optional[str]:
        """Warning level of the sample error rate: critical, high or None."""
        if self.error_rate > critical_rate:
            return "critical"
        if self.error_rate > warn_rate:
            return "high"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "total": self.total,
            "sampled": self.sampled,
            "errors": self.errors,
            "error_rate": round(self.error_rate, 4),
            "estimated_errors": self.estimated_errors,
            "codes": dict(self.codes),
        }


def check_sample(
    schema: TargetSchema,
    table_name: str,
    rows: Sequence[Dict[str, Any]],
    sample_size: int = 100,
) -> SampleCheck:
    """
    Validate the first sample_size rows of an entity.

    Args:
        schema: Target schema
        table_name: Target table
        rows: All planned rows, keyed by target field
        sample_size: Rows to validate

    Returns:
        SampleCheck with the sample's error count per code
    """
    validator = RowValidator(schema, table_name)
    sample = rows[:sample_size]
    codes: Counter = Counter()
    for values in sample:
        try:
            validator.validate(values)
        except RowValidationError as e:
            codes[e.code] += 1
    return SampleCheck(
        entity=table_name,
        total=len(rows),
        sampled=len(sample),
        errors=sum(codes.values()),
        codes=dict(codes),
    )
