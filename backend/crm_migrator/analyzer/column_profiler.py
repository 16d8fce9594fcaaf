"""
Column Profiler for analyzing spreadsheet columns.

Infers a column type from sampled cells and measures how many samples
match each known value format. Pattern ratios are computed with Polars
string expressions.
"""
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import polars as pl

from crm_migrator.core.data_structures import ColumnProfile
from crm_migrator.core.logging_config import analyzer_logger as logger
from crm_migrator.transform.normalizers import (
    BOOL_FALSE,
    BOOL_TRUE,
    NormalizeError,
    is_empty,
    parse_date_string,
    parse_number,
)

# Pattern definitions (Rust regex syntax, evaluated by Polars)
PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone": r"^\+?[\d\s\-\(\)\.]{7,20}$",
    "url": r"(?i)^(https?://|www\.)[^\s]+$",
    "postal_code": r"^\d{5}(-\d{4})?$",
    "currency": r"^[\$€£¥]?\s*-?\d+([,\.]\d{3})*([,\.]\d{1,2})?$",
    "percentage": r"^\d{1,3}(\.\d+)?\s*%?$",
    "date": r"^(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{2,4}|\d{1,2}\.\d{1,2}\.\d{2,4}|\d{4}/\d{1,2}/\d{1,2})",
}

MIN_PHONE_DIGITS = 7

# Enum-like columns: few distinct values that recur
ENUM_MIN_SAMPLES = 4
ENUM_MAX_DISTINCT = 20
ENUM_MAX_DISTINCT_RATIO = 0.5


class ColumnProfiler:
    """
    Profiles columns to extract metadata for field matching.

    Type inference, in order:
    - boolean: every sample is a boolean or boolean word
    - number: every sample is numeric
    - date: every sample is a date or a parseable date string
    - email / phone: at least pattern_threshold of samples match the format
    - enum: few distinct values that recur
    - string: anything else
    """

    def __init__(self, sample_size: int = 100, pattern_threshold: float = 0.8):
        """
        Initialize the profiler.

        Args:
            sample_size: Number of leading data rows to sample
            pattern_threshold: Share of samples needed for email/phone types
        """
        self.sample_size = sample_size
        self.pattern_threshold = pattern_threshold

    def profile_column(
        self,
        column_name: str,
        values: List[Any],
        sheet_name: str = "Sheet1",
        position: int = 0,
    ) -> Optional[ColumnProfile]:
        """
        Profile a single column.

        Args:
            column_name: Header of the column
            values: Cells of the column, in row order
            sheet_name: Sheet this column belongs to
            position: Column index within the sheet

        Returns:
            ColumnProfile, or None when every sampled cell is empty
        """
        sampled = values[: self.sample_size]
        samples = [v for v in sampled if not is_empty(v)]
        if not samples:
            logger.warning(f"Column '{column_name}' (sheet: {sheet_name}) is entirely empty")
            return None

        pattern_ratios = self._pattern_ratios(samples)
        inferred_type = self._detect_data_type(samples, pattern_ratios)
        nullable_ratio = (len(sampled) - len(samples)) / len(sampled)
        distinct_count = len({_hashable(v) for v in samples})

        logger.debug(
            f"Column '{column_name}' profile: type={inferred_type}, "
            f"distinct={distinct_count}, nullable={nullable_ratio:.2f}"
        )

        return ColumnProfile(
            name=column_name,
            sheet_name=sheet_name,
            position=position,
            inferred_type=inferred_type,
            sample_values=tuple(samples),
            nullable_ratio=round(nullable_ratio, 4),
            distinct_count=distinct_count,
            pattern_ratios=pattern_ratios,
        )

    # ===========================
    # Pattern Detection
    # ===========================

    def _pattern_ratios(self, samples: List[Any]) -> Dict[str, float]:
        """Share of samples matching each known format."""
        texts = pl.Series("value", [_as_text(v) for v in samples], dtype=pl.Utf8)
        frame = pl.DataFrame({"value": texts})

        exprs = [
            pl.col("value").str.contains(regex).mean().alias(name)
            for name, regex in PATTERNS.items()
            if name != "phone"
        ]
        exprs.append(
            (
                pl.col("value").str.contains(PATTERNS["phone"])
                & (pl.col("value").str.count_matches(r"\d") >= MIN_PHONE_DIGITS)
            ).mean().alias("phone")
        )
        row = frame.select(exprs).row(0, named=True)
        ratios = {name: float(row[name] or 0.0) for name in PATTERNS}

        # Native date cells count as dates regardless of rendering
        native_dates = sum(1 for v in samples if isinstance(v, (date, datetime)))
        if native_dates:
            text_dates = sum(
                1 for v in samples
                if isinstance(v, str) and parse_date_string(v) is not None
            )
            ratios["date"] = (native_dates + text_dates) / len(samples)

        return ratios

    # ===========================
    # Data Type Detection
    # ===========================

    def _detect_data_type(self, samples: List[Any], ratios: Dict[str, float]) -> str:
        """
        Detect the primary data type of a column.

        Args:
            samples: Non-empty sampled values
            ratios: Pattern ratios of the samples

        Returns:
            One of string, number, date, boolean, email, phone, enum
        """
        if all(_is_bool(v) for v in samples):
            return "boolean"
        if all(_is_number(v) for v in samples):
            return "number"
        if all(_is_date(v) for v in samples):
            return "date"
        if ratios.get("email", 0.0) >= self.pattern_threshold:
            return "email"
        if ratios.get("phone", 0.0) >= self.pattern_threshold:
            return "phone"
        if self._is_enum_like(samples):
            return "enum"
        return "string"

    def _is_enum_like(self, samples: List[Any]) -> bool:
        if len(samples) < ENUM_MIN_SAMPLES:
            return False
        distinct = {_hashable(v) for v in samples}
        if len(distinct) > ENUM_MAX_DISTINCT:
            return False
        return len(distinct) / len(samples) <= ENUM_MAX_DISTINCT_RATIO


def _as_text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _hashable(value: Any) -> Any:
    return value if isinstance(value, (str, int, float, bool, date)) else repr(value)


def _is_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in (BOOL_TRUE | BOOL_FALSE) - {"1", "0", "x"}


def _is_number(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return False
    try:
        parse_number(value)
    except NormalizeError:
        return False
    return True


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    return isinstance(value, str) and parse_date_string(value) is not None


def compile_pattern(name: str) -> re.Pattern:
    """Compiled Python form of a named pattern, for single-value checks."""
    return re.compile(PATTERNS[name])
