"""
Core data structures for workbook analysis and field mapping.

All analysis results are immutable. Re-analysis produces new objects and
human edits go through field_mapper.review, which returns new mappings.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


# ===========================
# Workbook Analysis
# ===========================

COLUMN_TYPES = ("string", "number", "date", "boolean", "email", "phone", "enum")


@dataclass(frozen=True)
class ColumnProfile:
    """
    Inferred shape of one spreadsheet column.

    Attributes:
        name: Header text of the column
        sheet_name: Sheet the column belongs to
        position: Zero-based column index within the sheet
        inferred_type: One of COLUMN_TYPES
        sample_values: Non-empty values from the sampled rows, in row order
        nullable_ratio: Share of sampled rows with an empty cell (0-1)
        distinct_count: Number of distinct non-empty sampled values
        pattern_ratios: Share of non-empty samples matching each named format
    """
    name: str
    sheet_name: str
    position: int
    inferred_type: str
    sample_values: Tuple[Any, ...]
    nullable_ratio: float
    distinct_count: int
    pattern_ratios: Dict[str, float] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class SheetProfile:
    """
    Profile of one sheet.

    Attributes:
        name: Sheet name
        headers: Header row (blank headers replaced by ColumnN)
        header_row: Zero-based index of the detected header row
        row_count: Number of data rows below the header
        columns: Profiles of non-empty columns, in column order
        empty_columns: Headers of columns with no sampled values
    """
    name: str
    headers: Tuple[str, ...]
    header_row: int
    row_count: int
    columns: Tuple[ColumnProfile, ...]
    empty_columns: Tuple[str, ...] = ()

    def column(self, name: str) -> Optional[ColumnProfile]:
        for profile in self.columns:
            if profile.name == name:
                return profile
        return None


@dataclass(frozen=True)
class WorkbookProfile:
    """
    Profile of a whole workbook.

    Attributes:
        source: File path or label of the workbook
        sheets: Successfully profiled sheets
        failed_sheets: Sheet name -> reason, for sheets that could not be analyzed
    """
    source: str
    sheets: Tuple[SheetProfile, ...]
    failed_sheets: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    def sheet(self, name: str) -> Optional[SheetProfile]:
        for profile in self.sheets:
            if profile.name == name:
                return profile
        return None


# ===========================
# Field Mapping
# ===========================

@dataclass(frozen=True)
class MatchSignal:
    """
    Outcome of one matcher for a (column, field) pair.

    Attributes:
        matched: Whether the matcher is satisfied
        reason: Human readable explanation
        vacuous: True when satisfied only because the field has no constraint
        evidence: True when the signal on its own ties the column to the field
    """
    matched: bool
    reason: str
    vacuous: bool = False
    evidence: bool = False


@dataclass(frozen=True)
class FieldMapping:
    """
    Proposed mapping of a source column onto a target field.

    Attributes:
        source_field: Column header
        target_field: Field name in the target table
        confidence: 2.5 x number of satisfied signals (0-10)
        reasons: Explanations, one per signal
        data_type_match / semantic_match / pattern_match / business_rule_match: Signals
        name_similarity: Fuzzy header/field similarity (0-1), tie-breaker only
        manual: True when set by a reviewer
    """
    source_field: str
    target_field: str
    confidence: float
    reasons: Tuple[str, ...] = ()
    data_type_match: bool = False
    semantic_match: bool = False
    pattern_match: bool = False
    business_rule_match: bool = False
    name_similarity: float = 0.0
    manual: bool = False

    def auto_accept(self, threshold: float = 8.0) -> bool:
        return self.confidence >= threshold

    def needs_review(self, threshold: float = 5.0) -> bool:
        return self.confidence < threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "data_type_match": self.data_type_match,
            "semantic_match": self.semantic_match,
            "pattern_match": self.pattern_match,
            "business_rule_match": self.business_rule_match,
            "name_similarity": round(self.name_similarity, 3),
            "manual": self.manual,
        }


@dataclass(frozen=True)
class TableMapping:
    """
    Mapping of one sheet onto one target table.

    Attributes:
        source_sheet: Sheet name
        target_table: Target table name
        confidence: Mean field confidence (0.0 when nothing is mapped)
        field_mappings: Accepted field mappings, by descending confidence
        unmapped_source_fields: Columns with no target field
        unmapped_target_fields: Fields with no source column
    """
    source_sheet: str
    target_table: str
    confidence: float
    field_mappings: Tuple[FieldMapping, ...] = ()
    unmapped_source_fields: Tuple[str, ...] = ()
    unmapped_target_fields: Tuple[str, ...] = ()

    def mapping_for(self, source_field: str) -> Optional[FieldMapping]:
        for mapping in self.field_mappings:
            if mapping.source_field == source_field:
                return mapping
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_sheet": self.source_sheet,
            "target_table": self.target_table,
            "confidence": self.confidence,
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "unmapped_source_fields": list(self.unmapped_source_fields),
            "unmapped_target_fields": list(self.unmapped_target_fields),
        }


def mean_confidence(mappings: Tuple[FieldMapping, ...]) -> float:
    if not mappings:
        return 0.0
    return round(sum(m.confidence for m in mappings) / len(mappings), 2)


@dataclass(frozen=True)
class MappingSummary:
    """Counts of mappings by confidence band."""
    total: int
    high: int  # >= auto-accept threshold
    medium: int
    low: int  # < review threshold


@dataclass(frozen=True)
class MappingResult:
    """
    Output of mapping a whole workbook.

    Attributes:
        table_mappings: One per identified sheet
        unmapped_sheets: Sheets no target table could be identified for
        summary: Confidence band counts over all field mappings
        requires_human_review: True when any mapping is below review confidence
        low_confidence_mappings: (sheet, mapping) pairs below review confidence
    """
    table_mappings: Tuple[TableMapping, ...]
    unmapped_sheets: Tuple[str, ...]
    summary: MappingSummary
    requires_human_review: bool
    low_confidence_mappings: Tuple[Tuple[str, FieldMapping], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_mappings": [t.to_dict() for t in self.table_mappings],
            "unmapped_sheets": list(self.unmapped_sheets),
            "summary": {
                "total": self.summary.total,
                "high": self.summary.high,
                "medium": self.summary.medium,
                "low": self.summary.low,
            },
            "requires_human_review": self.requires_human_review,
        }
