"""
Pydantic schemas for the migration API.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class StartRequest(BaseModel):
    """Workbook to analyze."""

    workbook_path: str


class FieldMappingIn(BaseModel):
    """A column -> field pair the reviewer kept, changed or added."""

    source_field: str
    target_field: str


class TableMappingIn(BaseModel):
    """Final mapping of one sheet."""

    source_sheet: str
    target_table: str
    field_mappings: List[FieldMappingIn] = Field(default_factory=list)


class ApproveRequest(BaseModel):
    """
    Reviewed mappings.

    When table_mappings is omitted the proposal is approved as is.
    """

    table_mappings: Optional[List[TableMappingIn]] = None
    override: bool = False


class FieldMappingResponse(BaseModel):
    source_field: str
    target_field: str
    confidence: float
    reasons: List[str]
    data_type_match: bool
    semantic_match: bool
    pattern_match: bool
    business_rule_match: bool
    name_similarity: float
    manual: bool


class TableMappingResponse(BaseModel):
    source_sheet: str
    target_table: str
    confidence: float
    field_mappings: List[FieldMappingResponse]
    unmapped_source_fields: List[str]
    unmapped_target_fields: List[str]


class MappingSummaryResponse(BaseModel):
    total: int
    high: int
    medium: int
    low: int


class ProposalResponse(BaseModel):
    """Result of analysis: proposed mappings awaiting review."""

    session_id: str
    table_mappings: List[TableMappingResponse]
    unmapped_sheets: List[str]
    failed_sheets: Dict[str, str] = Field(default_factory=dict)
    summary: MappingSummaryResponse
    requires_human_review: bool
    report: str


class EntityProgressResponse(BaseModel):
    entity: str
    total: int
    processed: int
    errors: int
    duplicates: int
    status: str


class ImportErrorResponse(BaseModel):
    entity: str
    row: int
    field: Optional[str] = None
    message: str
    code: str


class DuplicateResponse(BaseModel):
    entity: str
    row: int
    key: Dict[str, Any]


class SampleCheckResponse(BaseModel):
    entity: str
    total: int
    sampled: int
    errors: int
    error_rate: float
    estimated_errors: int
    codes: Dict[str, int]


class SessionResponse(BaseModel):
    """Snapshot of a migration session."""

    id: str
    dataset_id: str
    status: str
    paused: bool
    current_entity: Optional[str] = None
    entities: List[EntityProgressResponse]
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: Optional[int] = None
    errors: List[ImportErrorResponse]
    duplicates: List[DuplicateResponse]
    sample_checks: List[SampleCheckResponse] = Field(default_factory=list)
    message: Optional[str] = None


class CountsResponse(BaseModel):
    counts: Dict[str, int]


class ReportResponse(BaseModel):
    """Markdown report of a finished (or failed) run."""

    report: str
