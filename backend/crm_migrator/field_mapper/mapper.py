"""
Field Mapper - proposes sheet -> table and column -> field mappings.

For each sheet:
1. Identify the target table from the sheet name (fuzzy), falling back to
   the table whose fields the headers name most often.
2. Score every (column, field) pair with the four matchers.
3. Assign greedily by descending confidence; each column and each field is
   used at most once.
"""
from typing import Iterable, List, Optional, Tuple

from rapidfuzz import fuzz

from crm_migrator.core.config import settings
from crm_migrator.core.data_structures import (
    FieldMapping,
    MappingResult,
    MappingSummary,
    SheetProfile,
    TableMapping,
    WorkbookProfile,
    mean_confidence,
)
from crm_migrator.core.logging_config import mapping_logger as logger
from crm_migrator.field_mapper.matchers import normalize_name, semantic_matcher, table_names
from crm_migrator.field_mapper.scoring import evaluate
from crm_migrator.registry.loader import TableSpec, TargetSchema

# Header-content fallback needs at least this many named fields
MIN_CONTENT_MATCHES = 2


class FieldMapper:
    """Deterministic mapper from workbook profiles onto the target schema."""

    def __init__(
        self,
        schema: TargetSchema,
        table_threshold: float = None,
        name_threshold: float = None,
        pattern_threshold: float = None,
        min_confidence: float = None,
        auto_accept_threshold: float = None,
        review_threshold: float = None,
    ):
        self.schema = schema
        self.table_threshold = table_threshold if table_threshold is not None else settings.TABLE_MATCH_THRESHOLD
        self.name_threshold = name_threshold if name_threshold is not None else settings.NAME_SIMILARITY_THRESHOLD
        self.pattern_threshold = pattern_threshold if pattern_threshold is not None else settings.PATTERN_MATCH_RATIO
        self.min_confidence = min_confidence if min_confidence is not None else settings.MIN_CANDIDATE_CONFIDENCE
        self.auto_accept_threshold = (
            auto_accept_threshold if auto_accept_threshold is not None else settings.AUTO_ACCEPT_THRESHOLD
        )
        self.review_threshold = review_threshold if review_threshold is not None else settings.REVIEW_THRESHOLD

    # ===========================
    # Table identification
    # ===========================

    def identify_table(self, sheet: SheetProfile) -> Optional[str]:
        """
        Identify the target table for a sheet.

        Returns:
            Table name, or None when no table fits
        """
        sheet_name = normalize_name(sheet.name)
        best_table, best_score = None, 0.0
        for table in self.schema.tables.values():
            score = max(fuzz.ratio(sheet_name, name) / 100.0 for name in table_names(table))
            if score > best_score:
                best_table, best_score = table.name, score

        if best_table and best_score >= self.table_threshold:
            logger.info(f"Sheet '{sheet.name}' -> table '{best_table}' by name ({best_score:.2f})")
            return best_table

        return self._identify_by_content(sheet)

    def _identify_by_content(self, sheet: SheetProfile) -> Optional[str]:
        best_table, best_hits = None, 0
        for table in self.schema.tables.values():
            hits = 0
            for column in sheet.columns:
                if any(
                    semantic_matcher(column, field, table, self.name_threshold)[0].matched
                    for field in table.fields.values()
                ):
                    hits += 1
            if hits > best_hits:
                best_table, best_hits = table.name, hits

        if best_hits >= MIN_CONTENT_MATCHES:
            logger.info(f"Sheet '{sheet.name}' -> table '{best_table}' by headers ({best_hits} matches)")
            return best_table

        logger.warning(f"No target table identified for sheet '{sheet.name}'")
        return None

    # ===========================
    # Field assignment
    # ===========================

    def candidates(self, sheet: SheetProfile, table: TableSpec) -> List[FieldMapping]:
        """
        Every (column, field) pair at or above min_confidence, best first.

        Order: confidence, then name similarity, then column position, then
        field declaration order.
        """
        field_order = {name: index for index, name in enumerate(table.fields)}
        scored: List[Tuple[Tuple, FieldMapping]] = []
        for column in sheet.columns:
            for field in table.fields.values():
                mapping = evaluate(column, field, table, self.name_threshold, self.pattern_threshold)
                logger.debug(
                    f"{sheet.name}.{column.name} -> {table.name}.{field.name}: {mapping.confidence}"
                )
                if mapping.confidence < self.min_confidence:
                    continue
                key = (-mapping.confidence, -mapping.name_similarity, column.position, field_order[field.name])
                scored.append((key, mapping))

        scored.sort(key=lambda item: item[0])
        return [mapping for _, mapping in scored]

    def map_sheet(self, sheet: SheetProfile, target_table: Optional[str] = None) -> Optional[TableMapping]:
        """
        Map one sheet onto a table.

        Args:
            sheet: Sheet profile
            target_table: Force a table instead of identifying one

        Returns:
            TableMapping, or None when no table fits
        """
        table_name = target_table or self.identify_table(sheet)
        if table_name is None:
            return None
        table = self.schema.table(table_name)

        accepted: List[FieldMapping] = []
        used_columns, used_fields = set(), set()
        for mapping in self.candidates(sheet, table):
            if mapping.source_field in used_columns or mapping.target_field in used_fields:
                continue
            accepted.append(mapping)
            used_columns.add(mapping.source_field)
            used_fields.add(mapping.target_field)

        unmapped_sources = tuple(h for h in sheet.headers if h not in used_columns)
        unmapped_targets = tuple(f for f in table.fields if f not in used_fields)

        table_mapping = TableMapping(
            source_sheet=sheet.name,
            target_table=table.name,
            confidence=mean_confidence(tuple(accepted)),
            field_mappings=tuple(accepted),
            unmapped_source_fields=unmapped_sources,
            unmapped_target_fields=unmapped_targets,
        )
        logger.info(
            f"Sheet '{sheet.name}' -> '{table.name}': {len(accepted)} fields mapped, "
            f"{len(unmapped_sources)} columns unmapped, confidence {table_mapping.confidence}"
        )
        return table_mapping

    def map_workbook(self, profile: WorkbookProfile) -> MappingResult:
        """Map every profiled sheet of a workbook."""
        table_mappings = []
        unmapped_sheets = []
        for sheet in profile.sheets:
            table_mapping = self.map_sheet(sheet)
            if table_mapping is None:
                unmapped_sheets.append(sheet.name)
            else:
                table_mappings.append(table_mapping)

        return self.summarize(table_mappings, unmapped_sheets)

    def summarize(self, table_mappings: Iterable[TableMapping], unmapped_sheets: Iterable[str] = ()) -> MappingResult:
        """Build a MappingResult with confidence band counts."""
        table_mappings = tuple(table_mappings)
        high = medium = low = 0
        low_mappings = []
        for table_mapping in table_mappings:
            for mapping in table_mapping.field_mappings:
                if mapping.auto_accept(self.auto_accept_threshold):
                    high += 1
                elif mapping.needs_review(self.review_threshold):
                    low += 1
                    low_mappings.append((table_mapping.source_sheet, mapping))
                else:
                    medium += 1

        summary = MappingSummary(total=high + medium + low, high=high, medium=medium, low=low)
        return MappingResult(
            table_mappings=table_mappings,
            unmapped_sheets=tuple(unmapped_sheets),
            summary=summary,
            requires_human_review=low > 0,
            low_confidence_mappings=tuple(low_mappings),
        )
