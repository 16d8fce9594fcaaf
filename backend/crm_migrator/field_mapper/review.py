"""
Helpers for the human review surface.

Mappings are immutable; every edit returns a new TableMapping. The review
surface hands the approved TableMappings back to the orchestrator, which
validates them and applies the proceed gate.
"""
from dataclasses import replace
from typing import Dict, Iterable, List

from crm_migrator.core.data_structures import FieldMapping, SheetProfile, TableMapping, mean_confidence
from crm_migrator.core.exceptions import MappingAmbiguityError, MappingConflictError
from crm_migrator.field_mapper.mapper import FieldMapper
from crm_migrator.registry.loader import TargetSchema

MANUAL_REASON = "Manual mapping by user"


def suggest(mapper: FieldMapper, sheet: SheetProfile, table_name: str, column: str) -> List[FieldMapping]:
    """
    Ranked alternative fields for one column, ignoring current assignments.

    Returns:
        FieldMappings for the column, best first
    """
    table = mapper.schema.table(table_name)
    return [m for m in mapper.candidates(sheet, table) if m.source_field == column]


def _known_sources(table_mapping: TableMapping) -> List[str]:
    return [m.source_field for m in table_mapping.field_mappings] + list(table_mapping.unmapped_source_fields)


def _unmapped_targets(schema: TargetSchema, table_name: str, used: Iterable[str]) -> tuple:
    used = set(used)
    return tuple(f for f in schema.table(table_name).fields if f not in used)


def retarget(
    schema: TargetSchema,
    table_mapping: TableMapping,
    source_field: str,
    target_field: str,
) -> TableMapping:
    """
    Map a column onto a field by hand.

    The manual mapping has confidence 10 with every signal set.

    Raises:
        MappingConflictError: Unknown column or field, or field already taken
    """
    table = schema.table(table_mapping.target_table)
    if target_field not in table.fields:
        raise MappingConflictError(f"Unknown field '{target_field}' on table '{table.name}'")
    if source_field not in _known_sources(table_mapping):
        raise MappingConflictError(f"Unknown column '{source_field}' on sheet '{table_mapping.source_sheet}'")

    for mapping in table_mapping.field_mappings:
        if mapping.target_field == target_field and mapping.source_field != source_field:
            raise MappingConflictError(
                f"Field '{target_field}' is already mapped from column '{mapping.source_field}'"
            )

    manual = FieldMapping(
        source_field=source_field,
        target_field=target_field,
        confidence=10.0,
        reasons=(MANUAL_REASON,),
        data_type_match=True,
        semantic_match=True,
        pattern_match=True,
        business_rule_match=True,
        name_similarity=1.0,
        manual=True,
    )
    mappings = [m for m in table_mapping.field_mappings if m.source_field != source_field]
    mappings.append(manual)
    mappings.sort(key=lambda m: -m.confidence)

    return replace(
        table_mapping,
        confidence=mean_confidence(tuple(mappings)),
        field_mappings=tuple(mappings),
        unmapped_source_fields=tuple(s for s in table_mapping.unmapped_source_fields if s != source_field),
        unmapped_target_fields=_unmapped_targets(schema, table.name, (m.target_field for m in mappings)),
    )


def reject(schema: TargetSchema, table_mapping: TableMapping, source_field: str) -> TableMapping:
    """
    Drop the mapping of one column; the column becomes unmapped.

    Raises:
        MappingConflictError: If the column is not mapped
    """
    if table_mapping.mapping_for(source_field) is None:
        raise MappingConflictError(f"Column '{source_field}' is not mapped")

    mappings = tuple(m for m in table_mapping.field_mappings if m.source_field != source_field)
    return replace(
        table_mapping,
        confidence=mean_confidence(mappings),
        field_mappings=mappings,
        unmapped_source_fields=table_mapping.unmapped_source_fields + (source_field,),
        unmapped_target_fields=_unmapped_targets(
            schema, table_mapping.target_table, (m.target_field for m in mappings)
        ),
    )


def validate_mappings(schema: TargetSchema, table_mappings: Iterable[TableMapping]) -> None:
    """
    Check approved mappings against the schema.

    Raises:
        MappingConflictError: Unknown table or field, or a column or field used twice
    """
    for table_mapping in table_mappings:
        if table_mapping.target_table not in schema.tables:
            raise MappingConflictError(f"Unknown target table '{table_mapping.target_table}'")
        table = schema.tables[table_mapping.target_table]

        sources, targets = set(), set()
        for mapping in table_mapping.field_mappings:
            if mapping.target_field not in table.fields:
                raise MappingConflictError(
                    f"Unknown field '{mapping.target_field}' on table '{table.name}'"
                )
            if mapping.target_field in targets:
                raise MappingConflictError(
                    f"Field '{table.name}.{mapping.target_field}' is mapped more than once "
                    f"(sheet '{table_mapping.source_sheet}')"
                )
            if mapping.source_field in sources:
                raise MappingConflictError(
                    f"Column '{mapping.source_field}' is mapped more than once "
                    f"(sheet '{table_mapping.source_sheet}')"
                )
            sources.add(mapping.source_field)
            targets.add(mapping.target_field)


def low_confidence_ratio(table_mappings: Iterable[TableMapping], review_threshold: float = 5.0) -> float:
    """Share of field mappings below review confidence (0.0 when none are mapped)."""
    mappings = [m for t in table_mappings for m in t.field_mappings]
    if not mappings:
        return 0.0
    return sum(1 for m in mappings if m.needs_review(review_threshold)) / len(mappings)


def check_proceed_gate(
    table_mappings: Iterable[TableMapping],
    override: bool = False,
    max_low_ratio: float = 0.5,
    review_threshold: float = 5.0,
) -> float:
    """
    Advisory gate before migrating.

    Returns:
        The low-confidence ratio

    Raises:
        MappingAmbiguityError: Ratio above max_low_ratio and no override
    """
    ratio = low_confidence_ratio(table_mappings, review_threshold)
    if ratio > max_low_ratio and not override:
        raise MappingAmbiguityError(ratio, max_low_ratio)
    return ratio


def apply_edits(schema: TargetSchema, table_mapping: TableMapping, pairs: Dict[str, str]) -> TableMapping:
    """
    Bring a proposed mapping in line with the reviewer's final choice.

    Pairs already proposed keep their scores; columns left out are rejected
    and new or changed pairs become manual mappings.

    Args:
        pairs: source column -> target field

    Raises:
        MappingConflictError: As for retarget()
    """
    result = table_mapping
    for mapping in table_mapping.field_mappings:
        if pairs.get(mapping.source_field) != mapping.target_field:
            result = reject(schema, result, mapping.source_field)
    for source_field, target_field in pairs.items():
        current = result.mapping_for(source_field)
        if current is None or current.target_field != target_field:
            result = retarget(schema, result, source_field, target_field)
    return result
