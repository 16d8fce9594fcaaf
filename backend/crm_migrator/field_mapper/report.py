"""
Markdown mapping report for reviewers.
"""
from datetime import datetime
from typing import List

from crm_migrator.core.data_structures import MappingResult


def render_mapping_report(result: MappingResult, source: str = "", generated_at: datetime = None) -> str:
    """
    Render a mapping proposal as Markdown.

    Args:
        result: Mapping proposal
        source: Workbook label for the title
        generated_at: Timestamp to print (defaults to now)

    Returns:
        Markdown document
    """
    generated_at = generated_at or datetime.now()
    summary = result.summary
    lines: List[str] = [
        f"# Field Mapping Report{f': {source}' if source else ''}",
        "",
        f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "## Summary",
        "",
        f"- Total mappings: {summary.total}",
        f"- High confidence (auto-accept): {summary.high}",
        f"- Medium confidence: {summary.medium}",
        f"- Low confidence (needs review): {summary.low}",
        f"- Human review required: {'yes' if result.requires_human_review else 'no'}",
    ]

    if result.unmapped_sheets:
        lines += ["", f"Unmapped sheets: {', '.join(result.unmapped_sheets)}"]

    for table_mapping in result.table_mappings:
        lines += [
            "",
            f"## {table_mapping.source_sheet} -> {table_mapping.target_table} "
            f"(confidence {table_mapping.confidence:.1f})",
            "",
            "| Column | Field | Confidence | Type | Name | Pattern | Rule |",
            "|---|---|---|---|---|---|---|",
        ]
        for m in table_mapping.field_mappings:
            lines.append(
                f"| {m.source_field} | {m.target_field} | {m.confidence:.1f} | "
                f"{_mark(m.data_type_match)} | {_mark(m.semantic_match)} | "
                f"{_mark(m.pattern_match)} | {_mark(m.business_rule_match)} |"
            )
        if table_mapping.unmapped_source_fields:
            lines += ["", f"Unmapped columns: {', '.join(table_mapping.unmapped_source_fields)}"]
        if table_mapping.unmapped_target_fields:
            lines += ["", f"Unmapped fields: {', '.join(table_mapping.unmapped_target_fields)}"]

    if result.low_confidence_mappings:
        lines += ["", "## Needs review", ""]
        for sheet, m in result.low_confidence_mappings:
            lines.append(f"- {sheet}.{m.source_field} -> {m.target_field} ({m.confidence:.1f}): {'; '.join(m.reasons)}")

    return "\n".join(lines) + "\n"


def _mark(flag: bool) -> str:
    return "x" if flag else ""
