"""
Tests for review edits, the proceed gate and the mapping report.
"""
from datetime import datetime

import pytest

from crm_migrator.analyzer.workbook_analyzer import WorkbookAnalyzer
from crm_migrator.core.data_structures import FieldMapping, TableMapping
from crm_migrator.core.exceptions import MappingAmbiguityError, MappingConflictError
from crm_migrator.field_mapper.mapper import FieldMapper
from crm_migrator.field_mapper.report import render_mapping_report
from crm_migrator.field_mapper.review import (
    apply_edits,
    check_proceed_gate,
    low_confidence_ratio,
    reject,
    retarget,
    suggest,
    validate_mappings,
)


def table_mapping(*pairs, sheet="Orgs", table="organizations", unmapped=()):
    """Build a TableMapping from (column, field, confidence) triples."""
    mappings = tuple(FieldMapping(source, target, confidence) for source, target, confidence in pairs)
    return TableMapping(sheet, table, 0.0, mappings, unmapped_source_fields=tuple(unmapped))


@pytest.fixture
def proposal(schema, orgs_workbook):
    profile = WorkbookAnalyzer().analyze(orgs_workbook(6))
    return FieldMapper(schema).map_workbook(profile)


class TestProceedGate:
    """Low-confidence ratio gate."""

    def test_majority_low_blocks(self):
        mappings = [table_mapping(("A", "name", 10.0), ("B", "city", 2.5), ("C", "state", 2.5))]
        with pytest.raises(MappingAmbiguityError) as exc_info:
            check_proceed_gate(mappings)
        assert exc_info.value.low_ratio == pytest.approx(2 / 3)

    def test_override_passes(self):
        mappings = [table_mapping(("A", "name", 10.0), ("B", "city", 2.5), ("C", "state", 2.5))]
        assert check_proceed_gate(mappings, override=True) == pytest.approx(2 / 3)

    def test_half_low_passes(self):
        """Test the gate blocks only strictly above the threshold."""
        mappings = [table_mapping(("A", "name", 10.0), ("B", "city", 2.5))]
        assert check_proceed_gate(mappings) == 0.5

    def test_no_mappings_pass(self):
        assert low_confidence_ratio([]) == 0.0
        assert check_proceed_gate([table_mapping()]) == 0.0

    def test_review_threshold(self):
        mappings = [table_mapping(("A", "name", 5.0), ("B", "city", 7.5))]
        assert low_confidence_ratio(mappings) == 0.0
        assert low_confidence_ratio(mappings, review_threshold=7.5) == 0.5


class TestEdits:
    """Manual retarget, reject and apply_edits."""

    def test_retarget_is_manual_ten(self, schema):
        edited = retarget(schema, table_mapping(("Town", "state", 2.5)), "Town", "city")
        mapping = edited.mapping_for("Town")
        assert mapping.target_field == "city"
        assert mapping.confidence == 10.0 and mapping.manual
        assert all([mapping.data_type_match, mapping.semantic_match, mapping.pattern_match, mapping.business_rule_match])
        assert "state" in edited.unmapped_target_fields
        assert "city" not in edited.unmapped_target_fields

    def test_retarget_unmapped_column(self, schema):
        edited = retarget(schema, table_mapping(unmapped=["Notes"]), "Notes", "notes")
        assert edited.mapping_for("Notes").target_field == "notes"
        assert edited.unmapped_source_fields == ()
        assert edited.confidence == 10.0

    @pytest.mark.parametrize("source,target,message", [
        ("Town", "planet", "Unknown field"),
        ("Nope", "city", "Unknown column"),
        ("Town", "name", "already mapped"),
    ])
    def test_retarget_conflicts(self, schema, source, target, message):
        current = table_mapping(("Company", "name", 10.0), ("Town", "state", 2.5))
        with pytest.raises(MappingConflictError, match=message):
            retarget(schema, current, source, target)

    def test_original_untouched(self, schema):
        current = table_mapping(("Town", "state", 2.5))
        retarget(schema, current, "Town", "city")
        assert current.mapping_for("Town").target_field == "state"

    def test_reject(self, schema):
        edited = reject(schema, table_mapping(("Company", "name", 10.0), ("Town", "state", 2.5)), "Town")
        assert edited.mapping_for("Town") is None
        assert edited.unmapped_source_fields == ("Town",)
        assert edited.confidence == 10.0

        with pytest.raises(MappingConflictError, match="not mapped"):
            reject(schema, edited, "Town")

    def test_apply_edits(self, schema):
        """Test unchanged pairs keep their score; changed pairs become manual."""
        current = table_mapping(("Company", "name", 7.5), ("Town", "state", 2.5), ("Fax", "phone", 2.5))
        edited = apply_edits(schema, current, {"Company": "name", "Town": "city"})

        assert edited.mapping_for("Company").confidence == 7.5
        assert not edited.mapping_for("Company").manual
        assert edited.mapping_for("Town").target_field == "city"
        assert edited.mapping_for("Town").manual
        assert edited.mapping_for("Fax") is None
        assert set(edited.unmapped_source_fields) == {"Fax"}

    def test_apply_edits_swap(self, schema):
        """Test two columns can trade fields in one edit."""
        current = table_mapping(("A", "city", 5.0), ("B", "state", 5.0))
        edited = apply_edits(schema, current, {"A": "state", "B": "city"})
        assert edited.mapping_for("A").target_field == "state"
        assert edited.mapping_for("B").target_field == "city"

    def test_suggest(self, schema, orgs_workbook):
        mapper = FieldMapper(schema)
        sheet = WorkbookAnalyzer().analyze(orgs_workbook(6)).sheet("Orgs")
        ranked = suggest(mapper, sheet, "organizations", "E-mail")
        assert ranked[0].target_field == "email"
        assert all(m.source_field == "E-mail" for m in ranked)


class TestValidateMappings:
    """Approved mappings are checked against the schema."""

    def test_valid(self, schema, proposal):
        validate_mappings(schema, proposal.table_mappings)

    def test_unknown_table(self, schema):
        with pytest.raises(MappingConflictError, match="Unknown target table"):
            validate_mappings(schema, [table_mapping(table="vendors")])

    def test_unknown_field(self, schema):
        with pytest.raises(MappingConflictError, match="Unknown field"):
            validate_mappings(schema, [table_mapping(("A", "planet", 10.0))])

    def test_field_used_twice(self, schema):
        with pytest.raises(MappingConflictError, match="mapped more than once"):
            validate_mappings(schema, [table_mapping(("A", "city", 10.0), ("B", "city", 10.0))])

    def test_column_used_twice(self, schema):
        with pytest.raises(MappingConflictError, match="Column 'A'"):
            validate_mappings(schema, [table_mapping(("A", "city", 10.0), ("A", "state", 10.0))])


def test_mapping_report(proposal):
    """Test the Markdown report lists every mapping with its confidence."""
    report = render_mapping_report(proposal, source="crm.xlsx", generated_at=datetime(2024, 1, 15, 9, 30))

    assert report.startswith("# Field Mapping Report: crm.xlsx\n")
    assert "Generated: 2024-01-15 09:30:00" in report
    assert f"- Total mappings: {proposal.summary.total}" in report
    assert "## Orgs -> organizations" in report
    assert "| E-mail | email |" in report


def test_mapping_report_needs_review(schema):
    from crm_migrator.core.data_structures import MappingResult, MappingSummary

    low = FieldMapping("Town", "state", 2.5, reasons=("Header 'Town' vs 'state'",))
    result = MappingResult(
        table_mappings=(TableMapping("Orgs", "organizations", 2.5, (low,)),),
        unmapped_sheets=("Scratch",),
        summary=MappingSummary(total=1, high=0, medium=0, low=1),
        requires_human_review=True,
        low_confidence_mappings=(("Orgs", low),),
    )
    report = render_mapping_report(result)

    assert report.startswith("# Field Mapping Report\n")
    assert "Human review required: yes" in report
    assert "Unmapped sheets: Scratch" in report
    assert "## Needs review" in report
    assert "- Orgs.Town -> state (2.5)" in report
