"""
Confidence scoring.

Confidence is 2.5 per satisfied signal, so it is always one of
0, 2.5, 5, 7.5 or 10. Signals that hold only because a field has no
constraint count only when some other signal ties the column to the
field; a pair with no such evidence scores 0.
"""
from typing import Dict

from crm_migrator.core.data_structures import ColumnProfile, FieldMapping, MatchSignal
from crm_migrator.field_mapper.matchers import (
    business_rule_matcher,
    data_type_matcher,
    pattern_matcher,
    semantic_matcher,
)
from crm_migrator.registry.loader import FieldSpec, TableSpec

SIGNAL_WEIGHT = 2.5
SIGNALS = ("data_type", "semantic", "pattern", "business_rule")


def counted_signals(signals: Dict[str, MatchSignal]) -> Dict[str, bool]:
    """Signals that count towards confidence (none without evidence)."""
    has_evidence = any(signal.evidence for signal in signals.values())
    return {name: has_evidence and signals[name].matched for name in SIGNALS}


def score_signals(signals: Dict[str, MatchSignal]) -> float:
    """
    Score a set of signals.

    Args:
        signals: Signal name -> MatchSignal, for the four SIGNALS

    Returns:
        Confidence on the 0-10 scale
    """
    return SIGNAL_WEIGHT * sum(counted_signals(signals).values())


def evaluate(
    column: ColumnProfile,
    field: FieldSpec,
    table: TableSpec,
    name_threshold: float = 0.85,
    pattern_threshold: float = 0.8,
) -> FieldMapping:
    """
    Run all matchers for one (column, field) pair.

    Returns:
        FieldMapping carrying the confidence, signals and reasons
    """
    semantic, similarity = semantic_matcher(column, field, table, name_threshold)
    signals = {
        "data_type": data_type_matcher(column, field),
        "semantic": semantic,
        "pattern": pattern_matcher(column, field, pattern_threshold),
        "business_rule": business_rule_matcher(column, field),
    }
    confidence = score_signals(signals)
    counted = counted_signals(signals)

    return FieldMapping(
        source_field=column.name,
        target_field=field.name,
        confidence=confidence,
        reasons=tuple(signals[name].reason for name in SIGNALS),
        data_type_match=counted["data_type"],
        semantic_match=counted["semantic"],
        pattern_match=counted["pattern"],
        business_rule_match=counted["business_rule"],
        name_similarity=similarity,
    )
