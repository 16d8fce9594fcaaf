"""
Field matchers.

Each matcher looks at one (column, field) pair and returns a MatchSignal:
a boolean plus the reason behind it. Matchers are independent and pure.
"""
import re
from typing import Dict, Iterable, List, Set, Tuple

from rapidfuzz import fuzz

from crm_migrator.core.data_structures import ColumnProfile, MatchSignal
from crm_migrator.registry.loader import FieldSpec, TableSpec
from crm_migrator.transform.normalizers import NormalizeError, canonical_token, parse_number

# Inferred column types accepted by each declared field type
TYPE_COMPATIBILITY: Dict[str, Set[str]] = {
    "string": {"string", "enum", "email", "phone", "number"},
    "text": {"string", "enum"},
    "email": {"email", "string"},
    "phone": {"phone", "string", "number"},
    "number": {"number"},
    "integer": {"number"},
    "date": {"date"},
    "boolean": {"boolean", "enum"},
    "enum": {"enum", "string", "boolean"},
    "reference": {"string", "enum", "email"},
}

# Header abbreviations expanded before comparison
ABBREVIATIONS = {
    "co": "company",
    "org": "organization",
    "orgs": "organization",
    "acct": "account",
    "addr": "address",
    "tel": "telephone",
    "ph": "phone",
    "no": "number",
    "num": "number",
    "amt": "amount",
    "desc": "description",
    "dt": "date",
    "mgr": "manager",
    "pct": "percent",
    "prob": "probability",
    "rev": "revenue",
    "est": "estimated",
    "emp": "employee",
    "emps": "employees",
    "qty": "quantity",
}


def normalize_name(text: str) -> str:
    """
    Normalize a header or field name for comparison.

    "CompanyName", "company_name" and "Company-Name" all become
    "company name"; known abbreviations are expanded.
    """
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(text))
    lowered = re.sub(r"[^a-z0-9]+", " ", spaced.lower()).strip()
    return " ".join(ABBREVIATIONS.get(token, token) for token in lowered.split())


def _compact(text: str) -> str:
    return text.replace(" ", "")


def field_names(field: FieldSpec) -> List[str]:
    """Normalized spellings that name a field: name, label and synonyms."""
    names = [normalize_name(field.name)]
    if field.label:
        names.append(normalize_name(field.label))
    names.extend(normalize_name(s) for s in field.synonyms)
    return list(dict.fromkeys(n for n in names if n))


def table_names(table: TableSpec) -> List[str]:
    """Normalized spellings that name a table."""
    names = [normalize_name(table.name), normalize_name(table.label)]
    names.extend(normalize_name(a) for a in table.aliases)
    return list(dict.fromkeys(n for n in names if n))


def column_forms(column_name: str, table: TableSpec) -> List[str]:
    """
    Normalized header, plus the header without a leading table name.

    "Company Name" on an organizations sheet also reads as "name".
    """
    full = normalize_name(column_name)
    forms = [full]
    for prefix in sorted(table_names(table), key=len, reverse=True):
        if full.startswith(prefix + " "):
            rest = full[len(prefix) + 1:]
            if rest:
                forms.append(rest)
            break
    return forms


def name_similarity(forms: Iterable[str], candidates: Iterable[str]) -> Tuple[float, str]:
    """Best fuzzy similarity (0-1) between any form and any candidate."""
    best, best_name = 0.0, ""
    candidates = list(candidates)
    for form in forms:
        for candidate in candidates:
            if _compact(form) == _compact(candidate):
                return 1.0, candidate
            score = fuzz.ratio(form, candidate) / 100.0
            if score > best:
                best, best_name = score, candidate
    return best, best_name


# ===========================
# Matchers
# ===========================

def data_type_matcher(column: ColumnProfile, field: FieldSpec) -> MatchSignal:
    """Inferred column type is compatible with the field's declared type."""
    accepted = TYPE_COMPATIBILITY.get(field.type, set())
    if column.inferred_type in accepted:
        return MatchSignal(
            True, f"Column type '{column.inferred_type}' is compatible with {field.type} field"
        )
    return MatchSignal(
        False, f"Column type '{column.inferred_type}' is not compatible with {field.type} field"
    )


def semantic_matcher(
    column: ColumnProfile,
    field: FieldSpec,
    table: TableSpec,
    threshold: float = 0.85,
) -> Tuple[MatchSignal, float]:
    """
    Header names the field: equals its name, label or a synonym, or is
    fuzzily similar to one of them.

    Returns:
        (signal, name similarity 0-1)
    """
    forms = column_forms(column.name, table)
    similarity, closest = name_similarity(forms, field_names(field))

    if similarity >= 1.0:
        return MatchSignal(True, f"Header '{column.name}' names field '{closest}'", evidence=True), similarity
    if similarity >= threshold:
        return (
            MatchSignal(
                True,
                f"Header '{column.name}' is similar to '{closest}' ({similarity:.2f})",
                evidence=True,
            ),
            similarity,
        )
    return MatchSignal(False, f"Header '{column.name}' does not name field '{field.name}'"), similarity


def pattern_matcher(column: ColumnProfile, field: FieldSpec, threshold: float = 0.8) -> MatchSignal:
    """Enough samples satisfy the field's format (satisfied when it has none)."""
    if not field.pattern:
        return MatchSignal(True, "No format constraint", vacuous=True)

    ratio = column.pattern_ratios.get(field.pattern, 0.0)
    if ratio >= threshold:
        return MatchSignal(
            True, f"{ratio:.0%} of samples match {field.pattern} format", evidence=True
        )
    return MatchSignal(False, f"Only {ratio:.0%} of samples match {field.pattern} format")


def business_rule_matcher(column: ColumnProfile, field: FieldSpec) -> MatchSignal:
    """
    Samples satisfy the field's business rule: an enumerated domain or a
    numeric range. Satisfied when the field has neither.
    """
    if field.has_domain:
        domain = {canonical_token(v) for v in field.values}
        domain |= {canonical_token(k) for k in field.map}
        unknown = sorted({str(v) for v in column.sample_values if canonical_token(v) not in domain})
        if not unknown:
            return MatchSignal(True, f"All values are valid {field.name} values", evidence=True)
        return MatchSignal(False, f"Values outside {field.name} domain: {', '.join(unknown[:5])}")

    if field.has_range:
        try:
            numbers = [parse_number(v) for v in column.sample_values]
        except NormalizeError:
            return MatchSignal(False, f"Non-numeric values for ranged field {field.name}")
        low = field.min if field.min is not None else float("-inf")
        high = field.max if field.max is not None else float("inf")
        if all(low <= n <= high for n in numbers):
            return MatchSignal(True, f"All values within {field.name} range")
        return MatchSignal(False, f"Values outside {field.name} range [{field.min}, {field.max}]")

    return MatchSignal(True, "No business rule", vacuous=True)
