"""
Registry loader - parses the target schema YAML into typed Python objects.

Loads and validates the CRM target schema including:
- Tables, their aliases and natural keys (duplicate detection)
- Field specifications (types, synonyms, format patterns, business rules)
- References between tables (import order via importers/graph.py)
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple
import yaml

from crm_migrator.importers.graph import ImportGraph

FIELD_TYPES = {
    "string", "text", "email", "phone", "number", "integer",
    "date", "boolean", "enum", "reference",
}

DEFAULT_SCHEMA_FILE = Path(__file__).parent / "crm.yaml"


def reference_column(field_name: str) -> str:
    """Name of the foreign key column stored next to a reference field."""
    return f"{field_name}_id"


@dataclass
class FieldSpec:
    """Specification for a single field in a target table."""

    name: str
    type: str = "string"
    label: Optional[str] = None
    required: bool = False
    synonyms: List[str] = field(default_factory=list)
    pattern: Optional[str] = None  # email, phone, postal_code, url, date, currency, percentage
    values: List[str] = field(default_factory=list)  # Enumerated domain
    map: Dict[str, str] = field(default_factory=dict)  # Source value -> domain value
    min: Optional[float] = None
    max: Optional[float] = None
    references: Optional[str] = None  # "table.field"
    max_length: Optional[int] = None

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "FieldSpec":
        """Parse a field spec from YAML dict."""
        return cls(
            name=name,
            type=data.get("type", "string"),
            label=data.get("label"),
            required=data.get("required", False),
            synonyms=[str(s) for s in data.get("synonyms", [])],
            pattern=data.get("pattern"),
            values=[str(v) for v in data.get("values", [])],
            map={str(k): str(v) for k, v in (data.get("map") or {}).items()},
            min=data.get("min"),
            max=data.get("max"),
            references=data.get("references"),
            max_length=data.get("max_length"),
        )

    @property
    def display_name(self) -> str:
        return self.label or self.name.replace("_", " ").title()

    @property
    def reference_target(self) -> Optional[Tuple[str, str]]:
        """(table, field) this reference resolves against."""
        if not self.references:
            return None
        table, _, ref_field = self.references.partition(".")
        return table, ref_field

    @property
    def has_domain(self) -> bool:
        return bool(self.values)

    @property
    def has_range(self) -> bool:
        return self.min is not None or self.max is not None


@dataclass
class TableSpec:
    """Specification for a single target table."""

    name: str
    label: str
    aliases: List[str] = field(default_factory=list)
    fields: Dict[str, FieldSpec] = field(default_factory=dict)
    natural_keys: List[List[str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "TableSpec":
        """Parse a table spec from YAML dict."""
        fields = {
            field_name: FieldSpec.from_dict(field_name, field_data or {})
            for field_name, field_data in data.get("fields", {}).items()
        }

        return cls(
            name=name,
            label=data.get("label", name),
            aliases=[str(a) for a in data.get("aliases", [])],
            fields=fields,
            natural_keys=[list(key) for key in data.get("natural_keys", [])],
        )

    @property
    def references(self) -> List[FieldSpec]:
        return [f for f in self.fields.values() if f.type == "reference"]

    def validate(self) -> None:
        """
        Validate table specification.

        Checks:
        - Field types are known
        - Enum fields declare a domain and map onto it
        - Natural key fields exist
        """
        if not self.fields:
            raise ValueError(f"Table {self.name}: no fields defined")

        for field_spec in self.fields.values():
            if field_spec.type not in FIELD_TYPES:
                raise ValueError(
                    f"Table {self.name}: Field '{field_spec.name}' has unknown type '{field_spec.type}'"
                )
            if field_spec.type == "enum" and not field_spec.values:
                raise ValueError(
                    f"Table {self.name}: Enum field '{field_spec.name}' has no values"
                )
            for source, target in field_spec.map.items():
                if target not in field_spec.values:
                    raise ValueError(
                        f"Table {self.name}: Field '{field_spec.name}' maps '{source}' to unknown value '{target}'"
                    )
            if field_spec.type == "reference" and not field_spec.reference_target:
                raise ValueError(
                    f"Table {self.name}: Reference field '{field_spec.name}' has no target"
                )

        for key in self.natural_keys:
            missing = [name for name in key if name not in self.fields]
            if missing:
                raise ValueError(
                    f"Table {self.name}: Natural key {key} uses unknown fields {missing}"
                )


@dataclass
class TargetSchema:
    """Complete target schema: tables and their dependency order."""

    version: int
    tables: Dict[str, TableSpec]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetSchema":
        """Parse full schema from YAML dict."""
        tables = {
            table_name: TableSpec.from_dict(table_name, table_data or {})
            for table_name, table_data in data.get("tables", {}).items()
        }

        return cls(version=data.get("version", 1), tables=tables)

    def table(self, name: str) -> TableSpec:
        try:
            return self.tables[name]
        except KeyError:
            raise KeyError(f"Unknown target table: {name}") from None

    def build_graph(self) -> ImportGraph:
        """Build the import graph from reference fields."""
        graph = ImportGraph()
        for table in self.tables.values():
            graph.add_node(table.name)
            for field_spec in table.references:
                parent, _ = field_spec.reference_target
                # Self-references do not constrain import order
                if parent != table.name:
                    graph.add_edge(parent, table.name)
        return graph

    def import_order(self, tables: Optional[List[str]] = None) -> List[str]:
        """
        Return tables in dependency order (parents first).

        Args:
            tables: Restrict to these tables (default: all)
        """
        graph = self.build_graph()
        if tables is None:
            return graph.topological_sort()
        return graph.subgraph_order(tables)

    def validate(self) -> None:
        """
        Validate the entire schema.

        Checks:
        - Each table's fields are valid
        - Reference targets exist
        - Reference graph is acyclic
        """
        if not self.tables:
            raise ValueError("Schema defines no tables")

        for table in self.tables.values():
            table.validate()

        for table in self.tables.values():
            for field_spec in table.references:
                parent, parent_field = field_spec.reference_target
                if parent not in self.tables:
                    raise ValueError(
                        f"Table {table.name}: Field '{field_spec.name}' references unknown table '{parent}'"
                    )
                if parent_field not in self.tables[parent].fields:
                    raise ValueError(
                        f"Table {table.name}: Field '{field_spec.name}' references unknown field '{field_spec.references}'"
                    )

        # Raises ValueError on cycles
        self.build_graph().topological_sort()


def load_schema(path: Optional[Path] = None) -> TargetSchema:
    """
    Load and validate the target schema.

    Args:
        path: YAML file (default: bundled crm.yaml)

    Returns:
        Validated TargetSchema
    """
    schema_path = Path(path) if path else DEFAULT_SCHEMA_FILE
    with open(schema_path) as f:
        data = yaml.safe_load(f)

    schema = TargetSchema.from_dict(data or {})
    schema.validate()
    return schema
