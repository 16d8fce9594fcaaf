"""
SQLAlchemy implementation of the target store.

Tables are built from the target schema: an integer `id` primary key, one
column per field and, for reference fields, an extra `<field>_id` foreign
key to the referenced table.
"""
from typing import Any, Dict, Iterable, List, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from crm_migrator.core.exceptions import SystemicError
from crm_migrator.core.logging_config import importer_logger as logger
from crm_migrator.ports.store import TargetStore
from crm_migrator.registry.loader import FieldSpec, TargetSchema, reference_column

COLUMN_TYPES = {
    "text": Text,
    "email": lambda: String(254),
    "phone": lambda: String(32),
    "number": Float,
    "integer": Integer,
    "date": Date,
    "boolean": Boolean,
    "enum": lambda: String(64),
}


def _column_type(field: FieldSpec):
    if field.type in ("string", "reference"):
        return String(field.max_length or 255)
    return COLUMN_TYPES[field.type]()


def build_tables(schema: TargetSchema, metadata: MetaData) -> Dict[str, Table]:
    """Create SQLAlchemy Table objects for every target table."""
    tables = {}
    for table_name in schema.import_order():
        spec = schema.table(table_name)
        columns = [Column("id", Integer, primary_key=True, autoincrement=True)]
        for field in spec.fields.values():
            columns.append(Column(field.name, _column_type(field), nullable=not field.required))
            if field.type == "reference":
                parent, _ = field.reference_target
                columns.append(
                    Column(reference_column(field.name), Integer, ForeignKey(f"{parent}.id"), nullable=True)
                )
        tables[table_name] = Table(table_name, metadata, *columns)
    return tables


class SQLAlchemyTargetStore(TargetStore):
    """Target store backed by any SQLAlchemy engine."""

    def __init__(self, engine: Engine, schema: TargetSchema):
        self.engine = engine
        self.schema = schema
        self.metadata = MetaData()
        self.tables = build_tables(schema, self.metadata)

    def create_all(self) -> None:
        """Create missing target tables."""
        try:
            self.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise SystemicError(f"Cannot create target tables: {e}") from e

    def drop_all(self) -> None:
        self.metadata.drop_all(self.engine)

    def _table(self, name: str) -> Table:
        try:
            return self.tables[name]
        except KeyError:
            raise SystemicError(f"Unknown target table: {name}") from None

    def lookup(
        self,
        table: str,
        fields: List[str],
        keys: Iterable[Tuple[Any, ...]],
    ) -> Dict[Tuple[Any, ...], int]:
        """Find existing rows by key, in a single query."""
        sa_table = self._table(table)
        columns = [sa_table.c[name] for name in fields]
        conditions = [
            and_(*[_equals(column, value) for column, value in zip(columns, key)])
            for key in set(keys)
        ]
        if not conditions:
            return {}

        stmt = select(sa_table.c.id, *columns).where(or_(*conditions)).order_by(sa_table.c.id)
        found: Dict[Tuple[Any, ...], int] = {}
        try:
            with self.engine.connect() as conn:
                for row in conn.execute(stmt):
                    key = tuple(_fold(value) for value in row[1:])
                    found.setdefault(key, row[0])
        except SQLAlchemyError as e:
            logger.error(f"Lookup on {table}{fields} failed: {e}")
            raise SystemicError(f"Lookup on {table} failed: {e}") from e
        return found

    def insert_batch(self, table: str, records: List[Dict[str, Any]]) -> List[int]:
        """Insert records in one transaction; all or nothing."""
        if not records:
            return []
        sa_table = self._table(table)
        ids = []
        try:
            with self.engine.begin() as conn:
                for record in records:
                    result = conn.execute(sa_table.insert().values(**record))
                    ids.append(result.inserted_primary_key[0])
        except SQLAlchemyError as e:
            logger.error(f"Insert of {len(records)} rows into {table} failed: {e}")
            raise SystemicError(f"Insert into {table} failed: {e}") from e
        return ids

    def count(self, table: str) -> int:
        sa_table = self._table(table)
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(sa_table)).scalar_one()
        except SQLAlchemyError as e:
            raise SystemicError(f"Count on {table} failed: {e}") from e

    def counts(self) -> Dict[str, int]:
        """Row count per target table."""
        return {name: self.count(name) for name in self.tables}


def _equals(column, value):
    if isinstance(value, str):
        return func.lower(column) == value.lower()
    return column == value


def _fold(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value
