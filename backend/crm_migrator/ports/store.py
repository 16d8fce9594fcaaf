"""
Target store interface.

The batch importer only talks to this port, so the storage engine can be
swapped (SQLite for tests, Postgres in production) without touching the
import logic.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Tuple


class TargetStore(ABC):
    """
    Storage for the target CRM tables.

    Implementations raise SystemicError for connectivity, constraint or
    transaction failures.
    """

    @abstractmethod
    def lookup(
        self,
        table: str,
        fields: List[str],
        keys: Iterable[Tuple[Any, ...]],
    ) -> Dict[Tuple[Any, ...], int]:
        """
        Find existing rows by key, in a single query.

        Text values compare case-insensitively; returned keys use lowercased
        text so they match validator.record_key.

        Args:
            table: Target table name
            fields: Key field names
            keys: Key tuples, one value per field

        Returns:
            {key: row id} for keys that exist
        """
        pass

    @abstractmethod
    def insert_batch(self, table: str, records: List[Dict[str, Any]]) -> List[int]:
        """
        Insert records in one transaction; all or nothing.

        Args:
            table: Target table name
            records: Column name -> value dicts

        Returns:
            New row ids, in record order
        """
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Number of rows in a table."""
        pass
