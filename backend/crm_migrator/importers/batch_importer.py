"""
Batch importer - imports one entity in fixed-size batches.

Per batch:
1. Validate and normalize rows (row failures become import errors)
2. Resolve references, one lookup per referenced table
3. Detect duplicates, one lookup per natural key plus keys already seen in
   this run
4. Insert the remaining rows in a single transaction

Systemic failures in steps 2-4 are retried (duplicate detection included)
before they propagate to the orchestrator.
"""
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from crm_migrator.analyzer.workbook_loader import SourceRow
from crm_migrator.core.config import settings
from crm_migrator.core.exceptions import RowValidationError, SystemicError
from crm_migrator.core.logging_config import importer_logger as logger
from crm_migrator.migration.session import DuplicateDetected, EntityProgress, EntityStatus, ImportErrorRecord
from crm_migrator.ports.store import TargetStore
from crm_migrator.registry.loader import TableSpec, TargetSchema, reference_column
from crm_migrator.validate.validator import FK_UNRESOLVED, RowValidator, record_key


@dataclass
class BatchOutcome:
    """Result of one batch."""

    batch_number: int
    size: int
    inserted: int = 0
    errors: List[ImportErrorRecord] = field(default_factory=list)
    duplicates: List[DuplicateDetected] = field(default_factory=list)


@dataclass
class _Candidate:
    row: int
    record: Dict[str, Any]


class BatchImporter:
    """Imports rows of one table into a TargetStore."""

    def __init__(
        self,
        schema: TargetSchema,
        store: TargetStore,
        batch_size: int = None,
        batch_timeout: Optional[float] = None,
        batch_retries: int = None,
    ):
        self.schema = schema
        self.store = store
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.batch_timeout = batch_timeout if batch_timeout is not None else settings.BATCH_TIMEOUT_SECONDS
        self.batch_retries = batch_retries if batch_retries is not None else settings.BATCH_RETRIES
        self._executor: Optional[ThreadPoolExecutor] = None

    def batches(self, rows: List[SourceRow]) -> Iterator[List[SourceRow]]:
        """Split rows into consecutive batches of batch_size."""
        for start in range(0, len(rows), self.batch_size):
            yield rows[start:start + self.batch_size]

    def import_entity(
        self,
        table_name: str,
        rows: List[SourceRow],
        progress: EntityProgress,
        checkpoint: Optional[Callable[[], None]] = None,
        on_batch: Optional[Callable[[BatchOutcome], None]] = None,
    ) -> List[BatchOutcome]:
        """
        Import all rows of one entity.

        Args:
            table_name: Target table
            rows: Source rows keyed by target field
            progress: Entity progress, must be processing
            checkpoint: Called before every batch; may block (pause) or raise (abort)
            on_batch: Called after every batch, once progress is updated

        Returns:
            Outcome of every batch

        Raises:
            SystemicError: If a batch still fails after its retries
        """
        if progress.status != EntityStatus.PROCESSING:
            raise SystemicError(f"Entity {table_name} is not processing")

        table = self.schema.table(table_name)
        validator = RowValidator(self.schema, table_name)
        seen: Dict[Tuple[str, ...], Set[Tuple[Any, ...]]] = {}
        outcomes = []

        for number, batch in enumerate(self.batches(rows), start=1):
            if checkpoint:
                checkpoint()

            outcome = self.import_batch(table, validator, batch, number, seen)
            progress.record_batch(outcome.inserted, len(outcome.errors), len(outcome.duplicates))
            outcomes.append(outcome)
            logger.info(
                f"{table_name} batch {number}: {outcome.inserted} inserted, "
                f"{len(outcome.errors)} errors, {len(outcome.duplicates)} duplicates "
                f"({progress.done}/{progress.total})"
            )
            if on_batch:
                on_batch(outcome)

        return outcomes

    def import_batch(
        self,
        table: TableSpec,
        validator: RowValidator,
        batch: List[SourceRow],
        number: int,
        seen: Dict[Tuple[str, ...], Set[Tuple[Any, ...]]],
    ) -> BatchOutcome:
        """Validate, resolve, deduplicate and insert one batch."""
        outcome = BatchOutcome(batch_number=number, size=len(batch))

        candidates = []
        for source in batch:
            try:
                candidates.append(_Candidate(source.row_number, validator.validate(source.values)))
            except RowValidationError as e:
                outcome.errors.append(ImportErrorRecord(table.name, source.row_number, e.field, e.message, e.code))

        attempts = 1 + max(self.batch_retries, 0)
        for attempt in range(1, attempts + 1):
            try:
                inserted, errors, duplicates, new_keys = self._with_timeout(self._write, table, candidates, seen)
                break
            except SystemicError as e:
                if attempt >= attempts:
                    logger.error(f"{table.name} batch {number} failed after {attempts} attempts: {e}")
                    raise
                logger.warning(f"{table.name} batch {number} attempt {attempt} failed, retrying: {e}")

        for fields, keys in new_keys.items():
            seen.setdefault(fields, set()).update(keys)
        outcome.inserted = inserted
        outcome.errors.extend(errors)
        outcome.duplicates = duplicates

        outcome.errors.sort(key=lambda err: err.row)
        return outcome

    def _write(
        self,
        table: TableSpec,
        candidates: List[_Candidate],
        seen: Dict[Tuple[str, ...], Set[Tuple[Any, ...]]],
    ) -> Tuple[int, List[ImportErrorRecord], List[DuplicateDetected], Dict[Tuple[str, ...], Set[Tuple[Any, ...]]]]:
        # Work on copies so a failed attempt leaves no trace
        records = [_Candidate(c.row, dict(c.record)) for c in candidates]
        errors: List[ImportErrorRecord] = []

        records = self._resolve_references(table, records, errors)
        records, duplicates, new_keys = self._detect_duplicates(table, records, seen)
        self.store.insert_batch(table.name, [c.record for c in records])
        return len(records), errors, duplicates, new_keys

    def _resolve_references(
        self,
        table: TableSpec,
        records: List[_Candidate],
        errors: List[ImportErrorRecord],
    ) -> List[_Candidate]:
        """Attach parent ids; rows whose parent is missing become errors."""
        for ref in table.references:
            parent_table, parent_field = ref.reference_target
            values = {c.record[ref.name] for c in records if c.record.get(ref.name) is not None}
            found = self.store.lookup(parent_table, [parent_field], [(v,) for v in values]) if values else {}

            kept = []
            for c in records:
                value = c.record.get(ref.name)
                if value is None:
                    c.record[reference_column(ref.name)] = None
                    kept.append(c)
                    continue
                key = record_key({parent_field: value}, [parent_field])
                if key in found:
                    c.record[reference_column(ref.name)] = found[key]
                    kept.append(c)
                else:
                    errors.append(
                        ImportErrorRecord(
                            table.name,
                            c.row,
                            ref.name,
                            f"Referenced {parent_table} '{value}' not found",
                            FK_UNRESOLVED,
                        )
                    )
            records = kept
        return records

    def _detect_duplicates(
        self,
        table: TableSpec,
        records: List[_Candidate],
        seen: Dict[Tuple[str, ...], Set[Tuple[Any, ...]]],
    ) -> Tuple[List[_Candidate], List[DuplicateDetected], Dict[Tuple[str, ...], Set[Tuple[Any, ...]]]]:
        """
        Split records into new ones and duplicates.

        Each record is keyed by its first natural key whose fields are all
        filled in; records with no complete key are never duplicates.
        """
        keyed: List[Tuple[_Candidate, Optional[Tuple[str, ...]], Optional[Tuple[Any, ...]]]] = []
        by_fields: Dict[Tuple[str, ...], Set[Tuple[Any, ...]]] = {}
        for c in records:
            fields, key = None, None
            for natural_key in table.natural_keys:
                key = record_key(c.record, natural_key)
                if key is not None:
                    fields = tuple(natural_key)
                    by_fields.setdefault(fields, set()).add(key)
                    break
            keyed.append((c, fields, key))

        existing = {
            fields: set(self.store.lookup(table.name, list(fields), keys))
            for fields, keys in by_fields.items()
        }

        kept: List[_Candidate] = []
        duplicates: List[DuplicateDetected] = []
        new_keys: Dict[Tuple[str, ...], Set[Tuple[Any, ...]]] = {}
        for c, fields, key in keyed:
            if fields is None:
                kept.append(c)
                continue
            batch_keys = new_keys.setdefault(fields, set())
            if key in existing[fields] or key in seen.get(fields, set()) or key in batch_keys:
                duplicates.append(
                    DuplicateDetected(table.name, c.row, {name: c.record[name] for name in fields})
                )
                continue
            batch_keys.add(key)
            kept.append(c)
        return kept, duplicates, new_keys

    def _with_timeout(self, func: Callable, *args) -> Any:
        if not self.batch_timeout:
            return func(*args)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="batch")
        future = self._executor.submit(func, *args)
        try:
            return future.result(timeout=self.batch_timeout)
        except FutureTimeout:
            raise SystemicError(f"Batch timed out after {self.batch_timeout}s") from None

    def shutdown(self) -> None:
        """Release the timeout worker thread."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
