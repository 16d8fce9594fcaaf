"""
Migration Orchestrator - drives one dataset through a migration session.

Session lifecycle:
    idle → analyzing → migrating → {completed | error}

- start() analyzes the workbook and proposes mappings (analyzing)
- approve() checks the reviewed mappings and plans the entities (migrating)
- run() imports entities one at a time in dependency order
- pause()/resume() take effect at batch boundaries
- abort() ends the session at once; committed batches stay committed
"""
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from crm_migrator.analyzer.workbook_analyzer import WorkbookAnalyzer
from crm_migrator.analyzer.workbook_loader import SourceRow, Workbook, load_workbook
from crm_migrator.core.config import settings
from crm_migrator.core.data_structures import MappingResult, TableMapping, WorkbookProfile
from crm_migrator.core.exceptions import (
    AnalysisError,
    MappingConflictError,
    MigrationAborted,
    MigrationStateError,
    SystemicError,
)
from crm_migrator.core.logging_config import migration_logger as logger
from crm_migrator.field_mapper.mapper import FieldMapper
from crm_migrator.field_mapper.report import render_mapping_report
from crm_migrator.field_mapper.review import check_proceed_gate, validate_mappings
from crm_migrator.importers.batch_importer import BatchImporter, BatchOutcome
from crm_migrator.migration.broadcaster import EventType, ProgressBroadcaster
from crm_migrator.migration.report import render_migration_report
from crm_migrator.migration.session import (
    EntityProgress,
    EntityStatus,
    MigrationSession,
    SessionStatus,
    utcnow,
)
from crm_migrator.ports.store import TargetStore
from crm_migrator.registry.loader import TargetSchema
from crm_migrator.validate.validator import SampleCheck, check_sample

ABORT_MESSAGE = "Migration aborted by user"


class MigrationOrchestrator:
    """Owns the migration session of one dataset."""

    def __init__(
        self,
        dataset_id: str,
        schema: TargetSchema,
        store: TargetStore,
        broadcaster: Optional[ProgressBroadcaster] = None,
        analyzer: Optional[WorkbookAnalyzer] = None,
        mapper: Optional[FieldMapper] = None,
        importer: Optional[BatchImporter] = None,
    ):
        self.dataset_id = dataset_id
        self.schema = schema
        self.store = store
        self.broadcaster = broadcaster or ProgressBroadcaster(settings.SUBSCRIBER_BUFFER_SIZE)
        self.analyzer = analyzer or WorkbookAnalyzer()
        self.mapper = mapper or FieldMapper(schema)
        self.importer = importer or BatchImporter(schema, store)

        self._lock = threading.RLock()
        self._resume = threading.Event()
        self._abort = threading.Event()
        self._running = False
        self._new_session()

    def _new_session(self) -> None:
        self.session = MigrationSession(dataset_id=self.dataset_id)
        self.broadcaster.session_id = self.session.id
        self.workbook: Optional[Workbook] = None
        self.profile: Optional[WorkbookProfile] = None
        self.proposal: Optional[MappingResult] = None
        self.approved: Tuple[TableMapping, ...] = ()
        self._plan: List[Tuple[str, List[SourceRow]]] = []
        self._resume.set()
        self._abort.clear()

    # ===========================
    # Analysis
    # ===========================

    def start(self, source: Union[Workbook, str, Path]) -> MappingResult:
        """
        Analyze a workbook and propose mappings.

        Args:
            source: Loaded workbook or path to an .xlsx file

        Returns:
            Proposed MappingResult; the session waits in analyzing for approve()

        Raises:
            MigrationStateError: If the session is not idle
            AnalysisError: If the workbook cannot be analyzed (session → error)
        """
        with self._lock:
            if self.session.status != SessionStatus.IDLE:
                raise MigrationStateError(
                    f"Cannot start: session is {self.session.status.value}"
                )
            self.session.transition(SessionStatus.ANALYZING)
            self.session.start_time = utcnow()
            self.session.message = None

        logger.info(f"Session {self.session.id}: analyzing dataset {self.dataset_id}")
        try:
            workbook = source if isinstance(source, Workbook) else load_workbook(source)
            profile = self.analyzer.analyze(workbook)
            if not profile.sheets:
                raise AnalysisError("no sheet could be analyzed")
            result = self.mapper.map_workbook(profile)
        except AnalysisError as e:
            self._fail(str(e))
            raise

        with self._lock:
            if self._abort.is_set():
                raise MigrationAborted(ABORT_MESSAGE)
            self.workbook = workbook
            self.profile = profile
            self.proposal = result

        logger.info(
            f"Session {self.session.id}: proposed {len(result.table_mappings)} table mappings "
            f"({result.summary.high} high, {result.summary.medium} medium, {result.summary.low} low)"
        )
        return result

    def report(self) -> str:
        """Markdown report of the current proposal."""
        if self.proposal is None:
            raise MigrationStateError("No mapping proposal yet")
        return render_mapping_report(self.proposal, source=self.workbook.source if self.workbook else "")

    def proposed_mapping(self, sheet_name: str, target_table: str) -> TableMapping:
        """
        Proposal for a sheet, re-mapped when the reviewer picked another table.

        Raises:
            MigrationStateError: If there is no proposal yet
            MappingConflictError: Unknown sheet or table
        """
        if self.proposal is None or self.profile is None:
            raise MigrationStateError("No mapping proposal yet")
        for table_mapping in self.proposal.table_mappings:
            if table_mapping.source_sheet == sheet_name and table_mapping.target_table == target_table:
                return table_mapping

        sheet = self.profile.sheet(sheet_name)
        if sheet is None:
            raise MappingConflictError(f"Unknown sheet '{sheet_name}'")
        if target_table not in self.schema.tables:
            raise MappingConflictError(f"Unknown target table '{target_table}'")
        return self.mapper.map_sheet(sheet, target_table)

    # ===========================
    # Approval
    # ===========================

    def approve(self, table_mappings: Iterable[TableMapping], override: bool = False) -> MigrationSession:
        """
        Accept reviewed mappings and plan the import.

        Args:
            table_mappings: Mappings returned by the review surface
            override: Proceed even when too many mappings are low confidence

        Raises:
            MigrationStateError: If the session is not waiting for approval
            MappingConflictError: If the mappings do not fit the schema or workbook
            MappingAmbiguityError: If the proceed gate fails (session stays analyzing)
        """
        table_mappings = tuple(table_mappings)
        with self._lock:
            if self.session.status != SessionStatus.ANALYZING or self.workbook is None:
                raise MigrationStateError(
                    f"Cannot approve: session is {self.session.status.value}"
                )

            validate_mappings(self.schema, table_mappings)
            ratio = check_proceed_gate(
                table_mappings,
                override=override,
                max_low_ratio=settings.PROCEED_GATE_MAX_LOW_RATIO,
                review_threshold=settings.REVIEW_THRESHOLD,
            )
            plan = self._build_plan(table_mappings)
            checks = [
                check_sample(self.schema, table, [r.values for r in rows], settings.PRE_VALIDATION_SAMPLE_SIZE)
                for table, rows in plan
            ]

            self.approved = table_mappings
            self._plan = plan
            self.session.entities = [EntityProgress(name=table, total=len(rows)) for table, rows in plan]
            self.session.sample_checks = checks
            self.session.transition(SessionStatus.MIGRATING)

        logger.info(
            f"Session {self.session.id}: approved {len(table_mappings)} table mappings "
            f"(low-confidence ratio {ratio:.0%}), entities: {[t for t, _ in plan]}"
        )
        for check in checks:
            self._warn_sample(check)
        return self.session

    def _warn_sample(self, check: SampleCheck) -> None:
        """Advisory: a high sample error rate is reported, never blocking."""
        severity = check.severity(settings.PRE_VALIDATION_WARN_RATE, settings.PRE_VALIDATION_CRITICAL_RATE)
        if severity is None:
            return
        message = (
            f"High error rate detected: {check.error_rate:.1%} "
            f"(estimated {check.estimated_errors} errors)"
        )
        logger.warning(f"Session {self.session.id}: {check.entity}: {message}")
        self.broadcaster.publish(
            EventType.VALIDATION_WARNING,
            {"entity": check.entity, "message": message, "severity": severity, **check.to_dict()},
        )

    def _build_plan(self, table_mappings: Tuple[TableMapping, ...]) -> List[Tuple[str, List[SourceRow]]]:
        """Rows per target table, tables in dependency order."""
        rows_by_table: Dict[str, List[SourceRow]] = {}
        for table_mapping in table_mappings:
            if not table_mapping.field_mappings:
                continue
            try:
                sheet = self.workbook.sheet(table_mapping.source_sheet)
            except KeyError:
                raise MappingConflictError(f"Unknown sheet '{table_mapping.source_sheet}'") from None

            records = sheet.records(settings.HEADER_SCAN_ROWS)
            rows = rows_by_table.setdefault(table_mapping.target_table, [])
            for record in records:
                values = {
                    m.target_field: record.values.get(m.source_field)
                    for m in table_mapping.field_mappings
                }
                rows.append(SourceRow(row_number=record.row_number, values=values))

        order = self.schema.import_order(list(rows_by_table))
        return [(table, rows_by_table[table]) for table in order]

    # ===========================
    # Import
    # ===========================

    def run(self) -> MigrationSession:
        """
        Import every planned entity, parents first.

        Blocks until the session completes, fails or is aborted.

        Raises:
            MigrationStateError: If the session is not migrating
        """
        with self._lock:
            if self.session.status != SessionStatus.MIGRATING:
                raise MigrationStateError(f"Cannot run: session is {self.session.status.value}")
            self._running = True

        try:
            for table, rows in self._plan:
                self._checkpoint()
                progress = self.session.entity(table)
                with self._lock:
                    progress.advance(EntityStatus.PROCESSING)
                    self.session.current_entity = table
                self.broadcaster.publish(EventType.ENTITY_START, {"entity": table, "total": progress.total})
                logger.info(f"Session {self.session.id}: importing {table} ({progress.total} rows)")

                self.importer.import_entity(
                    table,
                    rows,
                    progress,
                    checkpoint=self._checkpoint,
                    on_batch=lambda outcome, progress=progress: self._on_batch(progress, outcome),
                )

                # An abort during the last batch has no later checkpoint to land on
                with self._lock:
                    if self._abort.is_set():
                        raise MigrationAborted(ABORT_MESSAGE)
                    progress.advance(EntityStatus.COMPLETED)
                self.broadcaster.publish(EventType.ENTITY_COMPLETE, progress.to_dict())

            self._complete()
        except MigrationAborted:
            self._stop_current_entity()
            logger.warning(f"Session {self.session.id}: stopped after abort")
        except SystemicError as e:
            logger.error(f"Session {self.session.id}: systemic failure: {e}")
            self._fail(str(e))
        except Exception as e:
            logger.exception(f"Session {self.session.id}: unexpected failure")
            self._fail(f"Unexpected error: {e}")
            raise
        finally:
            with self._lock:
                self._running = False

        return self.session

    def migrate(self, table_mappings: Iterable[TableMapping], override: bool = False) -> MigrationSession:
        """approve() then run()."""
        self.approve(table_mappings, override)
        return self.run()

    def _on_batch(self, progress: EntityProgress, outcome: BatchOutcome) -> None:
        with self._lock:
            self.session.errors.extend(outcome.errors)
            self.session.duplicates.extend(outcome.duplicates)
            aborted = self._abort.is_set()
        if not aborted:
            self.broadcaster.publish(
                EventType.ENTITY_PROGRESS, {**progress.to_dict(), "batch": outcome.batch_number}
            )

    def _checkpoint(self) -> None:
        """Batch boundary: wait while paused, stop once aborted."""
        if self._abort.is_set():
            raise MigrationAborted(ABORT_MESSAGE)
        if not self._resume.is_set():
            logger.info(f"Session {self.session.id}: paused")
            self._resume.wait()
        if self._abort.is_set():
            raise MigrationAborted(ABORT_MESSAGE)

    def _complete(self) -> None:
        with self._lock:
            if not self.session.is_live:
                return
            self.session.transition(SessionStatus.COMPLETED)
            self.session.end_time = utcnow()
            self.session.current_entity = None
            summary = {
                "entities": [e.to_dict() for e in self.session.entities],
                "errors": len(self.session.errors),
                "duplicates": len(self.session.duplicates),
                "duration_ms": self.session.duration_ms(),
            }
        logger.info(
            f"Session {self.session.id}: completed with {summary['errors']} errors, "
            f"{summary['duplicates']} duplicates in {summary['duration_ms']}ms"
        )
        self.broadcaster.publish(EventType.MIGRATION_COMPLETE, summary)

    def _stop_current_entity(self) -> None:
        with self._lock:
            name = self.session.current_entity
            if name:
                progress = self.session.entity(name)
                if progress.status == EntityStatus.PROCESSING:
                    progress.advance(EntityStatus.ERROR)

    def _fail(self, message: str, stop_entity: bool = True) -> None:
        if stop_entity:
            self._stop_current_entity()
        with self._lock:
            if not self.session.is_live:
                return
            self.session.transition(SessionStatus.ERROR)
            self.session.end_time = utcnow()
            self.session.message = message
            entities = [e.to_dict() for e in self.session.entities]
        self.broadcaster.publish(EventType.MIGRATION_ERROR, {"message": message, "entities": entities})

    # ===========================
    # Control
    # ===========================

    def pause(self) -> MigrationSession:
        """Soft pause; the running import stops at its next batch boundary."""
        with self._lock:
            if self.session.status != SessionStatus.MIGRATING or self.session.paused:
                raise MigrationStateError("Can only pause a running migration")
            self.session.paused = True
            self._resume.clear()
        logger.info(f"Session {self.session.id}: pause requested")
        return self.session

    def resume(self) -> MigrationSession:
        with self._lock:
            if self.session.status != SessionStatus.MIGRATING or not self.session.paused:
                raise MigrationStateError("Can only resume a paused migration")
            self.session.paused = False
            self._resume.set()
        logger.info(f"Session {self.session.id}: resumed")
        return self.session

    def abort(self) -> MigrationSession:
        """
        End the session now. Nothing is rolled back; the batch in flight
        finishes and no further batch starts.
        """
        with self._lock:
            if not self.session.is_live:
                raise MigrationStateError(f"Cannot abort: session is {self.session.status.value}")
            self._abort.set()
            self.session.paused = False
            self._resume.set()
            # A running import marks its entity at the next batch boundary
            running = self._running

        logger.warning(f"Session {self.session.id}: aborted by user")
        self._fail(ABORT_MESSAGE, stop_entity=not running)
        return self.session

    def reset(self) -> MigrationSession:
        """Start over with a fresh idle session."""
        with self._lock:
            if self.session.is_live:
                raise MigrationStateError(f"Cannot reset: session is {self.session.status.value}")
            self._new_session()
        return self.session

    def migration_report(self) -> str:
        """
        Markdown report of the run.

        Raises:
            MigrationStateError: If no mapping was approved yet
        """
        with self._lock:
            if not self.session.entities and not self.session.is_terminal:
                raise MigrationStateError(
                    f"No migration to report: session is {self.session.status.value}"
                )
            return render_migration_report(self.session)

    def snapshot(self) -> Dict:
        """JSON-serializable view of the session."""
        with self._lock:
            return self.session.to_dict()
