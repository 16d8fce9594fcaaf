"""
Tests for the migration orchestrator.

Validates:
- Full run over a four-entity workbook, parents first
- Proceed gate and override
- Pause/resume at batch boundaries
- Abort mid-run: no rollback, later entities stay pending
- Systemic failures end the session in error
"""
import threading
import time

import pytest

from crm_migrator.adapters.store_sqlalchemy import SQLAlchemyTargetStore
from crm_migrator.analyzer.workbook_loader import Workbook
from crm_migrator.core.data_structures import FieldMapping, TableMapping
from crm_migrator.core.exceptions import (
    AnalysisError,
    MappingAmbiguityError,
    MappingConflictError,
    MigrationStateError,
    SystemicError,
)
from crm_migrator.importers.batch_importer import BatchImporter
from crm_migrator.migration.broadcaster import EventType
from crm_migrator.migration.orchestrator import ABORT_MESSAGE, MigrationOrchestrator
from crm_migrator.migration.session import EntityStatus, SessionStatus

ENTITIES = ["organizations", "contacts", "opportunities", "interactions"]


class AbortingStore(SQLAlchemyTargetStore):
    """Aborts the session right after the first insert into `abort_on`."""

    def __init__(self, engine, schema, abort_on):
        super().__init__(engine, schema)
        self.abort_on = abort_on
        self.orchestrator = None

    def insert_batch(self, table, records):
        ids = super().insert_batch(table, records)
        if table == self.abort_on and self.orchestrator.session.is_live:
            self.orchestrator.abort()
        return ids


class PausingStore(SQLAlchemyTargetStore):
    """Pauses the session right after the first insert into `pause_on`."""

    def __init__(self, engine, schema, pause_on):
        super().__init__(engine, schema)
        self.pause_on = pause_on
        self.orchestrator = None
        self.paused = threading.Event()

    def insert_batch(self, table, records):
        ids = super().insert_batch(table, records)
        if table == self.pause_on and not self.paused.is_set():
            self.orchestrator.pause()
            self.paused.set()
        return ids


class FailingStore(SQLAlchemyTargetStore):
    """Every insert into `fail_on` raises a systemic error."""

    def __init__(self, engine, schema, fail_on):
        super().__init__(engine, schema)
        self.fail_on = fail_on

    def insert_batch(self, table, records):
        if table == self.fail_on:
            raise SystemicError("disk full")
        return super().insert_batch(table, records)


def make_orchestrator(schema, store, batch_size=50):
    return MigrationOrchestrator(
        "ds1", schema, store, importer=BatchImporter(schema, store, batch_size=batch_size)
    )


@pytest.fixture
def orchestrator(schema, store):
    return make_orchestrator(schema, store)


def statuses(orchestrator):
    return {e.name: e.status for e in orchestrator.session.entities}


class TestHappyPath:
    """Analyze, approve and run a full workbook."""

    def test_full_migration(self, orchestrator, store, crm_workbook):
        subscription = orchestrator.broadcaster.subscribe()
        proposal = orchestrator.start(crm_workbook)
        assert orchestrator.session.status == SessionStatus.ANALYZING

        session = orchestrator.migrate(proposal.table_mappings)

        assert session.status == SessionStatus.COMPLETED
        assert [e.name for e in session.entities] == ENTITIES
        assert all(e.status == EntityStatus.COMPLETED for e in session.entities)
        assert all(e.processed == 4 for e in session.entities)
        assert session.errors == [] and session.duplicates == []
        assert store.counts() == {name: 4 for name in ENTITIES}
        assert session.end_time is not None and session.current_entity is None

        events = subscription.drain()
        expected = [EventType.CONNECTED]
        for _ in ENTITIES:
            expected += [EventType.ENTITY_START, EventType.ENTITY_PROGRESS, EventType.ENTITY_COMPLETE]
        expected.append(EventType.MIGRATION_COMPLETE)
        assert [e.type for e in events] == expected
        assert [e.data["entity"] for e in events if e.type == EventType.ENTITY_START] == ENTITIES
        assert events[-1].data["errors"] == 0

    def test_row_errors_do_not_fail_session(self, orchestrator, store):
        workbook = Workbook.from_rows({
            "Orgs": [
                ["Company Name", "E-mail", "Segment"],
                ["Acme", "info@acme.com", "Bar"],
                ["Blue Fin", "not-an-email", "Bakery"],
                ["Cafe Uno", "uno@cafe.com", "Bar"],
                ["Acme", "again@acme.com", "Bar"],
            ]
        })
        proposal = orchestrator.start(workbook)
        session = orchestrator.migrate(proposal.table_mappings)

        assert session.status == SessionStatus.COMPLETED
        progress = session.entity("organizations")
        assert (progress.processed, progress.errors, progress.duplicates) == (2, 1, 1)
        assert [(e.row, e.code) for e in session.errors] == [(2, "INVALID_EMAIL")]
        assert [d.row for d in session.duplicates] == [4]

    def test_report_after_start(self, orchestrator, crm_workbook):
        orchestrator.start(crm_workbook)
        assert "## Orgs -> organizations" in orchestrator.report()

    def test_migration_report(self, orchestrator, crm_workbook):
        proposal = orchestrator.start(crm_workbook)
        with pytest.raises(MigrationStateError, match="No migration to report"):
            orchestrator.migration_report()

        orchestrator.migrate(proposal.table_mappings)
        report = orchestrator.migration_report()
        assert report.startswith("# Migration Report: ds1")
        for name in ENTITIES:
            assert f"| {name} | 4 | 4 | 0 | 0 | 0 | completed |" in report

    def test_proposed_mapping_for_other_table(self, orchestrator, crm_workbook):
        orchestrator.start(crm_workbook)
        assert orchestrator.proposed_mapping("Orgs", "organizations") == orchestrator.proposal.table_mappings[0]
        assert orchestrator.proposed_mapping("Orgs", "contacts").target_table == "contacts"
        with pytest.raises(MappingConflictError):
            orchestrator.proposed_mapping("Missing", "contacts")
        with pytest.raises(MappingConflictError):
            orchestrator.proposed_mapping("Orgs", "vendors")


class TestApproval:
    """Proceed gate and mapping checks at approval time."""

    def gated_mapping(self):
        return TableMapping(
            "Orgs",
            "organizations",
            5.0,
            (
                FieldMapping("Company Name", "name", 10.0),
                FieldMapping("E-mail", "email", 2.5),
                FieldMapping("Segment", "segment", 2.5),
            ),
        )

    def test_gate_blocks_then_override(self, orchestrator, orgs_workbook):
        """Test 2 of 3 mappings below 5 blocks without override."""
        orchestrator.start(orgs_workbook(4))

        with pytest.raises(MappingAmbiguityError):
            orchestrator.approve([self.gated_mapping()])
        assert orchestrator.session.status == SessionStatus.ANALYZING

        orchestrator.approve([self.gated_mapping()], override=True)
        assert orchestrator.session.status == SessionStatus.MIGRATING
        assert [(e.name, e.total) for e in orchestrator.session.entities] == [("organizations", 4)]

    def test_conflicting_mappings_rejected(self, orchestrator, orgs_workbook):
        orchestrator.start(orgs_workbook(4))
        bad = TableMapping(
            "Orgs", "organizations", 10.0,
            (FieldMapping("Company Name", "name", 10.0), FieldMapping("E-mail", "name", 10.0)),
        )
        with pytest.raises(MappingConflictError):
            orchestrator.approve([bad])
        assert orchestrator.session.status == SessionStatus.ANALYZING

    def test_unknown_sheet_rejected(self, orchestrator, orgs_workbook):
        orchestrator.start(orgs_workbook(4))
        mapping = TableMapping("Nope", "organizations", 10.0, (FieldMapping("Name", "name", 10.0),))
        with pytest.raises(MappingConflictError, match="Unknown sheet"):
            orchestrator.approve([mapping])

    def test_approve_requires_analysis(self, orchestrator):
        with pytest.raises(MigrationStateError):
            orchestrator.approve([])

    def test_sample_check_warns_on_high_error_rate(self, orchestrator):
        """Test approval validates a sample and warns without blocking."""
        workbook = Workbook.from_rows({
            "Orgs": [
                ["Company Name", "E-mail"],
                ["Acme", "info@acme.com"],
                ["Blue Fin", "not-an-email"],
                ["Cafe Uno", "uno@cafe.com"],
                ["Deli Dos", "also bad"],
            ]
        })
        orchestrator.start(workbook)
        subscription = orchestrator.broadcaster.subscribe()
        mapping = TableMapping(
            "Orgs", "organizations", 10.0,
            (FieldMapping("Company Name", "name", 10.0), FieldMapping("E-mail", "email", 10.0)),
        )
        session = orchestrator.approve([mapping])

        assert session.status == SessionStatus.MIGRATING
        check = session.sample_checks[0]
        assert (check.entity, check.sampled, check.errors) == ("organizations", 4, 2)
        assert check.codes == {"INVALID_EMAIL": 2}

        warnings = [e for e in subscription.drain() if e.type == EventType.VALIDATION_WARNING]
        assert len(warnings) == 1
        assert warnings[0].data["severity"] == "critical"
        assert warnings[0].data["message"] == "High error rate detected: 50.0% (estimated 2 errors)"

    def test_clean_sample_has_no_warning(self, orchestrator, orgs_workbook):
        proposal = orchestrator.start(orgs_workbook(4))
        subscription = orchestrator.broadcaster.subscribe()
        session = orchestrator.approve(proposal.table_mappings)
        assert session.sample_checks[0].errors == 0
        assert EventType.VALIDATION_WARNING not in [e.type for e in subscription.drain()]

    def test_empty_mappings_skipped(self, orchestrator, crm_workbook):
        """Test tables with no mapped fields are not imported."""
        proposal = orchestrator.start(crm_workbook)
        empty = TableMapping("Contacts", "contacts", 0.0)
        orchestrator.approve([proposal.table_mappings[0], empty])
        assert [e.name for e in orchestrator.session.entities] == ["organizations"]


class TestLifecycle:
    """Start, reset and analysis failures."""

    def test_start_twice(self, orchestrator, orgs_workbook):
        orchestrator.start(orgs_workbook(2))
        with pytest.raises(MigrationStateError, match="Cannot start"):
            orchestrator.start(orgs_workbook(2))

    def test_no_analyzable_sheet(self, orchestrator):
        with pytest.raises(AnalysisError):
            orchestrator.start(Workbook.from_rows({"Empty": [], "HeaderOnly": [["Name", "Email"]]}))
        assert orchestrator.session.status == SessionStatus.ERROR
        assert "no sheet could be analyzed" in orchestrator.session.message

    def test_missing_file(self, orchestrator, tmp_path):
        with pytest.raises(AnalysisError):
            orchestrator.start(tmp_path / "missing.xlsx")
        assert orchestrator.session.status == SessionStatus.ERROR

    def test_reset(self, orchestrator, orgs_workbook):
        proposal = orchestrator.start(orgs_workbook(2))
        with pytest.raises(MigrationStateError, match="Cannot reset"):
            orchestrator.reset()

        old_id = orchestrator.session.id
        orchestrator.migrate(proposal.table_mappings)
        session = orchestrator.reset()
        assert session.status == SessionStatus.IDLE
        assert session.id != old_id
        assert orchestrator.proposal is None
        assert orchestrator.broadcaster.session_id == session.id

    def test_run_requires_approval(self, orchestrator, orgs_workbook):
        orchestrator.start(orgs_workbook(2))
        with pytest.raises(MigrationStateError, match="Cannot run"):
            orchestrator.run()

    def test_snapshot(self, orchestrator, orgs_workbook):
        proposal = orchestrator.start(orgs_workbook(3))
        orchestrator.migrate(proposal.table_mappings)
        snapshot = orchestrator.snapshot()
        assert snapshot["status"] == "completed"
        assert snapshot["entities"][0] == {
            "entity": "organizations",
            "total": 3,
            "processed": 3,
            "errors": 0,
            "duplicates": 0,
            "status": "completed",
        }
        assert snapshot["duration_ms"] >= 0


class TestPauseResume:
    """Soft pause at batch boundaries."""

    def test_pause_before_first_batch(self, orchestrator, crm_workbook):
        proposal = orchestrator.start(crm_workbook)
        orchestrator.approve(proposal.table_mappings)
        orchestrator.pause()
        assert orchestrator.session.paused

        runner = threading.Thread(target=orchestrator.run)
        runner.start()
        time.sleep(0.2)
        assert runner.is_alive()
        assert orchestrator.session.entity("organizations").status == EntityStatus.PENDING

        orchestrator.resume()
        runner.join(timeout=10)
        assert not runner.is_alive()
        assert orchestrator.session.status == SessionStatus.COMPLETED
        assert not orchestrator.session.paused

    def test_pause_between_batches(self, schema, engine, orgs_workbook):
        """Test a pause after batch 1 holds the count until resume."""
        store = PausingStore(engine, schema, pause_on="organizations")
        store.create_all()
        orchestrator = make_orchestrator(schema, store, batch_size=2)
        store.orchestrator = orchestrator

        proposal = orchestrator.start(orgs_workbook(6))
        orchestrator.approve(proposal.table_mappings)
        runner = threading.Thread(target=orchestrator.run)
        runner.start()

        assert store.paused.wait(timeout=10)
        time.sleep(0.2)
        progress = orchestrator.session.entity("organizations")
        assert runner.is_alive()
        assert progress.status == EntityStatus.PROCESSING
        assert progress.processed == 2
        assert store.count("organizations") == 2

        orchestrator.resume()
        runner.join(timeout=10)
        assert not runner.is_alive()
        assert orchestrator.session.status == SessionStatus.COMPLETED
        assert progress.processed == 6

    def test_pause_requires_migrating(self, orchestrator, orgs_workbook):
        with pytest.raises(MigrationStateError):
            orchestrator.pause()
        orchestrator.start(orgs_workbook(2))
        with pytest.raises(MigrationStateError):
            orchestrator.pause()

    def test_resume_requires_pause(self, orchestrator, orgs_workbook):
        proposal = orchestrator.start(orgs_workbook(2))
        orchestrator.approve(proposal.table_mappings)
        with pytest.raises(MigrationStateError, match="resume"):
            orchestrator.resume()


class TestAbort:
    """Abort semantics."""

    def test_abort_during_second_entity(self, schema, engine, crm_workbook):
        """Test abort while contacts import: first batch kept, later entities pending."""
        store = AbortingStore(engine, schema, abort_on="contacts")
        store.create_all()
        orchestrator = make_orchestrator(schema, store, batch_size=2)
        store.orchestrator = orchestrator
        subscription = orchestrator.broadcaster.subscribe()

        proposal = orchestrator.start(crm_workbook)
        session = orchestrator.migrate(proposal.table_mappings)

        assert session.status == SessionStatus.ERROR
        assert session.message == ABORT_MESSAGE
        assert statuses(orchestrator) == {
            "organizations": EntityStatus.COMPLETED,
            "contacts": EntityStatus.ERROR,
            "opportunities": EntityStatus.PENDING,
            "interactions": EntityStatus.PENDING,
        }
        contacts = session.entity("contacts")
        assert contacts.processed == 2
        assert store.count("contacts") == 2
        assert store.count("opportunities") == 0

        events = subscription.drain()
        assert events[-1].type == EventType.MIGRATION_ERROR
        assert events[-1].data["message"] == ABORT_MESSAGE
        contact_progress = [
            e for e in events if e.type == EventType.ENTITY_PROGRESS and e.data["entity"] == "contacts"
        ]
        assert contact_progress == []

    def test_abort_during_single_batch_entity(self, schema, engine, crm_workbook):
        """Test an abort in an entity's only batch still marks it error."""
        store = AbortingStore(engine, schema, abort_on="contacts")
        store.create_all()
        orchestrator = make_orchestrator(schema, store)
        store.orchestrator = orchestrator
        subscription = orchestrator.broadcaster.subscribe()

        proposal = orchestrator.start(crm_workbook)
        session = orchestrator.migrate(proposal.table_mappings)

        assert session.status == SessionStatus.ERROR
        assert statuses(orchestrator) == {
            "organizations": EntityStatus.COMPLETED,
            "contacts": EntityStatus.ERROR,
            "opportunities": EntityStatus.PENDING,
            "interactions": EntityStatus.PENDING,
        }
        assert session.entity("contacts").processed == 4

        events = subscription.drain()
        assert events[-1].type == EventType.MIGRATION_ERROR
        completed = [e.data["entity"] for e in events if e.type == EventType.ENTITY_COMPLETE]
        assert completed == ["organizations"]

    def test_abort_during_final_entity(self, schema, engine, crm_workbook):
        """Test an abort in the last entity ends in error without a completion."""
        store = AbortingStore(engine, schema, abort_on="interactions")
        store.create_all()
        orchestrator = make_orchestrator(schema, store)
        store.orchestrator = orchestrator
        subscription = orchestrator.broadcaster.subscribe()

        proposal = orchestrator.start(crm_workbook)
        session = orchestrator.migrate(proposal.table_mappings)

        assert session.status == SessionStatus.ERROR
        assert session.message == ABORT_MESSAGE
        assert statuses(orchestrator)["interactions"] == EntityStatus.ERROR
        types = [e.type for e in subscription.drain()]
        assert EventType.MIGRATION_COMPLETE not in types
        assert types[-1] == EventType.MIGRATION_ERROR

    def test_abort_while_analyzing(self, orchestrator, orgs_workbook):
        proposal = orchestrator.start(orgs_workbook(2))
        session = orchestrator.abort()
        assert session.status == SessionStatus.ERROR
        assert session.entities == []
        with pytest.raises(MigrationStateError):
            orchestrator.approve(proposal.table_mappings)

    def test_abort_before_run(self, orchestrator, crm_workbook):
        """Test an approved but not started run leaves every entity pending."""
        proposal = orchestrator.start(crm_workbook)
        orchestrator.approve(proposal.table_mappings)
        orchestrator.abort()
        assert set(statuses(orchestrator).values()) == {EntityStatus.PENDING}
        with pytest.raises(MigrationStateError):
            orchestrator.run()

    def test_abort_paused_run(self, orchestrator, crm_workbook):
        proposal = orchestrator.start(crm_workbook)
        orchestrator.approve(proposal.table_mappings)
        orchestrator.pause()
        runner = threading.Thread(target=orchestrator.run)
        runner.start()
        time.sleep(0.1)

        orchestrator.abort()
        runner.join(timeout=10)
        assert not runner.is_alive()
        assert orchestrator.session.status == SessionStatus.ERROR
        assert orchestrator.store.count("organizations") == 0

    def test_abort_when_finished(self, orchestrator, orgs_workbook):
        proposal = orchestrator.start(orgs_workbook(2))
        orchestrator.migrate(proposal.table_mappings)
        with pytest.raises(MigrationStateError, match="Cannot abort"):
            orchestrator.abort()


def test_systemic_failure_fails_session(schema, engine, crm_workbook):
    """Test a store failure after retries ends the session in error."""
    store = FailingStore(engine, schema, fail_on="opportunities")
    store.create_all()
    orchestrator = make_orchestrator(schema, store)
    subscription = orchestrator.broadcaster.subscribe()

    proposal = orchestrator.start(crm_workbook)
    session = orchestrator.migrate(proposal.table_mappings)

    assert session.status == SessionStatus.ERROR
    assert session.message == "disk full"
    assert statuses(orchestrator) == {
        "organizations": EntityStatus.COMPLETED,
        "contacts": EntityStatus.COMPLETED,
        "opportunities": EntityStatus.ERROR,
        "interactions": EntityStatus.PENDING,
    }
    last = subscription.drain()[-1]
    assert last.type == EventType.MIGRATION_ERROR
    assert last.data["message"] == "disk full"
