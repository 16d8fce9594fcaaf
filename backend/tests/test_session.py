"""
Tests for the migration session model and progress broadcaster.
"""
import json
import threading

import pytest

from crm_migrator.core.exceptions import MigrationStateError
from crm_migrator.migration.broadcaster import EventType, ProgressBroadcaster, format_sse
from crm_migrator.migration.session import (
    DuplicateDetected,
    EntityProgress,
    EntityStatus,
    ImportErrorRecord,
    MigrationSession,
    SessionStatus,
)


class TestMigrationSession:
    """Session state machine."""

    def test_happy_path(self):
        session = MigrationSession(dataset_id="ds1")
        for status in (SessionStatus.ANALYZING, SessionStatus.MIGRATING, SessionStatus.COMPLETED):
            session.transition(status)
        assert session.is_terminal and not session.is_live

    @pytest.mark.parametrize("path", [
        [SessionStatus.MIGRATING],
        [SessionStatus.ANALYZING, SessionStatus.COMPLETED],
        [SessionStatus.ANALYZING, SessionStatus.ERROR, SessionStatus.MIGRATING],
    ])
    def test_invalid_transitions(self, path):
        session = MigrationSession(dataset_id="ds1")
        with pytest.raises(MigrationStateError, match="cannot move"):
            for status in path:
                session.transition(status)

    def test_snapshot_is_json_serializable(self):
        from datetime import date

        session = MigrationSession(dataset_id="ds1")
        session.entities.append(EntityProgress("organizations", total=3))
        session.errors.append(ImportErrorRecord("organizations", 2, "email", "bad email", "INVALID_EMAIL"))
        session.duplicates.append(DuplicateDetected("interactions", 3, {"date": date(2024, 1, 15)}))

        snapshot = json.loads(json.dumps(session.to_dict()))
        assert snapshot["status"] == "idle"
        assert snapshot["entities"][0]["status"] == "pending"
        assert snapshot["errors"][0]["row"] == 2
        assert snapshot["duplicates"][0]["key"] == {"date": "2024-01-15"}

    def test_entity_lookup(self):
        session = MigrationSession(dataset_id="ds1", entities=[EntityProgress("contacts", total=1)])
        assert session.entity("contacts").total == 1
        with pytest.raises(KeyError):
            session.entity("missing")


class TestEntityProgress:
    """Forward-only entity progress with bounded counters."""

    def test_forward_only(self):
        progress = EntityProgress("contacts", total=10)
        progress.advance(EntityStatus.PROCESSING)
        progress.advance(EntityStatus.COMPLETED)
        with pytest.raises(MigrationStateError):
            progress.advance(EntityStatus.PROCESSING)

    def test_cannot_skip_processing(self):
        with pytest.raises(MigrationStateError):
            EntityProgress("contacts", total=10).advance(EntityStatus.COMPLETED)

    def test_record_batch(self):
        progress = EntityProgress("contacts", total=10)
        progress.advance(EntityStatus.PROCESSING)
        progress.record_batch(inserted=4, errors=1, duplicates=1)
        progress.record_batch(inserted=4, errors=0)
        assert (progress.processed, progress.errors, progress.duplicates, progress.done) == (8, 1, 1, 10)

    def test_counters_bounded_by_total(self):
        progress = EntityProgress("contacts", total=3)
        progress.advance(EntityStatus.PROCESSING)
        with pytest.raises(MigrationStateError, match="exceed total"):
            progress.record_batch(inserted=3, errors=1)

    def test_record_requires_processing(self):
        with pytest.raises(MigrationStateError, match="not processing"):
            EntityProgress("contacts", total=3).record_batch(inserted=1, errors=0)


class TestProgressBroadcaster:
    """Fan-out, ordering and bounded buffers."""

    def test_connected_first(self):
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe()
        event = subscription.get(timeout=1)
        assert event.type == EventType.CONNECTED

    def test_every_subscriber_gets_events_in_order(self):
        broadcaster = ProgressBroadcaster()
        first, second = broadcaster.subscribe(), broadcaster.subscribe()
        broadcaster.publish("entity:start", {"entity": "contacts"})
        broadcaster.publish(EventType.ENTITY_PROGRESS, {"entity": "contacts", "processed": 50})

        for subscription in (first, second):
            events = subscription.drain()
            assert [e.type for e in events] == [
                EventType.CONNECTED, EventType.ENTITY_START, EventType.ENTITY_PROGRESS,
            ]
            sequences = [e.sequence for e in events]
            assert sequences == sorted(sequences)

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            ProgressBroadcaster().publish("entity:paused")

    def test_slow_subscriber_drops_oldest(self):
        """Test publish never blocks; a full buffer loses its oldest events."""
        broadcaster = ProgressBroadcaster(buffer_size=3)
        subscription = broadcaster.subscribe()
        for n in range(5):
            broadcaster.publish(EventType.ENTITY_PROGRESS, {"processed": n})

        events = subscription.drain()
        assert len(events) == 3
        assert [e.data["processed"] for e in events] == [2, 3, 4]
        assert subscription.dropped == 3

    def test_iteration_stops_at_terminal_event(self):
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe()
        received = []

        def consume():
            received.extend(event.type for event in subscription)

        reader = threading.Thread(target=consume)
        reader.start()
        broadcaster.publish(EventType.ENTITY_START, {"entity": "contacts"})
        broadcaster.publish(EventType.MIGRATION_COMPLETE, {})
        broadcaster.publish(EventType.ENTITY_START, {"entity": "late"})
        reader.join(timeout=5)

        assert not reader.is_alive()
        assert received == [EventType.CONNECTED, EventType.ENTITY_START, EventType.MIGRATION_COMPLETE]

    def test_close_unsubscribes(self):
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe()
        assert broadcaster.subscriber_count == 1
        subscription.close()
        assert broadcaster.subscriber_count == 0
        assert subscription.get(timeout=0.01) is not None  # buffered connected event
        assert subscription.get(timeout=0.01) is None

    def test_format_sse(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.session_id = "abc"
        event = broadcaster.publish(EventType.ENTITY_COMPLETE, {"entity": "contacts", "processed": 4})

        text = format_sse(event)
        assert text.startswith("event: entity:complete\ndata: ")
        assert text.endswith("\n\n")
        payload = json.loads(text.split("data: ", 1)[1])
        assert payload == {"sequence": event.sequence, "session_id": "abc", "entity": "contacts", "processed": 4}
