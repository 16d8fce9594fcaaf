"""
Migration session model.

A session walks idle → analyzing → migrating → {completed | error}.
Entity progress only ever moves forward and its counters never exceed the
entity's row total.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from crm_migrator.core.exceptions import MigrationStateError
from crm_migrator.validate.validator import SampleCheck


class SessionStatus(str, Enum):
    """Migration session status."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    MIGRATING = "migrating"
    COMPLETED = "completed"
    ERROR = "error"


class EntityStatus(str, Enum):
    """Per-entity import status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


SESSION_TRANSITIONS = {
    SessionStatus.IDLE: {SessionStatus.ANALYZING},
    SessionStatus.ANALYZING: {SessionStatus.MIGRATING, SessionStatus.ERROR},
    SessionStatus.MIGRATING: {SessionStatus.COMPLETED, SessionStatus.ERROR},
    SessionStatus.COMPLETED: set(),
    SessionStatus.ERROR: set(),
}

ENTITY_TRANSITIONS = {
    EntityStatus.PENDING: {EntityStatus.PROCESSING},
    EntityStatus.PROCESSING: {EntityStatus.COMPLETED, EntityStatus.ERROR},
    EntityStatus.COMPLETED: set(),
    EntityStatus.ERROR: set(),
}

LIVE_STATUSES = {SessionStatus.ANALYZING, SessionStatus.MIGRATING}
TERMINAL_STATUSES = {SessionStatus.COMPLETED, SessionStatus.ERROR}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ImportErrorRecord:
    """A row that could not be imported. Never aborts the run."""

    entity: str
    row: int
    field: Optional[str]
    message: str
    code: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "row": self.row,
            "field": self.field,
            "message": self.message,
            "code": self.code,
        }


@dataclass(frozen=True)
class DuplicateDetected:
    """A row skipped because its natural key already exists. Not an error."""

    entity: str
    row: int
    key: Dict[str, Any] = field(hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"entity": self.entity, "row": self.row, "key": {k: _jsonable(v) for k, v in self.key.items()}}


@dataclass
class EntityProgress:
    """
    Progress of one target table.

    Attributes:
        name: Target table
        total: Rows to import
        processed: Rows inserted
        errors: Rows rejected with an ImportErrorRecord
        duplicates: Rows skipped as duplicates
        status: EntityStatus, forward only
    """
    name: str
    total: int = 0
    processed: int = 0
    errors: int = 0
    duplicates: int = 0
    status: EntityStatus = EntityStatus.PENDING

    def advance(self, status: EntityStatus) -> None:
        if status not in ENTITY_TRANSITIONS[self.status]:
            raise MigrationStateError(
                f"Entity {self.name}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def record_batch(self, inserted: int, errors: int, duplicates: int = 0) -> None:
        """Add one batch's outcome to the running counters."""
        if self.status != EntityStatus.PROCESSING:
            raise MigrationStateError(f"Entity {self.name} is not processing")
        if self.processed + self.errors + self.duplicates + inserted + errors + duplicates > self.total:
            raise MigrationStateError(f"Entity {self.name}: counters exceed total {self.total}")
        self.processed += inserted
        self.errors += errors
        self.duplicates += duplicates

    @property
    def done(self) -> int:
        return self.processed + self.errors + self.duplicates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.name,
            "total": self.total,
            "processed": self.processed,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "status": self.status.value,
        }


@dataclass
class MigrationSession:
    """State of one migration of one dataset."""

    dataset_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.IDLE
    paused: bool = False
    current_entity: Optional[str] = None
    entities: List[EntityProgress] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: List[ImportErrorRecord] = field(default_factory=list)
    duplicates: List[DuplicateDetected] = field(default_factory=list)
    sample_checks: List[SampleCheck] = field(default_factory=list)
    message: Optional[str] = None

    def transition(self, status: SessionStatus) -> None:
        if status not in SESSION_TRANSITIONS[self.status]:
            raise MigrationStateError(
                f"Session {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def entity(self, name: str) -> EntityProgress:
        for progress in self.entities:
            if progress.name == name:
                return progress
        raise KeyError(f"Unknown entity: {name}")

    def duration_ms(self) -> Optional[int]:
        if not self.start_time:
            return None
        end = self.end_time or utcnow()
        return int((end - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable snapshot."""
        return {
            "id": self.id,
            "dataset_id": self.dataset_id,
            "status": self.status.value,
            "paused": self.paused,
            "current_entity": self.current_entity,
            "entities": [e.to_dict() for e in self.entities],
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms(),
            "errors": [e.to_dict() for e in self.errors],
            "duplicates": [d.to_dict() for d in self.duplicates],
            "sample_checks": [c.to_dict() for c in self.sample_checks],
            "message": self.message,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
