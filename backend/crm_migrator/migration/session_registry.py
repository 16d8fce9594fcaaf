"""
Session registry - one orchestrator per dataset, one live session per process.
"""
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from crm_migrator.analyzer.workbook_loader import Workbook
from crm_migrator.core.config import settings
from crm_migrator.core.data_structures import MappingResult
from crm_migrator.core.exceptions import MigrationStateError
from crm_migrator.core.logging_config import migration_logger as logger
from crm_migrator.migration.orchestrator import MigrationOrchestrator

OrchestratorFactory = Callable[[str], MigrationOrchestrator]


class SessionRegistry:
    """
    Keeps the orchestrator of every dataset seen by this process.

    Starting a session is serialized: while any dataset is analyzing or
    migrating, a start for another dataset is rejected.
    """

    def __init__(self, factory: OrchestratorFactory):
        self._factory = factory
        self._orchestrators: Dict[str, MigrationOrchestrator] = {}
        self._lock = threading.Lock()
        self._start_lock = threading.Lock()

    def get(self, dataset_id: str) -> Optional[MigrationOrchestrator]:
        with self._lock:
            return self._orchestrators.get(dataset_id)

    def get_or_create(self, dataset_id: str) -> MigrationOrchestrator:
        with self._lock:
            orchestrator = self._orchestrators.get(dataset_id)
            if orchestrator is None:
                orchestrator = self._factory(dataset_id)
                self._orchestrators[dataset_id] = orchestrator
            return orchestrator

    def active(self) -> Optional[MigrationOrchestrator]:
        """The orchestrator whose session is analyzing or migrating, if any."""
        with self._lock:
            for orchestrator in self._orchestrators.values():
                if orchestrator.session.is_live:
                    return orchestrator
        return None

    def start(self, dataset_id: str, source: Union[Workbook, str, Path]) -> MappingResult:
        """
        Start a session for a dataset.

        A finished session of the same dataset is replaced by a fresh one.

        Raises:
            MigrationStateError: If any session is live
        """
        with self._start_lock:
            active = self.active()
            if active is not None:
                raise MigrationStateError(
                    f"Dataset {active.dataset_id} has a live session ({active.session.status.value})"
                )
            orchestrator = self.get_or_create(dataset_id)
            if orchestrator.session.is_terminal:
                orchestrator.reset()
            return orchestrator.start(source)

    def remove(self, dataset_id: str) -> None:
        with self._lock:
            orchestrator = self._orchestrators.get(dataset_id)
            if orchestrator is not None and orchestrator.session.is_live:
                raise MigrationStateError(f"Dataset {dataset_id} has a live session")
            self._orchestrators.pop(dataset_id, None)


# Module-level singleton instance
_registry: Optional[SessionRegistry] = None
_registry_lock = threading.Lock()


def default_factory(dataset_id: str) -> MigrationOrchestrator:
    """Orchestrator bound to the configured schema and database."""
    from crm_migrator.adapters.store_sqlalchemy import SQLAlchemyTargetStore
    from crm_migrator.core.database import get_engine
    from crm_migrator.registry.loader import load_schema

    schema = load_schema(settings.SCHEMA_FILE)
    store = SQLAlchemyTargetStore(get_engine(), schema)
    store.create_all()
    return MigrationOrchestrator(dataset_id, schema, store)


def get_registry() -> SessionRegistry:
    """Return the shared registry, creating it on first use."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = SessionRegistry(default_factory)
            logger.info("Session registry created")
        return _registry
