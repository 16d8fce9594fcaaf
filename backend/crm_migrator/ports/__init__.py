"""
Ports - interface definitions for external dependencies.

Follows hexagonal architecture pattern (ports & adapters).
Ports define interfaces, adapters provide concrete implementations.
"""
from crm_migrator.ports.store import TargetStore
from crm_migrator.ports.tasks import TaskRunner

__all__ = ["TargetStore", "TaskRunner"]
