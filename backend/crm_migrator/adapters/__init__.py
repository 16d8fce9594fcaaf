"""
Adapters - concrete implementations of ports.

SQLAlchemy target store and inline/threaded task execution.
"""
from crm_migrator.adapters.store_sqlalchemy import SQLAlchemyTargetStore
from crm_migrator.adapters.tasks_inline import InlineTaskRunner

__all__ = ["SQLAlchemyTargetStore", "InlineTaskRunner"]
