"""
Database engine for the target CRM store.
"""
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from crm_migrator.core.config import settings

_engine: Optional[Engine] = None


def make_engine(url: str) -> Engine:
    """
    Create an engine for the given URL.

    In-memory SQLite shares a single connection so that every session sees
    the same database.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def get_engine() -> Engine:
    """Return the shared engine built from DATABASE_URL."""
    global _engine
    if _engine is None:
        _engine = make_engine(settings.DATABASE_URL)
    return _engine
