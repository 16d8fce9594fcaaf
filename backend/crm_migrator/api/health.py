from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from crm_migrator.core.database import get_engine
from crm_migrator.migration.session_registry import SessionRegistry, get_registry

router = APIRouter()


@router.get("/health")
def health_check(
    engine: Engine = Depends(get_engine),
    registry: SessionRegistry = Depends(get_registry),
):
    """Health check endpoint - verifies database connectivity and reports the live session."""
    health_status = {
        "status": "healthy",
        "database": "disconnected",
        "active_dataset": None,
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except SQLAlchemyError as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = f"error: {str(e)}"

    active = registry.active()
    if active is not None:
        health_status["active_dataset"] = active.dataset_id

    return health_status
