"""
Migration API - analyze, review, run and watch one dataset's migration.
"""
from typing import Iterator, List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from crm_migrator.core.config import settings
from crm_migrator.core.data_structures import TableMapping
from crm_migrator.core.exceptions import (
    AnalysisError,
    MappingAmbiguityError,
    MappingConflictError,
    MigrationAborted,
    MigrationStateError,
)
from crm_migrator.core.logging_config import api_logger as logger
from crm_migrator.core.task_runner import get_task_runner
from crm_migrator.field_mapper.review import apply_edits
from crm_migrator.migration.broadcaster import Subscription, format_sse
from crm_migrator.migration.orchestrator import MigrationOrchestrator
from crm_migrator.migration.session_registry import SessionRegistry, get_registry
from crm_migrator.ports.tasks import TaskRunner
from crm_migrator.schemas.migration import (
    ApproveRequest,
    CountsResponse,
    ProposalResponse,
    ReportResponse,
    SessionResponse,
    StartRequest,
    TableMappingIn,
)

router = APIRouter()

PING = "event: ping\ndata: {}\n\n"


def _orchestrator(dataset_id: str, registry: SessionRegistry) -> MigrationOrchestrator:
    orchestrator = registry.get(dataset_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"No migration for dataset {dataset_id}")
    return orchestrator


def _table_mappings(orchestrator: MigrationOrchestrator, requested: List[TableMappingIn]) -> List[TableMapping]:
    """Turn the reviewer's final pairs into scored TableMappings."""
    table_mappings = []
    for item in requested:
        base = orchestrator.proposed_mapping(item.source_sheet, item.target_table)
        pairs = {m.source_field: m.target_field for m in item.field_mappings}
        if len(pairs) != len(item.field_mappings):
            raise MappingConflictError(f"A column of sheet '{item.source_sheet}' is mapped more than once")
        table_mappings.append(apply_edits(orchestrator.schema, base, pairs))
    return table_mappings


@router.post("/migration/{dataset_id}/start", response_model=ProposalResponse)
def start_migration(
    dataset_id: str,
    request: StartRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Analyze a workbook and propose mappings.

    The session then waits in `analyzing` until the mappings are approved.
    """
    try:
        result = registry.start(dataset_id, request.workbook_path)
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AnalysisError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MigrationAborted as e:
        raise HTTPException(status_code=409, detail=str(e))

    orchestrator = registry.get(dataset_id)
    return {
        "session_id": orchestrator.session.id,
        **result.to_dict(),
        "failed_sheets": dict(orchestrator.profile.failed_sheets),
        "report": orchestrator.report(),
    }


@router.post("/migration/{dataset_id}/approve", response_model=SessionResponse)
def approve_migration(
    dataset_id: str,
    request: ApproveRequest,
    registry: SessionRegistry = Depends(get_registry),
    task_runner: TaskRunner = Depends(get_task_runner),
):
    """Approve reviewed mappings and start importing in the background."""
    orchestrator = _orchestrator(dataset_id, registry)
    try:
        if request.table_mappings is None:
            if orchestrator.proposal is None:
                raise MigrationStateError("No mapping proposal yet")
            table_mappings = list(orchestrator.proposal.table_mappings)
        else:
            table_mappings = _table_mappings(orchestrator, request.table_mappings)
        orchestrator.approve(table_mappings, override=request.override)
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (MappingAmbiguityError, MappingConflictError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    task_runner.submit(orchestrator.run, task_id=f"migration-{orchestrator.session.id}")
    logger.info(f"Dataset {dataset_id}: migration {orchestrator.session.id} submitted")
    return orchestrator.snapshot()


@router.post("/migration/{dataset_id}/pause", response_model=SessionResponse)
def pause_migration(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Pause at the next batch boundary."""
    orchestrator = _orchestrator(dataset_id, registry)
    try:
        orchestrator.pause()
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.snapshot()


@router.post("/migration/{dataset_id}/resume", response_model=SessionResponse)
def resume_migration(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    orchestrator = _orchestrator(dataset_id, registry)
    try:
        orchestrator.resume()
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.snapshot()


@router.post("/migration/{dataset_id}/abort", response_model=SessionResponse)
def abort_migration(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Abort the session. Batches already written stay written."""
    orchestrator = _orchestrator(dataset_id, registry)
    try:
        orchestrator.abort()
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.snapshot()


@router.post("/migration/{dataset_id}/reset", response_model=SessionResponse)
def reset_migration(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    orchestrator = _orchestrator(dataset_id, registry)
    try:
        orchestrator.reset()
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return orchestrator.snapshot()


@router.get("/migration/{dataset_id}/status", response_model=SessionResponse)
def get_migration_status(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Current session snapshot, including every import error."""
    return _orchestrator(dataset_id, registry).snapshot()


@router.get("/migration/{dataset_id}/counts", response_model=CountsResponse)
def get_target_counts(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Row count per target table."""
    orchestrator = _orchestrator(dataset_id, registry)
    return {"counts": {table: orchestrator.store.count(table) for table in orchestrator.schema.tables}}


@router.get("/migration/{dataset_id}/report", response_model=ReportResponse)
def get_migration_report(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Markdown report of the run: counts per entity, sample check and common errors."""
    orchestrator = _orchestrator(dataset_id, registry)
    try:
        return {"report": orchestrator.migration_report()}
    except MigrationStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


def _event_stream(orchestrator: MigrationOrchestrator, subscription: Subscription) -> Iterator[str]:
    try:
        connected = subscription.get()
        if connected is not None:
            yield format_sse(connected)

        # Session already over: replay its terminal event
        if orchestrator.session.is_terminal:
            pending = subscription.drain()
            for event in pending:
                yield format_sse(event)
            last = orchestrator.broadcaster.last_event
            if not any(event.terminal for event in pending) and last is not None and last.terminal:
                yield format_sse(last)
            return

        while True:
            event = subscription.get(timeout=settings.SSE_PING_SECONDS)
            if event is None:
                if subscription.closed:
                    return
                yield PING
                continue
            yield format_sse(event)
            if event.terminal:
                return
    finally:
        subscription.close()


@router.get("/migration/{dataset_id}/progress")
def stream_progress(dataset_id: str, registry: SessionRegistry = Depends(get_registry)):
    """
    Server-sent progress events.

    Emits `connected`, then entity and migration events until
    `migration:complete` or `migration:error`; `ping` keeps idle
    connections open.
    """
    orchestrator = _orchestrator(dataset_id, registry)
    subscription = orchestrator.broadcaster.subscribe()
    return StreamingResponse(
        _event_stream(orchestrator, subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
