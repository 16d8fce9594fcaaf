"""
Pytest fixtures for API integration tests.

Provides a FastAPI test client wired to an in-memory target store, an
isolated session registry and an inline task runner, so approve() runs the
migration before it responds.
"""
import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook as ExcelWorkbook

from crm_migrator.adapters.tasks_inline import InlineTaskRunner
from crm_migrator.core.database import get_engine
from crm_migrator.core.task_runner import get_task_runner
from crm_migrator.main import app
from crm_migrator.migration.orchestrator import MigrationOrchestrator
from crm_migrator.migration.session_registry import SessionRegistry, get_registry


@pytest.fixture(scope="function")
def registry(schema, store):
    """Fresh registry whose orchestrators share the in-memory store."""
    return SessionRegistry(lambda dataset_id: MigrationOrchestrator(dataset_id, schema, store))


@pytest.fixture(scope="function")
def client(registry, engine):
    """
    FastAPI test client with registry, engine and task runner overrides.
    """
    task_runner = InlineTaskRunner(mode="inline")
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_task_runner] = lambda: task_runner
    app.dependency_overrides[get_engine] = lambda: engine

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def workbook_path(tmp_path, crm_workbook):
    """The four-sheet CRM workbook saved as .xlsx."""
    path = tmp_path / "crm.xlsx"
    excel = ExcelWorkbook()
    excel.remove(excel.active)
    for sheet in crm_workbook.sheets:
        worksheet = excel.create_sheet(sheet.name)
        for row in sheet.rows:
            worksheet.append(row)
    excel.save(path)
    return str(path)
