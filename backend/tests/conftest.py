"""
Shared pytest fixtures.

Provides the bundled target schema, an in-memory SQLite target store and
builders for small CRM workbooks.
"""
import pytest

from crm_migrator.adapters.store_sqlalchemy import SQLAlchemyTargetStore
from crm_migrator.analyzer.workbook_loader import Workbook
from crm_migrator.core.database import make_engine
from crm_migrator.registry.loader import load_schema


SEGMENTS = ["Fine Dining", "Casual Dining", "Bar", "Bakery"]


@pytest.fixture(scope="session")
def schema():
    """Bundled CRM target schema."""
    return load_schema()


@pytest.fixture
def engine():
    """Fresh in-memory SQLite engine (single shared connection)."""
    engine = make_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, schema):
    """Target store with every table created."""
    store = SQLAlchemyTargetStore(engine, schema)
    store.create_all()
    return store


def org_rows(count: int):
    """Header plus `count` organization rows with unique names and emails."""
    rows = [["Company Name", "E-mail", "Segment"]]
    for i in range(1, count + 1):
        rows.append([f"Org {i:03d}", f"info{i}@org{i}.com", SEGMENTS[i % len(SEGMENTS)]])
    return rows


@pytest.fixture
def orgs_workbook():
    """Factory: workbook with a single "Orgs" sheet."""
    def build(count: int = 6):
        return Workbook.from_rows({"Orgs": org_rows(count)})
    return build


@pytest.fixture
def crm_workbook():
    """Workbook with organizations, contacts, opportunities and interactions."""
    return Workbook.from_rows({
        "Orgs": org_rows(4),
        "Contacts": [
            ["First Name", "Last Name", "Email", "Company"],
            ["Ann", "Lee", "ann@org1.com", "Org 001"],
            ["Bob", "Stone", "bob@org2.com", "Org 002"],
            ["Cara", "Diaz", "cara@org3.com", "Org 003"],
            ["Dan", "Wu", "dan@org4.com", "Org 004"],
        ],
        "Opportunities": [
            ["Opportunity Name", "Company", "Value", "Stage"],
            ["Spring menu", "Org 001", 1500, "Lead"],
            ["Wine list", "Org 002", 3200, "Proposal"],
            ["Catering deal", "Org 003", 800, "Lead"],
            ["Bar refit", "Org 004", 12000, "Negotiation"],
        ],
        "Interactions": [
            ["Date", "Type", "Subject", "Company"],
            ["2024-01-15", "Call", "Intro call", "Org 001"],
            ["2024-01-16", "Email", "Price list", "Org 002"],
            ["2024-01-17", "Visit", "Tasting", "Org 003"],
            ["2024-01-18", "Call", "Follow up", "Org 004"],
        ],
    })
