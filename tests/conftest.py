"""
Pytest configuration and shared fixtures.

Every test gets its own in-memory SQLite database. StaticPool keeps the
single connection alive so all sessions see the same database.
"""

import os

import pytest
from sqlalchemy import MetaData
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

# Clear settings cache before any store imports to ensure test env vars are used
from rapidstore.config import get_settings
get_settings.cache_clear()

from rapidstore.notifications import ChangeNotifier
from rapidstore.provider import DataProvider
from rapidstore.storage import create_storage_engine, init_db


def id_from_uri(uri: str) -> int:
    """'message/12' -> 12"""
    return int(uri.rsplit("/", 1)[1])


@pytest.fixture(scope="function")
def engine():
    """Fresh database with the static tables for each test."""
    engine = create_storage_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    # Reflect so provisioned form data tables are dropped before messages
    metadata = MetaData()
    metadata.reflect(bind=engine)
    metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def hash_calls():
    """Records invocations of the monitor hash hook."""
    return []


@pytest.fixture
def provider(engine, notifier, hash_calls):
    return DataProvider(
        engine=engine,
        notifier=notifier,
        monitor_hash_hook=lambda: hash_calls.append(True),
    )


@pytest.fixture
def monitor_id(provider):
    return id_from_uri(provider.insert("monitor", {"phone": "+15550001"}))


@pytest.fixture
def survey_form(provider):
    """
    Form stored with prefix '@tb' and two fields, its data table provisioned.

    Returns the form id.
    """
    provider.insert("fieldtype", {"id": 1, "name": "number", "regex": r"^\d+$", "datatype": "integer"})
    provider.insert("fieldtype", {"id": 2, "name": "word", "regex": r"^\w+$", "datatype": "word"})
    form_id = id_from_uri(provider.insert("form", {
        "formname": "tb",
        "description": "Weekly TB case report",
        "parsemethod": "simpleregex",
        "prefix": "@tb",
    }))
    provider.insert("field", {
        "form_id": form_id, "name": "village", "fieldtype_id": 2, "prompt": "Village?", "sequence": 2,
    })
    provider.insert("field", {
        "form_id": form_id, "name": "cases", "fieldtype_id": 1, "prompt": "Cases?", "sequence": 1,
    })
    provider.registry.provision_form_table(form_id)
    return form_id
