"""Shared fixtures: a fresh sqlite contact store per test and an API client bound to it."""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta

import pytest

# Set before importing the app so nothing touches ./contacts.db
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.gettempdir(), "contact-reconciliation-test.db"))
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")

from fastapi.testclient import TestClient  # noqa: E402

from db_models import ContactRecord, LinkPrecedence  # noqa: E402
from db_setup import SQLiteContactStore  # noqa: E402
from main import app, get_store  # noqa: E402
from reconciliation import ReconciliationEngine  # noqa: E402

BASE_TIME = datetime(2023, 4, 1, 0, 0, 0)


@pytest.fixture
def store(tmp_path):
    contact_store = SQLiteContactStore(str(tmp_path / "contacts.db"), busy_timeout=10.0)
    contact_store.init_schema()
    return contact_store


@pytest.fixture
def engine(store):
    return ReconciliationEngine(store)


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def seed(store):
    """Insert a contact row directly, bypassing reconciliation."""

    def _seed(email=None, phone=None, linked_to=None, minutes=0, deleted=False):
        record = ContactRecord(
            email=email,
            phoneNumber=phone,
            linkedId=linked_to,
            linkPrecedence=LinkPrecedence.SECONDARY if linked_to else LinkPrecedence.PRIMARY,
            createdAt=BASE_TIME + timedelta(minutes=minutes),
            deletedAt=BASE_TIME if deleted else None,
        )
        with store.transaction() as repo:
            return repo.save(record)

    return _seed


@pytest.fixture
def rows(store):
    """All rows, soft-deleted included, keyed by id."""

    def _rows():
        conn = sqlite3.connect(store.db_path)
        conn.row_factory = sqlite3.Row
        try:
            result = conn.execute("SELECT * FROM Contact ORDER BY id").fetchall()
        finally:
            conn.close()
        return {row["id"]: dict(row) for row in result}

    return _rows
