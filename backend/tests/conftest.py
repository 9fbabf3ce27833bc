"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from database import Database
from services.bypass_allowlist import BypassAllowlist
from services.ledger_lock import UserLedgerLock
from services.service_factory import build_credit_services
from fakes import FakeDatabase, ADMIN_UID, ADMIN_EMAIL, run_sync


@pytest.fixture
def fake_db():
    """In-memory database with the production indexes installed."""
    db = FakeDatabase()
    holder = Database()
    holder.db = db
    run_sync(holder._create_indexes())
    return db


@pytest.fixture
def allowlist():
    return BypassAllowlist(user_ids=[ADMIN_UID], emails=[ADMIN_EMAIL])


@pytest.fixture
def services(fake_db, allowlist):
    lock = UserLedgerLock(fake_db, lease_seconds=30, timeout_seconds=5, poll_seconds=0.001)
    return build_credit_services(fake_db, allowlist=allowlist, lock=lock)


@pytest.fixture
def client(services):
    """TestClient for server:app wired to the in-memory credit services."""
    previous = getattr(app.state, "credit_services", None)
    app.state.credit_services = services
    yield TestClient(app)
    app.state.credit_services = previous
