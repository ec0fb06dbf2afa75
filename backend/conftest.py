# backend/conftest.py
import os
import tempfile
import pytest
from pathlib import Path

# Persistence tests run against a throwaway SQLite file unless a database is provided
if not os.getenv("TEST_DATABASE_URL"):
    _db_dir = tempfile.mkdtemp(prefix="suite-tests-")
    os.environ["TEST_DATABASE_URL"] = f"sqlite:///{Path(_db_dir) / 'test.db'}"


@pytest.fixture(scope="session")
def db_url():
    """Database URL used by persistence tests."""
    return os.getenv("TEST_DATABASE_URL")


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """
    Create all database tables before running tests.

    Runs once per test session.
    """
    from backend.core.database import create_all_tables, dispose_engine
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function")
def reset_db(db_url):
    """
    Reset database tables before each test.

    Drops and recreates every table so each test starts from a clean slate.
    """
    from backend.core.database import reset_database
    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def billing_disabled_by_default(monkeypatch):
    """Tests opt into billing explicitly; never talk to the real provider."""
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    yield


@pytest.fixture(scope="function", autouse=True)
def clear_registries():
    """Usage counters and transition listeners are process-wide."""
    from backend.features.usage.service import clear_usage_counters
    from backend.features.billing.reconciler import clear_listeners
    clear_usage_counters()
    clear_listeners()
    yield
    clear_usage_counters()
    clear_listeners()
