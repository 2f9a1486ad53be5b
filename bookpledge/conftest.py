# bookpledge/conftest.py
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

# Settings are read at import time: configure the test environment first
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="bookpledge-tests-"))
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR / 'bookpledge_test.db'}"
os.environ["SERVICE_ROLE_KEY"] = "test-service-role-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["USER_JWT_SECRET"] = "test-user-jwt-secret-0123456789abcdef"
os.environ["PUSH_ENABLED"] = "false"
os.environ["APPLE_VERIFY_SIGNATURES"] = "false"
os.environ["OTEL_ENABLED"] = "false"

import pytest
from sqlalchemy import delete

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all tables once per test session."""
    from bookpledge.core.database import create_all_tables
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Empty every table (and the metrics registry) before each test."""
    from bookpledge.core.database import get_db_session, metadata
    from bookpledge.core.metrics import METRICS

    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(delete(table))
    METRICS.reset()
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_user():
    from bookpledge.features.users.store import create_user

    def _make(user_id="user-1", **kwargs):
        kwargs.setdefault("stripe_customer_id", f"cus_{user_id}")
        kwargs.setdefault("stripe_payment_method_id", f"pm_{user_id}")
        create_user(user_id, **kwargs)
        return user_id

    return _make


@pytest.fixture
def make_commitment():
    from bookpledge.features.commitments.store import create_commitment

    def _make(user_id="user-1", book_id="book-1", deadline=None, pledge_amount="20.00", **kwargs):
        kwargs.setdefault("now", NOW - timedelta(days=60))
        return create_commitment(
            user_id=user_id,
            book_id=book_id,
            deadline=deadline or NOW - timedelta(days=1),
            pledge_amount=pledge_amount,
            **kwargs,
        )

    return _make


@pytest.fixture
def gateway():
    """Payment gateway fake: every charge succeeds unless reconfigured."""
    from bookpledge.features.penalties.gateway import ChargeOutcome, ChargeResult

    fake = MagicMock()
    fake.charge.return_value = ChargeResult(outcome=ChargeOutcome.SUCCEEDED, payment_intent_id="pi_test")
    return fake


@pytest.fixture
def dispatcher():
    from bookpledge.features.notifications.dispatcher import DispatchResult

    fake = MagicMock()
    fake.send_batch.return_value = DispatchResult(sent=1)
    return fake


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from bookpledge.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
