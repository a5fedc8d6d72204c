"""
Pytest configuration and fixtures

Every test runs against a fresh SQLite file database (schema dropped,
recreated and the plan catalog re-seeded per test). A file database, not
:memory:, so the concurrency tests can open independent connections.
"""
import os
import sys
import tempfile
from datetime import datetime, timezone
from uuid import uuid4

# Environment must be in place before any app module reads settings.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="wod_broker_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-at-least-32-characters-long"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"
os.environ["USAGE_RECORDING_ASYNC"] = "false"
os.environ["BILLING_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["CREDIT_MUTATION_RETRY_BACKOFF_S"] = "0"
os.environ["SQLITE_BUSY_TIMEOUT_S"] = "10"

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import User  # noqa: E402
from services.ai_generation import AIGenerationService  # noqa: E402
from services.credits import CreditEngine  # noqa: E402
from services.entitlements import EntitlementResolver  # noqa: E402
from services.ledger import LedgerStore  # noqa: E402
from services.plan_catalog import PlanCatalog  # noqa: E402
from services.subscriptions import SubscriptionService  # noqa: E402
from services.trials import TrialManager  # noqa: E402
from tests.metering_helpers import FakeClock, FakeProvider, auth_headers  # noqa: E402

@pytest.fixture(autouse=True)
def fresh_schema():
    """Drop/recreate every table and seed the default plan catalog."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        PlanCatalog(db).seed_plans()
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture
def db_session():
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_user(db_session):
    """Factory for committed users. No subscription is created."""

    def _make(role: str = "athlete", email: str = None) -> User:
        user = User(
            id=uuid4(),
            email=email or f"test_{uuid4()}@example.com",
            display_name="Test Athlete",
            role=role,
            fitness_profile={"level": "intermediate", "equipment": ["kettlebell"]},
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def test_user(make_user):
    return make_user()


@pytest.fixture
def admin_user(make_user):
    return make_user(role="admin")


# ---------------------------------------------------------------------------
# Services wired to the fake clock
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger(db_session):
    return LedgerStore(db_session)


@pytest.fixture
def catalog(db_session):
    return PlanCatalog(db_session)


@pytest.fixture
def trials(db_session, catalog, clock):
    return TrialManager(db_session, catalog, clock=clock)


@pytest.fixture
def credits(db_session, ledger, clock):
    return CreditEngine(db_session, ledger, clock=clock)


@pytest.fixture
def subscriptions(db_session, catalog, trials, credits, clock):
    return SubscriptionService(db_session, catalog=catalog, trials=trials, credits=credits, clock=clock)


@pytest.fixture
def resolver(db_session, catalog, trials, ledger, clock):
    return EntitlementResolver(db_session, catalog=catalog, trials=trials, ledger=ledger, clock=clock)


@pytest.fixture
def add_usage(db_session, clock):
    """Log `count` successful usage records for a category at the fake clock's time."""

    def _add(user_id, category: str, count: int, action: str = None, status_code: int = 200):
        store = LedgerStore(db_session)
        for _ in range(count):
            store.append_usage(
                user_id=user_id,
                endpoint=f"/v1/wod/{action or category}",
                method="POST",
                status_code=status_code,
                latency_ms=850,
                provider="fake",
                category=category,
                action=action,
                created_at=clock(),
            )
        db_session.commit()

    return _add


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def generator(fake_provider):
    return AIGenerationService(providers=[fake_provider])


@pytest.fixture
def client(generator):
    from fastapi.testclient import TestClient
    from core.dependencies import get_ai_generator
    from main import app

    app.dependency_overrides[get_ai_generator] = lambda: generator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers(test_user):
    return auth_headers(test_user.id)


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(admin_user.id)


@pytest.fixture
def headers_for():
    return auth_headers
