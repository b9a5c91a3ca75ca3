"""
Pytest configuration for testing
"""

import os
import uuid
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set up environment variables for testing before any imports
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["REDIS_PASSWORD"] = ""
os.environ["ANALYTICS_ENABLED"] = "false"
os.environ["FIREBASE_PROJECT_ID"] = "test-project"
os.environ.pop("EVENT_BUS_URL", None)


# Mock Firebase Admin before it's imported
@pytest.fixture(autouse=True)
def mock_firebase_admin(monkeypatch):
    """Mock Firebase Admin SDK so analytics never reaches Firestore"""
    mock_credentials = MagicMock()
    monkeypatch.setattr("firebase_admin.credentials.Certificate", mock_credentials.Certificate)

    mock_init = MagicMock()
    monkeypatch.setattr("firebase_admin.initialize_app", mock_init)

    mock_firestore = MagicMock()
    monkeypatch.setattr("firebase_admin.firestore.client", mock_firestore)

    yield mock_firestore


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite engine shared by every connection in the test"""
    # Import after env vars are set
    from billing.core.database import Base
    import billing.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Create a new database session for a test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def now():
    return datetime(2025, 1, 15, 12, 0, 0)


@pytest.fixture
def make_plan():
    """Build a catalogue plan"""
    from billing.clients.catalogue_client import CataloguePlan

    def _make(plan_id="plan_basic", name="Basic", price="30.00", billing_cycle="monthly", trial_days=0):
        return CataloguePlan(
            id=plan_id,
            name=name,
            price=Decimal(price),
            billing_cycle=billing_cycle,
            trial_enabled=trial_days > 0,
            trial_days=trial_days,
        )

    return _make


@pytest.fixture
def catalogue(make_plan):
    """Catalogue collaborator serving a small fixed set of plans"""
    from billing.core.exceptions import NotFoundError

    plans = {
        "plan_basic": make_plan(),
        "plan_pro": make_plan("plan_pro", "Pro", "50.00"),
        "plan_trial": make_plan("plan_trial", "Trial Plan", "20.00", trial_days=14),
        "plan_yearly": make_plan("plan_yearly", "Yearly", "300.00", billing_cycle="yearly"),
    }

    async def get_plan_by_id(plan_id):
        if plan_id not in plans:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plans[plan_id]

    client = MagicMock()
    client.plans = plans
    client.get_plan_by_id = AsyncMock(side_effect=get_plan_by_id)
    return client


@pytest.fixture
def customers():
    client = MagicMock()
    client.get_customer_by_id = AsyncMock(return_value={"id": "cust_1"})
    return client


@pytest.fixture
def make_subscription(db_session, now):
    """Insert a subscription row directly"""
    from billing.models.subscription import BillingCycle, Subscription, SubscriptionStatus

    def _make(**overrides):
        values = {
            "id": str(uuid.uuid4()),
            "customer_id": "cust_1",
            "plan_id": "plan_basic",
            "plan_name": "Basic",
            "amount": Decimal("30.00"),
            "billing_cycle": BillingCycle.MONTHLY,
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": datetime(2025, 1, 1),
            "current_period_end": datetime(2025, 1, 31),
            "is_trial_used": False,
            "cancel_at_period_end": False,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make


@pytest.fixture
def mock_cache():
    """Redis cache stand-in that reports Redis as unreachable"""
    cache = MagicMock()
    cache.ping.return_value = False
    cache.acquire_lock.return_value = False
    return cache


@pytest.fixture
def publisher():
    publisher = MagicMock()
    publisher.publish = AsyncMock(return_value=0)
    return publisher
