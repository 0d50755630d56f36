"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RESEND_API_KEY"] = ""

from app.main import app  # noqa: E402
from app.db import redis as redis_module  # noqa: E402
from app.db.session import get_db  # noqa: E402
from app.models import Addon, Base, Plan, Price, Subscription, User  # noqa: E402
from app.services.processor_client import ProcessorClient, get_processor  # noqa: E402
from stripe_payloads import PERIOD_END, PERIOD_START, WEBHOOK_SECRET  # noqa: E402


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Swap the Redis client for fakeredis (Lua enabled for redis-py locks)"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    redis_module.set_redis_client(fake_redis)
    try:
        yield fake_redis
    finally:
        redis_module.set_redis_client(None)


@pytest.fixture(scope="function")
def stripe_client() -> Mock:
    """Stand-in for stripe.StripeClient; configure return values per test"""
    return Mock()


@pytest.fixture(scope="function")
def processor(stripe_client: Mock) -> ProcessorClient:
    return ProcessorClient(
        api_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        webhook_tolerance=300,
        client=stripe_client,
    )


@pytest.fixture(autouse=True)
def mock_send_email():
    """Never talk to Resend from tests"""
    with patch("app.services.email_service._send_email", return_value=True) as mock_send:
        yield mock_send


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, processor: ProcessorClient) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and a mocked processor"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor

    try:
        # No lifespan: it would connect to the configured database and Redis
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def catalog(db_session: Session) -> dict:
    """Seed four plan levels with monthly/annual prices; keyed by stripe price id"""
    plans = [
        Plan(id="PLAN_FREE", name="Free", level=1),
        Plan(id="PLAN_BASIC", name="Basic", level=2),
        Plan(id="PLAN_PRO", name="Pro", level=3),
        Plan(id="PLAN_ENTERPRISE", name="Enterprise", level=4),
        Plan(id="PLAN_LEGACY", name="Legacy", level=5, is_active=False),
    ]
    db_session.add_all(plans)
    prices = [
        Price(plan_id="PLAN_BASIC", stripe_price_id="price_basic_month", interval="month", amount=2900),
        Price(plan_id="PLAN_BASIC", stripe_price_id="price_basic_year", interval="year", amount=29000),
        Price(plan_id="PLAN_PRO", stripe_price_id="price_pro_month", interval="month", amount=7900),
        Price(plan_id="PLAN_PRO", stripe_price_id="price_pro_year", interval="year", amount=79000),
        Price(plan_id="PLAN_ENTERPRISE", stripe_price_id="price_enterprise_month", interval="month", amount=19900),
        Price(plan_id="PLAN_PRO", stripe_price_id="price_pro_retired", interval="month", amount=5900, is_active=False),
        Price(plan_id="PLAN_LEGACY", stripe_price_id="price_legacy_month", interval="month", amount=9900),
    ]
    db_session.add_all(prices)
    db_session.add(Addon(
        id="ADDON_PRIORITY_SUPPORT", name="Priority support", level_required=2,
        stripe_price_id="price_priority_support", amount=9900, duration_days=30
    ))
    db_session.commit()
    return {price.stripe_price_id: price for price in prices}


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Test user using the Resend test address"""
    user = User(
        external_auth_id="user_ext_123",
        email="delivered@resend.dev",
        first_name="Ana",
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User, mock_redis) -> TestClient:
    """Client carrying a session cookie that resolves to test_user"""
    mock_redis.setex("session:test-session", 2592000, str(test_user.id))
    client.cookies.set("session_id", "test-session")
    return client


@pytest.fixture(scope="function")
def make_subscription(db_session: Session):
    """Factory for local subscriptions on a given price"""

    def _make(user: User, price: Price, **overrides) -> Subscription:
        fields = {
            "user_id": user.id,
            "price_id": price.id,
            "stripe_subscription_id": "sub_123",
            "stripe_customer_id": "cus_123",
            "status": "active",
            "current_period_start": PERIOD_START,
            "current_period_end": PERIOD_END,
            "cancel_at_period_end": False,
        }
        fields.update(overrides)
        subscription = Subscription(**fields)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture(scope="function")
def sign_payload():
    """Build a valid stripe-signature header for a payload"""

    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{payload}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


@pytest.fixture(scope="function")
def make_event():
    """Serialize a Stripe event envelope"""

    def _make(event_type: str, obj: dict, event_id: str = "evt_123", created: int = None) -> str:
        return json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        })

    return _make


