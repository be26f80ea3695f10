import hashlib
import hmac
import json
import os
import time

# 1. Set required environment variables for testing
# No PROJECT_ID: Secret Manager is never called
os.environ.pop("PROJECT_ID", None)
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["TRACING_ENABLED"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

# Import main AFTER setting up the environment
from main import app  # noqa: E402
from database import Base, get_db  # noqa: E402
from dependencies import CurrentUser, get_billing_config, get_current_user  # noqa: E402
from billing.config import BillingConfig  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
CLEANUP_SECRET = "cleanup-test-secret"


def make_config(**overrides) -> BillingConfig:
    values = dict(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        price_ids={"monthly": "price_monthly", "annual": "price_annual"},
        cleanup_secret=CLEANUP_SECRET,
        app_base_url="https://readung.test",
    )
    values.update(overrides)
    return BillingConfig(**values)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Builds a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test") -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


@pytest.fixture
def db_session():
    """
    Creates a new database session for a test.
    """
    # Use in-memory SQLite for testing; StaticPool shares it with the app threads
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def billing_config():
    return make_config()


@pytest.fixture
def client(db_session, billing_config):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_billing_config] = lambda: billing_config
    with TestClient(app) as c:
        yield c
    app.dependency_overrides = {}


@pytest.fixture
def mock_auth_user(client):
    """
    Overrides the get_current_user dependency to bypass Firebase.
    """
    user = CurrentUser(uid="u1", email="reader@example.com")
    app.dependency_overrides[get_current_user] = lambda: user
    yield user
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture
def use_config(client):
    """Swaps the billing config for the rest of the test."""
    def _use(**overrides):
        config = make_config(**overrides)
        app.dependency_overrides[get_billing_config] = lambda: config
        return config
    return _use
