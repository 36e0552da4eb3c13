"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import secrets
import sys
import time
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import MagicMock, patch

# Settings are read at import time
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "development"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

import fakeredis
import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from ledger.main import app
from ledger.core.config import PlatformConfig, get_platform_config
from ledger.db import redis as redis_module
from ledger.db.session import get_db
import ledger.models  # noqa: F401  register every table
from ledger.models.base import Base
from ledger.models.author_payout_account import AuthorPayoutAccount
from ledger.models.user import User
from ledger.services.gateway import PaymentGateway, get_gateway

WEBHOOK_SECRET = "whsec_test_secret"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``stripe-signature`` header for a raw body"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: Optional[str] = None) -> dict:
    return {
        "id": event_id or f"evt_{secrets.token_hex(8)}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def signed(event: dict):
    """(body, headers) ready to POST to the webhook endpoint"""
    body = json.dumps(event)
    return body, {"stripe-signature": sign_payload(body), "Content-Type": "application/json"}


def subscription_object(
    ref: str,
    metadata: dict,
    status: str = "active",
    amount: int = 300,
    interval: str = "month",
    customer: str = "cus_test123",
    canceled_at: Optional[int] = None,
    latest_invoice: Optional[str] = None,
) -> dict:
    now = int(time.time())
    return {
        "id": ref,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata,
        "cancel_at_period_end": False,
        "canceled_at": canceled_at,
        "latest_invoice": latest_invoice,
        "items": {"data": [{
            "price": {"id": "price_test", "unit_amount": amount, "currency": "usd",
                      "recurring": {"interval": interval}},
            "current_period_start": now,
            "current_period_end": now + 30 * 86400,
        }]},
    }


def invoice_object(ref: str, subscription_ref: str, amount: int, payment_ref: str = "pi_test123",
                   metadata: Optional[dict] = None) -> dict:
    return {
        "id": ref,
        "object": "invoice",
        "customer": "cus_test123",
        "amount_paid": amount,
        "currency": "usd",
        "payment_intent": payment_ref,
        "parent": {"subscription_details": {"subscription": subscription_ref, "metadata": metadata or {}}},
    }


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


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Swap the lazy Redis client for fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def mock_stripe():
    """Mock the Stripe SDK inside the gateway adapter; error classes stay real"""
    with patch("ledger.services.gateway.stripe") as mock_stripe_module:
        mock_stripe_module.APIConnectionError = stripe.APIConnectionError
        mock_stripe_module.RateLimitError = stripe.RateLimitError
        mock_stripe_module.APIError = stripe.APIError
        mock_stripe_module.StripeError = stripe.StripeError

        mock_stripe_module.Refund.create = MagicMock(return_value={
            "id": "re_test123", "status": "succeeded", "amount": 600,
        })
        mock_stripe_module.Transfer.create = MagicMock(return_value={
            "id": "tr_test123", "amount": 2500, "currency": "usd",
        })
        mock_stripe_module.Account.create_login_link = MagicMock(return_value={
            "url": "https://connect.stripe.com/express/test",
        })
        yield mock_stripe_module


@pytest.fixture(scope="function")
def config() -> PlatformConfig:
    return PlatformConfig()


@pytest.fixture(scope="function")
def gateway(mock_stripe) -> PaymentGateway:
    """Gateway with no backoff delay so retry tests run instantly"""
    return PaymentGateway(api_key="sk_test_dummy", max_retries=2, backoff_base=0)


@pytest.fixture(scope="function")
def client(db_session: Session, gateway: PaymentGateway, config: PlatformConfig) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and mocked Stripe"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_platform_config] = lambda: config

    try:
        with patch("ledger.tasks.scheduler.start_background_tasks", return_value=[]):
            with patch("ledger.main.init_db"):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        app.dependency_overrides.clear()


def _user(db_session: Session, email: str, is_admin: bool = False) -> User:
    user = User(email=email, is_admin=is_admin)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def reader(db_session: Session) -> User:
    return _user(db_session, "reader@example.com")


@pytest.fixture(scope="function")
def author(db_session: Session) -> User:
    return _user(db_session, "author@example.com")


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    return _user(db_session, "admin@example.com", is_admin=True)


@pytest.fixture(scope="function")
def payout_account(db_session: Session, author: User) -> AuthorPayoutAccount:
    """Fully onboarded payout account for ``author``"""
    account = AuthorPayoutAccount(
        author_id=author.id,
        external_account_ref="acct_test123",
        onboarding_complete=True,
        payouts_enabled=True,
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


def login(client: TestClient, mock_redis, user: User) -> str:
    """Create a session for ``user`` and return its CSRF token (also set as a default header)"""
    session_id = secrets.token_urlsafe(16)
    csrf_token = secrets.token_urlsafe(32)
    mock_redis.setex(f"session:{session_id}", 2592000, str(user.id))
    mock_redis.setex(f"csrf:{session_id}", 2592000, csrf_token)
    client.cookies.set("session_id", session_id)
    client.headers.update({"X-CSRF-Token": csrf_token})
    return csrf_token


@pytest.fixture(scope="function")
def author_client(client: TestClient, mock_redis, author: User) -> TestClient:
    login(client, mock_redis, author)
    return client


@pytest.fixture(scope="function")
def admin_client(client: TestClient, mock_redis, admin_user: User) -> TestClient:
    login(client, mock_redis, admin_user)
    return client


def deliver(db_session: Session, gateway: PaymentGateway, config: PlatformConfig, event: dict) -> dict:
    """Run a signed event through the webhook pipeline without HTTP"""
    from ledger.services.webhook_service import process_gateway_webhook

    body = json.dumps(event)
    return process_gateway_webhook(body.encode("utf-8"), sign_payload(body), db_session, gateway, config)


def add_revenue(db_session: Session, author: User, subscriber: User, net_cents: int, source_ref: str):
    """Seed one AuthorRevenue row with a consistent split"""
    from ledger.models.author_revenue import AuthorRevenue

    fee = net_cents // 5
    row = AuthorRevenue(
        author_id=author.id,
        subscriber_id=subscriber.id,
        source_ref=source_ref,
        gross_amount_cents=net_cents + fee,
        platform_fee_cents=fee,
        net_amount_cents=net_cents,
        currency="usd",
    )
    db_session.add(row)
    db_session.commit()
    return row
