"""Shared pytest fixtures for test suite"""
import os
import pytest
import sys
import secrets
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Keep the application engine off any real database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

from app.main import app
from app.core.config import settings, SUBSCRIPTION_PRICES_KEY
from app.db.session import get_db
from app.db import redis as redis_module
from app.models import Base
from app.models.user import User
from app.models.profile import DriverProfile, RiderProfile
from app.services.mmg_client import MMGClient, get_mmg_client
from app.services.settings_service import set_system_setting
from app.utils.encryption import encrypt, to_url_safe_token


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

MMG_API_URL = "https://mmg.test/merchant"
MMG_CHECKOUT_URL = "https://checkout.mmg.test/mmg-pg/web/payments"
SUCCESS_URL = "https://rides.test/payment-success"
FAILURE_URL = "https://rides.test/payment-failed"
SESSION_TTL = 30 * 24 * 60 * 60


@pytest.fixture(scope="session")
def rsa_keys():
    """(private_pem, public_pem) for one 3072-bit key pair, shared by the whole run"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=3072)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return private_pem, public_pem


@pytest.fixture(scope="function")
def mmg_settings(monkeypatch, rsa_keys):
    """Complete MMG configuration. One key pair plays both gateway and merchant."""
    private_pem, public_pem = rsa_keys
    values = {
        "MMG_API_URL": MMG_API_URL,
        "MMG_TOKEN_PATH": "/oauth/token",
        "MMG_LOOKUP_PATH": "/transactions/{transaction_id}",
        "MMG_API_KEY": "test-api-key",
        "MMG_USERNAME": "merchant-user",
        "MMG_PASSWORD": "merchant-pass",
        "MMG_MERCHANT_MID": "7000001",
        "MMG_MERCHANT_KEY": "test-merchant-key",
        "MMG_SECRET_KEY": "test-secret",
        "MMG_CLIENT_ID": "test-client-id",
        "MMG_CHECKOUT_URL": MMG_CHECKOUT_URL,
        "MMG_PUBLIC_KEY": public_pem,
        "MMG_PRIVATE_KEY": private_pem,
        "MMG_SUCCESS_URL": SUCCESS_URL,
        "MMG_FAILURE_URL": FAILURE_URL,
    }
    for key, value in values.items():
        monkeypatch.setattr(settings, key, value)
    return settings


class FakeGateway:
    """httpx.MockTransport handler standing in for the MMG merchant API"""

    def __init__(self):
        self.transactions = {}
        self.requests = []
        self.login_calls = 0
        self.lookup_calls = 0
        self.login_status = 200
        self.expires_in = 3600

    def add_transaction(self, transaction_id, amount="5000", status="Successful", currency="GYD", **extra):
        self.transactions[transaction_id] = {
            "transactionId": transaction_id,
            "amount": amount,
            "currency": currency,
            "transactionStatus": status,
            "transactionReference": f"REF-{transaction_id}",
            "creationDate": "2026-10-01T12:00:00Z",
            **extra,
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/oauth/token"):
            self.login_calls += 1
            if self.login_status != 200:
                return httpx.Response(self.login_status, text="invalid credentials")
            return httpx.Response(200, json={
                "access_token": f"session-token-{self.login_calls}",
                "token_type": "bearer",
                "expires_in": self.expires_in,
            })
        if "/transactions/" in path:
            self.lookup_calls += 1
            transaction_id = path.rsplit("/", 1)[-1]
            if transaction_id not in self.transactions:
                return httpx.Response(404, json={"error": "Transaction not found"})
            return httpx.Response(200, json=self.transactions[transaction_id])
        return httpx.Response(404, text="not found")


@pytest.fixture(scope="function")
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def mmg_client(mmg_settings, fake_gateway) -> MMGClient:
    """Gateway client reading the test settings, talking to FakeGateway"""
    return MMGClient(transport=httpx.MockTransport(fake_gateway))


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        # The fixed-window limiter runs a Lua script; tests exercise it separately
        with patch.object(redis_module, "check_rate_limit", return_value=True):
            yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, mmg_client) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and fake gateway"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mmg_client] = lambda: mmg_client

    try:
        # Disable OpenTelemetry and the real database bootstrap in tests
        with patch("app.main.instrument_app", return_value=False):
            with patch("app.main.init_db"):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


def _create_user(db_session: Session, role, phone_number, profile_model=None) -> User:
    user = User(phone_number=phone_number, full_name=f"Test {role or 'user'}", role=role)
    db_session.add(user)
    db_session.flush()
    if profile_model is not None:
        db_session.add(profile_model(user_id=user.id))
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def rider_user(db_session: Session) -> User:
    """Rider with a trial profile"""
    return _create_user(db_session, "rider", "+5926000001", RiderProfile)


@pytest.fixture(scope="function")
def driver_user(db_session: Session) -> User:
    """Driver with an expired profile"""
    return _create_user(db_session, "driver", "+5926000002", DriverProfile)


@pytest.fixture(scope="function")
def other_rider(db_session: Session) -> User:
    """Second rider for ownership and conflict tests"""
    return _create_user(db_session, "rider", "+5926000003", RiderProfile)


@pytest.fixture(scope="function")
def roleless_user(db_session: Session) -> User:
    return _create_user(db_session, None, "+5926000004")


@pytest.fixture(scope="function")
def subscription_prices(db_session: Session):
    prices = {"rider_monthly": 5000, "driver_monthly": 7000}
    set_system_setting(SUBSCRIPTION_PRICES_KEY, prices, db_session)
    return prices


@pytest.fixture(scope="function")
def auth_headers(mock_redis):
    """Factory: bearer headers for a user backed by a Redis session"""
    def _headers(user: User):
        token = secrets.token_urlsafe(32)
        mock_redis.setex(f"session:{token}", SESSION_TTL, user.id)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture(scope="function")
def callback_token(mmg_settings):
    """Factory: encrypted callback token as the gateway would send it"""
    def _token(merchant_transaction_id, transaction_id="MMG-1", result_code="0", result_message=None, **extra):
        payload = {
            "merchantTransactionId": merchant_transaction_id,
            "transactionId": transaction_id,
            "ResultCode": result_code,
            "ResultMessage": result_message,
            "htmlResponse": "<html></html>",
            **extra,
        }
        return to_url_safe_token(encrypt(payload))
    return _token
