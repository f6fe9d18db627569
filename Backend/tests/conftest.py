"""
Pytest configuration and fixtures for async database testing.

Tests run against an in-memory SQLite database (aiosqlite) created fresh for
every test. Outbound calls to PayPal, Stripe, Daraja and Resend never leave
the process: the app's HTTP client is replaced by one on an
httpx.MockTransport that answers from routes registered per test.
"""
import json
import os
import sys
import time
import uuid
from datetime import date, datetime, time as dt_time, timezone
from urllib.parse import parse_qs

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from iska.core.config import Settings
from iska.core.db import Base
from iska.models import Booking, SiteSetting, Tenant, TenantSubscription, UserRole

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"
SERVICE_ROLE_KEY = "test-service-role-key"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


# === Database ===

@pytest.fixture(scope="function")
async def async_engine():
    """Fresh in-memory database with all tables for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine):
    """
    Session shared by the test and the app under test.

    Handlers commit and roll back on this same session, so tests read state
    back with column queries rather than through objects they created.
    """
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


# === Configuration ===

@pytest.fixture
def settings():
    """Settings with platform credentials for every provider and Resend disabled."""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        supabase_jwt_secret=JWT_SECRET,
        service_role_key=SERVICE_ROLE_KEY,
        stripe_secret_key="sk_test_platform",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        paypal_client_id="platform-paypal-id",
        paypal_client_secret="platform-paypal-secret",
        paypal_mode="sandbox",
        paypal_webhook_id="",
        mpesa_consumer_key="platform-mpesa-key",
        mpesa_consumer_secret="platform-mpesa-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="platform-passkey",
        mpesa_env="sandbox",
        mpesa_callback_url="https://example.com/callback",
        resend_api_key="",
        business_timezone="UTC",
    )


# === Outbound HTTP ===

class ProviderMock:
    """
    Answers outbound requests by (method, path).

    Routes are registered with `add`; every request is recorded so tests can
    inspect what was sent. Unregistered routes answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, json_body=None, status_code=200, handler=None):
        if handler is None:
            def handler(request, _body=json_body, _status=status_code):
                return httpx.Response(_status, json=_body if _body is not None else {})
        self.routes[(method.upper(), path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": f"unmocked {request.method} {request.url}"})
        return handler(request)

    def sent_to(self, path):
        return [request for request in self.requests if request.url.path == path]

    @staticmethod
    def json_of(request):
        return json.loads(request.content)

    @staticmethod
    def form_of(request):
        return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


@pytest.fixture
def provider_mock():
    return ProviderMock()


@pytest.fixture
async def http_client(provider_mock):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider_mock)) as client:
        yield client


# === App client ===

@pytest.fixture(scope="function")
async def client(async_session, settings, provider_mock):
    """
    FastAPI AsyncClient with session, settings and outbound HTTP overridden.
    """
    # Import here so collection does not configure logging early
    from iska.main import app
    from iska.core.config import get_settings
    from iska.core.db import get_session
    from iska.core.http import get_http_client

    async def override_get_session():
        yield async_session

    async def override_get_http_client():
        async with httpx.AsyncClient(transport=httpx.MockTransport(provider_mock)) as outbound:
            yield outbound

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_http_client] = override_get_http_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# === Auth helpers ===

def make_token(user_id="user-1", email="owner@example.com", secret=JWT_SECRET, expires_in=3600, **claims):
    payload = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "exp": int(time.time()) + expires_in,
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """Factory: auth_headers(user_id, email) -> Authorization header dict."""
    def _headers(user_id="user-1", email="owner@example.com"):
        return bearer(make_token(user_id=user_id, email=email))
    return _headers


# === Data factories ===

@pytest.fixture
def create_tenant(async_session):
    async def _create(slug=None, name="Test Salon", **fields):
        tenant = Tenant(name=name, slug=slug or f"tenant-{uuid.uuid4().hex[:8]}", **fields)
        async_session.add(tenant)
        await async_session.commit()
        return tenant.id
    return _create


@pytest.fixture
def create_subscription(async_session):
    async def _create(tenant_id, plan="free", trial_ends_at=None, **fields):
        async_session.add(
            TenantSubscription(tenant_id=tenant_id, plan=plan, trial_ends_at=trial_ends_at, **fields)
        )
        await async_session.commit()
    return _create


@pytest.fixture
def set_site_setting(async_session):
    async def _set(tenant_id, key, value):
        async_session.add(SiteSetting(tenant_id=tenant_id, key=key, value=value))
        await async_session.commit()
    return _set


@pytest.fixture
def grant_role(async_session):
    async def _grant(user_id, tenant_id, role="tenant_owner"):
        async_session.add(UserRole(user_id=user_id, role=role, tenant_id=tenant_id))
        await async_session.commit()
    return _grant


@pytest.fixture
def create_booking(async_session):
    async def _create(tenant_id, booking_date, booking_time, cancel_token=None, **fields):
        fields.setdefault("customer_name", "Jane Client")
        fields.setdefault("customer_email", "jane@client.test")
        fields.setdefault("status", "confirmed")
        booking = Booking(
            tenant_id=tenant_id,
            booking_date=booking_date,
            booking_time=booking_time,
            cancel_token=cancel_token or uuid.uuid4().hex,
            **fields,
        )
        async_session.add(booking)
        await async_session.commit()
        return booking.id
    return _create


def utc(year, month, day, hour=0, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def split_datetime(value: datetime):
    """Aware datetime -> (date, time) in UTC, for booking columns."""
    value = value.astimezone(timezone.utc)
    return date(value.year, value.month, value.day), dt_time(value.hour, value.minute, value.second)
