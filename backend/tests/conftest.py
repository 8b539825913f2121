# tests/conftest.py
import os

# Settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-0123456789abcdef0123456789"
os.environ["TWILIO_AUTH_TOKEN"] = "0123456789abcdef0123456789abcdef"
os.environ["TWILIO_ACCOUNT_SID"] = "AC00000000000000000000000000000000"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_testsecret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["SITE_URL"] = "https://app.example.com"
os.environ["PUBLIC_BASE_URL"] = "https://api.example.com"
os.environ.pop("TWILIO_MESSAGING_SERVICE_SID", None)
os.environ.pop("SECURITY_LOG_DIR", None)

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from httpx import AsyncClient, ASGITransport
from jose import jwt
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from twilio.request_validator import RequestValidator

from app.main import app
from app.auth.auth import AccessResolver
from app.core.config import settings
from app.db.database import get_db, get_session_factory
from app.models.models import (
    Base, Client, Profile, ClientUser, ClientStaff, TelephonySettings, Role
)
from app.security.webhook_signature import TwilioSignatureVerifier, get_twilio_verifier

TWILIO_TOKEN = os.environ["TWILIO_AUTH_TOKEN"]
STRIPE_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
PUBLIC_BASE_URL = os.environ["PUBLIC_BASE_URL"]


def make_token(user_id, email="user@example.com", expires_in=3600) -> str:
    """Bearer token shaped like the auth provider's."""
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user_id, email="user@example.com"):
    return {"Authorization": f"Bearer {make_token(user_id, email)}"}


def twilio_signature(path: str, params: dict) -> str:
    return RequestValidator(TWILIO_TOKEN).compute_signature(f"{PUBLIC_BASE_URL}{path}", params)


def stripe_signature(payload: str, secret: str = STRIPE_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event_body(event_id: str, event_type: str, obj: dict) -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


@pytest.fixture
async def engine(tmp_path):
    """File-backed sqlite so parallel sessions see the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def resolver(session_factory):
    return AccessResolver(session_factory)


@pytest.fixture
def twilio_verifier():
    return TwilioSignatureVerifier(auth_token=TWILIO_TOKEN, public_base_url=PUBLIC_BASE_URL)


@pytest.fixture
async def tenant(session_factory):
    """One client with an admin, an assigned staff member, an unassigned
    staff member and a client-role login."""
    client = Client(id=uuid.uuid4(), name="Acme Funding")
    admin = Profile(id=uuid.uuid4(), role=Role.ADMIN.value, email="admin@example.com")
    staff = Profile(id=uuid.uuid4(), role=Role.USER.value, email="staff@example.com")
    outsider = Profile(id=uuid.uuid4(), role=Role.SALES.value, email="outsider@example.com")
    client_user = Profile(id=uuid.uuid4(), role=Role.CLIENT.value, email="owner@acme.example.com")

    async with session_factory() as session:
        session.add_all([client, admin, staff, outsider, client_user])
        await session.flush()
        session.add_all([
            ClientStaff(user_id=staff.id, client_id=client.id),
            ClientUser(user_id=client_user.id, client_id=client.id),
            TelephonySettings(
                client_id=client.id,
                twilio_phone_number="+15550001111",
                fallback_number="+15550009999"
            ),
        ])
        await session.commit()

    return SimpleNamespace(
        client_id=client.id,
        admin_id=admin.id,
        staff_id=staff.id,
        outsider_id=outsider.id,
        client_user_id=client_user.id,
        phone_number="+15550001111",
        fallback_number="+15550009999"
    )


@pytest.fixture
async def client(session_factory, twilio_verifier):
    """HTTP client against the app with the test database wired in."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_twilio_verifier] = lambda: twilio_verifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
