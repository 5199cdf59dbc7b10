"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any school_chat import, since
settings are read once at import time.
"""

import hashlib
import hmac
import json
import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_school_chat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")

# Clear settings cache before any app imports to ensure test env vars are used
from school_chat.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from school_chat.main import app  # noqa: E402
from school_chat.storage import Base, SessionLocal, engine  # noqa: E402


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
BRANCH_ID = "branch-1"


def compute_signature(body: str, secret: str = TEST_WEBHOOK_SECRET) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def inbound_body(message_id: str, phone: str = "+919876543210", text="Hello", **extra) -> str:
    """Serialize an inbound webhook payload."""
    payload = {
        "message_id": message_id,
        "branch_id": BRANCH_ID,
        "from": phone,
        "ts": "2025-01-15T10:00:00Z",
    }
    if text is not None:
        payload["text"] = text
    payload.update(extra)
    return json.dumps(payload)


def post_signed(client, path: str, body: str):
    return client.post(
        path,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body),
        }
    )


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Session on a fresh database, for tests that call the core directly."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def receive(client):
    """Post a signed inbound message and return the response."""
    def _receive(message_id: str, phone: str = "+919876543210", text="Hello", **extra):
        return post_signed(client, "/webhook", inbound_body(message_id, phone, text, **extra))
    return _receive


@pytest.fixture
def conversation_for(client):
    """Look up a conversation in BRANCH_ID by participant phone via the API."""
    def _lookup(phone: str = "+919876543210"):
        response = client.get("/conversations", params={"branch_id": BRANCH_ID, "include_inactive": True})
        assert response.status_code == 200
        for conversation in response.json()["data"]:
            if conversation["participant_phone"] == phone:
                return conversation
        return None
    return _lookup
