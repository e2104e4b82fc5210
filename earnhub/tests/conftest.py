from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from earnhub.api import create_app
from earnhub.config import Settings
from earnhub.models import utcnow
from earnhub.service import LedgerService
from earnhub.storage import InMemoryStorage

ADMIN_EMAIL = "admin@earnhub.io"
ADMIN_PASSWORD = "admin-passw0rd"


@pytest.fixture
def settings():
    return Settings(
        STORAGE_BACKEND="memory",
        JWT_SECRET="test-secret",
        BCRYPT_ROUNDS=4,
        ADMIN_EMAIL=ADMIN_EMAIL,
        ADMIN_PASSWORD=ADMIN_PASSWORD,
        LOG_LEVEL="WARNING",
        LOG_JSON=False,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger(storage):
    return LedgerService(storage, referral_bonus=Decimal("5.00"))


@pytest.fixture
def make_user(storage):
    """Insert a user document directly, skipping password hashing."""
    def _make_user(balance="0.00", role="user", referred_by=None, email=None):
        now = utcnow()
        user_id = str(uuid4())
        storage.insert_user({
            "id": user_id,
            "email": email or f"{user_id[:8]}@earnhub.io",
            "name": "Test User",
            "password_hash": "not-a-real-hash",
            "balance": Decimal(balance),
            "total_earned": Decimal("0.00"),
            "total_withdrawn": Decimal("0.00"),
            "referral_code": user_id[:8].upper(),
            "referred_by": referred_by,
            "role": role,
            "is_suspended": False,
            "created_at": now,
            "updated_at": now,
        })
        return user_id
    return _make_user


@pytest.fixture
def make_task(storage):
    def _make_task(reward="10.00", is_active=True, title="Watch a video"):
        now = utcnow()
        task_id = str(uuid4())
        storage.insert_task({
            "id": task_id,
            "title": title,
            "description": "",
            "reward": Decimal(reward),
            "category": "general",
            "is_active": is_active,
            "created_by": None,
            "created_at": now,
            "updated_at": now,
        })
        return task_id
    return _make_task


@pytest.fixture
def app(settings, storage):
    return create_app(settings, storage=storage)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_token(client):
    response = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]["token"]


@pytest.fixture
def register(client):
    def _register(email, password="passw0rd-123", name="Jane", referral_code=None):
        body = {"email": email, "password": password, "name": name}
        if referral_code:
            body["referral_code"] = referral_code
        response = client.post("/api/auth/register", json=body)
        assert response.status_code == 201, response.text
        return response.json()["data"]
    return _register
