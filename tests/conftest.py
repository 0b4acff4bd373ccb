from __future__ import annotations

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="portal-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/test.db"
os.environ["STORAGE_DIR"] = os.path.join(_TMP, "storage")
os.environ["RATE_LIMIT"] = "100000/minute"
os.environ["ENABLE_EMAIL"] = "false"
os.environ["ENVIRONMENT"] = "test"

import pytest
from fastapi.testclient import TestClient

from portal.db import Base, SessionLocal, engine
from portal.main import app
from portal.models.models import Notification
from portal.services.access import Role
from portal.services.users import create_user


PASSWORD = "password123"


@pytest.fixture(autouse=True)
def _fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def make_client():
    clients = []

    def _make() -> TestClient:
        c = TestClient(app)
        clients.append(c)
        return c

    yield _make
    for c in clients:
        c.close()


def seed_user(role: Role, email: str | None = None, first: str = "Test", last: str | None = None) -> str:
    email = email or f"{role.value}-{os.urandom(4).hex()}@example.com"
    with SessionLocal() as db:
        user = create_user(db, email, PASSWORD, first, last or role.value.title(), role=role)
        return str(user.id)


def email_of(user_id: str) -> str:
    from portal.models.models import User
    import uuid

    with SessionLocal() as db:
        return db.query(User).filter(User.id == uuid.UUID(user_id)).one().email


def login(client: TestClient, email: str, password: str = PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture()
def login_as(make_client):
    """Seed a user of the given role and return (client, user_id) logged in as them."""

    def _login_as(role: Role, email: str | None = None):
        user_id = seed_user(role, email=email)
        client = make_client()
        res = login(client, email_of(user_id))
        assert res.status_code == 200, res.text
        return client, user_id

    return _login_as


def notification_count(template_key: str) -> int:
    with SessionLocal() as db:
        return db.query(Notification).filter(Notification.template_key == template_key).count()
