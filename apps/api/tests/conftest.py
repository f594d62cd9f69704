"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database; the schema is rebuilt for
every test so nothing leaks between them. Stripe, object storage and the
e-mail queue are replaced with in-memory fakes through
`app.dependency_overrides`.
"""
import os
import sys

# Settings are read at import time, so the environment goes first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-filepay-suite-0123456789"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"
os.environ["ADMIN_PURGE_TOKEN"] = "static-purge-token"
os.environ["ADMIN_ACTION_SECRET"] = "action-secret-for-tests"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_filepay"
os.environ["WEB_APP_BASE_URL"] = "https://filepay.test"
os.environ.pop("SENTRY_DSN", None)

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from core.database import Base, SessionLocal, engine
from core.deps import get_notifier, get_optional_stripe_service, get_storage, get_stripe_service
from core.security import create_access_token
from core.timeutil import utcnow
from main import app
from models import PLAN_PRO, STATUS_ACTIVE, FileLink, Subscription
from services.notifications import Notifier
from tests.stripe_fakes import FakeStorage, FakeStripeClient, RecordingSender, make_stripe_service


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_stripe():
    return FakeStripeClient()


@pytest.fixture
def stripe_service(fake_stripe):
    return make_stripe_service(fake_stripe)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def notifier(sender):
    return Notifier(admin_email="admin@filepay.test", site_url="https://filepay.test", send=sender)


@pytest.fixture
def client(stripe_service, storage, notifier):
    app.dependency_overrides[get_stripe_service] = lambda: stripe_service
    app.dependency_overrides[get_optional_stripe_service] = lambda: stripe_service
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_link(db_session, storage):
    """
    Insert a link directly. `expires_in` may be negative for expired links;
    the object is put in the fake bucket unless `in_bucket=False`.
    """
    def _make(
        code: str = "AB12CD34",
        *,
        file_path: Optional[str] = None,
        file_bytes: int = 1024,
        days: int = 14,
        paid: bool = False,
        expires_in: timedelta = timedelta(days=14),
        deleted: bool = False,
        storage_deleted: bool = False,
        created_by_user_id: Optional[str] = None,
        in_bucket: bool = True,
    ) -> FileLink:
        now = utcnow()
        path = file_path or f"uploads/{code}/file.pdf"
        link = FileLink(
            code=code,
            file_path=path,
            file_bytes=file_bytes,
            days=days,
            paid=paid,
            paid_at=now if paid else None,
            expires_at=now + expires_in,
            deleted_at=now if deleted else None,
            deleted_reason="expired_access" if deleted else None,
            storage_deleted=storage_deleted,
            created_by_user_id=created_by_user_id,
        )
        db_session.add(link)
        db_session.commit()
        if in_bucket and not storage_deleted:
            storage.keys.add(path)
        return link

    return _make


@pytest.fixture
def make_pro(db_session):
    def _make(user_id: str, *, email: Optional[str] = None, **fields) -> Subscription:
        sub = Subscription(
            user_id=user_id,
            email=email or f"{user_id}@example.com",
            plan=fields.pop("plan", PLAN_PRO),
            status=fields.pop("status", STATUS_ACTIVE),
            **fields,
        )
        db_session.add(sub)
        db_session.commit()
        return sub

    return _make


def auth_headers(user_id: str, email: Optional[str] = None) -> dict:
    claims = {"sub": user_id}
    if email:
        claims["email"] = email
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def auth():
    return auth_headers
