"""
Shared fixtures.

MongoDB is replaced by mongomock before the app (and ``database``) is
imported, so every test runs against an in-memory database that is wiped
between tests.
"""

import itertools
import os
from unittest.mock import patch

import mongomock
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("DATABASE_NAME", "musicplatform_test")

_mongo = patch("pymongo.MongoClient", mongomock.MongoClient)
_mongo.start()

from auth import create_access_token, hash_password  # noqa: E402
from database import create_document, db, find_by_id  # noqa: E402
from main import app  # noqa: E402
from schemas import ArtistProfile, User  # noqa: E402
from services import payments  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests (pure functions, no app)")
    config.addinivalue_line("markers", "api: API endpoint tests")


@pytest.fixture(autouse=True)
def clean_db():
    yield
    for name in db.list_collection_names():
        db.drop_collection(name)
    payments.payment_tracker._entries.clear()
    payments.reset_client()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    """Insert a user and return ``(user_doc, auth_headers)``."""

    counter = itertools.count(1)

    def _make(role="fan", email=None, plan="FREE", password="secret123", **extra):
        email = email or f"{role}-{next(counter)}@example.com"
        user = User(
            name=f"Test {role.title()}",
            email=email,
            password_hash=hash_password(password),
            role=role,
            plan=plan,
            artist=ArtistProfile() if role == "artist" else None,
        ).model_dump()
        user.update(extra)
        user_id = create_document("user", user)
        doc = find_by_id("user", user_id)
        return doc, {"Authorization": f"Bearer {create_access_token(doc)}"}

    return _make


@pytest.fixture
def fan(make_user):
    return make_user("fan", email="fan@example.com")


@pytest.fixture
def artist(make_user):
    return make_user("artist", email="artist@example.com")


@pytest.fixture
def admin(make_user):
    return make_user("admin", email="admin@example.com")
