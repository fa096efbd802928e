"""
Shared pytest fixtures.

DATABASE_URL is pointed at a throwaway SQLite file before any app module is
imported, and the schema is rebuilt for every test.
"""

import json
import os
import tempfile

import pytest

_db_dir = tempfile.mkdtemp(prefix="healthchef-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_db_dir, "test.db")
os.environ["GOOGLE_API_KEY"] = ""
os.environ["SECRET_KEY"] = "test_secret"

from app_models import Base, engine, SessionLocal, User, Profile  # noqa: E402


class FakeGenerator:
    """Stands in for GeminiService and records every request it receives."""

    def __init__(self, response="", error=None):
        self.response = response
        self.error = error
        self.calls = []

    def generate(self, request):
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture(autouse=True)
def setup_db():
    """Fresh tables for each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def client(fake_generator, monkeypatch):
    """Flask test client with the Gemini client swapped for a fake."""
    from main import app, recipe_service

    monkeypatch.setattr(recipe_service, "generator", fake_generator)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def test_user():
    """Create a nut-free, diabetic test user and return its plain attributes."""
    db = SessionLocal()
    user = User(
        name="Test",
        email="test@example.com",
        password_hash=User.hash_password("password123"),
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    profile = Profile(
        user_id=user.id,
        dietary_restrictions=json.dumps(["nut-free"]),
        health_conditions=json.dumps(["diabetes"]),
        spice_preference="mild",
        cuisine_types=json.dumps(["italian"]),
        time_availability="30-min",
    )
    db.add(profile)
    db.commit()

    info = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "password": "password123",
        "role": user.role,
    }
    db.close()
    return info


@pytest.fixture
def auth_token(test_user):
    """Get auth token for test user."""
    from main import create_access_token
    return create_access_token(test_user["id"], test_user["role"])


@pytest.fixture
def auth_headers(auth_token):
    return {"Authorization": f"Bearer {auth_token}"}
