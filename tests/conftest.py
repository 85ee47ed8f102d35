import os

# Tests always run against the in-memory local store
for var in ("MONGO_PROXY_URL", "MONGODB_URI", "REDIS_URL", "FIREBASE_API_KEY", "GEMINI_API_KEY", "API_KEY", "LOCAL_STORAGE_PATH"):
    os.environ.pop(var, None)

from datetime import datetime, timedelta, timezone

import fakeredis
import mongomock
import pytest
from fastapi.testclient import TestClient

import proxy
from ai import AIService
from auth import LocalAuthProvider, create_access_token
from database import LocalStorageRepository, MongoProxyRepository
from main import app, get_ai, get_auth, get_storage
from schemas import Event, Registration, User
from settings import get_settings
from storage import StorageService

EVENT_START = datetime(2030, 5, 1, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    return LocalStorageRepository()


@pytest.fixture
def service(repo):
    return StorageService(repo)


@pytest.fixture
def organizer(service):
    user = User(id="org-1", name="Olivia Organizer", email="olivia@example.com", role="organizer")
    service.save_user(user)
    return user


@pytest.fixture
def attendee(service):
    user = User(id="att-1", name="Adam Attendee", email="adam@example.com", role="attendee")
    service.save_user(user)
    return user


@pytest.fixture
def make_event(service):
    """Save an event; keyword arguments override the defaults."""

    def _make(**overrides):
        data = {
            "title": "PyData Meetup",
            "description": "Talks and pizza",
            "start": EVENT_START,
            "end": EVENT_START + timedelta(hours=3),
            "location": "Main Hall",
            "capacity": 10,
            "organizer_id": "org-1",
        }
        data.update(overrides)
        return service.save_event(Event(**data))

    return _make


@pytest.fixture
def make_registration():
    """Build (not save) a registration for participant number ``n``."""

    def _make(event_id: str, n: int, **overrides):
        data = {
            "event_id": event_id,
            "participant_id": f"user-{n}",
            "participant_name": f"Attendee {n}",
            "participant_email": f"attendee{n}@example.com",
        }
        data.update(overrides)
        return Registration(**data)

    return _make


@pytest.fixture
def client(service):
    app.dependency_overrides[get_storage] = lambda: service
    app.dependency_overrides[get_auth] = lambda: LocalAuthProvider(service)
    app.dependency_overrides[get_ai] = lambda: AIService(None, "test-model")
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user, get_settings())}"}

    return _headers


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["event_horizon"]


@pytest.fixture
def proxy_client(mongo_db):
    proxy.app.dependency_overrides[proxy.get_mongo_db] = lambda: mongo_db
    with TestClient(proxy.app) as test_client:
        yield test_client
    proxy.app.dependency_overrides.clear()


@pytest.fixture
def mongo_repo(proxy_client):
    # TestClient is an httpx.Client, so the repository talks to the proxy in-process
    return MongoProxyRepository(client=proxy_client)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)
