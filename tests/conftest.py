"""
School Portal - Test Configuration and Fixtures
"""
import os

import pytest

os.environ.setdefault("JWT_SECRET", "test-jwt-secret-key-for-testing")

from fastapi.testclient import TestClient

from database import MemoryBackend, ProfileStore
from main import app, get_db, get_dispatcher
from notifications import DispatchQueue

ADMIN_CREDENTIALS = {"username": "Manikgad-Classess", "password": "Manikgad@123", "role": "owner"}


@pytest.fixture
def store() -> ProfileStore:
    """Fresh in-memory store seeded with the default data on first read"""
    return ProfileStore(MemoryBackend())


@pytest.fixture
def dispatcher() -> DispatchQueue:
    """Dispatcher without the simulated network delay"""
    return DispatchQueue(delay=0)


@pytest.fixture
def client(store: ProfileStore, dispatcher: DispatchQueue):
    app.dependency_overrides[get_db] = lambda: store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def owner_headers(client: TestClient) -> dict:
    response = client.post("/auth/login", json=ADMIN_CREDENTIALS)
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
