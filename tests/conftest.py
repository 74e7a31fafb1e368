from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from backend import server
from backend.storage import InMemoryDB

NOW = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)


def make_habit(habit_id="h1", user_id="u1", current=0, longest=0, last_check_in=None, name="Read"):
    return {
        "id": habit_id,
        "user_id": user_id,
        "name": name,
        "current_streak": current,
        "longest_streak": longest,
        "last_check_in": last_check_in,
        "created_at": "2024-01-01T00:00:00+00:00",
    }


class Clock:
    def __init__(self, now):
        self.now = now


@pytest.fixture
def db():
    return InMemoryDB()


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def client(db, clock, monkeypatch):
    monkeypatch.setattr(server, "db", db)
    server.app.dependency_overrides[server.get_now] = lambda: clock.now
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    def _register(email, username=None, password="testpass123"):
        body = {"email": email, "password": password}
        if username:
            body["username"] = username
        response = client.post("/api/auth/register", json=body)
        assert response.status_code == 200, response.text
        data = response.json()
        return {"Authorization": f"Bearer {data['access_token']}"}, data["user"]
    return _register
