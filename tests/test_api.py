import asyncio
from datetime import timedelta
from zoneinfo import ZoneInfo

from pymongo.errors import ServerSelectionTimeoutError

from backend import dates, server
from backend.storage import _InMemoryResult
from conftest import NOW


def _create_habit(client, headers, name="Read 10 pages"):
    response = client.post("/api/habits", json={"name": name}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}


def test_register_bootstraps_profile(client, register):
    headers, user = register("ada@example.com", username="ada_l")

    assert user["display_name"] == "ada_l"
    profile = client.get("/api/profile", headers=headers).json()
    assert profile["display_name"] == "ada_l"


def test_profile_defaults_to_email_local_part(client, register):
    headers, user = register("grace@example.com")

    assert user["display_name"] == "grace"
    assert client.get("/api/auth/me", headers=headers).json()["email"] == "grace@example.com"


def test_login_recreates_missing_profile(client, register, db):
    register("linus@example.com", username="linus")
    db.profiles._docs.clear()

    response = client.post("/api/auth/login", json={"email": "linus@example.com", "password": "testpass123"})

    assert response.status_code == 200
    assert response.json()["user"]["display_name"] == "linus"


def test_routes_require_token(client):
    assert client.get("/api/habits").status_code in (401, 403)
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/api/habits", headers=bad).status_code == 401


def test_new_habit_starts_at_zero(client, register):
    headers, user = register("ada@example.com")
    habit = _create_habit(client, headers)

    assert habit["user_id"] == user["id"]
    assert habit["current_streak"] == 0
    assert habit["longest_streak"] == 0
    assert habit["last_check_in"] is None


def test_check_in_lifecycle(client, register, clock):
    headers, _ = register("ada@example.com")
    habit = _create_habit(client, headers)
    url = f"/api/habits/{habit['id']}/check-in"

    first = client.post(url, headers=headers).json()
    assert (first["outcome"], first["current_streak"], first["longest_streak"]) == ("Continued", 1, 1)

    again = client.post(url, headers=headers).json()
    assert (again["outcome"], again["current_streak"]) == ("AlreadyDone", 1)

    clock.now = NOW + timedelta(days=1)
    assert client.post(url, headers=headers).json()["current_streak"] == 2

    clock.now = NOW + timedelta(days=4)
    reset = client.post(url, headers=headers).json()
    assert (reset["outcome"], reset["current_streak"], reset["longest_streak"]) == ("Reset", 1, 2)

    stored = client.get(f"/api/habits/{habit['id']}", headers=headers).json()
    assert stored["current_streak"] == 1
    assert stored["longest_streak"] == 2
    assert stored["last_check_in"] == clock.now.isoformat()


def test_check_in_unknown_habit_is_404(client, register):
    headers, _ = register("ada@example.com")

    response = client.post("/api/habits/missing/check-in", headers=headers)

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_other_users_habit_is_forbidden(client, register):
    owner_headers, _ = register("ada@example.com")
    other_headers, _ = register("mallory@example.com")
    habit = _create_habit(client, owner_headers)

    for method, path in (
        ("post", f"/api/habits/{habit['id']}/check-in"),
        ("get", f"/api/habits/{habit['id']}"),
        ("delete", f"/api/habits/{habit['id']}"),
    ):
        response = getattr(client, method)(path, headers=other_headers)
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    rename = client.put(f"/api/habits/{habit['id']}", json={"name": "mine now"}, headers=other_headers)
    assert rename.status_code == 403
    assert client.get(f"/api/habits/{habit['id']}", headers=owner_headers).json()["name"] == "Read 10 pages"


def test_rename_and_delete(client, register):
    headers, _ = register("ada@example.com")
    habit = _create_habit(client, headers)

    renamed = client.put(f"/api/habits/{habit['id']}", json={"name": "Read 20 pages"}, headers=headers)
    assert renamed.json()["name"] == "Read 20 pages"

    assert client.delete(f"/api/habits/{habit['id']}", headers=headers).status_code == 200
    assert client.get("/api/habits", headers=headers).json() == []
    assert client.get(f"/api/habits/{habit['id']}", headers=headers).status_code == 404


def test_blank_habit_name_rejected(client, register):
    headers, _ = register("ada@example.com")

    assert client.post("/api/habits", json={"name": ""}, headers=headers).status_code == 422


def test_leaderboard_ranks_users_by_best_current_streak(client, register, clock):
    ada, _ = register("ada@example.com", username="ada")
    grace, _ = register("grace@example.com", username="grace")
    ada_habits = [_create_habit(client, ada, name) for name in ("run", "read")]
    grace_habit = _create_habit(client, grace, "swim")

    for offset in range(3):
        clock.now = NOW + timedelta(days=offset)
        client.post(f"/api/habits/{ada_habits[1]['id']}/check-in", headers=ada)
    client.post(f"/api/habits/{grace_habit['id']}/check-in", headers=grace)

    board = client.get("/api/leaderboard").json()

    assert [(e["display_name"], e["best_current_streak"], e["rank"]) for e in board["entries"]] == [
        ("ada", 3, 1),
        ("grace", 1, 2),
    ]
    assert board["entries"][0]["habit"] == "read"
    assert board["stats"] == {"total_habits": 3, "tracked_users": 2, "active_today": 2, "top_streak": 3}
    assert board["limit"] == 20


def test_leaderboard_limit_is_clamped(client):
    assert client.get("/api/leaderboard?limit=0").json()["limit"] == 1
    assert client.get("/api/leaderboard?limit=5000").json()["limit"] == 100


def test_empty_leaderboard(client):
    board = client.get("/api/leaderboard").json()

    assert board["entries"] == []
    assert board["stats"] == {"total_habits": 0, "tracked_users": 0, "active_today": 0, "top_streak": 0}


def test_leaderboard_store_outage_is_503(client, db):
    class UnreachableHabits:
        def find(self, query, projection=None):
            raise ServerSelectionTimeoutError("no servers")

    db.habits = UnreachableHabits()

    response = client.get("/api/leaderboard")

    assert response.status_code == 503
    assert response.json()["code"] == "store_unavailable"


def test_check_in_contention_is_409(client, register, db):
    headers, _ = register("ada@example.com")
    habit = _create_habit(client, headers)
    habits = db.habits

    class AlwaysLosingHabits:
        async def find_one(self, query, projection=None):
            return await habits.find_one(query, projection)

        async def update_one(self, query, update):
            return _InMemoryResult(matched_count=0)

    db.habits = AlwaysLosingHabits()

    response = client.post(f"/api/habits/{habit['id']}/check-in", headers=headers)

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"


def test_check_in_store_outage_is_503(client, register, db):
    headers, _ = register("ada@example.com")

    class UnreachableHabits:
        async def find_one(self, query, projection=None):
            raise ServerSelectionTimeoutError("no servers")

    db.habits = UnreachableHabits()

    response = client.post("/api/habits/some-habit/check-in", headers=headers)

    assert response.status_code == 503
    assert response.json()["code"] == "store_unavailable"


def test_leaderboard_reports_zone_in_use(client, monkeypatch):
    monkeypatch.setattr(dates, "STREAK_TZ", "Not/A_Zone")
    monkeypatch.setattr(dates, "STREAK_ZONE", ZoneInfo("UTC"))

    assert client.get("/api/leaderboard").json()["timezone"] == "UTC"


def test_concurrent_first_sessions_create_one_profile(client, register, db):
    headers, user = register("ada@example.com", username="ada")
    profiles = db.profiles
    profiles._docs.clear()

    class InterleavingProfiles:
        # Yields after each read so every session sees the profile missing.
        async def find_one(self, query, projection=None):
            found = await profiles.find_one(query, projection)
            await asyncio.sleep(0)
            return found

        async def update_one(self, query, update, upsert=False):
            return await profiles.update_one(query, update, upsert=upsert)

    db.profiles = InterleavingProfiles()

    async def first_sessions():
        return await asyncio.gather(*[server.ensure_profile(user, "ada") for _ in range(3)])

    results = asyncio.run(first_sessions())

    assert len(profiles._docs) == 1
    assert [r["display_name"] for r in results] == ["ada"] * 3
    assert client.get("/api/profile", headers=headers).json()["display_name"] == "ada"
