from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

import main
from auth import create_access_token
from clock import FixedClock
from database import get_db
from gamification import StatsService
from ledger import CompletionService
from models import Profile, new_uuid


@pytest.fixture
def client(session_factory, clock):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_clock] = lambda: clock
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _signup(client, name):
    user_id = new_uuid()
    headers = {"Authorization": f"Bearer {create_access_token(user_id, f'{name.lower()}@habitos.dev')}"}
    response = client.post(
        "/profiles",
        json={"email": f"{name.lower()}@habitos.dev", "name": name},
        headers=headers,
    )
    assert response.status_code == 200
    return user_id, headers


def test_health(client):
    assert client.get("/").json()["status"] == "ok"


def test_requests_need_a_valid_token(client):
    assert client.get("/profiles/me").status_code in (401, 403)
    response = client.get("/profiles/me", headers={"Authorization": "Bearer basura"})
    assert response.status_code == 401


def test_token_without_profile_is_not_found(client):
    token = create_access_token(new_uuid(), "nadie@habitos.dev")
    response = client.get("/profiles/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 404


def test_complete_habit_runs_the_whole_flow(client, clock):
    user_id, headers = _signup(client, "Ana")
    habit = client.post("/habits", json={"name": "Leer"}, headers=headers).json()
    assert habit["points"] == 10

    response = client.post(f"/habits/{habit['id']}/complete", headers=headers)

    assert response.status_code == 200
    outcome = response.json()
    assert outcome["errors"] == []
    assert outcome["habit_streak"] == 1
    assert outcome["xp"]["new_xp"] == 10
    assert outcome["streak"]["current_streak"] == 1
    assert [a["title"] for a in outcome["new_achievements"]] == ["El primer paso"]

    again = client.post(f"/habits/{habit['id']}/complete", headers=headers).json()
    assert again["xp"] is None
    assert again["new_achievements"] == []
    assert client.get("/stats", headers=headers).json()["total_points"] == 10

    today = client.get("/completions/today", headers=headers).json()
    assert today == {"date": clock.today().isoformat(), "all_completed": True}


def test_uncomplete_removes_xp_but_keeps_level(client):
    _, headers = _signup(client, "Ana")
    habit = client.post("/habits", json={"name": "Maratón", "points": 120}, headers=headers).json()
    client.post(f"/habits/{habit['id']}/complete", headers=headers)

    outcome = client.post(f"/habits/{habit['id']}/uncomplete", headers=headers).json()

    assert outcome["streak"]["current_streak"] == 0
    stats = client.get("/stats", headers=headers).json()
    assert stats["level"] == 2
    assert stats["xp"] == 0
    assert stats["total_points"] == 0


def test_domain_errors_map_to_http_status(client):
    user_id, headers = _signup(client, "Ana")
    friend_id, _ = _signup(client, "Bea")

    assert client.post("/habits/no-existe/complete", headers=headers).status_code == 404

    response = client.post("/partnerships", json={"friend_id": friend_id, "target_days": 500}, headers=headers)
    assert response.status_code == 400
    assert "365" in response.json()["detail"]

    response = client.post("/friends/requests", json={"addressee_id": user_id}, headers=headers)
    assert response.status_code == 400


def test_partnership_between_friends(client):
    ana_id, ana = _signup(client, "Ana")
    bea_id, bea = _signup(client, "Bea")
    request = client.post("/friends/requests", json={"addressee_id": bea_id}, headers=ana).json()
    assert client.post(f"/friends/requests/{request['id']}/accept", headers=bea).json() == {"success": True}

    partnership = client.post("/partnerships", json={"friend_id": bea_id, "target_days": 3}, headers=ana).json()
    assert client.post(f"/partnerships/{partnership['id']}/accept", headers=bea).json() == {"success": True}

    ana_habit = client.post("/habits", json={"name": "Leer"}, headers=ana).json()
    bea_habit = client.post("/habits", json={"name": "Correr"}, headers=bea).json()

    first = client.post(f"/habits/{ana_habit['id']}/complete", headers=ana).json()
    assert first["partnerships"][partnership["id"]]["status"] == "waiting"

    second = client.post(f"/habits/{bea_habit['id']}/complete", headers=bea).json()
    assert second["partnerships"][partnership["id"]]["status"] == "counted"

    [view] = client.get("/partnerships", headers=ana).json()
    assert view["partner_id"] == bea_id
    assert view["current_streak"] == 1


def test_push_endpoint_requires_admin_key(client, monkeypatch):
    monkeypatch.setattr(main, "ADMIN_API_KEY", None)
    response = client.post("/notifications/send", json={"reminder_type": "daily"})
    assert response.status_code == 403

    monkeypatch.setattr(main, "ADMIN_API_KEY", "secreto")
    response = client.post(
        "/notifications/send",
        json={"reminder_type": "daily", "user_ids": []},
        headers={"X-Admin-Key": "secreto"},
    )
    assert response.status_code == 200
    assert response.json()["total"] == 0


def test_double_tap_awards_xp_once(session_factory, db, clock, make_user, make_habit, monkeypatch):
    user = make_user()
    habit = make_habit(user)
    other = session_factory()
    original_mark = CompletionService.mark
    rival = []

    def second_tap_lands_first(self, *args):
        if not rival:
            rival.append(main.apply_completion(other, clock, other.get(Profile, user.id),
                                               habit.id, clock.today(), True))
        return original_mark(self, *args)

    monkeypatch.setattr(CompletionService, "mark", second_tap_lands_first)
    try:
        outcome = main.apply_completion(db, clock, user, habit.id, clock.today(), True)
    finally:
        other.close()

    assert rival[0]["xp"]["new_xp"] == 10
    assert outcome["xp"] is None
    stats = StatsService(db, clock).get(user.id)
    assert (stats.total_points, stats.total_habits_completed) == (10, 1)


class ServerClock(FixedClock):
    """El servidor ya va por el día siguiente; el usuario no"""

    def __init__(self, today, local):
        super().__init__(today)
        self.local = local

    def for_timezone(self, timezone):
        return self.local


def test_partnership_progress_uses_the_callers_day(client):
    local = FixedClock(date(2024, 3, 10), now=datetime(2024, 3, 11, 1, 0))
    main.app.dependency_overrides[main.get_clock] = lambda: ServerClock(date(2024, 3, 11), local)

    ana_id, ana = _signup(client, "Ana")
    bea_id, bea = _signup(client, "Bea")
    request = client.post("/friends/requests", json={"addressee_id": bea_id}, headers=ana).json()
    client.post(f"/friends/requests/{request['id']}/accept", headers=bea)
    partnership = client.post("/partnerships", json={"friend_id": bea_id, "target_days": 3}, headers=ana).json()
    client.post(f"/partnerships/{partnership['id']}/accept", headers=bea)

    for headers in (ana, bea):
        habit = client.post("/habits", json={"name": "Leer"}, headers=headers).json()
        response = client.post(
            "/completions/toggle",
            json={"habit_id": habit["id"], "date": "2024-03-10", "completed": True},
            headers=headers,
        )
        assert response.status_code == 200

    progress = client.post(f"/partnerships/{partnership['id']}/progress", headers=bea).json()

    assert progress["status"] == "counted"
    assert progress["current_streak"] == 1
