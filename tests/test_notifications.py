import json

import httpx
import pytest

from errors import ValidationError
from models import Profile
from notifications import REMINDER_TYPES, send_push_notifications, users_pending_today
from scheduler import sweep_streaks
from social import ProfileService


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _with_token(db, clock, user, token):
    ProfileService(db, clock).save_push_token(user.id, token)


def test_unknown_reminder_type(db):
    with pytest.raises(ValidationError):
        send_push_notifications(db, "weekly_digest")


def test_no_recipients_sends_nothing(db, clock, make_user):
    make_user()

    def handler(request):
        raise AssertionError("no debería llamar a Expo")

    result = send_push_notifications(db, "daily", client=_client(handler))

    assert result == {"success": True, "sent": 0, "total": 0, "reminder_type": "daily"}


def test_sends_one_message_per_token(db, clock, make_user):
    ana = make_user("Ana")
    bea = make_user("Bea")
    make_user("Carla")
    _with_token(db, clock, ana, "ExponentPushToken[ana]")
    _with_token(db, clock, bea, "ExponentPushToken[bea]")
    captured = []

    def handler(request):
        captured.extend(json.loads(request.content))
        return httpx.Response(200, json={"data": [{"status": "ok"}, {"status": "ok"}]})

    result = send_push_notifications(db, "streak_21h", client=_client(handler))

    assert result["success"] is True
    assert (result["sent"], result["total"]) == (2, 2)
    assert {m["to"] for m in captured} == {"ExponentPushToken[ana]", "ExponentPushToken[bea]"}
    assert all(m["title"] == REMINDER_TYPES["streak_21h"]["title"] for m in captured)
    assert all(m["channelId"] == "streak" for m in captured)


def test_filters_by_user_ids(db, clock, make_user):
    ana = make_user("Ana")
    bea = make_user("Bea")
    _with_token(db, clock, ana, "ExponentPushToken[ana]")
    _with_token(db, clock, bea, "ExponentPushToken[bea]")
    captured = []

    def handler(request):
        captured.extend(json.loads(request.content))
        return httpx.Response(200, json={"data": [{"status": "ok"}]})

    result = send_push_notifications(db, "daily", [bea.id], client=_client(handler))

    assert result["total"] == 1
    assert [m["data"]["userId"] for m in captured] == [bea.id]
    assert send_push_notifications(db, "daily", [], client=_client(handler))["total"] == 0


def test_expo_failure_is_reported(db, clock, make_user):
    ana = make_user("Ana")
    _with_token(db, clock, ana, "ExponentPushToken[ana]")

    def handler(request):
        return httpx.Response(500, json={"errors": ["boom"]})

    result = send_push_notifications(db, "daily", client=_client(handler))

    assert result["success"] is False
    assert result["sent"] == 0
    assert "error" in result


def test_non_json_answer_from_expo_is_reported(db, clock, make_user):
    ana = make_user("Ana")
    _with_token(db, clock, ana, "ExponentPushToken[ana]")

    def handler(request):
        return httpx.Response(200, text="<html>502 Bad Gateway</html>")

    result = send_push_notifications(db, "daily", client=_client(handler))

    assert result["success"] is False
    assert result["total"] == 1
    assert "error" in result


def test_pending_users_are_those_with_an_unfinished_day(db, clock, make_user, make_habit, complete):
    done = make_user("Ana")
    pending = make_user("Bea")
    without_habits = make_user("Carla")
    for user in (done, pending, without_habits):
        _with_token(db, clock, user, f"ExponentPushToken[{user.name}]")
    complete(done, make_habit(done))
    make_habit(pending)

    assert users_pending_today(db, clock) == [pending.id]


def test_midnight_sweep_breaks_stale_streaks(db, clock, make_user, make_habit):
    user = make_user()
    make_habit(user)
    profile = db.get(Profile, user.id)
    profile.current_streak = 5
    profile.longest_streak = 5
    profile.last_activity_date = clock.today()
    db.commit()
    make_user("Sin racha")

    clock.advance(2)
    result = sweep_streaks(db, clock)

    assert result == {"checked": 1, "broken": 1}
    db.refresh(profile)
    assert profile.current_streak == 0
    assert profile.longest_streak == 5
