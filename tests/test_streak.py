from datetime import date, datetime, timedelta

import pytest

from clock import FixedClock
from errors import NotFoundError
from gamification import StreakService
from ledger import CompletionService, HabitService
from models import Profile, new_uuid
from social import ProfileService


def test_completing_every_habit_starts_the_streak(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    complete(user, habit)

    result = StreakService(db, clock).check(user.id)

    assert result == {
        "streak_broken": False,
        "old_streak": 0,
        "current_streak": 1,
        "longest_streak": 1,
    }
    db.refresh(user)
    assert user.last_activity_date == clock.today()


def test_check_is_idempotent_within_the_day(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    complete(user, habit)
    service = StreakService(db, clock)

    first = service.check(user.id)
    second = service.check(user.id)

    assert first["current_streak"] == second["current_streak"] == 1
    assert service.get_profile(user.id)["current_streak"] == 1


def test_consecutive_days_extend_the_streak(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    service = StreakService(db, clock)

    for _ in range(3):
        complete(user, habit)
        service.check(user.id)
        clock.advance()

    profile = service.get_profile(user.id)
    assert profile["current_streak"] == 3
    assert profile["longest_streak"] == 3


def test_partial_day_does_not_count(db, clock, make_user, make_habit, complete):
    user = make_user()
    reading = make_habit(user, "Leer")
    make_habit(user, "Correr")
    complete(user, reading)

    result = StreakService(db, clock).check(user.id)

    assert result["current_streak"] == 0


def test_missed_day_breaks_the_streak(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    service = StreakService(db, clock)
    for _ in range(2):
        complete(user, habit)
        service.check(user.id)
        clock.advance()

    clock.advance()  # un día entero sin completar
    complete(user, habit)
    result = service.check(user.id)

    assert result == {
        "streak_broken": True,
        "old_streak": 2,
        "current_streak": 1,
        "longest_streak": 2,
    }


def test_longest_streak_never_decreases(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    service = StreakService(db, clock)
    for _ in range(4):
        complete(user, habit)
        service.check(user.id)
        clock.advance()

    clock.advance(3)
    result = service.check(user.id)

    assert result["streak_broken"] is True
    assert result["current_streak"] == 0
    assert result["longest_streak"] == 4


def test_days_completed_without_a_check_are_recovered(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    service = StreakService(db, clock)

    complete(user, habit)
    service.check(user.id)
    clock.advance()
    complete(user, habit)  # nadie llamó a check este día
    clock.advance()
    complete(user, habit)

    result = service.check(user.id)

    assert result["streak_broken"] is False
    assert result["current_streak"] == 3


def test_user_without_habits_has_no_streak(db, clock, make_user):
    user = make_user()

    result = StreakService(db, clock).check(user.id)

    assert result["current_streak"] == 0
    assert result["streak_broken"] is False


def test_uncompleting_today_gives_the_day_back(db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    service = StreakService(db, clock)
    complete(user, habit)
    service.check(user.id)

    complete(user, habit, completed=False)
    result = service.check(user.id)

    assert result["current_streak"] == 0
    assert result["longest_streak"] == 1
    assert service.get_profile(user.id)["last_activity_date"] == clock.today() - timedelta(days=1)


def test_deleted_habits_do_not_block_the_day(db, clock, make_user, make_habit, complete):
    user = make_user()
    reading = make_habit(user, "Leer")
    running = make_habit(user, "Correr")
    complete(user, reading)
    HabitService(db, clock).delete(running.id, user.id)

    assert StreakService(db, clock).check(user.id)["current_streak"] == 1


def test_check_for_unknown_user(db, clock):
    with pytest.raises(NotFoundError):
        StreakService(db, clock).check("no-existe")


def test_get_profile_for_unknown_user_is_none(db, clock):
    assert StreakService(db, clock).get_profile("no-existe") is None


def test_streak_write_is_visible_from_another_session(session_factory, db, clock, make_user, make_habit, complete):
    user = make_user()
    habit = make_habit(user)
    complete(user, habit)
    StreakService(db, clock).check(user.id)

    other = session_factory()
    try:
        assert other.get(Profile, user.id).current_streak == 1
    finally:
        other.close()


def test_habit_created_in_the_evening_counts_for_that_day(db):
    # 22:00 en São Paulo: ya es el día siguiente en UTC
    evening = FixedClock(date(2024, 3, 10), now=datetime(2024, 3, 11, 1, 0))
    user = ProfileService(db, evening).register(new_uuid(), "noa@example.com", "Noa")
    habit = HabitService(db, evening).create(user.id, "Leer")
    CompletionService(db, evening).toggle(user.id, habit.id, evening.today(), True)

    result = StreakService(db, evening).check(user.id)

    assert habit.created_date == date(2024, 3, 10)
    assert result["current_streak"] == 1
