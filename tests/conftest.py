"""
Fixtures comunes: BD SQLite en un archivo temporal por test, reloj fijo
y atajos para crear usuarios, amistades y hábitos.
"""

from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

from clock import FixedClock
from database import init_db, make_engine
from ledger import CompletionService, HabitService
from models import new_uuid
from social import FriendService, ProfileService

START_DAY = date(2024, 3, 10)


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'habitos_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(START_DAY)


@pytest.fixture
def make_user(db, clock):
    def _make(name="Ana", username=None):
        user_id = new_uuid()
        profiles = ProfileService(db, clock)
        profile = profiles.register(user_id, f"{name.lower()}.{user_id[:8]}@example.com", name)
        if username:
            profiles.update(user_id, {"username": username})
        return profile
    return _make


@pytest.fixture
def make_friends(db, clock):
    def _make(user_a, user_b):
        friends = FriendService(db, clock)
        friendship = friends.send_request(user_a.id, user_b.id)
        assert friends.accept_request(friendship.id, user_b.id)
        return friendship
    return _make


@pytest.fixture
def make_habit(db, clock):
    def _make(user, name="Leer", **kwargs):
        return HabitService(db, clock).create(user.id, name, **kwargs)
    return _make


@pytest.fixture
def complete(db, clock):
    """Marca un hábito para hoy (o para `day`)"""
    def _complete(user, habit, day=None, completed=True):
        assert CompletionService(db, clock).toggle(user.id, habit.id, day or clock.today(), completed)
    return _complete
