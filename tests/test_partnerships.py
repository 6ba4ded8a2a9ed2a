import threading

import pytest

from errors import NotFoundError, StoreError, ValidationError
from models import StreakPartnership
from partnerships import PartnershipService


@pytest.fixture
def pair(make_user, make_friends, make_habit):
    """Dos amigos, cada uno con un hábito"""
    ana = make_user("Ana")
    bea = make_user("Bea")
    make_friends(ana, bea)
    return ana, bea, make_habit(ana), make_habit(bea)


@pytest.fixture
def active(db, clock, pair):
    def _active(target_days=7):
        ana, bea, _, _ = pair
        service = PartnershipService(db, clock)
        partnership = service.create_invite(ana.id, bea.id, target_days)
        assert service.accept_invite(partnership.id, bea.id)
        return partnership.id
    return _active


def _both_complete(pair, complete):
    ana, bea, ana_habit, bea_habit = pair
    complete(ana, ana_habit)
    complete(bea, bea_habit)


@pytest.mark.parametrize("target_days", [0, 366, -1])
def test_target_days_must_be_in_range(db, clock, pair, target_days):
    ana, bea, _, _ = pair
    with pytest.raises(ValidationError):
        PartnershipService(db, clock).create_invite(ana.id, bea.id, target_days)


def test_invite_rules(db, clock, pair, make_user):
    ana, bea, _, _ = pair
    stranger = make_user("Carla")
    service = PartnershipService(db, clock)

    with pytest.raises(ValidationError):
        service.create_invite(ana.id, ana.id, 7)
    with pytest.raises(ValidationError):
        service.create_invite(ana.id, stranger.id, 7)
    with pytest.raises(NotFoundError):
        service.create_invite(ana.id, "no-existe", 7)

    service.create_invite(ana.id, bea.id, 7)
    with pytest.raises(ValidationError):
        service.create_invite(bea.id, ana.id, 14)


def test_only_the_invitee_accepts(db, clock, pair):
    ana, bea, _, _ = pair
    service = PartnershipService(db, clock)
    partnership = service.create_invite(ana.id, bea.id, 7)

    assert service.accept_invite(partnership.id, ana.id) is False
    assert service.accept_invite(partnership.id, bea.id) is True
    assert service.accept_invite(partnership.id, bea.id) is False

    accepted = service.get(partnership.id)
    assert accepted.status == "active"
    assert accepted.start_date == clock.today()


def test_cancelled_is_terminal(db, clock, pair, make_user):
    ana, bea, _, _ = pair
    outsider = make_user("Carla")
    service = PartnershipService(db, clock)
    partnership = service.create_invite(ana.id, bea.id, 7)

    assert service.cancel_partnership(partnership.id, outsider.id) is False
    assert service.cancel_partnership(partnership.id, ana.id) is True
    assert service.accept_invite(partnership.id, bea.id) is False
    assert service.cancel_partnership(partnership.id, bea.id) is False
    assert service.get(partnership.id).status == "cancelled"

    # Cancelada ya no bloquea una nueva invitación
    service.create_invite(bea.id, ana.id, 3)


def test_reminder_settings_do_not_change_status(db, clock, pair, active):
    partnership_id = active()
    ana = pair[0]
    service = PartnershipService(db, clock)

    assert service.update_reminder_settings(partnership_id, ana.id, False) is True

    partnership = service.get(partnership_id)
    assert partnership.reminder_enabled is False
    assert partnership.status == "active"


def test_waits_for_both_partners(db, clock, pair, active, complete):
    partnership_id = active()
    ana, _, ana_habit, _ = pair
    complete(ana, ana_habit)

    progress = PartnershipService(db, clock).check_partnership_progress(partnership_id)

    assert progress["status"] == "waiting"
    assert progress["user1_completed"] is True
    assert progress["user2_completed"] is False
    assert progress["current_streak"] == 0


def test_day_counts_once(db, clock, pair, active, complete):
    partnership_id = active()
    _both_complete(pair, complete)
    service = PartnershipService(db, clock)

    first = service.check_partnership_progress(partnership_id)
    second = service.check_partnership_progress(partnership_id)

    assert first["status"] == "counted"
    assert first["both_completed"] is True
    assert first["current_streak"] == 1
    assert second["status"] == "already_counted"
    assert second["current_streak"] == 1
    assert service.get(partnership_id).last_activity_date == clock.today()


def test_stale_read_loses_the_race(session_factory, clock, pair, active, complete):
    partnership_id = active()
    _both_complete(pair, complete)
    session_a, session_b = session_factory(), session_factory()
    try:
        service_a = PartnershipService(session_a, clock)
        service_b = PartnershipService(session_b, clock)
        original_get = service_a.get
        rival = []

        def get_then_rival_counts(pid):
            partnership = original_get(pid)
            if not rival:
                rival.append(service_b.check_partnership_progress(pid))
            return partnership

        service_a.get = get_then_rival_counts
        result_a = service_a.check_partnership_progress(partnership_id)

        assert rival[0]["status"] == "counted"
        assert result_a["status"] == "already_counted"
        assert result_a["current_streak"] == 1
    finally:
        session_a.close()
        session_b.close()


def test_concurrent_checks_count_the_day_once(session_factory, clock, pair, active, complete):
    partnership_id = active()
    _both_complete(pair, complete)
    barrier = threading.Barrier(2)
    results, errors = [], []

    def worker():
        session = session_factory()
        try:
            barrier.wait()
            results.append(PartnershipService(session, clock).check_partnership_progress(partnership_id))
        except StoreError as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    counted = [r for r in results if r["status"] == "counted"]
    assert len(counted) == 1
    assert len(results) + len(errors) == 2

    check = session_factory()
    try:
        assert check.get(StreakPartnership, partnership_id).current_streak == 1
    finally:
        check.close()


def test_reaching_the_target_completes_the_partnership(db, clock, pair, active, complete):
    partnership_id = active(target_days=2)
    service = PartnershipService(db, clock)

    _both_complete(pair, complete)
    assert service.check_partnership_progress(partnership_id)["status"] == "counted"

    clock.advance()
    _both_complete(pair, complete)
    final = service.check_partnership_progress(partnership_id)

    assert final["status"] == "target_reached"
    assert final["target_reached"] is True
    partnership = service.get(partnership_id)
    assert partnership.status == "completed"
    assert partnership.end_date == clock.today()

    clock.advance()
    _both_complete(pair, complete)
    assert service.check_partnership_progress(partnership_id)["status"] == "inactive"
    assert service.get(partnership_id).current_streak == 2


def test_missed_day_restarts_the_shared_streak(db, clock, pair, active, complete):
    partnership_id = active()
    service = PartnershipService(db, clock)
    _both_complete(pair, complete)
    service.check_partnership_progress(partnership_id)

    clock.advance(2)
    _both_complete(pair, complete)
    progress = service.check_partnership_progress(partnership_id)

    assert progress["status"] == "counted"
    assert progress["current_streak"] == 1


def test_pending_partnership_is_inactive(db, clock, pair, complete):
    ana, bea, _, _ = pair
    service = PartnershipService(db, clock)
    partnership = service.create_invite(ana.id, bea.id, 7)
    _both_complete(pair, complete)

    assert service.check_partnership_progress(partnership.id)["status"] == "inactive"


def test_user_partnerships_are_seen_from_each_side(db, clock, pair, active):
    active()
    ana, bea, _, _ = pair
    service = PartnershipService(db, clock)

    [from_ana] = service.get_user_partnerships(ana.id)
    [from_bea] = service.get_user_partnerships(bea.id)

    assert from_ana["partner_id"] == bea.id and from_ana["is_user1"] is True
    assert from_bea["partner_id"] == ana.id and from_bea["is_user1"] is False
    assert [p.id for p in service.get_active_for_user(bea.id)] == [from_ana["id"]]


def test_crossed_invites_leave_one_open_partnership(session_factory, db, clock, pair):
    ana, bea, _, _ = pair
    session_a, session_b = session_factory(), session_factory()
    try:
        service_a = PartnershipService(session_a, clock)
        service_b = PartnershipService(session_b, clock)
        original_lookup = service_a._open_between

        def lookup_then_bea_invites_too(user_a, user_b):
            found = original_lookup(user_a, user_b)
            service_b.create_invite(bea.id, ana.id, 7)
            return found

        service_a._open_between = lookup_then_bea_invites_too
        with pytest.raises(ValidationError):
            service_a.create_invite(ana.id, bea.id, 14)
    finally:
        session_a.close()
        session_b.close()

    [partnership] = db.query(StreakPartnership).all()
    assert partnership.user1_id == bea.id
    assert partnership.target_days == 7


def test_closed_partnership_does_not_block_a_new_invite(db, clock, pair):
    ana, bea, _, _ = pair
    service = PartnershipService(db, clock)
    first = service.create_invite(ana.id, bea.id, 7)
    assert service.cancel_partnership(first.id, bea.id)

    second = service.create_invite(bea.id, ana.id, 7)

    assert second.status == "pending"
    assert db.query(StreakPartnership).count() == 2
