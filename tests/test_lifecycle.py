from datetime import timedelta

import pytest

from errors import InvalidInput, SessionClosed, SessionNotFound, Unauthorized
from schemas import GeoPoint, Identity, RosterStatus, SessionStatus

from conftest import NEAR, ORIGIN


def test_open_sets_expiry_and_id(service, teacher, clock):
    sess = service.create_session(teacher, "t1", ORIGIN, 15)
    assert sess.sessionId.startswith("sess_")
    assert sess.status == SessionStatus.open
    assert sess.startsAt == clock.now
    assert sess.expiresAt == clock.now + timedelta(minutes=15)
    assert sess.expiresAt > sess.startsAt
    assert sess.radiusMeters == 5.0
    assert sess.teacherName == "Ms. Rivera"


def test_session_ids_are_unique(service, teacher):
    ids = {service.create_session(teacher, "t1", ORIGIN, 5).sessionId for _ in range(50)}
    assert len(ids) == 50


@pytest.mark.parametrize("minutes", [0, -5, True])
def test_non_positive_expiry_rejected(service, teacher, minutes):
    with pytest.raises(InvalidInput):
        service.create_session(teacher, "t1", ORIGIN, minutes)


def test_missing_anchor_rejected(service, teacher):
    with pytest.raises(InvalidInput):
        service.create_session(teacher, "t1", None, 15)


def test_invalid_anchor_rejected(service, teacher):
    with pytest.raises(InvalidInput):
        service.create_session(teacher, "t1", GeoPoint(latitude=100, longitude=0), 15)


def test_student_cannot_create_session(service, student):
    with pytest.raises(Unauthorized):
        service.create_session(student, "s1", ORIGIN, 15)


def test_teacher_cannot_create_for_someone_else(service, teacher):
    with pytest.raises(Unauthorized):
        service.create_session(teacher, "t2", ORIGIN, 15)


def test_scenario_d_expired_session_rejects_location(service, session, student, clock):
    clock.advance(minutes=16)
    with pytest.raises(SessionClosed):
        service.submit_location(student, session.sessionId, "s1", NEAR)
    assert service.store.get_session(session.sessionId).status == SessionStatus.expired
    assert service.store.roster(session.sessionId) == []


def test_expiry_boundary_is_exclusive(service, session, student, clock):
    clock.advance(minutes=15)
    with pytest.raises(SessionClosed):
        service.submit_location(student, session.sessionId, "s1", NEAR)


def test_close_blocks_all_mutations(service, session, teacher, student):
    service.submit_location(student, session.sessionId, "s1", NEAR)
    before = service.get_teacher_view(teacher, session.sessionId)

    closed = service.close_session(teacher, session.sessionId)
    assert closed.status == SessionStatus.closed
    assert closed.closedAt is not None

    with pytest.raises(SessionClosed):
        service.submit_location(student, session.sessionId, "s1", NEAR)
    with pytest.raises(SessionClosed):
        service.submit_photo(student, session.sessionId, "s1", "ref")
    with pytest.raises(SessionClosed):
        service.override(teacher, session.sessionId, "s1", RosterStatus.overridden_present)
    with pytest.raises(SessionClosed):
        service.close_session(teacher, session.sessionId)

    after = service.get_teacher_view(teacher, session.sessionId)
    assert after.roster == before.roster


def test_only_owner_can_close(service, session):
    other = Identity(userId="t2", role="teacher")
    with pytest.raises(Unauthorized):
        service.close_session(other, session.sessionId)
    assert service.store.get_session(session.sessionId).status == SessionStatus.open


def test_sweep_flips_only_stale_sessions(service, teacher, clock):
    short = service.create_session(teacher, "t1", ORIGIN, 5)
    long = service.create_session(teacher, "t1", ORIGIN, 60)
    clock.advance(minutes=10)
    assert service.sweep_expired() == [short.sessionId]
    assert service.store.get_session(short.sessionId).status == SessionStatus.expired
    assert service.store.get_session(long.sessionId).status == SessionStatus.open
    assert service.sweep_expired() == []


def test_unknown_session(service, student):
    with pytest.raises(SessionNotFound):
        service.submit_location(student, "sess_missing", "s1", NEAR)


def test_expired_session_rejects_every_mutation(service, session, student, teacher, clock):
    service.submit_location(student, session.sessionId, "s1", NEAR)
    service.submit_location(Identity(userId="s2", role="student"), session.sessionId, "s2", NEAR)
    service.begin_photo(student, session.sessionId, "s1")
    before = service.get_teacher_view(teacher, session.sessionId).roster
    sub = service.subscribe(session.sessionId)

    clock.advance(minutes=16)
    with pytest.raises(SessionClosed):
        service.submit_photo(student, session.sessionId, "s1", "photos/s1.jpg")
    with pytest.raises(SessionClosed):
        service.begin_photo(Identity(userId="s2", role="student"), session.sessionId, "s2")
    with pytest.raises(SessionClosed):
        service.override(teacher, session.sessionId, "s1", RosterStatus.overridden_present)
    with pytest.raises(SessionClosed):
        service.override(teacher, session.sessionId, "s9", RosterStatus.overridden_absent)

    assert service.get_teacher_view(teacher, session.sessionId).roster == before
    assert sub.drain() == []


def test_closed_session_rejects_begin_photo(service, session, student, teacher):
    service.submit_location(student, session.sessionId, "s1", NEAR)
    sub = service.subscribe(session.sessionId)
    service.close_session(teacher, session.sessionId)
    with pytest.raises(SessionClosed):
        service.begin_photo(student, session.sessionId, "s1")
    assert service.get_entry(session.sessionId, "s1").status == RosterStatus.location_checked
    assert sub.drain() == []
