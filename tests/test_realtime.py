import asyncio
import time

import anyio
import httpx
import pytest
from jose import jwt
from socketio import exceptions as sio_exceptions

import main
from schemas import GeoPoint, Identity, RosterStatus
from service import AttendanceService

ORIGIN = GeoPoint(latitude=0.0, longitude=0.0)
TEACHER = Identity(userId="t1", role="teacher", displayName="Ms. Rivera")


class FakeSio:
    """Records what the handlers ask of the Socket.IO server."""

    def __init__(self):
        self.emitted = []
        self.rooms = []
        self.sessions = {}
        self.tasks = []

    async def emit(self, event, data=None, to=None, **kwargs):
        self.emitted.append((event, data, to))

    async def enter_room(self, sid, room, **kwargs):
        self.rooms.append((sid, room))

    async def save_session(self, sid, session, **kwargs):
        self.sessions[sid] = session

    async def get_session(self, sid, **kwargs):
        return self.sessions.get(sid, {})

    def start_background_task(self, target, *args, **kwargs):
        self.tasks.append((target, args))

    def events(self, name):
        return [(data, to) for event, data, to in self.emitted if event == name]


@pytest.fixture
def svc(monkeypatch):
    fresh = AttendanceService()
    monkeypatch.setattr(main, "service", fresh)
    monkeypatch.setattr(main, "_relays", {})
    return fresh


@pytest.fixture
def fake_sio(monkeypatch):
    fake = FakeSio()
    for name in ("emit", "enter_room", "save_session", "get_session", "start_background_task"):
        monkeypatch.setattr(main.sio, name, getattr(fake, name))
    return fake


def token_for(user_id, role):
    return jwt.encode({"sub": user_id, "userId": user_id, "role": role}, main.JWT_SECRET, algorithm=main.JWT_ALG)


async def connect_as(sid, user_id, role):
    await main.connect(sid, {}, {"token": token_for(user_id, role)})


@pytest.mark.anyio
async def test_connect_rejects_bad_token(fake_sio):
    with pytest.raises(sio_exceptions.ConnectionRefusedError):
        await main.connect("sid1", {}, {"token": "not-a-jwt"})
    assert fake_sio.sessions == {}


@pytest.mark.anyio
async def test_connect_stores_identity(fake_sio):
    await connect_as("sid1", "t1", "teacher")
    user = fake_sio.sessions["sid1"]["user"]
    assert user.userId == "t1"
    assert user.role == "teacher"


@pytest.mark.anyio
async def test_anonymous_join_refused(svc, fake_sio):
    sess = svc.create_session(TEACHER, "t1", ORIGIN, 15)
    await main.connect("sid1", {}, None)
    await main.join_teacher("sid1", {"sessionId": sess.sessionId})
    ((data, to),) = fake_sio.events("error")
    assert to == "sid1"
    assert data["detail"] == "Authentication required"
    assert fake_sio.rooms == []
    assert fake_sio.tasks == []


@pytest.mark.anyio
async def test_student_join_refused(svc, fake_sio):
    sess = svc.create_session(TEACHER, "t1", ORIGIN, 15)
    await connect_as("sid1", "s1", "student")
    await main.join_teacher("sid1", {"sessionId": sess.sessionId})
    ((data, to),) = fake_sio.events("error")
    assert data["code"] == "unauthorized"
    assert fake_sio.rooms == []
    assert fake_sio.tasks == []


@pytest.mark.anyio
async def test_teacher_join_sends_snapshot_and_starts_one_relay(svc, fake_sio):
    sess = svc.create_session(TEACHER, "t1", ORIGIN, 15)
    svc.override(TEACHER, sess.sessionId, "s1", "overridden_present")
    room = f"session:{sess.sessionId}:teacher"

    await connect_as("sid1", "t1", "teacher")
    await connect_as("sid2", "t1", "teacher")
    await main.join_teacher("sid1", {"sessionId": sess.sessionId})
    await main.join_teacher("sid2", {"sessionId": sess.sessionId})

    assert fake_sio.rooms == [("sid1", room), ("sid2", room)]
    snapshots = fake_sio.events("roster_snapshot")
    assert [to for _, to in snapshots] == ["sid1", "sid2"]
    data = snapshots[0][0]
    assert data["session"]["sessionId"] == sess.sessionId
    assert [row["status"] for row in data["roster"]] == ["overridden_present"]

    ((target, (sub,)),) = fake_sio.tasks
    assert target is main._relay_events
    assert main._relays[sess.sessionId] is sub
    assert svc.bus.subscriber_count(sess.sessionId) == 1


@pytest.mark.anyio
async def test_join_closed_session_has_no_relay(svc, fake_sio):
    sess = svc.create_session(TEACHER, "t1", ORIGIN, 15)
    svc.close_session(TEACHER, sess.sessionId)
    await connect_as("sid1", "t1", "teacher")
    await main.join_teacher("sid1", {"sessionId": sess.sessionId})
    assert len(fake_sio.events("roster_snapshot")) == 1
    assert fake_sio.tasks == []


@pytest.mark.anyio
async def test_overflowed_relay_resyncs_room_and_restarts(monkeypatch, fake_sio):
    svc = AttendanceService(event_queue_size=2)
    monkeypatch.setattr(main, "service", svc)
    monkeypatch.setattr(main, "_relays", {})
    sess = svc.create_session(TEACHER, "t1", ORIGIN, 15)
    room = f"session:{sess.sessionId}:teacher"
    sub = svc.subscribe(sess.sessionId)
    main._relays[sess.sessionId] = sub

    for user_id in ("s1", "s2", "s3"):
        svc.override(TEACHER, sess.sessionId, user_id, "overridden_absent")
    assert sub.overflowed

    await main._relay_events(sub)

    assert [event for event, _, _ in fake_sio.emitted] == ["roster_overridden", "roster_overridden", "roster_snapshot"]
    ((snapshot, to),) = fake_sio.events("roster_snapshot")
    assert to == room
    assert [row["userId"] for row in snapshot["roster"]] == ["s1", "s2", "s3"]

    ((target, (replacement,)),) = fake_sio.tasks
    assert target is main._relay_events
    assert replacement is not sub and not replacement.closed
    assert main._relays[sess.sessionId] is replacement


@pytest.mark.anyio
async def test_watched_sessions_do_not_slow_check_ins(svc, fake_sio):
    sessions = [svc.create_session(TEACHER, "t1", ORIGIN, 15) for _ in range(45)]
    relays = [asyncio.create_task(main._relay_events(svc.subscribe(s.sessionId))) for s in sessions]
    try:
        await asyncio.sleep(0.05)
        assert anyio.to_thread.current_default_thread_limiter().borrowed_tokens == 0

        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            headers = {"Authorization": f"Bearer {token_for('s1', 'student')}"}
            latencies = []
            for sess in sessions[:5]:
                start = time.perf_counter()
                res = await client.post(f"/api/session/{sess.sessionId}/location", headers=headers,
                                        json={"userId": "s1", "lat": 0.0, "lon": 0.00003})
                latencies.append(time.perf_counter() - start)
                assert res.status_code == 200
        assert max(latencies) < 0.5

        await asyncio.sleep(0.1)
        forwarded = fake_sio.events("roster_updated")
        assert len(forwarded) == 5
        assert {data["status"] for data, _ in forwarded} == {RosterStatus.location_checked.value}
    finally:
        for task in relays:
            task.cancel()
        await asyncio.gather(*relays, return_exceptions=True)
