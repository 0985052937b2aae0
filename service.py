"""The logical Session API, independent of transport.

Callers pass the ``Identity`` supplied by the identity provider; this layer
trusts it and only checks roles and ownership where the protocol asks for it.
"""
import logging
from datetime import datetime
from typing import List, Optional

from checkin import CheckInEngine
from clock import Clock, now_utc
from config import (
    EVENT_QUEUE_SIZE,
    LAST_LOCATION_MAX_AGE_SECONDS,
    SELFIE_DISTANCE_THRESHOLD_METERS,
)
from errors import Unauthorized
from events import EventBus, Subscription
from lifecycle import SessionLifecycleManager
from override import OverrideArbiter
from schemas import GeoFenceResult, GeoPoint, Identity, Role, RosterEntry, RosterStatus, Session, TeacherView
from session_store import SessionStore

logger = logging.getLogger(__name__)


class AttendanceService:
    def __init__(self, clock: Clock = now_utc,
                 radius_meters: float = SELFIE_DISTANCE_THRESHOLD_METERS,
                 max_location_age_seconds: Optional[int] = LAST_LOCATION_MAX_AGE_SECONDS,
                 event_queue_size: int = EVENT_QUEUE_SIZE):
        self.clock = clock
        self.store = SessionStore()
        self.bus = EventBus(queue_size=event_queue_size)
        self.lifecycle = SessionLifecycleManager(self.store, clock=clock, radius_meters=radius_meters)
        self.engine = CheckInEngine(self.store, self.bus, self.lifecycle, clock=clock,
                                    max_location_age_seconds=max_location_age_seconds)
        self.arbiter = OverrideArbiter(self.store, self.bus, self.lifecycle, clock=clock)

    @staticmethod
    def _require_teacher(caller: Identity) -> None:
        if caller.role != Role.teacher:
            raise Unauthorized("Teacher role required")

    @staticmethod
    def _require_self(caller: Identity, user_id: str) -> None:
        if caller.userId != user_id:
            raise Unauthorized("userId mismatch")

    def create_session(self, caller: Identity, teacher_id: str, anchor: Optional[GeoPoint],
                       expiry_minutes, teacher_name: Optional[str] = None) -> Session:
        self._require_teacher(caller)
        if caller.userId != teacher_id:
            raise Unauthorized("Only the teacher can start session")
        return self.lifecycle.open(teacher_id, teacher_name or caller.displayName, anchor, expiry_minutes)

    def snapshot(self, session_id: str) -> TeacherView:
        return TeacherView(session=self.store.get_session(session_id), roster=self.store.roster(session_id))

    def get_teacher_view(self, caller: Identity, session_id: str) -> TeacherView:
        self._require_teacher(caller)
        return self.snapshot(session_id)

    def submit_location(self, caller: Identity, session_id: str, user_id: str, point: GeoPoint,
                        client_timestamp: Optional[datetime] = None) -> GeoFenceResult:
        self._require_self(caller, user_id)
        return self.engine.submit_location(session_id, user_id, point, client_timestamp)

    def begin_photo(self, caller: Identity, session_id: str, user_id: str) -> RosterStatus:
        self._require_self(caller, user_id)
        return self.engine.begin_photo(session_id, user_id)

    def submit_photo(self, caller: Identity, session_id: str, user_id: str, photo_ref: str) -> RosterStatus:
        self._require_self(caller, user_id)
        return self.engine.submit_photo(session_id, user_id, photo_ref)

    def override(self, caller: Identity, session_id: str, user_id: str, decision) -> RosterEntry:
        self._require_teacher(caller)
        return self.arbiter.override(session_id, caller.userId, user_id, decision)

    def close_session(self, caller: Identity, session_id: str) -> Session:
        self._require_teacher(caller)
        return self.lifecycle.close(session_id, caller.userId)

    def get_entry(self, session_id: str, user_id: str) -> Optional[RosterEntry]:
        self.store.get_session(session_id)
        return self.store.get_entry(session_id, user_id)

    def subscribe(self, session_id: str) -> Subscription:
        # existence check only; closed sessions can still be watched
        self.store.get_session(session_id)
        return self.bus.subscribe(session_id)

    def sweep_expired(self) -> List[str]:
        return self.lifecycle.sweep()
