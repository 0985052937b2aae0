import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from clock import Clock, now_utc
from config import SELFIE_DISTANCE_THRESHOLD_METERS
from errors import InvalidInput, SessionClosed, Unauthorized
from geofence import validate_point
from schemas import GeoPoint, Session, SessionStatus
from session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionLifecycleManager:
    """Creates sessions and gates every entry point on session validity.

    Expiry is evaluated when a session is touched; ``sweep`` only exists to
    flip stale sessions for anyone reading the store.
    """

    def __init__(self, store: SessionStore, clock: Clock = now_utc,
                 radius_meters: float = SELFIE_DISTANCE_THRESHOLD_METERS):
        self.store = store
        self.clock = clock
        self.radius_meters = radius_meters

    def open(self, teacher_id: str, teacher_name: Optional[str], anchor: Optional[GeoPoint],
             expiry_minutes) -> Session:
        if not teacher_id:
            raise InvalidInput("teacherId is required")
        if anchor is None:
            raise InvalidInput("anchor is required")
        validate_point(anchor, "anchor")
        if isinstance(expiry_minutes, bool) or not isinstance(expiry_minutes, (int, float)):
            raise InvalidInput("expiryMinutes must be a number")
        if expiry_minutes <= 0:
            raise InvalidInput("expiryMinutes must be positive")

        starts_at = self.clock()
        session = Session(
            sessionId=f"sess_{uuid.uuid4().hex[:12]}",
            teacherId=teacher_id,
            teacherName=teacher_name,
            anchor=anchor,
            radiusMeters=self.radius_meters,
            startsAt=starts_at,
            expiresAt=starts_at + timedelta(minutes=expiry_minutes),
            status=SessionStatus.open,
        )
        session = self.store.add_session(session)
        logger.info("Session %s opened by %s, expires %s", session.sessionId, teacher_id,
                    session.expiresAt.isoformat())
        return session

    def require_open(self, session_id: str) -> Session:
        sess = self.store.get_session(session_id)
        if sess.status == SessionStatus.open and self.clock() >= sess.expiresAt:
            self._expire(sess)
            raise SessionClosed(f"Session {session_id} expired")
        if sess.status != SessionStatus.open:
            raise SessionClosed(f"Session {session_id} is {sess.status.value}")
        return sess

    def close(self, session_id: str, teacher_id: str) -> Session:
        sess = self.require_open(session_id)
        if sess.teacherId != teacher_id:
            raise Unauthorized("Only the session's teacher can close it")
        if not self.store.set_session_status(session_id, SessionStatus.closed,
                                             expected=SessionStatus.open, at=self.clock()):
            raise SessionClosed(f"Session {session_id} is no longer open")
        logger.info("Session %s closed by %s", session_id, teacher_id)
        return self.store.get_session(session_id)

    def sweep(self) -> List[str]:
        now = self.clock()
        expired = []
        for sess in self.store.list_sessions(SessionStatus.open):
            if now >= sess.expiresAt and self._expire(sess):
                expired.append(sess.sessionId)
        if expired:
            logger.info("Expiry sweep flipped %d session(s)", len(expired))
        return expired

    def _expire(self, sess: Session) -> bool:
        flipped = self.store.set_session_status(sess.sessionId, SessionStatus.expired,
                                                expected=SessionStatus.open)
        if flipped:
            logger.info("Session %s expired", sess.sessionId)
        return flipped
