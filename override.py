import logging

from clock import Clock, now_utc
from errors import InvalidInput, Unauthorized
from events import EventBus
from lifecycle import SessionLifecycleManager
from schemas import OVERRIDE_STATUSES, EventKind, RosterEntry, RosterEvent, RosterStatus
from session_store import SessionStore

logger = logging.getLogger(__name__)


class OverrideArbiter:
    """Teacher decisions. An override always wins and the most recent one stands."""

    def __init__(self, store: SessionStore, bus: EventBus, lifecycle: SessionLifecycleManager,
                 clock: Clock = now_utc):
        self.store = store
        self.bus = bus
        self.lifecycle = lifecycle
        self.clock = clock

    def override(self, session_id: str, teacher_id: str, user_id: str, decision) -> RosterEntry:
        try:
            decision = RosterStatus(decision)
        except ValueError:
            raise InvalidInput(f"Unknown override decision {decision!r}") from None
        if decision not in OVERRIDE_STATUSES:
            raise InvalidInput(f"{decision.value} is not an override decision")
        if not user_id:
            raise InvalidInput("userId is required")

        session = self.lifecycle.require_open(session_id)
        if session.teacherId != teacher_id:
            raise Unauthorized("Only the session's teacher can override attendance")

        with self.store.entry_lock(session_id, user_id):
            entry = self.store.get_entry(session_id, user_id)
            if entry is None:
                entry = RosterEntry(sessionId=session_id, userId=user_id)
            previous = entry.status
            now = self.clock()
            entry = self.store.save_entry(entry.model_copy(update={
                "status": decision,
                "overriddenAt": now,
                "overriddenBy": teacher_id,
                "updatedAt": now,
            }))
            self.bus.publish(session_id, RosterEvent.from_entry(EventKind.roster_overridden, entry, now))

        logger.info("Override in session %s: %s %s -> %s by %s", session_id, user_id,
                    previous.value, decision.value, teacher_id)
        return entry
