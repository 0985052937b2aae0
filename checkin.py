"""Automated roster transitions driven by student actions.

Status moves forward along::

    pending -> {too_far <-> location_checked} -> photo_pending -> uploaded

``too_far`` and ``location_checked`` may alternate on every ping, but a ping
never pulls an entry back out of ``photo_pending`` or ``uploaded``. Entries a
teacher has overridden are off limits to every path in this module.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from clock import Clock, now_utc
from errors import AlreadyFinalized, InvalidInput, NotEligible
from events import EventBus
from geofence import evaluate
from lifecycle import SessionLifecycleManager
from schemas import (
    PHOTO_FLOW_STATUSES,
    EventKind,
    GeoFenceResult,
    GeoPoint,
    RosterEntry,
    RosterEvent,
    RosterStatus,
)
from session_store import SessionStore

logger = logging.getLogger(__name__)

PHOTO_ELIGIBLE_STATUSES = (RosterStatus.location_checked, RosterStatus.photo_pending)


class CheckInEngine:
    def __init__(self, store: SessionStore, bus: EventBus, lifecycle: SessionLifecycleManager,
                 clock: Clock = now_utc, max_location_age_seconds: Optional[int] = None):
        self.store = store
        self.bus = bus
        self.lifecycle = lifecycle
        self.clock = clock
        self.max_location_age_seconds = max_location_age_seconds

    def _publish(self, entry: RosterEntry) -> None:
        self.bus.publish(entry.sessionId, RosterEvent.from_entry(EventKind.roster_updated, entry, self.clock()))

    def _finalized(self, entry: RosterEntry, **measurement) -> AlreadyFinalized:
        return AlreadyFinalized(
            f"Attendance for {entry.userId} was set by the teacher ({entry.status.value})",
            status=entry.status.value,
            **measurement,
        )

    def submit_location(self, session_id: str, user_id: str, point: GeoPoint,
                        client_timestamp: Optional[datetime] = None) -> GeoFenceResult:
        if not user_id:
            raise InvalidInput("userId is required")
        session = self.lifecycle.require_open(session_id)
        result = evaluate(session.anchor, point, session.radiusMeters)

        with self.store.entry_lock(session_id, user_id):
            entry = self.store.get_entry(session_id, user_id)
            if entry is None:
                entry = RosterEntry(sessionId=session_id, userId=user_id)
            if entry.is_overridden:
                raise self._finalized(entry, distance_meters=result.distanceMeters, allowed=result.allowed)

            if entry.status in PHOTO_FLOW_STATUSES:
                status = entry.status
            elif result.allowed:
                status = RosterStatus.location_checked
            else:
                status = RosterStatus.too_far

            now = self.clock()
            entry = entry.model_copy(update={
                "status": status,
                "lastDistanceMeters": result.distanceMeters,
                "lastPingAt": now,
                "lastClientTimestamp": client_timestamp,
                "updatedAt": now,
            })
            entry = self.store.save_entry(entry)
            self._publish(entry)

        logger.debug("Ping %s/%s: %.2fm allowed=%s status=%s", session_id, user_id,
                     result.distanceMeters, result.allowed, status.value)
        return result

    def begin_photo(self, session_id: str, user_id: str) -> RosterStatus:
        """Enter the photo flow: ``location_checked`` becomes ``photo_pending``.

        Repeating the call on a ``photo_pending`` entry is a no-op.
        """
        self.lifecycle.require_open(session_id)
        with self.store.entry_lock(session_id, user_id):
            entry = self.store.get_entry(session_id, user_id)
            if entry is None:
                raise NotEligible("No location check recorded for this student")
            if entry.is_overridden:
                raise self._finalized(entry)
            if entry.status == RosterStatus.photo_pending:
                return entry.status
            if entry.status != RosterStatus.location_checked:
                raise NotEligible(f"Photo not allowed from status {entry.status.value}")

            now = self.clock()
            if self.max_location_age_seconds is not None and entry.lastPingAt is not None:
                if now - entry.lastPingAt > timedelta(seconds=self.max_location_age_seconds):
                    raise NotEligible("Location too old, check distance again")

            entry = self.store.save_entry(entry.model_copy(update={
                "status": RosterStatus.photo_pending,
                "updatedAt": now,
            }))
            self._publish(entry)
        return entry.status

    def submit_photo(self, session_id: str, user_id: str, photo_ref: str) -> RosterStatus:
        if not photo_ref or not isinstance(photo_ref, str):
            raise InvalidInput("photoRef is required")
        self.lifecycle.require_open(session_id)
        with self.store.entry_lock(session_id, user_id):
            entry = self.store.get_entry(session_id, user_id)
            if entry is None:
                raise NotEligible("No location check recorded for this student")
            if entry.is_overridden:
                raise self._finalized(entry)
            if entry.status not in PHOTO_ELIGIBLE_STATUSES:
                raise NotEligible(f"Photo not allowed from status {entry.status.value}")

            now = self.clock()
            entry = self.store.save_entry(entry.model_copy(update={
                "status": RosterStatus.uploaded,
                "photoRef": photo_ref,
                "uploadedAt": now,
                "updatedAt": now,
            }))
            self._publish(entry)

        logger.info("Photo recorded for %s in session %s", user_id, session_id)
        return entry.status
