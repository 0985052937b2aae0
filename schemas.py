from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class Role(str, Enum):
    teacher = "teacher"
    student = "student"


class SessionStatus(str, Enum):
    open = "open"
    closed = "closed"
    expired = "expired"


class RosterStatus(str, Enum):
    pending = "pending"
    location_checked = "location_checked"
    too_far = "too_far"
    photo_pending = "photo_pending"
    uploaded = "uploaded"
    overridden_present = "overridden_present"
    overridden_absent = "overridden_absent"


OVERRIDE_STATUSES = (RosterStatus.overridden_present, RosterStatus.overridden_absent)
# Statuses a later out-of-range ping must not regress.
PHOTO_FLOW_STATUSES = (RosterStatus.photo_pending, RosterStatus.uploaded)


class EventKind(str, Enum):
    roster_updated = "roster_updated"
    roster_overridden = "roster_overridden"


class Identity(BaseModel):
    userId: str = Field(..., description="Unique user id")
    role: Role
    displayName: Optional[str] = None


class GeoPoint(BaseModel):
    latitude: float
    longitude: float


class GeoFenceResult(BaseModel):
    distanceMeters: float
    allowed: bool


class Session(BaseModel):
    sessionId: str
    teacherId: str
    teacherName: Optional[str] = None
    anchor: GeoPoint
    radiusMeters: float
    startsAt: datetime
    expiresAt: datetime
    status: SessionStatus = Field(SessionStatus.open, description="open|closed|expired")
    closedAt: Optional[datetime] = None


class RosterEntry(BaseModel):
    sessionId: str
    userId: str
    status: RosterStatus = RosterStatus.pending
    lastDistanceMeters: Optional[float] = None
    photoRef: Optional[str] = None
    lastPingAt: Optional[datetime] = None
    lastClientTimestamp: Optional[datetime] = None
    uploadedAt: Optional[datetime] = None
    overriddenAt: Optional[datetime] = None
    overriddenBy: Optional[str] = None
    updatedAt: Optional[datetime] = None

    @property
    def is_overridden(self) -> bool:
        return self.status in OVERRIDE_STATUSES


class RosterEvent(BaseModel):
    kind: EventKind
    sessionId: str
    userId: str
    status: RosterStatus
    photoRef: Optional[str] = None
    distanceMeters: Optional[float] = None
    emittedAt: datetime
    seq: int = Field(0, description="per-session publish order, assigned by the bus")

    @classmethod
    def from_entry(cls, kind: EventKind, entry: RosterEntry, emitted_at: datetime) -> "RosterEvent":
        return cls(
            kind=kind,
            sessionId=entry.sessionId,
            userId=entry.userId,
            status=entry.status,
            photoRef=entry.photoRef,
            distanceMeters=entry.lastDistanceMeters,
            emittedAt=emitted_at,
        )


class TeacherView(BaseModel):
    session: Session
    roster: List[RosterEntry]


class LocationPing(BaseModel):
    """Audit record of a single accepted or rejected ping."""
    sessionId: str
    userId: str
    lat: float
    lon: float
    clientTimestamp: Optional[datetime] = None
    serverTimestamp: datetime
    distanceMeters: Optional[float] = None
    allowed: Optional[bool] = None
    ipAddress: Optional[str] = None
