import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from typing import Optional, Dict, Any

import anyio
from fastapi import FastAPI, Depends, HTTPException, UploadFile, File, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from jose import JWTError, jwt
from pymongo.errors import PyMongoError

import socketio
from socketio import exceptions as sio_exceptions

from clock import now_utc, to_iso, parse_iso
from config import (
    JWT_SECRET,
    JWT_ALG,
    LAST_LOCATION_MAX_AGE_SECONDS,
    DEFAULT_EXPIRY_MINUTES,
    SESSION_SWEEP_INTERVAL_SECONDS,
    S3_BUCKET,
    S3_PREFIX,
    S3_BASE_URL,
    UPLOAD_DIR,
    LOG_LEVEL,
    PORT,
)
from database import db, create_document
from errors import AttendanceError, AlreadyFinalized, InvalidInput
from events import Subscription
from schemas import GeoPoint, Identity, LocationPing, RosterEntry, Session, SessionStatus, TeacherView
from service import AttendanceService

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("attendance")

# ----------------------
# Config & Globals
# ----------------------
service = AttendanceService()


def get_service() -> AttendanceService:
    return service


# Socket.IO
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")
sio_app = socketio.ASGIApp(sio, socketio_path="/socket.io")


async def _sweep_forever(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await anyio.to_thread.run_sync(get_service().sweep_expired)
        except Exception:
            logger.exception("Expiry sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if SESSION_SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_sweep_forever(SESSION_SWEEP_INTERVAL_SECONDS))
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


# FastAPI app
app = FastAPI(lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount Socket.IO under /ws
app.mount("/ws", sio_app)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    body: Dict[str, Any] = {"detail": exc.detail, "code": exc.code}
    if isinstance(exc, AlreadyFinalized):
        body["status"] = exc.status
        if exc.distance_meters is not None:
            body["distanceMeters"] = round(exc.distance_meters, 2)
            body["allowed"] = exc.allowed
    return JSONResponse(status_code=exc.status_code, content=body)


# ----------------------
# Serialization helpers
# ----------------------

def session_json(sess: Session) -> Dict[str, Any]:
    return {
        "sessionId": sess.sessionId,
        "teacherId": sess.teacherId,
        "teacherName": sess.teacherName,
        "teacherLocation": {"lat": sess.anchor.latitude, "lon": sess.anchor.longitude},
        "radiusMeters": sess.radiusMeters,
        "startsAt": to_iso(sess.startsAt),
        "expiresAt": to_iso(sess.expiresAt),
        "status": sess.status.value,
    }


def entry_json(entry: RosterEntry) -> Dict[str, Any]:
    return {
        "userId": entry.userId,
        "status": entry.status.value,
        "distance": round(entry.lastDistanceMeters, 2) if entry.lastDistanceMeters is not None else None,
        "lastSeen": to_iso(entry.lastPingAt) if entry.lastPingAt else None,
        "photoUrl": entry.photoRef,
        "uploadedAt": to_iso(entry.uploadedAt) if entry.uploadedAt else None,
        "overriddenBy": entry.overriddenBy,
    }


def snapshot_json(view: TeacherView) -> Dict[str, Any]:
    return {
        "session": session_json(view.session),
        "roster": [entry_json(e) for e in view.roster],
    }


# ----------------------
# Auth
# ----------------------

def decode_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise HTTPException(status_code=401, detail="Invalid token") from e


def identity_from_claims(data: Dict[str, Any]) -> Identity:
    user_id = data.get("userId") or data.get("sub")
    role = data.get("role")
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        return Identity(userId=user_id, role=role, displayName=data.get("name"))
    except ValidationError as e:
        raise HTTPException(status_code=401, detail="Invalid token payload") from e


def get_current_user(request: Request) -> Identity:
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = auth.split(" ", 1)[1].strip()
    return identity_from_claims(decode_jwt(token))


# Mock login for demo/testing
class MockLoginBody(BaseModel):
    userId: str
    role: str
    name: Optional[str] = None
    expMinutes: int = 120


@app.post("/api/auth/mock-login")
def mock_login(body: MockLoginBody):
    exp = now_utc() + timedelta(minutes=body.expMinutes)
    payload = {"sub": body.userId, "userId": body.userId, "role": body.role, "name": body.name, "exp": int(exp.timestamp())}
    token = jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)
    return {"token": token, "expiresAt": to_iso(exp)}


# ----------------------
# Session APIs
# ----------------------
class StartSessionBody(BaseModel):
    teacherId: str
    lat: float
    lon: float
    expiryMinutes: int = DEFAULT_EXPIRY_MINUTES
    teacherName: Optional[str] = None


@app.post("/api/session/start")
def start_session(body: StartSessionBody, user: Identity = Depends(get_current_user),
                  svc: AttendanceService = Depends(get_service)):
    sess = svc.create_session(
        user,
        teacher_id=body.teacherId,
        anchor=GeoPoint(latitude=body.lat, longitude=body.lon),
        expiry_minutes=body.expiryMinutes,
        teacher_name=body.teacherName,
    )
    return session_json(sess)


@app.post("/api/session/{sessionId}/close")
def close_session(sessionId: str, user: Identity = Depends(get_current_user),
                  svc: AttendanceService = Depends(get_service)):
    return session_json(svc.close_session(user, sessionId))


class LocationBody(BaseModel):
    userId: str
    lat: float
    lon: float
    clientTimestamp: Optional[str] = None


def record_ping(sessionId: str, body: LocationBody, client_ts, distance: float, allowed: bool,
                request: Request) -> None:
    if db is None:
        return
    doc = LocationPing(
        sessionId=sessionId,
        userId=body.userId,
        lat=body.lat,
        lon=body.lon,
        clientTimestamp=client_ts,
        serverTimestamp=now_utc(),
        distanceMeters=distance,
        allowed=allowed,
        ipAddress=request.client.host if request.client else None,
    )
    # the roster is already updated; a lost audit row must not fail the ping
    try:
        create_document("locationping", doc)
    except PyMongoError:
        logger.exception("Audit write failed for ping %s/%s", sessionId, body.userId)


@app.post("/api/session/{sessionId}/location")
def post_location(sessionId: str, body: LocationBody, request: Request,
                  user: Identity = Depends(get_current_user),
                  svc: AttendanceService = Depends(get_service)):
    client_ts = None
    if body.clientTimestamp:
        try:
            client_ts = parse_iso(body.clientTimestamp)
        except ValueError as e:
            raise InvalidInput("clientTimestamp must be ISO-8601") from e

    result = svc.submit_location(user, sessionId, body.userId,
                                 GeoPoint(latitude=body.lat, longitude=body.lon), client_ts)
    record_ping(sessionId, body, client_ts, result.distanceMeters, result.allowed, request)
    entry = svc.get_entry(sessionId, body.userId)

    return {
        "allowed": result.allowed,
        "distanceMeters": round(result.distanceMeters, 2),
        "status": entry.status.value if entry else None,
        "maxAgeSeconds": LAST_LOCATION_MAX_AGE_SECONDS,
        "serverTimestamp": to_iso(now_utc()),
    }


# ----------------------
# Storage (S3 or local)
# ----------------------

def store_image(file: UploadFile, sessionId: str, userId: str) -> str:
    filename = f"{sessionId}/{userId}/{uuid.uuid4().hex}.jpg"
    if S3_BUCKET:
        import boto3
        s3 = boto3.client("s3")
        body = file.file.read()
        s3.put_object(
            Bucket=S3_BUCKET,
            Key=S3_PREFIX + filename,
            Body=body,
            ContentType=file.content_type or "image/jpeg",
            ServerSideEncryption="AES256",
        )
        if S3_BASE_URL:
            return f"{S3_BASE_URL}/{S3_PREFIX}{filename}"
        return f"s3://{S3_BUCKET}/{S3_PREFIX}{filename}"

    local_dir = os.path.join(UPLOAD_DIR, sessionId, userId)
    os.makedirs(local_dir, exist_ok=True)
    path = os.path.join(local_dir, f"{uuid.uuid4().hex}.jpg")
    with open(path, "wb") as f:
        f.write(file.file.read())
    return f"/uploads/{sessionId}/{userId}/" + os.path.basename(path)


# ----------------------
# Selfie upload
# ----------------------

@app.post("/api/session/{sessionId}/selfie")
def upload_selfie(sessionId: str, file: UploadFile = File(...),
                  user: Identity = Depends(get_current_user),
                  svc: AttendanceService = Depends(get_service)):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise InvalidInput("Invalid file type")

    # gate first so nothing is stored for an ineligible student
    svc.begin_photo(user, sessionId, user.userId)
    photo_url = store_image(file, sessionId, user.userId)
    status = svc.submit_photo(user, sessionId, user.userId, photo_url)
    return {"status": status.value, "photoUrl": photo_url}


# ----------------------
# Teacher view
# ----------------------

@app.get("/api/session/{sessionId}/teacher-view")
def teacher_view(sessionId: str, user: Identity = Depends(get_current_user),
                 svc: AttendanceService = Depends(get_service)):
    view = svc.get_teacher_view(user, sessionId)
    return snapshot_json(view)


# ----------------------
# Manual override
# ----------------------
class OverrideBody(BaseModel):
    userId: str
    status: str  # overridden_present | overridden_absent


@app.post("/api/session/{sessionId}/override")
def override_attendance(sessionId: str, body: OverrideBody, user: Identity = Depends(get_current_user),
                        svc: AttendanceService = Depends(get_service)):
    entry = svc.override(user, sessionId, body.userId, body.status)
    return {"ok": True, "entry": entry_json(entry)}


# ----------------------
# Socket.IO events
# ----------------------
_relays: Dict[str, Subscription] = {}


def teacher_room(session_id: str) -> str:
    return f"session:{session_id}:teacher"


def start_relay(svc: AttendanceService, session_id: str) -> Subscription:
    sub = svc.subscribe(session_id)
    _relays[session_id] = sub
    sio.start_background_task(_relay_events, sub)
    return sub


async def _relay_events(sub: Subscription):
    """Forward bus events for one session to its teacher room until the session ends.

    The relay waits on an asyncio.Event set by the publishing thread, so it
    never holds a worker thread the sync routes need.
    """
    svc = get_service()
    room = teacher_room(sub.session_id)
    loop = asyncio.get_running_loop()
    ready = asyncio.Event()
    sub.set_waker(lambda: loop.call_soon_threadsafe(ready.set))
    try:
        while True:
            for event in sub.drain():
                await sio.emit(event.kind.value, event.model_dump(mode="json"), to=room)
            if sub.closed:
                if sub.overflowed and svc.store.get_session(sub.session_id).status == SessionStatus.open:
                    logger.warning("Relay for session %s fell behind, resyncing teachers", sub.session_id)
                    # subscribe before reading so nothing falls in the gap
                    start_relay(svc, sub.session_id)
                    await sio.emit("roster_snapshot", snapshot_json(svc.snapshot(sub.session_id)), to=room)
                break
            if svc.store.get_session(sub.session_id).status != SessionStatus.open:
                break
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(ready.wait(), 1.0)
            ready.clear()
    finally:
        if _relays.get(sub.session_id) is sub:
            del _relays[sub.session_id]
        sub.close()
        sub.set_waker(None)


@sio.event
async def connect(sid, environ, auth):
    token = (auth or {}).get("token")
    if not token:
        return
    try:
        user = identity_from_claims(decode_jwt(token))
    except HTTPException:
        raise sio_exceptions.ConnectionRefusedError("Invalid token")
    await sio.save_session(sid, {"user": user})


@sio.event
async def join_teacher(sid, data):
    session_id = (data or {}).get("sessionId")
    sio_session = await sio.get_session(sid)
    user: Optional[Identity] = sio_session.get("user")
    if user is None:
        await sio.emit("error", {"detail": "Authentication required"}, to=sid)
        return
    svc = get_service()
    try:
        view = svc.get_teacher_view(user, session_id)
    except AttendanceError as e:
        await sio.emit("error", {"detail": e.detail, "code": e.code}, to=sid)
        return

    await sio.enter_room(sid, teacher_room(session_id))
    if session_id not in _relays and view.session.status == SessionStatus.open:
        start_relay(svc, session_id)

    # read before the relay subscribed; clients reconcile by userId and seq
    await sio.emit("roster_snapshot", snapshot_json(view), to=sid)


# ----------------------
# Health and database test
# ----------------------
@app.get("/")
def read_root():
    return {"message": "Attendance backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    if db is not None:
        response["database"] = "✅ Available"
        response["database_url"] = "✅ Configured"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


# ----------------------
# Uvicorn
# ----------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
