import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from pydantic import BaseModel, Field

import socketio

import database
import errors
from attendance_service import AttendanceService
from logging_config import configure_logging
from notifier import AUDIENCE_STUDENTS, AUDIENCE_TEACHER, SocketNotifier, room_name
from schemas import TEACHER, AuthedUser
from session_service import SessionService
from settings import CORS_ORIGINS, JWT_ALG, JWT_SECRET, PORT, TOKEN_EXP_MINUTES
from utils import now_utc, to_iso

configure_logging()
logger = logging.getLogger(__name__)

# ----------------------
# App & Socket.IO
# ----------------------
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")
sio_app = socketio.ASGIApp(sio, socketio_path="/socket.io")
notifier = SocketNotifier(sio)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="Geofenced attendance backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/ws", sio_app)


# ----------------------
# Error envelope
# ----------------------

@app.exception_handler(errors.ServiceError)
async def service_error_handler(request: Request, exc: errors.ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    err = errors.ValidationError("Missing or invalid parameters", fields=fields)
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=errors.ServiceError().to_dict())


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


# ----------------------
# Dependencies
# ----------------------

def get_db():
    if database.db is None:
        raise errors.ServiceError("Database not available")
    return database.db


def get_notifier():
    return notifier


def get_session_service(db=Depends(get_db), notifier=Depends(get_notifier)) -> SessionService:
    return SessionService(db, notifier)


def get_attendance_service(db=Depends(get_db), notifier=Depends(get_notifier)) -> AttendanceService:
    return AttendanceService(db, notifier)


# ----------------------
# Auth
# ----------------------

def decode_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise errors.Unauthorized("Invalid or expired token") from e


def user_from_claims(data: Dict[str, Any]) -> AuthedUser:
    user_id = data.get("userId") or data.get("sub")
    role = data.get("role")
    if not user_id or not role:
        raise errors.Unauthorized("Invalid token payload")
    return AuthedUser(userId=user_id, role=role, name=data.get("name"))


def get_current_user(request: Request) -> AuthedUser:
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise errors.Unauthorized("Missing bearer token")
    token = auth.split(" ", 1)[1].strip()
    return user_from_claims(decode_jwt(token))


# Mock login for demo/testing; stands in for the real identity provider.
class MockLoginBody(BaseModel):
    userId: str
    role: str = Field(..., pattern="^(teacher|student)$")
    name: Optional[str] = None
    email: Optional[str] = None
    className: Optional[str] = None
    expMinutes: int = TOKEN_EXP_MINUTES


@app.post("/api/auth/mock-login")
def mock_login(body: MockLoginBody, db=Depends(get_db)):
    profile = {k: v for k, v in body.model_dump(include={"name", "email", "className"}).items() if v is not None}
    profile["role"] = body.role
    db["user"].update_one({"userId": body.userId}, {"$set": profile}, upsert=True)

    exp = now_utc() + timedelta(minutes=body.expMinutes)
    payload = {"sub": body.userId, "userId": body.userId, "role": body.role, "name": body.name, "exp": int(exp.timestamp())}
    token = jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)
    return {"token": token, "expiresAt": to_iso(exp)}


# ----------------------
# Session APIs
# ----------------------
class CreateSessionBody(BaseModel):
    title: str
    className: str
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    duration: Optional[int] = None
    geofenceRadius: Optional[float] = None


class UpdateSessionBody(BaseModel):
    title: Optional[str] = None
    duration: Optional[int] = None


class ManualAttendanceBody(BaseModel):
    studentEmail: Optional[str] = None
    studentId: Optional[str] = None


@app.post("/api/sessions", status_code=201)
def create_session(
    body: CreateSessionBody,
    user: AuthedUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    session = service.create_session(
        user, body.title, body.className, body.lat, body.lon,
        duration=body.duration, geofence_radius=body.geofenceRadius,
    )
    return ok(session, "Session created successfully")


@app.get("/api/sessions/active")
def active_sessions(user: AuthedUser = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    return ok(service.active_for_teacher(user))


@app.get("/api/sessions/student")
def student_sessions(user: AuthedUser = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    sessions, hint = service.active_for_student(user)
    return ok(sessions, hint)


@app.get("/api/sessions/{sessionId}")
def session_details(sessionId: str, user: AuthedUser = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    return ok(service.session_details(user, sessionId))


@app.put("/api/sessions/{sessionId}")
def update_session(
    sessionId: str,
    body: UpdateSessionBody,
    user: AuthedUser = Depends(get_current_user),
    service: SessionService = Depends(get_session_service),
):
    return ok(service.update_session(user, sessionId, title=body.title, duration=body.duration), "Session updated successfully")


@app.put("/api/sessions/{sessionId}/end")
def end_session(sessionId: str, user: AuthedUser = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    return ok(service.end_session(user, sessionId), "Session ended successfully")


@app.delete("/api/sessions/{sessionId}")
def delete_session(sessionId: str, user: AuthedUser = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    return ok(service.delete_session(user, sessionId), "Session deleted successfully")


@app.get("/api/sessions/{sessionId}/passcode")
def get_passcode(sessionId: str, user: AuthedUser = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    return ok(service.get_passcode(user, sessionId))


# ----------------------
# Teacher view & manual override
# ----------------------

@app.get("/api/sessions/{sessionId}/attendance")
def attendance_view(
    sessionId: str,
    user: AuthedUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    return ok(service.attendance_view(user, sessionId))


@app.post("/api/sessions/{sessionId}/attendance/manual")
def manual_attendance(
    sessionId: str,
    body: ManualAttendanceBody,
    user: AuthedUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    result = service.manual_add(user, sessionId, student_email=body.studentEmail, student_id=body.studentId)
    return ok(result, "Attendance marked present")


# ----------------------
# Attendance APIs
# ----------------------
class LocationBody(BaseModel):
    sessionId: str
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class PingBody(BaseModel):
    sessionId: str
    lat: float
    lon: float


class JoinBody(LocationBody):
    rollNo: Optional[str] = None


class SubmitBody(LocationBody):
    accuracy: Optional[float] = Field(None, ge=0)


@app.post("/api/attendance/join")
def join_session(
    body: JoinBody,
    user: AuthedUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    result = service.join(user, body.sessionId, body.lat, body.lon, roll_no=body.rollNo)
    return ok(result, "Already joined" if result["alreadyJoined"] else "Joined successfully")


@app.post("/api/attendance/ping")
def ping_session(
    body: PingBody,
    user: AuthedUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    return ok(service.ping(user, body.sessionId, body.lat, body.lon), "Ping received")


@app.post("/api/attendance/submit")
def submit_attendance(
    body: SubmitBody,
    user: AuthedUser = Depends(get_current_user),
    service: AttendanceService = Depends(get_attendance_service),
):
    result = service.submit(user, body.sessionId, body.lat, body.lon, accuracy=body.accuracy)
    return ok(result["record"], result["message"])


# ----------------------
# Socket.IO events
# ----------------------

@sio.event
async def connect(sid, environ, auth):
    token = (auth or {}).get("token")
    if not token:
        return
    try:
        user = user_from_claims(decode_jwt(token))
    except errors.Unauthorized:
        return False
    await sio.save_session(sid, {"userId": user.userId, "role": user.role})


@sio.event
async def join_teacher(sid, data):
    identity = await sio.get_session(sid)
    if identity.get("role") != TEACHER:
        return {"ok": False, "error": "Forbidden"}
    await sio.enter_room(sid, room_name(data.get("sessionId"), AUDIENCE_TEACHER))
    return {"ok": True}


@sio.event
async def join_student(sid, data):
    await sio.enter_room(sid, room_name(data.get("sessionId"), AUDIENCE_STUDENTS))
    return {"ok": True}


@sio.event
async def leave_session(sid, data):
    session_id = data.get("sessionId")
    await sio.leave_room(sid, room_name(session_id, AUDIENCE_TEACHER))
    await sio.leave_room(sid, room_name(session_id, AUDIENCE_STUDENTS))


# ----------------------
# Health and database test
# ----------------------
@app.get("/")
def read_root():
    return {"message": "Attendance backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "running",
        "database": "not available",
        "database_name": None,
        "collections": [],
    }
    db = database.db
    if db is not None:
        response["database_name"] = db.name
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "connected"
        except Exception as e:
            logger.warning("Database check failed: %s", e)
            response["database"] = f"error: {str(e)[:50]}"
    return response


# ----------------------
# Uvicorn
# ----------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
