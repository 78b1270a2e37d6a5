from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from attendance_service import AttendanceService
from database import ensure_indexes
from geo import EARTH_RADIUS_M
from schemas import AuthedUser
from session_service import SessionService

CLASS_NAME = "CS101"
ANCHOR = (0.0, 0.0)

METERS_PER_DEGREE = EARTH_RADIUS_M * 3.141592653589793 / 180


def north_of_anchor(meters):
    """Coordinates ``meters`` due north of the anchor."""
    return ANCHOR[0] + meters / METERS_PER_DEGREE, ANCHOR[1]


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, session_id, event, payload, audience="all"):
        self.events.append((session_id, event, payload, audience))

    def names(self):
        return [e[1] for e in self.events]


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["attendance_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_service(db, notifier, clock):
    return SessionService(db, notifier, clock=clock)


@pytest.fixture
def attendance_service(db, notifier, clock):
    return AttendanceService(db, notifier, clock=clock)


@pytest.fixture
def teacher():
    return AuthedUser(userId="t-1", role="teacher", name="Grace Hopper")


@pytest.fixture
def other_teacher():
    return AuthedUser(userId="t-2", role="teacher", name="Alan Turing")


@pytest.fixture
def roster(db):
    profiles = [
        {"userId": "s-1", "name": "Alice", "email": "alice@example.edu", "role": "student", "className": CLASS_NAME},
        {"userId": "s-2", "name": "Bob", "email": "bob@example.edu", "role": "student", "className": CLASS_NAME},
        {"userId": "s-3", "name": "Carol", "email": "carol@example.edu", "role": "student", "className": CLASS_NAME},
        {"userId": "s-9", "name": "Zed", "email": "zed@example.edu", "role": "student", "className": "MATH200"},
    ]
    db["user"].insert_many([dict(p) for p in profiles])
    return {p["userId"]: AuthedUser(userId=p["userId"], role="student", name=p["name"]) for p in profiles}


@pytest.fixture
def lecture(session_service, teacher):
    """Active session anchored at (0, 0) with an explicit 200m radius."""
    return session_service.create_session(
        teacher, "Intro to Geodesy", CLASS_NAME, ANCHOR[0], ANCHOR[1], duration=50, geofence_radius=200
    )


@pytest.fixture
def open_lecture(session_service, teacher):
    """Active session without an explicit radius, so per-operation defaults apply."""
    return session_service.create_session(teacher, "Open Lab", CLASS_NAME, ANCHOR[0], ANCHOR[1])
