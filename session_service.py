"""
Session lifecycle: create, edit, end, delete, passcode rotation and the
read-side listings a presenter or attendee needs.

A session only ever moves ``active -> ended``. Every transition is a single
conditional update on the current status, so two presenters' tabs racing each
other cannot both end (or both edit an ended) session.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, ReturnDocument

import errors
from database import create_document, get_documents
from notifier import AUDIENCE_ALL, AUDIENCE_TEACHER, EVENT_PASSCODE_ROTATED, EVENT_SESSION_ENDED
from passcode import generate_passcode, needs_refresh
from schemas import STUDENT, TEACHER, Session
from scoring import ABSENT, INCOMPLETE
from settings import DEFAULT_DURATION_MINUTES
from utils import new_id, now_utc, public_doc, to_iso

logger = logging.getLogger(__name__)

ACTIVE = "active"
ENDED = "ended"

PROFILE_FIELDS = ("userId", "name", "email", "rollNo", "className")


# ----------------------
# Guards and lookups
# ----------------------

def require_role(user, role: str, action: str) -> None:
    if user.role != role:
        raise errors.Forbidden(f"Only {role}s can {action}")


def load_session(db, session_id: str) -> Dict[str, Any]:
    session_docs = get_documents("session", {"sessionId": session_id}, limit=1, database=db)
    if not session_docs:
        raise errors.NotFound("Session not found")
    return session_docs[0]


def load_owned_session(db, session_id: str, user) -> Dict[str, Any]:
    sess = load_session(db, session_id)
    if sess.get("teacherId") != user.userId:
        raise errors.Forbidden("You do not own this session")
    return sess


def public_session(sess: Dict[str, Any]) -> Dict[str, Any]:
    return public_doc(sess, exclude=("passcode", "passcodeUpdatedAt", "created_at", "updated_at"))


def profile_summary(profile: Optional[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
    profile = profile or {}
    summary = {field: profile.get(field) for field in PROFILE_FIELDS}
    summary["userId"] = user_id
    return summary


def roster_for(db, class_name: Optional[str]) -> List[Dict[str, Any]]:
    """Students whose profile places them in ``class_name``."""
    if not class_name:
        return []
    return list(db["user"].find({"className": class_name, "role": STUDENT}).sort("name", ASCENDING))


class SessionService:
    def __init__(self, db, notifier, clock=now_utc):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    # ----------------------
    # Lifecycle
    # ----------------------

    def create_session(
        self,
        user,
        title: str,
        class_name: str,
        lat: float,
        lon: float,
        duration: Optional[int] = None,
        geofence_radius: Optional[float] = None,
    ) -> Dict[str, Any]:
        require_role(user, TEACHER, "create sessions")

        title = (title or "").strip()
        class_name = (class_name or "").strip()
        if not title or not class_name:
            raise errors.ValidationError("Class name and session title are required")
        if duration is None:
            duration = DEFAULT_DURATION_MINUTES
        if duration <= 0:
            raise errors.ValidationError("Duration must be a positive number of minutes")
        if geofence_radius is not None and geofence_radius <= 0:
            raise errors.ValidationError("Geofence radius must be positive")

        session = Session(
            sessionId=new_id("sess"),
            teacherId=user.userId,
            teacherName=user.name,
            className=class_name,
            title=title,
            duration=duration,
            teacherLat=lat,
            teacherLon=lon,
            geofenceRadius=geofence_radius,
            status=ACTIVE,
            createdAt=self.clock(),
        )
        create_document("session", session, database=self.db)
        logger.info("Session created: %s (%s) by teacher %s", session.sessionId, class_name, user.userId)
        return public_session(session.model_dump())

    def update_session(self, user, session_id: str, title: Optional[str] = None, duration: Optional[int] = None):
        sess = load_owned_session(self.db, session_id, user)
        if sess.get("status") != ACTIVE:
            raise errors.InvalidState("Cannot update an ended session")

        changes: Dict[str, Any] = {}
        if title is not None and title.strip():
            changes["title"] = title.strip()
        if duration is not None:
            if duration <= 0:
                raise errors.ValidationError("Duration must be a positive number of minutes")
            changes["duration"] = duration
        if not changes:
            raise errors.ValidationError("No valid fields to update. Only title and duration can be updated.")

        changes["updated_at"] = self.clock()
        updated = self.db["session"].find_one_and_update(
            {"sessionId": session_id, "status": ACTIVE},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise errors.InvalidState("Cannot update an ended session")
        logger.info("Session updated: %s by teacher %s", session_id, user.userId)
        return public_session(updated)

    def end_session(self, user, session_id: str) -> Dict[str, Any]:
        sess = load_owned_session(self.db, session_id, user)
        if sess.get("status") == ENDED:
            raise errors.AlreadyEnded()

        now = self.clock()
        updated = self.db["session"].find_one_and_update(
            {"sessionId": session_id, "status": ACTIVE},
            {"$set": {"status": ENDED, "endedAt": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise errors.AlreadyEnded()

        swept = self.db["attendance"].update_many(
            {"sessionId": session_id, "status": INCOMPLETE},
            {"$set": {"status": ABSENT, "updated_at": now}},
        )
        logger.info(
            "Session ended: %s by teacher %s, %d incomplete records marked absent",
            session_id, user.userId, swept.modified_count,
        )

        self.notifier.publish(
            session_id,
            EVENT_SESSION_ENDED,
            {"sessionId": session_id, "status": ENDED, "endedAt": to_iso(updated.get("endedAt"))},
            audience=AUDIENCE_ALL,
        )
        result = public_session(updated)
        result["markedAbsent"] = swept.modified_count
        return result

    def delete_session(self, user, session_id: str) -> Dict[str, Any]:
        sess = load_owned_session(self.db, session_id, user)
        if sess.get("status") != ENDED:
            raise errors.InvalidState("Only ended sessions can be deleted. Please end the session first.")

        pings = self.db["locationping"].delete_many({"sessionId": session_id})
        records = self.db["attendance"].delete_many({"sessionId": session_id})
        self.db["session"].delete_one({"sessionId": session_id})
        logger.info(
            "Session deleted: %s by teacher %s (%d records, %d pings)",
            session_id, user.userId, records.deleted_count, pings.deleted_count,
        )
        return {
            "sessionId": session_id,
            "deletedRecords": records.deleted_count,
            "deletedPings": pings.deleted_count,
        }

    # ----------------------
    # Passcode
    # ----------------------

    def get_passcode(self, user, session_id: str) -> Dict[str, Any]:
        sess = load_session(self.db, session_id)
        if sess.get("teacherId") != user.userId:
            raise errors.Forbidden("Only the session owner can access the passcode")
        if sess.get("status") == ACTIVE:
            raise errors.NotYetAvailable()

        code = sess.get("passcode")
        rotated_at = sess.get("passcodeUpdatedAt")
        now = self.clock()
        if code is None or needs_refresh(rotated_at, now):
            fresh = generate_passcode(previous=code)
            updated = self.db["session"].find_one_and_update(
                {"sessionId": session_id, "passcodeUpdatedAt": rotated_at},
                {"$set": {"passcode": fresh, "passcodeUpdatedAt": now}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                # another request rotated first, hand out its code
                updated = load_session(self.db, session_id)
            else:
                logger.info("Passcode rotated for session %s", session_id)
                self.notifier.publish(
                    session_id,
                    EVENT_PASSCODE_ROTATED,
                    {"sessionId": session_id, "passcode": fresh, "updatedAt": to_iso(now)},
                    audience=AUDIENCE_TEACHER,
                )
            code = updated.get("passcode")
            rotated_at = updated.get("passcodeUpdatedAt")

        return {"passcode": code, "updatedAt": to_iso(rotated_at)}

    # ----------------------
    # Listings
    # ----------------------

    def active_for_teacher(self, user) -> List[Dict[str, Any]]:
        require_role(user, TEACHER, "list their active sessions")
        cursor = self.db["session"].find({"teacherId": user.userId, "status": ACTIVE}).sort("createdAt", ASCENDING)
        return [public_session(s) for s in cursor]

    def active_for_student(self, user):
        """Returns ``(sessions, hint)``; the hint explains an empty list."""
        require_role(user, STUDENT, "list their class sessions")
        profile = self.db["user"].find_one({"userId": user.userId}) or {}
        class_name = profile.get("className")
        if not class_name:
            return [], "Please set your class first to see available sessions"
        cursor = self.db["session"].find({"className": class_name, "status": ACTIVE}).sort("createdAt", ASCENDING)
        return [public_session(s) for s in cursor], None

    def session_details(self, user, session_id: str) -> Dict[str, Any]:
        sess = load_session(self.db, session_id)
        joined = {r["userId"] for r in self.db["attendance"].find({"sessionId": session_id}, {"userId": 1})}
        roster = roster_for(self.db, sess.get("className"))
        absent = [profile_summary(s, s["userId"]) for s in roster if s["userId"] not in joined]
        return {
            "session": public_session(sess),
            "studentCount": len(joined),
            "totalClassStudents": len(roster),
            "absentCount": len(absent),
            "absentStudents": absent,
        }
