"""
Per-attendee attendance records: join, ping, submit, manual override and the
roster-merged attendance view.

Records are keyed by ``(sessionId, userId)`` with a unique index. Concurrency
safety comes from that index (join), single-document ``$inc`` (ping) and
compare-and-swap updates (submit), never from application locks.
"""

import logging
from collections import Counter
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import errors
from database import create_document
from geo import GeofenceCheck, check_geofence
from notifier import AUDIENCE_TEACHER, EVENT_JOINED, EVENT_MANUAL, EVENT_SUBMITTED
from schemas import STUDENT, Attendance, LocationPing, LocationSnapshot
from scoring import ABSENT, INCOMPLETE, METHOD_AUTO, METHOD_MANUAL, PRESENT, evaluate
from session_service import (
    ACTIVE,
    load_owned_session,
    load_session,
    profile_summary,
    public_session,
    require_role,
    roster_for,
)
from settings import CHECK_BUDGET, CHECK_RADIUS_METERS, JOIN_RADIUS_METERS
from utils import new_id, now_utc, public_doc, to_iso

logger = logging.getLogger(__name__)

# Bounded compare-and-swap retries when pings land mid-submit.
SUBMIT_CAS_ATTEMPTS = 5


def join_radius(sess: Dict[str, Any]) -> float:
    radius = sess.get("geofenceRadius")
    return float(radius) if radius else JOIN_RADIUS_METERS


def check_radius(sess: Dict[str, Any]) -> float:
    radius = sess.get("geofenceRadius")
    return float(radius) if radius else CHECK_RADIUS_METERS


def anchor_of(sess: Dict[str, Any]):
    return float(sess["teacherLat"]), float(sess["teacherLon"])


def public_record(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return public_doc(doc, exclude=("created_at", "updated_at"))


class AttendanceService:
    def __init__(self, db, notifier, clock=now_utc):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    def _record_filter(self, session_id: str, user_id: str) -> Dict[str, Any]:
        return {"sessionId": session_id, "userId": user_id}

    def _check(self, sess: Dict[str, Any], lat: float, lon: float, radius: float) -> GeofenceCheck:
        anchor_lat, anchor_lon = anchor_of(sess)
        check = check_geofence(lat, lon, anchor_lat, anchor_lon, radius)
        logger.info(
            "Distance check for session %s: attendee (%s, %s) vs anchor (%s, %s) = %.0fm, radius %.0fm",
            sess.get("sessionId"), lat, lon, anchor_lat, anchor_lon, check.distance, radius,
        )
        return check

    def _require_inside(self, sess: Dict[str, Any], lat: float, lon: float, radius: float) -> GeofenceCheck:
        check = self._check(sess, lat, lon, radius)
        if not check.valid:
            raise errors.GeofenceViolation(check.distance, check.radius, (lat, lon), anchor_of(sess))
        return check

    # ----------------------
    # Join
    # ----------------------

    def join(self, user, session_id: str, lat: float, lon: float, roll_no: Optional[str] = None) -> Dict[str, Any]:
        require_role(user, STUDENT, "join sessions")

        sess = load_session(self.db, session_id)
        if sess.get("status") != ACTIVE:
            raise errors.InvalidState("Session is not active")

        if roll_no and roll_no.strip():
            self.db["user"].update_one(
                {"userId": user.userId},
                {"$set": {"rollNo": roll_no.strip()}, "$setOnInsert": {"role": user.role, "name": user.name}},
                upsert=True,
            )
            logger.info("Updated roll number for user %s", user.userId)

        self._require_inside(sess, lat, lon, join_radius(sess))

        record = Attendance(
            attendanceId=new_id("att", 10),
            sessionId=session_id,
            userId=user.userId,
            joinTime=self.clock(),
            checkScore=1,
            status=INCOMPLETE,
            method=METHOD_AUTO,
        )
        already_joined = False
        try:
            create_document("attendance", record, database=self.db)
        except DuplicateKeyError:
            already_joined = True

        if not already_joined and load_session(self.db, session_id).get("status") != ACTIVE:
            # the session ended between the status check and the insert, so the sweep missed this record
            self.db["attendance"].update_one(
                {**self._record_filter(session_id, user.userId), "status": INCOMPLETE},
                {"$set": {"status": ABSENT, "updated_at": self.clock()}},
            )
            logger.info("Session %s ended while student %s was joining, record marked absent", session_id, user.userId)

        doc = self.db["attendance"].find_one(self._record_filter(session_id, user.userId))
        profile = self.db["user"].find_one({"userId": user.userId})
        summary = profile_summary(profile, user.userId)
        if not summary.get("name"):
            summary["name"] = user.name

        if already_joined:
            logger.info("Student %s already joined session %s", user.userId, session_id)
        else:
            logger.info("Student %s joined session %s", user.userId, session_id)
            self.notifier.publish(
                session_id,
                EVENT_JOINED,
                {"sessionId": session_id, "student": summary, "joinTime": to_iso(doc.get("joinTime"))},
                audience=AUDIENCE_TEACHER,
            )

        return {"record": public_record(doc), "profile": summary, "alreadyJoined": already_joined}

    # ----------------------
    # Ping
    # ----------------------

    def ping(self, user, session_id: str, lat: float, lon: float) -> Dict[str, Any]:
        """Best effort: a failed ping costs the attendee a check, never an error."""
        try:
            return self._ping(user, session_id, lat, lon)
        except Exception:
            logger.warning("Ping from %s for session %s dropped", user.userId, session_id, exc_info=True)
            return {"ok": True, "isValid": None}

    def _ping(self, user, session_id: str, lat: float, lon: float) -> Dict[str, Any]:
        sess = self.db["session"].find_one({"sessionId": session_id})
        if sess:
            check = self._check(sess, lat, lon, check_radius(sess))
        else:
            check = GeofenceCheck(distance=None, radius=CHECK_RADIUS_METERS, valid=False)

        now = self.clock()
        create_document(
            "locationping",
            LocationPing(
                sessionId=session_id,
                userId=user.userId,
                lat=lat,
                lon=lon,
                isValid=check.valid,
                distanceMeters=check.distance,
                serverTimestamp=now,
            ),
            database=self.db,
        )

        if check.valid:
            # no upsert: a ping never creates a record
            updated = self.db["attendance"].find_one_and_update(
                {**self._record_filter(session_id, user.userId), "checkScore": {"$lt": CHECK_BUDGET}},
                {"$inc": {"checkScore": 1}, "$set": {"updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                logger.info(
                    "Check score for student %s in session %s is now %s",
                    user.userId, session_id, updated.get("checkScore"),
                )

        return {"ok": True, "isValid": check.valid}

    # ----------------------
    # Submit
    # ----------------------

    def submit(
        self, user, session_id: str, lat: float, lon: float, accuracy: Optional[float] = None
    ) -> Dict[str, Any]:
        sess = load_session(self.db, session_id)
        self._require_inside(sess, lat, lon, check_radius(sess))

        record_filter = self._record_filter(session_id, user.userId)
        snapshot = LocationSnapshot(lat=lat, lon=lon, accuracy=accuracy or 0).model_dump()

        for _ in range(SUBMIT_CAS_ATTEMPTS):
            current = self.db["attendance"].find_one(record_filter)
            if current is None:
                raise errors.RecordNotFound()

            result = evaluate(int(current.get("checkScore") or 0))
            now = self.clock()
            updated = self.db["attendance"].find_one_and_update(
                {**record_filter, "checkScore": current.get("checkScore")},
                {"$set": {
                    "submitTime": now,
                    "status": result.verdict,
                    "locationSnapshot": snapshot,
                    "updated_at": now,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                break
        else:
            raise errors.ServiceError("Could not record the submission, please try again")

        logger.info(
            "Student %s submitted for session %s: score %d/%d, status %s",
            user.userId, session_id, result.score, CHECK_BUDGET, result.verdict,
        )
        self.notifier.publish(
            session_id,
            EVENT_SUBMITTED,
            {
                "sessionId": session_id,
                "studentId": user.userId,
                "status": result.verdict,
                "checkScore": result.score,
                "submitTime": to_iso(updated.get("submitTime")),
            },
            audience=AUDIENCE_TEACHER,
        )
        return {"record": public_record(updated), "message": result.message}

    # ----------------------
    # Presenter side
    # ----------------------

    def manual_add(
        self, user, session_id: str, student_email: Optional[str] = None, student_id: Optional[str] = None
    ) -> Dict[str, Any]:
        load_owned_session(self.db, session_id, user)

        if student_email and student_email.strip():
            query = {"email": student_email.strip(), "role": STUDENT}
        elif student_id and student_id.strip():
            query = {"userId": student_id.strip(), "role": STUDENT}
        else:
            raise errors.ValidationError("Student email or id is required")

        student = self.db["user"].find_one(query)
        if not student:
            raise errors.NotFound("Student not found")

        now = self.clock()
        record_filter = self._record_filter(session_id, student["userId"])
        forced = {
            "status": PRESENT,
            "method": METHOD_MANUAL,
            "checkScore": CHECK_BUDGET,
            "submitTime": now,
            "updated_at": now,
        }
        on_insert = {"attendanceId": new_id("att", 10), "joinTime": now, "locationSnapshot": None, "created_at": now}
        try:
            doc = self.db["attendance"].find_one_and_update(
                record_filter,
                {"$set": forced, "$setOnInsert": on_insert},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # lost an upsert race with a join; the record exists now
            doc = self.db["attendance"].find_one_and_update(
                record_filter, {"$set": forced}, return_document=ReturnDocument.AFTER
            )

        summary = profile_summary(student, student["userId"])
        logger.info("Manual attendance for student %s in session %s by %s", student["userId"], session_id, user.userId)
        self.notifier.publish(
            session_id,
            EVENT_MANUAL,
            {"sessionId": session_id, "student": summary, "status": PRESENT, "method": METHOD_MANUAL},
            audience=AUDIENCE_TEACHER,
        )
        return {"record": public_record(doc), "student": summary}

    def attendance_view(self, user, session_id: str) -> Dict[str, Any]:
        """Roster merged with records. Roster members who never joined are
        synthesized as absent; nobody gets a stored row for being absent."""
        sess = load_owned_session(self.db, session_id, user)

        records = list(self.db["attendance"].find({"sessionId": session_id}))
        roster = roster_for(self.db, sess.get("className"))
        profiles = {s["userId"]: s for s in roster}

        outsiders = [r["userId"] for r in records if r["userId"] not in profiles]
        if outsiders:
            for profile in self.db["user"].find({"userId": {"$in": outsiders}}):
                profiles[profile["userId"]] = profile

        entries = []
        for record in records:
            entry = profile_summary(profiles.get(record["userId"]), record["userId"])
            entry.update({
                "attendanceId": record.get("attendanceId"),
                "joinTime": to_iso(record.get("joinTime")),
                "submitTime": to_iso(record.get("submitTime")),
                "status": record.get("status"),
                "checkScore": record.get("checkScore"),
                "method": record.get("method"),
                "locationSnapshot": record.get("locationSnapshot"),
                "synthesized": False,
            })
            entries.append(entry)

        recorded = {r["userId"] for r in records}
        for student in roster:
            if student["userId"] in recorded:
                continue
            entry = profile_summary(student, student["userId"])
            entry.update({
                "attendanceId": None,
                "joinTime": None,
                "submitTime": None,
                "status": ABSENT,
                "checkScore": 0,
                "method": None,
                "locationSnapshot": None,
                "synthesized": True,
            })
            entries.append(entry)

        entries.sort(key=lambda e: ((e.get("name") or "").lower(), e["userId"]))
        counts = Counter(e["status"] for e in entries)
        logger.info("Fetched %d attendance entries for session %s", len(entries), session_id)
        return {
            "session": public_session(sess),
            "attendance": entries,
            "summary": {
                "total": len(entries),
                "rosterSize": len(roster),
                "present": counts.get(PRESENT, 0),
                "incomplete": counts.get(INCOMPLETE, 0),
                "absent": counts.get(ABSENT, 0),
            },
        }
