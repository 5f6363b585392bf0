"""
Class registry and the session / QR / attendance lifecycle.

Functions take the storage manager and, where time matters, an explicit
``now`` so the HTTP layer passes the wall clock and tests pass fixed instants.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from attendance_rules import (
    DEFAULT_QR_DURATION_MINUTES,
    classify_mark,
    ensure_utc,
    parse_qr_payload,
    qr_expiry,
)
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from qr_utils import new_qr_token, render_qr_data_url

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ==================== CLASS REGISTRY ====================

def create_class(db, teacher_id: str, name: Optional[str], code: Optional[str], department: Optional[str] = None) -> Record:
    """Create a class owned by the calling teacher; codes are stored uppercase"""
    name, code = _clean(name), _clean(code)
    if not name or not code:
        raise ValidationError("Name and code are required")

    class_data = {
        "name": name,
        "code": code.upper(),
        "teacher_id": teacher_id,
        "students": [],
    }
    department = _clean(department)
    if department:
        class_data["department"] = department

    created = db.create_class(class_data)
    logger.info("[CREATE_CLASS] %s (%s) by teacher %s", created["code"], created["id"], teacher_id)
    return created


def join_class(db, student_id: str, code: Optional[str]) -> Tuple[Record, bool]:
    """
    Enroll a student by class code (case-insensitive).

    Returns the class and whether the roster changed; re-joining is a
    successful no-op.
    """
    code = _clean(code)
    if not code:
        raise ValidationError("Class code is required")

    cls = db.get_class_by_code(code.upper())
    if not cls:
        raise NotFoundError("Class not found")

    joined = db.add_student_to_class(cls["id"], student_id)
    if joined:
        logger.info("[JOIN_CLASS] student %s joined %s", student_id, cls["code"])
    return db.get_class(cls["id"]), joined


def ensure_class_access(cls: Record, user_id: str, role: str):
    """Owners see their classes, students see classes they are enrolled in, admins see everything"""
    if role == "teacher" and cls.get("teacher_id") != user_id:
        raise AuthorizationError("Not authorized")
    if role == "student" and user_id not in cls.get("students", []):
        raise AuthorizationError("Not enrolled in this class")


def get_owned_class(db, class_id: str, teacher_id: str) -> Record:
    cls = db.get_class(class_id)
    if not cls:
        raise NotFoundError("Class not found")
    if cls.get("teacher_id") != teacher_id:
        raise AuthorizationError("Not authorized")
    return cls


# ==================== SESSIONS ====================

def get_owned_session(db, session_id: str, teacher_id: str) -> Tuple[Record, Record]:
    """Session plus its class, only for the teacher who owns the class"""
    session = db.get_session(session_id)
    if not session:
        raise NotFoundError("Session not found")
    cls = db.get_class(session["class_id"])
    if not cls or cls.get("teacher_id") != teacher_id:
        raise AuthorizationError("Not authorized")
    return session, cls


def create_session(
    db,
    teacher_id: str,
    class_id: Optional[str],
    scheduled_start: Optional[datetime],
    scheduled_end: Optional[datetime],
    title: Optional[str] = None,
) -> Tuple[Record, Record]:
    if not class_id or scheduled_start is None or scheduled_end is None:
        raise ValidationError("Class, start time, and end time are required")

    cls = db.get_class(class_id)
    if not cls or cls.get("teacher_id") != teacher_id:
        raise NotFoundError("Class not found")

    start, end = ensure_utc(scheduled_start), ensure_utc(scheduled_end)
    if end <= start:
        raise ValidationError("End time must be after start time")

    session = db.create_session({
        "class_id": cls["id"],
        "title": _clean(title) or f"{cls['name']} Session",
        "scheduled_start": start,
        "scheduled_end": end,
    })
    logger.info("[CREATE_SESSION] %s for class %s (%s - %s)", session["id"], cls["code"], start, end)
    return session, cls


def generate_qr(
    db,
    teacher_id: str,
    session_id: str,
    now: datetime,
    duration_minutes: Optional[float] = None,
) -> Tuple[Record, Record, Record]:
    """
    Issue a new active QR code for an ongoing session.

    Every previously active code of the session is deactivated; the new
    code expires after ``duration_minutes`` or at the session end,
    whichever comes first.
    """
    if duration_minutes is None:
        duration_minutes = DEFAULT_QR_DURATION_MINUTES
    if not math.isfinite(duration_minutes) or duration_minutes <= 0:
        raise ValidationError("durationMinutes must be a positive number")

    session, cls = get_owned_session(db, session_id, teacher_id)

    if now < session["scheduled_start"]:
        raise ValidationError(
            "Cannot generate QR before session start time. Session starts at "
            + session["scheduled_start"].isoformat()
        )
    if now > session["scheduled_end"]:
        raise ValidationError("Session has ended. Cannot generate QR.")

    token = new_qr_token()
    qr = db.rotate_qr_code(session["id"], {
        "token": token,
        "created_at": now,
        "expires_at": qr_expiry(now, duration_minutes, session["scheduled_end"]),
        "qr_data_url": render_qr_data_url(token),
    })
    logger.info("[QR_GENERATE] session %s -> qr %s (expires %s)", session["id"], qr["id"], qr["expires_at"])
    return qr, session, cls


def end_qr(db, teacher_id: str, session_id: str) -> Tuple[int, Record]:
    """Deactivate every active code of the session; idempotent"""
    session, _ = get_owned_session(db, session_id, teacher_id)
    deactivated = db.deactivate_qr_codes(session["id"])
    logger.info("[QR_END] session %s, %d code(s) deactivated", session["id"], deactivated)
    return deactivated, session


def delete_session(db, teacher_id: str, session_id: str):
    session, _ = get_owned_session(db, session_id, teacher_id)
    db.delete_session(session["id"])
    logger.info("[DELETE_SESSION] %s", session["id"])


# ==================== ATTENDANCE ====================

ALREADY_MARKED = "Attendance already marked for this session"


def mark_attendance(db, student_id: str, raw_token: Optional[str], now: datetime) -> Record:
    """
    Mark the calling student present (or late) using a QR token.

    A second mark for the same session, through any of its codes, is a
    successful no-op carrying the first mark's status.
    """
    token = parse_qr_payload(raw_token)
    if not token:
        raise ValidationError("Missing token")

    qr = db.get_qr_by_token(token)
    session = db.get_session(qr["session_id"]) if qr else None
    if not qr or not session:
        raise NotFoundError("Invalid QR code")

    if not qr.get("active"):
        raise ValidationError("QR code is no longer active")
    if now >= qr["expires_at"]:
        raise ValidationError("QR code has expired")

    cls = db.get_class(session["class_id"])
    if not cls or student_id not in cls.get("students", []):
        raise AuthorizationError("You are not enrolled in this class")

    existing = db.get_attendance_mark(session["id"], student_id)
    if existing is None:
        try:
            mark = db.add_attendance_mark({
                "session_id": session["id"],
                "qr_id": qr["id"],
                "student_id": student_id,
                "marked_at": now,
            })
        except ConflictError:
            # lost a race with a concurrent mark for the same session
            existing = db.get_attendance_mark(session["id"], student_id)
        else:
            status = classify_mark(session["scheduled_start"], mark["marked_at"])
            logger.info("[MARK] student %s session %s -> %s", student_id, session["id"], status)
            return {
                "message": f"Attendance marked successfully! Status: {status}",
                "status": status,
                "alreadyMarked": False,
                "class": cls.get("name"),
                "session": session.get("title"),
                "markedAt": mark["marked_at"],
            }

    status = classify_mark(session["scheduled_start"], existing["marked_at"]) if existing else None
    return {
        "message": ALREADY_MARKED,
        "status": status,
        "alreadyMarked": True,
        "class": cls.get("name"),
        "session": session.get("title"),
        "markedAt": existing["marked_at"] if existing else None,
    }
