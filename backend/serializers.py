"""Storage records -> API payloads (camelCase keys, ``id`` fields, derived session status)."""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from attendance_rules import qr_is_usable, session_status

Record = Dict[str, Any]


def user_public(user: Record) -> Record:
    """Everything but the password hash"""
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "studentId": user.get("student_id"),
        "role": user.get("role"),
        "department": user.get("department"),
        "createdAt": user.get("created_at"),
    }


def user_brief(user: Optional[Record]) -> Optional[Record]:
    if not user:
        return None
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "studentId": user.get("student_id"),
        "department": user.get("department"),
    }


def class_summary(cls: Optional[Record]) -> Optional[Record]:
    if not cls:
        return None
    return {
        "id": cls["id"],
        "name": cls.get("name"),
        "code": cls.get("code"),
        "department": cls.get("department"),
    }


def class_detail(cls: Record, users_by_id: Dict[str, Record]) -> Record:
    """Class with teacher (None once orphaned) and roster populated"""
    roster = [user_brief(users_by_id[s]) for s in cls.get("students", []) if s in users_by_id]
    return {
        **class_summary(cls),
        "teacher": user_brief(users_by_id.get(cls.get("teacher_id"))) if cls.get("teacher_id") else None,
        "students": roster,
        "studentCount": len(cls.get("students", [])),
        "createdAt": cls.get("created_at"),
    }


def roster_user_ids(classes: Iterable[Record]) -> List[str]:
    """Every teacher and student id referenced by these classes"""
    ids = set()
    for cls in classes:
        if cls.get("teacher_id"):
            ids.add(cls["teacher_id"])
        ids.update(cls.get("students", []))
    return list(ids)


def attendee_public(mark: Record, users_by_id: Dict[str, Record]) -> Record:
    return {
        "student": user_brief(users_by_id.get(mark["student_id"])),
        "markedAt": mark["marked_at"],
    }


def qr_public(qr: Record, marks: Optional[List[Record]] = None, users_by_id: Optional[Dict[str, Record]] = None) -> Record:
    payload = {
        "id": qr["id"],
        "token": qr["token"],
        "qrDataUrl": qr.get("qr_data_url"),
        "createdAt": qr["created_at"],
        "expiresAt": qr["expires_at"],
        "active": bool(qr.get("active")),
    }
    if marks is not None:
        attendees = [attendee_public(m, users_by_id or {}) for m in marks]
        payload["attendees"] = attendees
        payload["attendeeCount"] = len(attendees)
    return payload


def active_qr(qr_codes: Iterable[Record], now: datetime) -> Optional[Record]:
    """The session's usable code, if any"""
    return next((qr for qr in qr_codes if qr_is_usable(qr, now)), None)


def session_public(session: Record, now: datetime, cls: Optional[Record] = None) -> Record:
    return {
        "id": session["id"],
        "classId": session.get("class_id"),
        "class": class_summary(cls),
        "title": session.get("title"),
        "scheduledStart": session["scheduled_start"],
        "scheduledEnd": session["scheduled_end"],
        "createdAt": session.get("created_at"),
        "status": session_status(now, session["scheduled_start"], session["scheduled_end"]),
    }
