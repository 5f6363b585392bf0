"""Dashboard listings for teachers and students: sessions with their live QR and attendance state."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from attendance_rules import (
    COMPLETED,
    PRESENT,
    UPCOMING_WINDOW,
    classify_mark,
    day_bounds,
    overlaps_day,
    session_status,
)
from errors import NotFoundError
from lifecycle import ensure_class_access, get_owned_session
from reports import index_marks
from serializers import (
    active_qr,
    attendee_public,
    class_detail,
    class_summary,
    qr_public,
    roster_user_ids,
    session_public,
    user_brief,
)

Record = Dict[str, Any]

STUDENT_HISTORY_LIMIT = 50


def _group(records: List[Record], key: str) -> Dict[str, List[Record]]:
    grouped: Dict[str, List[Record]] = {}
    for record in records:
        grouped.setdefault(record[key], []).append(record)
    return grouped


def _newest_first(sessions: List[Record]) -> List[Record]:
    return sorted(sessions, key=lambda s: s["scheduled_start"], reverse=True)


def _qr_by_session(db, sessions: List[Record]) -> Dict[str, List[Record]]:
    if not sessions:
        return {}
    return _group(db.list_qr_codes(session_ids=[s["id"] for s in sessions]), "session_id")


def _marks_by_session(db, sessions: List[Record], student_id: Optional[str] = None) -> Dict[str, List[Record]]:
    if not sessions:
        return {}
    marks = db.list_attendance_marks(session_ids=[s["id"] for s in sessions], student_id=student_id)
    return _group(marks, "session_id")


def _active_qr_public(qr_codes: List[Record], now: datetime) -> Optional[Record]:
    current = active_qr(qr_codes, now)
    return qr_public(current) if current else None


# ==================== TEACHER ====================

def teacher_sessions(db, teacher_id: str, now: datetime) -> List[Record]:
    classes = {c["id"]: c for c in db.list_classes(teacher_id=teacher_id)}
    if not classes:
        return []
    sessions = _newest_first(db.list_sessions(class_ids=list(classes)))
    qr_codes = _qr_by_session(db, sessions)
    return [
        {
            **session_public(s, now, classes[s["class_id"]]),
            "activeQR": _active_qr_public(qr_codes.get(s["id"], []), now),
        }
        for s in sessions
    ]


def teacher_today(db, teacher_id: str, now: datetime) -> List[Record]:
    """Sessions starting or ending today, in schedule order"""
    classes = {c["id"]: c for c in db.list_classes(teacher_id=teacher_id)}
    if not classes:
        return []
    sessions = [s for s in db.list_sessions(class_ids=list(classes)) if overlaps_day(s, now)]
    qr_codes = _qr_by_session(db, sessions)
    marks = _marks_by_session(db, sessions)

    today = []
    for session in sessions:
        cls = classes[session["class_id"]]
        roster = set(cls.get("students", []))
        today.append({
            **session_public(session, now, cls),
            "attendanceCount": sum(1 for m in marks.get(session["id"], []) if m["student_id"] in roster),
            "totalStudents": len(roster),
            "activeQR": _active_qr_public(qr_codes.get(session["id"], []), now),
        })
    return today


def active_qr_codes(db, teacher_id: str, now: datetime) -> List[Record]:
    """Every unexpired active code across the teacher's sessions, with live attendees"""
    classes = {c["id"]: c for c in db.list_classes(teacher_id=teacher_id)}
    if not classes:
        return []
    sessions = {s["id"]: s for s in db.list_sessions(class_ids=list(classes))}
    if not sessions:
        return []
    live = [q for q in db.list_qr_codes(session_ids=list(sessions), active=True) if now < q["expires_at"]]
    if not live:
        return []

    marks = _group(db.list_attendance_marks(session_ids=[q["session_id"] for q in live]), "qr_id")
    users = db.get_users({m["student_id"] for group in marks.values() for m in group})

    result = []
    for qr in live:
        session = sessions[qr["session_id"]]
        result.append({
            "sessionId": session["id"],
            "sessionTitle": session.get("title"),
            "class": class_summary(classes[session["class_id"]]),
            "qr": qr_public(qr, marks.get(qr["id"], []), users),
        })
    return result


def session_detail(db, teacher_id: str, session_id: str, now: datetime) -> Record:
    """One session with every QR code it has had and who marked through each"""
    session, cls = get_owned_session(db, session_id, teacher_id)
    qr_codes = db.list_qr_codes(session_ids=[session["id"]])
    marks = db.list_attendance_marks(session_ids=[session["id"]])
    users = db.get_users({m["student_id"] for m in marks})
    by_qr = _group(marks, "qr_id")

    return {
        **session_public(session, now, cls),
        "qrCodes": [qr_public(q, by_qr.get(q["id"], []), users) for q in qr_codes],
        "attendees": [
            {
                **attendee_public(m, users),
                "status": classify_mark(session["scheduled_start"], m["marked_at"]),
            }
            for m in marks
            if m["student_id"] in users
        ],
        "activeQR": _active_qr_public(qr_codes, now),
    }


# ==================== STUDENT ====================

def enrolled_classes(db, student_id: str, now: datetime) -> List[Record]:
    classes = db.list_classes(student_id=student_id)
    if not classes:
        return []
    teachers = db.get_users([c["teacher_id"] for c in classes if c.get("teacher_id")])
    by_class = _group(db.list_sessions(class_ids=[c["id"] for c in classes]), "class_id")
    day_start, day_end = day_bounds(now)

    result = []
    for cls in classes:
        sessions = by_class.get(cls["id"], [])
        result.append({
            **class_summary(cls),
            "teacher": user_brief(teachers.get(cls.get("teacher_id"))),
            "studentCount": len(cls.get("students", [])),
            "todaySessions": sum(1 for s in sessions if day_start <= s["scheduled_start"] <= day_end),
            "upcomingSessions": sum(1 for s in sessions if s["scheduled_start"] > now),
        })
    return result


def student_sessions(db, student_id: str, now: datetime) -> List[Record]:
    classes = {c["id"]: c for c in db.list_classes(student_id=student_id)}
    if not classes:
        return []
    sessions = _newest_first(db.list_sessions(class_ids=list(classes)))
    qr_codes = _qr_by_session(db, sessions)
    marks = index_marks(db.list_attendance_marks(session_ids=[s["id"] for s in sessions], student_id=student_id))

    result = []
    for session in sessions:
        mark = marks.get(session["id"], {}).get(student_id)
        result.append({
            **session_public(session, now, classes[session["class_id"]]),
            "attendanceMarked": mark is not None,
            "attendanceStatus": classify_mark(session["scheduled_start"], mark["marked_at"]) if mark else None,
            "hasActiveQR": active_qr(qr_codes.get(session["id"], []), now) is not None,
        })
    return result


def student_day_status(session: Record, now: datetime, mark: Optional[Record], has_active_qr: bool) -> str:
    """
    What a student's dashboard shows for one of today's sessions.

    A mark wins (Attended or Late); otherwise an open code means Active, an
    ended session means Missed, and anything else falls back to the
    schedule-derived status.
    """
    status = session_status(now, session["scheduled_start"], session["scheduled_end"])
    if mark:
        return "Attended" if classify_mark(session["scheduled_start"], mark["marked_at"]) == PRESENT else "Late"
    if has_active_qr and status != COMPLETED:
        return "Active"
    if status == COMPLETED:
        return "Missed"
    return status.capitalize()


def student_today(db, student_id: str, now: datetime) -> List[Record]:
    classes = {c["id"]: c for c in db.list_classes(student_id=student_id)}
    if not classes:
        return []
    sessions = [s for s in db.list_sessions(class_ids=list(classes)) if overlaps_day(s, now)]
    qr_codes = _qr_by_session(db, sessions)
    marks = index_marks(db.list_attendance_marks(session_ids=[s["id"] for s in sessions], student_id=student_id)) if sessions else {}

    result = []
    for session in sessions:
        mark = marks.get(session["id"], {}).get(student_id)
        has_qr = active_qr(qr_codes.get(session["id"], []), now) is not None
        result.append({
            **session_public(session, now, classes[session["class_id"]]),
            "attendanceMarked": mark is not None,
            "markedAt": mark["marked_at"] if mark else None,
            "hasActiveQR": has_qr,
            "studentStatus": student_day_status(session, now, mark, has_qr),
        })
    return result


def student_history(db, student_id: str, now: datetime) -> List[Record]:
    """The student's marks over their most recent marked sessions, newest mark first"""
    marks = db.list_attendance_marks(student_id=student_id)
    marks.sort(key=lambda m: m["marked_at"], reverse=True)
    marks = marks[:STUDENT_HISTORY_LIMIT]
    if not marks:
        return []
    sessions = {s["id"]: s for s in db.list_sessions(session_ids=[m["session_id"] for m in marks])}
    classes = {c["id"]: c for c in db.list_classes(class_ids={s["class_id"] for s in sessions.values()})}

    history = []
    for mark in marks:
        session = sessions.get(mark["session_id"])
        if not session:
            continue
        history.append({
            "id": mark["id"],
            "class": class_summary(classes.get(session["class_id"])),
            "session": session_public(session, now),
            "markedAt": mark["marked_at"],
            "status": classify_mark(session["scheduled_start"], mark["marked_at"]),
        })
    return history


# ==================== SHARED ====================

def upcoming_sessions(db, user_id: str, role: str, now: datetime) -> List[Record]:
    """Sessions starting within the next week for the caller's classes"""
    if role == "teacher":
        classes = db.list_classes(teacher_id=user_id)
    elif role == "student":
        classes = db.list_classes(student_id=user_id)
    else:
        classes = db.list_classes()
    if not classes:
        return []
    by_id = {c["id"]: c for c in classes}
    sessions = db.list_sessions(class_ids=list(by_id), start_from=now, start_to=now + UPCOMING_WINDOW)
    return [session_public(s, now, by_id[s["class_id"]]) for s in sessions if s["scheduled_start"] > now]


def class_sessions(db, class_id: str, user_id: str, role: str, now: datetime) -> Record:
    cls = db.get_class(class_id)
    if not cls:
        raise NotFoundError("Class not found")
    ensure_class_access(cls, user_id, role)

    sessions = _newest_first(db.list_sessions(class_ids=[cls["id"]]))
    qr_codes = _qr_by_session(db, sessions)
    marks = _marks_by_session(db, sessions)
    users = db.get_users(roster_user_ids([cls]))
    roster = set(cls.get("students", []))

    return {
        "class": class_detail(cls, users),
        "sessions": [
            {
                **session_public(s, now),
                "activeQR": _active_qr_public(qr_codes.get(s["id"], []), now),
                "attendeeCount": sum(1 for m in marks.get(s["id"], []) if m["student_id"] in roster),
            }
            for s in sessions
        ],
    }
