"""
Read-side aggregations over classes, sessions and attendance marks.

Everything is computed in memory from a handful of storage queries. Only
*relevant* sessions (already started at ``now``) count toward attendance
denominators, and only marks by students currently on a class roster count
toward numerators, so percentages stay within 0-100.
"""
import csv
import io
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from attendance_rules import ABSENT, LATE, PRESENT, classify_mark, is_relevant, percentage
from errors import NotFoundError
from serializers import class_summary, roster_user_ids, user_brief

Record = Dict[str, Any]
MarkIndex = Dict[str, Dict[str, Record]]

STATUS_ORDER = {PRESENT: 0, LATE: 1, ABSENT: 2}


def index_marks(marks: Iterable[Record]) -> MarkIndex:
    """session_id -> student_id -> earliest mark"""
    index: MarkIndex = {}
    for mark in marks:
        per_session = index.setdefault(mark["session_id"], {})
        current = per_session.get(mark["student_id"])
        if current is None or mark["marked_at"] < current["marked_at"]:
            per_session[mark["student_id"]] = mark
    return index


def student_status(session: Record, student_id: str, marks: MarkIndex) -> Tuple[str, Optional[datetime]]:
    mark = marks.get(session["id"], {}).get(student_id)
    if not mark:
        return ABSENT, None
    return classify_mark(session["scheduled_start"], mark["marked_at"]), mark["marked_at"]


def _load_scope(db, classes: List[Record], now: datetime) -> Tuple[List[Record], MarkIndex]:
    """Relevant sessions of these classes and the marks made in them"""
    if not classes:
        return [], {}
    sessions = [s for s in db.list_sessions(class_ids=[c["id"] for c in classes]) if is_relevant(s, now)]
    if not sessions:
        return [], {}
    marks = db.list_attendance_marks(session_ids=[s["id"] for s in sessions])
    return sessions, index_marks(marks)


def _tally(classes: List[Record], sessions: List[Record], marks: MarkIndex) -> Record:
    """Possible and actual attendances, split into present and late"""
    by_class: Dict[str, List[Record]] = {}
    for session in sessions:
        by_class.setdefault(session["class_id"], []).append(session)

    possible = present = late = 0
    for cls in classes:
        roster = cls.get("students", [])
        class_sessions = by_class.get(cls["id"], [])
        possible += len(roster) * len(class_sessions)
        for session in class_sessions:
            for student_id in roster:
                status, _ = student_status(session, student_id, marks)
                if status == PRESENT:
                    present += 1
                elif status == LATE:
                    late += 1

    attended = present + late
    return {
        "totalSessions": len(sessions),
        "totalPossibleAttendances": possible,
        "totalAttendances": attended,
        "totalPresent": present,
        "totalLate": late,
        "totalAbsent": possible - attended,
        "attendancePercentage": percentage(attended, possible),
    }


# ==================== ADMIN DASHBOARD ====================

def system_stats(db, now: datetime) -> Record:
    classes = db.list_classes()
    sessions, marks = _load_scope(db, classes, now)
    tally = _tally(classes, sessions, marks)
    return {
        "totalStudents": db.count_users(role="student"),
        "totalTeachers": db.count_users(role="teacher"),
        "activeClasses": len(classes),
        "overallAttendance": tally["attendancePercentage"],
    }


def department_rollup(db, now: datetime) -> List[Record]:
    """
    Per-department counts and attendance.

    Departments are free text: the union of every user and class department
    string, so spelling variants show up as separate departments.
    """
    names = {u["department"] for u in db.list_users() if u.get("department")}
    names.update(c["department"] for c in db.list_classes() if c.get("department"))

    rollup = []
    for name in sorted(names):
        classes = db.list_classes(department=name)
        sessions, marks = _load_scope(db, classes, now)
        tally = _tally(classes, sessions, marks)
        rollup.append({
            "name": name,
            "students": db.count_users(role="student", department=name),
            "teachers": db.count_users(role="teacher", department=name),
            "classes": len(classes),
            "attendance": tally["attendancePercentage"],
        })
    return rollup


def class_wise_report(db, now: datetime) -> List[Record]:
    classes = db.list_classes()
    users = db.get_users(roster_user_ids(classes))
    sessions, marks = _load_scope(db, classes, now)

    report = []
    for cls in classes:
        tally = _tally([cls], [s for s in sessions if s["class_id"] == cls["id"]], marks)
        report.append({
            "class": {
                **class_summary(cls),
                "teacher": user_brief(users.get(cls.get("teacher_id"))),
            },
            "statistics": {"totalStudents": len(cls.get("students", [])), **tally},
        })
    return report


def student_summary(db, student: Record, now: datetime) -> Record:
    """One student's attendance, per enrolled class and overall"""
    classes = db.list_classes(student_id=student["id"])
    teachers = db.get_users([c["teacher_id"] for c in classes if c.get("teacher_id")])
    sessions, marks = _load_scope(db, classes, now)

    per_class = []
    overall = {"totalSessions": 0, "present": 0, "late": 0, "absent": 0}
    for cls in classes:
        counts = {"totalSessions": 0, "present": 0, "late": 0, "absent": 0}
        for session in sessions:
            if session["class_id"] != cls["id"]:
                continue
            status, _ = student_status(session, student["id"], marks)
            counts["totalSessions"] += 1
            counts[status.lower()] += 1
        for key, value in counts.items():
            overall[key] += value
        per_class.append({
            "class": {
                **class_summary(cls),
                "teacher": user_brief(teachers.get(cls.get("teacher_id"))),
            },
            **counts,
            "attendancePercentage": percentage(counts["present"] + counts["late"], counts["totalSessions"]),
        })

    overall["attendancePercentage"] = percentage(overall["present"] + overall["late"], overall["totalSessions"])
    return {"student": user_brief(student), "classes": per_class, "overall": overall}


def students_attendance_report(db, now: datetime) -> List[Record]:
    return [student_summary(db, student, now) for student in db.list_users(role="student")]


def teacher_summary(db, teacher: Record, now: datetime) -> Record:
    classes = db.list_classes(teacher_id=teacher["id"])
    sessions, marks = _load_scope(db, classes, now)
    tally = _tally(classes, sessions, marks)
    return {
        "teacher": user_brief(teacher),
        "statistics": {
            "totalClasses": len(classes),
            "totalStudents": sum(len(c.get("students", [])) for c in classes),
            **tally,
        },
        "classes": [
            {**class_summary(c), "studentCount": len(c.get("students", []))}
            for c in classes
        ],
    }


def teachers_report(db, now: datetime) -> List[Record]:
    return [teacher_summary(db, teacher, now) for teacher in db.list_users(role="teacher")]


# ==================== REGISTERS ====================

def class_register(db, cls: Record, now: datetime) -> Record:
    """Every roster student's record across the class's relevant sessions, best attendance first"""
    students = db.get_users(cls.get("students", []))
    sessions, marks = _load_scope(db, [cls], now)

    rows = []
    for student_id in cls.get("students", []):
        student = students.get(student_id)
        if not student:
            continue
        attended = late = 0
        details = []
        for session in sessions:
            status, marked_at = student_status(session, student_id, marks)
            if status == PRESENT:
                attended += 1
            elif status == LATE:
                late += 1
            details.append({
                "sessionId": session["id"],
                "title": session.get("title"),
                "date": session["scheduled_start"],
                "status": status,
                "markedAt": marked_at,
            })
        total = len(sessions)
        rows.append({
            "student": user_brief(student),
            "totalSessions": total,
            "sessionsAttended": attended,
            "sessionsLate": late,
            "sessionsAbsent": total - attended - late,
            "attendancePercentage": percentage(attended + late, total),
            "sessionDetails": details,
        })

    rows.sort(key=lambda r: r["attendancePercentage"], reverse=True)
    return {
        "class": {
            **class_summary(cls),
            "totalStudents": len(cls.get("students", [])),
            "totalSessions": len(sessions),
        },
        "sessions": [
            {"id": s["id"], "title": s.get("title"), "date": s["scheduled_start"]}
            for s in sessions
        ],
        "students": rows,
    }


def session_attendance(db, session: Record, cls: Record) -> Record:
    """Roster of one session with Present / Late / Absent, in that order"""
    students = db.get_users(cls.get("students", []))
    marks = index_marks(db.list_attendance_marks(session_ids=[session["id"]]))

    rows = []
    for student_id in cls.get("students", []):
        student = students.get(student_id)
        if not student:
            continue
        status, marked_at = student_status(session, student_id, marks)
        rows.append({"student": user_brief(student), "status": status, "markedAt": marked_at})
    rows.sort(key=lambda r: STATUS_ORDER[r["status"]])

    return {
        "session": {
            "id": session["id"],
            "title": session.get("title"),
            "class": class_summary(cls),
            "scheduledStart": session["scheduled_start"],
            "scheduledEnd": session["scheduled_end"],
        },
        "attendance": rows,
        "stats": {
            "total": len(rows),
            "present": sum(1 for r in rows if r["status"] == PRESENT),
            "late": sum(1 for r in rows if r["status"] == LATE),
            "absent": sum(1 for r in rows if r["status"] == ABSENT),
        },
    }


# ==================== MARK FEEDS ====================

def mark_feed(
    db,
    sessions: List[Record],
    classes_by_id: Optional[Dict[str, Record]] = None,
    student_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Record]:
    """Flat list of marks in these sessions with their derived status, newest first"""
    if not sessions:
        return []
    sessions_by_id = {s["id"]: s for s in sessions}
    if classes_by_id is None:
        class_ids = {s["class_id"] for s in sessions}
        classes_by_id = {c["id"]: c for c in db.list_classes(class_ids=class_ids)}

    marks = db.list_attendance_marks(session_ids=list(sessions_by_id), student_id=student_id)
    marks.sort(key=lambda m: m["marked_at"], reverse=True)
    if limit is not None:
        marks = marks[:limit]
    students = db.get_users({m["student_id"] for m in marks})

    feed = []
    for mark in marks:
        student = students.get(mark["student_id"])
        if not student:
            # deleted user
            continue
        session = sessions_by_id[mark["session_id"]]
        feed.append({
            "id": f"{session['id']}-{student['id']}",
            "student": user_brief(student),
            "class": class_summary(classes_by_id.get(session["class_id"])),
            "session": {
                "id": session["id"],
                "title": session.get("title"),
                "scheduledStart": session["scheduled_start"],
            },
            "markedAt": mark["marked_at"],
            "status": classify_mark(session["scheduled_start"], mark["marked_at"]),
        })
    return feed


def filtered_mark_feed(
    db,
    classes: List[Record],
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Record]:
    """Marks for these classes, optionally limited to sessions starting in [start_date, end_date]"""
    if not classes:
        return []
    sessions = db.list_sessions(
        class_ids=[c["id"] for c in classes],
        start_from=start_date,
        start_to=end_date,
    )
    return mark_feed(db, sessions, {c["id"]: c for c in classes})


def recent_activity(db, limit: int = 20) -> List[Record]:
    return mark_feed(db, db.list_sessions(), limit=limit)


def class_marks(db, cls: Record) -> List[Record]:
    return mark_feed(db, db.list_sessions(class_ids=[cls["id"]]), {cls["id"]: cls})


# ==================== CSV EXPORT ====================

def _class_wise_rows(db, now: datetime) -> Tuple[List[str], List[List[Any]]]:
    header = [
        "Class Code", "Class Name", "Department", "Teacher", "Students", "Sessions",
        "Possible", "Attended", "Present", "Late", "Absent", "Attendance %",
    ]
    rows = []
    for entry in class_wise_report(db, now):
        cls, stats = entry["class"], entry["statistics"]
        rows.append([
            cls["code"], cls["name"], cls.get("department") or "",
            (cls["teacher"] or {}).get("name", ""),
            stats["totalStudents"], stats["totalSessions"], stats["totalPossibleAttendances"],
            stats["totalAttendances"], stats["totalPresent"], stats["totalLate"],
            stats["totalAbsent"], stats["attendancePercentage"],
        ])
    return header, rows


def _student_rows(db, now: datetime) -> Tuple[List[str], List[List[Any]]]:
    header = [
        "Student ID", "Name", "Email", "Department", "Class Code", "Class Name",
        "Sessions", "Present", "Late", "Absent", "Attendance %",
    ]
    rows = []
    for entry in students_attendance_report(db, now):
        student = entry["student"]
        base = [student["studentId"] or "", student["name"], student["email"], student.get("department") or ""]
        for cls in entry["classes"]:
            rows.append(base + [
                cls["class"]["code"], cls["class"]["name"], cls["totalSessions"],
                cls["present"], cls["late"], cls["absent"], cls["attendancePercentage"],
            ])
        overall = entry["overall"]
        rows.append(base + [
            "ALL", "Overall", overall["totalSessions"], overall["present"],
            overall["late"], overall["absent"], overall["attendancePercentage"],
        ])
    return header, rows


def _teacher_rows(db, now: datetime) -> Tuple[List[str], List[List[Any]]]:
    header = [
        "Name", "Email", "Department", "Classes", "Students", "Sessions",
        "Possible", "Attended", "Present", "Late", "Absent", "Attendance %",
    ]
    rows = []
    for entry in teachers_report(db, now):
        teacher, stats = entry["teacher"], entry["statistics"]
        rows.append([
            teacher["name"], teacher["email"], teacher.get("department") or "",
            stats["totalClasses"], stats["totalStudents"], stats["totalSessions"],
            stats["totalPossibleAttendances"], stats["totalAttendances"],
            stats["totalPresent"], stats["totalLate"], stats["totalAbsent"],
            stats["attendancePercentage"],
        ])
    return header, rows


EXPORTS = {
    "class-wise": _class_wise_rows,
    "students": _student_rows,
    "teachers": _teacher_rows,
}


def export_csv(db, kind: str, now: datetime) -> str:
    """Tabular reshaping of an aggregate report"""
    builder = EXPORTS.get(kind)
    if builder is None:
        raise NotFoundError(f"Unknown export: {kind}")
    header, rows = builder(db, now)
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    writer.writerows(rows)
    return buf.getvalue()
