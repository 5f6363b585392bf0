import csv
import io

import pytest

import reports
from conftest import at
from errors import NotFoundError

NOW = at(12, day=16)


@pytest.fixture
def timeline(db, course, student, make_user):
    """
    Two started sessions and one future one.

    ``student`` is Present on day 15 and Late on day 16; ``absentee`` never
    marks; ``outsider`` marks day 15 without being on the roster.
    """
    absentee = make_user("student", name="Bob Absent")
    outsider = make_user("student", name="Zed Outsider")
    db.add_student_to_class(course["id"], absentee["id"])

    first = db.create_session({"class_id": course["id"], "title": "Day 1", "scheduled_start": at(9, day=15), "scheduled_end": at(10, day=15)})
    second = db.create_session({"class_id": course["id"], "title": "Day 2", "scheduled_start": at(9, day=16), "scheduled_end": at(10, day=16)})
    db.create_session({"class_id": course["id"], "title": "Later", "scheduled_start": at(9, day=20), "scheduled_end": at(10, day=20)})

    def mark(session, user, when):
        db.add_attendance_mark({"session_id": session["id"], "qr_id": "qr", "student_id": user["id"], "marked_at": when})

    mark(first, student, at(9, 5, day=15))
    mark(first, outsider, at(9, 30, day=15))
    mark(second, student, at(9, 20, day=16))

    return {
        "class": db.get_class(course["id"]),
        "first": first,
        "second": second,
        "absentee": absentee,
        "outsider": outsider,
    }


def test_index_marks_keeps_earliest():
    marks = [
        {"session_id": "s", "student_id": "u", "marked_at": at(9, 20)},
        {"session_id": "s", "student_id": "u", "marked_at": at(9, 5)},
    ]
    assert reports.index_marks(marks)["s"]["u"]["marked_at"] == at(9, 5)


def test_system_stats_count_only_started_sessions_and_roster_marks(db, timeline):
    stats = reports.system_stats(db, NOW)
    assert stats == {
        "totalStudents": 3,
        "totalTeachers": 1,
        "activeClasses": 1,
        "overallAttendance": 50,
    }


def test_department_rollup_groups_by_exact_string(db, timeline, make_user):
    make_user("teacher", department="computer science")
    rollup = {d["name"]: d for d in reports.department_rollup(db, NOW)}

    assert rollup["Computer Science"] == {
        "name": "Computer Science",
        "students": 1,
        "teachers": 1,
        "classes": 1,
        "attendance": 50,
    }
    assert rollup["computer science"]["classes"] == 0


def test_class_register_sorted_by_percentage(db, timeline, student):
    register = reports.class_register(db, timeline["class"], NOW)

    assert register["class"]["totalSessions"] == 2
    best, worst = register["students"]
    assert best["student"]["id"] == student["id"]
    assert (best["sessionsAttended"], best["sessionsLate"], best["sessionsAbsent"]) == (1, 1, 0)
    assert best["attendancePercentage"] == 100
    assert worst["student"]["id"] == timeline["absentee"]["id"]
    assert worst["sessionsAbsent"] == 2
    assert worst["attendancePercentage"] == 0
    assert [d["status"] for d in best["sessionDetails"]] == ["Present", "Late"]


def test_class_wise_report(db, timeline):
    (entry,) = reports.class_wise_report(db, NOW)
    assert entry["class"]["code"] == "CSE101"
    assert entry["class"]["teacher"]["name"] == "Grace Hopper"
    stats = entry["statistics"]
    assert stats["totalStudents"] == 2
    assert stats["totalSessions"] == 2
    assert stats["totalPossibleAttendances"] == 4
    assert (stats["totalPresent"], stats["totalLate"], stats["totalAbsent"]) == (1, 1, 2)
    assert stats["attendancePercentage"] == 50


def test_student_summary(db, timeline, student):
    summary = reports.student_summary(db, student, NOW)
    (per_class,) = summary["classes"]
    assert (per_class["present"], per_class["late"], per_class["absent"]) == (1, 1, 0)
    assert summary["overall"]["attendancePercentage"] == 100

    outsider = reports.student_summary(db, timeline["outsider"], NOW)
    assert outsider["classes"] == []
    assert outsider["overall"]["attendancePercentage"] == 0


def test_teachers_report(db, timeline, teacher):
    (entry,) = reports.teachers_report(db, NOW)
    assert entry["teacher"]["id"] == teacher["id"]
    assert entry["statistics"]["totalClasses"] == 1
    assert entry["statistics"]["totalStudents"] == 2
    assert entry["statistics"]["attendancePercentage"] == 50


def test_session_attendance_orders_present_late_absent(db, timeline, course):
    result = reports.session_attendance(db, timeline["second"], timeline["class"])
    assert [row["status"] for row in result["attendance"]] == ["Late", "Absent"]
    assert result["stats"] == {"total": 2, "present": 0, "late": 1, "absent": 1}


def test_recent_activity_newest_first(db, timeline, student):
    feed = reports.recent_activity(db)
    assert [entry["markedAt"] for entry in feed] == sorted((e["markedAt"] for e in feed), reverse=True)
    assert len(feed) == 3

    (latest,) = reports.recent_activity(db, limit=1)
    assert latest["student"]["id"] == student["id"]
    assert latest["status"] == "Late"


def test_filtered_feed_by_start_date(db, timeline):
    feed = reports.filtered_mark_feed(db, [timeline["class"]], start_date=at(0, day=16))
    assert [entry["session"]["id"] for entry in feed] == [timeline["second"]["id"]]


def test_class_marks_skip_deleted_students(db, timeline):
    db.delete_user(timeline["outsider"]["id"])
    assert len(reports.class_marks(db, timeline["class"])) == 2


def test_export_class_wise_csv(db, timeline):
    rows = list(csv.reader(io.StringIO(reports.export_csv(db, "class-wise", NOW))))
    assert rows[0][0] == "Class Code"
    assert rows[1][0] == "CSE101"
    assert rows[1][-1] == "50"


def test_export_students_csv_has_overall_rows(db, timeline):
    rows = list(csv.reader(io.StringIO(reports.export_csv(db, "students", NOW))))
    assert sum(1 for row in rows if row[4] == "ALL") == 3


def test_unknown_export(db):
    with pytest.raises(NotFoundError):
        reports.export_csv(db, "bogus", NOW)
