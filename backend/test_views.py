import views
from conftest import at

NOW = at(12, day=15)


def _session(db, course, start, end, title="S"):
    return db.create_session({"class_id": course["id"], "title": title, "scheduled_start": start, "scheduled_end": end})


def test_enrolled_counts_sessions_starting_today_and_every_future_one(db, course, student):
    _session(db, course, at(9, day=15), at(10, day=15))
    _session(db, course, at(15, day=15), at(16, day=15))
    # started yesterday, still running today
    _session(db, course, at(23, day=14), at(1, day=15))
    _session(db, course, at(9, day=25), at(10, day=25))

    (cls,) = views.enrolled_classes(db, student["id"], NOW)

    assert cls["code"] == "CSE101"
    assert cls["todaySessions"] == 2
    assert cls["upcomingSessions"] == 2


def test_enrolled_for_student_without_classes(db, make_user):
    assert views.enrolled_classes(db, make_user("student")["id"], NOW) == []
