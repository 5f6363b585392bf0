import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

import accounts
import lifecycle
from conftest import at
from errors import AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError


@pytest.fixture
def session(db, teacher, course):
    created, _ = lifecycle.create_session(db, teacher["id"], course["id"], at(9), at(10), title="Lecture 1")
    return created


# ==================== CLASS REGISTRY ====================

class TestClassRegistry:
    def test_join_is_case_insensitive_and_keeps_stored_code(self, db, teacher, make_user):
        cls = lifecycle.create_class(db, teacher["id"], "Data Structures", "cse201")
        assert cls["code"] == "CSE201"

        newcomer = make_user("student")
        joined_cls, joined = lifecycle.join_class(db, newcomer["id"], "cse201")

        assert joined is True
        assert newcomer["id"] in joined_cls["students"]
        assert db.get_class(cls["id"])["code"] == "CSE201"

    def test_rejoin_is_a_no_op(self, db, student, course):
        cls, joined = lifecycle.join_class(db, student["id"], "CSE101")
        assert joined is False
        assert cls["students"].count(student["id"]) == 1

    def test_unknown_code(self, db, student):
        with pytest.raises(NotFoundError):
            lifecycle.join_class(db, student["id"], "NOPE")

    def test_blank_code(self, db, student):
        with pytest.raises(ValidationError):
            lifecycle.join_class(db, student["id"], "   ")

    def test_duplicate_code_conflicts(self, db, teacher, course):
        with pytest.raises(ConflictError) as exc:
            lifecycle.create_class(db, teacher["id"], "Another", "cse101")
        assert exc.value.message == "Class code already exists"

    def test_class_access_rules(self, course, teacher, student, make_user):
        lifecycle.ensure_class_access(course, teacher["id"], "teacher")
        lifecycle.ensure_class_access(course, student["id"], "student")
        lifecycle.ensure_class_access(course, "anyone", "admin")

        with pytest.raises(AuthorizationError):
            lifecycle.ensure_class_access(course, make_user("teacher")["id"], "teacher")
        with pytest.raises(AuthorizationError) as exc:
            lifecycle.ensure_class_access(course, make_user("student")["id"], "student")
        assert exc.value.message == "Not enrolled in this class"


# ==================== SESSIONS ====================

class TestSessions:
    def test_default_title(self, db, teacher, course):
        created, _ = lifecycle.create_session(db, teacher["id"], course["id"], at(9), at(10))
        assert created["title"] == "Intro to Computing Session"

    @pytest.mark.parametrize("end", [at(9), at(8)])
    def test_end_must_follow_start(self, db, teacher, course, end):
        with pytest.raises(ValidationError) as exc:
            lifecycle.create_session(db, teacher["id"], course["id"], at(9), end)
        assert exc.value.message == "End time must be after start time"

    def test_missing_fields(self, db, teacher, course):
        with pytest.raises(ValidationError):
            lifecycle.create_session(db, teacher["id"], course["id"], None, at(10))

    def test_other_teachers_class_is_not_found(self, db, course, make_user):
        with pytest.raises(NotFoundError):
            lifecycle.create_session(db, make_user("teacher")["id"], course["id"], at(9), at(10))

    def test_delete_cascades_codes_and_marks(self, db, teacher, student, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 1))
        lifecycle.mark_attendance(db, student["id"], qr["token"], at(9, 2))

        lifecycle.delete_session(db, teacher["id"], session["id"])

        assert db.get_session(session["id"]) is None
        assert db.list_qr_codes(session_ids=[session["id"]]) == []
        assert db.list_attendance_marks(session_ids=[session["id"]]) == []


# ==================== QR CODES ====================

class TestQRCodes:
    def test_expiry_within_session(self, db, teacher, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5), 10)
        assert qr["expires_at"] == at(9, 15)
        assert qr["qr_data_url"].startswith("data:image/png;base64,")

    def test_expiry_capped_at_session_end(self, db, teacher, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 55), 30)
        assert qr["expires_at"] == at(10)

    def test_before_start(self, db, teacher, session):
        with pytest.raises(ValidationError) as exc:
            lifecycle.generate_qr(db, teacher["id"], session["id"], at(8, 55))
        assert exc.value.message.startswith("Cannot generate QR before session start time")

    def test_after_end(self, db, teacher, session):
        with pytest.raises(ValidationError) as exc:
            lifecycle.generate_qr(db, teacher["id"], session["id"], at(10, 5))
        assert exc.value.message == "Session has ended. Cannot generate QR."

    def test_huge_duration_is_capped_at_session_end(self, db, teacher, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5), 1e10)
        assert qr["expires_at"] == at(10)

    @pytest.mark.parametrize("duration", [0, -5, float("inf"), float("nan")])
    def test_non_positive_or_non_finite_duration(self, db, teacher, session, duration):
        with pytest.raises(ValidationError):
            lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5), duration)


    def test_non_owner(self, db, session, make_user):
        with pytest.raises(AuthorizationError):
            lifecycle.generate_qr(db, make_user("teacher")["id"], session["id"], at(9, 5))

    def test_regenerating_leaves_exactly_one_active(self, db, teacher, session):
        first, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        second, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 6))

        active = db.list_qr_codes(session_ids=[session["id"]], active=True)
        assert [q["id"] for q in active] == [second["id"]]
        assert first["token"] != second["token"]

    def test_end_qr_is_idempotent(self, db, teacher, session):
        lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        assert lifecycle.end_qr(db, teacher["id"], session["id"])[0] == 1
        assert lifecycle.end_qr(db, teacher["id"], session["id"])[0] == 0
        assert db.list_qr_codes(session_ids=[session["id"]], active=True) == []


# ==================== ATTENDANCE ====================

class TestMarkAttendance:
    def test_present_and_late_around_grace_cutoff(self, db, teacher, student, course, session, make_user):
        latecomer = make_user("student")
        db.add_student_to_class(course["id"], latecomer["id"])
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5), 10)

        late = lifecycle.mark_attendance(db, latecomer["id"], qr["token"], at(9, 12))
        on_time = lifecycle.mark_attendance(db, student["id"], qr["token"], at(9, 8))

        assert late["status"] == "Late"
        assert late["message"] == "Attendance marked successfully! Status: Late"
        assert on_time["status"] == "Present"
        assert on_time["class"] == "Intro to Computing"
        assert on_time["session"] == "Lecture 1"

    def test_second_mark_is_a_no_op(self, db, teacher, student, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        lifecycle.mark_attendance(db, student["id"], qr["token"], at(9, 6))

        again = lifecycle.mark_attendance(db, student["id"], qr["token"], at(9, 12))

        assert again["message"] == lifecycle.ALREADY_MARKED
        assert again["alreadyMarked"] is True
        assert again["status"] == "Present"
        assert len(db.list_attendance_marks(session_ids=[session["id"]])) == 1

    def test_one_mark_per_session_across_codes(self, db, teacher, student, session):
        first, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        lifecycle.mark_attendance(db, student["id"], first["token"], at(9, 6))
        second, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 30))

        again = lifecycle.mark_attendance(db, student["id"], second["token"], at(9, 31))

        assert again["alreadyMarked"] is True
        assert len(db.list_attendance_marks(session_ids=[session["id"]])) == 1

    def test_json_payload_is_accepted(self, db, teacher, student, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        result = lifecycle.mark_attendance(db, student["id"], '{"t": "%s"}' % qr["token"], at(9, 6))
        assert result["status"] == "Present"

    def test_missing_token(self, db, student):
        with pytest.raises(ValidationError) as exc:
            lifecycle.mark_attendance(db, student["id"], "", at(9, 6))
        assert exc.value.message == "Missing token"

    def test_unknown_token(self, db, student):
        with pytest.raises(NotFoundError) as exc:
            lifecycle.mark_attendance(db, student["id"], "not-a-token", at(9, 6))
        assert exc.value.message == "Invalid QR code"

    def test_superseded_code_is_inactive(self, db, teacher, student, session):
        old, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 6))
        with pytest.raises(ValidationError) as exc:
            lifecycle.mark_attendance(db, student["id"], old["token"], at(9, 7))
        assert exc.value.message == "QR code is no longer active"

    def test_expired_code(self, db, teacher, student, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5), 10)
        with pytest.raises(ValidationError) as exc:
            lifecycle.mark_attendance(db, student["id"], qr["token"], at(9, 16))
        assert exc.value.message == "QR code has expired"

    def test_mark_at_the_expiry_instant_is_expired(self, db, teacher, student, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5), 10)
        with pytest.raises(ValidationError) as exc:
            lifecycle.mark_attendance(db, student["id"], qr["token"], qr["expires_at"])
        assert exc.value.message == "QR code has expired"

    def test_not_on_roster(self, db, teacher, session, make_user):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))
        with pytest.raises(AuthorizationError) as exc:
            lifecycle.mark_attendance(db, make_user("student")["id"], qr["token"], at(9, 6))
        assert exc.value.message == "You are not enrolled in this class"


# ==================== ACCOUNTS ====================

class TestAccounts:
    def test_signup_uppercases_student_id(self, db):
        user = accounts.signup(db, "Alan", "Alan@Example.com", "pw", "2023ucp1665")
        assert user["student_id"] == "2023UCP1665"
        assert user["email"] == "alan@example.com"
        assert user["role"] == "student"

    def test_signup_duplicates_conflict_in_any_case(self, db):
        accounts.signup(db, "Alan", "alan@example.com", "pw", "2023UCP1665")
        with pytest.raises(ConflictError) as exc:
            accounts.signup(db, "Other", "other@example.com", "pw", "2023ucp1665")
        assert exc.value.message == "Student ID already registered"
        with pytest.raises(ConflictError) as exc:
            accounts.signup(db, "Other", "ALAN@example.com", "pw", "2023UCP1666")
        assert exc.value.message == "Email already registered"

    def test_login_failure_is_role_agnostic(self, db, student):
        with pytest.raises(AuthenticationError) as wrong_password:
            accounts.authenticate(db, student["email"], "wrong")
        with pytest.raises(AuthenticationError) as unknown_email:
            accounts.authenticate(db, "ghost@example.com", "secret123")
        assert wrong_password.value.message == unknown_email.value.message == "Invalid credentials"

    def test_only_students_can_become_teachers(self, db, student, teacher):
        promoted = accounts.update_user(db, student["id"], {"role": "teacher"})
        assert promoted["role"] == "teacher"
        with pytest.raises(ValidationError) as exc:
            accounts.update_user(db, teacher["id"], {"role": "student"})
        assert exc.value.message == accounts.ROLE_CHANGE_MESSAGE

    def test_admin_created_teacher_has_no_student_id(self, db):
        user = accounts.create_user(db, "T", "t@example.com", "pw", "teacher", student_id="2023UCP1665")
        assert "student_id" not in user

    def test_deleting_teacher_orphans_classes(self, db, admin, teacher, course):
        second = lifecycle.create_class(db, teacher["id"], "Algorithms", "CSE301")

        accounts.delete_user(db, admin["id"], teacher["id"])

        for class_id in (course["id"], second["id"]):
            cls = db.get_class(class_id)
            assert cls is not None
            assert cls["teacher_id"] is None

    def test_deleting_student_pulls_from_rosters(self, db, admin, student, course):
        accounts.delete_user(db, admin["id"], student["id"])
        assert db.get_class(course["id"])["students"] == []

    def test_cannot_delete_self(self, db, admin):
        with pytest.raises(ValidationError):
            accounts.delete_user(db, admin["id"], admin["id"])

    def test_reassign_requires_a_teacher(self, db, course, student, make_user):
        with pytest.raises(ValidationError):
            accounts.reassign_class_teacher(db, course["id"], student["id"])
        new_teacher = make_user("teacher")
        assert accounts.reassign_class_teacher(db, course["id"], new_teacher["id"])["teacher_id"] == new_teacher["id"]

    def test_seed_runs_once(self, db):
        created, seeded = accounts.seed_demo_data(db)
        assert created is True
        assert db.get_class_by_code("CSE101") is not None
        assert accounts.seed_demo_data(db)[0] is False
        assert accounts.authenticate(db, seeded["student"]["email"], seeded["student"]["password"])


# ==================== CONCURRENCY ====================

def _run_together(count, fn):
    """Start ``count`` calls of ``fn`` at once and return their results"""
    barrier = threading.Barrier(count)

    def call():
        barrier.wait()
        return fn()

    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(call) for _ in range(count)]
        return [f.result() for f in futures]


class TestConcurrency:
    def test_parallel_generation_leaves_one_active_code(self, db, teacher, session):
        issued = _run_together(8, lambda: lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))[0])

        active = db.list_qr_codes(session_ids=[session["id"]], active=True)
        assert len(active) == 1
        assert active[0]["id"] in {qr["id"] for qr in issued}
        assert len(db.list_qr_codes(session_ids=[session["id"]])) == 8

    def test_parallel_marks_store_one_record(self, db, teacher, student, session):
        qr, _, _ = lifecycle.generate_qr(db, teacher["id"], session["id"], at(9, 5))

        results = _run_together(8, lambda: lifecycle.mark_attendance(db, student["id"], qr["token"], at(9, 6)))

        assert len(db.list_attendance_marks(session_ids=[session["id"]])) == 1
        assert [r["alreadyMarked"] for r in results].count(False) == 1
        assert {r["status"] for r in results} == {"Present"}
