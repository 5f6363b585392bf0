from datetime import datetime, timedelta, timezone

import pytest

from attendance_rules import (
    COMPLETED,
    LATE,
    ONGOING,
    PRESENT,
    UPCOMING,
    classify_mark,
    day_bounds,
    ensure_utc,
    is_relevant,
    normalize_student_id,
    overlaps_day,
    parse_qr_payload,
    percentage,
    qr_expiry,
    qr_is_usable,
    session_status,
)
from conftest import at
from errors import ValidationError
from qr_utils import qr_payload


class TestSessionStatus:
    def test_before_start_is_upcoming(self):
        assert session_status(at(8, 59), at(9), at(10)) == UPCOMING

    def test_bounds_are_ongoing(self):
        assert session_status(at(9), at(9), at(10)) == ONGOING
        assert session_status(at(10), at(9), at(10)) == ONGOING

    def test_after_end_is_completed(self):
        assert session_status(at(10, 1), at(9), at(10)) == COMPLETED


class TestClassifyMark:
    def test_grace_window_is_inclusive(self):
        assert classify_mark(at(9), at(9, 10)) == PRESENT

    def test_after_grace_is_late(self):
        assert classify_mark(at(9), at(9, 10) + timedelta(seconds=1)) == LATE

    def test_early_mark_is_present(self):
        assert classify_mark(at(9), at(9, 0)) == PRESENT


def test_relevance_starts_at_scheduled_start():
    session = {"scheduled_start": at(9), "scheduled_end": at(10)}
    assert not is_relevant(session, at(8, 59))
    assert is_relevant(session, at(9))
    assert is_relevant(session, at(23))


class TestQRExpiry:
    def test_duration_inside_session(self):
        assert qr_expiry(at(9, 5), 10, at(10)) == at(9, 15)

    def test_capped_at_session_end(self):
        assert qr_expiry(at(9, 55), 10, at(10)) == at(10)

    @pytest.mark.parametrize("minutes", [1e10, 1e300])
    def test_huge_duration_is_capped_without_overflow(self, minutes):
        assert qr_expiry(at(9, 5), minutes, at(10)) == at(10)

    def test_duration_ending_exactly_at_session_end(self):
        assert qr_expiry(at(9, 50), 10, at(10)) == at(10)

    def test_usable_only_while_active_and_unexpired(self):
        qr = {"active": True, "expires_at": at(9, 15)}
        assert qr_is_usable(qr, at(9, 14))
        assert not qr_is_usable(qr, at(9, 15))
        assert not qr_is_usable({**qr, "active": False}, at(9, 14))


class TestStudentId:
    @pytest.mark.parametrize("raw", ["2023UCP1665", "2023ucp1665", " 2021CS123 ", "2022ABCD12345"])
    def test_valid_ids_are_uppercased(self, raw):
        assert normalize_student_id(raw) == raw.strip().upper()

    @pytest.mark.parametrize("raw", ["", "UCP1665", "2023U1665", "2023UCP12", "2023UCPXX1665", "23UCP1665"])
    def test_invalid_ids_rejected(self, raw):
        with pytest.raises(ValidationError) as exc:
            normalize_student_id(raw)
        assert exc.value.message == "Invalid Student ID format (e.g., 2023UCP1665)"


class TestQRPayload:
    def test_bare_token(self):
        assert parse_qr_payload("  abc-123 ") == "abc-123"

    def test_json_payload_from_image(self):
        assert parse_qr_payload(qr_payload("abc-123")) == "abc-123"

    def test_blank_is_missing(self):
        assert parse_qr_payload(None) is None
        assert parse_qr_payload("   ") is None

    def test_malformed_json_is_treated_as_token(self):
        assert parse_qr_payload("{not json") == "{not json"


def test_percentage_rounds_half_up_and_handles_zero():
    assert percentage(1, 2) == 50
    assert percentage(1, 3) == 33
    assert percentage(2, 3) == 67
    assert percentage(1, 8) == 13
    assert percentage(0, 0) == 0


def test_ensure_utc_handles_naive_and_offset_values():
    naive = datetime(2024, 1, 15, 9, 0)
    assert ensure_utc(naive) == at(9)
    offset = datetime(2024, 1, 15, 14, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
    assert ensure_utc(offset) == at(9)


def test_today_covers_sessions_starting_or_ending_today():
    start, end = day_bounds(at(12))
    assert start == at(0)
    assert end < at(0, day=16)

    overnight = {"scheduled_start": at(23, day=14), "scheduled_end": at(1)}
    tomorrow = {"scheduled_start": at(9, day=16), "scheduled_end": at(10, day=16)}
    assert overlaps_day(overnight, at(12))
    assert not overlaps_day(tomorrow, at(12))
