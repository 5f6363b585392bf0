"""
Pure attendance rules.

Everything here is a function of its arguments (callers pass ``now``), so
session status, the grace window and QR expiry are decided in exactly one
place and can be tested without a clock or a database.
"""
import json
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from errors import ValidationError

GRACE_PERIOD = timedelta(minutes=10)
DEFAULT_QR_DURATION_MINUTES = 10

PRESENT = "Present"
LATE = "Late"
ABSENT = "Absent"

UPCOMING = "upcoming"
ONGOING = "ongoing"
COMPLETED = "completed"

# e.g. 2023UCP1665
STUDENT_ID_PATTERN = re.compile(r"^[0-9]{4}[A-Z]{2,4}[0-9]{3,5}$", re.IGNORECASE)
STUDENT_ID_FORMAT_MESSAGE = "Invalid Student ID format (e.g., 2023UCP1665)"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def session_status(now: datetime, scheduled_start: datetime, scheduled_end: datetime) -> str:
    """Derived, never stored: recomputed on every read"""
    if now < scheduled_start:
        return UPCOMING
    if now <= scheduled_end:
        return ONGOING
    return COMPLETED


def classify_mark(scheduled_start: datetime, marked_at: datetime) -> str:
    """Present inside the grace window (inclusive), Late after it"""
    if marked_at <= scheduled_start + GRACE_PERIOD:
        return PRESENT
    return LATE


def is_relevant(session: Dict[str, Any], now: datetime) -> bool:
    """A session counts toward attendance denominators once it has started"""
    return now >= session["scheduled_start"]


def qr_expiry(now: datetime, duration_minutes: float, scheduled_end: datetime) -> datetime:
    """QR codes never outlive their session"""
    remaining = scheduled_end - now
    try:
        requested = timedelta(minutes=duration_minutes)
    except OverflowError:
        return scheduled_end
    if requested >= remaining:
        return scheduled_end
    return now + requested


def qr_is_usable(qr: Dict[str, Any], now: datetime) -> bool:
    return bool(qr.get("active")) and now < qr["expires_at"]


def normalize_student_id(value: str) -> str:
    """Validate the student ID format and return its canonical uppercase form"""
    candidate = (value or "").strip()
    if not STUDENT_ID_PATTERN.match(candidate):
        raise ValidationError(STUDENT_ID_FORMAT_MESSAGE)
    return candidate.upper()


def parse_qr_payload(raw: Optional[str]) -> Optional[str]:
    """Accept either the bare token or the ``{"t": token}`` JSON encoded in the QR image"""
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    if value.startswith("{"):
        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            return value
        if isinstance(data, dict) and data.get("t"):
            return str(data["t"]).strip()
    return value


def percentage(part: int, whole: int) -> int:
    """Rounded percentage, halves rounded up; 0 when there is nothing to divide by"""
    if whole <= 0:
        return 0
    return int(math.floor(part * 100 / whole + 0.5))


UPCOMING_WINDOW = timedelta(days=7)


def day_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """First and last instant of ``now``'s calendar day, in ``now``'s timezone"""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


def overlaps_day(session: Dict[str, Any], now: datetime) -> bool:
    """Starts or ends on the same calendar day as ``now``"""
    start, end = day_bounds(now)
    return start <= session["scheduled_start"] <= end or start <= session["scheduled_end"] <= end
