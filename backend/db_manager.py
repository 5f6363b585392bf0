import json
import logging
import os
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from attendance_rules import utcnow
from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "classes", "sessions", "qr_codes", "attendance_marks")
DATETIME_FIELDS = (
    "created_at",
    "updated_at",
    "scheduled_start",
    "scheduled_end",
    "expires_at",
    "marked_at",
)


class DatabaseManager:
    """Manages file-based storage: one JSON document list per collection.

    Every read-modify-write runs under one re-entrant lock, so the
    one-active-QR and one-mark-per-session rules hold for concurrent
    requests inside a single process.
    """

    def __init__(self, base_dir: str = "data"):
        self.base_dir = base_dir
        self._lock = threading.RLock()
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure the base directory exists"""
        os.makedirs(self.base_dir, exist_ok=True)

    def get_collection_file(self, collection: str) -> str:
        return os.path.join(self.base_dir, f"{collection}.json")

    def read_json(self, file_path: str) -> Optional[Any]:
        """Read a JSON file; None when it does not exist yet"""
        if not os.path.exists(file_path):
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error("Error reading %s: %s", file_path, e)
            raise

    def write_json(self, file_path: str, data: Any):
        """Write through a temp file so readers never see a half-written collection"""
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        tmp_path = f"{file_path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, file_path)
        except OSError as e:
            logger.error("Error writing %s: %s", file_path, e)
            raise

    # ==================== COLLECTION HELPERS ====================

    @staticmethod
    def _decode(record: Dict[str, Any]) -> Dict[str, Any]:
        for field in DATETIME_FIELDS:
            value = record.get(field)
            if isinstance(value, str):
                record[field] = datetime.fromisoformat(value)
        return record

    @staticmethod
    def _encode(record: Dict[str, Any]) -> Dict[str, Any]:
        encoded = dict(record)
        for field in DATETIME_FIELDS:
            value = encoded.get(field)
            if isinstance(value, datetime):
                encoded[field] = value.isoformat()
        return encoded

    def _load(self, collection: str) -> List[Dict[str, Any]]:
        records = self.read_json(self.get_collection_file(collection)) or []
        return [self._decode(r) for r in records]

    def _save(self, collection: str, records: List[Dict[str, Any]]):
        self.write_json(self.get_collection_file(collection), [self._encode(r) for r in records])

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _insert(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(doc)
        record.setdefault("id", self._new_id())
        record.setdefault("created_at", utcnow())
        records = self._load(collection)
        records.append(record)
        self._save(collection, records)
        return dict(record)

    def _find_one(self, collection: str, **criteria) -> Optional[Dict[str, Any]]:
        for record in self._load(collection):
            if all(record.get(k) == v for k, v in criteria.items()):
                return record
        return None

    # ==================== USER OPERATIONS ====================

    def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Create a user; email and (when present) student_id must be unique"""
        with self._lock:
            if self._find_one("users", email=user["email"]):
                raise ConflictError("Email already registered")
            if user.get("student_id") and self._find_one("users", student_id=user["student_id"]):
                raise ConflictError("Student ID already registered")
            return self._insert("users", user)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._find_one("users", id=user_id)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._find_one("users", email=email)

    def get_user_by_student_id(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self._find_one("users", student_id=student_id)

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        wanted = set(user_ids)
        return {u["id"]: u for u in self._load("users") if u["id"] in wanted}

    def list_users(
        self,
        role: Optional[str] = None,
        department: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Users sorted by name; search is a case-insensitive substring over name, email and student ID"""
        needle = search.casefold() if search else None
        users = []
        for user in self._load("users"):
            if role and user.get("role") != role:
                continue
            if department is not None and user.get("department") != department:
                continue
            if needle:
                haystack = (user.get("name"), user.get("email"), user.get("student_id"))
                if not any(needle in (v or "").casefold() for v in haystack):
                    continue
            users.append(user)
        return sorted(users, key=lambda u: (u.get("name") or "").casefold())

    def count_users(self, role: Optional[str] = None, department: Optional[str] = None) -> int:
        return len(self.list_users(role=role, department=department))

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply field updates; a None value removes the field"""
        with self._lock:
            users = self._load("users")
            target = next((u for u in users if u["id"] == user_id), None)
            if not target:
                raise NotFoundError("User not found")

            for other in users:
                if other["id"] == user_id:
                    continue
                if "email" in updates and other.get("email") == updates["email"]:
                    raise ConflictError("Email already in use")
                if updates.get("student_id") and other.get("student_id") == updates["student_id"]:
                    raise ConflictError("Student ID already in use")

            for key, value in updates.items():
                if value is None:
                    target.pop(key, None)
                else:
                    target[key] = value
            target["updated_at"] = utcnow()
            self._save("users", users)
            return dict(target)

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            users = self._load("users")
            remaining = [u for u in users if u["id"] != user_id]
            if len(remaining) == len(users):
                return False
            self._save("users", remaining)
            return True

    # ==================== CLASS OPERATIONS ====================

    def create_class(self, class_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a class; codes are unique"""
        with self._lock:
            if self._find_one("classes", code=class_data["code"]):
                raise ConflictError("Class code already exists")
            doc = {"students": [], **class_data}
            return self._insert("classes", doc)

    def get_class(self, class_id: str) -> Optional[Dict[str, Any]]:
        return self._find_one("classes", id=class_id)

    def get_class_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self._find_one("classes", code=code)

    def list_classes(
        self,
        teacher_id: Optional[str] = None,
        student_id: Optional[str] = None,
        department: Optional[str] = None,
        class_ids: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Classes sorted by code"""
        wanted = set(class_ids) if class_ids is not None else None
        classes = []
        for cls in self._load("classes"):
            if teacher_id is not None and cls.get("teacher_id") != teacher_id:
                continue
            if student_id is not None and student_id not in cls.get("students", []):
                continue
            if department is not None and cls.get("department") != department:
                continue
            if wanted is not None and cls["id"] not in wanted:
                continue
            classes.append(cls)
        return sorted(classes, key=lambda c: c.get("code") or "")

    def add_student_to_class(self, class_id: str, student_id: str) -> bool:
        """Add to the roster; False when the student was already on it"""
        with self._lock:
            classes = self._load("classes")
            cls = next((c for c in classes if c["id"] == class_id), None)
            if not cls:
                raise NotFoundError("Class not found")
            roster = cls.setdefault("students", [])
            if student_id in roster:
                return False
            roster.append(student_id)
            cls["updated_at"] = utcnow()
            self._save("classes", classes)
            return True

    def set_class_teacher(self, class_id: str, teacher_id: Optional[str]) -> Dict[str, Any]:
        with self._lock:
            classes = self._load("classes")
            cls = next((c for c in classes if c["id"] == class_id), None)
            if not cls:
                raise NotFoundError("Class not found")
            cls["teacher_id"] = teacher_id
            cls["updated_at"] = utcnow()
            self._save("classes", classes)
            return dict(cls)

    def unset_class_teacher(self, teacher_id: str) -> int:
        """Orphan every class owned by this teacher; returns how many changed"""
        with self._lock:
            classes = self._load("classes")
            changed = 0
            for cls in classes:
                if cls.get("teacher_id") == teacher_id:
                    cls["teacher_id"] = None
                    changed += 1
            if changed:
                self._save("classes", classes)
            return changed

    def remove_student_from_classes(self, student_id: str) -> int:
        with self._lock:
            classes = self._load("classes")
            changed = 0
            for cls in classes:
                if student_id in cls.get("students", []):
                    cls["students"] = [s for s in cls["students"] if s != student_id]
                    changed += 1
            if changed:
                self._save("classes", classes)
            return changed

    # ==================== SESSION OPERATIONS ====================

    def create_session(self, session_data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            return self._insert("sessions", session_data)

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._find_one("sessions", id=session_id)

    def list_sessions(
        self,
        class_ids: Optional[Iterable[str]] = None,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
        session_ids: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Sessions sorted by scheduled start, oldest first"""
        wanted_classes = set(class_ids) if class_ids is not None else None
        wanted_sessions = set(session_ids) if session_ids is not None else None
        sessions = []
        for session in self._load("sessions"):
            if wanted_classes is not None and session.get("class_id") not in wanted_classes:
                continue
            if wanted_sessions is not None and session["id"] not in wanted_sessions:
                continue
            if start_from is not None and session["scheduled_start"] < start_from:
                continue
            if start_to is not None and session["scheduled_start"] > start_to:
                continue
            sessions.append(session)
        return sorted(sessions, key=lambda s: s["scheduled_start"])

    def delete_session(self, session_id: str) -> bool:
        """Delete a session together with its QR codes and attendance marks"""
        with self._lock:
            sessions = self._load("sessions")
            remaining = [s for s in sessions if s["id"] != session_id]
            if len(remaining) == len(sessions):
                return False
            self._save("sessions", remaining)
            self._save("qr_codes", [q for q in self._load("qr_codes") if q.get("session_id") != session_id])
            self._save(
                "attendance_marks",
                [m for m in self._load("attendance_marks") if m.get("session_id") != session_id],
            )
            return True

    # ==================== QR CODE OPERATIONS ====================

    def rotate_qr_code(self, session_id: str, qr_data: Dict[str, Any]) -> Dict[str, Any]:
        """Deactivate the session's active codes and store the new active one in one critical section"""
        with self._lock:
            codes = self._load("qr_codes")
            for qr in codes:
                if qr.get("session_id") == session_id and qr.get("active"):
                    qr["active"] = False
            if any(q.get("token") == qr_data["token"] for q in codes):
                raise ConflictError("QR token already exists")

            record = dict(qr_data)
            record["session_id"] = session_id
            record["active"] = True
            record.setdefault("id", self._new_id())
            record.setdefault("created_at", utcnow())
            codes.append(record)
            self._save("qr_codes", codes)
            return dict(record)

    def deactivate_qr_codes(self, session_id: str) -> int:
        with self._lock:
            codes = self._load("qr_codes")
            changed = 0
            for qr in codes:
                if qr.get("session_id") == session_id and qr.get("active"):
                    qr["active"] = False
                    changed += 1
            if changed:
                self._save("qr_codes", codes)
            return changed

    def get_qr_by_token(self, token: str) -> Optional[Dict[str, Any]]:
        return self._find_one("qr_codes", token=token)

    def list_qr_codes(
        self,
        session_ids: Optional[Iterable[str]] = None,
        active: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        """QR codes in creation order"""
        wanted = set(session_ids) if session_ids is not None else None
        codes = []
        for qr in self._load("qr_codes"):
            if wanted is not None and qr.get("session_id") not in wanted:
                continue
            if active is not None and bool(qr.get("active")) != active:
                continue
            codes.append(qr)
        return sorted(codes, key=lambda q: q["created_at"])

    # ==================== ATTENDANCE OPERATIONS ====================

    def add_attendance_mark(self, mark: Dict[str, Any]) -> Dict[str, Any]:
        """Store a mark; at most one per (session, student)"""
        with self._lock:
            if self._find_one(
                "attendance_marks",
                session_id=mark["session_id"],
                student_id=mark["student_id"],
            ):
                raise ConflictError("Attendance already marked for this session")
            return self._insert("attendance_marks", mark)

    def get_attendance_mark(self, session_id: str, student_id: str) -> Optional[Dict[str, Any]]:
        return self._find_one("attendance_marks", session_id=session_id, student_id=student_id)

    def list_attendance_marks(
        self,
        session_ids: Optional[Iterable[str]] = None,
        student_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Marks in the order they were made"""
        wanted = set(session_ids) if session_ids is not None else None
        marks = []
        for mark in self._load("attendance_marks"):
            if wanted is not None and mark.get("session_id") not in wanted:
                continue
            if student_id is not None and mark.get("student_id") != student_id:
                continue
            marks.append(mark)
        return sorted(marks, key=lambda m: m["marked_at"])

    def clear_attendance_marks(self) -> int:
        with self._lock:
            count = len(self._load("attendance_marks"))
            self._save("attendance_marks", [])
            return count

    # ==================== STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Get overall database statistics"""
        stats: Dict[str, Any] = {name: len(self._load(name)) for name in COLLECTIONS}
        stats["timestamp"] = utcnow().isoformat()
        return stats
