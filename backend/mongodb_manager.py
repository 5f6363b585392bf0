import logging
import re
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from attendance_rules import utcnow
from db_manager import COLLECTIONS
from errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class MongoDBManager:
    """Manages MongoDB storage with the same interface as DatabaseManager.

    The one-active-QR and one-mark-per-session rules are unique indexes, so
    they hold across processes, not just inside one.
    """

    def __init__(self, mongo_uri: str, db_name: str = "attendance_db"):
        """
        Initialize MongoDB connection

        Args:
            mongo_uri: MongoDB connection URI
            db_name: Name of the database to use
        """
        try:
            # tz_aware so timestamps come back comparable with utcnow()
            self.client = MongoClient(mongo_uri, tz_aware=True)
            self.db = self.client[db_name]

            self.users = self.db["users"]
            self.classes = self.db["classes"]
            self.sessions = self.db["sessions"]
            self.qr_codes = self.db["qr_codes"]
            self.attendance_marks = self.db["attendance_marks"]

            self._create_indexes()
            logger.info("MongoDB connection established (%s)", db_name)
        except PyMongoError as e:
            logger.error("Failed to connect to MongoDB: %s", e)
            raise

    def _create_indexes(self):
        """Create the indexes that carry the uniqueness rules"""
        def _ensure_index(collection, keys, *, unique: bool = False, **options):
            """Create an index if missing; if one exists on the same keys without uniqueness, replace it."""
            desired_key = list(keys)
            existing = collection.index_information()

            for name, info in existing.items():
                if info.get("key") == desired_key:
                    existing_unique = bool(info.get("unique", False))
                    if unique and not existing_unique:
                        collection.drop_index(name)
                    else:
                        return

            try:
                collection.create_index(keys, unique=unique, **options)
            except DuplicateKeyError as create_err:
                # Existing duplicates block a unique index; keep serving and say so loudly.
                logger.warning("Could not create index %s (unique=%s): %s", desired_key, unique, create_err)

        _ensure_index(self.users, [("id", ASCENDING)], unique=True)
        _ensure_index(self.users, [("email", ASCENDING)], unique=True)
        _ensure_index(
            self.users,
            [("student_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"student_id": {"$type": "string"}},
        )
        _ensure_index(self.users, [("role", ASCENDING)])

        _ensure_index(self.classes, [("id", ASCENDING)], unique=True)
        _ensure_index(self.classes, [("code", ASCENDING)], unique=True)
        _ensure_index(self.classes, [("teacher_id", ASCENDING)])
        _ensure_index(self.classes, [("students", ASCENDING)])

        _ensure_index(self.sessions, [("id", ASCENDING)], unique=True)
        _ensure_index(self.sessions, [("class_id", ASCENDING), ("scheduled_start", ASCENDING)])

        _ensure_index(self.qr_codes, [("token", ASCENDING)], unique=True)
        _ensure_index(
            self.qr_codes,
            [("session_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"active": True},
            name="one_active_qr_per_session",
        )
        _ensure_index(self.qr_codes, [("session_id", ASCENDING), ("created_at", ASCENDING)])

        _ensure_index(
            self.attendance_marks,
            [("session_id", ASCENDING), ("student_id", ASCENDING)],
            unique=True,
        )
        _ensure_index(self.attendance_marks, [("student_id", ASCENDING)])
        _ensure_index(self.attendance_marks, [("marked_at", ASCENDING)])

        logger.info("MongoDB indexes ensured")

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _insert(self, collection, doc: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(doc)
        record.setdefault("id", self._new_id())
        record.setdefault("created_at", utcnow())
        collection.insert_one(record.copy())
        return record

    @staticmethod
    def _in(values: Iterable[str]) -> Dict[str, Any]:
        return {"$in": list(values)}

    # ==================== USER OPERATIONS ====================

    def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Create a user; email and (when present) student_id must be unique"""
        try:
            return self._insert(self.users, user)
        except DuplicateKeyError as e:
            if "student_id" in str(e):
                raise ConflictError("Student ID already registered")
            raise ConflictError("Email already registered")

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.users.find_one({"id": user_id}, {"_id": 0})

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.users.find_one({"email": email}, {"_id": 0})

    def get_user_by_student_id(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self.users.find_one({"student_id": student_id}, {"_id": 0})

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return {u["id"]: u for u in self.users.find({"id": self._in(user_ids)}, {"_id": 0})}

    def _user_filter(self, role: Optional[str], department: Optional[str]) -> Dict[str, Any]:
        filt: Dict[str, Any] = {}
        if role:
            filt["role"] = role
        if department is not None:
            filt["department"] = department
        return filt

    def list_users(
        self,
        role: Optional[str] = None,
        department: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Users sorted by name; search is a case-insensitive substring over name, email and student ID"""
        filt = self._user_filter(role, department)
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filt["$or"] = [{"name": pattern}, {"email": pattern}, {"student_id": pattern}]
        users = list(self.users.find(filt, {"_id": 0}))
        return sorted(users, key=lambda u: (u.get("name") or "").casefold())

    def count_users(self, role: Optional[str] = None, department: Optional[str] = None) -> int:
        return self.users.count_documents(self._user_filter(role, department))

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply field updates; a None value removes the field"""
        to_set = {k: v for k, v in updates.items() if v is not None}
        to_unset = {k: "" for k, v in updates.items() if v is None}
        to_set["updated_at"] = utcnow()

        operation: Dict[str, Any] = {"$set": to_set}
        if to_unset:
            operation["$unset"] = to_unset

        try:
            result = self.users.update_one({"id": user_id}, operation)
        except DuplicateKeyError as e:
            if "student_id" in str(e):
                raise ConflictError("Student ID already in use")
            raise ConflictError("Email already in use")
        if result.matched_count == 0:
            raise NotFoundError("User not found")
        return self.get_user(user_id)

    def delete_user(self, user_id: str) -> bool:
        return self.users.delete_one({"id": user_id}).deleted_count > 0

    # ==================== CLASS OPERATIONS ====================

    def create_class(self, class_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a class; codes are unique"""
        try:
            return self._insert(self.classes, {"students": [], **class_data})
        except DuplicateKeyError:
            raise ConflictError("Class code already exists")

    def get_class(self, class_id: str) -> Optional[Dict[str, Any]]:
        return self.classes.find_one({"id": class_id}, {"_id": 0})

    def get_class_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self.classes.find_one({"code": code}, {"_id": 0})

    def list_classes(
        self,
        teacher_id: Optional[str] = None,
        student_id: Optional[str] = None,
        department: Optional[str] = None,
        class_ids: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Classes sorted by code"""
        filt: Dict[str, Any] = {}
        if teacher_id is not None:
            filt["teacher_id"] = teacher_id
        if student_id is not None:
            filt["students"] = student_id
        if department is not None:
            filt["department"] = department
        if class_ids is not None:
            filt["id"] = self._in(class_ids)
        return list(self.classes.find(filt, {"_id": 0}).sort("code", ASCENDING))

    def add_student_to_class(self, class_id: str, student_id: str) -> bool:
        """Add to the roster; False when the student was already on it"""
        result = self.classes.update_one(
            {"id": class_id, "students": {"$ne": student_id}},
            {"$push": {"students": student_id}, "$set": {"updated_at": utcnow()}},
        )
        if result.modified_count == 1:
            return True
        if not self.get_class(class_id):
            raise NotFoundError("Class not found")
        return False

    def set_class_teacher(self, class_id: str, teacher_id: Optional[str]) -> Dict[str, Any]:
        result = self.classes.update_one(
            {"id": class_id},
            {"$set": {"teacher_id": teacher_id, "updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise NotFoundError("Class not found")
        return self.get_class(class_id)

    def unset_class_teacher(self, teacher_id: str) -> int:
        """Orphan every class owned by this teacher; returns how many changed"""
        result = self.classes.update_many({"teacher_id": teacher_id}, {"$set": {"teacher_id": None}})
        return result.modified_count

    def remove_student_from_classes(self, student_id: str) -> int:
        result = self.classes.update_many({"students": student_id}, {"$pull": {"students": student_id}})
        return result.modified_count

    # ==================== SESSION OPERATIONS ====================

    def create_session(self, session_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert(self.sessions, session_data)

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.sessions.find_one({"id": session_id}, {"_id": 0})

    def list_sessions(
        self,
        class_ids: Optional[Iterable[str]] = None,
        start_from: Optional[datetime] = None,
        start_to: Optional[datetime] = None,
        session_ids: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Sessions sorted by scheduled start, oldest first"""
        filt: Dict[str, Any] = {}
        if class_ids is not None:
            filt["class_id"] = self._in(class_ids)
        if session_ids is not None:
            filt["id"] = self._in(session_ids)
        window: Dict[str, Any] = {}
        if start_from is not None:
            window["$gte"] = start_from
        if start_to is not None:
            window["$lte"] = start_to
        if window:
            filt["scheduled_start"] = window
        return list(self.sessions.find(filt, {"_id": 0}).sort("scheduled_start", ASCENDING))

    def delete_session(self, session_id: str) -> bool:
        """Delete a session together with its QR codes and attendance marks"""
        result = self.sessions.delete_one({"id": session_id})
        if result.deleted_count == 0:
            return False
        self.qr_codes.delete_many({"session_id": session_id})
        self.attendance_marks.delete_many({"session_id": session_id})
        return True

    # ==================== QR CODE OPERATIONS ====================

    def rotate_qr_code(self, session_id: str, qr_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deactivate the session's active codes, then insert the new active one.

        Two writes: if the insert fails the session is left with no active
        code. A concurrent rotation that inserts first wins; the loser gets
        a ConflictError from the one-active-per-session index.
        """
        self.qr_codes.update_many(
            {"session_id": session_id, "active": True},
            {"$set": {"active": False}},
        )
        record = {**qr_data, "session_id": session_id, "active": True}
        try:
            return self._insert(self.qr_codes, record)
        except DuplicateKeyError:
            raise ConflictError("Another QR code was generated for this session at the same time")

    def deactivate_qr_codes(self, session_id: str) -> int:
        result = self.qr_codes.update_many(
            {"session_id": session_id, "active": True},
            {"$set": {"active": False}},
        )
        return result.modified_count

    def get_qr_by_token(self, token: str) -> Optional[Dict[str, Any]]:
        return self.qr_codes.find_one({"token": token}, {"_id": 0})

    def list_qr_codes(
        self,
        session_ids: Optional[Iterable[str]] = None,
        active: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        """QR codes in creation order"""
        filt: Dict[str, Any] = {}
        if session_ids is not None:
            filt["session_id"] = self._in(session_ids)
        if active is not None:
            filt["active"] = active
        return list(self.qr_codes.find(filt, {"_id": 0}).sort("created_at", ASCENDING))

    # ==================== ATTENDANCE OPERATIONS ====================

    def add_attendance_mark(self, mark: Dict[str, Any]) -> Dict[str, Any]:
        """Store a mark; at most one per (session, student)"""
        try:
            return self._insert(self.attendance_marks, mark)
        except DuplicateKeyError:
            raise ConflictError("Attendance already marked for this session")

    def get_attendance_mark(self, session_id: str, student_id: str) -> Optional[Dict[str, Any]]:
        return self.attendance_marks.find_one(
            {"session_id": session_id, "student_id": student_id},
            {"_id": 0},
        )

    def list_attendance_marks(
        self,
        session_ids: Optional[Iterable[str]] = None,
        student_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Marks in the order they were made"""
        filt: Dict[str, Any] = {}
        if session_ids is not None:
            filt["session_id"] = self._in(session_ids)
        if student_id is not None:
            filt["student_id"] = student_id
        return list(self.attendance_marks.find(filt, {"_id": 0}).sort("marked_at", ASCENDING))

    def clear_attendance_marks(self) -> int:
        return self.attendance_marks.delete_many({}).deleted_count

    # ==================== STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Get overall database statistics"""
        stats: Dict[str, Any] = {name: self.db[name].count_documents({}) for name in COLLECTIONS}
        stats["timestamp"] = utcnow().isoformat()
        return stats
