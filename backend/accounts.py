"""Signup, login and admin user management."""
import logging
from typing import Any, Dict, Optional, Tuple

from attendance_rules import normalize_student_id
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from security import Role, create_access_token, get_password_hash, verify_password

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

ROLE_CHANGE_MESSAGE = "Role change not allowed. Only students can be promoted to teachers."


def _normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def token_response(user: Record) -> Record:
    return {
        "token": create_access_token(user),
        "role": user["role"],
        "name": user["name"],
        "studentId": user.get("student_id"),
    }


# ==================== AUTH ====================

def signup(db, name: Optional[str], email: Optional[str], password: Optional[str], student_id: Optional[str]) -> Record:
    """Public signup always creates a student"""
    name, email = _clean(name), _normalize_email(email)
    if not name or not email or not password or not _clean(student_id):
        raise ValidationError("Name, email, password and Student ID are required")

    student_id = normalize_student_id(student_id)

    if db.get_user_by_email(email):
        raise ConflictError("Email already registered")
    if db.get_user_by_student_id(student_id):
        raise ConflictError("Student ID already registered")

    user = db.create_user({
        "name": name,
        "email": email,
        "student_id": student_id,
        "password_hash": get_password_hash(password),
        "role": Role.STUDENT.value,
    })
    logger.info("[SIGNUP] %s (%s)", email, student_id)
    return user


def authenticate(db, email: Optional[str], password: Optional[str]) -> Record:
    """One message for unknown email and wrong password"""
    user = db.get_user_by_email(_normalize_email(email)) if email else None
    if not user or not password or not verify_password(password, user.get("password_hash")):
        raise AuthenticationError("Invalid credentials")
    logger.info("[LOGIN] %s as %s", user["email"], user["role"])
    return user


# ==================== ADMIN USER MANAGEMENT ====================

def get_user_or_404(db, user_id: str) -> Record:
    user = db.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def create_user(
    db,
    name: Optional[str],
    email: Optional[str],
    password: Optional[str],
    role: Optional[str],
    student_id: Optional[str] = None,
    department: Optional[str] = None,
) -> Record:
    """Admin-created user of any role"""
    name, email = _clean(name), _normalize_email(email)
    if not name or not email or not role or not password:
        raise ValidationError("Name, email, role, and password are required")

    parsed_role = Role.parse(role)
    if parsed_role is None:
        raise ValidationError("Invalid role")

    student_id = _clean(student_id)
    if parsed_role == Role.STUDENT and not student_id:
        raise ValidationError("Student ID is required for students")
    if student_id:
        student_id = normalize_student_id(student_id)

    if db.get_user_by_email(email):
        raise ConflictError("Email already in use")
    if student_id and db.get_user_by_student_id(student_id):
        raise ConflictError("Student ID already in use")

    user = {
        "name": name,
        "email": email,
        "password_hash": get_password_hash(password),
        "role": parsed_role.value,
    }
    # only students carry a student ID
    if parsed_role == Role.STUDENT:
        user["student_id"] = student_id
    department = _clean(department)
    if department:
        user["department"] = department

    created = db.create_user(user)
    logger.info("[ADMIN_CREATE_USER] %s as %s", email, parsed_role.value)
    return created


def update_user(db, user_id: str, changes: Record) -> Record:
    """
    Partial update from an admin.

    ``changes`` holds only the fields the caller sent (camelCase keys as in
    the request body). The only role transition allowed is student -> teacher.
    """
    user = get_user_or_404(db, user_id)
    updates: Record = {}

    role = changes.get("role")
    if role is not None and role != user["role"]:
        if user["role"] != Role.STUDENT.value or role != Role.TEACHER.value:
            raise ValidationError(ROLE_CHANGE_MESSAGE)
        updates["role"] = role

    if "name" in changes:
        name = _clean(changes["name"])
        if not name:
            raise ValidationError("Name cannot be empty")
        updates["name"] = name

    if "email" in changes:
        email = _normalize_email(changes["email"])
        if not email:
            raise ValidationError("Email cannot be empty")
        existing = db.get_user_by_email(email)
        if existing and existing["id"] != user_id:
            raise ConflictError("Email already in use")
        updates["email"] = email

    if "studentId" in changes:
        raw = _clean(changes["studentId"])
        if raw:
            student_id = normalize_student_id(raw)
            existing = db.get_user_by_student_id(student_id)
            if existing and existing["id"] != user_id:
                raise ConflictError("Student ID already in use")
            updates["student_id"] = student_id
        else:
            updates["student_id"] = None

    if "department" in changes:
        updates["department"] = _clean(changes["department"])

    if not updates:
        return user
    updated = db.update_user(user_id, updates)
    logger.info("[ADMIN_UPDATE_USER] %s fields=%s", user_id, sorted(updates))
    return updated


def delete_user(db, actor_id: str, user_id: str):
    """
    Delete a user after detaching them from every class.

    Classes they taught are kept with no teacher (see
    reassign_class_teacher); they are pulled from every roster. These are
    separate writes from the user deletion itself.
    """
    user = get_user_or_404(db, user_id)
    if user["id"] == actor_id:
        raise ValidationError("Cannot delete your own account")

    orphaned = db.unset_class_teacher(user_id)
    pulled = db.remove_student_from_classes(user_id)
    db.delete_user(user_id)
    logger.info(
        "[ADMIN_DELETE_USER] %s (%s): %d class(es) orphaned, removed from %d roster(s)",
        user_id, user["role"], orphaned, pulled,
    )


def reassign_class_teacher(db, class_id: str, teacher_id: Optional[str]) -> Record:
    """Give an orphaned (or any) class a new owning teacher"""
    if not db.get_class(class_id):
        raise NotFoundError("Class not found")
    if not teacher_id:
        raise ValidationError("teacherId is required")
    teacher = get_user_or_404(db, teacher_id)
    if teacher["role"] != Role.TEACHER.value:
        raise ValidationError("Classes can only be assigned to teachers")
    updated = db.set_class_teacher(class_id, teacher_id)
    logger.info("[ADMIN_REASSIGN_CLASS] %s -> teacher %s", updated["code"], teacher_id)
    return updated


# ==================== DEMO SEED ====================

SEED_ACCOUNTS = {
    "admin": {"email": "admin@example.com", "password": "admin123"},
    "teacher": {"email": "teacher@example.com", "password": "teacher123"},
    "student": {"email": "student@example.com", "password": "student123"},
}


def seed_demo_data(db) -> Tuple[bool, Record]:
    """Create an admin, a teacher, a student and class CSE101 once"""
    if db.get_user_by_email(SEED_ACCOUNTS["admin"]["email"]):
        return False, SEED_ACCOUNTS

    db.create_user({
        "name": "Admin",
        "email": SEED_ACCOUNTS["admin"]["email"],
        "password_hash": get_password_hash(SEED_ACCOUNTS["admin"]["password"]),
        "role": Role.ADMIN.value,
        "department": "Administration",
    })
    teacher = db.create_user({
        "name": "Teacher",
        "email": SEED_ACCOUNTS["teacher"]["email"],
        "password_hash": get_password_hash(SEED_ACCOUNTS["teacher"]["password"]),
        "role": Role.TEACHER.value,
        "department": "Computer Science",
    })
    student = db.create_user({
        "name": "Student",
        "email": SEED_ACCOUNTS["student"]["email"],
        "password_hash": get_password_hash(SEED_ACCOUNTS["student"]["password"]),
        "role": Role.STUDENT.value,
        "student_id": "2023UCP0001",
        "department": "Computer Science",
    })
    db.create_class({
        "name": "Sample Class",
        "code": "CSE101",
        "teacher_id": teacher["id"],
        "students": [student["id"]],
        "department": "Computer Science",
    })
    logger.info("[SEED] demo accounts and class CSE101 created")
    return True, SEED_ACCOUNTS
