import os
import tempfile
from datetime import datetime, timezone

import pytest

# main builds its storage manager at import time; keep it away from ./data
os.environ["DB_TYPE"] = "file"
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="attendance-test-"))

from db_manager import DatabaseManager  # noqa: E402
from security import create_access_token, get_password_hash  # noqa: E402


def at(hour: int, minute: int = 0, day: int = 15) -> datetime:
    """A fixed UTC instant on 2024-01-<day>"""
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


def auth_header(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(base_dir=str(tmp_path / "data"))


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="student", name=None, department=None, password="secret123", **extra):
        counter["n"] += 1
        n = counter["n"]
        user = {
            "name": name or f"{role.title()} {n}",
            "email": f"{role}{n}@example.com",
            "password_hash": get_password_hash(password),
            "role": role,
        }
        if role == "student":
            user["student_id"] = extra.pop("student_id", f"2023UCP{1000 + n}")
        if department:
            user["department"] = department
        user.update(extra)
        return db.create_user(user)

    return _make


@pytest.fixture
def teacher(make_user):
    return make_user("teacher", name="Grace Hopper", department="Computer Science")


@pytest.fixture
def student(make_user):
    return make_user("student", name="Ada Lovelace", department="Computer Science")


@pytest.fixture
def admin(make_user):
    return make_user("admin", name="Root Admin")


@pytest.fixture
def course(db, teacher, student):
    """CSE101 taught by ``teacher`` with ``student`` enrolled"""
    return db.create_class({
        "name": "Intro to Computing",
        "code": "CSE101",
        "teacher_id": teacher["id"],
        "students": [student["id"]],
        "department": "Computer Science",
    })


@pytest.fixture
def client(db, monkeypatch):
    from fastapi.testclient import TestClient

    import main

    monkeypatch.setattr(main, "db", db)
    with TestClient(main.app) as test_client:
        yield test_client
