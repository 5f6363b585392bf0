"""
Request bodies.

Required fields are declared Optional on purpose: missing values reach the
service layer, which answers with the domain's own 400 messages instead of
pydantic's generic ones.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


# ==================== AUTH ====================

class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    studentId: Optional[str] = None


class LoginRequest(BaseModel):
    # unknown or malformed addresses both fail as invalid credentials
    email: Optional[str] = None
    password: Optional[str] = None


# ==================== ADMIN ====================

class AdminUserCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: Optional[str] = None
    studentId: Optional[str] = None
    department: Optional[str] = None

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v):
        return v.strip().lower() if v else v


class AdminUserUpdate(BaseModel):
    """Partial update; only fields present in the body are applied (see exclude_unset)"""
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    studentId: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None

    @field_validator("department")
    @classmethod
    def validate_department(cls, v):
        return _blank_to_none(v)

    @field_validator("role")
    @classmethod
    def normalize_role(cls, v):
        return v.strip().lower() if v else v


class ReassignTeacherRequest(BaseModel):
    teacherId: Optional[str] = None


# ==================== CLASSES ====================

class ClassCreateRequest(BaseModel):
    name: Optional[str] = None
    code: Optional[str] = None
    department: Optional[str] = None

    @field_validator("department")
    @classmethod
    def validate_department(cls, v):
        return _blank_to_none(v)


class JoinClassRequest(BaseModel):
    code: Optional[str] = None


# ==================== SESSIONS ====================

class SessionCreateRequest(BaseModel):
    classId: Optional[str] = None
    title: Optional[str] = None
    scheduledStart: Optional[datetime] = None
    scheduledEnd: Optional[datetime] = None


class GenerateQRRequest(BaseModel):
    durationMinutes: Optional[float] = Field(
        default=None, gt=0, allow_inf_nan=False, description="Minutes until the code expires (default 10)")


# ==================== ATTENDANCE ====================

class MarkAttendanceRequest(BaseModel):
    token: Optional[str] = None
