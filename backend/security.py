from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from attendance_rules import utcnow
from config import Config
from errors import AuthenticationError, AuthorizationError

# Missing headers are reported as 401 by verify_token rather than FastAPI's default 403
security = HTTPBearer(auto_error=False)


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        try:
            return cls(value)
        except ValueError:
            return None


def satisfies_requirement(actual: Role, required: Optional[Role]) -> bool:
    """Admin is a super-role: it satisfies every role-gated route"""
    if required is None:
        return True
    return actual == required or actual == Role.ADMIN


# ==================== PASSWORDS ====================

def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


# ==================== TOKENS ====================

def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign a bearer token carrying {userId, role, name, studentId}"""
    now = utcnow()
    expire = now + (expires_delta or timedelta(hours=Config.ACCESS_TOKEN_EXPIRE_HOURS))
    payload = {
        "userId": user["id"],
        "role": user["role"],
        "name": user["name"],
        "studentId": user.get("student_id"),
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(payload, Config.SECRET_KEY, algorithm=Config.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, Config.SECRET_KEY, algorithms=[Config.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid token")

    if not payload.get("userId") or Role.parse(payload.get("role")) is None:
        raise AuthenticationError("Invalid token")
    return payload


def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Dict[str, Any]:
    """Verify the bearer token and return its claims"""
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise AuthenticationError("Missing token")
    return decode_access_token(credentials.credentials)


def require_role(required: Optional[Role] = None):
    """
    Build a dependency that authenticates the caller and, when ``required`` is
    given, rejects callers whose role does not satisfy it.
    """
    def dependency(payload: Dict[str, Any] = Depends(verify_token)) -> Dict[str, Any]:
        actual = Role(payload["role"])
        if not satisfies_requirement(actual, required):
            raise AuthorizationError("Forbidden")
        return payload

    return dependency
