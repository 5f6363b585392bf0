"""
Error taxonomy shared by the storage, service and HTTP layers.

Each error carries the HTTP status it maps to; main.py renders them as
``{"message": ...}`` bodies.
"""


class AttendanceError(Exception):
    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class ValidationError(AttendanceError):
    """Missing or malformed input"""
    status_code = 400


class AuthenticationError(AttendanceError):
    """Missing, invalid or expired credentials"""
    status_code = 401


class AuthorizationError(AttendanceError):
    """Authenticated, but not allowed to touch this resource"""
    status_code = 403


class NotFoundError(AttendanceError):
    status_code = 404


class ConflictError(AttendanceError):
    """A unique field or one-per-scope constraint would be violated"""
    status_code = 409
