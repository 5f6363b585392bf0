import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

import accounts
import lifecycle
import reports
import views
from attendance_rules import day_bounds, ensure_utc, utcnow
from config import Config, configure_logging
from errors import AttendanceError, NotFoundError, ValidationError
from schemas import (
    AdminUserCreate,
    AdminUserUpdate,
    ClassCreateRequest,
    GenerateQRRequest,
    JoinClassRequest,
    LoginRequest,
    MarkAttendanceRequest,
    ReassignTeacherRequest,
    SessionCreateRequest,
    SignupRequest,
)
from security import Role, require_role
from serializers import class_detail, qr_public, roster_user_ids, session_public, user_public

configure_logging()
logger = logging.getLogger(__name__)

Config.validate()

app = FastAPI(title="QR Attendance API")

DB_TYPE = Config.DB_TYPE

if DB_TYPE == "mongodb":
    from mongodb_manager import MongoDBManager
    db = MongoDBManager(mongo_uri=Config.MONGO_URI, db_name=Config.MONGO_DB_NAME)
    logger.info("Using MongoDB for storage")
else:
    from db_manager import DatabaseManager
    db = DatabaseManager(base_dir=Config.DATA_DIR)
    logger.info("Using file-based storage in %s", Config.DATA_DIR)

# CORS Configuration
# In production set CORS_ORIGINS to a comma-separated list, e.g.
#   CORS_ORIGINS=https://attendance.example.edu
cors_kwargs: Dict[str, Any] = {
    "allow_credentials": True,
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}

if Config.cors_origins():
    cors_kwargs["allow_origins"] = Config.cors_origins()
else:
    # Dev defaults: the Vite dev server plus LAN IPs for phone scanning
    cors_kwargs["allow_origins"] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    cors_kwargs["allow_origin_regex"] = r"https?://(localhost|127\.0\.0\.1|\d+\.\d+\.\d+\.\d+)(:\d+)?$"

app.add_middleware(CORSMiddleware, **cors_kwargs)

# ==================== MIDDLEWARE ====================

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when a request runs longer than the configured timeout"""

    def __init__(self, app, timeout: int = 30):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            duration = time.time() - start_time
            logger.warning("Request timeout: %s %s after %.2fs", request.method, request.url.path, duration)
            return JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={"message": f"Request timeout - operation took longer than {self.timeout} seconds"},
            )

        duration = time.time() - start_time
        if duration > 5:
            logger.warning("Slow request: %s %s took %.2fs", request.method, request.url.path, duration)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.time() - start_time
            logger.error("%s %s - ERROR (%.2fs)", request.method, request.url.path, duration)
            raise

        duration = time.time() - start_time
        logger.info("%s %s - %d (%.2fs)", request.method, request.url.path, response.status_code, duration)
        response.headers["X-Process-Time"] = f"{duration:.4f}"
        return response


app.add_middleware(TimeoutMiddleware, timeout=Config.REQUEST_TIMEOUT_SECONDS)
app.add_middleware(RequestLoggingMiddleware)

# ==================== ERROR HANDLERS ====================

@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": "Internal server error"})


# ==================== HELPER FUNCTIONS ====================

any_user = require_role()
student_only = require_role(Role.STUDENT)
teacher_only = require_role(Role.TEACHER)
admin_only = require_role(Role.ADMIN)


def parse_date_param(value: Optional[str], name: str, end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO date or datetime query parameter as UTC.

    A bare date used as an upper bound covers the whole day.
    """
    if not value:
        return None
    raw = value.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name}: {value}")
    if end_of_day and len(raw) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return ensure_utc(parsed)


def current_user(payload: Dict[str, Any]) -> Dict[str, Any]:
    user = db.get_user(payload["userId"])
    if not user:
        raise NotFoundError("User not found")
    return user


# ==================== API ENDPOINTS ====================

@app.get("/")
def read_root():
    return {
        "message": "QR Attendance API",
        "status": "online",
        "database": DB_TYPE,
    }


@app.get("/api/health")
def health():
    return {"status": "ok", "database": DB_TYPE}


# ==================== AUTH ENDPOINTS ====================

@app.post("/api/auth/signup", status_code=status.HTTP_201_CREATED)
def signup(request: SignupRequest):
    """Self-service signup; always creates a student"""
    user = accounts.signup(db, request.name, request.email, request.password, request.studentId)
    return accounts.token_response(user)


@app.post("/api/auth/login")
def login(request: LoginRequest):
    user = accounts.authenticate(db, request.email, request.password)
    return accounts.token_response(user)


@app.get("/api/auth/me")
def get_me(payload: dict = Depends(any_user)):
    return user_public(current_user(payload))


# ==================== ADMIN ENDPOINTS ====================

@app.get("/api/admin/stats")
def admin_stats(payload: dict = Depends(admin_only)):
    return reports.system_stats(db, utcnow())


@app.get("/api/admin/departments")
def admin_departments(payload: dict = Depends(admin_only)):
    return reports.department_rollup(db, utcnow())


@app.get("/api/admin/storage")
def admin_storage(payload: dict = Depends(admin_only)):
    """Record counts per collection"""
    return db.get_database_stats()


@app.get("/api/admin/users")
def admin_list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    payload: dict = Depends(admin_only),
):
    return [user_public(u) for u in db.list_users(role=role, search=search)]


@app.get("/api/admin/users/{user_id}")
def admin_get_user(user_id: str, payload: dict = Depends(admin_only)):
    return user_public(accounts.get_user_or_404(db, user_id))


@app.post("/api/admin/users", status_code=status.HTTP_201_CREATED)
def admin_create_user(request: AdminUserCreate, payload: dict = Depends(admin_only)):
    user = accounts.create_user(
        db,
        name=request.name,
        email=request.email,
        password=request.password,
        role=request.role,
        student_id=request.studentId,
        department=request.department,
    )
    return user_public(user)


@app.put("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, request: AdminUserUpdate, payload: dict = Depends(admin_only)):
    changes = request.model_dump(exclude_unset=True)
    return user_public(accounts.update_user(db, user_id, changes))


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, payload: dict = Depends(admin_only)):
    accounts.delete_user(db, payload["userId"], user_id)
    return {"message": "User deleted successfully"}


@app.get("/api/admin/classes")
def admin_list_classes(payload: dict = Depends(admin_only)):
    classes = db.list_classes()
    users = db.get_users(roster_user_ids(classes))
    return [class_detail(c, users) for c in classes]


@app.put("/api/admin/classes/{class_id}/teacher")
def admin_reassign_class(class_id: str, request: ReassignTeacherRequest, payload: dict = Depends(admin_only)):
    cls = accounts.reassign_class_teacher(db, class_id, request.teacherId)
    return class_detail(cls, db.get_users(roster_user_ids([cls])))


@app.get("/api/admin/reports")
def admin_reports(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    department: Optional[str] = None,
    classId: Optional[str] = None,
    payload: dict = Depends(admin_only),
):
    """Flat attendance list across the system, newest first"""
    start = parse_date_param(startDate, "startDate")
    end = parse_date_param(endDate, "endDate", end_of_day=True)
    classes = db.list_classes(
        department=department or None,
        class_ids=[classId] if classId else None,
    )
    return reports.filtered_mark_feed(db, classes, start, end)


@app.get("/api/admin/reports/class-wise")
def admin_class_wise_report(payload: dict = Depends(admin_only)):
    return reports.class_wise_report(db, utcnow())


@app.get("/api/admin/reports/students-attendance")
def admin_students_report(payload: dict = Depends(admin_only)):
    return reports.students_attendance_report(db, utcnow())


@app.get("/api/admin/reports/teachers")
def admin_teachers_report(payload: dict = Depends(admin_only)):
    return reports.teachers_report(db, utcnow())


@app.get("/api/admin/reports/export/{kind}")
def admin_export_report(kind: str, payload: dict = Depends(admin_only)):
    content = reports.export_csv(db, kind, utcnow())
    filename = f"{kind}-report-{utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/admin/recent-activity")
def admin_recent_activity(limit: int = 20, payload: dict = Depends(admin_only)):
    return reports.recent_activity(db, limit=max(limit, 0))


@app.delete("/api/admin/attendance/clear")
def admin_clear_attendance(payload: dict = Depends(admin_only)):
    cleared = db.clear_attendance_marks()
    logger.warning("[CLEAR_ATTENDANCE] %d mark(s) removed by admin %s", cleared, payload["userId"])
    return {
        "message": "All attendance records have been cleared successfully",
        "marksCleared": cleared,
    }


@app.post("/api/admin/seed")
def admin_seed(payload: dict = Depends(admin_only)):
    """Demo accounts and a sample class, created once"""
    created, seeded = accounts.seed_demo_data(db)
    if not created:
        return {"message": "Already seeded"}
    return {"message": "Seeded", "users": seeded}


# ==================== CLASS ENDPOINTS ====================

@app.get("/api/classes")
def get_classes(payload: dict = Depends(teacher_only)):
    classes = db.list_classes(teacher_id=payload["userId"])
    users = db.get_users(roster_user_ids(classes))
    return [class_detail(c, users) for c in classes]


@app.post("/api/classes", status_code=status.HTTP_201_CREATED)
def create_class(request: ClassCreateRequest, payload: dict = Depends(teacher_only)):
    cls = lifecycle.create_class(db, payload["userId"], request.name, request.code, request.department)
    return class_detail(cls, db.get_users(roster_user_ids([cls])))


@app.post("/api/classes/join")
def join_class(request: JoinClassRequest, payload: dict = Depends(student_only)):
    cls, joined = lifecycle.join_class(db, payload["userId"], request.code)
    return {
        "message": "Joined class successfully" if joined else "Already enrolled in this class",
        "class": class_detail(cls, db.get_users(roster_user_ids([cls]))),
    }


@app.get("/api/classes/enrolled")
def get_enrolled_classes(payload: dict = Depends(student_only)):
    return views.enrolled_classes(db, payload["userId"], utcnow())


@app.get("/api/classes/sessions")
def get_student_sessions(payload: dict = Depends(student_only)):
    return views.student_sessions(db, payload["userId"], utcnow())


@app.get("/api/classes/today")
def get_student_today(payload: dict = Depends(student_only)):
    return views.student_today(db, payload["userId"], utcnow())


@app.get("/api/classes/upcoming")
def get_upcoming_sessions(payload: dict = Depends(any_user)):
    return views.upcoming_sessions(db, payload["userId"], payload["role"], utcnow())


@app.get("/api/classes/{class_id}/sessions")
def get_class_sessions(class_id: str, payload: dict = Depends(any_user)):
    return views.class_sessions(db, class_id, payload["userId"], payload["role"], utcnow())


@app.get("/api/classes/{class_id}/register")
def get_class_register(class_id: str, payload: dict = Depends(teacher_only)):
    cls = lifecycle.get_owned_class(db, class_id, payload["userId"])
    return reports.class_register(db, cls, utcnow())


# ==================== SESSION ENDPOINTS ====================

@app.get("/api/sessions")
def get_sessions(payload: dict = Depends(teacher_only)):
    return views.teacher_sessions(db, payload["userId"], utcnow())


@app.get("/api/sessions/today")
def get_today_sessions(payload: dict = Depends(teacher_only)):
    return views.teacher_today(db, payload["userId"], utcnow())


@app.get("/api/sessions/active-qr")
def get_active_qr_codes(payload: dict = Depends(teacher_only)):
    return views.active_qr_codes(db, payload["userId"], utcnow())


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str, payload: dict = Depends(teacher_only)):
    return views.session_detail(db, payload["userId"], session_id, utcnow())


@app.get("/api/sessions/{session_id}/attendance")
def get_session_attendance(session_id: str, payload: dict = Depends(teacher_only)):
    session, cls = lifecycle.get_owned_session(db, session_id, payload["userId"])
    return reports.session_attendance(db, session, cls)


@app.post("/api/sessions", status_code=status.HTTP_201_CREATED)
def create_session(request: SessionCreateRequest, payload: dict = Depends(teacher_only)):
    session, cls = lifecycle.create_session(
        db,
        payload["userId"],
        request.classId,
        request.scheduledStart,
        request.scheduledEnd,
        request.title,
    )
    return session_public(session, utcnow(), cls)


@app.post("/api/sessions/{session_id}/generate-qr")
def generate_qr(
    session_id: str,
    request: Optional[GenerateQRRequest] = None,
    payload: dict = Depends(teacher_only),
):
    duration = request.durationMinutes if request else None
    qr, session, cls = lifecycle.generate_qr(db, payload["userId"], session_id, utcnow(), duration)
    return {
        "sessionId": session["id"],
        "qr": qr_public(qr),
        "class": {"id": cls["id"], "name": cls["name"], "code": cls["code"]},
    }


@app.put("/api/sessions/{session_id}/end-qr")
def end_qr(session_id: str, payload: dict = Depends(teacher_only)):
    deactivated, _ = lifecycle.end_qr(db, payload["userId"], session_id)
    return {"message": "QR code deactivated", "deactivated": deactivated}


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str, payload: dict = Depends(teacher_only)):
    lifecycle.delete_session(db, payload["userId"], session_id)
    return {"message": "Session deleted"}


# ==================== ATTENDANCE ENDPOINTS ====================

@app.get("/api/attendance/report")
def get_attendance_report(
    classId: Optional[str] = None,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    payload: dict = Depends(teacher_only),
):
    """Marks across the teacher's classes (or one of them), newest first"""
    if classId:
        classes = [lifecycle.get_owned_class(db, classId, payload["userId"])]
    else:
        classes = db.list_classes(teacher_id=payload["userId"])
    start = parse_date_param(startDate, "startDate")
    end = parse_date_param(endDate, "endDate", end_of_day=True)
    return reports.filtered_mark_feed(db, classes, start, end)


@app.get("/api/attendance/today")
def get_today_attendance(payload: dict = Depends(teacher_only)):
    start, end = day_bounds(utcnow())
    classes = db.list_classes(teacher_id=payload["userId"])
    return reports.filtered_mark_feed(db, classes, start, end)


@app.get("/api/attendance/student")
def get_student_attendance(payload: dict = Depends(student_only)):
    return views.student_history(db, payload["userId"], utcnow())


@app.get("/api/attendance/summary")
def get_student_summary(payload: dict = Depends(student_only)):
    """Per-class and overall attendance for the calling student"""
    return reports.student_summary(db, current_user(payload), utcnow())


@app.post("/api/attendance/mark")
def mark_attendance(request: MarkAttendanceRequest, payload: dict = Depends(student_only)):
    return lifecycle.mark_attendance(db, payload["userId"], request.token, utcnow())


# ==================== REPORT ENDPOINTS ====================

@app.get("/api/reports/class/{class_id}")
def get_class_report(class_id: str, payload: dict = Depends(teacher_only)):
    cls = lifecycle.get_owned_class(db, class_id, payload["userId"])
    return reports.class_marks(db, cls)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
