import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from datetime import timedelta, timezone

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import CSRF_HEADER_NAME, LOG_LEVEL, METRICS_ENABLED, SESSION_COOKIE_NAME, SESSION_TTL_MINUTES
from .db import engine, get_db
from .metrics import PrometheusMiddleware, record_error, record_login_attempt, record_student_status
from .models import Base, Session as AuthSession, User, UserRole, utcnow
from .paging import page_params
from .security import compute_lock_seconds, hash_password, verify_password
from . import student_status, students

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("coursecast")


@asynccontextmanager
async def lifespan(_: FastAPI):
    last_err = None
    for _ in range(10):
        try:
            Base.metadata.create_all(bind=engine)
            last_err = None
            break
        except Exception as exc:  # pragma: no cover - startup resilience
            last_err = exc
            await asyncio.sleep(1)
    if last_err:
        raise last_err
    yield


app = FastAPI(
    title="CourseCast API",
    version="0.1.0",
    lifespan=lifespan,
)

if METRICS_ENABLED:
    app.add_middleware(PrometheusMiddleware)


def create_session(db: Session, user: User, request: Request) -> AuthSession:
    token = secrets.token_urlsafe(32)
    csrf = secrets.token_urlsafe(24)
    now = utcnow()
    session = AuthSession(
        id=token,
        user_id=user.id,
        csrf_token=csrf,
        created_at=now,
        expires_at=now + timedelta(minutes=SESSION_TTL_MINUTES),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    db.add(session)
    db.commit()
    return session


def set_session_cookie(response, token: str, max_age: int = SESSION_TTL_MINUTES * 60) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def current_session(request: Request, db: Session = Depends(get_db)):
    """Resolve the session cookie to (session, user); expired sessions and banned users resolve to nothing."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None, None
    session = db.get(AuthSession, token)
    if not session:
        return None, None
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= utcnow():
        db.delete(session)
        db.commit()
        return None, None
    user = db.get(User, session.user_id)
    if not user or user.banned:
        return None, None
    return session, user


def require_user(auth=Depends(current_session)) -> User:
    _, user = auth
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    return user


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != UserRole.admin.value:
        raise HTTPException(status_code=403, detail="Admin required.")
    return user


def csrf_guard(request: Request, auth=Depends(current_session)) -> None:
    session, _ = auth
    if not session:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    token = request.headers.get(CSRF_HEADER_NAME)
    if not token or token != session.csrf_token:
        raise HTTPException(status_code=403, detail="Invalid CSRF token.")


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db_ok = True
    try:
        db.execute(text("select 1"))
    except Exception:
        db_ok = False
    return {
        "status": "ok" if db_ok else "degraded",
        "db_ok": db_ok,
        "time": utcnow().isoformat(),
    }


@app.get("/metrics")
def metrics(_: User = Depends(require_admin)):
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/api/auth/me")
def auth_me(auth=Depends(current_session)):
    session, user = auth
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    return {
        "user": students.user_public(user),
        "csrf_token": session.csrf_token,
    }


@app.post("/api/auth/login")
def login(request: Request, payload: dict, db: Session = Depends(get_db)):
    email = students.normalize_email(payload.get("email", ""))
    password = payload.get("password", "")

    user = db.query(User).filter(User.email == email).first()
    locked_until = user.locked_until if user else None
    if locked_until and locked_until.tzinfo is None:
        locked_until = locked_until.replace(tzinfo=timezone.utc)
    if locked_until and locked_until > utcnow():
        record_login_attempt("locked")
        raise HTTPException(status_code=429, detail="Too many attempts. Try again shortly.")

    if not user or not verify_password(user.password_hash, password):
        if user:
            user.failed_login_count += 1
            lock_seconds = compute_lock_seconds(user.failed_login_count)
            if lock_seconds:
                user.locked_until = utcnow() + timedelta(seconds=lock_seconds)
            db.commit()
        logger.warning("Failed login for %s", email or "<blank>")
        record_login_attempt("failed")
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    if user.banned:
        record_login_attempt("banned")
        raise HTTPException(status_code=403, detail="Account banned.")

    user.failed_login_count = 0
    user.locked_until = None
    user.last_login_at = utcnow()
    db.commit()

    session = create_session(db, user, request)
    response = JSONResponse({"ok": True, "user": students.user_public(user)})
    set_session_cookie(response, session.id)
    record_login_attempt("success")
    return response


@app.post("/api/auth/logout")
def logout(
    _: None = Depends(csrf_guard),
    auth=Depends(current_session),
    db: Session = Depends(get_db),
):
    session, _user = auth
    if session:
        db.delete(session)
        db.commit()
    response = JSONResponse({"ok": True})
    set_session_cookie(response, "", max_age=0)
    return response


@app.post("/api/admin/bootstrap")
def bootstrap_admin(payload: dict, db: Session = Depends(get_db)):
    admin_exists = db.query(User).filter(User.role == UserRole.admin.value).first()
    if admin_exists:
        raise HTTPException(status_code=403, detail="Admin already exists.")

    email = students.normalize_email(payload.get("email", ""))
    name = (payload.get("name", "") or "").strip()
    password = payload.get("password", "")

    if not email or not name or not password:
        raise HTTPException(status_code=400, detail="Missing required fields.")
    if not students.valid_email(email):
        raise HTTPException(status_code=400, detail="Invalid email address.")

    user = User(
        email=email,
        name=name,
        role=UserRole.admin.value,
        password_hash=hash_password(password),
    )
    db.add(user)
    db.flush()
    students.log_audit(db, action="bootstrap_admin", target_user=user, metadata={"email": email})
    db.commit()
    return {"ok": True, "user": students.user_public(user)}


@app.get("/api/users/all-students-status")
def all_students_status(
    page: str = "1",
    limit: str = "",
    sort_by: str = Query("views", alias="sortBy"),
    search: str = "",
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    page_num, page_limit = page_params(page, limit)
    sort_by = sort_by or "views"
    started = time.perf_counter()
    try:
        result = student_status.list_student_status(
            db,
            page=page_num,
            limit=page_limit,
            sort_by=sort_by,
            search=search or "",
        )
    except Exception as exc:
        logger.exception("Error in all-students-status: %s", exc)
        record_error(type(exc).__name__, "/api/users/all-students-status")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Error fetching students status",
                "error": str(exc),
            },
        )
    label = sort_by if sort_by in student_status.SORT_POLICIES else "other"
    record_student_status(label, time.perf_counter() - started)
    return result


@app.get("/api/users")
def get_own_profile(user: User = Depends(require_user)):
    return students.get_profile(user)


@app.put("/api/users/update")
def update_own_profile(
    request: Request,
    payload: dict,
    user: User = Depends(require_user),
    _: None = Depends(csrf_guard),
    db: Session = Depends(get_db),
):
    return students.update_profile(db, user, payload, request=request)


@app.put("/api/users/last-active")
def update_last_active(
    user: User = Depends(require_user),
    _: None = Depends(csrf_guard),
    db: Session = Depends(get_db),
):
    return students.touch_last_active(db, user)


@app.get("/api/users/enrolled-students")
def enrolled_students(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return students.list_enrolled_students(db)


@app.get("/api/users/students")
def list_students(
    page: str = "1",
    limit: str = "",
    search: str = "",
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    page_num, page_limit = page_params(page, limit)
    return students.list_students(db, page_num, page_limit, search=search or "")


@app.put("/api/users/students/{student_id}/ban")
def toggle_student_ban(
    request: Request,
    student_id: str,
    actor: User = Depends(require_admin),
    _: None = Depends(csrf_guard),
    db: Session = Depends(get_db),
):
    return students.toggle_ban(db, actor, student_id, request=request)


@app.put("/api/users/students/{user_id}/reset-password")
def reset_student_password(
    request: Request,
    user_id: str,
    actor: User = Depends(require_admin),
    _: None = Depends(csrf_guard),
    db: Session = Depends(get_db),
):
    return students.reset_password(db, actor, user_id, request=request)


@app.delete("/api/users/students/{user_id}")
def delete_student(
    request: Request,
    user_id: str,
    actor: User = Depends(require_admin),
    _: None = Depends(csrf_guard),
    db: Session = Depends(get_db),
):
    return students.delete_student(db, actor, user_id, request=request)


@app.get("/api/users/{user_id}/all-data")
def user_all_data(user_id: str, _: User = Depends(require_admin), db: Session = Depends(get_db)):
    return students.user_all_data(db, user_id)
