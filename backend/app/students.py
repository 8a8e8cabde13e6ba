import logging
import re
import uuid

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session, selectinload

from .config import MIN_PASSWORD_LENGTH
from .metrics import record_admin_operation
from .models import AuditLog, Enrollment, Session as AuthSession, User, UserRole, WatchHistory, utcnow
from .paging import page_meta
from .security import generate_password, hash_password, verify_password
from .student_status import UNKNOWN_COURSE, isoformat, student_info, student_query

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def user_public(user: User) -> dict:
    return {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "role": user.role,
    }


def user_profile(user: User) -> dict:
    return {
        **user_public(user),
        "phoneNumber": user.phone_number,
        "parentPhoneNumber": user.parent_phone_number,
        "isBanned": bool(user.banned),
        "lastActive": isoformat(user.last_active),
        "lastLoginAt": isoformat(user.last_login_at),
        "createdAt": isoformat(user.created_at),
    }


def parse_user_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=404, detail="User not found.") from None


def get_user_or_404(db: Session, user_id: str) -> User:
    user = db.get(User, parse_user_id(user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return user


def get_student_or_404(db: Session, student_id: str) -> User:
    user = get_user_or_404(db, student_id)
    if user.role == UserRole.admin.value:
        raise HTTPException(status_code=400, detail="Admin accounts cannot be managed here.")
    return user


def log_audit(
    db: Session,
    action: str,
    actor: User | None = None,
    target_user: User | None = None,
    metadata: dict | None = None,
    request: Request | None = None,
):
    entry = AuditLog(
        actor_user_id=actor.id if actor else None,
        target_user_id=target_user.id if target_user else None,
        action=action,
        metadata_json=metadata or {},
        ip_address=request.client.host if request and request.client else None,
        user_agent=request.headers.get("user-agent") if request else None,
    )
    db.add(entry)


def drop_sessions(db: Session, user: User) -> None:
    db.query(AuthSession).filter(AuthSession.user_id == user.id).delete(synchronize_session=False)


def get_profile(user: User) -> dict:
    return {"success": True, "data": user_profile(user)}


def update_profile(db: Session, user: User, payload: dict, request: Request | None = None) -> dict:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")

    changes = []

    if "name" in payload:
        new_name = (payload["name"] or "").strip()
        if not new_name:
            raise HTTPException(status_code=400, detail="Name cannot be empty.")
        if new_name != user.name:
            user.name = new_name
            changes.append("name")

    if "email" in payload:
        new_email = normalize_email(payload["email"])
        if not valid_email(new_email):
            raise HTTPException(status_code=400, detail="Invalid email address.")
        if new_email != user.email:
            taken = db.query(User).filter(User.email == new_email, User.id != user.id).first()
            if taken:
                raise HTTPException(status_code=409, detail="Email already in use.")
            user.email = new_email
            changes.append("email")

    for key, attr in (("phoneNumber", "phone_number"), ("parentPhoneNumber", "parent_phone_number")):
        if key in payload:
            value = (payload[key] or "").strip() or None
            if value != getattr(user, attr):
                setattr(user, attr, value)
                changes.append(key)

    if payload.get("password"):
        new_password = payload["password"]
        current = payload.get("currentPassword") or ""
        if not current:
            raise HTTPException(status_code=400, detail="Current password is required.")
        if not verify_password(user.password_hash, current):
            raise HTTPException(status_code=401, detail="Current password is incorrect.")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise HTTPException(status_code=400, detail="Password too short.")
        user.password_hash = hash_password(new_password)
        changes.append("password")

    if changes:
        log_audit(db, action="update_profile", actor=user, target_user=user, metadata={"changes": changes}, request=request)
        db.commit()
        db.refresh(user)

    return {"success": True, "data": user_profile(user), "changes": changes}


def touch_last_active(db: Session, user: User) -> dict:
    user.last_active = utcnow()
    db.commit()
    return {"success": True, "lastActive": isoformat(user.last_active)}


def list_enrolled_students(db: Session) -> dict:
    students = (
        db.query(User)
        .join(Enrollment, Enrollment.student_id == User.id)
        .filter(User.role != UserRole.admin.value)
        .options(selectinload(User.enrollments).selectinload(Enrollment.course))
        .distinct()
        .order_by(User.name.asc())
        .all()
    )
    items = []
    for student in students:
        enrollments = sorted(student.enrollments, key=lambda e: e.created_at)
        items.append({
            **student_info(student),
            "enrollments": [
                {
                    "courseName": enrollment.course.name if enrollment.course else UNKNOWN_COURSE,
                    "paymentStatus": enrollment.payment_status,
                    "enrollmentDate": isoformat(enrollment.created_at),
                }
                for enrollment in enrollments
            ],
        })
    return {"success": True, "count": len(items), "data": items}


def list_students(db: Session, page: int, limit: int, search: str = "") -> dict:
    query = student_query(db, search)
    total = query.count()
    students = (
        query.order_by(User.created_at.desc(), User.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "count": len(students),
        "totalStudents": total,
        **page_meta(total, page, limit),
        "data": [{**student_info(s), "isBanned": bool(s.banned)} for s in students],
    }


def toggle_ban(db: Session, actor: User, student_id: str, request: Request | None = None) -> dict:
    student = get_student_or_404(db, student_id)
    student.banned = not student.banned
    if student.banned:
        drop_sessions(db, student)
    operation = "ban" if student.banned else "unban"
    log_audit(db, action=f"{operation}_student", actor=actor, target_user=student, request=request)
    db.commit()
    record_admin_operation(operation)
    logger.info("%s student=%s by admin=%s", operation, student.id, actor.id)
    return {
        "success": True,
        "message": f"Student has been {'banned' if student.banned else 'unbanned'}.",
        "data": {"id": str(student.id), "isBanned": student.banned},
    }


def reset_password(db: Session, actor: User, user_id: str, request: Request | None = None) -> dict:
    student = get_student_or_404(db, user_id)
    new_password = generate_password()
    student.password_hash = hash_password(new_password)
    student.failed_login_count = 0
    student.locked_until = None
    drop_sessions(db, student)
    log_audit(db, action="reset_password", actor=actor, target_user=student, request=request)
    db.commit()
    record_admin_operation("reset_password")
    logger.info("reset_password student=%s by admin=%s", student.id, actor.id)
    return {
        "success": True,
        "message": "Password has been reset.",
        "data": {"id": str(student.id), "email": student.email, "newPassword": new_password},
    }


def delete_student(db: Session, actor: User, user_id: str, request: Request | None = None) -> dict:
    target = get_user_or_404(db, user_id)
    if target.id == actor.id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account.")
    if target.role == UserRole.admin.value:
        raise HTTPException(status_code=400, detail="Admin accounts cannot be managed here.")

    log_audit(
        db,
        action="delete_student",
        actor=actor,
        target_user=target,
        metadata={"email": target.email},
        request=request,
    )
    db.delete(target)
    db.commit()
    record_admin_operation("delete")
    logger.info("delete student=%s by admin=%s", user_id, actor.id)
    return {"success": True, "message": "User has been deleted."}


def user_all_data(db: Session, user_id: str) -> dict:
    user = get_user_or_404(db, user_id)
    enrollments = (
        db.query(Enrollment)
        .options(selectinload(Enrollment.course))
        .filter(Enrollment.student_id == user.id)
        .order_by(Enrollment.created_at.asc())
        .all()
    )
    events = (
        db.query(WatchHistory)
        .filter(WatchHistory.student_id == user.id)
        .order_by(WatchHistory.last_watched_at.desc())
        .all()
    )
    return {
        "success": True,
        "data": {
            "user": user_profile(user),
            "enrollments": [
                {
                    "id": str(enrollment.id),
                    "courseId": str(enrollment.course_id) if enrollment.course_id else None,
                    "courseName": enrollment.course.name if enrollment.course else UNKNOWN_COURSE,
                    "paymentStatus": enrollment.payment_status,
                    "enrollmentDate": isoformat(enrollment.created_at),
                }
                for enrollment in enrollments
            ],
            "watchHistory": [
                {
                    "lessonId": str(event.lesson_id),
                    "lastWatchedAt": isoformat(event.last_watched_at),
                }
                for event in events
            ],
        },
    }
