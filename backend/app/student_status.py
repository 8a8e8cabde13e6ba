"""
Admin dashboard aggregation: one page of students joined with their
enrollments (course -> chapters -> lessons) and lesson watch history.

Ranking is applied after the page window is cut, so a sort policy orders
students within the returned page only.
"""
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from .models import Chapter, Course, Enrollment, User, UserRole, WatchHistory
from .paging import page_meta

STATUS_NOT_ENROLLED = "not enrolled"
STATUS_INACTIVE = "inactive"
STATUS_ACTIVE = "active"

SORT_POLICIES = ("views", "recent", "inactive")

STATUS_PRIORITY = {
    STATUS_NOT_ENROLLED: 3,
    STATUS_INACTIVE: 2,
    STATUS_ACTIVE: 1,
}

UNKNOWN_COURSE = "Unknown Course"
NOT_PROVIDED = "Not provided"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(value):
    if not value:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value):
    value = ensure_utc(value)
    return value.isoformat() if value else None


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def student_query(db: Session, search: str = ""):
    """Non-admin accounts, optionally narrowed by a case-insensitive name/email substring."""
    query = db.query(User).filter(User.role != UserRole.admin.value)
    if search:
        term = f"%{escape_like(search.lower())}%"
        query = query.filter(or_(User.name.ilike(term, escape="\\"), User.email.ilike(term, escape="\\")))
    return query


def student_info(student: User) -> dict:
    return {
        "id": str(student.id),
        "name": student.name,
        "lastActivity": isoformat(student.last_active),
        "email": student.email,
        "phoneNumber": student.phone_number or NOT_PROVIDED,
        "parentPhoneNumber": student.parent_phone_number or NOT_PROVIDED,
        "createdAt": isoformat(student.created_at),
    }


def enrolled_course_view(enrollment: Enrollment, watch_counts: dict) -> dict:
    course = enrollment.course
    if course is None:
        return {
            "courseName": UNKNOWN_COURSE,
            "enrollmentDate": isoformat(enrollment.created_at),
            "paymentStatus": enrollment.payment_status,
            "chapters": [],
        }

    chapters = []
    for chapter in course.chapters or []:
        lessons = []
        for lesson in chapter.lessons or []:
            count = watch_counts.get(lesson.id, 0)
            lessons.append({
                "lessonTitle": lesson.title,
                "lessonDescription": lesson.description,
                "isWatched": count > 0,
                "watchCount": count,
            })
        chapters.append({
            "chapterTitle": chapter.title,
            "chapterDescription": chapter.description,
            "lessons": lessons,
        })

    return {
        "courseName": course.name,
        "enrollmentDate": isoformat(enrollment.created_at),
        "paymentStatus": enrollment.payment_status,
        "chapters": chapters,
    }


def derive_status(enrollments, watch_events) -> str:
    # Enrollments without any paid one stay "not enrolled".
    status = STATUS_NOT_ENROLLED
    if enrollments:
        if any(e.payment_status == "paid" for e in enrollments):
            status = STATUS_ACTIVE if watch_events else STATUS_INACTIVE
    return status


def last_watched(watch_events):
    stamps = [ensure_utc(event.last_watched_at) for event in watch_events if event.last_watched_at]
    return max(stamps) if stamps else None


def build_student_view(student: User, enrollments, watch_events) -> dict:
    watch_counts = {}
    for event in watch_events:
        watch_counts[event.lesson_id] = watch_counts.get(event.lesson_id, 0) + 1

    return {
        "studentInfo": student_info(student),
        "enrollmentStatus": {
            "isEnrolled": len(enrollments) > 0,
            "enrolledCourses": [enrolled_course_view(e, watch_counts) for e in enrollments],
            "totalEnrollments": len(enrollments),
        },
        "activityStatus": {
            "status": derive_status(enrollments, watch_events),
            "lastActivity": last_watched(watch_events),
            "totalWatchedLessons": len(watch_events),
        },
    }


def _activity_time(view: dict) -> datetime:
    return view["activityStatus"]["lastActivity"] or EPOCH


def sort_views(views: list, sort_by: str) -> list:
    """Stable, page-local ordering. Unknown policies keep the window order."""
    if sort_by == "views":
        return sorted(views, key=lambda v: v["activityStatus"]["totalWatchedLessons"], reverse=True)
    if sort_by == "recent":
        return sorted(views, key=_activity_time, reverse=True)
    if sort_by == "inactive":
        return sorted(
            views,
            key=lambda v: (STATUS_PRIORITY.get(v["activityStatus"]["status"], 0), _activity_time(v)),
            reverse=True,
        )
    return list(views)


def load_page_relations(db: Session, student_ids):
    """Batch-load enrollments (with catalog tree) and watch events for a page of students."""
    enrollments = (
        db.query(Enrollment)
        .options(
            selectinload(Enrollment.course)
            .selectinload(Course.chapters)
            .selectinload(Chapter.lessons)
        )
        .filter(Enrollment.student_id.in_(student_ids))
        .order_by(Enrollment.created_at.asc())
        .all()
    )
    events = db.query(WatchHistory).filter(WatchHistory.student_id.in_(student_ids)).all()

    enrollments_by_student = {student_id: [] for student_id in student_ids}
    for enrollment in enrollments:
        enrollments_by_student[enrollment.student_id].append(enrollment)
    events_by_student = {student_id: [] for student_id in student_ids}
    for event in events:
        events_by_student[event.student_id].append(event)
    return enrollments_by_student, events_by_student


def serialize_view(view: dict) -> dict:
    activity = view["activityStatus"]
    return {
        **view,
        "activityStatus": {**activity, "lastActivity": isoformat(activity["lastActivity"])},
    }


def list_student_status(db: Session, page: int, limit: int, sort_by: str = "views", search: str = "") -> dict:
    query = student_query(db, search)
    total_students = query.count()

    students = (
        query.order_by(User.created_at.desc(), User.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    if not students:
        return {
            "success": True,
            "count": 0,
            "totalStudents": total_students,
            "totalPages": 0,
            "currentPage": page,
            "hasNextPage": False,
            "hasPreviousPage": page > 1,
            "data": [],
        }

    student_ids = [student.id for student in students]
    enrollments_by_student, events_by_student = load_page_relations(db, student_ids)

    views = [
        build_student_view(student, enrollments_by_student[student.id], events_by_student[student.id])
        for student in students
    ]
    ranked = sort_views(views, sort_by)

    return {
        "success": True,
        "count": len(ranked),
        "totalStudents": total_students,
        **page_meta(total_students, page, limit),
        "data": [serialize_view(view) for view in ranked],
    }
