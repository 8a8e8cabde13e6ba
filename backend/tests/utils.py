from datetime import datetime, timedelta, timezone

from backend.app.models import Chapter, Course, Enrollment, Lesson, User, WatchHistory
from backend.app.security import hash_password

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


def seed_user(db, email, role="student", password="Pass123!", name=None, created_at=None, **fields):
    user = User(
        email=email,
        name=name or email.split("@")[0].replace(".", " ").title(),
        role=role,
        password_hash=hash_password(password),
        created_at=created_at or datetime.now(timezone.utc),
        **fields,
    )
    db.add(user)
    db.commit()
    return user


def seed_course(db, name="Algebra", chapters=(("Basics", ("Numbers", "Variables")),)):
    course = Course(name=name, description=f"{name} course")
    for chapter_pos, (chapter_title, lesson_titles) in enumerate(chapters):
        chapter = Chapter(title=chapter_title, description=f"{chapter_title} chapter", position=chapter_pos)
        for lesson_pos, lesson_title in enumerate(lesson_titles):
            chapter.lessons.append(
                Lesson(title=lesson_title, description=f"{lesson_title} lesson", position=lesson_pos)
            )
        course.chapters.append(chapter)
    db.add(course)
    db.commit()
    return course


def lessons_of(course):
    return [lesson for chapter in course.chapters for lesson in chapter.lessons]


def enroll(db, student, course, payment_status="paid", created_at=None):
    enrollment = Enrollment(
        student_id=student.id,
        course_id=course.id if course else None,
        payment_status=payment_status,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(enrollment)
    db.commit()
    return enrollment


def watch(db, student, lesson, at=None):
    event = WatchHistory(student_id=student.id, lesson_id=lesson.id, last_watched_at=at or BASE_TIME)
    db.add(event)
    db.commit()
    return event


def hours(n):
    return BASE_TIME + timedelta(hours=n)


def login(client, email, password):
    res = client.post("/api/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200
    me = client.get("/api/auth/me")
    assert me.status_code == 200
    return me.json()["csrf_token"]
