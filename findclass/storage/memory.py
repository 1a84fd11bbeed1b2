from __future__ import annotations

import threading
from dataclasses import fields as dataclass_fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from findclass.logging import get_logger
from findclass.storage.common import (
    CourseSearchFilters,
    CourseSearchOptions,
    TeacherFilters,
    course_matches,
    normalize_page,
    rating_summary,
    sort_courses,
    teacher_matches,
)
from findclass.storage.errors import ConstraintViolation
from findclass.storage.models import (
    Child,
    Course,
    CourseStatus,
    Inquiry,
    LearningRecord,
    InquiryStatus,
    Notification,
    Qualification,
    Report,
    Review,
    ReviewStatus,
    RoleApplication,
    RoleApplicationHistory,
    Teacher,
    TokenRecord,
    TokenStatus,
    User,
    UserCredential,
    new_id,
    utcnow,
)

_USER_FIELDS = {"name", "phone", "avatar_url", "language", "role", "status"}
_TEACHER_FIELDS = {
    "display_name",
    "bio",
    "teaching_subjects",
    "teaching_modes",
    "locations",
    "teaching_years",
    "verified",
    "verification_status",
    "trust_level",
}
_COURSE_FIELDS = {f.name for f in dataclass_fields(Course)} - {
    "id",
    "created_at",
    "updated_at",
    "current_enrollment",
    "average_rating",
    "total_reviews",
}
_CHILD_FIELDS = {
    "name",
    "date_of_birth",
    "gender",
    "school",
    "grade",
    "subjects",
    "learning_goals",
    "has_consent",
    "consent_date",
    "consent_method",
}
_REVIEW_FIELDS = {"status", "reply_content", "reply_created_at"}
_INQUIRY_FIELDS = {"status", "reply_content", "replied_at"}
_REPORT_FIELDS = {"status", "admin_notes", "resolved_at"}


def _apply(obj: Any, changes: Dict[str, Any], allowed: Set[str]) -> None:
    for key, value in changes.items():
        if key in allowed:
            setattr(obj, key, value)
    if hasattr(obj, "updated_at"):
        obj.updated_at = utcnow()


def _page(items: Sequence[Any], page: int, limit: int) -> Tuple[List[Any], int]:
    page, limit, offset = normalize_page(page, limit, default_limit=limit)
    return list(items[offset : offset + limit]), len(items)


class MemoryStore:
    """In-process store with the same surface as ``PostgresStore``.

    Used for tests and local development; nothing survives a restart.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.role_applications: Dict[str, RoleApplication] = {}
        self.role_history: List[RoleApplicationHistory] = []
        self.teachers: Dict[str, Teacher] = {}
        self.qualifications: Dict[str, Qualification] = {}
        self.courses: Dict[str, Course] = {}
        self.favorites: Dict[str, Dict[str, datetime]] = {}
        self.reviews: Dict[str, Review] = {}
        self.children: Dict[str, Child] = {}
        self.notifications: Dict[str, Notification] = {}
        self.learning_records: Dict[str, LearningRecord] = {}
        self.inquiries: Dict[str, Inquiry] = {}
        self.reports: Dict[str, Report] = {}
        # RLock so helpers can nest inside locked sections
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: str,
        status: str,
        phone: Optional[str] = None,
        language: str = "zh",
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                name=name,
                role=role,
                status=status,
                phone=phone,
                language=language,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            _apply(user, changes, _USER_FIELDS)
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.favorites.pop(user_id, None)
            for jti, record in list(self.tokens.items()):
                if record.user_id == user_id:
                    self.tokens.pop(jti, None)
            for app_id, app in list(self.role_applications.items()):
                if app.user_id == user_id:
                    self.role_applications.pop(app_id, None)
            self.role_history = [h for h in self.role_history if h.user_id != user_id]
            for child_id, child in list(self.children.items()):
                if child.user_id == user_id:
                    self.children.pop(child_id, None)
            for note_id, note in list(self.notifications.items()):
                if note.user_id == user_id:
                    self.notifications.pop(note_id, None)
            for record_id, record in list(self.learning_records.items()):
                if record.user_id == user_id:
                    self.learning_records.pop(record_id, None)
            for review_id, review in list(self.reviews.items()):
                if review.user_id == user_id:
                    self.reviews.pop(review_id, None)
            for teacher in [t for t in self.teachers.values() if t.user_id == user_id]:
                self._delete_teacher(teacher.id)
            # inquiries and reports outlive their author
            for inquiry in self.inquiries.values():
                if inquiry.user_id == user_id:
                    inquiry.user_id = None
            for report in self.reports.values():
                if report.user_id == user_id:
                    report.user_id = None
            return True

    def _delete_teacher(self, teacher_id: str) -> None:
        self.teachers.pop(teacher_id, None)
        for qual_id, qual in list(self.qualifications.items()):
            if qual.teacher_id == teacher_id:
                self.qualifications.pop(qual_id, None)
        for course_id, course in list(self.courses.items()):
            if course.teacher_id == teacher_id:
                self._delete_course(course_id)
        for review_id, review in list(self.reviews.items()):
            if review.teacher_id == teacher_id:
                self.reviews.pop(review_id, None)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserCredential(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )

    def get_password_record(self, user_id: str) -> Optional[UserCredential]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- issued tokens -------------------------------------------------------

    def record_token(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            if record.token_jti in self.tokens:
                raise ConstraintViolation("token already recorded", {"field": "token_jti"})
            self.tokens[record.token_jti] = record
            return record

    def get_token(self, jti: str) -> Optional[TokenRecord]:
        with self._data_lock:
            return self.tokens.get(jti)

    def revoke_token(
        self,
        jti: str,
        *,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        token_type: str = "access",
    ) -> None:
        with self._data_lock:
            record = self.tokens.get(jti)
            if record:
                record.status = TokenStatus.REVOKED.value
                return
            self.tokens[jti] = TokenRecord(
                id=new_id(),
                user_id=user_id,
                token_jti=jti,
                token_hash=token_hash,
                expires_at=expires_at,
                status=TokenStatus.REVOKED.value,
                token_type=token_type,
            )

    def is_token_revoked(self, jti: str) -> bool:
        with self._data_lock:
            record = self.tokens.get(jti)
            return bool(
                record
                and record.status == TokenStatus.REVOKED.value
                and not record.is_expired()
            )

    def revoke_all_user_tokens(
        self, user_id: str, *, except_jtis: Iterable[str] = ()
    ) -> List[TokenRecord]:
        keep = set(except_jtis)
        revoked: List[TokenRecord] = []
        with self._data_lock:
            for record in self.tokens.values():
                if (
                    record.user_id == user_id
                    and record.status == TokenStatus.ACTIVE.value
                    and record.token_jti not in keep
                ):
                    record.status = TokenStatus.REVOKED.value
                    revoked.append(record)
        return revoked

    def list_active_tokens(self, user_id: str) -> List[TokenRecord]:
        now = utcnow()
        with self._data_lock:
            active = [
                r
                for r in self.tokens.values()
                if r.user_id == user_id
                and r.status == TokenStatus.ACTIVE.value
                and not r.is_expired(now)
            ]
        return sorted(active, key=lambda r: r.created_at, reverse=True)

    def touch_token(self, jti: str) -> None:
        with self._data_lock:
            record = self.tokens.get(jti)
            if record:
                record.last_activity_at = utcnow()

    def cleanup_expired_tokens(self, before: Optional[datetime] = None) -> int:
        """Drop token rows that expired before ``before`` (default now)."""
        now = before or utcnow()
        with self._data_lock:
            stale = [jti for jti, r in self.tokens.items() if r.is_expired(now)]
            for jti in stale:
                self.tokens.pop(jti, None)
        return len(stale)

    # -- role applications ---------------------------------------------------

    def create_role_application(
        self, user_id: str, role: str, reason: Optional[str] = None
    ) -> RoleApplication:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            application = RoleApplication(
                id=new_id(), user_id=user_id, role=role, reason=reason
            )
            self.role_applications[application.id] = application
            return application

    def get_role_application(self, application_id: str) -> Optional[RoleApplication]:
        with self._data_lock:
            return self.role_applications.get(application_id)

    def update_role_application(
        self,
        application_id: str,
        *,
        status: str,
        reviewed_by: Optional[str] = None,
        review_notes: Optional[str] = None,
    ) -> Optional[RoleApplication]:
        with self._data_lock:
            application = self.role_applications.get(application_id)
            if not application:
                return None
            application.status = status
            if reviewed_by:
                application.reviewed_by = reviewed_by
                application.reviewed_at = utcnow()
            if review_notes is not None:
                application.review_notes = review_notes
            return application

    def list_role_applications(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[RoleApplication]:
        with self._data_lock:
            results = [
                a
                for a in self.role_applications.values()
                if (not user_id or a.user_id == user_id) and (not status or a.status == status)
            ]
        results.sort(key=lambda a: a.applied_at, reverse=True)
        return results[:limit]

    def add_role_application_history(
        self,
        application_id: str,
        *,
        user_id: str,
        role: str,
        action: str,
        actor_id: str,
        comment: Optional[str] = None,
    ) -> RoleApplicationHistory:
        entry = RoleApplicationHistory(
            id=new_id(),
            application_id=application_id,
            user_id=user_id,
            role=role,
            action=action,
            actor_id=actor_id,
            comment=comment,
        )
        with self._data_lock:
            self.role_history.append(entry)
        return entry

    def list_role_application_history(
        self, *, application_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[RoleApplicationHistory]:
        with self._data_lock:
            results = [
                h
                for h in self.role_history
                if (not application_id or h.application_id == application_id)
                and (not user_id or h.user_id == user_id)
            ]
        return sorted(results, key=lambda h: h.created_at)

    # -- teachers ------------------------------------------------------------

    def create_teacher(
        self,
        user_id: str,
        display_name: str,
        *,
        bio: Optional[str] = None,
        teaching_subjects: Optional[List[str]] = None,
        teaching_modes: Optional[List[str]] = None,
        locations: Optional[List[str]] = None,
    ) -> Teacher:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(t.user_id == user_id for t in self.teachers.values()):
                raise ConstraintViolation(
                    "teacher profile already exists", {"field": "user_id"}
                )
            teacher = Teacher(
                id=new_id(),
                user_id=user_id,
                display_name=display_name,
                bio=bio,
                teaching_subjects=list(teaching_subjects or []),
                teaching_modes=list(teaching_modes or []),
                locations=list(locations or []),
            )
            self.teachers[teacher.id] = teacher
            return teacher

    def get_teacher(self, teacher_id: str) -> Optional[Teacher]:
        with self._data_lock:
            return self.teachers.get(teacher_id)

    def get_teacher_by_user(self, user_id: str) -> Optional[Teacher]:
        with self._data_lock:
            return next((t for t in self.teachers.values() if t.user_id == user_id), None)

    def update_teacher(self, teacher_id: str, **changes: Any) -> Optional[Teacher]:
        with self._data_lock:
            teacher = self.teachers.get(teacher_id)
            if not teacher:
                return None
            _apply(teacher, changes, _TEACHER_FIELDS)
            return teacher

    def update_teacher_rating(
        self, teacher_id: str, average_rating: float, total_reviews: int
    ) -> Optional[Teacher]:
        with self._data_lock:
            teacher = self.teachers.get(teacher_id)
            if not teacher:
                return None
            teacher.average_rating = average_rating
            teacher.total_reviews = total_reviews
            teacher.updated_at = utcnow()
            return teacher

    def list_teachers(
        self, filters: TeacherFilters, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[Teacher], int]:
        with self._data_lock:
            matches = [t for t in self.teachers.values() if teacher_matches(t, filters)]
        matches.sort(key=lambda t: t.created_at, reverse=True)
        matches.sort(key=lambda t: t.average_rating, reverse=True)
        return _page(matches, page, limit)

    def add_qualification(
        self,
        teacher_id: str,
        *,
        type: str,
        name: str,
        institution: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Qualification:
        with self._data_lock:
            if teacher_id not in self.teachers:
                raise ConstraintViolation("teacher does not exist", {"teacher_id": teacher_id})
            qualification = Qualification(
                id=new_id(),
                teacher_id=teacher_id,
                type=type,
                name=name,
                institution=institution,
                year=year,
            )
            self.qualifications[qualification.id] = qualification
            return qualification

    def list_qualifications(self, teacher_id: str) -> List[Qualification]:
        with self._data_lock:
            results = [q for q in self.qualifications.values() if q.teacher_id == teacher_id]
        return sorted(results, key=lambda q: q.created_at)

    # -- courses -------------------------------------------------------------

    def create_course(self, teacher_id: str, **values: Any) -> Course:
        with self._data_lock:
            if teacher_id not in self.teachers:
                raise ConstraintViolation("teacher does not exist", {"teacher_id": teacher_id})
            payload = {k: v for k, v in values.items() if k in _COURSE_FIELDS}
            payload["teacher_id"] = teacher_id
            course = Course(id=new_id(), **payload)
            if course.status == CourseStatus.ACTIVE.value and course.published_at is None:
                course.published_at = course.created_at
            self.courses[course.id] = course
            return course

    def get_course(self, course_id: str) -> Optional[Course]:
        with self._data_lock:
            return self.courses.get(course_id)

    def update_course(self, course_id: str, **changes: Any) -> Optional[Course]:
        with self._data_lock:
            course = self.courses.get(course_id)
            if not course:
                return None
            _apply(course, changes, _COURSE_FIELDS - {"teacher_id"})
            return course

    def delete_course(self, course_id: str) -> bool:
        with self._data_lock:
            return self._delete_course(course_id)

    def _delete_course(self, course_id: str) -> bool:
        if self.courses.pop(course_id, None) is None:
            return False
        for favs in self.favorites.values():
            favs.pop(course_id, None)
        for record_id, record in list(self.learning_records.items()):
            if record.course_id == course_id:
                self.learning_records.pop(record_id, None)
        for review in self.reviews.values():
            if review.course_id == course_id:
                review.course_id = None
        return True

    def list_courses_by_teacher(self, teacher_id: str) -> List[Course]:
        with self._data_lock:
            results = [c for c in self.courses.values() if c.teacher_id == teacher_id]
        return sorted(results, key=lambda c: c.created_at, reverse=True)

    def search_courses(
        self, filters: CourseSearchFilters, options: CourseSearchOptions
    ) -> Tuple[List[Course], int]:
        with self._data_lock:
            matches = [c for c in self.courses.values() if course_matches(c, filters)]
        ordered = sort_courses(matches, options)
        return ordered[options.offset : options.offset + options.limit], len(ordered)

    def course_statistics(self, teacher_id: Optional[str] = None) -> Dict[str, Any]:
        with self._data_lock:
            courses = [
                c for c in self.courses.values() if not teacher_id or c.teacher_id == teacher_id
            ]
        rated = [c.average_rating for c in courses if c.average_rating]
        categories: Dict[str, int] = {}
        for course in courses:
            categories[course.category] = categories.get(course.category, 0) + 1
        return {
            "total_courses": len(courses),
            "active_courses": sum(1 for c in courses if c.status == CourseStatus.ACTIVE.value),
            "average_rating": round(sum(rated) / len(rated), 1) if rated else 0.0,
            "total_reviews": sum(c.total_reviews for c in courses),
            "average_price": round(sum(c.price for c in courses) / len(courses), 2)
            if courses
            else 0.0,
            "category_distribution": [
                {"category": name, "count": count}
                for name, count in sorted(categories.items(), key=lambda kv: (-kv[1], kv[0]))
            ],
        }

    def increment_enrollment(self, course_id: str) -> Optional[Course]:
        with self._data_lock:
            course = self.courses.get(course_id)
            if not course or course.current_enrollment >= course.max_class_size:
                return None
            course.current_enrollment += 1
            course.updated_at = utcnow()
            return course

    def decrement_enrollment(self, course_id: str) -> Optional[Course]:
        with self._data_lock:
            course = self.courses.get(course_id)
            if not course:
                return None
            course.current_enrollment = max(course.current_enrollment - 1, 0)
            course.updated_at = utcnow()
            return course

    def update_course_rating(
        self, course_id: str, average_rating: float, total_reviews: int
    ) -> Optional[Course]:
        with self._data_lock:
            course = self.courses.get(course_id)
            if not course:
                return None
            course.average_rating = average_rating
            course.total_reviews = total_reviews
            course.updated_at = utcnow()
            return course

    def search_suggestions(self, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        needle = query.lower()
        with self._data_lock:
            rows = []
            for course in self.courses.values():
                if course.status != CourseStatus.ACTIVE.value:
                    continue
                teacher = self.teachers.get(course.teacher_id)
                teacher_name = teacher.display_name if teacher else None
                texts = (course.title, course.category, course.description, teacher_name)
                if any(needle in (text or "").lower() for text in texts):
                    rows.append((course, teacher_name))
        rows.sort(key=lambda row: (row[0].average_rating is None, -(row[0].average_rating or 0.0)))
        return [
            {
                "id": course.id,
                "title": course.title,
                "category": course.category,
                "teacher_name": teacher_name,
                "average_rating": course.average_rating,
            }
            for course, teacher_name in rows[:limit]
        ]

    # -- favourites ----------------------------------------------------------

    def toggle_favorite(self, user_id: str, course_id: str) -> bool:
        with self._data_lock:
            if course_id not in self.courses:
                raise ConstraintViolation("course does not exist", {"course_id": course_id})
            favs = self.favorites.setdefault(user_id, {})
            if course_id in favs:
                favs.pop(course_id)
                return False
            favs[course_id] = utcnow()
            return True

    def list_favorites(self, user_id: str) -> List[Course]:
        with self._data_lock:
            favs = self.favorites.get(user_id, {})
            ordered = sorted(favs.items(), key=lambda kv: kv[1], reverse=True)
            return [self.courses[cid] for cid, _ in ordered if cid in self.courses]

    # -- reviews -------------------------------------------------------------

    def create_review(self, user_id: str, teacher_id: str, **values: Any) -> Review:
        with self._data_lock:
            if teacher_id not in self.teachers:
                raise ConstraintViolation("teacher does not exist", {"teacher_id": teacher_id})
            if any(
                r.user_id == user_id and r.teacher_id == teacher_id
                for r in self.reviews.values()
            ):
                raise ConstraintViolation("review already exists", {"field": "teacher_id"})
            review = Review(id=new_id(), user_id=user_id, teacher_id=teacher_id, **values)
            self.reviews[review.id] = review
            return review

    def get_review(self, review_id: str) -> Optional[Review]:
        with self._data_lock:
            return self.reviews.get(review_id)

    def find_review(self, user_id: str, teacher_id: str) -> Optional[Review]:
        with self._data_lock:
            return next(
                (
                    r
                    for r in self.reviews.values()
                    if r.user_id == user_id and r.teacher_id == teacher_id
                ),
                None,
            )

    def list_reviews(
        self,
        *,
        teacher_id: Optional[str] = None,
        course_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        rating_min: Optional[float] = None,
        sort_by: str = "recent",
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Review], int]:
        with self._data_lock:
            matches = [
                r
                for r in self.reviews.values()
                if (not teacher_id or r.teacher_id == teacher_id)
                and (not course_id or r.course_id == course_id)
                and (not user_id or r.user_id == user_id)
                and (not status or r.status == status)
                and (rating_min is None or r.overall_rating >= rating_min)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        if sort_by == "helpful":
            matches.sort(key=lambda r: r.helpful_count, reverse=True)
        return _page(matches, page, limit)

    def update_review(self, review_id: str, **changes: Any) -> Optional[Review]:
        with self._data_lock:
            review = self.reviews.get(review_id)
            if not review:
                return None
            _apply(review, changes, _REVIEW_FIELDS)
            return review

    def increment_review_helpful(self, review_id: str) -> Optional[Review]:
        with self._data_lock:
            review = self.reviews.get(review_id)
            if not review:
                return None
            review.helpful_count += 1
            return review

    def delete_review(self, review_id: str) -> bool:
        with self._data_lock:
            return self.reviews.pop(review_id, None) is not None

    def review_stats(self, teacher_id: str) -> Dict[str, Any]:
        with self._data_lock:
            approved = [
                r
                for r in self.reviews.values()
                if r.teacher_id == teacher_id and r.status == ReviewStatus.APPROVED.value
            ]

        def _avg(values: List[Optional[float]]) -> Optional[float]:
            present = [v for v in values if v is not None]
            return round(sum(present) / len(present), 1) if present else None

        distribution = {str(n): 0 for n in range(1, 6)}
        for review in approved:
            bucket = str(min(5, max(1, int(round(review.overall_rating)))))
            distribution[bucket] += 1
        average, total = rating_summary([r.overall_rating for r in approved])
        return {
            "total_reviews": total,
            "average_rating": average,
            "rating_distribution": distribution,
            "dimension_averages": {
                "teaching": _avg([r.teaching_rating for r in approved]),
                "course": _avg([r.course_rating for r in approved]),
                "communication": _avg([r.communication_rating for r in approved]),
                "punctuality": _avg([r.punctuality_rating for r in approved]),
            },
        }

    def approved_ratings(
        self, *, teacher_id: Optional[str] = None, course_id: Optional[str] = None
    ) -> List[float]:
        with self._data_lock:
            return [
                r.overall_rating
                for r in self.reviews.values()
                if r.status == ReviewStatus.APPROVED.value
                and (not teacher_id or r.teacher_id == teacher_id)
                and (not course_id or r.course_id == course_id)
            ]

    # -- children ------------------------------------------------------------

    def create_child(self, user_id: str, name: str, **values: Any) -> Child:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            payload = {k: v for k, v in values.items() if k in _CHILD_FIELDS}
            child = Child(id=new_id(), user_id=user_id, name=name, **payload)
            self.children[child.id] = child
            return child

    def get_child(self, child_id: str) -> Optional[Child]:
        with self._data_lock:
            return self.children.get(child_id)

    def list_children(self, user_id: str) -> List[Child]:
        with self._data_lock:
            results = [c for c in self.children.values() if c.user_id == user_id]
        return sorted(results, key=lambda c: c.created_at)

    def update_child(self, child_id: str, **changes: Any) -> Optional[Child]:
        with self._data_lock:
            child = self.children.get(child_id)
            if not child:
                return None
            _apply(child, changes, _CHILD_FIELDS)
            return child

    def delete_child(self, child_id: str) -> bool:
        with self._data_lock:
            return self.children.pop(child_id, None) is not None

    # -- notifications -------------------------------------------------------

    def create_notification(
        self, user_id: str, type: str, title: str, content: str
    ) -> Notification:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            note = Notification(
                id=new_id(), user_id=user_id, type=type, title=title, content=content
            )
            self.notifications[note.id] = note
            return note

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._data_lock:
            return self.notifications.get(notification_id)

    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, page: int = 1, limit: int = 20
    ) -> Tuple[List[Notification], int]:
        with self._data_lock:
            matches = [
                n
                for n in self.notifications.values()
                if n.user_id == user_id and (not unread_only or not n.is_read)
            ]
        matches.sort(key=lambda n: n.created_at, reverse=True)
        return _page(matches, page, limit)

    def count_unread_notifications(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for n in self.notifications.values() if n.user_id == user_id and not n.is_read
            )

    def mark_notification_read(self, notification_id: str) -> Optional[Notification]:
        with self._data_lock:
            note = self.notifications.get(notification_id)
            if not note:
                return None
            if not note.is_read:
                note.is_read = True
                note.read_at = utcnow()
            return note

    def mark_all_notifications_read(self, user_id: str) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for note in self.notifications.values():
                if note.user_id == user_id and not note.is_read:
                    note.is_read = True
                    note.read_at = now
                    count += 1
        return count

    def delete_notification(self, notification_id: str) -> bool:
        with self._data_lock:
            return self.notifications.pop(notification_id, None) is not None

    # -- learning history ----------------------------------------------------

    def create_learning_record(
        self, user_id: str, course_id: str, type: str, **values: Any
    ) -> LearningRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if course_id not in self.courses:
                raise ConstraintViolation("course does not exist", {"course_id": course_id})
            record = LearningRecord(
                id=new_id(), user_id=user_id, course_id=course_id, type=type, **values
            )
            self.learning_records[record.id] = record
            return record

    def get_learning_record(self, record_id: str) -> Optional[LearningRecord]:
        with self._data_lock:
            return self.learning_records.get(record_id)

    def list_learning_records(
        self,
        user_id: str,
        *,
        course_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[LearningRecord], int]:
        with self._data_lock:
            matches = [
                r
                for r in self.learning_records.values()
                if r.user_id == user_id and (course_id is None or r.course_id == course_id)
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return _page(matches, page, limit)

    def delete_learning_record(self, record_id: str) -> bool:
        with self._data_lock:
            return self.learning_records.pop(record_id, None) is not None

    # -- inquiries and reports -----------------------------------------------

    def create_inquiry(self, target_type: str, message: str, **values: Any) -> Inquiry:
        inquiry = Inquiry(id=new_id(), target_type=target_type, message=message, **values)
        with self._data_lock:
            self.inquiries[inquiry.id] = inquiry
        return inquiry

    def get_inquiry(self, inquiry_id: str) -> Optional[Inquiry]:
        with self._data_lock:
            return self.inquiries.get(inquiry_id)

    def find_pending_inquiry(
        self, user_id: str, target_type: str, target_id: Optional[str]
    ) -> Optional[Inquiry]:
        with self._data_lock:
            return next(
                (
                    i
                    for i in self.inquiries.values()
                    if i.user_id == user_id
                    and i.target_type == target_type
                    and i.target_id == target_id
                    and i.status == InquiryStatus.PENDING.value
                ),
                None,
            )

    def list_inquiries(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Inquiry], int]:
        with self._data_lock:
            matches = [
                i
                for i in self.inquiries.values()
                if (not status or i.status == status) and (not user_id or i.user_id == user_id)
            ]
        matches.sort(key=lambda i: i.created_at, reverse=True)
        return _page(matches, page, limit)

    def update_inquiry(self, inquiry_id: str, **changes: Any) -> Optional[Inquiry]:
        with self._data_lock:
            inquiry = self.inquiries.get(inquiry_id)
            if not inquiry:
                return None
            _apply(inquiry, changes, _INQUIRY_FIELDS)
            return inquiry

    def create_report(
        self, target_type: str, target_id: str, reason: str, description: str, **values: Any
    ) -> Report:
        report = Report(
            id=new_id(),
            target_type=target_type,
            target_id=target_id,
            reason=reason,
            description=description,
            **values,
        )
        with self._data_lock:
            self.reports[report.id] = report
        return report

    def get_report(self, report_id: str) -> Optional[Report]:
        with self._data_lock:
            return self.reports.get(report_id)

    def list_reports(
        self, *, status: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[Report], int]:
        with self._data_lock:
            matches = [r for r in self.reports.values() if not status or r.status == status]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return _page(matches, page, limit)

    def update_report(self, report_id: str, **changes: Any) -> Optional[Report]:
        with self._data_lock:
            report = self.reports.get(report_id)
            if not report:
                return None
            _apply(report, changes, _REPORT_FIELDS)
            return report


__all__ = ["MemoryStore"]
