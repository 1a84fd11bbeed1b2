from __future__ import annotations

import uuid
from dataclasses import fields as dataclass_fields
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from findclass.logging import get_logger
from findclass.storage.common import (
    CourseSearchFilters,
    CourseSearchOptions,
    TeacherFilters,
    build_course_search,
    build_teacher_search,
    escape_like,
    normalize_page,
    rating_summary,
)
from findclass.storage.errors import ConstraintViolation
from findclass.storage.memory import (
    _CHILD_FIELDS,
    _COURSE_FIELDS,
    _INQUIRY_FIELDS,
    _REPORT_FIELDS,
    _REVIEW_FIELDS,
    _TEACHER_FIELDS,
    _USER_FIELDS,
)
from findclass.storage.models import (
    Child,
    Course,
    CourseStatus,
    Inquiry,
    InquiryStatus,
    LearningRecord,
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

T = TypeVar("T")

_REQUIRED_TABLES = (
    "users",
    "sessions",
    "role_applications",
    "role_application_history",
    "teachers",
    "teacher_qualifications",
    "courses",
    "favorites",
    "reviews",
    "children",
    "notifications",
    "learning_records",
    "inquiries",
    "reports",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def _coerce(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _from_row(cls: Type[T], row: Optional[Dict[str, Any]]) -> Optional[T]:
    """Build a dataclass from a ``dict_row``, ignoring columns it does not declare."""
    if not row:
        return None
    names = {f.name for f in dataclass_fields(cls)}
    values = {key: _coerce(value) for key, value in row.items() if key in names}
    return cls(**values)


class PostgresStore:
    """Postgres-backed store; the schema lives in ``sql/schema.sql``."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql before starting the API.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- generic helpers -----------------------------------------------------

    def _fetch(self, cls: Type[T], table: str, row_id: str) -> Optional[T]:
        if not _is_uuid(row_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = %s", (row_id,)
            ).fetchone()
        return _from_row(cls, row)

    def _update(
        self,
        cls: Type[T],
        table: str,
        row_id: str,
        changes: Dict[str, Any],
        allowed: Set[str],
        *,
        touch: bool = True,
    ) -> Optional[T]:
        if not _is_uuid(row_id):
            return None
        updates = {k: v for k, v in changes.items() if k in allowed}
        if touch:
            updates["updated_at"] = utcnow()
        if not updates:
            return self._fetch(cls, table, row_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = %s RETURNING *",
                (*updates.values(), row_id),
            ).fetchone()
        return _from_row(cls, row)

    def _delete(self, table: str, row_id: str) -> bool:
        if not _is_uuid(row_id):
            return False
        with self._connect() as conn:
            result = conn.execute(f"DELETE FROM {table} WHERE id = %s", (row_id,))
            return result.rowcount > 0

    @staticmethod
    def _count(conn, table: str, where: str, params: Iterable[Any]) -> int:
        row = conn.execute(
            f"SELECT COUNT(*) AS total FROM {table} WHERE {where}", tuple(params)
        ).fetchone()
        return int(row["total"]) if row else 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, role, status, phone, language)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), email, name, role, status, phone, language),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _from_row(User, row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch(User, "users", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return _from_row(User, row)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        return self._update(User, "users", user_id, changes, _USER_FIELDS)

    def delete_user(self, user_id: str) -> bool:
        # FK actions cascade owned rows and null out inquiry/report authors
        return self._delete("users", user_id)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, password_algo = %s,
                    password_updated_at = now(), updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def get_password_record(self, user_id: str) -> Optional[UserCredential]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, password_hash, password_algo, password_updated_at FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return UserCredential(
            user_id=str(row["id"]),
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            updated_at=row.get("password_updated_at") or utcnow(),
        )

    # -- issued tokens -------------------------------------------------------

    def record_token(self, record: TokenRecord) -> TokenRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, token_jti, token_hash, token_type,
                                          expires_at, ip_address, user_agent, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token_jti,
                        record.token_hash,
                        record.token_type,
                        record.expires_at,
                        record.ip_address,
                        record.user_agent,
                        record.status,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already recorded", {"field": "token_jti"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        return record

    def get_token(self, jti: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE token_jti = %s", (jti,)
            ).fetchone()
        return _from_row(TokenRecord, row)

    def revoke_token(
        self,
        jti: str,
        *,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        token_type: str = "access",
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, user_id, token_jti, token_hash, token_type, expires_at, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_jti) DO UPDATE SET status = EXCLUDED.status
                """,
                (
                    new_id(),
                    user_id,
                    jti,
                    token_hash,
                    token_type,
                    expires_at,
                    TokenStatus.REVOKED.value,
                ),
            )

    def is_token_revoked(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS revoked FROM sessions
                WHERE token_jti = %s AND status = %s AND expires_at > now()
                """,
                (jti, TokenStatus.REVOKED.value),
            ).fetchone()
        return row is not None

    def revoke_all_user_tokens(
        self, user_id: str, *, except_jtis: Iterable[str] = ()
    ) -> List[TokenRecord]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE sessions SET status = %s
                WHERE user_id = %s AND status = %s
                  AND NOT (token_jti = ANY(%s::text[]))
                RETURNING *
                """,
                (
                    TokenStatus.REVOKED.value,
                    user_id,
                    TokenStatus.ACTIVE.value,
                    list(except_jtis),
                ),
            ).fetchall()
        return [_from_row(TokenRecord, row) for row in rows]

    def list_active_tokens(self, user_id: str) -> List[TokenRecord]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE user_id = %s AND status = %s AND expires_at > now()
                ORDER BY created_at DESC
                """,
                (user_id, TokenStatus.ACTIVE.value),
            ).fetchall()
        return [_from_row(TokenRecord, row) for row in rows]

    def touch_token(self, jti: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET last_activity_at = now() WHERE token_jti = %s",
                (jti,),
            )

    def cleanup_expired_tokens(self, before: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= COALESCE(%s::timestamptz, now())", (before,)
            )
            return result.rowcount

    # -- role applications ---------------------------------------------------

    def create_role_application(
        self, user_id: str, role: str, reason: Optional[str] = None
    ) -> RoleApplication:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role_applications (id, user_id, role, reason)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, role, reason),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return _from_row(RoleApplication, row)

    def get_role_application(self, application_id: str) -> Optional[RoleApplication]:
        return self._fetch(RoleApplication, "role_applications", application_id)

    def update_role_application(
        self,
        application_id: str,
        *,
        status: str,
        reviewed_by: Optional[str] = None,
        review_notes: Optional[str] = None,
    ) -> Optional[RoleApplication]:
        changes: Dict[str, Any] = {"status": status}
        if reviewed_by:
            changes["reviewed_by"] = reviewed_by
            changes["reviewed_at"] = utcnow()
        if review_notes is not None:
            changes["review_notes"] = review_notes
        return self._update(
            RoleApplication,
            "role_applications",
            application_id,
            changes,
            set(changes),
            touch=False,
        )

    def list_role_applications(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[RoleApplication]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            if not _is_uuid(user_id):
                return []
            clauses.append("user_id = %s")
            params.append(user_id)
        if status:
            clauses.append("status = %s")
            params.append(status)
        where = " AND ".join(clauses) if clauses else "TRUE"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM role_applications WHERE {where} ORDER BY applied_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [_from_row(RoleApplication, row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role_application_history (id, application_id, user_id, role, action, actor_id, comment)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), application_id, user_id, role, action, actor_id, comment),
            ).fetchone()
        return _from_row(RoleApplicationHistory, row)

    def list_role_application_history(
        self, *, application_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[RoleApplicationHistory]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (("application_id", application_id), ("user_id", user_id)):
            if value:
                if not _is_uuid(value):
                    return []
                clauses.append(f"{column} = %s")
                params.append(value)
        where = " AND ".join(clauses) if clauses else "TRUE"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM role_application_history WHERE {where} ORDER BY created_at ASC",
                tuple(params),
            ).fetchall()
        return [_from_row(RoleApplicationHistory, row) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO teachers (id, user_id, display_name, bio, teaching_subjects, teaching_modes, locations)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        display_name,
                        bio,
                        list(teaching_subjects or []),
                        list(teaching_modes or []),
                        list(locations or []),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("teacher profile already exists", {"field": "user_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return _from_row(Teacher, row)

    def get_teacher(self, teacher_id: str) -> Optional[Teacher]:
        return self._fetch(Teacher, "teachers", teacher_id)

    def get_teacher_by_user(self, user_id: str) -> Optional[Teacher]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM teachers WHERE user_id = %s", (user_id,)
            ).fetchone()
        return _from_row(Teacher, row)

    def update_teacher(self, teacher_id: str, **changes: Any) -> Optional[Teacher]:
        return self._update(Teacher, "teachers", teacher_id, changes, _TEACHER_FIELDS)

    def update_teacher_rating(
        self, teacher_id: str, average_rating: float, total_reviews: int
    ) -> Optional[Teacher]:
        return self._update(
            Teacher,
            "teachers",
            teacher_id,
            {"average_rating": average_rating, "total_reviews": total_reviews},
            {"average_rating", "total_reviews"},
        )

    def list_teachers(
        self, filters: TeacherFilters, *, page: int = 1, limit: int = 20
    ) -> Tuple[List[Teacher], int]:
        page, limit, offset = normalize_page(page, limit, default_limit=limit)
        where, params = build_teacher_search(filters)
        with self._connect() as conn:
            total = self._count(conn, "teachers", where, params)
            rows = conn.execute(
                f"""
                SELECT * FROM teachers WHERE {where}
                ORDER BY average_rating DESC, created_at DESC
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
        return [_from_row(Teacher, row) for row in rows], total

    def add_qualification(
        self,
        teacher_id: str,
        *,
        type: str,
        name: str,
        institution: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Qualification:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO teacher_qualifications (id, teacher_id, type, name, institution, year)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), teacher_id, type, name, institution, year),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("teacher does not exist", {"teacher_id": teacher_id})
        return _from_row(Qualification, row)

    def list_qualifications(self, teacher_id: str) -> List[Qualification]:
        if not _is_uuid(teacher_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM teacher_qualifications WHERE teacher_id = %s ORDER BY created_at",
                (teacher_id,),
            ).fetchall()
        return [_from_row(Qualification, row) for row in rows]

    # -- courses -------------------------------------------------------------

    def create_course(self, teacher_id: str, **values: Any) -> Course:
        payload = {k: v for k, v in values.items() if k in _COURSE_FIELDS}
        payload["teacher_id"] = teacher_id
        payload["id"] = new_id()
        status = payload.get("status", CourseStatus.ACTIVE.value)
        if status == CourseStatus.ACTIVE.value and payload.get("published_at") is None:
            payload["published_at"] = utcnow()
        columns = ", ".join(payload)
        placeholders = ", ".join(["%s"] * len(payload))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO courses ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(payload.values()),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("teacher does not exist", {"teacher_id": teacher_id})
        return _from_row(Course, row)

    def get_course(self, course_id: str) -> Optional[Course]:
        return self._fetch(Course, "courses", course_id)

    def update_course(self, course_id: str, **changes: Any) -> Optional[Course]:
        return self._update(
            Course, "courses", course_id, changes, _COURSE_FIELDS - {"teacher_id"}
        )

    def delete_course(self, course_id: str) -> bool:
        return self._delete("courses", course_id)

    def list_courses_by_teacher(self, teacher_id: str) -> List[Course]:
        if not _is_uuid(teacher_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM courses WHERE teacher_id = %s ORDER BY created_at DESC",
                (teacher_id,),
            ).fetchall()
        return [_from_row(Course, row) for row in rows]

    def search_courses(
        self, filters: CourseSearchFilters, options: CourseSearchOptions
    ) -> Tuple[List[Course], int]:
        if filters.teacher_id and not _is_uuid(filters.teacher_id):
            return [], 0
        query = build_course_search(filters, options)
        with self._connect() as conn:
            total = self._count(conn, "courses", query.where, query.params)
            rows = conn.execute(
                f"""
                SELECT * FROM courses WHERE {query.where}
                ORDER BY {query.order_by}
                LIMIT %s OFFSET %s
                """,
                (*query.params, query.limit, query.offset),
            ).fetchall()
        return [_from_row(Course, row) for row in rows], total

    def course_statistics(self, teacher_id: Optional[str] = None) -> Dict[str, Any]:
        where, params = ("teacher_id = %s", (teacher_id,)) if teacher_id else ("TRUE", ())
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total_courses,
                       COUNT(*) FILTER (WHERE status = 'ACTIVE') AS active_courses,
                       COALESCE(ROUND(AVG(average_rating) FILTER (WHERE average_rating > 0), 1), 0) AS average_rating,
                       COALESCE(SUM(total_reviews), 0) AS total_reviews,
                       COALESCE(ROUND(AVG(price), 2), 0) AS average_price
                FROM courses WHERE {where}
                """,
                params,
            ).fetchone()
            categories = conn.execute(
                f"""
                SELECT category, COUNT(*) AS count FROM courses WHERE {where}
                GROUP BY category ORDER BY count DESC, category ASC
                """,
                params,
            ).fetchall()
        return {
            "total_courses": int(row["total_courses"]),
            "active_courses": int(row["active_courses"]),
            "average_rating": float(row["average_rating"]),
            "total_reviews": int(row["total_reviews"]),
            "average_price": float(row["average_price"]),
            "category_distribution": [
                {"category": c["category"], "count": int(c["count"])} for c in categories
            ],
        }

    def increment_enrollment(self, course_id: str) -> Optional[Course]:
        if not _is_uuid(course_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE courses
                SET current_enrollment = current_enrollment + 1, updated_at = now()
                WHERE id = %s AND current_enrollment < max_class_size
                RETURNING *
                """,
                (course_id,),
            ).fetchone()
        return _from_row(Course, row)

    def decrement_enrollment(self, course_id: str) -> Optional[Course]:
        if not _is_uuid(course_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE courses
                SET current_enrollment = GREATEST(current_enrollment - 1, 0), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (course_id,),
            ).fetchone()
        return _from_row(Course, row)

    def update_course_rating(
        self, course_id: str, average_rating: float, total_reviews: int
    ) -> Optional[Course]:
        return self._update(
            Course,
            "courses",
            course_id,
            {"average_rating": average_rating, "total_reviews": total_reviews},
            {"average_rating", "total_reviews"},
        )

    def search_suggestions(self, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        pattern = f"%{escape_like(query)}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.title, c.category, c.average_rating, t.display_name AS teacher_name
                FROM courses c
                LEFT JOIN teachers t ON t.id = c.teacher_id
                WHERE c.status = 'ACTIVE'
                  AND (c.title ILIKE %s OR c.category ILIKE %s
                       OR c.description ILIKE %s OR t.display_name ILIKE %s)
                ORDER BY c.average_rating DESC NULLS LAST
                LIMIT %s
                """,
                (pattern, pattern, pattern, pattern, limit),
            ).fetchall()
        return [{key: _coerce(value) for key, value in row.items()} for row in rows]

    # -- favourites ----------------------------------------------------------

    def toggle_favorite(self, user_id: str, course_id: str) -> bool:
        if not _is_uuid(course_id):
            raise ConstraintViolation("course does not exist", {"course_id": course_id})
        try:
            with self._connect() as conn:
                removed = conn.execute(
                    "DELETE FROM favorites WHERE user_id = %s AND course_id = %s",
                    (user_id, course_id),
                )
                if removed.rowcount > 0:
                    return False
                conn.execute(
                    "INSERT INTO favorites (user_id, course_id) VALUES (%s, %s)",
                    (user_id, course_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("course does not exist", {"course_id": course_id})
        return True

    def list_favorites(self, user_id: str) -> List[Course]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.* FROM favorites f JOIN courses c ON c.id = f.course_id
                WHERE f.user_id = %s ORDER BY f.created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [_from_row(Course, row) for row in rows]

    # -- reviews -------------------------------------------------------------

    def create_review(self, user_id: str, teacher_id: str, **values: Any) -> Review:
        payload = {"id": new_id(), "user_id": user_id, "teacher_id": teacher_id, **values}
        columns = ", ".join(payload)
        placeholders = ", ".join(["%s"] * len(payload))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO reviews ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(payload.values()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("review already exists", {"field": "teacher_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("teacher does not exist", {"teacher_id": teacher_id})
        return _from_row(Review, row)

    def get_review(self, review_id: str) -> Optional[Review]:
        return self._fetch(Review, "reviews", review_id)

    def find_review(self, user_id: str, teacher_id: str) -> Optional[Review]:
        if not (_is_uuid(user_id) and _is_uuid(teacher_id)):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reviews WHERE user_id = %s AND teacher_id = %s",
                (user_id, teacher_id),
            ).fetchone()
        return _from_row(Review, row)

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
        page, limit, offset = normalize_page(page, limit, default_limit=limit)
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("teacher_id", teacher_id),
            ("course_id", course_id),
            ("user_id", user_id),
        ):
            if value:
                if not _is_uuid(value):
                    return [], 0
                clauses.append(f"{column} = %s")
                params.append(value)
        if status:
            clauses.append("status = %s")
            params.append(status)
        if rating_min is not None:
            clauses.append("overall_rating >= %s")
            params.append(rating_min)
        where = " AND ".join(clauses) if clauses else "TRUE"
        order_by = (
            "helpful_count DESC, created_at DESC" if sort_by == "helpful" else "created_at DESC"
        )
        with self._connect() as conn:
            total = self._count(conn, "reviews", where, params)
            rows = conn.execute(
                f"SELECT * FROM reviews WHERE {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [_from_row(Review, row) for row in rows], total

    def update_review(self, review_id: str, **changes: Any) -> Optional[Review]:
        return self._update(Review, "reviews", review_id, changes, _REVIEW_FIELDS)

    def increment_review_helpful(self, review_id: str) -> Optional[Review]:
        if not _is_uuid(review_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE reviews SET helpful_count = helpful_count + 1 WHERE id = %s RETURNING *",
                (review_id,),
            ).fetchone()
        return _from_row(Review, row)

    def delete_review(self, review_id: str) -> bool:
        return self._delete("reviews", review_id)

    def review_stats(self, teacher_id: str) -> Dict[str, Any]:
        if not _is_uuid(teacher_id):
            rows: List[Dict[str, Any]] = []
        else:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT overall_rating, teaching_rating, course_rating,
                           communication_rating, punctuality_rating
                    FROM reviews WHERE teacher_id = %s AND status = %s
                    """,
                    (teacher_id, ReviewStatus.APPROVED.value),
                ).fetchall()
        approved = [{k: _coerce(v) for k, v in row.items()} for row in rows]

        def _avg(column: str) -> Optional[float]:
            present = [r[column] for r in approved if r[column] is not None]
            return round(sum(present) / len(present), 1) if present else None

        distribution = {str(n): 0 for n in range(1, 6)}
        for review in approved:
            bucket = str(min(5, max(1, int(round(review["overall_rating"])))))
            distribution[bucket] += 1
        average, total = rating_summary([r["overall_rating"] for r in approved])
        return {
            "total_reviews": total,
            "average_rating": average,
            "rating_distribution": distribution,
            "dimension_averages": {
                "teaching": _avg("teaching_rating"),
                "course": _avg("course_rating"),
                "communication": _avg("communication_rating"),
                "punctuality": _avg("punctuality_rating"),
            },
        }

    def approved_ratings(
        self, *, teacher_id: Optional[str] = None, course_id: Optional[str] = None
    ) -> List[float]:
        clauses = ["status = %s"]
        params: List[Any] = [ReviewStatus.APPROVED.value]
        for column, value in (("teacher_id", teacher_id), ("course_id", course_id)):
            if value:
                if not _is_uuid(value):
                    return []
                clauses.append(f"{column} = %s")
                params.append(value)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT overall_rating FROM reviews WHERE {' AND '.join(clauses)}",
                tuple(params),
            ).fetchall()
        return [float(row["overall_rating"]) for row in rows]

    # -- children ------------------------------------------------------------

    def create_child(self, user_id: str, name: str, **values: Any) -> Child:
        payload = {k: v for k, v in values.items() if k in _CHILD_FIELDS}
        payload = {"id": new_id(), "user_id": user_id, "name": name, **payload}
        columns = ", ".join(payload)
        placeholders = ", ".join(["%s"] * len(payload))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO children ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(payload.values()),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return _from_row(Child, row)

    def get_child(self, child_id: str) -> Optional[Child]:
        return self._fetch(Child, "children", child_id)

    def list_children(self, user_id: str) -> List[Child]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM children WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_from_row(Child, row) for row in rows]

    def update_child(self, child_id: str, **changes: Any) -> Optional[Child]:
        return self._update(Child, "children", child_id, changes, _CHILD_FIELDS)

    def delete_child(self, child_id: str) -> bool:
        return self._delete("children", child_id)

    # -- notifications -------------------------------------------------------

    def create_notification(
        self, user_id: str, type: str, title: str, content: str
    ) -> Notification:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO notifications (id, user_id, type, title, content)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, type, title, content),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return _from_row(Notification, row)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        return self._fetch(Notification, "notifications", notification_id)

    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, page: int = 1, limit: int = 20
    ) -> Tuple[List[Notification], int]:
        if not _is_uuid(user_id):
            return [], 0
        page, limit, offset = normalize_page(page, limit, default_limit=limit)
        where = "user_id = %s" + (" AND is_read = FALSE" if unread_only else "")
        with self._connect() as conn:
            total = self._count(conn, "notifications", where, (user_id,))
            rows = conn.execute(
                f"""
                SELECT * FROM notifications WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [_from_row(Notification, row) for row in rows], total

    def count_unread_notifications(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            return self._count(
                conn, "notifications", "user_id = %s AND is_read = FALSE", (user_id,)
            )

    def mark_notification_read(self, notification_id: str) -> Optional[Notification]:
        if not _is_uuid(notification_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE notifications
                SET read_at = CASE WHEN is_read THEN read_at ELSE now() END, is_read = TRUE
                WHERE id = %s
                RETURNING *
                """,
                (notification_id,),
            ).fetchone()
        return _from_row(Notification, row)

    def mark_all_notifications_read(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE notifications SET is_read = TRUE, read_at = now()
                WHERE user_id = %s AND is_read = FALSE
                """,
                (user_id,),
            )
            return result.rowcount

    def delete_notification(self, notification_id: str) -> bool:
        return self._delete("notifications", notification_id)

    # -- learning history ----------------------------------------------------

    def create_learning_record(
        self, user_id: str, course_id: str, type: str, **values: Any
    ) -> LearningRecord:
        payload = {
            "id": new_id(),
            "user_id": user_id,
            "course_id": course_id,
            "type": type,
            **values,
        }
        if "metadata" in payload:
            payload["metadata"] = Jsonb(payload["metadata"])
        columns = ", ".join(payload)
        placeholders = ", ".join(["%s"] * len(payload))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO learning_records ({columns}) VALUES ({placeholders}) RETURNING *",
                    tuple(payload.values()),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or course does not exist", {"user_id": user_id, "course_id": course_id}
            )
        return _from_row(LearningRecord, row)

    def get_learning_record(self, record_id: str) -> Optional[LearningRecord]:
        return self._fetch(LearningRecord, "learning_records", record_id)

    def list_learning_records(
        self,
        user_id: str,
        *,
        course_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[LearningRecord], int]:
        if not _is_uuid(user_id) or (course_id is not None and not _is_uuid(course_id)):
            return [], 0
        page, limit, offset = normalize_page(page, limit, default_limit=limit)
        where, params = "user_id = %s", [user_id]
        if course_id is not None:
            where += " AND course_id = %s"
            params.append(course_id)
        with self._connect() as conn:
            total = self._count(conn, "learning_records", where, params)
            rows = conn.execute(
                f"""
                SELECT * FROM learning_records WHERE {where}
                ORDER BY created_at DESC LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
        return [_from_row(LearningRecord, row) for row in rows], total

    def delete_learning_record(self, record_id: str) -> bool:
        return self._delete("learning_records", record_id)

    # -- inquiries and reports -----------------------------------------------

    def create_inquiry(self, target_type: str, message: str, **values: Any) -> Inquiry:
        payload = {"id": new_id(), "target_type": target_type, "message": message, **values}
        columns = ", ".join(payload)
        placeholders = ", ".join(["%s"] * len(payload))
        with self._connect() as conn:
            row = conn.execute(
                f"INSERT INTO inquiries ({columns}) VALUES ({placeholders}) RETURNING *",
                tuple(payload.values()),
            ).fetchone()
        return _from_row(Inquiry, row)

    def get_inquiry(self, inquiry_id: str) -> Optional[Inquiry]:
        return self._fetch(Inquiry, "inquiries", inquiry_id)

    def find_pending_inquiry(
        self, user_id: str, target_type: str, target_id: Optional[str]
    ) -> Optional[Inquiry]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM inquiries
                WHERE user_id = %s AND target_type = %s
                  AND target_id IS NOT DISTINCT FROM %s AND status = %s
                LIMIT 1
                """,
                (user_id, target_type, target_id, InquiryStatus.PENDING.value),
            ).fetchone()
        return _from_row(Inquiry, row)

    def list_inquiries(
        self,
        *,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Inquiry], int]:
        page, limit, offset = normalize_page(page, limit, default_limit=limit)
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = %s")
            params.append(status)
        if user_id:
            if not _is_uuid(user_id):
                return [], 0
            clauses.append("user_id = %s")
            params.append(user_id)
        where = " AND ".join(clauses) if clauses else "TRUE"
        with self._connect() as conn:
            total = self._count(conn, "inquiries", where, params)
            rows = conn.execute(
                f"SELECT * FROM inquiries WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [_from_row(Inquiry, row) for row in rows], total

    def update_inquiry(self, inquiry_id: str, **changes: Any) -> Optional[Inquiry]:
        return self._update(Inquiry, "inquiries", inquiry_id, changes, _INQUIRY_FIELDS)

    def create_report(
        self, target_type: str, target_id: str, reason: str, description: str, **values: Any
    ) -> Report:
        payload = {
            "id": new_id(),
            "target_type": target_type,
            "target_id": target_id,
            "reason": reason,
            "description": description,
            **values,
        }
        columns = ", ".join(payload)
        placeholders = ", ".join(["%s"] * len(payload))
        with self._connect() as conn:
            row = conn.execute(
                f"INSERT INTO reports ({columns}) VALUES ({placeholders}) RETURNING *",
                tuple(payload.values()),
            ).fetchone()
        return _from_row(Report, row)

    def get_report(self, report_id: str) -> Optional[Report]:
        return self._fetch(Report, "reports", report_id)

    def list_reports(
        self, *, status: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Tuple[List[Report], int]:
        page, limit, offset = normalize_page(page, limit, default_limit=limit)
        where, params = ("status = %s", [status]) if status else ("TRUE", [])
        with self._connect() as conn:
            total = self._count(conn, "reports", where, params)
            rows = conn.execute(
                f"SELECT * FROM reports WHERE {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [_from_row(Report, row) for row in rows], total

    def update_report(self, report_id: str, **changes: Any) -> Optional[Report]:
        return self._update(Report, "reports", report_id, changes, _REPORT_FIELDS)


__all__ = ["PostgresStore"]
