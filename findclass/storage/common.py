"""Search filters, SQL clause assembly and pagination shared by both stores.

``PostgresStore`` turns filters into a parameterised WHERE/ORDER BY pair via the
``build_*`` helpers; ``MemoryStore`` evaluates the same filters in Python via
the ``*_matches`` / ``sort_*`` helpers so both backends return identical pages.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from findclass.storage.models import Course, CourseStatus, Teacher

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

COURSE_SORTS = ("newest", "price_asc", "price_desc", "rating", "relevance")
REVIEW_SORTS = ("recent", "helpful")


@dataclass
class CourseSearchFilters:
    keyword: Optional[str] = None
    category: Optional[str] = None
    teacher_id: Optional[str] = None
    city: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    rating_min: Optional[float] = None
    trust_level: Optional[str] = None
    teaching_mode: Optional[str] = None
    status: Optional[str] = CourseStatus.ACTIVE.value
    exclude_ids: List[str] = field(default_factory=list)


@dataclass
class CourseSearchOptions:
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: str = "newest"
    sort_order: str = "DESC"

    def __post_init__(self) -> None:
        self.page, self.limit, _ = normalize_page(self.page, self.limit)
        if self.sort_by not in COURSE_SORTS:
            self.sort_by = "newest"
        self.sort_order = "ASC" if str(self.sort_order).upper() == "ASC" else "DESC"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class TeacherFilters:
    verification_status: Optional[str] = None
    subject: Optional[str] = None
    location: Optional[str] = None
    rating_min: Optional[float] = None


@dataclass
class SqlQuery:
    """A WHERE clause with its positional parameters and the paging tail."""

    where: str
    params: List[Any]
    order_by: str
    limit: int
    offset: int


def normalize_page(
    page: Optional[int], limit: Optional[int], default_limit: int = DEFAULT_PAGE_SIZE
) -> Tuple[int, int, int]:
    """Clamp page/limit to sane values and return ``(page, limit, offset)``."""
    page = max(1, int(page or 1))
    limit = int(limit or default_limit)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return page, limit, (page - 1) * limit


def paginate(total: int, page: int, limit: int) -> Dict[str, int | bool]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _course_order_by(options: CourseSearchOptions) -> str:
    if options.sort_by == "price_asc":
        return "price ASC, created_at DESC"
    if options.sort_by == "price_desc":
        return "price DESC, created_at DESC"
    if options.sort_by == "rating":
        return "average_rating DESC NULLS LAST, created_at DESC"
    # newest and relevance both order by recency
    return f"created_at {options.sort_order}"


def build_course_search(
    filters: CourseSearchFilters, options: CourseSearchOptions
) -> SqlQuery:
    clauses: List[str] = []
    params: List[Any] = []

    if filters.keyword and filters.keyword.strip():
        pattern = f"%{escape_like(filters.keyword.strip())}%"
        clauses.append(
            "(title ILIKE %s OR title_en ILIKE %s OR description ILIKE %s OR description_en ILIKE %s)"
        )
        params.extend([pattern] * 4)
    if filters.category:
        clauses.append("category = %s")
        params.append(filters.category)
    if filters.teacher_id:
        clauses.append("teacher_id = %s")
        params.append(filters.teacher_id)
    if filters.city:
        clauses.append("%s = ANY(locations)")
        params.append(filters.city)
    if filters.price_min is not None:
        clauses.append("price >= %s")
        params.append(filters.price_min)
    if filters.price_max is not None:
        clauses.append("price <= %s")
        params.append(filters.price_max)
    if filters.rating_min is not None:
        clauses.append("average_rating >= %s")
        params.append(filters.rating_min)
    if filters.trust_level:
        clauses.append("trust_level = %s")
        params.append(filters.trust_level)
    if filters.teaching_mode:
        clauses.append("%s = ANY(teaching_modes)")
        params.append(filters.teaching_mode)
    if filters.status:
        clauses.append("status = %s")
        params.append(filters.status)
    if filters.exclude_ids:
        clauses.append("NOT (id::text = ANY(%s::text[]))")
        params.append(list(filters.exclude_ids))

    where = " AND ".join(clauses) if clauses else "TRUE"
    return SqlQuery(
        where=where,
        params=params,
        order_by=_course_order_by(options),
        limit=options.limit,
        offset=options.offset,
    )


def course_matches(course: Course, filters: CourseSearchFilters) -> bool:
    if filters.keyword and filters.keyword.strip():
        needle = filters.keyword.strip().lower()
        haystack = (
            course.title,
            course.title_en,
            course.description,
            course.description_en,
        )
        if not any(needle in (text or "").lower() for text in haystack):
            return False
    if filters.category and course.category != filters.category:
        return False
    if filters.teacher_id and course.teacher_id != filters.teacher_id:
        return False
    if filters.city and filters.city not in (course.locations or []):
        return False
    if filters.price_min is not None and course.price < filters.price_min:
        return False
    if filters.price_max is not None and course.price > filters.price_max:
        return False
    if filters.rating_min is not None and (
        course.average_rating is None or course.average_rating < filters.rating_min
    ):
        return False
    if filters.trust_level and course.trust_level != filters.trust_level:
        return False
    if filters.teaching_mode and filters.teaching_mode not in (course.teaching_modes or []):
        return False
    if filters.status and course.status != filters.status:
        return False
    if filters.exclude_ids and course.id in filters.exclude_ids:
        return False
    return True


def sort_courses(courses: Sequence[Course], options: CourseSearchOptions) -> List[Course]:
    # Sorts are stable, so apply the tiebreaker first
    ordered = sorted(courses, key=lambda c: c.created_at, reverse=True)
    if options.sort_by == "price_asc":
        return sorted(ordered, key=lambda c: c.price)
    if options.sort_by == "price_desc":
        return sorted(ordered, key=lambda c: c.price, reverse=True)
    if options.sort_by == "rating":
        return sorted(
            ordered,
            key=lambda c: (c.average_rating is None, -(c.average_rating or 0.0)),
        )
    return sorted(
        courses, key=lambda c: c.created_at, reverse=options.sort_order == "DESC"
    )


def build_teacher_search(filters: TeacherFilters) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if filters.verification_status:
        clauses.append("verification_status = %s")
        params.append(filters.verification_status)
    if filters.subject:
        clauses.append("%s = ANY(teaching_subjects)")
        params.append(filters.subject)
    if filters.location:
        clauses.append("%s = ANY(locations)")
        params.append(filters.location)
    if filters.rating_min is not None:
        clauses.append("average_rating >= %s")
        params.append(filters.rating_min)
    return (" AND ".join(clauses) if clauses else "TRUE"), params


def teacher_matches(teacher: Teacher, filters: TeacherFilters) -> bool:
    if filters.verification_status and teacher.verification_status != filters.verification_status:
        return False
    if filters.subject and filters.subject not in (teacher.teaching_subjects or []):
        return False
    if filters.location and filters.location not in (teacher.locations or []):
        return False
    if filters.rating_min is not None and teacher.average_rating < filters.rating_min:
        return False
    return True


def rating_summary(ratings: Sequence[float]) -> Tuple[float, int]:
    """Average (rounded to one decimal) and count of a set of ratings."""
    if not ratings:
        return 0.0, 0
    return round(sum(ratings) / len(ratings), 1), len(ratings)


__all__ = [
    "COURSE_SORTS",
    "CourseSearchFilters",
    "CourseSearchOptions",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "REVIEW_SORTS",
    "SqlQuery",
    "TeacherFilters",
    "build_course_search",
    "build_teacher_search",
    "course_matches",
    "escape_like",
    "normalize_page",
    "paginate",
    "rating_summary",
    "sort_courses",
    "teacher_matches",
]
