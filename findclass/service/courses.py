from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from findclass.logging import get_logger
from findclass.service.errors import ForbiddenError, NotFoundError, ValidationError
from findclass.storage.common import (
    CourseSearchFilters,
    CourseSearchOptions,
    paginate,
)
from findclass.storage.errors import ConstraintViolation
from findclass.storage.models import (
    Course,
    CourseCategory,
    CourseSourceType,
    CourseStatus,
    Page,
    PriceType,
    TeachingMode,
    TrustLevel,
    UserRole,
    utcnow,
)

logger = get_logger(__name__)

CITIES = (
    "Auckland",
    "Wellington",
    "Christchurch",
    "Hamilton",
    "Tauranga",
    "Dunedin",
    "Palmerston North",
    "Nelson",
)

# Suburbs offered as a second-level location filter, keyed by lowercase city
REGIONS: Dict[str, Tuple[str, ...]] = {
    "auckland": (
        "Albany",
        "Newmarket",
        "Epsom",
        "Parnell",
        "Remuera",
        "Takapuna",
        "Howick",
        "Mt Eden",
        "Grey Lynn",
        "Ponsonby",
        "Devonport",
        "Birkenhead",
        "East Coast Bays",
        "Auckland CBD",
    ),
    "wellington": (
        "Wellington CBD",
        "Karori",
        "Johnsonville",
        "Lower Hutt",
        "Upper Hutt",
        "Porirua",
        "Kelson",
        "Island Bay",
        "Newlands",
        "Miramar",
    ),
    "christchurch": (
        "Christchurch CBD",
        "Riccarton",
        "Addington",
        "Papanui",
        "Hornby",
        "Sockburn",
        "Sydenham",
        "Merivale",
        "Fendalton",
        "Burnside",
    ),
}

_CREATE_DEFAULTS = {
    "trust_level": TrustLevel.B.value,
    "status": CourseStatus.ACTIVE.value,
    "source_type": CourseSourceType.REGISTERED.value,
    "teaching_modes": [],
    "locations": [],
    "target_age_groups": [],
    "max_class_size": 1,
}


class CourseService:
    """Course catalogue: CRUD, search, listings and favourites."""

    def __init__(self, store) -> None:
        self.store = store

    def get_course(self, course_id: str) -> Course:
        course = self.store.get_course(course_id)
        if not course:
            raise NotFoundError("Course not found")
        return course

    def get_course_detail(self, course_id: str) -> Dict[str, Any]:
        course = self.get_course(course_id)
        teacher = self.store.get_teacher(course.teacher_id)
        return {
            "course": course,
            "teacher": {
                "id": teacher.id,
                "display_name": teacher.display_name,
                "bio": teacher.bio,
                "verification_status": teacher.verification_status,
                "average_rating": teacher.average_rating,
                "total_reviews": teacher.total_reviews,
            }
            if teacher
            else None,
        }

    def _resolve_teacher_id(self, user_id: str, role: str, teacher_id: Optional[str]) -> str:
        if role == UserRole.ADMIN.value and teacher_id:
            if not self.store.get_teacher(teacher_id):
                raise NotFoundError("Teacher not found")
            return teacher_id
        teacher = self.store.get_teacher_by_user(user_id)
        if not teacher:
            raise ForbiddenError("A teacher profile is required to publish courses")
        return teacher.id

    def _check_owner(self, course: Course, user_id: str, role: str) -> None:
        if role == UserRole.ADMIN.value:
            return
        teacher = self.store.get_teacher_by_user(user_id)
        if not teacher or teacher.id != course.teacher_id:
            raise ForbiddenError("You can only manage your own courses")

    @staticmethod
    def _validate(data: Dict[str, Any]) -> None:
        if "price" in data and data["price"] is not None and float(data["price"]) < 0:
            raise ValidationError("Price cannot be negative", field="price")
        if "max_class_size" in data and data["max_class_size"] is not None and int(data["max_class_size"]) < 1:
            raise ValidationError(
                "Class size must be at least 1", field="max_class_size"
            )

    def create_course(self, user_id: str, role: str, data: Dict[str, Any]) -> Course:
        teacher_id = self._resolve_teacher_id(user_id, role, data.pop("teacher_id", None))
        self._validate(data)
        values = {**_CREATE_DEFAULTS, **{k: v for k, v in data.items() if v is not None}}
        try:
            course = self.store.create_course(teacher_id, **values)
        except ConstraintViolation:
            raise NotFoundError("Teacher not found")
        logger.info("course_created", course_id=course.id, teacher_id=teacher_id)
        return course

    def update_course(
        self, user_id: str, role: str, course_id: str, changes: Dict[str, Any]
    ) -> Course:
        course = self.get_course(course_id)
        self._check_owner(course, user_id, role)
        updates = {k: v for k, v in changes.items() if v is not None}
        self._validate(updates)
        if (
            updates.get("status") == CourseStatus.ACTIVE.value
            and course.published_at is None
        ):
            updates["published_at"] = utcnow()
        updated = self.store.update_course(course_id, **updates)
        logger.info("course_updated", course_id=course_id, fields=sorted(updates))
        return updated

    def delete_course(self, user_id: str, role: str, course_id: str) -> bool:
        course = self.get_course(course_id)
        self._check_owner(course, user_id, role)
        deleted = self.store.delete_course(course_id)
        logger.info("course_deleted", course_id=course_id)
        return deleted

    def list_by_teacher(self, teacher_id: str) -> List[Course]:
        return self.store.list_courses_by_teacher(teacher_id)

    def search_courses(
        self, filters: CourseSearchFilters, options: CourseSearchOptions
    ) -> Page:
        if (
            filters.price_min is not None
            and filters.price_max is not None
            and filters.price_min > filters.price_max
        ):
            raise ValidationError("price_min cannot exceed price_max")
        items, total = self.store.search_courses(filters, options)
        return Page(items=items, pagination=paginate(total, options.page, options.limit))

    def get_statistics(self, teacher_id: Optional[str] = None) -> Dict[str, Any]:
        return self.store.course_statistics(teacher_id)

    def featured(self, limit: int = 10) -> List[Course]:
        items, _ = self.store.search_courses(
            CourseSearchFilters(), CourseSearchOptions(limit=limit, sort_by="rating")
        )
        return items

    def recent(self, limit: int = 10) -> List[Course]:
        items, _ = self.store.search_courses(
            CourseSearchFilters(), CourseSearchOptions(limit=limit, sort_by="newest")
        )
        return items

    def similar(self, course_id: str, limit: int = 5) -> List[Course]:
        course = self.get_course(course_id)
        items, _ = self.store.search_courses(
            CourseSearchFilters(category=course.category, exclude_ids=[course.id]),
            CourseSearchOptions(limit=limit, sort_by="rating"),
        )
        return items

    def translation(self, course_id: str, lang: str) -> Dict[str, Any]:
        if lang not in ("zh", "en"):
            raise ValidationError("Unsupported language", field="lang")
        course = self.get_course(course_id)
        english = lang == "en"
        return {
            "course_id": course.id,
            "lang": lang,
            "title": (course.title_en or course.title) if english else course.title,
            "description": (course.description_en or course.description)
            if english
            else course.description,
            "translated_at": utcnow(),
        }

    @staticmethod
    def filter_options() -> Dict[str, List[str]]:
        return {
            "categories": [c.value for c in CourseCategory],
            "price_types": [p.value for p in PriceType],
            "teaching_modes": [m.value for m in TeachingMode],
            "trust_levels": [t.value for t in TrustLevel],
            "cities": list(CITIES),
        }

    @staticmethod
    def regions_for_city(city: str) -> Dict[str, Any]:
        regions = REGIONS.get(city.strip().lower())
        if regions is None:
            raise NotFoundError("No regions are listed for this city")
        return {"city": city.strip().lower(), "regions": list(regions)}

    def increment_enrollment(self, course_id: str) -> Optional[Course]:
        course = self.store.increment_enrollment(course_id)
        if course is None:
            logger.info("course_enrollment_full", course_id=course_id)
        return course

    def decrement_enrollment(self, course_id: str) -> Optional[Course]:
        return self.store.decrement_enrollment(course_id)

    def update_rating_stats(
        self, course_id: str, average_rating: float, total_reviews: int
    ) -> Optional[Course]:
        return self.store.update_course_rating(course_id, average_rating, total_reviews)

    def toggle_favorite(self, user_id: str, course_id: str) -> Dict[str, bool]:
        self.get_course(course_id)
        try:
            favorited = self.store.toggle_favorite(user_id, course_id)
        except ConstraintViolation:
            raise NotFoundError("Course not found")
        return {"favorited": favorited}

    def list_favorites(self, user_id: str) -> List[Course]:
        return self.store.list_favorites(user_id)


__all__ = ["CITIES", "REGIONS", "CourseService"]
