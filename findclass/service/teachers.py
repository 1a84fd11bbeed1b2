from __future__ import annotations

from typing import Any, Dict, List, Optional

from findclass.logging import get_logger
from findclass.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from findclass.storage.common import TeacherFilters, paginate
from findclass.storage.errors import ConstraintViolation
from findclass.storage.models import (
    Page,
    Qualification,
    Teacher,
    TeachingMode,
    UserRole,
    VerificationStatus,
)

logger = get_logger(__name__)

QUALIFICATION_TYPES = ("DEGREE", "CERTIFICATE", "EXPERIENCE")
ESTIMATED_REVIEW_TIME = "3-5 business days"


class TeacherService:
    """Teacher onboarding, profiles, qualifications and verification."""

    def __init__(self, store) -> None:
        self.store = store

    def _require_teacher(self, teacher_id: str) -> Teacher:
        teacher = self.store.get_teacher(teacher_id)
        if not teacher:
            raise NotFoundError("Teacher not found")
        return teacher

    @staticmethod
    def _validate_qualification(data: Dict[str, Any]) -> None:
        if data.get("type") not in QUALIFICATION_TYPES:
            raise ValidationError(
                "Qualification type must be one of " + ", ".join(QUALIFICATION_TYPES),
                field="type",
            )
        if not (data.get("name") or "").strip():
            raise ValidationError("Qualification name is required", field="name")

    def submit_onboarding(
        self,
        user_id: str,
        display_name: str,
        *,
        bio: Optional[str] = None,
        subjects: Optional[List[str]] = None,
        teaching_modes: Optional[List[str]] = None,
        locations: Optional[List[str]] = None,
        qualifications: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        if not display_name or not display_name.strip():
            raise ValidationError("Display name is required", field="display_name")
        modes = {m.value for m in TeachingMode}
        for mode in teaching_modes or []:
            if mode not in modes:
                raise ValidationError(
                    f"Unknown teaching mode: {mode}", field="teaching_modes"
                )
        for qualification in qualifications or []:
            self._validate_qualification(qualification)
        if self.store.get_teacher_by_user(user_id):
            raise ConflictError("Teacher profile already exists for this user")
        try:
            teacher = self.store.create_teacher(
                user_id,
                display_name.strip(),
                bio=bio,
                teaching_subjects=subjects,
                teaching_modes=teaching_modes,
                locations=locations,
            )
        except ConstraintViolation:
            raise ConflictError("Teacher profile already exists for this user")
        for qualification in qualifications or []:
            self.store.add_qualification(
                teacher.id,
                type=qualification["type"],
                name=qualification["name"].strip(),
                institution=qualification.get("institution"),
                year=qualification.get("year"),
            )
        logger.info("teacher_onboarding_submitted", user_id=user_id, teacher_id=teacher.id)
        return {
            "teacher_id": teacher.id,
            "status": teacher.verification_status,
            "estimated_review_time": ESTIMATED_REVIEW_TIME,
        }

    def get_teacher_profile(self, teacher_id: str) -> Dict[str, Any]:
        teacher = self._require_teacher(teacher_id)
        return {
            "teacher": teacher,
            "qualifications": self.store.list_qualifications(teacher_id),
            "courses": self.store.list_courses_by_teacher(teacher_id),
        }

    def list_teachers(
        self, filters: TeacherFilters, *, page: int = 1, limit: int = 20
    ) -> Page:
        items, total = self.store.list_teachers(filters, page=page, limit=limit)
        return Page(items=items, pagination=paginate(total, page, limit))

    def add_qualification(
        self, user_id: str, role: str, teacher_id: str, data: Dict[str, Any]
    ) -> Qualification:
        teacher = self._require_teacher(teacher_id)
        if role != UserRole.ADMIN.value and teacher.user_id != user_id:
            raise ForbiddenError("You can only add qualifications to your own profile")
        self._validate_qualification(data)
        qualification = self.store.add_qualification(
            teacher_id,
            type=data["type"],
            name=data["name"].strip(),
            institution=data.get("institution"),
            year=data.get("year"),
        )
        logger.info(
            "teacher_qualification_added",
            teacher_id=teacher_id,
            qualification_id=qualification.id,
        )
        return qualification

    def update_verification_status(self, teacher_id: str, status: str) -> Teacher:
        if status not in {s.value for s in VerificationStatus}:
            raise ValidationError("Invalid verification status", field="status")
        self._require_teacher(teacher_id)
        teacher = self.store.update_teacher(
            teacher_id,
            verification_status=status,
            verified=status == VerificationStatus.APPROVED.value,
        )
        logger.info("teacher_verification_updated", teacher_id=teacher_id, status=status)
        return teacher

    def update_teacher_rating(
        self, teacher_id: str, average_rating: float, total_reviews: int
    ) -> Optional[Teacher]:
        return self.store.update_teacher_rating(teacher_id, average_rating, total_reviews)


__all__ = ["ESTIMATED_REVIEW_TIME", "QUALIFICATION_TYPES", "TeacherService"]
