from __future__ import annotations

from typing import Any, Dict, Optional, Set, Tuple

from findclass.logging import get_logger
from findclass.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from findclass.storage.common import (
    MAX_PAGE_SIZE,
    REVIEW_SORTS,
    normalize_page,
    paginate,
    rating_summary,
)
from findclass.storage.errors import ConstraintViolation
from findclass.storage.models import (
    NotificationType,
    Page,
    Review,
    ReviewStatus,
    utcnow,
)

logger = get_logger(__name__)

MAX_CONTENT_LENGTH = 2000
MAX_REPLY_LENGTH = 2000
DEFAULT_REVIEW_PAGE_SIZE = 10
_DIMENSIONS = ("teaching_rating", "course_rating", "communication_rating", "punctuality_rating")


def _check_rating(value: Optional[float], field: str, *, required: bool = False) -> None:
    if value is None:
        if required:
            raise ValidationError("Rating is required", field=field)
        return
    if not 1 <= float(value) <= 5:
        raise ValidationError("Rating must be between 1 and 5", field=field)


class ReviewService:
    """Teacher reviews, moderation and the rating aggregates they feed."""

    def __init__(self, store) -> None:
        self.store = store

    def get_review(self, review_id: str) -> Review:
        review = self.store.get_review(review_id)
        if not review:
            raise NotFoundError("Review not found")
        return review

    def get_visible_review(
        self, review_id: str, viewer_id: Optional[str], viewer_is_admin: bool = False
    ) -> Review:
        review = self.get_review(review_id)
        if (
            review.status != ReviewStatus.APPROVED.value
            and not viewer_is_admin
            and review.user_id != viewer_id
        ):
            raise NotFoundError("Review not found")
        return review

    def create_review(
        self,
        user_id: str,
        teacher_id: str,
        *,
        overall_rating: float,
        content: str,
        course_id: Optional[str] = None,
        title: Optional[str] = None,
        ratings: Optional[Dict[str, Optional[float]]] = None,
    ) -> Review:
        _check_rating(overall_rating, "overall_rating", required=True)
        ratings = {k: v for k, v in (ratings or {}).items() if k in _DIMENSIONS}
        for field, value in ratings.items():
            _check_rating(value, field)
        if not content or not content.strip():
            raise ValidationError("Review content is required", field="content")
        if len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"Review content must be less than {MAX_CONTENT_LENGTH} characters",
                field="content",
            )
        if not self.store.get_teacher(teacher_id):
            raise NotFoundError("Teacher not found")
        if course_id:
            course = self.store.get_course(course_id)
            if not course or course.teacher_id != teacher_id:
                raise ValidationError(
                    "Course does not belong to this teacher", field="course_id"
                )
        if self.store.find_review(user_id, teacher_id):
            raise ConflictError("You have already reviewed this teacher")
        try:
            review = self.store.create_review(
                user_id,
                teacher_id,
                course_id=course_id,
                overall_rating=float(overall_rating),
                title=title,
                content=content.strip(),
                status=ReviewStatus.PENDING.value,
                **ratings,
            )
        except ConstraintViolation:
            raise ConflictError("You have already reviewed this teacher")
        logger.info("review_created", review_id=review.id, teacher_id=teacher_id)
        return review

    def list_reviews(
        self,
        *,
        viewer_id: Optional[str],
        viewer_is_admin: bool = False,
        teacher_id: Optional[str] = None,
        course_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        rating_min: Optional[float] = None,
        sort_by: str = "recent",
        page: int = 1,
        limit: int = DEFAULT_REVIEW_PAGE_SIZE,
    ) -> Page:
        page, limit, _ = normalize_page(page, limit, DEFAULT_REVIEW_PAGE_SIZE)
        if sort_by not in REVIEW_SORTS:
            sort_by = "recent"
        # Unmoderated reviews are visible to their author and to admins
        if not viewer_is_admin and not (viewer_id and user_id == viewer_id):
            status = ReviewStatus.APPROVED.value
        items, total = self.store.list_reviews(
            teacher_id=teacher_id,
            course_id=course_id,
            user_id=user_id,
            status=status,
            rating_min=rating_min,
            sort_by=sort_by,
            page=page,
            limit=limit,
        )
        return Page(items=items, pagination=paginate(total, page, limit))

    def teacher_stats(self, teacher_id: str) -> Dict[str, Any]:
        if not self.store.get_teacher(teacher_id):
            raise NotFoundError("Teacher not found")
        return self.store.review_stats(teacher_id)

    def recalculate_ratings(self, teacher_id: str, course_id: Optional[str] = None) -> None:
        """Rewrite the stored average and count from the APPROVED reviews."""
        average, total = rating_summary(self.store.approved_ratings(teacher_id=teacher_id))
        self.store.update_teacher_rating(teacher_id, average, total)
        if course_id:
            average, total = rating_summary(self.store.approved_ratings(course_id=course_id))
            self.store.update_course_rating(course_id, average, total)

    def _recalculate(self, review: Review) -> None:
        self.recalculate_ratings(review.teacher_id, review.course_id)

    def approved_targets(self, user_id: str) -> Set[Tuple[str, Optional[str]]]:
        """``(teacher_id, course_id)`` pairs the user's APPROVED reviews count towards."""
        targets: Set[Tuple[str, Optional[str]]] = set()
        page = 1
        while True:
            reviews, total = self.store.list_reviews(
                user_id=user_id, status=ReviewStatus.APPROVED.value, page=page, limit=MAX_PAGE_SIZE
            )
            targets.update((r.teacher_id, r.course_id) for r in reviews)
            if not reviews or page * MAX_PAGE_SIZE >= total:
                return targets
            page += 1

    def update_status(self, review_id: str, status: str) -> Review:
        if status not in (ReviewStatus.APPROVED.value, ReviewStatus.REJECTED.value):
            raise ValidationError(
                "Status must be APPROVED or REJECTED", field="status"
            )
        self.get_review(review_id)
        review = self.store.update_review(review_id, status=status)
        self._recalculate(review)
        logger.info("review_status_updated", review_id=review_id, status=status)
        return review

    def reply(self, user_id: str, review_id: str, content: str) -> Review:
        if not content or not content.strip():
            raise ValidationError("Reply content is required", field="content")
        if len(content) > MAX_REPLY_LENGTH:
            raise ValidationError(
                f"Reply must be less than {MAX_REPLY_LENGTH} characters",
                field="content",
            )
        review = self.get_review(review_id)
        teacher = self.store.get_teacher_by_user(user_id)
        if not teacher or teacher.id != review.teacher_id:
            raise ForbiddenError("You can only reply to reviews for your own teacher profile")
        updated = self.store.update_review(
            review_id, reply_content=content.strip(), reply_created_at=utcnow()
        )
        self.store.create_notification(
            review.user_id,
            NotificationType.REVIEW_RESPONSE.value,
            "Your review received a reply",
            f"{teacher.display_name} replied to your review.",
        )
        logger.info("review_replied", review_id=review_id, teacher_id=teacher.id)
        return updated

    def mark_helpful(self, review_id: str) -> Review:
        review = self.store.increment_review_helpful(review_id)
        if not review:
            raise NotFoundError("Review not found")
        return review

    def list_user_reviews(
        self, user_id: str, *, page: int = 1, limit: int = DEFAULT_REVIEW_PAGE_SIZE
    ) -> Page:
        return self.list_reviews(
            viewer_id=user_id, user_id=user_id, page=page, limit=limit
        )

    def delete_user_review(self, user_id: str, review_id: str) -> bool:
        review = self.get_review(review_id)
        if review.user_id != user_id:
            raise ForbiddenError("You can only delete your own reviews")
        deleted = self.store.delete_review(review_id)
        if review.status == ReviewStatus.APPROVED.value:
            self._recalculate(review)
        logger.info("review_deleted", review_id=review_id)
        return deleted


__all__ = ["MAX_CONTENT_LENGTH", "ReviewService"]
