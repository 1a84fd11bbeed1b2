from __future__ import annotations

from typing import Any, Dict, List, Optional

from findclass.logging import get_logger
from findclass.service.auth import AuthService
from findclass.service.errors import AuthenticationError, ForbiddenError, NotFoundError, ValidationError
from findclass.service.reviews import ReviewService
from findclass.storage.common import normalize_page, paginate
from findclass.storage.errors import ConstraintViolation
from findclass.storage.models import (
    GRADES,
    Child,
    Gender,
    LearningRecord,
    LearningRecordType,
    Notification,
    NotificationType,
    Page,
    ProgressStatus,
    User,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

CONSENT_METHODS = ("EMAIL", "SMS", "WRITTEN", "ONLINE_FORM")


class UserService:
    """Profile, children, consent, learning history, account deletion and notifications."""

    def __init__(self, store, auth: AuthService, reviews: Optional[ReviewService] = None) -> None:
        self.store = store
        self.auth = auth
        self.reviews = reviews or ReviewService(store)

    # -- profile -------------------------------------------------------------

    def get_profile(self, user_id: str) -> User:
        return self.auth.get_current_user(user_id)

    def update_profile(self, user_id: str, **changes: Any) -> User:
        user = self.auth.update_current_user(user_id, **changes)
        logger.info("profile_updated", user_id=user_id)
        return user

    # -- children ------------------------------------------------------------

    @staticmethod
    def _validate_child(data: Dict[str, Any], *, creating: bool) -> None:
        if creating or "name" in data:
            if not (data.get("name") or "").strip():
                raise ValidationError("Child name is required", field="name")
        if data.get("grade") is not None and data["grade"] not in GRADES:
            raise ValidationError("Grade must be YEAR_1 to YEAR_13", field="grade")
        if data.get("gender") is not None and data["gender"] not in {g.value for g in Gender}:
            raise ValidationError("Invalid gender", field="gender")
        dob = data.get("date_of_birth")
        if dob is not None and dob > utcnow().date():
            raise ValidationError(
                "Date of birth cannot be in the future", field="date_of_birth"
            )

    def _owned_child(self, user_id: str, child_id: str) -> Child:
        child = self.store.get_child(child_id)
        if not child:
            raise NotFoundError("Child not found")
        if child.user_id != user_id:
            raise ForbiddenError("You can only manage your own children")
        return child

    def list_children(self, user_id: str) -> List[Child]:
        return self.store.list_children(user_id)

    def add_child(self, user_id: str, data: Dict[str, Any]) -> Child:
        self._validate_child(data, creating=True)
        values = {k: v for k, v in data.items() if k != "name" and v is not None}
        child = self.store.create_child(user_id, data["name"].strip(), **values)
        logger.info("child_added", user_id=user_id, child_id=child.id)
        return child

    def update_child(self, user_id: str, child_id: str, changes: Dict[str, Any]) -> Child:
        self._owned_child(user_id, child_id)
        updates = {k: v for k, v in changes.items() if v is not None}
        self._validate_child(updates, creating=False)
        if "name" in updates:
            updates["name"] = updates["name"].strip()
        return self.store.update_child(child_id, **updates)

    def delete_child(self, user_id: str, child_id: str) -> bool:
        self._owned_child(user_id, child_id)
        deleted = self.store.delete_child(child_id)
        logger.info("child_deleted", user_id=user_id, child_id=child_id)
        return deleted

    def record_parental_consent(
        self, user_id: str, child_id: str, consent_method: str
    ) -> Child:
        """Record that a parent consented for ``child_id``.

        A parent still waiting on consent becomes ACTIVE once any consent is on
        file.
        """
        if consent_method not in CONSENT_METHODS:
            raise ValidationError(
                "Consent method must be one of " + ", ".join(CONSENT_METHODS),
                field="consent_method",
            )
        self._owned_child(user_id, child_id)
        child = self.store.update_child(
            child_id,
            has_consent=True,
            consent_date=utcnow(),
            consent_method=consent_method,
        )
        parent = self.store.get_user(user_id)
        if parent and parent.status == UserStatus.PENDING_PARENTAL_CONSENT.value:
            self.store.update_user(user_id, status=UserStatus.ACTIVE.value)
            logger.info("parental_consent_activated_account", user_id=user_id)
        logger.info("parental_consent_recorded", user_id=user_id, child_id=child_id)
        return child

    # -- account -------------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_jti: Optional[str] = None,
    ) -> None:
        await self.auth.change_password(
            user_id, current_password, new_password, current_jti=current_jti
        )

    async def delete_account(self, user_id: str, password: str) -> None:
        if not self.auth.verify_password(user_id, password):
            raise AuthenticationError("Password is incorrect")
        await self.auth.revoke_all_user_tokens(user_id)
        # The delete cascades to the user's reviews; their ratings leave the aggregates
        rated = self.reviews.approved_targets(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("User not found")
        for teacher_id, course_id in rated:
            self.reviews.recalculate_ratings(teacher_id, course_id)
        logger.info("account_deleted", user_id=user_id)

    # -- learning history ----------------------------------------------------

    def list_learning_history(
        self, user_id: str, *, course_id: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Page:
        page, limit, _ = normalize_page(page, limit)
        items, total = self.store.list_learning_records(
            user_id, course_id=course_id, page=page, limit=limit
        )
        return Page(items=items, pagination=paginate(total, page, limit))

    def record_learning_activity(self, user_id: str, data: Dict[str, Any]) -> LearningRecord:
        """Append one activity to the user's history.

        Progress is a percentage; reaching 100 marks the record COMPLETED.
        """
        if data.get("type") not in {t.value for t in LearningRecordType}:
            raise ValidationError("Invalid learning record type", field="type")
        progress = int(data.get("progress") or 0)
        if not 0 <= progress <= 100:
            raise ValidationError("Progress must be between 0 and 100", field="progress")
        duration = int(data.get("duration") or 0)
        if duration < 0:
            raise ValidationError("Duration cannot be negative", field="duration")
        if not self.store.get_course(data.get("course_id") or ""):
            raise NotFoundError("Course not found")
        status = ProgressStatus.COMPLETED if progress >= 100 else ProgressStatus.IN_PROGRESS
        try:
            record = self.store.create_learning_record(
                user_id,
                data["course_id"],
                data["type"],
                lesson_id=data.get("lesson_id"),
                duration=duration,
                progress=progress,
                status=status.value,
                metadata=data.get("metadata") or {},
            )
        except ConstraintViolation:
            raise NotFoundError("Course not found")
        logger.info("learning_record_created", user_id=user_id, record_id=record.id)
        return record

    def delete_learning_record(self, user_id: str, record_id: str) -> bool:
        record = self.store.get_learning_record(record_id)
        if not record:
            raise NotFoundError("Learning record not found")
        if record.user_id != user_id:
            raise ForbiddenError("You can only delete your own learning records")
        deleted = self.store.delete_learning_record(record_id)
        logger.info("learning_record_deleted", user_id=user_id, record_id=record_id)
        return deleted

    # -- notifications -------------------------------------------------------

    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, page: int = 1, limit: int = 20
    ) -> Page:
        page, limit, _ = normalize_page(page, limit)
        items, total = self.store.list_notifications(
            user_id, unread_only=unread_only, page=page, limit=limit
        )
        return Page(items=items, pagination=paginate(total, page, limit))

    def unread_count(self, user_id: str) -> int:
        return self.store.count_unread_notifications(user_id)

    def _owned_notification(self, user_id: str, notification_id: str) -> Notification:
        note = self.store.get_notification(notification_id)
        if not note:
            raise NotFoundError("Notification not found")
        if note.user_id != user_id:
            raise ForbiddenError("You can only manage your own notifications")
        return note

    def mark_read(self, user_id: str, notification_id: str) -> Notification:
        self._owned_notification(user_id, notification_id)
        return self.store.mark_notification_read(notification_id)

    def mark_all_read(self, user_id: str) -> int:
        return self.store.mark_all_notifications_read(user_id)

    def delete_notification(self, user_id: str, notification_id: str) -> bool:
        self._owned_notification(user_id, notification_id)
        return self.store.delete_notification(notification_id)

    def create_notification(
        self, user_id: str, type: str, title: str, content: str
    ) -> Notification:
        if type not in {t.value for t in NotificationType}:
            raise ValidationError("Invalid notification type", field="type")
        return self.store.create_notification(user_id, type, title, content)


__all__ = ["CONSENT_METHODS", "UserService"]
