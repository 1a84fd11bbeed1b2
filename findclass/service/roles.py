from __future__ import annotations

from typing import Any, Dict, List, Optional

from findclass.logging import get_logger
from findclass.service.errors import ForbiddenError, NotFoundError, ValidationError
from findclass.storage.models import (
    ApplicationAction,
    ApplicationStatus,
    NotificationType,
    RoleApplication,
    RoleApplicationHistory,
    UserRole,
)

logger = get_logger(__name__)

MIN_REASON_LENGTH = 5


class RoleService:
    """Role-change applications and their audit trail."""

    def __init__(self, store) -> None:
        self.store = store

    def _require_user(self, user_id: str):
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _require_admin(self, admin_id: str):
        admin = self._require_user(admin_id)
        if admin.role != UserRole.ADMIN.value:
            raise ForbiddenError("Only administrators can process role applications")
        return admin

    def _require_application(self, application_id: str) -> RoleApplication:
        application = self.store.get_role_application(application_id)
        if not application:
            raise NotFoundError("Role application not found")
        return application

    def _pending_for(self, user_id: str) -> Optional[RoleApplication]:
        pending = self.store.list_role_applications(
            user_id=user_id, status=ApplicationStatus.PENDING.value, limit=1
        )
        return pending[0] if pending else None

    def apply_for_role(
        self, user_id: str, role: str, reason: Optional[str] = None
    ) -> RoleApplication:
        user = self._require_user(user_id)
        if role not in {r.value for r in UserRole} or role == UserRole.ADMIN.value:
            raise ValidationError("Role cannot be applied for", field="role")
        if user.role == role:
            raise ValidationError(f"You already have the {role} role")
        if self._pending_for(user_id):
            raise ValidationError("You already have a pending role application")
        if reason is not None and len(reason.strip()) < MIN_REASON_LENGTH:
            raise ValidationError(
                f"Reason must be at least {MIN_REASON_LENGTH} characters",
                field="reason",
            )
        application = self.store.create_role_application(
            user_id, role, reason.strip() if reason else None
        )
        self.store.add_role_application_history(
            application.id,
            user_id=user_id,
            role=role,
            action=ApplicationAction.SUBMITTED.value,
            actor_id=user_id,
            comment=application.reason,
        )
        logger.info("role_application_submitted", user_id=user_id, role=role, application_id=application.id)
        return application

    def process_application(
        self,
        admin_id: str,
        application_id: str,
        approved: bool,
        comment: Optional[str] = None,
    ) -> RoleApplication:
        self._require_admin(admin_id)
        application = self._require_application(application_id)
        if application.status != ApplicationStatus.PENDING.value:
            raise ValidationError("Application is not in pending status")
        comment = comment or ("Approved" if approved else "Rejected")
        status = ApplicationStatus.APPROVED if approved else ApplicationStatus.REJECTED
        updated = self.store.update_role_application(
            application_id,
            status=status.value,
            reviewed_by=admin_id,
            review_notes=comment,
        )
        if approved:
            self.store.update_user(application.user_id, role=application.role)
        self.store.add_role_application_history(
            application_id,
            user_id=application.user_id,
            role=application.role,
            action=ApplicationAction.APPROVED.value if approved else ApplicationAction.REJECTED.value,
            actor_id=admin_id,
            comment=comment,
        )
        verdict = "approved" if approved else "rejected"
        self.store.create_notification(
            application.user_id,
            NotificationType.ACCOUNT_UPDATE.value,
            f"Role application {verdict}",
            f"Your application for the {application.role} role was {verdict}. {comment}",
        )
        logger.info(
            "role_application_processed",
            application_id=application_id,
            admin_id=admin_id,
            approved=approved,
        )
        return updated

    def cancel_application(self, application_id: str, user_id: str) -> RoleApplication:
        application = self._require_application(application_id)
        if application.user_id != user_id:
            raise ForbiddenError("You can only cancel your own applications")
        if application.status != ApplicationStatus.PENDING.value:
            raise ValidationError("Only pending applications can be cancelled")
        updated = self.store.update_role_application(
            application_id, status=ApplicationStatus.CANCELLED.value
        )
        self.store.add_role_application_history(
            application_id,
            user_id=user_id,
            role=application.role,
            action=ApplicationAction.CANCELLED.value,
            actor_id=user_id,
        )
        logger.info("role_application_cancelled", application_id=application_id)
        return updated

    def list_pending(self, admin_id: str, limit: int = 50) -> List[RoleApplication]:
        self._require_admin(admin_id)
        return self.store.list_role_applications(
            status=ApplicationStatus.PENDING.value, limit=limit
        )

    def get_application_detail(self, application_id: str) -> Dict[str, Any]:
        application = self._require_application(application_id)
        return {
            "application": application,
            "history": self.list_history(application_id),
        }

    def list_history(self, application_id: str) -> List[RoleApplicationHistory]:
        self._require_application(application_id)
        return self.store.list_role_application_history(application_id=application_id)

    def list_user_applications(self, user_id: str) -> List[RoleApplication]:
        return self.store.list_role_applications(user_id=user_id)

    def get_user_roles(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        applications = self.store.list_role_applications(user_id=user_id)
        roles: List[Dict[str, Any]] = [
            {"role": user.role, "status": ApplicationStatus.APPROVED.value, "applied_at": None}
        ]
        for application in applications:
            if application.status == ApplicationStatus.APPROVED.value and application.role != user.role:
                roles.append(
                    {
                        "role": application.role,
                        "status": application.status,
                        "applied_at": application.applied_at,
                    }
                )
        pending = next(
            (a for a in applications if a.status == ApplicationStatus.PENDING.value), None
        )
        return {"current_role": user.role, "roles": roles, "pending_application": pending}


__all__ = ["RoleService"]
