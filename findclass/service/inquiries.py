from __future__ import annotations

from typing import Any, Dict, Optional

from findclass.logging import get_logger
from findclass.service.auth import AuthContext, normalize_email
from findclass.service.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from findclass.storage.common import normalize_page, paginate
from findclass.storage.models import (
    Inquiry,
    InquiryStatus,
    InquiryTargetType,
    Page,
    Report,
    ReportReason,
    ReportStatus,
    ReportTargetType,
    utcnow,
)

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 5000
MIN_DESCRIPTION_LENGTH = 10
MAX_DESCRIPTION_LENGTH = 2000
_CLOSED_REPORT_STATUSES = {ReportStatus.RESOLVED.value, ReportStatus.DISMISSED.value}


def _values(enum_cls) -> set:
    return {member.value for member in enum_cls}


class InquiryService:
    """Contact inquiries and content reports, moderated by administrators."""

    def __init__(self, store) -> None:
        self.store = store

    def _contact_from(self, user: Optional[AuthContext], contact: Dict[str, Any]) -> Dict[str, Any]:
        values = {
            "user_name": contact.get("name"),
            "user_email": normalize_email(contact["email"]) if contact.get("email") else None,
            "user_phone": contact.get("phone"),
        }
        if user:
            account = self.store.get_user(user.user_id)
            values["user_id"] = user.user_id
            if account:
                values["user_name"] = values["user_name"] or account.name
                values["user_email"] = values["user_email"] or account.email
                values["user_phone"] = values["user_phone"] or account.phone
        return values

    # -- inquiries -----------------------------------------------------------

    def create_inquiry(
        self,
        user: Optional[AuthContext],
        target_type: str,
        message: str,
        *,
        target_id: Optional[str] = None,
        subject: Optional[str] = None,
        contact: Optional[Dict[str, Any]] = None,
    ) -> Inquiry:
        if not message or not message.strip():
            raise ValidationError("Message is required", field="message")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be less than {MAX_MESSAGE_LENGTH} characters",
                field="message",
            )
        if target_type not in _values(InquiryTargetType):
            raise ValidationError(
                "Target type must be course, teacher, or general",
                field="target_type",
            )
        if user and self.store.find_pending_inquiry(user.user_id, target_type, target_id):
            raise ConflictError(
                "You already have a pending inquiry for this target. Please wait for a response."
            )
        values = self._contact_from(user, contact or {})
        inquiry = self.store.create_inquiry(
            target_type,
            message.strip(),
            target_id=target_id,
            subject=subject,
            **values,
        )
        logger.info("inquiry_created", inquiry_id=inquiry.id, target_type=target_type)
        return inquiry

    def _require_inquiry(self, inquiry_id: str) -> Inquiry:
        inquiry = self.store.get_inquiry(inquiry_id)
        if not inquiry:
            raise NotFoundError("Inquiry not found")
        return inquiry

    def get_inquiry(self, user: AuthContext, inquiry_id: str) -> Inquiry:
        inquiry = self._require_inquiry(inquiry_id)
        if not user.is_admin and inquiry.user_id != user.user_id:
            raise ForbiddenError("You can only view your own inquiries")
        return inquiry

    def list_inquiries(
        self, *, status: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Page:
        page, limit, _ = normalize_page(page, limit)
        items, total = self.store.list_inquiries(status=status, page=page, limit=limit)
        return Page(items=items, pagination=paginate(total, page, limit))

    def reply_inquiry(self, admin: AuthContext, inquiry_id: str, content: str) -> Inquiry:
        if not content or not content.strip():
            raise ValidationError("Reply content is required", field="reply_content")
        self._require_inquiry(inquiry_id)
        inquiry = self.store.update_inquiry(
            inquiry_id,
            reply_content=content.strip(),
            replied_at=utcnow(),
            status=InquiryStatus.REPLIED.value,
        )
        logger.info("inquiry_replied", inquiry_id=inquiry_id, admin_id=admin.user_id)
        return inquiry

    def update_inquiry_status(self, inquiry_id: str, status: str) -> Inquiry:
        if status not in _values(InquiryStatus):
            raise ValidationError("Invalid status", field="status")
        self._require_inquiry(inquiry_id)
        inquiry = self.store.update_inquiry(inquiry_id, status=status)
        logger.info("inquiry_status_updated", inquiry_id=inquiry_id, status=status)
        return inquiry

    # -- reports -------------------------------------------------------------

    def create_report(
        self,
        user: Optional[AuthContext],
        target_type: str,
        target_id: str,
        reason: str,
        description: str,
        *,
        contact: Optional[Dict[str, Any]] = None,
    ) -> Report:
        if not target_id:
            raise ValidationError("Target ID is required", field="target_id")
        if reason not in _values(ReportReason):
            raise ValidationError("Invalid report reason", field="reason")
        if target_type not in _values(ReportTargetType):
            raise ValidationError("Invalid target type", field="target_type")
        description = (description or "").strip()
        if len(description) < MIN_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters",
                field="description",
            )
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Description must be less than {MAX_DESCRIPTION_LENGTH} characters",
                field="description",
            )
        values = self._contact_from(user, contact or {})
        values.pop("user_phone", None)
        report = self.store.create_report(target_type, target_id, reason, description, **values)
        logger.info("report_created", report_id=report.id, target_type=target_type, reason=reason)
        return report

    def _require_report(self, report_id: str) -> Report:
        report = self.store.get_report(report_id)
        if not report:
            raise NotFoundError("Report not found")
        return report

    def get_report(self, user: AuthContext, report_id: str) -> Report:
        report = self._require_report(report_id)
        if not user.is_admin and report.user_id != user.user_id:
            raise ForbiddenError("You can only view your own reports")
        return report

    def list_reports(
        self, *, status: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Page:
        page, limit, _ = normalize_page(page, limit)
        items, total = self.store.list_reports(status=status, page=page, limit=limit)
        return Page(items=items, pagination=paginate(total, page, limit))

    def update_report_status(
        self,
        admin: AuthContext,
        report_id: str,
        status: str,
        admin_notes: Optional[str] = None,
    ) -> Report:
        if status not in _values(ReportStatus):
            raise ValidationError("Invalid status", field="status")
        self._require_report(report_id)
        changes: Dict[str, Any] = {"status": status}
        if admin_notes is not None:
            changes["admin_notes"] = admin_notes
        changes["resolved_at"] = utcnow() if status in _CLOSED_REPORT_STATUSES else None
        report = self.store.update_report(report_id, **changes)
        logger.info(
            "report_status_updated", report_id=report_id, status=status, admin_id=admin.user_id
        )
        return report


__all__ = ["InquiryService", "MAX_MESSAGE_LENGTH"]
