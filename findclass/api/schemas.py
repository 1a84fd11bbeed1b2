from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from findclass.logging import get_correlation_id

MAX_LIST_ITEMS = 50

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "email_exists",
    "code_expired",
    "invalid_code",
    "invalid_refresh_token",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# Zero-width characters and bidi embeddings/overrides/isolates
_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)
_EMAIL_RE = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})"
    r"@(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)


def _validate_email(value: str) -> str:
    """Lower-case, NFKC-normalize and syntax-check an address."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = unicodedata.normalize("NFKC", value.translate(_INVISIBLE)).strip().lower()
    if len(cleaned) > 254 or not _EMAIL_RE.match(cleaned):
        raise ValueError("invalid email address")
    return cleaned


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


# -- auth --------------------------------------------------------------------


class RegisterRequest(_EmailModel):
    password: str = Field(..., max_length=128)
    name: str = Field(..., min_length=1, max_length=100)
    role: str = Field(default="STUDENT", max_length=20)
    phone: Optional[str] = Field(default=None, max_length=32)
    language: str = Field(default="zh", pattern="^(zh|en)$")


class LoginRequest(_EmailModel):
    password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class SendCodeRequest(_EmailModel):
    type: str = Field(default="REGISTER", max_length=32)


class VerifyCodeRequest(_EmailModel):
    code: str = Field(..., min_length=6, max_length=6)
    type: str = Field(default="REGISTER", max_length=32)


class PasswordResetRequest(_EmailModel):
    pass


class PasswordResetConfirm(_EmailModel):
    code: str = Field(..., min_length=6, max_length=6)
    new_password: str = Field(..., max_length=128)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., max_length=128)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    language: Optional[str] = Field(default=None, pattern="^(zh|en)$")


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str
    status: str
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    language: str
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPair


# -- roles -------------------------------------------------------------------


class RoleApplyRequest(BaseModel):
    role: str = Field(..., max_length=20)
    reason: Optional[str] = Field(default=None, max_length=1000)


class RoleProcessRequest(BaseModel):
    approved: bool
    comment: Optional[str] = Field(default=None, max_length=1000)


class RoleApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    role: str
    status: str
    reason: Optional[str] = None
    applied_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None


class RoleHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    application_id: str
    user_id: str
    role: str
    action: str
    actor_id: str
    comment: Optional[str] = None
    created_at: datetime


# -- courses -----------------------------------------------------------------


class CourseCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=10000)
    category: Literal["MATH", "MUSIC", "ART", "PROGRAMMING", "LANGUAGE", "OTHER"]
    price: float = Field(..., ge=0)
    price_type: Literal["PER_HOUR", "PER_SESSION", "PER_PACKAGE"]
    title_en: Optional[str] = Field(default=None, max_length=200)
    description_en: Optional[str] = Field(default=None, max_length=10000)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    teaching_modes: List[Literal["ONLINE", "OFFLINE", "BOTH"]] = Field(
        default_factory=list, max_length=MAX_LIST_ITEMS
    )
    locations: List[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    target_age_groups: List[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    max_class_size: int = Field(default=1, ge=1)
    teacher_id: Optional[str] = Field(default=None, max_length=64)
    source_url: Optional[str] = Field(default=None, max_length=2048)


class CourseUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, min_length=1, max_length=10000)
    category: Optional[Literal["MATH", "MUSIC", "ART", "PROGRAMMING", "LANGUAGE", "OTHER"]] = None
    price: Optional[float] = Field(default=None, ge=0)
    price_type: Optional[Literal["PER_HOUR", "PER_SESSION", "PER_PACKAGE"]] = None
    title_en: Optional[str] = Field(default=None, max_length=200)
    description_en: Optional[str] = Field(default=None, max_length=10000)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    teaching_modes: Optional[List[Literal["ONLINE", "OFFLINE", "BOTH"]]] = Field(
        default=None, max_length=MAX_LIST_ITEMS
    )
    locations: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    target_age_groups: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    max_class_size: Optional[int] = Field(default=None, ge=1)
    status: Optional[Literal["ACTIVE", "INACTIVE", "EXPIRED"]] = None


class CourseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    teacher_id: str
    title: str
    title_en: Optional[str] = None
    description: str
    description_en: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    price: float
    price_type: str
    teaching_modes: List[str]
    locations: List[str]
    target_age_groups: List[str]
    max_class_size: int
    current_enrollment: int
    source_type: str
    source_url: Optional[str] = None
    quality_score: int
    trust_level: str
    average_rating: Optional[float] = None
    total_reviews: int
    status: str
    published_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TeacherSummary(BaseModel):
    id: str
    display_name: str
    bio: Optional[str] = None
    verification_status: str
    average_rating: float
    total_reviews: int


class CourseDetailResponse(CourseResponse):
    teacher: Optional[TeacherSummary] = None


class PaginatedResponse(BaseModel):
    items: List[Any]
    pagination: Dict[str, Any]


# -- teachers ----------------------------------------------------------------


class QualificationRequest(BaseModel):
    type: Literal["DEGREE", "CERTIFICATE", "EXPERIENCE"]
    name: str = Field(..., min_length=1, max_length=200)
    institution: Optional[str] = Field(default=None, max_length=200)
    year: Optional[int] = Field(default=None, ge=1900, le=2100)


class TeacherOnboardingRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=100)
    bio: Optional[str] = Field(default=None, max_length=5000)
    teaching_subjects: List[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    teaching_modes: List[Literal["ONLINE", "OFFLINE", "BOTH"]] = Field(
        default_factory=list, max_length=MAX_LIST_ITEMS
    )
    locations: List[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    qualifications: List[QualificationRequest] = Field(
        default_factory=list, max_length=MAX_LIST_ITEMS
    )


class TeacherVerificationRequest(BaseModel):
    status: Literal["PENDING", "APPROVED", "REJECTED"]


class QualificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    teacher_id: str
    type: str
    name: str
    institution: Optional[str] = None
    year: Optional[int] = None
    status: str
    created_at: datetime


class TeacherResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    display_name: str
    bio: Optional[str] = None
    teaching_subjects: List[str]
    teaching_modes: List[str]
    locations: List[str]
    teaching_years: int
    verified: bool
    verification_status: str
    trust_level: str
    average_rating: float
    total_reviews: int
    total_students: int
    created_at: datetime
    updated_at: datetime


class TeacherProfileResponse(TeacherResponse):
    qualifications: List[QualificationResponse] = Field(default_factory=list)
    courses: List[CourseResponse] = Field(default_factory=list)


# -- reviews -----------------------------------------------------------------


class ReviewCreateRequest(BaseModel):
    teacher_id: str = Field(..., max_length=64)
    course_id: Optional[str] = Field(default=None, max_length=64)
    overall_rating: float
    teaching_rating: Optional[float] = None
    course_rating: Optional[float] = None
    communication_rating: Optional[float] = None
    punctuality_rating: Optional[float] = None
    title: Optional[str] = Field(default=None, max_length=200)
    content: str


class ReviewStatusRequest(BaseModel):
    status: Literal["APPROVED", "REJECTED"]


class ReviewReplyRequest(BaseModel):
    content: str = Field(..., min_length=1)


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    teacher_id: str
    course_id: Optional[str] = None
    overall_rating: float
    teaching_rating: Optional[float] = None
    course_rating: Optional[float] = None
    communication_rating: Optional[float] = None
    punctuality_rating: Optional[float] = None
    title: Optional[str] = None
    content: str
    status: str
    helpful_count: int
    reply_content: Optional[str] = None
    reply_created_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# -- users -------------------------------------------------------------------


class ChildRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["MALE", "FEMALE", "OTHER"]] = None
    school: Optional[str] = Field(default=None, max_length=200)
    grade: Optional[str] = Field(default=None, pattern=r"^YEAR_(?:[1-9]|1[0-3])$")
    subjects: List[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    learning_goals: List[str] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)


class ChildUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Literal["MALE", "FEMALE", "OTHER"]] = None
    school: Optional[str] = Field(default=None, max_length=200)
    grade: Optional[str] = Field(default=None, pattern=r"^YEAR_(?:[1-9]|1[0-3])$")
    subjects: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    learning_goals: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)


class ChildResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    school: Optional[str] = None
    grade: Optional[str] = None
    subjects: List[str]
    learning_goals: List[str]
    has_consent: bool
    consent_date: Optional[datetime] = None
    consent_method: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ParentalConsentRequest(BaseModel):
    child_id: str = Field(..., max_length=64)
    consent_method: str = Field(default="ONLINE_FORM", max_length=32)


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: str
    title: str
    content: str
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class LearningRecordRequest(BaseModel):
    course_id: str = Field(..., max_length=64)
    type: Literal[
        "LESSON_START", "LESSON_COMPLETE", "VIDEO_WATCH", "QUIZ_COMPLETE", "HOMEWORK_SUBMIT"
    ]
    lesson_id: Optional[str] = Field(default=None, max_length=64)
    duration: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0, le=100)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LearningRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    course_id: str
    lesson_id: Optional[str] = None
    type: str
    duration: int
    progress: int
    status: str
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


# -- inquiries and reports ---------------------------------------------------


class ContactInfo(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_contact_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None


class InquiryCreateRequest(BaseModel):
    target_type: str = Field(..., max_length=20)
    target_id: Optional[str] = Field(default=None, max_length=64)
    subject: Optional[str] = Field(default=None, max_length=200)
    message: str
    contact: Optional[ContactInfo] = None


class InquiryReplyRequest(BaseModel):
    reply_content: str


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., max_length=20)
    admin_notes: Optional[str] = Field(default=None, max_length=2000)


class InquiryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None
    target_type: str
    target_id: Optional[str] = None
    subject: Optional[str] = None
    message: str
    status: str
    reply_content: Optional[str] = None
    replied_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReportCreateRequest(BaseModel):
    target_type: str = Field(..., max_length=20)
    target_id: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., max_length=32)
    description: str
    contact: Optional[ContactInfo] = None


class ReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    target_type: str
    target_id: str
    reason: str
    description: str
    status: str
    admin_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
