from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UserRole(str, Enum):
    PARENT = "PARENT"
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    INSTITUTION = "INSTITUTION"
    ADMIN = "ADMIN"


SELF_SERVICE_ROLES = frozenset(
    {UserRole.PARENT, UserRole.STUDENT, UserRole.TEACHER, UserRole.INSTITUTION}
)


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING_PARENTAL_CONSENT = "PENDING_PARENTAL_CONSENT"
    DISABLED = "DISABLED"


class TrustLevel(str, Enum):
    S = "S"
    A = "A"
    B = "B"
    C = "C"
    D = "D"


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CourseStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


class TeachingMode(str, Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    BOTH = "BOTH"


class CourseCategory(str, Enum):
    MATH = "MATH"
    MUSIC = "MUSIC"
    ART = "ART"
    PROGRAMMING = "PROGRAMMING"
    LANGUAGE = "LANGUAGE"
    OTHER = "OTHER"


class PriceType(str, Enum):
    PER_HOUR = "PER_HOUR"
    PER_SESSION = "PER_SESSION"
    PER_PACKAGE = "PER_PACKAGE"


class CourseSourceType(str, Enum):
    REGISTERED = "REGISTERED"
    GUMTREE = "GUMTREE"
    FACEBOOK = "FACEBOOK"
    OTHER = "OTHER"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApplicationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ApplicationAction(str, Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class TokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class VerificationCodeType(str, Enum):
    REGISTER = "REGISTER"
    FORGOT_PASSWORD = "FORGOT_PASSWORD"
    LOGIN = "LOGIN"


class InquiryTargetType(str, Enum):
    COURSE = "course"
    TEACHER = "teacher"
    GENERAL = "general"


class InquiryStatus(str, Enum):
    PENDING = "PENDING"
    READ = "READ"
    REPLIED = "REPLIED"
    CLOSED = "CLOSED"


class ReportTargetType(str, Enum):
    COURSE = "course"
    TEACHER = "teacher"
    REVIEW = "review"
    USER = "user"
    COMMENT = "comment"
    OTHER = "other"


class ReportReason(str, Enum):
    SPAM = "spam"
    INAPPROPRIATE_CONTENT = "inappropriate_content"
    FAKE_INFORMATION = "fake_information"
    HARASSMENT = "harassment"
    FRAUD = "fraud"
    COPYRIGHT = "copyright"
    OTHER = "other"


class ReportStatus(str, Enum):
    PENDING = "PENDING"
    REVIEWING = "REVIEWING"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class NotificationType(str, Enum):
    SYSTEM = "SYSTEM"
    COURSE_REMINDER = "COURSE_REMINDER"
    LESSON_REMINDER = "LESSON_REMINDER"
    REVIEW_RESPONSE = "REVIEW_RESPONSE"
    PROMOTION = "PROMOTION"
    ACCOUNT_UPDATE = "ACCOUNT_UPDATE"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


GRADES = tuple(f"YEAR_{n}" for n in range(1, 14))


class LearningRecordType(str, Enum):
    LESSON_START = "LESSON_START"
    LESSON_COMPLETE = "LESSON_COMPLETE"
    VIDEO_WATCH = "VIDEO_WATCH"
    QUIZ_COMPLETE = "QUIZ_COMPLETE"
    HOMEWORK_SUBMIT = "HOMEWORK_SUBMIT"


class ProgressStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str = UserRole.STUDENT.value
    status: str = UserStatus.ACTIVE.value
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    language: str = "zh"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status != UserStatus.DISABLED.value


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenRecord:
    """One issued access or refresh token, tracked for revocation."""

    id: str
    user_id: str
    token_jti: str
    token_hash: str
    expires_at: datetime
    status: str = TokenStatus.ACTIVE.value
    token_type: str = "access"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_jti: str,
        token_hash: str,
        ttl: timedelta,
        *,
        token_type: str = "access",
        ip_address: str | None = None,
        user_agent: str | None = None,
        status: str = TokenStatus.ACTIVE.value,
    ) -> "TokenRecord":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_jti=token_jti,
            token_hash=token_hash,
            expires_at=now + ttl,
            status=status,
            token_type=token_type,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class RoleApplication:
    id: str
    user_id: str
    role: str
    status: str = ApplicationStatus.PENDING.value
    reason: Optional[str] = None
    applied_at: datetime = field(default_factory=utcnow)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None


@dataclass
class RoleApplicationHistory:
    id: str
    application_id: str
    user_id: str
    role: str
    action: str
    actor_id: str
    comment: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Qualification:
    id: str
    teacher_id: str
    type: str
    name: str
    institution: Optional[str] = None
    year: Optional[int] = None
    status: str = VerificationStatus.PENDING.value
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Teacher:
    """Teacher profile; ``user_id`` is the owning account."""

    id: str
    user_id: str
    display_name: str
    bio: Optional[str] = None
    teaching_subjects: List[str] = field(default_factory=list)
    teaching_modes: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    teaching_years: int = 0
    verified: bool = False
    verification_status: str = VerificationStatus.PENDING.value
    trust_level: str = TrustLevel.B.value
    average_rating: float = 0.0
    total_reviews: int = 0
    total_students: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Course:
    id: str
    teacher_id: str
    title: str
    description: str
    category: str
    price: float
    price_type: str
    title_en: Optional[str] = None
    description_en: Optional[str] = None
    subcategory: Optional[str] = None
    teaching_modes: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    target_age_groups: List[str] = field(default_factory=list)
    max_class_size: int = 1
    current_enrollment: int = 0
    source_type: str = CourseSourceType.REGISTERED.value
    source_url: Optional[str] = None
    quality_score: int = 0
    trust_level: str = TrustLevel.B.value
    average_rating: Optional[float] = None
    total_reviews: int = 0
    status: str = CourseStatus.ACTIVE.value
    published_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Review:
    id: str
    user_id: str
    teacher_id: str
    overall_rating: float
    content: str
    course_id: Optional[str] = None
    teaching_rating: Optional[float] = None
    course_rating: Optional[float] = None
    communication_rating: Optional[float] = None
    punctuality_rating: Optional[float] = None
    title: Optional[str] = None
    status: str = ReviewStatus.PENDING.value
    helpful_count: int = 0
    reply_content: Optional[str] = None
    reply_created_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Child:
    id: str
    user_id: str
    name: str
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    school: Optional[str] = None
    grade: Optional[str] = None
    subjects: List[str] = field(default_factory=list)
    learning_goals: List[str] = field(default_factory=list)
    has_consent: bool = False
    consent_date: Optional[datetime] = None
    consent_method: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: str
    user_id: str
    type: str
    title: str
    content: str
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LearningRecord:
    """One learning activity of a user on a course; progress is 0-100."""

    id: str
    user_id: str
    course_id: str
    type: str
    lesson_id: Optional[str] = None
    duration: int = 0
    progress: int = 0
    status: str = ProgressStatus.IN_PROGRESS.value
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Inquiry:
    id: str
    target_type: str
    message: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_phone: Optional[str] = None
    target_id: Optional[str] = None
    subject: Optional[str] = None
    status: str = InquiryStatus.PENDING.value
    reply_content: Optional[str] = None
    replied_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Report:
    id: str
    target_type: str
    target_id: str
    reason: str
    description: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    status: str = ReportStatus.PENDING.value
    admin_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Page:
    """A page of results plus its pagination block."""

    items: list
    pagination: Dict[str, int | bool]
