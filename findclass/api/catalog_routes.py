from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from findclass.api.dependencies import (
    _enforce_rate_limit,
    client_meta,
    get_admin_user,
    get_optional_user,
    get_user,
    require_roles,
)
from findclass.api.routes import _page_payload
from findclass.api.schemas import (
    CourseCreateRequest,
    CourseDetailResponse,
    CourseResponse,
    CourseUpdateRequest,
    Envelope,
    InquiryCreateRequest,
    InquiryReplyRequest,
    InquiryResponse,
    QualificationRequest,
    QualificationResponse,
    ReportCreateRequest,
    ReportResponse,
    ReviewCreateRequest,
    ReviewReplyRequest,
    ReviewResponse,
    ReviewStatusRequest,
    StatusUpdateRequest,
    TeacherOnboardingRequest,
    TeacherProfileResponse,
    TeacherResponse,
)
from findclass.logging import get_logger
from findclass.service.auth import AuthContext
from findclass.service.runtime import get_runtime
from findclass.storage.common import (
    CourseSearchFilters,
    CourseSearchOptions,
    TeacherFilters,
)
from findclass.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _courses(items) -> List[CourseResponse]:
    return [CourseResponse.model_validate(c) for c in items]


async def _limit_reads(request: Request, response: Response) -> None:
    runtime = get_runtime()
    ip = client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"read:{ip}",
        runtime.settings.read_rate_limit_per_minute,
        60,
        response=response,
    )


async def _limit_writes(request: Request, user: Optional[AuthContext]) -> None:
    runtime = get_runtime()
    subject = user.user_id if user else client_meta(request)["ip_address"] or "unknown"
    await _enforce_rate_limit(
        runtime,
        f"write:{subject}",
        runtime.settings.write_rate_limit_per_minute,
        60,
    )


# -- courses -------------------------------------------------------------------


@router.get("/courses/search", response_model=Envelope, tags=["courses"])
async def search_courses(
    request: Request,
    response: Response,
    keyword: Optional[str] = Query(None, max_length=200),
    category: Optional[str] = Query(None, max_length=32),
    city: Optional[str] = Query(None, max_length=100),
    teacher_id: Optional[str] = Query(None, max_length=64),
    price_min: Optional[float] = Query(None, ge=0),
    price_max: Optional[float] = Query(None, ge=0),
    rating_min: Optional[float] = Query(None, ge=0, le=5),
    trust_level: Optional[str] = Query(None, max_length=1),
    teaching_mode: Optional[str] = Query(None, max_length=16),
    sort_by: str = Query("newest", max_length=16),
    sort_order: str = Query("DESC", max_length=4),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """Search active courses.

    Filters are ANDed together; ``keyword`` matches the title and description
    case-insensitively. Unknown ``sort_by`` values fall back to newest first.
    """
    await _limit_reads(request, response)
    runtime = get_runtime()
    filters = CourseSearchFilters(
        keyword=keyword,
        category=category,
        city=city,
        teacher_id=teacher_id,
        price_min=price_min,
        price_max=price_max,
        rating_min=rating_min,
        trust_level=trust_level,
        teaching_mode=teaching_mode,
    )
    options = CourseSearchOptions(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    result = runtime.courses.search_courses(filters, options)
    return Envelope(status="ok", data=_page_payload(result, CourseResponse))


@router.get("/courses/featured", response_model=Envelope, tags=["courses"])
async def featured_courses(limit: int = Query(10, ge=1, le=50)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_courses(runtime.courses.featured(limit)))


@router.get("/courses/recent", response_model=Envelope, tags=["courses"])
async def recent_courses(limit: int = Query(10, ge=1, le=50)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_courses(runtime.courses.recent(limit)))


@router.get("/courses/filter/options", response_model=Envelope, tags=["courses"])
async def filter_options():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.courses.filter_options())


@router.get("/courses/regions/{city}", response_model=Envelope, tags=["courses"])
async def regions_by_city(city: str = Path(..., min_length=1, max_length=64)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.courses.regions_for_city(city))


@router.get("/courses/statistics", response_model=Envelope, tags=["courses"])
async def course_statistics(teacher_id: Optional[str] = Query(None, max_length=64)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.courses.get_statistics(teacher_id))


@router.get("/courses/{course_id}", response_model=Envelope, tags=["courses"])
async def get_course(course_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    detail = runtime.courses.get_course_detail(course_id)
    course = CourseResponse.model_validate(detail["course"])
    return Envelope(
        status="ok",
        data=CourseDetailResponse(**course.model_dump(), teacher=detail["teacher"]),
    )


@router.get("/courses/{course_id}/translate", response_model=Envelope, tags=["courses"])
async def translate_course(
    course_id: str = Path(..., max_length=64),
    lang: str = Query("en", max_length=2),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.courses.translation(course_id, lang))


@router.get("/courses/{course_id}/similar", response_model=Envelope, tags=["courses"])
async def similar_courses(
    course_id: str = Path(..., max_length=64),
    limit: int = Query(5, ge=1, le=20),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=_courses(runtime.courses.similar(course_id, limit)))


@router.post("/courses", response_model=Envelope, status_code=201, tags=["courses"])
async def create_course(
    body: CourseCreateRequest,
    principal: AuthContext = Depends(require_roles(UserRole.TEACHER.value)),
):
    runtime = get_runtime()
    course = runtime.courses.create_course(principal.user_id, principal.role, body.model_dump())
    return Envelope(status="ok", data=CourseResponse.model_validate(course))


@router.put("/courses/{course_id}", response_model=Envelope, tags=["courses"])
async def update_course(
    body: CourseUpdateRequest,
    course_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    course = runtime.courses.update_course(
        principal.user_id, principal.role, course_id, body.model_dump()
    )
    return Envelope(status="ok", data=CourseResponse.model_validate(course))


@router.delete("/courses/{course_id}", response_model=Envelope, tags=["courses"])
async def delete_course(
    course_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.courses.delete_course(principal.user_id, principal.role, course_id)
    return Envelope(status="ok", data={"deleted": True})


@router.post("/courses/{course_id}/favorite", response_model=Envelope, tags=["courses"])
async def toggle_favorite(
    course_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.courses.toggle_favorite(principal.user_id, course_id))


# -- teachers ------------------------------------------------------------------


@router.get("/teachers", response_model=Envelope, tags=["teachers"])
async def list_teachers(
    verification_status: Optional[str] = Query(None, max_length=16),
    subject: Optional[str] = Query(None, max_length=100),
    location: Optional[str] = Query(None, max_length=100),
    rating_min: Optional[float] = Query(None, ge=0, le=5),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    runtime = get_runtime()
    filters = TeacherFilters(
        verification_status=verification_status,
        subject=subject,
        location=location,
        rating_min=rating_min,
    )
    result = runtime.teachers.list_teachers(filters, page=page, limit=limit)
    return Envelope(status="ok", data=_page_payload(result, TeacherResponse))


@router.post("/teachers/onboarding", response_model=Envelope, status_code=201, tags=["teachers"])
async def teacher_onboarding(
    body: TeacherOnboardingRequest,
    principal: AuthContext = Depends(get_user),
):
    """Submit a teacher profile for verification.

    Raises:
        400: invalid teaching mode or qualification
        409: the caller already has a teacher profile
    """
    runtime = get_runtime()
    result = runtime.teachers.submit_onboarding(
        principal.user_id,
        body.display_name,
        bio=body.bio,
        subjects=body.teaching_subjects,
        teaching_modes=body.teaching_modes,
        locations=body.locations,
        qualifications=[q.model_dump() for q in body.qualifications],
    )
    return Envelope(status="ok", data=result)


@router.get("/teachers/{teacher_id}", response_model=Envelope, tags=["teachers"])
async def get_teacher(teacher_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    profile = runtime.teachers.get_teacher_profile(teacher_id)
    teacher = TeacherResponse.model_validate(profile["teacher"])
    return Envelope(
        status="ok",
        data=TeacherProfileResponse(
            **teacher.model_dump(),
            qualifications=[QualificationResponse.model_validate(q) for q in profile["qualifications"]],
            courses=_courses(profile["courses"]),
        ),
    )


@router.post(
    "/teachers/{teacher_id}/qualifications",
    response_model=Envelope,
    status_code=201,
    tags=["teachers"],
)
async def add_qualification(
    body: QualificationRequest,
    teacher_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    qualification = runtime.teachers.add_qualification(
        principal.user_id, principal.role, teacher_id, body.model_dump()
    )
    return Envelope(status="ok", data=QualificationResponse.model_validate(qualification))


# -- reviews -------------------------------------------------------------------


@router.get("/reviews", response_model=Envelope, tags=["reviews"])
async def list_reviews(
    teacher_id: Optional[str] = Query(None, max_length=64),
    course_id: Optional[str] = Query(None, max_length=64),
    user_id: Optional[str] = Query(None, max_length=64),
    status: Optional[str] = Query(None, max_length=16),
    rating_min: Optional[float] = Query(None, ge=1, le=5),
    sort_by: str = Query("recent", max_length=16),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    """List reviews.

    Only admins, and authors filtering on their own ``user_id``, see reviews
    that are not APPROVED; everyone else gets APPROVED ones whatever
    ``status`` asks for.
    """
    runtime = get_runtime()
    result = runtime.reviews.list_reviews(
        viewer_id=principal.user_id if principal else None,
        viewer_is_admin=bool(principal and principal.is_admin),
        teacher_id=teacher_id,
        course_id=course_id,
        user_id=user_id,
        status=status,
        rating_min=rating_min,
        sort_by=sort_by,
        page=page,
        limit=limit,
    )
    return Envelope(status="ok", data=_page_payload(result, ReviewResponse))


@router.get("/reviews/stats/{teacher_id}", response_model=Envelope, tags=["reviews"])
async def review_stats(teacher_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.reviews.teacher_stats(teacher_id))


@router.get("/reviews/{review_id}", response_model=Envelope, tags=["reviews"])
async def get_review(
    review_id: str = Path(..., max_length=64),
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    runtime = get_runtime()
    review = runtime.reviews.get_visible_review(
        review_id,
        principal.user_id if principal else None,
        viewer_is_admin=bool(principal and principal.is_admin),
    )
    return Envelope(status="ok", data=ReviewResponse.model_validate(review))


@router.post("/reviews", response_model=Envelope, status_code=201, tags=["reviews"])
async def create_review(
    body: ReviewCreateRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    await _limit_writes(request, principal)
    runtime = get_runtime()
    review = runtime.reviews.create_review(
        principal.user_id,
        body.teacher_id,
        overall_rating=body.overall_rating,
        content=body.content,
        course_id=body.course_id,
        title=body.title,
        ratings={
            "teaching_rating": body.teaching_rating,
            "course_rating": body.course_rating,
            "communication_rating": body.communication_rating,
            "punctuality_rating": body.punctuality_rating,
        },
    )
    return Envelope(status="ok", data=ReviewResponse.model_validate(review))


@router.patch("/reviews/{review_id}/status", response_model=Envelope, tags=["reviews"])
async def update_review_status(
    body: ReviewStatusRequest,
    review_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    review = runtime.reviews.update_status(review_id, body.status)
    return Envelope(status="ok", data=ReviewResponse.model_validate(review))


@router.post("/reviews/{review_id}/reply", response_model=Envelope, tags=["reviews"])
async def reply_review(
    body: ReviewReplyRequest,
    review_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    review = runtime.reviews.reply(principal.user_id, review_id, body.content)
    return Envelope(status="ok", data=ReviewResponse.model_validate(review))


@router.post("/reviews/{review_id}/helpful", response_model=Envelope, tags=["reviews"])
async def mark_review_helpful(
    review_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    review = runtime.reviews.mark_helpful(review_id)
    return Envelope(status="ok", data={"helpful_count": review.helpful_count})


# -- inquiries -----------------------------------------------------------------


@router.post("/inquiries", response_model=Envelope, status_code=201, tags=["inquiries"])
async def create_inquiry(
    body: InquiryCreateRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    await _limit_writes(request, principal)
    runtime = get_runtime()
    inquiry = runtime.inquiries.create_inquiry(
        principal,
        body.target_type,
        body.message,
        target_id=body.target_id,
        subject=body.subject,
        contact=body.contact.model_dump() if body.contact else None,
    )
    return Envelope(status="ok", data=InquiryResponse.model_validate(inquiry))


@router.get("/inquiries", response_model=Envelope, tags=["inquiries"])
async def list_inquiries(
    status: Optional[str] = Query(None, max_length=20),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.inquiries.list_inquiries(status=status, page=page, limit=limit)
    return Envelope(status="ok", data=_page_payload(result, InquiryResponse))


@router.get("/inquiries/{inquiry_id}", response_model=Envelope, tags=["inquiries"])
async def get_inquiry(
    inquiry_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    inquiry = runtime.inquiries.get_inquiry(principal, inquiry_id)
    return Envelope(status="ok", data=InquiryResponse.model_validate(inquiry))


@router.post("/inquiries/{inquiry_id}/reply", response_model=Envelope, tags=["inquiries"])
async def reply_inquiry(
    body: InquiryReplyRequest,
    inquiry_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    inquiry = runtime.inquiries.reply_inquiry(principal, inquiry_id, body.reply_content)
    return Envelope(status="ok", data=InquiryResponse.model_validate(inquiry))


@router.patch("/inquiries/{inquiry_id}/status", response_model=Envelope, tags=["inquiries"])
async def update_inquiry_status(
    body: StatusUpdateRequest,
    inquiry_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    inquiry = runtime.inquiries.update_inquiry_status(inquiry_id, body.status)
    return Envelope(status="ok", data=InquiryResponse.model_validate(inquiry))


# -- reports -------------------------------------------------------------------


@router.post("/reports", response_model=Envelope, status_code=201, tags=["reports"])
async def create_report(
    body: ReportCreateRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    await _limit_writes(request, principal)
    runtime = get_runtime()
    report = runtime.inquiries.create_report(
        principal,
        body.target_type,
        body.target_id,
        body.reason,
        body.description,
        contact=body.contact.model_dump() if body.contact else None,
    )
    return Envelope(status="ok", data=ReportResponse.model_validate(report))


@router.get("/reports", response_model=Envelope, tags=["reports"])
async def list_reports(
    status: Optional[str] = Query(None, max_length=20),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.inquiries.list_reports(status=status, page=page, limit=limit)
    return Envelope(status="ok", data=_page_payload(result, ReportResponse))


@router.get("/reports/{report_id}", response_model=Envelope, tags=["reports"])
async def get_report(
    report_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    report = runtime.inquiries.get_report(principal, report_id)
    return Envelope(status="ok", data=ReportResponse.model_validate(report))


@router.patch("/reports/{report_id}/status", response_model=Envelope, tags=["reports"])
async def update_report_status(
    body: StatusUpdateRequest,
    report_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    report = runtime.inquiries.update_report_status(
        principal, report_id, body.status, body.admin_notes
    )
    return Envelope(status="ok", data=ReportResponse.model_validate(report))


# -- search --------------------------------------------------------------------


@router.get("/search/popular", response_model=Envelope, tags=["search"])
async def popular_searches():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.search.popular_keywords())


@router.get("/search/suggestions", response_model=Envelope, tags=["search"])
async def search_suggestions(
    q: str = Query("", max_length=200),
    limit: int = Query(5, ge=1, le=5),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.search.suggestions(q, limit))


__all__ = ["router"]
