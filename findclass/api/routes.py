from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from findclass.api.dependencies import (
    _enforce_rate_limit,
    client_meta,
    get_admin_user,
    get_user,
)
from findclass.api.schemas import (
    AuthResponse,
    ChildRequest,
    ChildResponse,
    ChildUpdateRequest,
    CourseResponse,
    DeleteAccountRequest,
    Envelope,
    LearningRecordRequest,
    LearningRecordResponse,
    LoginRequest,
    LogoutRequest,
    NotificationResponse,
    ParentalConsentRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ReviewResponse,
    RoleApplicationResponse,
    RoleApplyRequest,
    RoleHistoryResponse,
    RoleProcessRequest,
    SendCodeRequest,
    TeacherResponse,
    TeacherVerificationRequest,
    TokenPair,
    TokenRefreshRequest,
    UserResponse,
    VerifyCodeRequest,
)
from findclass.logging import get_logger
from findclass.service.auth import AuthContext
from findclass.service.runtime import get_runtime
from findclass.storage.models import Page

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _user_to_response(user) -> UserResponse:
    return UserResponse.model_validate(user)


def _auth_payload(user, tokens: Dict[str, Any]) -> AuthResponse:
    return AuthResponse(user=_user_to_response(user), tokens=TokenPair(**tokens))


def _page_payload(page: Page, model) -> Dict[str, Any]:
    return {
        "items": [model.model_validate(item) for item in page.items],
        "pagination": page.pagination,
    }


def _application_payload(application) -> Optional[RoleApplicationResponse]:
    if application is None:
        return None
    return RoleApplicationResponse.model_validate(application)


# -- auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and return the user with a fresh token pair.

    Raises:
        400: password policy or field validation failed
        409: ``email_exists`` when the address is already registered
        429: too many registrations for this address
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user, tokens = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        role=body.role,
        phone=body.phone,
        language=body.language,
        **client_meta(request),
    )
    return Envelope(status="ok", data=_auth_payload(user, tokens))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    user, tokens = await runtime.auth.login(body.email, body.password, **client_meta(request))
    return Envelope(status="ok", data=_auth_payload(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    user, tokens = await runtime.auth.refresh_tokens(
        body.refresh_token, **client_meta(request)
    )
    return Envelope(status="ok", data=_auth_payload(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    access_token = runtime.auth.extract_bearer(authorization)
    await runtime.auth.logout(access_token, body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/send-code", response_model=Envelope, tags=["auth"])
async def send_code(body: SendCodeRequest):
    runtime = get_runtime()
    result = await runtime.auth.send_verification_code(body.email, body.type)
    return Envelope(status="ok", data={"message": "Verification code sent", **result})


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.verify_code(body.email, body.code, body.type)
    return Envelope(status="ok", data={"verified": True})


@router.post("/auth/password/reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.request_password_reset(body.email)
    # Same answer whether or not the account exists
    return Envelope(
        status="ok",
        data={"message": "If the email is registered, a reset code has been sent"},
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_current_user(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.update_current_user(principal.user_id, **body.model_dump())
    return Envelope(status="ok", data=_user_to_response(user))


# -- role applications ---------------------------------------------------------


@router.get("/auth/roles", response_model=Envelope, tags=["roles"])
async def get_my_roles(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    roles = runtime.roles.get_user_roles(principal.user_id)
    roles["pending_application"] = _application_payload(roles["pending_application"])
    return Envelope(status="ok", data=roles)


@router.post("/auth/roles/apply", response_model=Envelope, status_code=201, tags=["roles"])
async def apply_for_role(body: RoleApplyRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    application = runtime.roles.apply_for_role(principal.user_id, body.role, body.reason)
    return Envelope(status="ok", data=_application_payload(application))


@router.get("/auth/roles/applications", response_model=Envelope, tags=["roles"])
async def list_my_applications(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    applications = runtime.roles.list_user_applications(principal.user_id)
    return Envelope(status="ok", data=[_application_payload(a) for a in applications])


@router.post(
    "/auth/roles/applications/{application_id}/cancel", response_model=Envelope, tags=["roles"]
)
async def cancel_application(
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    application = runtime.roles.cancel_application(application_id, principal.user_id)
    return Envelope(status="ok", data=_application_payload(application))


# -- admin ---------------------------------------------------------------------


@router.get("/admin/role-applications", response_model=Envelope, tags=["admin"])
async def admin_list_applications(
    limit: int = Query(50, ge=1, le=200),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    pending = runtime.roles.list_pending(principal.user_id, limit=limit)
    return Envelope(status="ok", data=[_application_payload(a) for a in pending])


@router.get("/admin/role-applications/{application_id}", response_model=Envelope, tags=["admin"])
async def admin_get_application(
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    detail = runtime.roles.get_application_detail(application_id)
    return Envelope(
        status="ok",
        data={
            "application": _application_payload(detail["application"]),
            "history": [RoleHistoryResponse.model_validate(h) for h in detail["history"]],
        },
    )


@router.get(
    "/admin/role-applications/{application_id}/history", response_model=Envelope, tags=["admin"]
)
async def admin_application_history(
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    history = runtime.roles.list_history(application_id)
    return Envelope(status="ok", data=[RoleHistoryResponse.model_validate(h) for h in history])


@router.post(
    "/admin/role-applications/{application_id}/process", response_model=Envelope, tags=["admin"]
)
async def admin_process_application(
    body: RoleProcessRequest,
    application_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    application = runtime.roles.process_application(
        principal.user_id, application_id, body.approved, body.comment
    )
    return Envelope(status="ok", data=_application_payload(application))


@router.patch("/admin/teachers/{teacher_id}/verification", response_model=Envelope, tags=["admin"])
async def admin_update_teacher_verification(
    body: TeacherVerificationRequest,
    teacher_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    teacher = runtime.teachers.update_verification_status(teacher_id, body.status)
    return Envelope(status="ok", data=TeacherResponse.model_validate(teacher))


# -- users ---------------------------------------------------------------------


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_to_response(runtime.users.get_profile(principal.user_id)))


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.users.update_profile(principal.user_id, **body.model_dump())
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/users/children", response_model=Envelope, tags=["users"])
async def list_children(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    children = runtime.users.list_children(principal.user_id)
    return Envelope(status="ok", data=[ChildResponse.model_validate(c) for c in children])


@router.post("/users/children", response_model=Envelope, status_code=201, tags=["users"])
async def add_child(body: ChildRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    child = runtime.users.add_child(principal.user_id, body.model_dump())
    return Envelope(status="ok", data=ChildResponse.model_validate(child))


@router.put("/users/children/{child_id}", response_model=Envelope, tags=["users"])
async def update_child(
    body: ChildUpdateRequest,
    child_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    child = runtime.users.update_child(principal.user_id, child_id, body.model_dump())
    return Envelope(status="ok", data=ChildResponse.model_validate(child))


@router.delete("/users/children/{child_id}", response_model=Envelope, tags=["users"])
async def delete_child(
    child_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.users.delete_child(principal.user_id, child_id)
    return Envelope(status="ok", data={"deleted": True})


@router.post("/users/parental-consent", response_model=Envelope, tags=["users"])
async def parental_consent(
    body: ParentalConsentRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    child = runtime.users.record_parental_consent(
        principal.user_id, body.child_id, body.consent_method
    )
    return Envelope(
        status="ok",
        data={"child_id": child.id, "consent_date": child.consent_date},
    )


@router.put("/users/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.users.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        current_jti=principal.jti,
    )
    return Envelope(status="ok", data={"message": "Password changed"})


@router.delete("/users/account", response_model=Envelope, tags=["users"])
async def delete_account(body: DeleteAccountRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.users.delete_account(principal.user_id, body.password)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/users/favorites", response_model=Envelope, tags=["users"])
async def list_favorites(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    courses = runtime.courses.list_favorites(principal.user_id)
    return Envelope(status="ok", data=[CourseResponse.model_validate(c) for c in courses])


@router.get("/users/reviews", response_model=Envelope, tags=["users"])
async def list_my_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = runtime.reviews.list_user_reviews(principal.user_id, page=page, limit=limit)
    return Envelope(status="ok", data=_page_payload(result, ReviewResponse))


@router.delete("/users/reviews/{review_id}", response_model=Envelope, tags=["users"])
async def delete_my_review(
    review_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.reviews.delete_user_review(principal.user_id, review_id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/users/notifications", response_model=Envelope, tags=["notifications"])
async def list_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = runtime.users.list_notifications(
        principal.user_id, unread_only=unread_only, page=page, limit=limit
    )
    return Envelope(status="ok", data=_page_payload(result, NotificationResponse))


@router.get("/users/notifications/unread-count", response_model=Envelope, tags=["notifications"])
async def unread_count(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"count": runtime.users.unread_count(principal.user_id)})


@router.put("/users/notifications/read-all", response_model=Envelope, tags=["notifications"])
async def mark_all_read(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"count": runtime.users.mark_all_read(principal.user_id)})


@router.put(
    "/users/notifications/{notification_id}/read", response_model=Envelope, tags=["notifications"]
)
async def mark_read(
    notification_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    note = runtime.users.mark_read(principal.user_id, notification_id)
    return Envelope(status="ok", data=NotificationResponse.model_validate(note))


@router.delete(
    "/users/notifications/{notification_id}", response_model=Envelope, tags=["notifications"]
)
async def delete_notification(
    notification_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.users.delete_notification(principal.user_id, notification_id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/users/history", response_model=Envelope, tags=["users"])
async def list_learning_history(
    course_id: Optional[str] = Query(None, max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = runtime.users.list_learning_history(
        principal.user_id, course_id=course_id, page=page, limit=limit
    )
    return Envelope(status="ok", data=_page_payload(result, LearningRecordResponse))


@router.post("/users/history", response_model=Envelope, status_code=201, tags=["users"])
async def record_learning_activity(
    body: LearningRecordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    record = runtime.users.record_learning_activity(principal.user_id, body.model_dump())
    return Envelope(status="ok", data=LearningRecordResponse.model_validate(record))


@router.delete("/users/history/{record_id}", response_model=Envelope, tags=["users"])
async def delete_learning_record(
    record_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.users.delete_learning_record(principal.user_id, record_id)
    return Envelope(status="ok", data={"deleted": True})


__all__: List[str] = ["router"]
