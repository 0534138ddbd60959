from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import PlainTextResponse

from docshield.api.schemas import (
    AccountDeleteRequest,
    ActivityResponse,
    AnalyzeResponse,
    AuthResponse,
    ChangePasswordRequest,
    CreditBalanceResponse,
    CreditRequestCreate,
    CreditRequestProcess,
    CreditRequestResponse,
    DocumentCreateRequest,
    DocumentResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MatchesResponse,
    MessageResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    SetCreditsRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorEnableResponse,
    TwoFactorValidateRequest,
    UserResponse,
)
from docshield.logging import get_logger
from docshield.service.admission import request_info_from_headers
from docshield.service.auth import AuthIdentity, device_info_from_headers
from docshield.service.errors import ConflictError, NotFoundError
from docshield.service.ip_reputation import IPInfo
from docshield.service.rate_limit import FixedWindowRateLimiter
from docshield.service.runtime import get_runtime
from docshield.storage.models import USER_SORT_FIELDS, ActivityAction, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SORT_BY_PATTERN = "^(" + "|".join(sorted(USER_SORT_FIELDS)) + ")$"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _request_ip_info(request: Request) -> IPInfo:
    # Set by the admission middleware; recomputed for routes mounted without it
    info = getattr(request.state, "ip_info", None)
    if info is not None:
        return info
    runtime = get_runtime()
    return runtime.tracker.describe(
        request_info_from_headers(
            request.headers,
            peer=request.client.host if request.client else None,
            method=request.method,
            path=request.url.path,
            trust_forwarded_for=runtime.settings.trust_forwarded_for,
        )
    )


def _request_ip(request: Request) -> str:
    return _request_ip_info(request).ip


async def _apply_limiter(
    limiter: FixedWindowRateLimiter, request: Request, response: Response
) -> None:
    verdict = await limiter.check(_request_ip(request))
    for name, value in verdict.headers.items():
        response.headers[name] = value
    if not verdict.admitted:
        raise _http_error(
            verdict.code or "rate_limited",
            verdict.message or "rate limit exceeded",
            status_code=verdict.status_code,
            headers=verdict.headers,
        )


async def auth_rate_limit(request: Request, response: Response) -> None:
    await _apply_limiter(get_runtime().auth_limiter, request, response)


async def email_rate_limit(request: Request, response: Response) -> None:
    await _apply_limiter(get_runtime().email_limiter, request, response)


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_auth_token: Optional[str] = Header(None),
) -> AuthIdentity:
    runtime = get_runtime()
    decision = await runtime.auth.authenticate(authorization, x_auth_token)
    if not decision.ok or decision.identity is None:
        raise _http_error(
            decision.reason or "unauthorized",
            decision.message or "Token is not valid",
            status_code=decision.status_code,
        )
    request.state.identity = decision.identity
    return decision.identity


async def get_admin_user(identity: AuthIdentity = Depends(get_user)) -> AuthIdentity:
    if not identity.is_admin:
        logger.warning("admin_access_denied", user_id=identity.user_id)
        raise _http_error("forbidden", "Access denied. Admin only.", status_code=403)
    return identity


def _session_auth_response(token: str, session: Session, user: User) -> AuthResponse:
    return AuthResponse(
        token=token,
        token_class=session.token_class,
        session_id=session.id,
        expires_at=session.expires_at,
        user_id=user.id,
        user=UserResponse.from_user(user),
    )


# auth
@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def register(body: RegisterRequest, request: Request):
    """Create an unverified account and send the verification email.

    No session is issued: the account cannot authenticate until verified.
    """
    runtime = get_runtime()
    ip_info = _request_ip_info(request)
    user = await runtime.auth.register(
        body.name,
        body.email,
        body.password,
        ip=ip_info.ip,
        device=device_info_from_headers(request.headers, ip_info),
    )
    return Envelope(
        status="ok",
        data={
            "message": "Please check your email to verify your account",
            "user": UserResponse.from_user(user),
        },
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    ip_info = _request_ip_info(request)
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip=ip_info.ip,
        device=device_info_from_headers(request.headers, ip_info),
        remember_me=body.remember_me,
    )
    if result.two_factor_required:
        return Envelope(
            status="ok",
            data=AuthResponse(
                two_factor_required=True,
                challenge_token=result.challenge_token,
                user_id=result.user.id,
            ),
        )
    assert result.token is not None and result.session is not None
    return Envelope(
        status="ok", data=_session_auth_response(result.token, result.session, result.user)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    runtime.auth.invalidate_session(identity.token)
    runtime.auth.log_activity(identity.user_id, ActivityAction.LOGOUT)
    return Envelope(status="ok", data=MessageResponse(message="Logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    revoked = runtime.auth.invalidate_all_sessions(identity.user_id)
    runtime.auth.log_activity(identity.user_id, ActivityAction.LOGOUT, {"all_sessions": True})
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/session/renew", response_model=Envelope, tags=["auth"])
async def renew_session(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    token, session = runtime.auth.renew_session(identity)
    return Envelope(status="ok", data=_session_auth_response(token, session, identity.user))


@router.get("/auth/verify/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., min_length=16, max_length=128)):
    runtime = get_runtime()
    runtime.auth.verify_email(token)
    return Envelope(status="ok", data=MessageResponse(message="Email verified successfully"))


@router.post(
    "/auth/verify/resend",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(email_rate_limit)],
)
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If the account exists and is unverified, a verification email has been sent"
        ),
    )


@router.post(
    "/auth/password/forgot",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    # Same answer for unknown addresses
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="If an account exists for that email, a password reset link has been sent"
        ),
    )


@router.post(
    "/auth/password/reset/{token}",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def reset_password(
    body: ResetPasswordRequest, token: str = Path(..., min_length=16, max_length=128)
):
    runtime = get_runtime()
    runtime.auth.reset_password(token, body.password)
    return Envelope(status="ok", data=MessageResponse(message="Password reset successful"))


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    revoked = runtime.auth.change_password(identity, body.current_password, body.new_password)
    return Envelope(
        status="ok",
        data={"message": "Password updated successfully", "other_sessions_revoked": revoked},
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def enable_two_factor(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    if identity.user.two_factor.enabled:
        raise ConflictError("Two-factor authentication is already enabled")
    enrollment = runtime.auth.enable_two_factor(identity.user)
    return Envelope(
        status="ok",
        data=TwoFactorEnableResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.otpauth_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorCodeRequest, identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.verify_two_factor(identity.user, body.token)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Two-factor authentication enabled successfully"),
    )


@router.post(
    "/auth/2fa/validate",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(auth_rate_limit)],
)
async def validate_two_factor(body: TwoFactorValidateRequest, request: Request):
    runtime = get_runtime()
    ip_info = _request_ip_info(request)
    token, session, user = await runtime.auth.validate_two_factor(
        body.challenge_token,
        code=body.token,
        backup_code=body.backup_code,
        ip=ip_info.ip,
        device=device_info_from_headers(request.headers, ip_info),
        remember_me=body.remember_me,
    )
    return Envelope(status="ok", data=_session_auth_response(token, session, user))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    runtime.auth.disable_two_factor(identity.user, body.password)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Two-factor authentication disabled successfully"),
    )


# account
@router.get("/me", response_model=Envelope, tags=["account"])
async def me(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.credits.refresh(identity.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/me", response_model=Envelope, tags=["account"])
async def update_profile(
    body: ProfileUpdateRequest, identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(
        identity.user, name=body.name, username=body.username, email=body.email
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/account", response_model=Envelope, tags=["account"])
async def delete_account(
    body: AccountDeleteRequest, identity: AuthIdentity = Depends(get_user)
):
    """Delete the caller's account and everything it owns."""
    runtime = get_runtime()
    runtime.auth.delete_account(identity.user, body.password)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/me/activity", response_model=Envelope, tags=["account"])
async def my_activity(
    limit: int = Query(50, ge=1, le=200), identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    activities = runtime.store.list_activities(identity.user_id, limit=limit)
    return Envelope(
        status="ok", data=[ActivityResponse.from_activity(a) for a in activities]
    )


@router.get("/me/sessions", response_model=Envelope, tags=["account"])
async def my_sessions(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.store.list_sessions(identity.user_id, active_only=True)
    return Envelope(
        status="ok",
        data=[SessionResponse.from_session(s, current_id=identity.session_id) for s in sessions],
    )


@router.get("/me/stats", response_model=Envelope, tags=["account"])
async def my_stats(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.credits.refresh(identity.user_id)
    documents = runtime.documents.list_for_user(user.id, limit=10000)
    cutoff = datetime.now(timezone.utc) - timedelta(days=30)
    return Envelope(
        status="ok",
        data={
            "total_documents": len(documents),
            "recent_documents": sum(1 for d in documents if d.created_at >= cutoff),
            "credits": user.credits,
            "total_scans": user.total_scans,
            "account_age_days": (datetime.now(timezone.utc) - user.created_at).days,
        },
    )


# documents
@router.post("/documents", response_model=Envelope, status_code=201, tags=["documents"])
async def create_document(
    body: DocumentCreateRequest, identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    doc = runtime.documents.upload(
        identity.user_id, body.title, body.content, file_type=body.file_type
    )
    return Envelope(status="ok", data=DocumentResponse.from_document(doc))


@router.get("/documents", response_model=Envelope, tags=["documents"])
async def list_documents(
    limit: int = Query(100, ge=1, le=500), identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    docs = runtime.documents.list_for_user(identity.user_id, limit=limit)
    return Envelope(status="ok", data=[DocumentResponse.from_document(d) for d in docs])


@router.post("/documents/scan", response_model=Envelope, status_code=201, tags=["documents"])
async def scan_document(
    body: DocumentCreateRequest, identity: AuthIdentity = Depends(get_user)
):
    """Upload and analyze in one step; costs one credit."""
    runtime = get_runtime()
    doc, remaining = await runtime.documents.scan(
        identity.user_id, body.title, body.content, file_type=body.file_type
    )
    return Envelope(
        status="ok",
        data=AnalyzeResponse(
            document=DocumentResponse.from_document(doc), credits_remaining=remaining
        ),
    )


@router.get("/documents/matches/{document_id}", response_model=Envelope, tags=["documents"])
async def document_matches(document_id: str, identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    result = runtime.documents.matches(identity.user_id, document_id)
    return Envelope(status="ok", data=MatchesResponse(**result))


@router.get("/documents/{document_id}", response_model=Envelope, tags=["documents"])
async def get_document(document_id: str, identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    doc = runtime.documents.view(identity.user_id, document_id)
    return Envelope(status="ok", data=DocumentResponse.from_document(doc, include_content=True))


@router.get("/documents/{document_id}/download", tags=["documents"])
async def download_document(document_id: str, identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    doc = runtime.documents.get_owned(identity.user_id, document_id)
    filename = "".join(c if c.isalnum() or c in "-_." else "_" for c in doc.title) or "document"
    return PlainTextResponse(
        doc.content,
        headers={"Content-Disposition": f'attachment; filename="{filename}.txt"'},
    )


@router.delete("/documents/{document_id}", response_model=Envelope, tags=["documents"])
async def delete_document(document_id: str, identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    runtime.documents.delete(identity.user_id, document_id)
    return Envelope(status="ok", data={"deleted": True, "id": document_id})


@router.post("/documents/{document_id}/analyze", response_model=Envelope, tags=["documents"])
async def analyze_document(document_id: str, identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    doc, remaining = await runtime.documents.analyze(identity.user_id, document_id)
    return Envelope(
        status="ok",
        data=AnalyzeResponse(
            document=DocumentResponse.from_document(doc), credits_remaining=remaining
        ),
    )


# credits
@router.post("/credits/request", response_model=Envelope, status_code=201, tags=["credits"])
async def request_credits(
    body: CreditRequestCreate, identity: AuthIdentity = Depends(get_user)
):
    runtime = get_runtime()
    req = runtime.credits.request_credits(identity.user_id, body.requested_credits, body.reason)
    return Envelope(status="ok", data=CreditRequestResponse.from_request(req))


@router.get("/credits/balance", response_model=Envelope, tags=["credits"])
async def credit_balance(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=CreditBalanceResponse(**runtime.credits.balance(identity.user_id))
    )


@router.get("/credits/history", response_model=Envelope, tags=["credits"])
async def credit_history(identity: AuthIdentity = Depends(get_user)):
    runtime = get_runtime()
    requests = runtime.credits.history(identity.user_id)
    return Envelope(
        status="ok", data=[CreditRequestResponse.from_request(r) for r in requests]
    )


@router.get("/credits/requests", response_model=Envelope, tags=["credits", "admin"])
async def list_credit_requests(
    status: Optional[str] = Query(None, pattern="^(pending|approved|rejected)$"),
    identity: AuthIdentity = Depends(get_admin_user),
):
    runtime = get_runtime()
    requests = runtime.credits.list_requests(status=status)
    return Envelope(
        status="ok", data=[CreditRequestResponse.from_request(r) for r in requests]
    )


@router.put("/credits/requests/{request_id}", response_model=Envelope, tags=["credits", "admin"])
async def process_credit_request(
    request_id: str,
    body: CreditRequestProcess,
    identity: AuthIdentity = Depends(get_admin_user),
):
    runtime = get_runtime()
    req = runtime.credits.process_request(
        request_id,
        admin_id=identity.user_id,
        status=body.status,
        admin_note=body.admin_note,
    )
    return Envelope(status="ok", data=CreditRequestResponse.from_request(req))


# admin
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_search_users(
    query: Optional[str] = Query(None, max_length=120),
    sort_by: str = Query("created_at", pattern=SORT_BY_PATTERN),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: AuthIdentity = Depends(get_admin_user),
):
    """Search users by username or email, sorted and paginated."""
    runtime = get_runtime()
    users, total = runtime.store.search_users(
        query,
        sort_by=sort_by,
        descending=order == "desc",
        offset=(page - 1) * limit,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data={
            "users": [UserResponse.from_user(u) for u in users],
            "pagination": {
                "total": total,
                "pages": math.ceil(total / limit),
                "page": page,
                "limit": limit,
            },
        },
    )


@router.put("/admin/credits/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_set_credits(
    user_id: str,
    body: SetCreditsRequest,
    identity: AuthIdentity = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = runtime.credits.set_credits(user_id, body.credits)
    logger.info("admin_credits_adjusted", admin_id=identity.user_id, user_id=user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(
    user_id: str, identity: AuthIdentity = Depends(get_admin_user)
):
    runtime = get_runtime()
    if not runtime.store.get_user(user_id):
        raise NotFoundError("User not found", detail={"user_id": user_id})
    revoked = runtime.auth.invalidate_all_sessions(user_id)
    logger.info("admin_sessions_revoked", admin_id=identity.user_id, user_id=user_id, count=revoked)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/admin/ip-blocks/{ip}", response_model=Envelope, tags=["admin"])
async def admin_ip_status(ip: str, identity: AuthIdentity = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.tracker.snapshot(ip))


@router.delete("/admin/ip-blocks/{ip}", response_model=Envelope, tags=["admin"])
async def admin_unblock_ip(ip: str, identity: AuthIdentity = Depends(get_admin_user)):
    runtime = get_runtime()
    await runtime.tracker.unblock(ip)
    logger.info("admin_ip_unblocked", admin_id=identity.user_id, ip=ip)
    return Envelope(status="ok", data={"ip": ip, "blocked": False})


@router.get("/admin/analytics", response_model=Envelope, tags=["admin"])
async def admin_analytics(identity: AuthIdentity = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.documents.analytics())
