from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from docshield.storage.models import (
    Activity,
    CreditRequest,
    Document,
    Session,
    User,
)

MAX_DOCUMENT_CHARS = 5 * 1024 * 1024
MIN_PASSWORD_LENGTH = 6

_VALID_ERROR_CODES = frozenset({
    # generic
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "upstream_unavailable",
    # admission and authentication
    "ip_blocked",
    "insufficient_credits",
    "no_token",
    "invalid_token",
    "session_invalid",
    "user_not_found",
    "email_unverified",
    "account_locked",
    "invalid_credentials",
    "invalid_challenge",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is a stable value clients can branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# auth
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TwoFactorCodeRequest(BaseModel):
    token: str = Field(..., min_length=6, max_length=10)


class TwoFactorValidateRequest(BaseModel):
    challenge_token: str = Field(..., min_length=1, max_length=2048)
    token: Optional[str] = Field(default=None, max_length=10)
    backup_code: Optional[str] = Field(default=None, max_length=32)
    remember_me: bool = False

    @model_validator(mode="after")
    def _require_code(self):
        if not self.token and not self.backup_code:
            raise ValueError("token or backup_code is required")
        return self


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class TwoFactorEnableResponse(BaseModel):
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    username: Optional[str] = None
    role: str
    credits: int
    last_credit_reset: datetime
    total_scans: int
    is_verified: bool
    two_factor_enabled: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            username=user.username,
            role=user.role,
            credits=user.credits,
            last_credit_reset=user.last_credit_reset,
            total_scans=user.total_scans,
            is_verified=user.is_verified,
            two_factor_enabled=user.two_factor.enabled,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    token: Optional[str] = None
    token_type: str = "bearer"
    token_class: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    two_factor_required: bool = False
    challenge_token: Optional[str] = None
    user_id: Optional[str] = None
    user: Optional[UserResponse] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    username: Optional[str] = Field(
        default=None, min_length=3, max_length=40, pattern=r"^[A-Za-z0-9_.-]+$"
    )
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class AccountDeleteRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class SessionResponse(BaseModel):
    id: str
    token_class: str
    device_info: Dict[str, Optional[str]]
    is_active: bool
    current: bool = False
    last_activity: datetime
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_session(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            token_class=session.token_class,
            device_info=session.device_info.to_dict(),
            is_active=session.is_active,
            current=session.id == current_id,
            last_activity=session.last_activity,
            expires_at=session.expires_at,
            created_at=session.created_at,
        )


class ActivityResponse(BaseModel):
    id: str
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_activity(cls, activity: Activity) -> "ActivityResponse":
        return cls(
            id=activity.id,
            action=activity.action,
            details=activity.details,
            timestamp=activity.timestamp,
        )


# documents
class DocumentCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1, max_length=MAX_DOCUMENT_CHARS)
    file_type: str = Field(default="text/plain", max_length=64)


class DocumentResponse(BaseModel):
    id: str
    title: str
    file_type: str
    file_size: int
    status: str
    views: int
    analysis: Optional[str] = None
    content: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Document, *, include_content: bool = False) -> "DocumentResponse":
        return cls(
            id=doc.id,
            title=doc.title,
            file_type=doc.file_type,
            file_size=doc.file_size,
            status=doc.status,
            views=doc.views,
            analysis=doc.analysis,
            content=doc.content if include_content else None,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )


class AnalyzeResponse(BaseModel):
    document: DocumentResponse
    credits_remaining: int


class DocumentMatch(BaseModel):
    id: str
    title: str
    similarity: float


class MatchesResponse(BaseModel):
    document_id: str
    matches: List[DocumentMatch]
    totalMatches: int


# credits
class CreditRequestCreate(BaseModel):
    requested_credits: int = Field(..., ge=1, le=1000)
    reason: str = Field(..., min_length=1, max_length=1000)


class CreditRequestProcess(BaseModel):
    status: str = Field(..., max_length=16)
    admin_note: Optional[str] = Field(default=None, max_length=1000)


class CreditRequestResponse(BaseModel):
    id: str
    user_id: str
    requested_credits: int
    reason: str
    status: str
    admin_id: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, req: CreditRequest) -> "CreditRequestResponse":
        return cls(
            id=req.id,
            user_id=req.user_id,
            requested_credits=req.requested_credits,
            reason=req.reason,
            status=req.status,
            admin_id=req.admin_id,
            admin_note=req.admin_note,
            created_at=req.created_at,
            processed_at=req.processed_at,
        )


class CreditBalanceResponse(BaseModel):
    credits: int
    last_credit_reset: datetime
    daily_limit: int


class SetCreditsRequest(BaseModel):
    # Type is checked by the credit service so a non-integer gets its own message
    credits: Any


class MessageResponse(BaseModel):
    message: str
