from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"

TOKEN_CLASS_SESSION = "session"
TOKEN_CLASS_LONG_LIVED = "long_lived"
TOKEN_CLASSES = frozenset({TOKEN_CLASS_SESSION, TOKEN_CLASS_LONG_LIVED})

CREDIT_REQUEST_PENDING = "pending"
CREDIT_REQUEST_APPROVED = "approved"
CREDIT_REQUEST_REJECTED = "rejected"
CREDIT_REQUEST_STATUSES = frozenset(
    {CREDIT_REQUEST_PENDING, CREDIT_REQUEST_APPROVED, CREDIT_REQUEST_REJECTED}
)

DOCUMENT_STATUSES = frozenset({"uploaded", "processing", "completed", "failed"})

USER_SORT_FIELDS = frozenset(
    {"created_at", "username", "email", "credits", "total_scans", "last_login"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_date(value: datetime) -> date:
    """Calendar date of ``value`` in UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


class ActivityAction:
    REGISTRATION = "REGISTRATION"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    DOCUMENT_UPLOAD = "DOCUMENT_UPLOAD"
    DOCUMENT_DELETE = "DOCUMENT_DELETE"
    CREDIT_PURCHASE = "CREDIT_PURCHASE"
    CREDIT_USE = "CREDIT_USE"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"

    ALL = frozenset(
        {
            REGISTRATION,
            LOGIN,
            LOGOUT,
            EMAIL_VERIFICATION,
            PASSWORD_RESET_REQUEST,
            PASSWORD_RESET_COMPLETE,
            PROFILE_UPDATE,
            PASSWORD_CHANGE,
            DOCUMENT_UPLOAD,
            DOCUMENT_DELETE,
            CREDIT_PURCHASE,
            CREDIT_USE,
            TWO_FACTOR_ENABLED,
            TWO_FACTOR_DISABLED,
        }
    )


@dataclass
class LoginAttempts:
    count: int = 0
    last_attempt: Optional[datetime] = None
    locked_until: Optional[datetime] = None


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False


@dataclass
class TwoFactorConfig:
    """TOTP state for a user.

    ``secret`` holds the plaintext base32 secret on the model; stores encrypt it
    before it reaches disk or the database. ``last_used_step`` is the newest
    accepted TOTP time step; codes for it or any earlier step are refused.
    """

    enabled: bool = False
    secret: Optional[str] = None
    backup_codes: List[BackupCode] = field(default_factory=list)
    last_used: Optional[datetime] = None
    last_used_step: Optional[int] = None


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    username: Optional[str] = None
    role: str = ROLE_USER
    credits: int = 20
    last_credit_reset: datetime = field(default_factory=utcnow)
    total_scans: int = 0
    is_verified: bool = False
    verification_token_hash: Optional[str] = None
    verification_expires: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_expires: Optional[datetime] = None
    login_attempts: LoginAttempts = field(default_factory=LoginAttempts)
    two_factor: TwoFactorConfig = field(default_factory=TwoFactorConfig)
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_account_locked(self, now: Optional[datetime] = None) -> bool:
        locked_until = self.login_attempts.locked_until
        return bool(locked_until and locked_until > (now or utcnow()))

    def increment_login_attempts(
        self,
        now: Optional[datetime] = None,
        *,
        threshold: int = 5,
        lockout_minutes: int = 30,
    ) -> None:
        now = now or utcnow()
        self.login_attempts.count += 1
        self.login_attempts.last_attempt = now
        if self.login_attempts.count >= threshold:
            self.login_attempts.locked_until = now + timedelta(minutes=lockout_minutes)

    def reset_login_attempts(self) -> None:
        self.login_attempts.count = 0
        self.login_attempts.locked_until = None


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class DeviceInfo:
    device_id: str = "unknown"
    device_type: str = "unknown"
    browser: Optional[str] = None
    os: str = "unknown"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "device_id": self.device_id,
            "device_type": self.device_type,
            "browser": self.browser,
            "os": self.os,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "country": self.country,
            "city": self.city,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeviceInfo":
        data = data or {}
        return cls(
            device_id=data.get("device_id") or "unknown",
            device_type=data.get("device_type") or "unknown",
            browser=data.get("browser"),
            os=data.get("os") or "unknown",
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
            country=data.get("country"),
            city=data.get("city"),
        )


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    token_class: str = TOKEN_CLASS_SESSION
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    is_active: bool = True
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
        token_class: str = TOKEN_CLASS_SESSION,
        device_info: Optional[DeviceInfo] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            token_class=token_class,
            device_info=device_info or DeviceInfo(),
            is_active=True,
            last_activity=now,
            created_at=now,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.expires_at > (now or utcnow())

    def extend(self, ttl: timedelta, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.expires_at = now + ttl
        self.last_activity = now


@dataclass
class CreditRequest:
    id: str
    user_id: str
    requested_credits: int
    reason: str
    status: str = CREDIT_REQUEST_PENDING
    admin_id: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None


@dataclass
class Activity:
    id: str
    user_id: str
    action: str
    details: Dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Document:
    id: str
    user_id: str
    title: str
    content: str
    file_type: str = "text/plain"
    file_size: int = 0
    analysis: Optional[str] = None
    status: str = "uploaded"
    views: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
