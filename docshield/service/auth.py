from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import os
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from docshield.config import Settings
from docshield.logging import get_logger, hash_identifier
from docshield.service.email import EmailService
from docshield.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    IPBlockedError,
    ValidationError,
)
from docshield.service.ip_reputation import IPInfo, IPReputationTracker
from docshield.service.tokens import TokenClaims, TokenCodec, extract_bearer, token_digest
from docshield.storage.errors import ConstraintViolation
from docshield.storage.models import (
    ROLE_ADMIN,
    TOKEN_CLASS_LONG_LIVED,
    TOKEN_CLASS_SESSION,
    ActivityAction,
    BackupCode,
    DeviceInfo,
    Session,
    TwoFactorConfig,
    User,
)

logger = get_logger(__name__)

NO_TOKEN_MESSAGE = "No token, authorization denied"
INVALID_TOKEN_MESSAGE = "Token is not valid"
SESSION_INVALID_MESSAGE = "Session expired or invalid"
USER_NOT_FOUND_MESSAGE = "User not found"
UNVERIFIED_MESSAGE = "Please verify your email address"
LOCKED_MESSAGE = "Account is temporarily locked. Please try again later."
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
IP_BLOCKED_LOGIN_MESSAGE = "Too many failed login attempts. Your IP has been blocked."
INVALID_CODE_MESSAGE = "Invalid verification code"
INVALID_CHALLENGE_MESSAGE = "Two-factor challenge expired or invalid"

MIN_PASSWORD_LENGTH = 6
BACKUP_CODE_COUNT = 10


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        username: Optional[str] = None,
        role: str = "user",
        credits: int = 20,
        is_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token_hash: str) -> Optional[User]: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
        token_class: str = TOKEN_CLASS_SESSION,
        device_info: Optional[DeviceInfo] = None,
    ) -> Session: ...

    def find_active_session(
        self, token_hash: str, user_id: str, now: datetime
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def extend_session(
        self,
        session_id: str,
        ttl: timedelta,
        now: datetime,
        *,
        token_hash: Optional[str] = None,
    ) -> Optional[Session]: ...

    def deactivate_session_by_token(self, token_hash: str) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def log_activity(self, user_id: str, action: str, details: Optional[Dict] = None) -> Any: ...

    def delete_user(self, user_id: str) -> bool: ...


@dataclass(frozen=True)
class AuthIdentity:
    """An admitted caller: the user, the session backing the token, and its claims."""

    user: User
    session: Session
    claims: TokenClaims
    token: str

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def is_admin(self) -> bool:
        return self.user.role == ROLE_ADMIN


@dataclass(frozen=True)
class AuthDecision:
    identity: Optional[AuthIdentity] = None
    reason: Optional[str] = None
    status_code: int = 200
    message: Optional[str] = None

    @classmethod
    def admit(cls, identity: AuthIdentity) -> "AuthDecision":
        return cls(identity=identity)

    @classmethod
    def deny(cls, reason: str, message: str, status_code: int = 401) -> "AuthDecision":
        return cls(reason=reason, status_code=status_code, message=message)

    @property
    def ok(self) -> bool:
        return self.identity is not None

    def to_error(self) -> AuthenticationError:
        return AuthenticationError(
            self.message or INVALID_TOKEN_MESSAGE, error_code=self.reason or "unauthorized"
        )


@dataclass
class LoginResult:
    user: User
    token: Optional[str] = None
    session: Optional[Session] = None
    two_factor_required: bool = False
    challenge_token: Optional[str] = None


@dataclass
class TwoFactorEnrollment:
    secret: str
    otpauth_uri: str
    backup_codes: List[str] = field(default_factory=list)


def device_info_from_headers(headers: Mapping[str, str], ip_info: IPInfo) -> DeviceInfo:
    """Device record for a new session; address and location come from ``ip_info``."""
    user_agent = ip_info.user_agent or None
    geo = ip_info.geo
    return DeviceInfo(
        device_id=headers.get("x-device-id") or "unknown",
        device_type=headers.get("x-device-type") or "unknown",
        browser=user_agent,
        os=headers.get("x-os") or "unknown",
        ip=ip_info.ip,
        user_agent=user_agent,
        country=geo.country if geo else None,
        city=geo.city if geo else None,
    )


def _client_details(ip: Optional[str], device: Optional[DeviceInfo]) -> Dict[str, Any]:
    if device is None:
        return {"ip": ip}
    return {"ip": ip or device.ip, "country": device.country, "city": device.city}


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Token authentication, session lifecycle, credentials and two-factor auth."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tracker: Optional[IPReputationTracker] = None,
        email: Optional[EmailService] = None,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.tracker = tracker
        self.email = email or EmailService.from_settings(settings)
        self.codec = codec or TokenCodec(settings)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        if self._clock:
            return self._clock()
        return datetime.now(timezone.utc)

    # request authentication
    async def authenticate(
        self,
        authorization: Optional[str],
        x_auth_token: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> AuthDecision:
        """Run the token pipeline and return a decision; never raises.

        Steps, in order: extract the token, verify it, find the live session by
        token digest, load the user, then check verification and lockout. The
        storage layer is not consulted when no token is presented.
        """
        token = extract_bearer(authorization) or (x_auth_token or "").strip() or None
        if not token:
            return AuthDecision.deny("no_token", NO_TOKEN_MESSAGE)

        now = now or self._now()
        try:
            claims = self.codec.verify(token, now=now.timestamp())
            if claims is None:
                return AuthDecision.deny("invalid_token", INVALID_TOKEN_MESSAGE)

            session = self.store.find_active_session(token_digest(token), claims.user_id, now)
            if session is None or session.id != claims.session_id:
                self.logger.info("auth_session_invalid", user_id=claims.user_id)
                return AuthDecision.deny("session_invalid", SESSION_INVALID_MESSAGE)

            user = self.store.get_user(claims.user_id)
            if user is None:
                self.logger.warning("auth_user_missing", user_id=claims.user_id)
                return AuthDecision.deny("user_not_found", USER_NOT_FOUND_MESSAGE)

            if self.settings.require_email_verification and not user.is_verified:
                return AuthDecision.deny("email_unverified", UNVERIFIED_MESSAGE)

            if user.is_account_locked(now):
                self.logger.info("auth_account_locked", user_id=user.id)
                return AuthDecision.deny("account_locked", LOCKED_MESSAGE)
        except Exception as exc:
            self.logger.error("auth_pipeline_failed", error=str(exc), error_type=type(exc).__name__)
            return AuthDecision.deny("invalid_token", INVALID_TOKEN_MESSAGE)

        try:
            self.store.touch_session(session.id, now)
        except Exception as exc:
            self.logger.warning("session_touch_failed", session_id=session.id, error=str(exc))

        return AuthDecision.admit(AuthIdentity(user=user, session=session, claims=claims, token=token))

    # session lifecycle
    def create_session(
        self,
        user: User,
        device: Optional[DeviceInfo] = None,
        *,
        token_class: str = TOKEN_CLASS_SESSION,
    ) -> Tuple[str, Session]:
        session_id = str(uuid.uuid4())
        token, _claims = self.codec.issue(
            user_id=user.id,
            role=user.role,
            session_id=session_id,
            token_class=token_class,
            now=self._now().timestamp(),
        )
        session = self.store.create_session(
            user.id,
            token_digest(token),
            self.codec.ttl_for(token_class),
            session_id=session_id,
            token_class=token_class,
            device_info=device or DeviceInfo(),
        )
        self.logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            token_class=token_class,
            device_type=session.device_info.device_type,
        )
        return token, session

    def invalidate_session(self, token: str) -> bool:
        """Deactivate the session behind ``token``; repeated calls are harmless."""
        changed = self.store.deactivate_session_by_token(token_digest(token))
        self.logger.info("session_invalidated", changed=changed)
        return changed

    def invalidate_all_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = self.store.deactivate_user_sessions(user_id, except_session_id=except_session_id)
        self.logger.info("sessions_invalidated", user_id=user_id, count=count)
        return count

    def renew_session(self, identity: AuthIdentity) -> Tuple[str, Session]:
        """Push the session expiry out by its class lifetime and hand back a fresh token.

        The session keeps its id; the old token stops matching once the digest
        is replaced.
        """
        session = identity.session
        now = self._now()
        token, _claims = self.codec.issue(
            user_id=identity.user_id,
            role=identity.role,
            session_id=session.id,
            token_class=session.token_class,
            now=now.timestamp(),
        )
        renewed = self.store.extend_session(
            session.id,
            self.codec.ttl_for(session.token_class),
            now,
            token_hash=token_digest(token),
        )
        if renewed is None:
            raise AuthenticationError(SESSION_INVALID_MESSAGE, error_code="session_invalid")
        self.logger.info("session_renewed", user_id=identity.user_id, session_id=session.id)
        return token, renewed

    # credentials
    async def _record_failed_attempt(
        self, user: Optional[User], ip: Optional[str], now: datetime
    ) -> bool:
        """Count a failed password or code against the account and the address.

        Returns True once the address is blocked.
        """
        if user:
            user.increment_login_attempts(
                now,
                threshold=self.settings.account_lockout_threshold,
                lockout_minutes=self.settings.account_lockout_minutes,
            )
            self.store.update_user(user)
        if self.tracker and ip:
            return await self.tracker.record_failed_login(ip)
        return False

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
    ) -> LoginResult:
        now = self._now()
        user = self.store.get_user_by_email(email)
        if user and user.is_account_locked(now):
            self.logger.warning("login_account_locked", user_id=user.id)
            raise AuthenticationError(LOCKED_MESSAGE, error_code="account_locked")

        if not user or not self.verify_password(user.id, password):
            blocked = await self._record_failed_attempt(user, ip, now)
            self.logger.info(
                "login_failed",
                email_hash=hash_identifier(email),
                ip=ip,
                ip_blocked=blocked,
            )
            if blocked:
                raise IPBlockedError(IP_BLOCKED_LOGIN_MESSAGE)
            raise AuthenticationError(
                INVALID_CREDENTIALS_MESSAGE, error_code="invalid_credentials"
            )

        if self.settings.require_email_verification and not user.is_verified:
            raise AuthenticationError(UNVERIFIED_MESSAGE, error_code="email_unverified")

        if user.two_factor.enabled:
            # Attempts are cleared only once the second step succeeds
            challenge = self.codec.issue_challenge(user_id=user.id, now=now.timestamp())
            self.logger.info("login_two_factor_required", user_id=user.id)
            return LoginResult(user=user, two_factor_required=True, challenge_token=challenge)

        await self._complete_login(user, ip, now)
        token_class = TOKEN_CLASS_LONG_LIVED if remember_me else TOKEN_CLASS_SESSION
        token, session = self.create_session(user, device, token_class=token_class)
        self.log_activity(
            user.id,
            ActivityAction.LOGIN,
            {**_client_details(ip, device), "token_class": token_class},
        )
        return LoginResult(user=user, token=token, session=session)

    async def _complete_login(self, user: User, ip: Optional[str], now: datetime) -> None:
        user.reset_login_attempts()
        user.last_login = now
        self.store.update_user(user)
        if self.tracker and ip:
            await self.tracker.record_successful_login(ip)

    async def _deliver(self, send: Callable[..., Any], *args: Any) -> None:
        # SMTP blocks; keep it off the event loop
        await asyncio.to_thread(send, *args)

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> User:
        if not name or not name.strip():
            raise ValidationError("name is required", detail={"field": "name"})
        self._check_password_strength(password)
        try:
            user = self.store.create_user(
                email, name.strip(), credits=self.settings.signup_credits
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists", detail=exc.detail) from exc
        self.save_password(user.id, password)
        token = self._issue_verification_token(user)
        await self._deliver(
            self.email.send_verification_email, user.email, user.username or user.name, token
        )
        self.log_activity(user.id, ActivityAction.REGISTRATION, _client_details(ip, device))
        self.logger.info("user_registered", user_id=user.id)
        return user

    def _issue_verification_token(self, user: User) -> str:
        token = secrets.token_hex(32)
        user.verification_token_hash = _hash_token(token)
        user.verification_expires = self._now() + timedelta(
            hours=self.settings.verification_token_ttl_hours
        )
        self.store.update_user(user)
        return token

    def verify_email(self, token: str) -> User:
        now = self._now()
        user = self.store.get_user_by_verification_token(_hash_token(token))
        if not user or not user.verification_expires or user.verification_expires <= now:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise BadRequestError("Invalid or expired verification token")
        user.is_verified = True
        user.verification_token_hash = None
        user.verification_expires = None
        self.store.update_user(user)
        self.log_activity(user.id, ActivityAction.EMAIL_VERIFICATION)
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def resend_verification(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user or user.is_verified:
            # Same response either way to avoid enumeration
            self.logger.info("verification_resend_skipped", email_hash=hash_identifier(email))
            return
        token = self._issue_verification_token(user)
        await self._deliver(
            self.email.send_verification_email, user.email, user.username or user.name, token
        )
        self.logger.info("verification_resent", user_id=user.id)

    async def request_password_reset(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return
        token = secrets.token_hex(32)
        user.reset_token_hash = _hash_token(token)
        user.reset_expires = self._now() + timedelta(
            minutes=self.settings.reset_token_ttl_minutes
        )
        self.store.update_user(user)
        await self._deliver(
            self.email.send_password_reset_email, user.email, user.username or user.name, token
        )
        self.log_activity(user.id, ActivityAction.PASSWORD_RESET_REQUEST)
        self.logger.info("password_reset_requested", user_id=user.id)

    def reset_password(self, token: str, new_password: str) -> User:
        self._check_password_strength(new_password)
        now = self._now()
        user = self.store.get_user_by_reset_token(_hash_token(token))
        if not user or not user.reset_expires or user.reset_expires <= now:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise BadRequestError("Invalid or expired reset token")
        self.save_password(user.id, new_password)
        user.reset_token_hash = None
        user.reset_expires = None
        user.reset_login_attempts()
        self.store.update_user(user)
        self.invalidate_all_sessions(user.id)
        self.log_activity(user.id, ActivityAction.PASSWORD_RESET_COMPLETE)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    def change_password(
        self, identity: AuthIdentity, current_password: str, new_password: str
    ) -> int:
        if not self.verify_password(identity.user_id, current_password):
            raise ValidationError("Current password is incorrect", detail={"field": "current_password"})
        self._check_password_strength(new_password)
        self.save_password(identity.user_id, new_password)
        revoked = self.invalidate_all_sessions(
            identity.user_id, except_session_id=identity.session_id
        )
        self.log_activity(identity.user_id, ActivityAction.PASSWORD_CHANGE)
        return revoked

    def _check_password_strength(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # two-factor
    def enable_two_factor(self, user: User) -> TwoFactorEnrollment:
        """Start enrolment: new secret and backup codes, disabled until verified."""
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        codes = [secrets.token_hex(4) for _ in range(BACKUP_CODE_COUNT)]
        user.two_factor = TwoFactorConfig(
            enabled=False,
            secret=secret,
            backup_codes=[BackupCode(code_hash=self._pwd_hasher.hash(code)) for code in codes],
            last_used=None,
        )
        self.store.update_user(user)
        uri = (
            f"otpauth://totp/DocShield:{quote(user.email)}"
            f"?secret={secret}&issuer=DocShield"
        )
        self.logger.info("two_factor_enrollment_started", user_id=user.id)
        return TwoFactorEnrollment(secret=secret, otpauth_uri=uri, backup_codes=codes)

    async def verify_two_factor(self, user: User, code: str) -> User:
        cfg = user.two_factor
        step = self._match_totp_step(cfg.secret, code) if cfg.secret else None
        if step is None:
            raise BadRequestError(INVALID_CODE_MESSAGE, detail={"field": "token"})
        cfg.enabled = True
        cfg.last_used = self._now()
        cfg.last_used_step = step
        self.store.update_user(user)
        await self._deliver(
            self.email.send_two_factor_enabled, user.email, user.username or user.name
        )
        self.log_activity(user.id, ActivityAction.TWO_FACTOR_ENABLED)
        return user

    async def validate_two_factor(
        self,
        challenge_token: str,
        *,
        code: Optional[str] = None,
        backup_code: Optional[str] = None,
        ip: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        remember_me: bool = False,
    ) -> Tuple[str, Session, User]:
        """Second login step: a fresh TOTP or one unused backup code opens a session.

        Needs the challenge issued by the password step. Wrong codes count
        toward the account lockout and the address failure tracker like wrong
        passwords do, and a TOTP code is accepted at most once.
        """
        now = self._now()
        user_id = self.codec.verify_challenge(challenge_token, now=now.timestamp())
        user = self.store.get_user(user_id) if user_id else None
        if not user:
            raise AuthenticationError(INVALID_CHALLENGE_MESSAGE, error_code="invalid_challenge")
        if user.is_account_locked(now):
            self.logger.warning("two_factor_account_locked", user_id=user.id)
            raise AuthenticationError(LOCKED_MESSAGE, error_code="account_locked")
        cfg = user.two_factor
        if not cfg.enabled:
            raise BadRequestError("Two-factor authentication is not enabled")

        valid = False
        step: Optional[int] = None
        if backup_code:
            valid = self._consume_backup_code(cfg, backup_code)
        elif code and cfg.secret:
            step = self._match_totp_step(cfg.secret, code)
            if step is not None and cfg.last_used_step is not None and step <= cfg.last_used_step:
                self.logger.warning("two_factor_code_reused", user_id=user.id)
                step = None
            valid = step is not None
        if not valid:
            blocked = await self._record_failed_attempt(user, ip, now)
            self.logger.warning(
                "two_factor_validation_failed", user_id=user.id, ip=ip, ip_blocked=blocked
            )
            if blocked:
                raise IPBlockedError(IP_BLOCKED_LOGIN_MESSAGE)
            raise BadRequestError(INVALID_CODE_MESSAGE)

        cfg.last_used = now
        if step is not None:
            cfg.last_used_step = step
        await self._complete_login(user, ip, now)
        token_class = TOKEN_CLASS_LONG_LIVED if remember_me else TOKEN_CLASS_SESSION
        token, session = self.create_session(user, device, token_class=token_class)
        self.log_activity(
            user.id,
            ActivityAction.LOGIN,
            {
                **_client_details(ip, device),
                "token_class": token_class,
                "two_factor": True,
                "backup_code": bool(backup_code),
            },
        )
        return token, session, user

    def _consume_backup_code(self, cfg: TwoFactorConfig, backup_code: str) -> bool:
        for entry in cfg.backup_codes:
            if entry.used:
                continue
            try:
                matched = self._pwd_hasher.verify(entry.code_hash, backup_code.strip())
            except (InvalidHash, VerificationError):
                continue
            if matched:
                entry.used = True
                return True
        return False

    def disable_two_factor(self, user: User, password: str) -> User:
        if not self.verify_password(user.id, password):
            raise BadRequestError("Invalid password", detail={"field": "password"})
        user.two_factor = TwoFactorConfig()
        self.store.update_user(user)
        self.log_activity(user.id, ActivityAction.TWO_FACTOR_DISABLED)
        return user

    def _match_totp_step(
        self, secret: str, code: str, *, window: int = 1, interval: int = 30
    ) -> Optional[int]:
        """Time step whose code equals ``code`` within ``window`` steps of now."""
        code = (code or "").strip()
        if not code:
            return None
        current = int(time.time() // interval)
        for step in range(current - window, current + window + 1):
            generated = self._generate_totp(secret, step * interval, interval=interval)
            if generated and hmac.compare_digest(generated, code):
                return step
        return None

    def _generate_totp(
        self, secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
    ) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except Exception:
            self.logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        # SHA-1 is what authenticator apps implement for the default otpauth URI
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    # account
    def update_profile(
        self,
        user: User,
        *,
        name: Optional[str] = None,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        """Apply profile changes, keeping usernames and emails unique."""
        changed: List[str] = []
        if username is not None and username != user.username:
            existing = self.store.get_user_by_username(username)
            if existing and existing.id != user.id:
                raise ConflictError("Username already in use", detail={"field": "username"})
            changed.append("username")
        if email is not None:
            email = email.strip().lower()
            if email != user.email:
                existing = self.store.get_user_by_email(email)
                if existing and existing.id != user.id:
                    raise ConflictError("Email already in use", detail={"field": "email"})
                changed.append("email")
        if name is not None and name.strip() != user.name:
            changed.append("name")
        if not changed:
            return user

        if "username" in changed:
            user.username = username
        if "email" in changed:
            user.email = email
        if "name" in changed:
            user.name = name.strip()
        try:
            user = self.store.update_user(user)
        except ConstraintViolation as exc:
            raise ConflictError("Email already in use", detail=exc.detail) from exc
        self.log_activity(user.id, ActivityAction.PROFILE_UPDATE, {"fields": changed})
        self.logger.info("profile_updated", user_id=user.id, fields=changed)
        return user

    def delete_account(self, user: User, password: str) -> None:
        """Remove the account and everything it owns after a password check."""
        if not self.verify_password(user.id, password):
            raise ValidationError("Password is incorrect", detail={"field": "password"})
        self.store.delete_user(user.id)
        self.logger.info("account_deleted", user_id=user.id)

    def log_activity(
        self, user_id: str, action: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            self.store.log_activity(user_id, action, details or {})
        except Exception as exc:
            self.logger.warning(
                "activity_log_failed", user_id=user_id, action=action, error=str(exc)
            )


__all__ = [
    "AuthDecision",
    "AuthIdentity",
    "AuthService",
    "LoginResult",
    "TwoFactorEnrollment",
    "device_info_from_headers",
]
