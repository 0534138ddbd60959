"""Auth service: request authentication, login protection, sessions and 2FA."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from docshield.config import Settings
from docshield.service.auth import AuthService, device_info_from_headers
from docshield.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    IPBlockedError,
    ValidationError,
)
from docshield.service.ip_reputation import GeoInfo, IPInfo, IPReputationTracker
from docshield.storage.counters import MemoryCounterStore
from docshield.storage.memory import MemoryStore
from docshield.storage.models import TOKEN_CLASS_LONG_LIVED, TOKEN_CLASS_SESSION

PASSWORD = "correct-horse"


class MutableClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(jwt_secret="auth-test-secret-0123456789")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="auth-test-key")


@pytest.fixture
def tracker():
    return IPReputationTracker(MemoryCounterStore())


@pytest.fixture
def email():
    return MagicMock()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def auth(store, settings, tracker, email, clock):
    return AuthService(store, settings, tracker=tracker, email=email, clock=clock)


@pytest.fixture
def user(store, auth):
    user = store.create_user("member@example.com", "Member", is_verified=True)
    auth.save_password(user.id, PASSWORD)
    return user


class TestAuthenticate:
    """Ordered token checks; every failure is a 401 decision."""

    async def test_no_token_never_touches_storage(self, settings):
        store = MagicMock()
        auth = AuthService(store, settings, email=MagicMock())

        decision = await auth.authenticate(None, None)

        assert not decision.ok
        assert decision.status_code == 401
        assert decision.reason == "no_token"
        assert decision.message == "No token, authorization denied"
        assert store.method_calls == []

    async def test_valid_bearer_token(self, auth, user):
        token, session = auth.create_session(user)

        decision = await auth.authenticate(f"Bearer {token}")

        assert decision.ok
        assert decision.identity.user_id == user.id
        assert decision.identity.session_id == session.id

    async def test_fallback_header(self, auth, user):
        token, _ = auth.create_session(user)
        decision = await auth.authenticate(None, token)
        assert decision.ok

    async def test_bearer_header_takes_precedence(self, auth, user):
        token, _ = auth.create_session(user)
        decision = await auth.authenticate("Bearer not-a-token", token)
        assert decision.reason == "invalid_token"

    async def test_garbage_token(self, auth):
        decision = await auth.authenticate("Bearer abc.def.ghi")
        assert decision.reason == "invalid_token"
        assert decision.message == "Token is not valid"

    async def test_inactive_session_rejects_valid_token(self, auth, user):
        token, _ = auth.create_session(user)
        auth.invalidate_session(token)

        decision = await auth.authenticate(f"Bearer {token}")

        assert decision.status_code == 401
        assert decision.reason == "session_invalid"

    async def test_deleted_user(self, auth, store, user):
        token, _ = auth.create_session(user)
        del store.users[user.id]

        decision = await auth.authenticate(f"Bearer {token}")
        assert decision.reason == "user_not_found"

    async def test_unverified_user(self, auth, store):
        pending = store.create_user("pending@example.com", "Pending")
        token, _ = auth.create_session(pending)

        decision = await auth.authenticate(f"Bearer {token}")
        assert decision.reason == "email_unverified"

    async def test_locked_user(self, auth, user, clock):
        token, _ = auth.create_session(user)
        user.login_attempts.locked_until = clock.now + timedelta(minutes=10)

        decision = await auth.authenticate(f"Bearer {token}")
        assert decision.reason == "account_locked"

    async def test_store_failure_fails_closed(self, auth, store, user):
        token, _ = auth.create_session(user)

        def _boom(*args, **kwargs):
            raise RuntimeError("database unavailable")

        store.find_active_session = _boom
        decision = await auth.authenticate(f"Bearer {token}")

        assert not decision.ok
        assert decision.reason == "invalid_token"

    async def test_activity_is_touched(self, auth, store, user, clock):
        token, session = auth.create_session(user)
        clock.advance(minutes=5)

        await auth.authenticate(f"Bearer {token}")
        assert store.get_session(session.id).last_activity == clock.now

    def test_decision_converts_to_error(self):
        from docshield.service.auth import AuthDecision

        error = AuthDecision.deny("session_invalid", "Session expired or invalid").to_error()
        assert error.status_code == 401
        assert error.error_code == "session_invalid"


class TestSessions:
    """Session lifecycle and revocation."""

    async def test_invalidate_twice_is_harmless(self, auth, store, user):
        token, session = auth.create_session(user)

        assert auth.invalidate_session(token) is True
        assert auth.invalidate_session(token) is False
        assert store.get_session(session.id).is_active is False

    async def test_token_digest_is_stored_not_the_token(self, auth, store, user):
        token, session = auth.create_session(user)
        assert store.get_session(session.id).token_hash != token

    async def test_renew_rotates_token(self, auth, user):
        token, session = auth.create_session(user)
        identity = (await auth.authenticate(f"Bearer {token}")).identity

        new_token, renewed = auth.renew_session(identity)

        assert renewed.id == session.id
        assert (await auth.authenticate(f"Bearer {new_token}")).ok
        assert (await auth.authenticate(f"Bearer {token}")).reason == "session_invalid"

    async def test_invalidate_all_keeps_current(self, auth, store, user):
        keep, keep_session = auth.create_session(user)
        other, _ = auth.create_session(user)

        revoked = auth.invalidate_all_sessions(user.id, except_session_id=keep_session.id)

        assert revoked == 1
        assert (await auth.authenticate(f"Bearer {keep}")).ok
        assert not (await auth.authenticate(f"Bearer {other}")).ok

    def test_token_classes(self, auth, user):
        _, short = auth.create_session(user, token_class=TOKEN_CLASS_SESSION)
        _, long = auth.create_session(user, token_class=TOKEN_CLASS_LONG_LIVED)
        assert long.expires_at - short.expires_at > timedelta(days=5)


class TestLogin:
    """Password login with account lockout and IP tracking."""

    async def test_success(self, auth, user, store):
        result = await auth.login("member@example.com", PASSWORD, ip="10.0.0.5")

        assert result.token
        assert not result.two_factor_required
        assert store.get_user(user.id).last_login is not None

    async def test_remember_me_issues_long_lived_token(self, auth, user):
        result = await auth.login("member@example.com", PASSWORD, remember_me=True)
        assert result.session.token_class == TOKEN_CLASS_LONG_LIVED

    async def test_wrong_password(self, auth, user):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth.login("member@example.com", "wrong-password")
        assert excinfo.value.error_code == "invalid_credentials"

    async def test_unknown_email_looks_like_wrong_password(self, auth):
        with pytest.raises(AuthenticationError) as excinfo:
            await auth.login("nobody@example.com", PASSWORD)
        assert excinfo.value.message == "Invalid credentials"

    async def test_lockout_after_five_failures(self, auth, user, clock):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.login("member@example.com", "wrong-password")

        # Correct password during the lockout window is still refused
        with pytest.raises(AuthenticationError) as excinfo:
            await auth.login("member@example.com", PASSWORD)
        assert excinfo.value.error_code == "account_locked"
        assert excinfo.value.status_code == 401

        clock.advance(minutes=31)
        result = await auth.login("member@example.com", PASSWORD)
        assert result.token

    async def test_success_resets_attempts(self, auth, user, store):
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth.login("member@example.com", "wrong-password")

        await auth.login("member@example.com", PASSWORD)
        assert store.get_user(user.id).login_attempts.count == 0

    async def test_ip_blocked_after_five_failures(self, auth, user, tracker):
        for i in range(4):
            with pytest.raises(AuthenticationError):
                await auth.login(f"ghost{i}@example.com", PASSWORD, ip="10.0.0.66")

        with pytest.raises(IPBlockedError) as excinfo:
            await auth.login("ghost4@example.com", PASSWORD, ip="10.0.0.66")
        assert excinfo.value.status_code == 403

        assert await tracker.is_blocked("10.0.0.66")
        result = await auth.login("member@example.com", PASSWORD, ip="10.0.0.67")
        assert result.token

    async def test_unverified_login_rejected(self, auth, store):
        pending = store.create_user("pending@example.com", "Pending")
        auth.save_password(pending.id, PASSWORD)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.login("pending@example.com", PASSWORD)
        assert excinfo.value.error_code == "email_unverified"

    async def test_verification_not_required(self, store, tracker, email, clock, settings):
        relaxed = settings.model_copy(update={"require_email_verification": False})
        auth = AuthService(store, relaxed, tracker=tracker, email=email, clock=clock)
        pending = store.create_user("pending@example.com", "Pending")
        auth.save_password(pending.id, PASSWORD)

        assert (await auth.login("pending@example.com", PASSWORD)).token

    async def test_session_and_activity_carry_location(self, auth, user, store):
        ip_info = IPInfo(
            ip="198.51.100.4",
            user_agent="Mozilla/5.0",
            geo=GeoInfo(country="NL", city="Amsterdam"),
        )
        device = device_info_from_headers({"x-device-type": "laptop"}, ip_info)

        result = await auth.login("member@example.com", PASSWORD, ip=ip_info.ip, device=device)

        stored = store.get_session(result.session.id).device_info
        assert stored.ip == "198.51.100.4"
        assert stored.country == "NL"
        assert stored.city == "Amsterdam"
        assert stored.device_type == "laptop"
        details = store.list_activities(user.id)[0].details
        assert details == {
            "ip": "198.51.100.4",
            "country": "NL",
            "city": "Amsterdam",
            "token_class": TOKEN_CLASS_SESSION,
        }


class TestRegistrationAndRecovery:
    """Registration, email verification and password reset."""

    async def test_register_sends_verification(self, auth, store, email):
        user = await auth.register("New Person", "new@example.com", "secret123")

        assert not user.is_verified
        email.send_verification_email.assert_called_once()
        token = email.send_verification_email.call_args.args[2]
        assert store.get_user(user.id).verification_token_hash != token

        verified = auth.verify_email(token)
        assert verified.is_verified
        with pytest.raises(BadRequestError):
            auth.verify_email(token)

    async def test_duplicate_registration(self, auth, user):
        with pytest.raises(ConflictError, match="User already exists"):
            await auth.register("Again", "member@example.com", "secret123")

    async def test_short_password(self, auth):
        with pytest.raises(ValidationError):
            await auth.register("Short", "short@example.com", "abc")

    async def test_expired_verification_token(self, auth, email, clock):
        await auth.register("New Person", "new@example.com", "secret123")
        token = email.send_verification_email.call_args.args[2]
        clock.advance(hours=25)

        with pytest.raises(BadRequestError, match="Invalid or expired verification token"):
            auth.verify_email(token)

    async def test_resend_is_silent_for_unknown_email(self, auth, email):
        await auth.resend_verification("nobody@example.com")
        email.send_verification_email.assert_not_called()

    async def test_password_reset_flow(self, auth, user, email):
        token, _ = auth.create_session(user)
        await auth.request_password_reset("member@example.com")
        reset_token = email.send_password_reset_email.call_args.args[2]

        auth.reset_password(reset_token, "brand-new-pass")

        assert not (await auth.authenticate(f"Bearer {token}")).ok
        assert (await auth.login("member@example.com", "brand-new-pass")).token
        with pytest.raises(BadRequestError, match="Invalid or expired reset token"):
            auth.reset_password(reset_token, "another-pass")

    async def test_reset_request_for_unknown_email(self, auth, email):
        await auth.request_password_reset("nobody@example.com")
        email.send_password_reset_email.assert_not_called()

    async def test_change_password_revokes_other_sessions(self, auth, user):
        token, _ = auth.create_session(user)
        other, _ = auth.create_session(user)
        identity = (await auth.authenticate(f"Bearer {token}")).identity

        revoked = auth.change_password(identity, PASSWORD, "fresh-password")

        assert revoked == 1
        assert (await auth.authenticate(f"Bearer {token}")).ok
        assert not (await auth.authenticate(f"Bearer {other}")).ok

    async def test_change_password_requires_current(self, auth, user):
        token, _ = auth.create_session(user)
        identity = (await auth.authenticate(f"Bearer {token}")).identity
        with pytest.raises(ValidationError):
            auth.change_password(identity, "not-it", "fresh-password")

    async def test_slow_mail_server_does_not_stall_other_requests(
        self, store, settings, tracker, clock
    ):
        class SlowEmail:
            def __init__(self):
                self.sent = []

            def send_verification_email(self, to, name, token):
                time.sleep(0.3)
                self.sent.append(to)

        email = SlowEmail()
        auth = AuthService(store, settings, tracker=tracker, email=email, clock=clock)
        ticks = 0

        async def ticker():
            nonlocal ticks
            for _ in range(10):
                await asyncio.sleep(0.01)
                ticks += 1

        async def register():
            await auth.register("New Person", "new@example.com", "secret123")
            return ticks

        ticks_when_sent, _ = await asyncio.gather(register(), ticker())

        assert email.sent == ["new@example.com"]
        assert ticks_when_sent >= 5


class TestTwoFactor:
    """TOTP enrolment and the second login step."""

    async def _enroll(self, auth, user):
        enrollment = auth.enable_two_factor(user)
        code = auth._generate_totp(enrollment.secret, time.time())
        await auth.verify_two_factor(user, code)
        return enrollment

    async def _challenge(self, auth):
        result = await auth.login("member@example.com", PASSWORD)
        assert result.two_factor_required
        return result.challenge_token

    def _next_code(self, auth, enrollment):
        # The enrolment consumed the current step
        return auth._generate_totp(enrollment.secret, time.time() + 30)

    async def test_enrollment(self, auth, user, email):
        enrollment = auth.enable_two_factor(user)

        assert len(enrollment.backup_codes) == 10
        assert enrollment.otpauth_uri.startswith("otpauth://totp/DocShield:")
        assert not user.two_factor.enabled

        await auth.verify_two_factor(user, auth._generate_totp(enrollment.secret, time.time()))
        assert user.two_factor.enabled
        email.send_two_factor_enabled.assert_called_once()

    async def test_wrong_code_does_not_enable(self, auth, user):
        auth.enable_two_factor(user)
        with pytest.raises(BadRequestError, match="Invalid verification code"):
            await auth.verify_two_factor(user, "000000x")
        assert not user.two_factor.enabled

    async def test_login_requires_second_step(self, auth, user, store):
        await self._enroll(auth, user)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await auth.login("member@example.com", "wrong-password")

        result = await auth.login("member@example.com", PASSWORD)

        assert result.two_factor_required
        assert result.token is None
        assert result.challenge_token
        # The password step alone does not clear earlier failures
        assert store.get_user(user.id).login_attempts.count == 2

    async def test_totp_validation(self, auth, user, store):
        enrollment = await self._enroll(auth, user)
        challenge = await self._challenge(auth)

        token, session, validated = await auth.validate_two_factor(
            challenge, code=self._next_code(auth, enrollment), ip="10.0.0.5"
        )

        assert token
        assert session.user_id == user.id
        assert validated.id == user.id
        assert store.get_user(user.id).last_login is not None

    async def test_backup_code_is_single_use(self, auth, user):
        enrollment = await self._enroll(auth, user)
        backup = enrollment.backup_codes[0]
        challenge = await self._challenge(auth)

        token, _, _ = await auth.validate_two_factor(challenge, backup_code=backup)
        assert token
        with pytest.raises(BadRequestError):
            await auth.validate_two_factor(challenge, backup_code=backup)

    async def test_totp_code_is_single_use(self, auth, user):
        enrollment = await self._enroll(auth, user)
        challenge = await self._challenge(auth)
        code = self._next_code(auth, enrollment)

        await auth.validate_two_factor(challenge, code=code)
        with pytest.raises(BadRequestError, match="Invalid verification code"):
            await auth.validate_two_factor(challenge, code=code)

    async def test_enrolment_code_cannot_log_in(self, auth, user):
        enrollment = auth.enable_two_factor(user)
        code = auth._generate_totp(enrollment.secret, time.time())
        await auth.verify_two_factor(user, code)
        challenge = await self._challenge(auth)

        with pytest.raises(BadRequestError):
            await auth.validate_two_factor(challenge, code=code)

    @pytest.mark.parametrize("challenge", ["", "not-a-token", "a.b.c"])
    async def test_invalid_challenge(self, auth, user, challenge):
        await self._enroll(auth, user)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.validate_two_factor(challenge, code="123456")
        assert excinfo.value.error_code == "invalid_challenge"
        assert user.login_attempts.count == 0

    async def test_access_token_is_not_a_challenge(self, auth, user):
        enrollment = await self._enroll(auth, user)
        token, _ = auth.create_session(user)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.validate_two_factor(token, code=self._next_code(auth, enrollment))
        assert excinfo.value.error_code == "invalid_challenge"

    async def test_challenge_is_not_an_access_token(self, auth, user):
        await self._enroll(auth, user)
        challenge = await self._challenge(auth)

        decision = await auth.authenticate(f"Bearer {challenge}")
        assert decision.reason == "invalid_token"

    async def test_challenge_expires(self, auth, user, clock):
        enrollment = await self._enroll(auth, user)
        challenge = await self._challenge(auth)
        # Lifetime plus the clock-skew allowance
        clock.advance(seconds=300 + 121)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.validate_two_factor(challenge, code=self._next_code(auth, enrollment))
        assert excinfo.value.error_code == "invalid_challenge"

    async def test_wrong_codes_lock_the_account(self, auth, user, store):
        enrollment = await self._enroll(auth, user)
        challenge = await self._challenge(auth)

        for _ in range(5):
            with pytest.raises(BadRequestError):
                await auth.validate_two_factor(challenge, code="abcdef")
        assert store.get_user(user.id).login_attempts.count == 5

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.validate_two_factor(challenge, code=self._next_code(auth, enrollment))
        assert excinfo.value.error_code == "account_locked"

    async def test_wrong_codes_block_the_address(self, auth, user, tracker):
        await self._enroll(auth, user)
        challenge = await self._challenge(auth)

        for _ in range(4):
            with pytest.raises(BadRequestError):
                await auth.validate_two_factor(challenge, code="abcdef", ip="10.0.0.77")
        with pytest.raises(IPBlockedError):
            await auth.validate_two_factor(challenge, code="abcdef", ip="10.0.0.77")

        assert await tracker.is_blocked("10.0.0.77")

    async def test_disable_requires_password(self, auth, user):
        await self._enroll(auth, user)
        with pytest.raises(BadRequestError, match="Invalid password"):
            auth.disable_two_factor(user, "wrong")

        auth.disable_two_factor(user, PASSWORD)
        assert not user.two_factor.enabled
        assert user.two_factor.secret is None

    def test_totp_matches_reference_vector(self, auth):
        # RFC 6238 SHA-1 secret "12345678901234567890"
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert auth._generate_totp(secret, 59, digits=8) == "94287082"
        assert auth._generate_totp(secret, 1111111109, digits=8) == "07081804"
