from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Optional

from docshield.config import Settings
from docshield.logging import get_logger
from docshield.storage.models import (
    TOKEN_CLASS_LONG_LIVED,
    TOKEN_CLASS_SESSION,
    TOKEN_CLASSES,
)

logger = get_logger(__name__)

CHALLENGE_PURPOSE = "2fa"


@dataclass(frozen=True)
class TokenClaims:
    """Claims carried by every signed token, whatever its lifetime class."""

    sub: str
    role: str
    sid: str
    cls: str
    iat: int
    exp: int
    jti: str
    iss: str
    aud: str

    @property
    def user_id(self) -> str:
        return self.sub

    @property
    def session_id(self) -> str:
        return self.sid

    @property
    def token_class(self) -> str:
        return self.cls


def token_digest(token: str) -> str:
    """SHA-256 of the raw token; sessions are looked up by this value."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenCodec:
    """HS256 signer/verifier bound to the configured secret, issuer and audience."""

    def __init__(self, settings: Settings, *, leeway_seconds: int = 120) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=leeway_seconds)

    def ttl_for(self, token_class: str) -> timedelta:
        if token_class == TOKEN_CLASS_LONG_LIVED:
            return timedelta(days=self.settings.long_lived_token_ttl_days)
        if token_class == TOKEN_CLASS_SESSION:
            return timedelta(hours=self.settings.session_token_ttl_hours)
        raise ValueError(f"unknown token class: {token_class}")

    def issue(
        self,
        *,
        user_id: str,
        role: str,
        session_id: str,
        token_class: str = TOKEN_CLASS_SESSION,
        now: Optional[float] = None,
    ) -> tuple[str, TokenClaims]:
        issued_at = int(now if now is not None else time.time())
        ttl = self.ttl_for(token_class)
        claims = TokenClaims(
            sub=user_id,
            role=role,
            sid=session_id,
            cls=token_class,
            iat=issued_at,
            exp=issued_at + int(ttl.total_seconds()),
            jti=str(uuid.uuid4()),
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
        )
        return self._encode_jwt(asdict(claims)), claims

    def verify(self, token: str, *, now: Optional[float] = None) -> Optional[TokenClaims]:
        """Return the claims for a valid token, or ``None`` for any failure.

        The failure reason is logged, never returned, so callers cannot leak it.
        """
        payload = self._decode_jwt(token, now=now)
        if payload is None:
            return None
        if payload.get("purpose") is not None:
            logger.warning("jwt_wrong_purpose", purpose=payload.get("purpose"))
            return None
        try:
            claims = TokenClaims(
                sub=str(payload["sub"]),
                role=str(payload.get("role", "user")),
                sid=str(payload["sid"]),
                cls=str(payload["cls"]),
                iat=int(payload.get("iat", 0)),
                exp=int(payload["exp"]),
                jti=str(payload.get("jti", "")),
                iss=str(payload["iss"]),
                aud=str(payload["aud"]) if isinstance(payload["aud"], str) else self.settings.jwt_audience,
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_incomplete")
            return None
        if claims.cls not in TOKEN_CLASSES:
            logger.warning("jwt_unknown_token_class", token_class=claims.cls)
            return None
        return claims

    def issue_challenge(self, *, user_id: str, now: Optional[float] = None) -> str:
        """Short-lived proof that ``user_id`` passed the password step of a 2FA login."""
        issued_at = int(now if now is not None else time.time())
        payload = {
            "sub": user_id,
            "purpose": CHALLENGE_PURPOSE,
            "iat": issued_at,
            "exp": issued_at + self.settings.two_factor_challenge_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        return self._encode_jwt(payload)

    def verify_challenge(self, token: str, *, now: Optional[float] = None) -> Optional[str]:
        """User id from a valid 2FA challenge; access tokens are not accepted."""
        payload = self._decode_jwt(token, now=now)
        if payload is None:
            return None
        if payload.get("purpose") != CHALLENGE_PURPOSE or not payload.get("sub"):
            logger.warning("jwt_not_a_challenge")
            return None
        return str(payload["sub"])

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, now: Optional[float] = None) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            logger.info("jwt_malformed")
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.warning("jwt_bad_signature")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            logger.warning("jwt_wrong_issuer")
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            logger.warning("jwt_wrong_audience")
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        current = now if now is not None else time.time()
        if exp_ts <= current - self._clock_skew_leeway.total_seconds():
            logger.info("jwt_expired", jti=payload.get("jti"))
            return None
        return payload


__all__ = [
    "CHALLENGE_PURPOSE",
    "TokenClaims",
    "TokenCodec",
    "extract_bearer",
    "token_digest",
]
