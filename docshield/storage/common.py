"""Storage helpers shared between the memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from docshield.logging import get_logger
from docshield.storage.models import BackupCode, LoginAttempts, TwoFactorConfig

logger = get_logger(__name__)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str]) -> Fernet:
    if not key_material:
        raise RuntimeError("MFA encryption key material is required")
    try:
        return Fernet(derive_cipher_key(key_material))
    except Exception as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # Rotated key material; the user has to re-enroll.
        logger.warning("mfa_secret_decrypt_failed")
        return None


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(raw)


def serialize_login_attempts(attempts: LoginAttempts) -> Dict[str, Any]:
    return {
        "count": attempts.count,
        "last_attempt": _dt(attempts.last_attempt),
        "locked_until": _dt(attempts.locked_until),
    }


def deserialize_login_attempts(data: Optional[Dict[str, Any]]) -> LoginAttempts:
    data = data or {}
    return LoginAttempts(
        count=int(data.get("count", 0)),
        last_attempt=_parse_dt(data.get("last_attempt")),
        locked_until=_parse_dt(data.get("locked_until")),
    )


def serialize_two_factor(cfg: TwoFactorConfig, cipher: Fernet) -> Dict[str, Any]:
    return {
        "enabled": cfg.enabled,
        "secret": encrypt_secret(cipher, cfg.secret),
        "backup_codes": [
            {"code_hash": code.code_hash, "used": code.used} for code in cfg.backup_codes
        ],
        "last_used": _dt(cfg.last_used),
        "last_used_step": cfg.last_used_step,
    }


def deserialize_two_factor(data: Optional[Dict[str, Any]], cipher: Fernet) -> TwoFactorConfig:
    data = data or {}
    return TwoFactorConfig(
        enabled=bool(data.get("enabled", False)),
        secret=decrypt_secret(cipher, data.get("secret")),
        backup_codes=[
            BackupCode(code_hash=c["code_hash"], used=bool(c.get("used", False)))
            for c in data.get("backup_codes", [])
        ],
        last_used=_parse_dt(data.get("last_used")),
        last_used_step=data.get("last_used_step"),
    )


__all__ = [
    "build_secret_cipher",
    "derive_cipher_key",
    "decrypt_secret",
    "encrypt_secret",
    "serialize_login_attempts",
    "deserialize_login_attempts",
    "serialize_two_factor",
    "deserialize_two_factor",
]
