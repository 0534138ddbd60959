from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict

from docshield.config import Settings
from docshield.logging import get_logger
from docshield.service.admission import AdmissionVerdict
from docshield.storage.counters import CounterStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    prefix: str
    window_seconds: int
    limit: int
    message: str


def default_policies(settings: Settings) -> Dict[str, RateLimitPolicy]:
    return {
        "api": RateLimitPolicy(
            name="api",
            prefix="rl:api:",
            window_seconds=settings.api_rate_limit_window_seconds,
            limit=settings.api_rate_limit,
            message="Too many requests from this IP, please try again later",
        ),
        "auth": RateLimitPolicy(
            name="auth",
            prefix="rl:auth:",
            window_seconds=settings.auth_rate_limit_window_seconds,
            limit=settings.auth_rate_limit,
            message="Too many authentication attempts, please try again later",
        ),
        "email": RateLimitPolicy(
            name="email",
            prefix="rl:email:",
            window_seconds=settings.email_rate_limit_window_seconds,
            limit=settings.email_rate_limit,
            message="Too many email verification attempts, please try again tomorrow",
        ),
    }


class FixedWindowRateLimiter:
    """Counts hits per address in a window that starts at the first hit.

    The window does not slide: the expiry is set once, so the first request
    after it lapses starts a fresh count.
    """

    def __init__(self, counters: CounterStore, policy: RateLimitPolicy) -> None:
        self.counters = counters
        self.policy = policy

    def key_for(self, ip: str) -> str:
        return f"{self.policy.prefix}{ip}"

    async def check(self, ip: str) -> AdmissionVerdict:
        key = self.key_for(ip)
        try:
            count = await self.counters.incr(key, ttl_seconds=self.policy.window_seconds)
            remaining_ttl = await self.counters.ttl(key)
        except Exception as exc:
            logger.warning(
                "rate_limit_check_failed", policy=self.policy.name, ip=ip, error=str(exc)
            )
            return AdmissionVerdict.admit_with_error(exc)
        reset_after = remaining_ttl if remaining_ttl is not None else self.policy.window_seconds
        headers = {
            "X-RateLimit-Limit": str(self.policy.limit),
            "X-RateLimit-Remaining": str(max(0, self.policy.limit - count)),
            "X-RateLimit-Reset": str(int(time.time()) + reset_after),
        }
        if count > self.policy.limit:
            logger.warning(
                "rate_limit_exceeded", policy=self.policy.name, ip=ip, count=count
            )
            headers["Retry-After"] = str(reset_after)
            return AdmissionVerdict.reject(429, "rate_limited", self.policy.message, headers)
        return AdmissionVerdict.admit(headers)


__all__ = ["FixedWindowRateLimiter", "RateLimitPolicy", "default_policies"]
