"""Request admission: the result type and the ordered pipeline that produces it.

Every check in the pipeline returns an :class:`AdmissionVerdict` rather than
raising, so the HTTP layer decides how a rejection is rendered and backend
errors in a check can be admitted and logged instead of failing the request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from docshield.logging import get_logger
from docshield.service.errors import (
    ForbiddenError,
    IPBlockedError,
    RateLimitedError,
    ServiceError,
)

logger = get_logger(__name__)

ADMIT = "admit"
REJECT = "reject"
ADMIT_WITH_ERROR = "admit_with_error"


@dataclass(frozen=True)
class AdmissionVerdict:
    outcome: str
    status_code: int = 200
    code: Optional[str] = None
    message: Optional[str] = None
    error: Optional[BaseException] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def admit(cls, headers: Optional[Dict[str, str]] = None) -> "AdmissionVerdict":
        return cls(ADMIT, headers=dict(headers or {}))

    @classmethod
    def reject(
        cls,
        status_code: int,
        code: str,
        message: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> "AdmissionVerdict":
        return cls(
            REJECT,
            status_code=status_code,
            code=code,
            message=message,
            headers=dict(headers or {}),
        )

    @classmethod
    def admit_with_error(cls, error: BaseException) -> "AdmissionVerdict":
        return cls(ADMIT_WITH_ERROR, error=error)

    @property
    def admitted(self) -> bool:
        return self.outcome != REJECT

    def to_error(self) -> ServiceError:
        """Service error equivalent of a rejection, for raising from dependencies."""
        message = self.message or "request rejected"
        if self.status_code == 429:
            return RateLimitedError(message, error_code=self.code or "rate_limited")
        if self.code == "ip_blocked":
            return IPBlockedError(message)
        if self.status_code == 403:
            return ForbiddenError(message, error_code=self.code or "forbidden")
        return ServiceError(
            message, status_code=self.status_code, error_code=self.code or "validation_error"
        )


@dataclass(frozen=True)
class RequestInfo:
    """The slice of an HTTP request that admission checks look at."""

    ip: str
    method: str = "GET"
    path: str = "/"
    user_agent: str = ""
    accept: Optional[str] = None
    accept_language: Optional[str] = None
    content_type: Optional[str] = None


def client_ip(
    headers: Mapping[str, str], peer: Optional[str], *, trust_forwarded_for: bool = False
) -> str:
    """First ``X-Forwarded-For`` hop when trusted, otherwise the socket peer."""
    if trust_forwarded_for:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return peer or "unknown"


def request_info_from_headers(
    headers: Mapping[str, str],
    *,
    peer: Optional[str],
    method: str,
    path: str,
    trust_forwarded_for: bool = False,
) -> RequestInfo:
    return RequestInfo(
        ip=client_ip(headers, peer, trust_forwarded_for=trust_forwarded_for),
        method=method.upper(),
        path=path,
        user_agent=headers.get("user-agent") or "",
        accept=headers.get("accept"),
        accept_language=headers.get("accept-language"),
        content_type=headers.get("content-type"),
    )


Check = Callable[[RequestInfo], Awaitable[AdmissionVerdict]]


class AdmissionPipeline:
    """Runs the pre-authentication checks in order and stops at the first rejection.

    The order is fixed: IP block flag, geo scoring, burst and header-pattern
    scoring, then the general API rate limit.
    """

    def __init__(self, tracker: Any, api_limiter: Any) -> None:
        self.tracker = tracker
        self.api_limiter = api_limiter

    def _checks(self) -> Sequence[Check]:
        return (
            lambda info: self.tracker.admission_check(info.ip),
            lambda info: self.tracker.score_geo(info.ip),
            self.tracker.score_patterns,
            lambda info: self.api_limiter.check(info.ip),
        )

    async def evaluate(self, info: RequestInfo) -> AdmissionVerdict:
        headers: Dict[str, str] = {}
        errors: list[BaseException] = []
        for check in self._checks():
            verdict = await check(info)
            headers.update(verdict.headers)
            if verdict.outcome == REJECT:
                logger.warning(
                    "admission_rejected",
                    ip=info.ip,
                    path=info.path,
                    status_code=verdict.status_code,
                    code=verdict.code,
                )
                return AdmissionVerdict.reject(
                    verdict.status_code, verdict.code or "forbidden", verdict.message or "", headers
                )
            if verdict.outcome == ADMIT_WITH_ERROR and verdict.error is not None:
                errors.append(verdict.error)
        if errors:
            return AdmissionVerdict(ADMIT_WITH_ERROR, error=errors[0], headers=headers)
        return AdmissionVerdict.admit(headers)


__all__ = [
    "ADMIT",
    "ADMIT_WITH_ERROR",
    "REJECT",
    "AdmissionPipeline",
    "AdmissionVerdict",
    "RequestInfo",
    "client_ip",
    "request_info_from_headers",
]
