from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

from docshield.logging import get_logger
from docshield.service.errors import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from docshield.storage.errors import ConstraintViolation
from docshield.storage.models import (
    CREDIT_REQUEST_APPROVED,
    CREDIT_REQUEST_REJECTED,
    ActivityAction,
    CreditRequest,
    User,
)

logger = get_logger(__name__)

INSUFFICIENT_CREDITS_MESSAGE = (
    "Insufficient credits. Please request more credits or wait for daily reset."
)


class CreditStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def reset_daily_credits(
        self, user_id: str, daily_limit: int, now: datetime
    ) -> Optional[User]: ...

    def decrement_credits_if_positive(self, user_id: str) -> Optional[int]: ...

    def refund_credit(self, user_id: str, cap: int) -> Optional[int]: ...

    def set_credits(
        self, user_id: str, credits: int, *, last_credit_reset: Optional[datetime] = None
    ) -> Optional[User]: ...

    def increment_total_scans(self, user_id: str) -> None: ...

    def log_activity(self, user_id: str, action: str, details: Optional[Dict] = None) -> Any: ...

    def create_credit_request(
        self, user_id: str, requested_credits: int, reason: str
    ) -> CreditRequest: ...

    def get_credit_request(self, request_id: str) -> Optional[CreditRequest]: ...

    def list_credit_requests(
        self, *, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CreditRequest]: ...

    def process_credit_request(
        self,
        request_id: str,
        *,
        status: str,
        admin_id: str,
        admin_note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CreditRequest]: ...


class CreditService:
    """Daily credit quota, the spend gate around paid operations, and credit requests.

    The daily reset is lazy: it happens on the first credit check after the UTC
    calendar date changes.
    """

    def __init__(
        self,
        store: CreditStore,
        *,
        daily_limit: int = 20,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.daily_limit = daily_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def refresh(self, user_id: str, now: Optional[datetime] = None) -> User:
        user = self.store.reset_daily_credits(user_id, self.daily_limit, now or self._now())
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def check(self, user_id: str, now: Optional[datetime] = None) -> User:
        user = self.refresh(user_id, now)
        if user.credits <= 0:
            logger.info("credit_check_rejected", user_id=user_id)
            raise InsufficientCreditsError(INSUFFICIENT_CREDITS_MESSAGE)
        return user

    @contextlib.asynccontextmanager
    async def spend(
        self, user_id: str, *, details: Optional[Dict[str, Any]] = None
    ) -> AsyncIterator[int]:
        """Reserve one credit around a paid operation.

        The credit is taken atomically before the body runs and handed back if
        the body raises, so a failed operation costs nothing and the balance
        never drops below zero. A refund never lifts the balance above the
        daily limit, or above the pre-reservation balance when that was higher.
        """
        user = self.check(user_id)
        refund_cap = max(self.daily_limit, user.credits)
        remaining = self.store.decrement_credits_if_positive(user_id)
        if remaining is None:
            logger.info("credit_reservation_failed", user_id=user_id)
            raise InsufficientCreditsError(INSUFFICIENT_CREDITS_MESSAGE)
        try:
            yield remaining
        except BaseException:
            balance = self.store.refund_credit(user_id, refund_cap)
            logger.info("credit_refunded", user_id=user_id, credits=balance)
            raise
        self.store.increment_total_scans(user_id)
        try:
            self.store.log_activity(
                user_id, ActivityAction.CREDIT_USE, {"remaining": remaining, **(details or {})}
            )
        except Exception as exc:
            logger.warning("activity_log_failed", user_id=user_id, error=str(exc))

    def balance(self, user_id: str) -> Dict[str, Any]:
        user = self.refresh(user_id)
        return {
            "credits": user.credits,
            "last_credit_reset": user.last_credit_reset,
            "daily_limit": self.daily_limit,
        }

    def set_credits(self, user_id: str, credits: Any) -> User:
        if isinstance(credits, bool) or not isinstance(credits, int):
            raise ValidationError("Credits must be a number", detail={"field": "credits"})
        if credits < 0:
            raise ValidationError("Credits cannot be negative", detail={"field": "credits"})
        user = self.store.set_credits(user_id, credits)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        logger.info("credits_set_by_admin", user_id=user_id, credits=credits)
        return user

    # credit requests
    def request_credits(self, user_id: str, requested_credits: int, reason: str) -> CreditRequest:
        if requested_credits < 1:
            raise ValidationError(
                "requested credits must be at least 1", detail={"field": "requested_credits"}
            )
        if not reason or not reason.strip():
            raise ValidationError("reason is required", detail={"field": "reason"})
        req = self.store.create_credit_request(user_id, requested_credits, reason.strip())
        logger.info(
            "credit_request_created",
            user_id=user_id,
            request_id=req.id,
            requested_credits=requested_credits,
        )
        return req

    def list_requests(self, *, status: Optional[str] = None) -> List[CreditRequest]:
        return self.store.list_credit_requests(status=status)

    def history(self, user_id: str) -> List[CreditRequest]:
        return self.store.list_credit_requests(user_id=user_id)

    def process_request(
        self,
        request_id: str,
        *,
        admin_id: str,
        status: str,
        admin_note: Optional[str] = None,
    ) -> CreditRequest:
        if status not in (CREDIT_REQUEST_APPROVED, CREDIT_REQUEST_REJECTED):
            raise ValidationError("Invalid status", detail={"field": "status"})
        try:
            req = self.store.process_credit_request(
                request_id,
                status=status,
                admin_id=admin_id,
                admin_note=admin_note,
                now=self._now(),
            )
        except ConstraintViolation as exc:
            raise ConflictError("Request has already been processed", detail=exc.detail) from exc
        if not req:
            raise NotFoundError("Credit request not found", detail={"request_id": request_id})
        if status == CREDIT_REQUEST_APPROVED:
            try:
                self.store.log_activity(
                    req.user_id,
                    ActivityAction.CREDIT_PURCHASE,
                    {"request_id": req.id, "credits": req.requested_credits},
                )
            except Exception as exc:
                logger.warning("activity_log_failed", user_id=req.user_id, error=str(exc))
        logger.info(
            "credit_request_processed",
            request_id=req.id,
            status=status,
            admin_id=admin_id,
        )
        return req


__all__ = ["CreditService", "INSUFFICIENT_CREDITS_MESSAGE"]
