"""Credit gate, daily reset and credit request processing."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from docshield.service.credits import CreditService
from docshield.service.errors import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    ValidationError,
)
from docshield.storage.memory import MemoryStore
from docshield.storage.models import ActivityAction

NOW = datetime(2025, 3, 14, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="credit-test-key")


@pytest.fixture
def credits(store):
    return CreditService(store, daily_limit=20, clock=lambda: NOW)


@pytest.fixture
def user(store):
    user = store.create_user("reader@example.com", "Reader", is_verified=True)
    store.set_credits(user.id, 20, last_credit_reset=NOW)
    return user


class TestDailyReset:
    """The balance refills on the first check of a new UTC day."""

    async def test_yesterday_with_zero_credits(self, store, credits, user):
        store.set_credits(user.id, 0, last_credit_reset=NOW - timedelta(days=1))

        async with credits.spend(user.id) as remaining:
            assert remaining == 19

        refreshed = store.get_user(user.id)
        assert refreshed.credits == 19
        assert refreshed.last_credit_reset == NOW
        assert refreshed.total_scans == 1

    def test_same_day_keeps_balance(self, store, credits, user):
        store.set_credits(user.id, 3, last_credit_reset=NOW.replace(hour=0, minute=5))
        assert credits.refresh(user.id).credits == 3

    def test_reset_uses_utc_dates(self, store, credits, user):
        # 23:30 the previous evening at UTC-5 is already the same UTC day
        eastern = timezone(timedelta(hours=-5))
        earlier = datetime(2025, 3, 13, 23, 30, tzinfo=eastern)
        store.set_credits(user.id, 2, last_credit_reset=earlier)
        assert credits.refresh(user.id).credits == 2

    def test_unknown_user(self, credits):
        with pytest.raises(NotFoundError):
            credits.refresh("missing-user")


class TestSpend:
    """One credit per paid operation, refunded on failure."""

    async def test_success_costs_one_credit(self, store, credits, user):
        async with credits.spend(user.id, details={"document_id": "doc-1"}) as remaining:
            assert remaining == 19

        assert store.get_user(user.id).credits == 19
        actions = [a.action for a in store.list_activities(user.id)]
        assert ActivityAction.CREDIT_USE in actions

    async def test_failure_refunds(self, store, credits, user):
        with pytest.raises(RuntimeError):
            async with credits.spend(user.id):
                raise RuntimeError("analysis exploded")

        refreshed = store.get_user(user.id)
        assert refreshed.credits == 20
        assert refreshed.total_scans == 0

    async def test_zero_credits_rejected(self, store, credits, user):
        store.set_credits(user.id, 0, last_credit_reset=NOW)

        with pytest.raises(InsufficientCreditsError) as excinfo:
            async with credits.spend(user.id):
                pytest.fail("body must not run without credits")

        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "insufficient_credits"
        assert store.get_user(user.id).credits == 0

    async def test_balance_never_goes_negative(self, store, credits, user):
        store.set_credits(user.id, 1, last_credit_reset=NOW)

        async def _paid_call():
            async with credits.spend(user.id):
                await asyncio.sleep(0)

        results = await asyncio.gather(_paid_call(), _paid_call(), return_exceptions=True)

        failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(failures) == 1
        assert store.get_user(user.id).credits == 0

    async def test_refund_after_reset_stays_within_limit(self, store, credits, user):
        with pytest.raises(RuntimeError):
            async with credits.spend(user.id):
                # the daily reset lands while the operation is running
                store.set_credits(user.id, 20)
                raise RuntimeError("analysis exploded")

        assert store.get_user(user.id).credits == 20

    async def test_refund_keeps_granted_balance(self, store, credits, user):
        store.set_credits(user.id, 50, last_credit_reset=NOW)

        with pytest.raises(RuntimeError):
            async with credits.spend(user.id):
                raise RuntimeError("analysis exploded")

        assert store.get_user(user.id).credits == 50

    def test_check_passes_with_credits(self, credits, user):
        assert credits.check(user.id).credits == 20


class TestAdminAdjustments:
    """Direct balance changes by an administrator."""

    def test_set_credits(self, credits, user):
        assert credits.set_credits(user.id, 42).credits == 42

    @pytest.mark.parametrize("value", ["5", 2.5, None, True])
    def test_non_integer_rejected(self, credits, user, value):
        with pytest.raises(ValidationError, match="Credits must be a number"):
            credits.set_credits(user.id, value)

    def test_negative_rejected(self, credits, user):
        with pytest.raises(ValidationError, match="Credits cannot be negative"):
            credits.set_credits(user.id, -1)

    def test_unknown_user(self, credits):
        with pytest.raises(NotFoundError):
            credits.set_credits("missing-user", 5)

    def test_balance(self, credits, user):
        balance = credits.balance(user.id)
        assert balance["credits"] == 20
        assert balance["daily_limit"] == 20


class TestCreditRequests:
    """Users ask for credits; an admin approves or rejects once."""

    def test_approval_adds_credits(self, store, credits, user):
        req = credits.request_credits(user.id, 10, "Quarterly report review")

        processed = credits.process_request(
            req.id, admin_id="admin-1", status="approved", admin_note="ok"
        )

        assert processed.status == "approved"
        assert processed.admin_id == "admin-1"
        assert processed.processed_at == NOW
        assert store.get_user(user.id).credits == 30
        actions = [a.action for a in store.list_activities(user.id)]
        assert ActivityAction.CREDIT_PURCHASE in actions

    def test_rejection_leaves_balance(self, store, credits, user):
        req = credits.request_credits(user.id, 10, "More please")
        credits.process_request(req.id, admin_id="admin-1", status="rejected")
        assert store.get_user(user.id).credits == 20

    def test_second_processing_conflicts(self, store, credits, user):
        req = credits.request_credits(user.id, 10, "More please")
        credits.process_request(req.id, admin_id="admin-1", status="approved")

        with pytest.raises(ConflictError, match="already been processed"):
            credits.process_request(req.id, admin_id="admin-2", status="approved")
        assert store.get_user(user.id).credits == 30

    def test_invalid_status(self, credits, user):
        req = credits.request_credits(user.id, 10, "More please")
        with pytest.raises(ValidationError, match="Invalid status"):
            credits.process_request(req.id, admin_id="admin-1", status="pending")

    def test_unknown_request(self, credits):
        with pytest.raises(NotFoundError, match="Credit request not found"):
            credits.process_request("nope", admin_id="admin-1", status="approved")

    def test_history_and_listing(self, store, credits, user):
        other = store.create_user("other@example.com", "Other")
        credits.request_credits(user.id, 5, "first")
        credits.request_credits(other.id, 7, "second")

        assert [r.requested_credits for r in credits.history(user.id)] == [5]
        assert len(credits.list_requests(status="pending")) == 2
        assert credits.list_requests(status="approved") == []

    def test_blank_reason_rejected(self, credits, user):
        with pytest.raises(ValidationError):
            credits.request_credits(user.id, 5, "   ")
