"""Fixed-window rate limiter behaviour."""

import pytest

from docshield.config import Settings
from docshield.service.admission import ADMIT, ADMIT_WITH_ERROR, REJECT
from docshield.service.rate_limit import FixedWindowRateLimiter, default_policies
from docshield.storage.counters import ManualClock, MemoryCounterStore
from docshield.storage.errors import CounterStoreError


@pytest.fixture
def clock():
    return ManualClock(start=50.0)


@pytest.fixture
def policies():
    return default_policies(Settings(jwt_secret="unit-test-secret-0123456789"))


@pytest.fixture
def auth_limiter(clock, policies):
    return FixedWindowRateLimiter(MemoryCounterStore(clock=clock), policies["auth"])


class TestDefaultPolicies:
    """Class limits match the configured defaults."""

    def test_limits(self, policies):
        assert (policies["api"].limit, policies["api"].window_seconds) == (100, 15 * 60)
        assert (policies["auth"].limit, policies["auth"].window_seconds) == (10, 60 * 60)
        assert (policies["email"].limit, policies["email"].window_seconds) == (5, 24 * 60 * 60)

    def test_prefixes_are_distinct(self, policies):
        prefixes = {policy.prefix for policy in policies.values()}
        assert len(prefixes) == 3


class TestAuthWindow:
    """Ten auth requests per hour per address."""

    async def test_eleventh_request_is_rejected(self, auth_limiter):
        for _ in range(10):
            assert (await auth_limiter.check("10.0.0.1")).outcome == ADMIT

        verdict = await auth_limiter.check("10.0.0.1")
        assert verdict.outcome == REJECT
        assert verdict.status_code == 429
        assert verdict.code == "rate_limited"
        assert verdict.message == "Too many authentication attempts, please try again later"
        assert verdict.headers["X-RateLimit-Remaining"] == "0"
        assert int(verdict.headers["Retry-After"]) > 0

    async def test_next_window_starts_fresh(self, auth_limiter, clock):
        for _ in range(11):
            await auth_limiter.check("10.0.0.1")
        clock.advance(60 * 60)

        verdict = await auth_limiter.check("10.0.0.1")
        assert verdict.outcome == ADMIT
        assert verdict.headers["X-RateLimit-Remaining"] == "9"

    async def test_window_does_not_slide(self, auth_limiter, clock):
        await auth_limiter.check("10.0.0.1")
        clock.advance(30 * 60)
        for _ in range(9):
            await auth_limiter.check("10.0.0.1")
        clock.advance(30 * 60)

        # The window opened at the first hit, so hits late in it do not extend it
        assert (await auth_limiter.check("10.0.0.1")).outcome == ADMIT

    async def test_addresses_are_counted_separately(self, auth_limiter):
        for _ in range(11):
            await auth_limiter.check("10.0.0.1")

        assert (await auth_limiter.check("10.0.0.2")).outcome == ADMIT

    async def test_remaining_counts_down(self, auth_limiter):
        remaining = [
            (await auth_limiter.check("10.0.0.1")).headers["X-RateLimit-Remaining"]
            for _ in range(3)
        ]
        assert remaining == ["9", "8", "7"]


class TestOutage:
    """A failing counter backend admits the request."""

    async def test_fails_open(self, policies):
        class BrokenCounters(MemoryCounterStore):
            async def incr(self, key, *, ttl_seconds=None, refresh_ttl=False):
                raise CounterStoreError("down", key=key)

        limiter = FixedWindowRateLimiter(BrokenCounters(), policies["auth"])
        verdict = await limiter.check("10.0.0.1")

        assert verdict.outcome == ADMIT_WITH_ERROR
        assert verdict.admitted
