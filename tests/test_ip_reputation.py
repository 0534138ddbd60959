"""Tests for the IP reputation tracker and the admission pipeline it feeds."""

import pytest

from docshield.config import Settings
from docshield.service.admission import (
    ADMIT,
    ADMIT_WITH_ERROR,
    REJECT,
    AdmissionPipeline,
    RequestInfo,
    client_ip,
    request_info_from_headers,
)
from docshield.service.ip_reputation import (
    GeoInfo,
    IPReputationTracker,
    LocalNetworkGeoResolver,
)
from docshield.service.rate_limit import FixedWindowRateLimiter, RateLimitPolicy
from docshield.storage.counters import ManualClock, MemoryCounterStore
from docshield.storage.errors import CounterStoreError


class FailingCounters:
    """Counter store whose backend is down."""

    async def incr(self, key, *, ttl_seconds=None, refresh_ttl=False):
        raise CounterStoreError("connection refused", key=key)

    async def get_int(self, key):
        raise CounterStoreError("connection refused", key=key)

    async def set_flag(self, key, ttl_seconds):
        raise CounterStoreError("connection refused", key=key)

    async def exists(self, key):
        raise CounterStoreError("connection refused", key=key)

    async def delete(self, *keys):
        raise CounterStoreError("connection refused")

    async def ttl(self, key):
        raise CounterStoreError("connection refused", key=key)

    async def ping(self):
        return False

    async def close(self):
        return None


class FixedGeoResolver:
    def __init__(self, country):
        self.country = country

    def resolve(self, ip):
        return GeoInfo(country=self.country) if self.country else None


@pytest.fixture
def clock():
    return ManualClock(start=1000.0)


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def tracker(counters):
    return IPReputationTracker(counters)


def _info(ip="10.0.0.1", **overrides):
    values = {
        "ip": ip,
        "method": "GET",
        "path": "/v1/me",
        "user_agent": "pytest",
        "accept": "application/json",
        "accept_language": "en-US",
        "content_type": None,
    }
    values.update(overrides)
    return RequestInfo(**values)


class TestFailedLogins:
    """Five failures inside the window block the address."""

    async def test_fifth_failure_blocks(self, tracker):
        results = [await tracker.record_failed_login("10.0.0.5") for _ in range(5)]

        assert results == [False, False, False, False, True]
        verdict = await tracker.admission_check("10.0.0.5")
        assert verdict.outcome == REJECT
        assert verdict.status_code == 403
        assert verdict.code == "ip_blocked"

    async def test_block_is_per_address(self, tracker):
        for _ in range(5):
            await tracker.record_failed_login("10.0.0.5")

        verdict = await tracker.admission_check("10.0.0.6")
        assert verdict.outcome == ADMIT

    async def test_block_lapses_after_block_window(self, tracker, clock):
        for _ in range(5):
            await tracker.record_failed_login("10.0.0.5")

        clock.advance(30 * 60 - 1)
        assert (await tracker.admission_check("10.0.0.5")).outcome == REJECT
        clock.advance(2)
        assert (await tracker.admission_check("10.0.0.5")).outcome == ADMIT

    async def test_success_clears_failure_count(self, tracker):
        for _ in range(4):
            await tracker.record_failed_login("10.0.0.5")
        await tracker.record_successful_login("10.0.0.5")

        assert await tracker.record_failed_login("10.0.0.5") is False
        snapshot = await tracker.snapshot("10.0.0.5")
        assert snapshot["failed_logins"] == 1
        assert snapshot["blocked"] is False

    async def test_failures_decay_after_quiet_window(self, tracker, clock):
        for _ in range(4):
            await tracker.record_failed_login("10.0.0.5")
        clock.advance(30 * 60 + 1)

        assert await tracker.record_failed_login("10.0.0.5") is False

    async def test_unblock_clears_state(self, tracker):
        for _ in range(5):
            await tracker.record_failed_login("10.0.0.5")
        await tracker.unblock("10.0.0.5")

        assert (await tracker.admission_check("10.0.0.5")).outcome == ADMIT
        snapshot = await tracker.snapshot("10.0.0.5")
        assert snapshot["failed_logins"] == 0
        assert snapshot["block_ttl_seconds"] is None


class TestPatternScoring:
    """Burst counting and header heuristics."""

    async def test_burst_over_limit_blocks(self, counters):
        tracker = IPReputationTracker(counters, burst_limit=3)
        for _ in range(3):
            assert (await tracker.score_patterns(_info())).outcome == ADMIT

        verdict = await tracker.score_patterns(_info())
        assert verdict.outcome == REJECT
        assert verdict.status_code == 429
        assert await tracker.is_blocked("10.0.0.1")

    async def test_burst_window_is_fixed(self, counters, clock):
        tracker = IPReputationTracker(counters, burst_limit=3)
        for _ in range(3):
            await tracker.score_patterns(_info())
        clock.advance(61)

        assert (await tracker.score_patterns(_info())).outcome == ADMIT

    def test_signals(self, tracker):
        info = _info(
            method="POST",
            user_agent="x" * 501,
            accept="*/*",
            accept_language=None,
            content_type=None,
        )
        assert set(tracker.suspicious_signals(info)) == {
            "long_user_agent",
            "missing_accept_language",
            "wildcard_accept",
            "post_without_content_type",
        }
        assert tracker.suspicious_signals(_info()) == []

    async def test_single_signal_is_not_scored(self, tracker):
        for _ in range(10):
            await tracker.score_patterns(_info(accept_language=None))

        snapshot = await tracker.snapshot("10.0.0.1")
        assert snapshot["suspicious_score"] == 0

    async def test_repeated_suspicious_requests_block(self, tracker):
        noisy = _info(accept="*/*", accept_language=None)
        for _ in range(5):
            assert (await tracker.score_patterns(noisy)).outcome == ADMIT

        verdict = await tracker.score_patterns(noisy)
        assert verdict.outcome == REJECT
        assert verdict.code == "ip_blocked"
        assert await tracker.is_blocked("10.0.0.1")


class TestGeoScoring:
    """Only an injected resolver can add geo points to the suspicious score."""

    def test_private_ranges_resolve_to_local(self):
        resolver = LocalNetworkGeoResolver()
        assert resolver.resolve("10.1.2.3").country == "local"
        assert resolver.resolve("127.0.0.1").country == "local"
        assert resolver.resolve("8.8.8.8") is None
        assert resolver.resolve("not-an-ip") is None

    async def test_public_address_without_resolver_is_not_scored(self, tracker):
        verdict = await tracker.score_geo("8.8.8.8")

        assert verdict.outcome == ADMIT
        assert (await tracker.snapshot("8.8.8.8"))["suspicious_score"] == 0

    async def test_enabling_without_resolver_stays_off(self, counters):
        tracker = IPReputationTracker(counters, geo_scoring_enabled=True)

        assert tracker.geo_scoring_enabled is False
        await tracker.score_geo("8.8.8.8")
        assert (await tracker.snapshot("8.8.8.8"))["suspicious_score"] == 0

    async def test_known_country_is_not_scored(self, counters):
        tracker = IPReputationTracker(
            counters, geo_resolver=FixedGeoResolver("NL"), geo_scoring_enabled=True
        )
        await tracker.score_geo("8.8.8.8")
        assert (await tracker.snapshot("8.8.8.8"))["suspicious_score"] == 0

    async def test_unknown_country_is_scored(self, counters):
        tracker = IPReputationTracker(
            counters, geo_resolver=FixedGeoResolver("Unknown"), geo_scoring_enabled=True
        )
        await tracker.score_geo("8.8.8.8")
        assert (await tracker.snapshot("8.8.8.8"))["suspicious_score"] == 1

    async def test_unresolved_by_configured_resolver_is_scored(self, counters):
        tracker = IPReputationTracker(
            counters, geo_resolver=FixedGeoResolver(None), geo_scoring_enabled=True
        )
        await tracker.score_geo("8.8.8.8")
        assert (await tracker.snapshot("8.8.8.8"))["suspicious_score"] == 1

    async def test_private_address_is_never_scored(self, counters):
        tracker = IPReputationTracker(
            counters, geo_resolver=FixedGeoResolver(None), geo_scoring_enabled=True
        )
        await tracker.score_geo("10.0.0.1")
        assert (await tracker.snapshot("10.0.0.1"))["suspicious_score"] == 0

    async def test_scoring_can_be_disabled(self, counters):
        tracker = IPReputationTracker(
            counters, geo_resolver=FixedGeoResolver("Unknown"), geo_scoring_enabled=False
        )
        await tracker.score_geo("8.8.8.8")
        assert (await tracker.snapshot("8.8.8.8"))["suspicious_score"] == 0


class TestDescribe:
    """Address details handed to sessions and activity logs."""

    def test_local_address(self, tracker):
        ip_info = tracker.describe(_info(ip="10.0.0.7", user_agent="Mozilla/5.0"))

        assert ip_info.country == "local"
        assert ip_info.to_dict() == {
            "ip": "10.0.0.7",
            "user_agent": "Mozilla/5.0",
            "country": "local",
            "region": None,
            "city": None,
        }

    def test_configured_resolver_and_truncated_agent(self, counters):
        tracker = IPReputationTracker(counters, geo_resolver=FixedGeoResolver("NL"))
        ip_info = tracker.describe(_info(ip="8.8.8.8", user_agent="x" * 600))

        assert ip_info.country == "NL"
        assert len(ip_info.user_agent) == 500

    def test_failing_resolver_leaves_geo_empty(self, counters):
        class BrokenResolver:
            def resolve(self, ip):
                raise OSError("database missing")

        tracker = IPReputationTracker(counters, geo_resolver=BrokenResolver())
        assert tracker.describe(_info(ip="8.8.8.8")).geo is None


class TestFailOpen:
    """Counter outages admit the request and surface the error."""

    async def test_admission_check(self):
        tracker = IPReputationTracker(FailingCounters())
        verdict = await tracker.admission_check("10.0.0.1")

        assert verdict.outcome == ADMIT_WITH_ERROR
        assert verdict.admitted
        assert isinstance(verdict.error, CounterStoreError)

    async def test_pattern_scoring(self):
        tracker = IPReputationTracker(FailingCounters())
        verdict = await tracker.score_patterns(_info())
        assert verdict.outcome == ADMIT_WITH_ERROR

    async def test_failed_login_tracking_never_blocks(self):
        tracker = IPReputationTracker(FailingCounters())
        assert await tracker.record_failed_login("10.0.0.1") is False


class TestAdmissionPipeline:
    """Ordered checks: block list, geo, patterns, API rate limit."""

    def _pipeline(self, counters, limit=100):
        tracker = IPReputationTracker(counters)
        policy = RateLimitPolicy(
            name="api", prefix="rl:api:", window_seconds=900, limit=limit, message="slow down"
        )
        return tracker, AdmissionPipeline(tracker, FixedWindowRateLimiter(counters, policy))

    async def test_clean_request_is_admitted_with_headers(self, counters):
        _, pipeline = self._pipeline(counters)
        verdict = await pipeline.evaluate(_info())

        assert verdict.outcome == ADMIT
        assert verdict.headers["X-RateLimit-Limit"] == "100"
        assert verdict.headers["X-RateLimit-Remaining"] == "99"

    async def test_blocked_address_stops_before_rate_limit(self, counters):
        tracker, pipeline = self._pipeline(counters)
        for _ in range(5):
            await tracker.record_failed_login("10.0.0.1")

        verdict = await pipeline.evaluate(_info())
        assert verdict.outcome == REJECT
        assert verdict.status_code == 403
        assert await counters.get_int("rl:api:10.0.0.1") == 0

    async def test_api_limit(self, counters):
        _, pipeline = self._pipeline(counters, limit=2)
        await pipeline.evaluate(_info())
        await pipeline.evaluate(_info())

        verdict = await pipeline.evaluate(_info())
        assert verdict.outcome == REJECT
        assert verdict.status_code == 429
        assert "Retry-After" in verdict.headers

    async def test_outage_admits_with_error(self):
        _, pipeline = self._pipeline(FailingCounters())
        verdict = await pipeline.evaluate(_info())

        assert verdict.admitted
        assert verdict.outcome == ADMIT_WITH_ERROR

    async def test_browser_at_public_address_is_not_blocked(self, counters):
        tracker, pipeline = self._pipeline(counters)
        browser = {
            "ip": "8.8.8.8",
            "user_agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
            "accept_language": "en-US,en;q=0.9",
        }
        for path in ["/v1/me", "/v1/documents", "/v1/credits"] * 2:
            verdict = await pipeline.evaluate(_info(path=path, **browser))
            assert verdict.outcome == ADMIT

        # fetch() POST with no body
        logout = _info(method="POST", path="/v1/auth/logout", accept="*/*", **browser)
        assert (await pipeline.evaluate(logout)).outcome == ADMIT
        assert (await pipeline.evaluate(_info(path="/v1/me", **browser))).outcome == ADMIT

        snapshot = await tracker.snapshot("8.8.8.8")
        assert snapshot["blocked"] is False
        assert snapshot["suspicious_score"] == 1


class TestClientAddress:
    """Forwarded-for handling."""

    def test_first_forwarded_hop(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
        assert client_ip(headers, "10.0.0.2", trust_forwarded_for=True) == "203.0.113.7"

    def test_forwarded_for_ignored_by_default(self):
        headers = {"x-forwarded-for": "203.0.113.7"}
        assert client_ip(headers, "10.0.0.2") == "10.0.0.2"
        info = request_info_from_headers(headers, peer="10.0.0.2", method="get", path="/v1/me")
        assert info.ip == "10.0.0.2"

    def test_settings_default_to_socket_peer(self, monkeypatch):
        monkeypatch.delenv("TRUST_FORWARDED_FOR", raising=False)
        assert Settings.from_env().trust_forwarded_for is False
        assert Settings.from_env().ip_geo_scoring_enabled is False

    def test_untrusted_forwarded_for_uses_peer(self):
        headers = {"x-forwarded-for": "203.0.113.7"}
        assert client_ip(headers, "10.0.0.2", trust_forwarded_for=False) == "10.0.0.2"

    def test_request_info(self):
        info = request_info_from_headers(
            {"user-agent": "curl/8", "accept-language": "en"},
            peer="10.0.0.9",
            method="post",
            path="/v1/documents",
        )
        assert info.ip == "10.0.0.9"
        assert info.method == "POST"
        assert info.accept_language == "en"
        assert info.content_type is None
