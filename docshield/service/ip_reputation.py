from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from docshield.logging import get_logger
from docshield.service.admission import AdmissionVerdict, RequestInfo
from docshield.storage.counters import CounterStore

logger = get_logger(__name__)

BLOCKED_MESSAGE = (
    "Your IP has been blocked due to suspicious activity. Please try again later."
)
BURST_MESSAGE = "Too many requests. Your IP has been temporarily blocked."
SUSPICIOUS_MESSAGE = "Access denied due to suspicious activity."


@dataclass(frozen=True)
class GeoInfo:
    country: Optional[str]
    region: Optional[str] = None
    city: Optional[str] = None


class GeoResolver(Protocol):
    def resolve(self, ip: str) -> Optional[GeoInfo]:
        ...


class LocalNetworkGeoResolver:
    """Resolver that needs no geo database.

    Private, loopback and link-local addresses resolve to the ``local`` pseudo
    country. Public addresses stay unresolved, so this resolver only describes
    requests and never feeds geo scoring.
    """

    def resolve(self, ip: str) -> Optional[GeoInfo]:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return None
        if not addr.is_global:
            return GeoInfo(country="local")
        return None


@dataclass(frozen=True)
class IPInfo:
    """Client address details attached to a request for sessions and activity logs."""

    ip: str
    user_agent: str = ""
    geo: Optional[GeoInfo] = None

    @property
    def country(self) -> Optional[str]:
        return self.geo.country if self.geo else None

    def to_dict(self) -> Dict[str, Optional[str]]:
        geo = self.geo
        return {
            "ip": self.ip,
            "user_agent": self.user_agent,
            "country": geo.country if geo else None,
            "region": geo.region if geo else None,
            "city": geo.city if geo else None,
        }


class IPReputationTracker:
    """Per-address counters that can put an address on a temporary block list.

    All counters live in the ephemeral counter store. Any store failure is
    logged and the request is admitted. Geo scoring runs only when it is enabled
    and a resolver is injected.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        geo_resolver: Optional[GeoResolver] = None,
        geo_scoring_enabled: bool = False,
        max_failed_logins: int = 5,
        failed_window_seconds: int = 30 * 60,
        block_seconds: int = 30 * 60,
        burst_limit: int = 100,
        burst_window_seconds: int = 60,
        suspicious_threshold: int = 5,
        suspicious_window_seconds: int = 30 * 60,
        max_user_agent_length: int = 500,
    ) -> None:
        self.counters = counters
        self.geo_resolver: Optional[GeoResolver] = geo_resolver
        self.local_resolver = LocalNetworkGeoResolver()
        if geo_scoring_enabled and geo_resolver is None:
            logger.warning("ip_geo_scoring_disabled", reason="no_geo_resolver_configured")
            geo_scoring_enabled = False
        self.geo_scoring_enabled = geo_scoring_enabled
        self.max_failed_logins = max_failed_logins
        self.failed_window_seconds = failed_window_seconds
        self.block_seconds = block_seconds
        self.burst_limit = burst_limit
        self.burst_window_seconds = burst_window_seconds
        self.suspicious_threshold = suspicious_threshold
        self.suspicious_window_seconds = suspicious_window_seconds
        self.max_user_agent_length = max_user_agent_length

    @staticmethod
    def blocked_key(ip: str) -> str:
        return f"blocked:{ip}"

    @staticmethod
    def failed_key(ip: str) -> str:
        return f"failed:{ip}"

    @staticmethod
    def suspicious_key(ip: str) -> str:
        return f"suspicious:{ip}"

    @staticmethod
    def requests_key(ip: str) -> str:
        return f"requests:{ip}"

    async def _block(self, ip: str, reason: str) -> None:
        await self.counters.set_flag(self.blocked_key(ip), self.block_seconds)
        logger.warning("ip_blocked", ip=ip, reason=reason, block_seconds=self.block_seconds)

    async def is_blocked(self, ip: str) -> bool:
        return await self.counters.exists(self.blocked_key(ip))

    async def admission_check(self, ip: str) -> AdmissionVerdict:
        try:
            if await self.is_blocked(ip):
                return AdmissionVerdict.reject(403, "ip_blocked", BLOCKED_MESSAGE)
        except Exception as exc:
            logger.warning("ip_admission_check_failed", ip=ip, error=str(exc))
            return AdmissionVerdict.admit_with_error(exc)
        return AdmissionVerdict.admit()

    def resolve_geo(self, ip: str) -> Optional[GeoInfo]:
        local = self.local_resolver.resolve(ip)
        if local is not None or self.geo_resolver is None:
            return local
        try:
            return self.geo_resolver.resolve(ip)
        except Exception as exc:
            logger.warning("geo_resolve_failed", ip=ip, error=str(exc))
            return None

    def describe(self, info: RequestInfo) -> IPInfo:
        return IPInfo(
            ip=info.ip,
            user_agent=(info.user_agent or "")[: self.max_user_agent_length],
            geo=self.resolve_geo(info.ip),
        )

    async def score_geo(self, ip: str) -> AdmissionVerdict:
        if not self.geo_scoring_enabled or self.geo_resolver is None:
            return AdmissionVerdict.admit()
        geo = self.resolve_geo(ip)
        country = (geo.country or "").strip().lower() if geo else ""
        if country and country != "unknown":
            return AdmissionVerdict.admit()
        try:
            score = await self.counters.incr(
                self.suspicious_key(ip),
                ttl_seconds=self.suspicious_window_seconds,
                refresh_ttl=True,
            )
        except Exception as exc:
            logger.warning("ip_geo_scoring_failed", ip=ip, error=str(exc))
            return AdmissionVerdict.admit_with_error(exc)
        logger.info("ip_geo_unresolved", ip=ip, suspicious_score=score)
        return AdmissionVerdict.admit()

    def suspicious_signals(self, info: RequestInfo) -> List[str]:
        signals: List[str] = []
        if len(info.user_agent or "") > self.max_user_agent_length:
            signals.append("long_user_agent")
        if not info.accept_language:
            signals.append("missing_accept_language")
        if info.accept and "*/*" in info.accept:
            signals.append("wildcard_accept")
        if info.method.upper() == "POST" and not info.content_type:
            signals.append("post_without_content_type")
        return signals

    async def score_patterns(self, info: RequestInfo) -> AdmissionVerdict:
        ip = info.ip
        try:
            count = await self.counters.incr(
                self.requests_key(ip), ttl_seconds=self.burst_window_seconds
            )
            if count > self.burst_limit:
                await self._block(ip, "burst")
                return AdmissionVerdict.reject(429, "rate_limited", BURST_MESSAGE)

            signals = self.suspicious_signals(info)
            if len(signals) >= 2:
                score = await self.counters.incr(
                    self.suspicious_key(ip),
                    ttl_seconds=self.suspicious_window_seconds,
                    refresh_ttl=True,
                )
                logger.info(
                    "ip_suspicious_request", ip=ip, signals=signals, suspicious_score=score
                )
                if score > self.suspicious_threshold:
                    await self._block(ip, "suspicious_patterns")
                    return AdmissionVerdict.reject(403, "ip_blocked", SUSPICIOUS_MESSAGE)
        except Exception as exc:
            logger.warning("ip_pattern_scoring_failed", ip=ip, error=str(exc))
            return AdmissionVerdict.admit_with_error(exc)
        return AdmissionVerdict.admit()

    async def record_failed_login(self, ip: str) -> bool:
        """Count a failed login from ``ip``; returns True once the address is blocked."""
        try:
            failures = await self.counters.incr(
                self.failed_key(ip),
                ttl_seconds=self.failed_window_seconds,
                refresh_ttl=True,
            )
            if failures >= self.max_failed_logins:
                await self._block(ip, "failed_logins")
                return True
        except Exception as exc:
            logger.warning("ip_failed_login_tracking_failed", ip=ip, error=str(exc))
            return False
        return False

    async def record_successful_login(self, ip: str) -> None:
        try:
            await self.counters.delete(self.failed_key(ip))
        except Exception as exc:
            logger.warning("ip_success_tracking_failed", ip=ip, error=str(exc))

    async def unblock(self, ip: str) -> None:
        await self.counters.delete(
            self.blocked_key(ip), self.failed_key(ip), self.suspicious_key(ip)
        )
        logger.info("ip_unblocked", ip=ip)

    async def snapshot(self, ip: str) -> Dict[str, object]:
        return {
            "ip": ip,
            "blocked": await self.counters.exists(self.blocked_key(ip)),
            "block_ttl_seconds": await self.counters.ttl(self.blocked_key(ip)),
            "failed_logins": await self.counters.get_int(self.failed_key(ip)),
            "suspicious_score": await self.counters.get_int(self.suspicious_key(ip)),
            "recent_requests": await self.counters.get_int(self.requests_key(ip)),
        }


__all__ = [
    "GeoInfo",
    "GeoResolver",
    "IPInfo",
    "IPReputationTracker",
    "LocalNetworkGeoResolver",
]
