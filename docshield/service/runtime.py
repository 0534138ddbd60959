from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from docshield.config import get_settings, reset_settings_cache
from docshield.logging import get_logger
from docshield.service.admission import AdmissionPipeline
from docshield.service.analysis import DocumentAnalyzer, HTTPDocumentAnalyzer
from docshield.service.auth import AuthService
from docshield.service.credits import CreditService
from docshield.service.documents import DocumentService
from docshield.service.email import EmailService
from docshield.service.ip_reputation import IPReputationTracker
from docshield.service.rate_limit import FixedWindowRateLimiter, default_policies
from docshield.service.tokens import TokenCodec
from docshield.storage.counters import MemoryCounterStore
from docshield.storage.memory import MemoryStore
from docshield.storage.postgres import PostgresStore
from docshield.storage.redis_cache import RedisCounterStore, SyncRedisCounterStore

logger = get_logger(__name__)

CounterBackend = Union[RedisCounterStore, SyncRedisCounterStore, MemoryCounterStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, analyzer: Optional[DocumentAnalyzer] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_key_material,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_key_material,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.counters: CounterBackend = self._init_counters()

        self.tracker = IPReputationTracker(
            self.counters,
            geo_scoring_enabled=self.settings.ip_geo_scoring_enabled,
            max_failed_logins=self.settings.ip_max_failed_logins,
            failed_window_seconds=self.settings.ip_failed_window_seconds,
            block_seconds=self.settings.ip_block_seconds,
            burst_limit=self.settings.ip_burst_limit,
            burst_window_seconds=self.settings.ip_burst_window_seconds,
            suspicious_threshold=self.settings.ip_suspicious_threshold,
            suspicious_window_seconds=self.settings.ip_suspicious_window_seconds,
        )
        policies = default_policies(self.settings)
        self.api_limiter = FixedWindowRateLimiter(self.counters, policies["api"])
        self.auth_limiter = FixedWindowRateLimiter(self.counters, policies["auth"])
        self.email_limiter = FixedWindowRateLimiter(self.counters, policies["email"])
        self.admission = AdmissionPipeline(self.tracker, self.api_limiter)

        self.codec = TokenCodec(self.settings)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            tracker=self.tracker,
            email=self.email,
            codec=self.codec,
        )
        self.credits = CreditService(self.store, daily_limit=self.settings.daily_credit_limit)
        self.analyzer: DocumentAnalyzer = analyzer or HTTPDocumentAnalyzer.from_settings(
            self.settings
        )
        self.documents = DocumentService(
            self.store,
            self.credits,
            self.analyzer,
            max_document_bytes=self.settings.max_document_bytes,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            counter_backend=type(self.counters).__name__,
            email_configured=self.email.is_configured,
            analyzer_configured=getattr(self.analyzer, "is_configured", True),
            require_email_verification=self.settings.require_email_verification,
        )

    def _init_counters(self) -> CounterBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode to avoid event loop binding issues
                if self.settings.test_mode:
                    counters: CounterBackend = SyncRedisCounterStore(self.settings.redis_url)
                else:
                    counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                return counters
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for IP reputation and rate limit counters; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; IP blocks and rate "
                "limits are per-process and in-memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCounterStore()

    async def aclose(self) -> None:
        await self.counters.close()
        close_analyzer = getattr(self.analyzer, "close", None)
        if close_analyzer:
            await close_analyzer()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, analyzer: Optional[DocumentAnalyzer] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            counters = runtime.counters
            try:
                if isinstance(counters, SyncRedisCounterStore):
                    counters._sync_client.close()
                elif isinstance(counters, RedisCounterStore):
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(counters.close())
                    except RuntimeError:
                        asyncio.run(counters.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_reset_close_failed", error=str(exc))
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(analyzer=analyzer)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
