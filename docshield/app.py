from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from docshield.api.error_handling import error_response, register_exception_handlers
from docshield.api.routes import router
from docshield.config import Settings
from docshield.logging import get_logger, set_correlation_id
from docshield.service.admission import ADMIT_WITH_ERROR, request_info_from_headers

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from docshield.service.runtime import get_runtime

    try:
        get_runtime()
        logger.info("startup_complete", version=__version__, build=__build__)
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="DocShield API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-auth-token", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def admit_request(request: Request, call_next):
    """Run IP reputation and the API rate limit ahead of every /v1 route.

    Rejections are answered here with an envelope; tracker errors are logged
    and the request goes through. The request carries an :class:`IPInfo` on
    ``request.state.ip_info`` for later handlers.
    """
    if not request.url.path.startswith("/v1/"):
        return await call_next(request)
    from docshield.service.runtime import get_runtime

    runtime = get_runtime()
    info = request_info_from_headers(
        request.headers,
        peer=request.client.host if request.client else None,
        method=request.method,
        path=request.url.path,
        trust_forwarded_for=runtime.settings.trust_forwarded_for,
    )
    request.state.ip_info = runtime.tracker.describe(info)
    verdict = await runtime.admission.evaluate(info)
    if not verdict.admitted:
        return error_response(
            verdict.status_code,
            verdict.message or "request rejected",
            code=verdict.code,
            headers=verdict.headers,
        )
    if verdict.outcome == ADMIT_WITH_ERROR:
        logger.warning(
            "admission_check_failed_open",
            ip=info.ip,
            path=info.path,
            error=str(verdict.error),
        )
    response = await call_next(request)
    # Route-level limiter headers take precedence over the API limiter's
    for name, value in verdict.headers.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with ``X-Request-ID``, generating one when absent."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and counter-store health with build info.

    Each probe is bounded so a hung dependency reports unhealthy instead of
    hanging the check.
    """
    from docshield.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    runtime = get_runtime()

    async def _run_bounded(label: str, probe) -> bool:
        try:
            result = await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
            return result is not False
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    db_ok = await _run_bounded("database", lambda: asyncio.to_thread(runtime.store.ping))
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": store_type}

    counters_ok = await _run_bounded("counters", runtime.counters.ping)
    checks["counters"] = {
        "status": "healthy" if counters_ok else "unhealthy",
        "backend": type(runtime.counters).__name__,
    }

    overall_healthy = db_ok and counters_ok
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
