from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medgate.api.error_handling import register_exception_handlers
from medgate.api.routes import router
from medgate.config import Settings
from medgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_verification_cleanup(interval_seconds: int) -> None:
    """Periodically purge stale verification records and expired deny-list entries."""
    from medgate.service.runtime import get_runtime

    while True:
        try:
            removed = await get_runtime().auth.purge_expired_verifications()
            if removed:
                logger.info("verification_cleanup_completed", removed=removed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("verification_cleanup_failed", error=str(exc))
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the verification cleanup loop; close Redis on shutdown."""
    global _cleanup_task
    from medgate.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_verification_cleanup(runtime.settings.verification_cleanup_interval_seconds)
    )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Medgate Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from medgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "memory"}}
    healthy = True
    if runtime.cache is not None:
        try:
            await asyncio.wait_for(asyncio.to_thread(runtime.cache.verify_connection), 3)
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy"}
            healthy = False
    else:
        checks["redis"] = {"status": "not_configured"}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
