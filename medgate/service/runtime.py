from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from medgate.config import get_settings, reset_settings_cache
from medgate.logging import get_logger
from medgate.service.auth import AuthService
from medgate.service.clock import SystemClock
from medgate.service.email import EmailService
from medgate.service.sessions import SessionIssuer
from medgate.storage.memory import MemoryStore
from medgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    ``redis://:secret@localhost:6379`` becomes ``redis://:***@localhost:6379``.
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            state_path=self.settings.state_path,
        )
        self.store = MemoryStore(state_path=self.settings.state_path)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                self.settings.redis_url
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "ALLOW_REDIS_FALLBACK_DEV=true to keep the deny-list in memory."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Session deny-list is kept in the record store.",
            )

        self.clock = SystemClock()
        self.email = EmailService(self.settings)
        self.sessions = SessionIssuer(
            self.settings, self.clock, store=self.store, cache=self.cache
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            email_service=self.email,
            sessions=self.sessions,
            clock=self.clock,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            staff_lockout_enabled=self.settings.staff_lockout_enabled,
        )

    async def aclose(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(runtime.aclose())
                else:
                    asyncio.run(runtime.aclose())
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
