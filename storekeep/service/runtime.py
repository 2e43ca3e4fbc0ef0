from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from storekeep.config import get_settings, reset_settings_cache
from storekeep.logging import get_logger
from storekeep.service.auth import AuthFlowService
from storekeep.service.dashboard import DashboardService
from storekeep.service.email import EmailService
from storekeep.service.identity import IdentityService
from storekeep.service.roles import RoleAdminService
from storekeep.service.session import MemorySessionStore, SessionManager
from storekeep.storage.memory import MemoryStore
from storekeep.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
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
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root, secret_key=self.settings.secret_key
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise

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
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for browser sessions and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate limits "
                    "are process-local."
                ),
                mode=fallback_mode,
            )

        self.sessions = SessionManager(self.cache or MemorySessionStore(), self.settings)
        self.identity = IdentityService(self.store, self.settings)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthFlowService(self.identity, self.email, self.settings)
        self.roles = RoleAdminService(self.identity)
        self.dashboard = DashboardService(self.store)

        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            registration_enabled=self.settings.allow_registration,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read serves the common case, the locked
    re-check prevents two threads from building competing runtimes.
    """
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                asyncio.get_running_loop().create_task(previous.cache.close())
            except RuntimeError:
                asyncio.run(previous.cache.close())
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """Token-bucket rate limit, in Redis when configured and in-process otherwise."""
    if limit <= 0:
        return True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60

    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)

    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        _prune_full_buckets(runtime._local_rate_limits, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        full_at = now + timedelta(seconds=(limit - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
    return allowed


def _prune_full_buckets(
    buckets: Dict[str, Tuple[float, datetime, datetime]], now: datetime
) -> int:
    """Drop buckets that have refilled; a missing key starts full anyway."""
    stale = [key for key, (_, _, full_at) in buckets.items() if full_at <= now]
    for key in stale:
        buckets.pop(key, None)
    return len(stale)


__all__ = [
    "Runtime",
    "check_rate_limit",
    "get_runtime",
    "reset_runtime_for_tests",
]
