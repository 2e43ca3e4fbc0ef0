from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request

from storekeep.api.error_handling import register_exception_handlers
from storekeep.api.routes import router
from storekeep.logging import get_logger, set_correlation_id
from storekeep.service.session import current_session_var

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_session_sweep(interval_seconds: int) -> None:
    """Periodically drop expired browser sessions from the session backend."""
    from storekeep.service.runtime import get_runtime

    while True:
        await asyncio.sleep(max(1, interval_seconds))
        try:
            await get_runtime().sessions.sweep()
        except Exception as exc:
            logger.warning("session_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from storekeep.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.session_sweep_interval_seconds)
    )
    logger.info("session_sweep_started", interval=runtime.settings.session_sweep_interval_seconds)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Storekeep", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def bind_browser_session(request: Request, call_next):
        """Load the browser session for the request and write it back afterwards."""
        from storekeep.service.runtime import get_runtime

        sessions = get_runtime().sessions
        ctx = await sessions.load(request.cookies)
        token = current_session_var.set(ctx)
        try:
            response = await call_next(request)
        finally:
            current_session_var.reset(token)
        await sessions.commit(ctx, response)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        from storekeep.service.runtime import get_runtime

        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and get_runtime().settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with X-Request-ID (or a fresh UUID) and echo it on the response."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", tags=["health"])
    async def health() -> Dict[str, Any]:
        from storekeep.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}
        healthy = True

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        checks["store"] = {
            "status": "healthy",
            "type": "memory",
            "users": len(runtime.store.list_users(limit=100000)),
        }

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        fs_path = Path(runtime.store.fs_root)

        def _fs_roundtrip() -> None:
            if not fs_path.is_dir():
                raise FileNotFoundError(fs_path)
            marker = fs_path / ".health_check"
            marker.write_text(datetime.now(timezone.utc).isoformat())
            marker.read_text()
            marker.unlink(missing_ok=True)

        fs_ok = await _run_bounded("filesystem", _fs_roundtrip)
        checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
        healthy = healthy and fs_ok

        checks["email"] = {
            "status": "configured" if runtime.email.is_configured else "dev_mode"
        }
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
