from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI

from idkeeper.api.error_handling import register_exception_handlers
from idkeeper.api.routes import router
from idkeeper.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

# Expired codes are rejected at use time; the sweep only keeps tables small
CODE_SWEEP_INTERVAL_SECONDS = 15 * 60

_sweep_task: asyncio.Task | None = None


async def _run_code_sweep(interval_seconds: int) -> None:
    from idkeeper.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                auth = get_runtime().auth
                await asyncio.to_thread(auth.purge_expired_codes)
                auth.cleanup_expired_states()
            except Exception as exc:
                logger.error("code_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("code_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    from idkeeper.service.runtime import get_runtime

    try:
        get_runtime()
        _sweep_task = asyncio.create_task(_run_code_sweep(CODE_SWEEP_INTERVAL_SECONDS))
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            try:
                await _sweep_task
            except asyncio.CancelledError:
                pass
        runtime = get_runtime()
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="idkeeper", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID into structured logs and back to the client."""
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
    # Token-bearing responses must never be cached by proxies
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks for the store, Redis (if configured) and the state directory."""
    from idkeeper.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

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

    runtime = get_runtime()
    if hasattr(runtime.store, "pool"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    overall_healthy = overall_healthy and db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_probe() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    overall_healthy = overall_healthy and fs_ok

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
