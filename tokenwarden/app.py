from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from tokenwarden.api.error_handling import register_exception_handlers
from tokenwarden.api.routes import router
from tokenwarden.logging import get_logger, set_correlation_id
from tokenwarden.service.maintenance import cleanup_expired_state

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


async def _run_cleanup_loop(interval_seconds: int) -> None:
    """Background loop purging used codes and stale rate-limit windows."""
    from tokenwarden.service.runtime import get_runtime

    interval = max(interval_seconds, 300)
    try:
        while True:
            runtime = get_runtime()
            try:
                await asyncio.to_thread(
                    cleanup_expired_state,
                    runtime.store,
                    rate_limit_store=runtime.rate_limit_store,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("cleanup_failed", error_type=type(exc).__name__)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tokenwarden.service.runtime import get_runtime

    runtime = get_runtime()
    cleanup_task = asyncio.create_task(
        _run_cleanup_loop(runtime.settings.cleanup_interval_seconds)
    )
    yield
    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    await get_runtime().aclose()
    logger.info("runtime_cleanup_complete")


async def add_correlation_id(request, call_next):
    """Tag logs with the caller's X-Request-ID or a fresh UUID and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token responses must never be cached
    response.headers.setdefault("Cache-Control", "no-store")
    return response


async def health() -> Dict[str, Any]:
    from tokenwarden.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, str] = {}

    def _store_probe() -> None:
        if hasattr(runtime.store, "_connect"):
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

    probes = {"store": _store_probe}
    if runtime.rate_limit_store is not None:
        probes["redis"] = runtime.rate_limit_store.verify_connection
    for label, probe in probes.items():
        try:
            await asyncio.wait_for(asyncio.to_thread(probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks[label] = "ok"
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label)
            checks[label] = "timeout"
        except Exception as exc:
            logger.error("health_check_failed", component=label, error_type=type(exc).__name__)
            checks[label] = "error"
    healthy = all(value == "ok" for value in checks.values())
    return {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}


def create_app() -> FastAPI:
    application = FastAPI(title="Tokenwarden", version=__version__, lifespan=lifespan)
    application.middleware("http")(add_security_headers)
    application.middleware("http")(add_correlation_id)
    register_exception_handlers(application)
    application.include_router(router)
    application.get("/healthz")(health)
    return application


app = create_app()
