from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from vihara.api.error_handling import register_exception_handlers
from vihara.api.routes import router
from vihara.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweeper on startup and stop it on shutdown."""
    from vihara.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.session_sweeper_enabled:
        try:
            await runtime.sweeper.start()
        except Exception as exc:
            logger.error("startup_session_sweeper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.sweeper.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Vihara Identity Core", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id to the request's log lines.

    Taken from the client's X-Request-ID header when present, otherwise
    generated, and echoed back in the response header.
    """
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
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store reachability and build version."""
    from vihara.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "pool"):
        def _db_probe() -> None:
            with runtime.store._connect("health_check") as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["database"] = {"status": "healthy", "type": "postgres"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "unhealthy", "type": "postgres"}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    checks["session_sweeper"] = {
        "status": "running" if runtime.sweeper.running else "stopped",
    }
    healthy = checks["database"]["status"] == "healthy"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
