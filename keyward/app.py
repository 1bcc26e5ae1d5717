from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keyward.api.error_handling import register_exception_handlers
from keyward.api.routes import router
from keyward.api.schemas import HealthResponse
from keyward.config import get_settings
from keyward.logging import get_logger, set_correlation_id
from keyward.service.runtime import get_runtime
from keyward.service.sessions import SessionManager

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_purge_task: asyncio.Task | None = None


async def _run_refresh_purge(sessions: SessionManager, interval_seconds: float) -> None:
    """Background loop deleting expired refresh records, first pass immediately."""
    try:
        while True:
            try:
                await sessions.purge_expired_tokens()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_purge_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("refresh_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime, sweep expired refresh records while serving, close the store on exit."""
    global _purge_task
    runtime = get_runtime()
    _purge_task = asyncio.create_task(
        _run_refresh_purge(runtime.sessions, runtime.settings.refresh_purge_interval_seconds)
    )

    yield

    try:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Keyward", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    Taken from the X-Request-ID header when the client sends one, generated
    otherwise, and echoed back in the response header.
    """
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
    # token-bearing responses must not be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store reachability and build version."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    pool = getattr(runtime.store, "pool", None)
    if pool is None:
        checks["database"] = {"status": "healthy", "type": "memory"}
        db_ok = True
    else:

        def _db_probe() -> None:
            with pool.connection() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            db_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            db_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            db_ok = False
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": "postgres"}

    body = HealthResponse(
        status="healthy" if db_ok else "unhealthy",
        checks=checks,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
