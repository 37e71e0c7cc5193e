from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from convoaccess.api.error_handling import register_exception_handlers
from convoaccess.api.routes import router
from convoaccess.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release store connections on shutdown."""
    from convoaccess.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Conversation Access", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated. It is bound into log entries and echoed back in the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report store connectivity and build version."""
    from convoaccess.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    if hasattr(runtime.store, "verify_connection"):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["store"] = {"status": "healthy", "type": "redis"}
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["store"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            checks["store"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
    else:
        checks["store"] = {"status": "healthy", "type": "memory"}

    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)
