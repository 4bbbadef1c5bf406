from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.api.error_handling import register_exception_handlers
from chatrelay.api.routes import router
from chatrelay.config import Settings
from chatrelay.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the assistant profile on startup and release clients on shutdown."""
    from chatrelay.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()

    yield

    try:
        await runtime.shutdown()
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="chatrelay", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with the caller's X-Request-ID or a fresh id."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from chatrelay.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

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

    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    checks["assistant"] = {"status": runtime.assistant.status}

    if not (store_ok and redis_ok):
        status = "unhealthy"
    elif not runtime.assistant.ready:
        status = "degraded"
    else:
        status = "healthy"
    return {
        "status": status,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


def create_app() -> FastAPI:
    return app


def run() -> None:
    """Serve the app with uvicorn."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Run the chatrelay server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run("chatrelay.app:app", host=args.host, port=args.port)


if __name__ == "__main__":
    run()
