from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from jobsync.api.router import api_router
from jobsync.core.config import get_settings
from jobsync.core.telemetry import (
    TelemetryRuntime,
    configure_engine_logging,
    setup_telemetry,
    shutdown_telemetry,
)
from jobsync.engine.service import get_engine

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        # Timers and subscriptions must not outlive the process; snapshots stay.
        await get_engine().close()
        get_engine.cache_clear()
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)


configure_engine_logging(settings)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings)
app.state.sync_stats = _telemetry_runtime.sync_stats


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
