from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from catalog_sync.api.router import api_router
from catalog_sync.core.config import get_settings
from catalog_sync.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from catalog_sync.jobs.registry import get_broadcaster, get_job_runner
from catalog_sync.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    # job definitions are built from settings here so a bad config fails at boot
    runner = get_job_runner()
    logger.info("sync api started jobs=%s", ",".join(sorted(runner.jobs)))
    try:
        yield
    finally:
        get_broadcaster().close()
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await runner.repository.close()
        for factory in (get_job_runner, get_broadcaster, get_repository):
            factory.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


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
