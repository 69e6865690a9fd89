from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from linkmeta.api.router import api_router
from linkmeta.core.config import get_settings
from linkmeta.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from linkmeta.extractors.registry import get_registry
from linkmeta.services.job_queue import get_job_queue
from linkmeta.services.redis_client import get_redis

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        await get_registry().aclose()
        get_registry.cache_clear()
        get_job_queue.cache_clear()
        if settings.queue_backend != "memory":
            await get_redis().aclose()
            get_redis.cache_clear()


configure_logging(settings.log_level)
app = FastAPI(title="linkmeta", lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, service_name="linkmeta-api")


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
