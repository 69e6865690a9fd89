from __future__ import annotations

import asyncio
import logging
import signal

from linkmeta.core.config import get_settings
from linkmeta.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from linkmeta.extractors.registry import ExtractorRegistry, build_page_fetcher
from linkmeta.jobs.pool import WorkerPool
from linkmeta.jobs.processor import JobProcessor
from linkmeta.services.job_queue import QueueError, build_job_queue
from linkmeta.services.publisher import EventPublisher
from linkmeta.services.redis_client import build_redis
from linkmeta.services.repository import PostgresRepository

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    redis_client = build_redis(settings.redis_url)
    repository = PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
    registry = ExtractorRegistry(build_page_fetcher())
    queue = build_job_queue(settings, redis_client)
    publisher = EventPublisher(
        redis_client,
        repository,
        publish_timeout_seconds=settings.publish_timeout_seconds,
    )
    processor = JobProcessor.from_settings(
        settings,
        queue=queue,
        resolver=registry,
        store=repository,
        publisher=publisher,
    )
    pool = WorkerPool.from_settings(settings, queue=queue, processor=processor)

    try:
        if settings.recover_processing_on_start:
            try:
                recovered = await queue.recover_processing()
            except QueueError as exc:
                logger.warning("processing list recovery failed: %s", exc)
            else:
                if recovered:
                    logger.info("requeued unacknowledged jobs: %s", recovered)

        async with pool:
            await stop_event.wait()
            logger.info("shutdown requested; draining workers")
    finally:
        await registry.aclose()
        await repository.close()
        await redis_client.aclose()
        shutdown_telemetry(telemetry_runtime)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            logger.debug("signal handlers unavailable for %s", sig)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
