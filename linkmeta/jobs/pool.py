from __future__ import annotations

import asyncio
from collections import Counter
import logging
import random
from types import TracebackType

from linkmeta.core.config import Settings
from linkmeta.jobs.processor import JobProcessor
from linkmeta.services.job_queue import JobDecodeError, JobQueue, QueueError

logger = logging.getLogger(__name__)


class WorkerPool:
    """N identical consumers sharing one queue.

    Each worker blocks on ``dequeue`` for at most ``dequeue_timeout_seconds``
    so a stop request is noticed between polls. A job already dequeued is
    always handed to the processor before the worker exits.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        worker_count: int = 3,
        *,
        dequeue_timeout_seconds: float = 1.0,
        shutdown_grace_seconds: float = 10.0,
        poll_error_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 15.0,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.worker_count = worker_count if worker_count > 0 else 3
        self.dequeue_timeout_seconds = max(0.0, dequeue_timeout_seconds)
        self.shutdown_grace_seconds = max(0.0, shutdown_grace_seconds)
        self.poll_error_backoff_seconds = max(0.01, poll_error_backoff_seconds)
        self.max_backoff_seconds = max(self.poll_error_backoff_seconds, max_backoff_seconds)
        self.outcomes: Counter[str] = Counter()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings, *, queue: JobQueue, processor: JobProcessor) -> WorkerPool:
        return cls(
            queue,
            processor,
            settings.worker_count,
            dequeue_timeout_seconds=settings.dequeue_timeout_seconds,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
            poll_error_backoff_seconds=settings.poll_error_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    @property
    def running(self) -> bool:
        return not self._stopping.is_set() and any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._run_worker(index), name=f"linkmeta-worker-{index}")
            for index in range(1, self.worker_count + 1)
        ]
        logger.info("worker pool started workers=%s", self.worker_count)

    def request_stop(self) -> None:
        self._stopping.set()

    async def stop(self) -> None:
        self.request_stop()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace_seconds)
        if pending:
            logger.warning("shutdown grace period elapsed; cancelling workers=%s", len(pending))
            for task in pending:
                task.cancel()
        await self.wait_closed()
        logger.info("worker pool stopped outcomes=%s", dict(self.outcomes))

    async def wait_closed(self) -> None:
        tasks = list(self._tasks)
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("worker exited with error: %r", result)
        self._tasks = []

    async def __aenter__(self) -> WorkerPool:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _run_worker(self, index: int) -> None:
        backoff = self.poll_error_backoff_seconds
        while not self._stopping.is_set():
            try:
                job = await self.queue.dequeue(self.dequeue_timeout_seconds)
            except JobDecodeError as exc:
                logger.warning("discarded undecodable job worker=%s error=%s", index, exc)
                continue
            except QueueError as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.warning("dequeue failed worker=%s error=%s; retry in %.1fs", index, exc, sleep_for)
                await self._sleep_unless_stopping(sleep_for)
                backoff = sleep_for
                continue

            backoff = self.poll_error_backoff_seconds
            if job is None:
                continue
            try:
                outcome = await self.processor.process(job)
            except Exception:
                # Entry stays in the processing list until recovery.
                logger.exception("job processing crashed worker=%s link_id=%s", index, job.link_id)
                self.outcomes["crashed"] += 1
                continue
            self.outcomes[outcome.value] += 1

    async def _sleep_unless_stopping(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
