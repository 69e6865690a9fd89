from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from functools import lru_cache
import heapq
import itertools
import logging
import time
from typing import Any, Protocol

from pydantic import ValidationError
from redis import asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from linkmeta.core.config import Settings, get_settings
from linkmeta.schemas.jobs import EnrichmentJob, QueueStatsOut
from linkmeta.services.redis_client import get_redis

logger = logging.getLogger(__name__)

PROMOTE_BATCH_SIZE = 100


class QueueError(Exception):
    """Base queue error."""


class EnqueueError(QueueError):
    """Raised when a job could not be durably appended within the enqueue bound."""


class JobDecodeError(QueueError):
    """Raised when a delivered entry is not a valid job payload; the entry is discarded."""


class JobQueue(Protocol):
    async def enqueue(self, job: EnrichmentJob) -> None: ...

    async def dequeue(self, timeout: float) -> EnrichmentJob | None: ...

    async def ack(self, job: EnrichmentJob) -> None: ...

    async def requeue(self, job: EnrichmentJob, backoff_seconds: float) -> EnrichmentJob: ...

    async def recover_processing(self) -> int: ...

    async def stats(self) -> QueueStatsOut: ...


def _decode(raw: Any) -> str:
    return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)


class RedisJobQueue:
    """At-least-once queue on Redis lists.

    Pending jobs live in ``key``; a pop atomically moves the entry to
    ``key:processing`` where it stays until acked. Retries wait in the
    ``key:delayed`` sorted set scored by their ready-at timestamp and are
    promoted back to pending by whichever consumer pops next.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        key: str = "linkmeta:metadata_queue",
        enqueue_timeout_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.pending_key = key
        self.processing_key = f"{key}:processing"
        self.delayed_key = f"{key}:delayed"
        self.enqueue_timeout_seconds = enqueue_timeout_seconds
        self._clock = clock

    async def enqueue(self, job: EnrichmentJob) -> None:
        try:
            await asyncio.wait_for(
                self.client.lpush(self.pending_key, job.to_payload()),
                timeout=self.enqueue_timeout_seconds,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise EnqueueError(f"enqueue failed for link_id={job.link_id}: {exc!r}") from exc

    async def dequeue(self, timeout: float) -> EnrichmentJob | None:
        try:
            await self._promote_due()
            raw = await self.client.blmove(
                self.pending_key,
                self.processing_key,
                timeout,
                src="RIGHT",
                dest="LEFT",
            )
        except RedisError as exc:
            raise QueueError(f"dequeue failed: {exc!r}") from exc
        if raw is None:
            return None

        payload = _decode(raw)
        try:
            return EnrichmentJob.from_payload(payload)
        except ValidationError as exc:
            try:
                await self.client.lrem(self.processing_key, 1, payload)
            except RedisError as redis_exc:
                raise QueueError(f"discarding invalid payload failed: {redis_exc!r}") from redis_exc
            raise JobDecodeError(f"invalid job payload discarded: {exc}") from exc

    async def ack(self, job: EnrichmentJob) -> None:
        try:
            await self.client.lrem(self.processing_key, 1, job.receipt)
        except RedisError as exc:
            raise QueueError(f"ack failed for link_id={job.link_id}: {exc!r}") from exc

    async def requeue(self, job: EnrichmentJob, backoff_seconds: float) -> EnrichmentJob:
        retry = job.next_attempt()
        ready_at = self._clock() + max(0.0, backoff_seconds)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zadd(self.delayed_key, {retry.to_payload(): ready_at})
                pipe.lrem(self.processing_key, 1, job.receipt)
                await pipe.execute()
        except RedisError as exc:
            raise QueueError(f"requeue failed for link_id={job.link_id}: {exc!r}") from exc
        return retry

    async def recover_processing(self) -> int:
        recovered = 0
        # Newest first onto the consumer end, so the oldest entry is redelivered first.
        try:
            while await self.client.lmove(self.processing_key, self.pending_key, "LEFT", "RIGHT") is not None:
                recovered += 1
        except RedisError as exc:
            raise QueueError(f"processing recovery failed: {exc!r}") from exc
        return recovered

    async def stats(self) -> QueueStatsOut:
        try:
            pending = await self.client.llen(self.pending_key)
            delayed = await self.client.zcard(self.delayed_key)
            processing = await self.client.llen(self.processing_key)
        except RedisError as exc:
            raise QueueError(f"stats failed: {exc!r}") from exc
        return QueueStatsOut(pending=int(pending), delayed=int(delayed), processing=int(processing))

    async def _promote_due(self) -> int:
        due = await self.client.zrangebyscore(
            self.delayed_key,
            "-inf",
            self._clock(),
            start=0,
            num=PROMOTE_BATCH_SIZE,
        )
        promoted = 0
        for raw in due:
            if await self._promote_one(raw):
                promoted += 1
        return promoted

    async def _promote_one(self, raw: str) -> bool:
        # ZREM and LPUSH commit together; a concurrent change to the delayed set
        # aborts the transaction and the entry is retried on the next poll.
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.delayed_key)
                if await pipe.zscore(self.delayed_key, raw) is None:
                    return False
                pipe.multi()
                pipe.zrem(self.delayed_key, raw)
                pipe.lpush(self.pending_key, raw)
                await pipe.execute()
            except WatchError:
                return False
        return True


class InMemoryJobQueue:
    """Single-process queue with the same contract, for local runs and tests."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._pending: deque[str] = deque()
        self._processing: list[str] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._condition = asyncio.Condition()
        self._clock = clock

    async def enqueue(self, job: EnrichmentJob) -> None:
        async with self._condition:
            self._pending.appendleft(job.to_payload())
            self._condition.notify()

    async def dequeue(self, timeout: float) -> EnrichmentJob | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        async with self._condition:
            while True:
                self._promote_due()
                if self._pending:
                    payload = self._pending.pop()
                    self._processing.insert(0, payload)
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                if self._delayed:
                    remaining = min(remaining, max(0.0, self._delayed[0][0] - self._clock()))
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass

        try:
            return EnrichmentJob.from_payload(payload)
        except ValidationError as exc:
            self._remove_processing(payload)
            raise JobDecodeError(f"invalid job payload discarded: {exc}") from exc

    async def ack(self, job: EnrichmentJob) -> None:
        self._remove_processing(job.receipt)

    async def requeue(self, job: EnrichmentJob, backoff_seconds: float) -> EnrichmentJob:
        retry = job.next_attempt()
        async with self._condition:
            ready_at = self._clock() + max(0.0, backoff_seconds)
            heapq.heappush(self._delayed, (ready_at, next(self._sequence), retry.to_payload()))
            self._remove_processing(job.receipt)
            self._condition.notify()
        return retry

    async def recover_processing(self) -> int:
        async with self._condition:
            recovered = len(self._processing)
            while self._processing:
                self._pending.append(self._processing.pop(0))
            self._condition.notify_all()
        return recovered

    async def stats(self) -> QueueStatsOut:
        return QueueStatsOut(
            pending=len(self._pending),
            delayed=len(self._delayed),
            processing=len(self._processing),
        )

    def push_raw(self, payload: str) -> None:
        self._pending.appendleft(payload)

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, payload = heapq.heappop(self._delayed)
            self._pending.appendleft(payload)

    def _remove_processing(self, payload: str) -> None:
        try:
            self._processing.remove(payload)
        except ValueError:
            logger.debug("ack for job not in processing list; already acked")


def build_job_queue(settings: Settings, client: aioredis.Redis | None = None) -> JobQueue:
    if settings.queue_backend == "memory":
        return InMemoryJobQueue()
    return RedisJobQueue(
        client if client is not None else get_redis(),
        key=settings.queue_key,
        enqueue_timeout_seconds=settings.enqueue_timeout_seconds,
    )


@lru_cache
def get_job_queue() -> JobQueue:
    return build_job_queue(get_settings())
