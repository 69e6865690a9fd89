from __future__ import annotations

import asyncio
import logging

from linkmeta.jobs.pool import WorkerPool
from linkmeta.jobs.processor import JobOutcome, JobProcessor
from linkmeta.schemas.jobs import EnrichmentJob
from linkmeta.schemas.metadata import Metadata
from linkmeta.services.job_queue import InMemoryJobQueue, RedisJobQueue
from linkmeta.services.repository import LinkState
from support import FakePublisher, FakeRedis, FakeRepository, ScriptedResolver


class SlowResolver(ScriptedResolver):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.active = 0
        self.peak = 0

    async def resolve(self, url: str) -> Metadata:
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return Metadata(title=url.rsplit("/", 1)[-1])


def _seed(repository: FakeRepository, count: int) -> list[EnrichmentJob]:
    jobs = []
    for index in range(count):
        link_id = f"l{index}"
        url = f"https://example.com/{link_id}"
        repository.add_link(link_id, "post-1", url)
        jobs.append(EnrichmentJob(content_id="post-1", link_id=link_id, url=url))
    return jobs


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_pool_processes_every_job_concurrently() -> None:
    queue = InMemoryJobQueue()
    repository = FakeRepository()
    publisher = FakePublisher()
    resolver = SlowResolver(0.05)
    processor = JobProcessor(queue, resolver, repository, publisher)
    pool = WorkerPool(queue, processor, 3, dequeue_timeout_seconds=0.05)
    jobs = _seed(repository, 10)

    async def run() -> None:
        async with pool:
            assert pool.running
            for job in jobs:
                await queue.enqueue(job)
            await _wait_until(lambda: pool.outcomes[JobOutcome.COMPLETED.value] == 10)
        assert not pool.running

    asyncio.run(run())
    assert sorted(resolver.calls) == sorted(job.url for job in jobs)
    assert all(link.metadata for link in repository.links.values())
    assert len(publisher.events) == 10
    assert 1 < resolver.peak <= 3


def test_pool_finishes_in_flight_job_on_stop() -> None:
    queue = InMemoryJobQueue()
    repository = FakeRepository()
    resolver = SlowResolver(0.2)
    processor = JobProcessor(queue, resolver, repository, FakePublisher())
    pool = WorkerPool(queue, processor, 1, dequeue_timeout_seconds=0.05, shutdown_grace_seconds=5.0)
    (job,) = _seed(repository, 1)

    async def run() -> None:
        await pool.start()
        await queue.enqueue(job)
        await _wait_until(lambda: resolver.active == 1)
        await pool.stop()

    asyncio.run(run())
    assert pool.outcomes == {"completed": 1}
    assert repository.links["l0"].metadata == {"title": "l0"}


def test_pool_cancels_workers_after_grace_period() -> None:
    queue = InMemoryJobQueue()
    repository = FakeRepository()
    resolver = SlowResolver(30.0)
    processor = JobProcessor(queue, resolver, repository, FakePublisher(), job_timeout_seconds=60.0)
    pool = WorkerPool(queue, processor, 1, dequeue_timeout_seconds=0.05, shutdown_grace_seconds=0.05)
    (job,) = _seed(repository, 1)

    async def run() -> int:
        await pool.start()
        await queue.enqueue(job)
        await _wait_until(lambda: resolver.active == 1)
        await pool.stop()
        return (await queue.stats()).processing

    # The interrupted job stays unacknowledged for recovery.
    assert asyncio.run(run()) == 1
    assert repository.links["l0"].metadata is None


def test_pool_backs_off_and_recovers_from_queue_outage() -> None:
    redis = FakeRedis()
    queue = RedisJobQueue(redis, key="test:pool")
    repository = FakeRepository()
    processor = JobProcessor(queue, ScriptedResolver(), repository, FakePublisher())
    pool = WorkerPool(
        queue,
        processor,
        2,
        dequeue_timeout_seconds=0.01,
        poll_error_backoff_seconds=0.01,
        max_backoff_seconds=0.05,
    )
    (job,) = _seed(repository, 1)

    async def run() -> None:
        redis.fail = True
        await pool.start()
        await asyncio.sleep(0.1)
        assert pool.running
        redis.fail = False
        await queue.enqueue(job)
        await _wait_until(lambda: pool.outcomes["completed"] == 1)
        await pool.stop()

    asyncio.run(run())
    assert repository.links["l0"].metadata == {"title": "Resolved"}


def test_pool_worker_survives_job_that_crashes(caplog) -> None:
    class FlakyRepository(FakeRepository):
        def __init__(self) -> None:
            super().__init__()
            self.lookups = 0

        async def get_link_metadata(self, link_id: str) -> LinkState | None:
            self.lookups += 1
            if self.lookups == 1:
                raise ConnectionResetError("connection does not exist")
            return await super().get_link_metadata(link_id)

    queue = InMemoryJobQueue()
    repository = FlakyRepository()
    processor = JobProcessor(queue, ScriptedResolver(), repository, FakePublisher())
    pool = WorkerPool(queue, processor, 1, dequeue_timeout_seconds=0.01)
    jobs = _seed(repository, 3)

    async def run() -> int:
        for job in jobs:
            await queue.enqueue(job)
        async with pool:
            await _wait_until(lambda: pool.outcomes["completed"] == 2)
            assert pool.running
        return (await queue.stats()).processing

    with caplog.at_level(logging.ERROR, logger="linkmeta.jobs.pool"):
        # The crashed job stays unacknowledged for recovery.
        assert asyncio.run(run()) == 1

    assert pool.outcomes == {"crashed": 1, "completed": 2}
    assert any("job processing crashed" in record.getMessage() for record in caplog.records)
    assert repository.links["l0"].metadata is None
    assert repository.links["l1"].metadata == {"title": "Resolved"}
