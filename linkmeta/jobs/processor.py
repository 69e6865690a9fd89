from __future__ import annotations

import asyncio
from enum import Enum
import logging
from typing import Protocol

from opentelemetry import trace

from linkmeta.core.config import Settings
from linkmeta.core.urls import extract_host
from linkmeta.extractors.fetch import FetchError, classify_fetch_error
from linkmeta.jobs.backoff import compute_retry_delay
from linkmeta.schemas.jobs import EnrichmentJob
from linkmeta.schemas.metadata import Metadata
from linkmeta.services.job_queue import JobQueue, QueueError
from linkmeta.services.repository import LinkState, PersistenceError, PersistOutcome, RepositoryError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    FALLBACK = "fallback"
    RETRY_SCHEDULED = "retry_scheduled"
    SKIPPED = "skipped"
    DROPPED = "dropped"


class MetadataResolver(Protocol):
    async def resolve(self, url: str) -> Metadata: ...

    def fallback_metadata(self, url: str) -> Metadata: ...


class MetadataStore(Protocol):
    async def get_link_metadata(self, link_id: str) -> LinkState | None: ...

    async def persist_link_metadata(
        self,
        link_id: str,
        metadata: Metadata,
        *,
        only_if_unset: bool = False,
    ) -> PersistOutcome: ...


class MetadataPublisher(Protocol):
    async def publish(self, content_id: str, link_id: str, metadata: Metadata) -> bool: ...


class _TransientFailure(Exception):
    pass


class JobProcessor:
    """Runs one job to a terminal queue action: ack, or requeue for a later attempt.

    ``process`` never raises. Every path ends with the entry either removed
    from the processing list or moved to the delayed set; the only exception
    is a queue backend failure during that final step, which leaves the entry
    in the processing list for recovery on the next start.
    """

    def __init__(
        self,
        queue: JobQueue,
        resolver: MetadataResolver,
        store: MetadataStore,
        publisher: MetadataPublisher,
        *,
        job_timeout_seconds: float = 30.0,
        job_max_attempts: int = 3,
        retry_base_seconds: float = 5.0,
        retry_max_seconds: float = 300.0,
        retry_jitter_ratio: float = 0.5,
        persist_max_attempts: int = 3,
        persist_retry_delay_seconds: float = 0.2,
    ) -> None:
        self.queue = queue
        self.resolver = resolver
        self.store = store
        self.publisher = publisher
        self.job_timeout_seconds = job_timeout_seconds
        self.job_max_attempts = max(0, job_max_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.retry_max_seconds = max(0.0, retry_max_seconds)
        self.retry_jitter_ratio = max(0.0, retry_jitter_ratio)
        self.persist_max_attempts = max(1, persist_max_attempts)
        self.persist_retry_delay_seconds = max(0.0, persist_retry_delay_seconds)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        queue: JobQueue,
        resolver: MetadataResolver,
        store: MetadataStore,
        publisher: MetadataPublisher,
    ) -> JobProcessor:
        return cls(
            queue,
            resolver,
            store,
            publisher,
            job_timeout_seconds=settings.job_timeout_seconds,
            job_max_attempts=settings.job_max_attempts,
            retry_base_seconds=settings.job_retry_base_seconds,
            retry_max_seconds=settings.job_retry_max_seconds,
            retry_jitter_ratio=settings.job_retry_jitter_ratio,
            persist_max_attempts=settings.persist_max_attempts,
            persist_retry_delay_seconds=settings.persist_retry_delay_seconds,
        )

    async def process(self, job: EnrichmentJob) -> JobOutcome:
        with tracer.start_as_current_span("worker.process_job") as span:
            span.set_attribute("job.link_id", job.link_id)
            span.set_attribute("job.content_id", job.content_id)
            span.set_attribute("job.attempt_count", job.attempt_count)
            logger.debug("processing job link_id=%s attempt=%s", job.link_id, job.attempt_count)
            outcome = await self._process(job)
            span.set_attribute("job.outcome", outcome.value)
            return outcome

    async def _process(self, job: EnrichmentJob) -> JobOutcome:
        try:
            state = await self.store.get_link_metadata(job.link_id)
        except RepositoryError as exc:
            logger.warning("link lookup failed; resolving anyway link_id=%s error=%s", job.link_id, exc)
        else:
            if state is None:
                logger.info("link no longer exists; skipping link_id=%s content_id=%s", job.link_id, job.content_id)
                return await self._ack(job, JobOutcome.SKIPPED)
            if state.has_metadata:
                logger.info("link already has metadata; skipping link_id=%s", job.link_id)
                return await self._ack(job, JobOutcome.SKIPPED)

        try:
            metadata = await self._resolve(job)
        except _TransientFailure as exc:
            return await self._handle_transient(job, exc.__cause__)
        except FetchError as exc:
            logger.info(
                "metadata fetch failed permanently link_id=%s domain=%s error_type=%s error=%s",
                job.link_id,
                extract_host(job.url),
                classify_fetch_error(exc),
                exc,
            )
            return await self._persist_fallback(job)
        except Exception:
            logger.exception("metadata extraction crashed link_id=%s domain=%s", job.link_id, extract_host(job.url))
            return await self._persist_fallback(job)

        if metadata.is_empty():
            # Nothing extracted; never let an empty record replace an existing one.
            logger.info("no metadata found; writing fallback link_id=%s domain=%s", job.link_id, extract_host(job.url))
            return await self._persist_fallback(job)

        outcome = await self._persist(job, metadata, only_if_unset=False)
        if outcome is None:
            return await self._ack(job, JobOutcome.DROPPED)
        if outcome is PersistOutcome.UPDATED:
            await self._publish(job, metadata)
        elif outcome is PersistOutcome.MISSING:
            logger.info("link deleted during processing link_id=%s content_id=%s", job.link_id, job.content_id)
            return await self._ack(job, JobOutcome.SKIPPED)
        return await self._ack(job, JobOutcome.COMPLETED)

    async def _resolve(self, job: EnrichmentJob) -> Metadata:
        try:
            return await asyncio.wait_for(self.resolver.resolve(job.url), timeout=self.job_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise _TransientFailure() from exc
        except FetchError as exc:
            if exc.transient:
                raise _TransientFailure() from exc
            raise

    async def _handle_transient(self, job: EnrichmentJob, cause: BaseException | None) -> JobOutcome:
        attempt = job.attempt_count + 1
        if job.attempt_count >= self.job_max_attempts:
            logger.warning(
                "metadata fetch retries exhausted link_id=%s attempts=%s error_type=%s",
                job.link_id,
                attempt,
                classify_fetch_error(cause),
            )
            return await self._persist_fallback(job)

        delay = compute_retry_delay(
            attempt,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
            jitter_ratio=self.retry_jitter_ratio,
        )
        try:
            await self.queue.requeue(job, delay)
        except QueueError:
            logger.exception("requeue failed; job left in processing list link_id=%s", job.link_id)
            return JobOutcome.DROPPED
        logger.warning(
            "metadata fetch failed transiently; retry scheduled link_id=%s attempt=%s delay=%.2fs error_type=%s",
            job.link_id,
            attempt,
            delay,
            classify_fetch_error(cause),
        )
        return JobOutcome.RETRY_SCHEDULED

    async def _persist_fallback(self, job: EnrichmentJob) -> JobOutcome:
        metadata = self.resolver.fallback_metadata(job.url)
        outcome = await self._persist(job, metadata, only_if_unset=True)
        if outcome is None:
            return await self._ack(job, JobOutcome.DROPPED)
        if outcome is PersistOutcome.UPDATED and not metadata.is_empty():
            await self._publish(job, metadata)
        return await self._ack(job, JobOutcome.FALLBACK)

    async def _publish(self, job: EnrichmentJob, metadata: Metadata) -> None:
        try:
            await self.publisher.publish(job.content_id, job.link_id, metadata)
        except Exception:
            logger.exception("metadata publish crashed link_id=%s content_id=%s", job.link_id, job.content_id)

    async def _persist(self, job: EnrichmentJob, metadata: Metadata, *, only_if_unset: bool) -> PersistOutcome | None:
        for attempt in range(1, self.persist_max_attempts + 1):
            try:
                return await self.store.persist_link_metadata(job.link_id, metadata, only_if_unset=only_if_unset)
            except PersistenceError as exc:
                if attempt >= self.persist_max_attempts:
                    logger.error(
                        "failed to persist link metadata; dropping job link_id=%s attempts=%s error=%s",
                        job.link_id,
                        attempt,
                        exc,
                        exc_info=True,
                    )
                    return None
                logger.warning("persist failed; retrying link_id=%s attempt=%s error=%s", job.link_id, attempt, exc)
                await asyncio.sleep(self.persist_retry_delay_seconds)
        return None

    async def _ack(self, job: EnrichmentJob, outcome: JobOutcome) -> JobOutcome:
        try:
            await self.queue.ack(job)
        except QueueError:
            logger.exception("ack failed; job left in processing list link_id=%s", job.link_id)
        return outcome
