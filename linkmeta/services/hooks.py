from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging

from linkmeta.core.urls import is_internal_upload_url
from linkmeta.schemas.jobs import EnrichmentJob
from linkmeta.services.job_queue import EnqueueError, JobQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LinkRef:
    link_id: str
    url: str


async def enqueue_link_metadata_jobs(
    queue: JobQueue,
    content_id: str,
    links: Iterable[LinkRef],
    *,
    enabled: bool = True,
) -> int:
    """Queue one enrichment job per freshly written link.

    Called from the content-creation path after the links are committed.
    Queue failures are logged and swallowed so content creation never fails
    on account of enrichment.
    """
    if not enabled:
        return 0

    enqueued = 0
    for link in links:
        url = (link.url or "").strip()
        if not url or is_internal_upload_url(url):
            continue
        job = EnrichmentJob(content_id=content_id, link_id=link.link_id, url=url)
        try:
            await queue.enqueue(job)
        except EnqueueError as exc:
            logger.warning(
                "failed to enqueue metadata job content_id=%s link_id=%s error=%s",
                content_id,
                link.link_id,
                exc,
            )
            continue
        enqueued += 1
    return enqueued
