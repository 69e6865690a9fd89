from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from linkmeta.schemas.events import MetadataUpdatedData, MetadataUpdatedEvent
from linkmeta.schemas.metadata import Metadata
from linkmeta.services.repository import RepositoryError

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Raised when an event could not be handed to the channel backend."""


class ChannelLookup(Protocol):
    async def get_content_channel(self, content_id: str) -> str | None: ...


class EventPublisher:
    """Best-effort fan-out of metadata updates to the owning content's channel."""

    def __init__(
        self,
        client: aioredis.Redis,
        channels: ChannelLookup,
        *,
        publish_timeout_seconds: float = 2.0,
    ) -> None:
        self.client = client
        self.channels = channels
        self.publish_timeout_seconds = publish_timeout_seconds

    async def publish(self, content_id: str, link_id: str, metadata: Metadata) -> bool:
        try:
            channel = await self.channels.get_content_channel(content_id)
        except (RepositoryError, OSError) as exc:
            logger.warning(
                "channel lookup failed; skipping publish content_id=%s link_id=%s error=%s",
                content_id,
                link_id,
                exc,
            )
            return False
        if channel is None:
            logger.info("content has no live channel; skipping publish content_id=%s link_id=%s", content_id, link_id)
            return False

        event = MetadataUpdatedEvent(
            data=MetadataUpdatedData(content_id=content_id, link_id=link_id, metadata=metadata),
        )
        try:
            await self._send(channel, event)
        except PublishError as exc:
            logger.warning(
                "metadata event publish failed channel=%s content_id=%s link_id=%s error=%s",
                channel,
                content_id,
                link_id,
                exc,
            )
            return False

        logger.debug("metadata event published channel=%s link_id=%s", channel, link_id)
        return True

    async def _send(self, channel: str, event: MetadataUpdatedEvent) -> None:
        try:
            await asyncio.wait_for(
                self.client.publish(channel, event.to_wire()),
                timeout=self.publish_timeout_seconds,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise PublishError(f"publish to {channel} failed: {exc!r}") from exc
