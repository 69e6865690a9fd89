from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError, WatchError

from linkmeta.extractors.fetch import FetchedPage
from linkmeta.schemas.metadata import Metadata
from linkmeta.services.repository import LinkState, PersistenceError, PersistOutcome


def html_page(url: str, body: str, *, final_url: str | None = None) -> FetchedPage:
    return FetchedPage(
        url=url,
        final_url=final_url or url,
        status_code=200,
        content_type="text/html; charset=utf-8",
        body=body.encode("utf-8"),
    )


class FakeRedis:
    """In-process stand-in for the handful of redis commands the queue and publisher use."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.published: list[tuple[str, str]] = []
        self.versions: dict[str, int] = {}
        self.fail = False
        self.fail_transactions = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def lpush(self, key: str, *values: str) -> int:
        self._check()
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def blmove(self, first_list: str, second_list: str, timeout: float, src: str = "LEFT", dest: str = "RIGHT"):
        self._check()
        moved = self._move(first_list, second_list, src, dest)
        if moved is None and timeout:
            await asyncio.sleep(min(timeout, 0.01))
        return moved

    async def lmove(self, first_list: str, second_list: str, src: str = "LEFT", dest: str = "RIGHT"):
        self._check()
        return self._move(first_list, second_list, src, dest)

    async def lrem(self, key: str, count: int, value: str) -> int:
        self._check()
        items = self.lists.get(key, [])
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def llen(self, key: str) -> int:
        self._check()
        return len(self.lists.get(key, []))

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)
        self._touch(key)
        return len(mapping)

    async def zrem(self, key: str, *values: str) -> int:
        self._check()
        members = self.zsets.get(key, {})
        removed = sum(1 for value in values if members.pop(value, None) is not None)
        if removed:
            self._touch(key)
        return removed

    async def zscore(self, key: str, value: str) -> float | None:
        self._check()
        return self.zsets.get(key, {}).get(value)

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self.zsets.get(key, {}))

    async def zrangebyscore(self, key: str, min: Any, max: float, start: int | None = None, num: int | None = None):
        self._check()
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        due = [member for member, score in members if score <= max]
        if num is not None:
            due = due[(start or 0) : (start or 0) + num]
        return due

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 1

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True

    def _touch(self, key: str) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def _move(self, first_list: str, second_list: str, src: str, dest: str) -> str | None:
        source = self.lists.get(first_list, [])
        if not source:
            return None
        value = source.pop() if src == "RIGHT" else source.pop(0)
        target = self.lists.setdefault(second_list, [])
        if dest == "LEFT":
            target.insert(0, value)
        else:
            target.append(value)
        return value


class FakePipeline:
    """MULTI/EXEC with optimistic WATCH: queued commands apply all at once or not at all."""

    def __init__(self, redis: FakeRedis) -> None:
        self.redis = redis
        self.commands: list[Callable[[], Any]] = []
        self.watched: dict[str, int] = {}

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.commands = []
        self.watched = {}

    async def watch(self, *keys: str) -> None:
        self.redis._check()
        for key in keys:
            self.watched[key] = self.redis.versions.get(key, 0)

    async def zscore(self, key: str, value: str) -> float | None:
        return await self.redis.zscore(key, value)

    def multi(self) -> None:
        self.commands = []

    def zadd(self, key: str, mapping: dict[str, float]) -> FakePipeline:
        self.commands.append(lambda: self.redis.zadd(key, mapping))
        return self

    def zrem(self, key: str, *values: str) -> FakePipeline:
        self.commands.append(lambda: self.redis.zrem(key, *values))
        return self

    def lpush(self, key: str, *values: str) -> FakePipeline:
        self.commands.append(lambda: self.redis.lpush(key, *values))
        return self

    def lrem(self, key: str, count: int, value: str) -> FakePipeline:
        self.commands.append(lambda: self.redis.lrem(key, count, value))
        return self

    async def execute(self) -> list[Any]:
        self.redis._check()
        if self.redis.fail_transactions:
            raise RedisConnectionError("connection lost during EXEC")
        for key, version in self.watched.items():
            if self.redis.versions.get(key, 0) != version:
                raise WatchError(f"watched key changed: {key}")
        return [await command() for command in self.commands]


class FakeRepository:
    def __init__(self) -> None:
        self.links: dict[str, LinkState] = {}
        self.channels: dict[str, str] = {}
        self.writes: list[tuple[str, dict[str, Any], bool]] = []
        self.persist_failures = 0

    def add_link(self, link_id: str, content_id: str, url: str, metadata: dict[str, Any] | None = None) -> None:
        self.links[link_id] = LinkState(link_id=link_id, content_id=content_id, url=url, metadata=metadata)
        self.channels.setdefault(content_id, f"section:{content_id}-section")

    def delete_content(self, content_id: str) -> None:
        self.links = {key: link for key, link in self.links.items() if link.content_id != content_id}
        self.channels.pop(content_id, None)

    async def get_link_metadata(self, link_id: str) -> LinkState | None:
        return self.links.get(link_id)

    async def persist_link_metadata(
        self,
        link_id: str,
        metadata: Metadata,
        *,
        only_if_unset: bool = False,
    ) -> PersistOutcome:
        if self.persist_failures > 0:
            self.persist_failures -= 1
            raise PersistenceError("database unavailable")
        link = self.links.get(link_id)
        if link is None:
            return PersistOutcome.MISSING
        if only_if_unset and link.metadata is not None:
            return PersistOutcome.UNCHANGED
        record = metadata.to_record()
        link.metadata = record
        self.writes.append((link_id, record, only_if_unset))
        return PersistOutcome.UPDATED

    async def get_content_channel(self, content_id: str) -> str | None:
        return self.channels.get(content_id)


class FakePublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, Metadata]] = []

    async def publish(self, content_id: str, link_id: str, metadata: Metadata) -> bool:
        self.events.append((content_id, link_id, metadata))
        return True


class ScriptedResolver:
    """Returns (or raises) queued results per URL, then falls back to ``default``."""

    def __init__(self, default: Metadata | BaseException | None = None) -> None:
        self.default = default if default is not None else Metadata(title="Resolved")
        self.scripts: dict[str, list[Metadata | BaseException]] = {}
        self.calls: list[str] = []
        self.fallbacks: dict[str, Metadata] = {}

    def script(self, url: str, *results: Metadata | BaseException) -> None:
        self.scripts.setdefault(url, []).extend(results)

    async def resolve(self, url: str) -> Metadata:
        self.calls.append(url)
        queued = self.scripts.get(url)
        result = queued.pop(0) if queued else self.default
        if isinstance(result, BaseException):
            raise result
        return result

    def fallback_metadata(self, url: str) -> Metadata:
        return self.fallbacks.get(url, Metadata())
