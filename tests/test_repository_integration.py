from __future__ import annotations

import asyncio
import os
import uuid

import asyncpg  # type: ignore[import-untyped]
import pytest

from linkmeta.schemas.metadata import Metadata
from linkmeta.services.publisher import EventPublisher
from linkmeta.services.repository import PersistenceError, PersistOutcome, PostgresRepository, RepositoryError
from support import FakeRedis

SCHEMA_SQL = """
create table if not exists posts (
  id uuid primary key,
  section_id uuid not null,
  deleted_at timestamptz
);
create table if not exists links (
  id uuid primary key,
  post_id uuid not null references posts(id) on delete cascade,
  url text not null,
  metadata jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
"""


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("LM_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require LM_DATABASE_URL or DATABASE_URL")
    return url


async def _seed(database_url: str, *, deleted: bool = False) -> tuple[str, str, str]:
    post_id, section_id, link_id = str(uuid.uuid4()), str(uuid.uuid4()), str(uuid.uuid4())
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_SQL)
        await conn.execute(
            """
            insert into posts (id, section_id, deleted_at)
            values ($1::uuid, $2::uuid, case when $3::boolean then now() end)
            """,
            post_id,
            section_id,
            deleted,
        )
        await conn.execute(
            "insert into links (id, post_id, url) values ($1::uuid, $2::uuid, 'https://example.com/a')",
            link_id,
            post_id,
        )
    finally:
        await conn.close()
    return post_id, section_id, link_id


def test_persist_and_read_back_link_metadata(database_url: str) -> None:
    async def run() -> None:
        post_id, section_id, link_id = await _seed(database_url)
        repository = PostgresRepository(database_url, 1, 2)
        try:
            state = await repository.get_link_metadata(link_id)
            assert state is not None
            assert state.content_id == post_id
            assert state.metadata is None

            outcome = await repository.persist_link_metadata(link_id, Metadata(title="A"))
            assert outcome is PersistOutcome.UPDATED
            state = await repository.get_link_metadata(link_id)
            assert state is not None and state.metadata == {"title": "A"}

            fallback = await repository.persist_link_metadata(link_id, Metadata(), only_if_unset=True)
            assert fallback is PersistOutcome.UNCHANGED
            state = await repository.get_link_metadata(link_id)
            assert state is not None and state.metadata == {"title": "A"}

            assert await repository.get_content_channel(post_id) == f"section:{section_id}"
        finally:
            await repository.close()

    asyncio.run(run())


def test_persist_for_missing_link_is_noop(database_url: str) -> None:
    async def run() -> None:
        repository = PostgresRepository(database_url, 1, 2)
        try:
            missing = str(uuid.uuid4())
            assert await repository.persist_link_metadata(missing, Metadata(title="A")) is PersistOutcome.MISSING
            assert await repository.persist_link_metadata("not-a-uuid", Metadata(title="A")) is PersistOutcome.MISSING
            assert await repository.get_link_metadata(missing) is None
        finally:
            await repository.close()

    asyncio.run(run())


def test_deleted_content_has_no_channel(database_url: str) -> None:
    async def run() -> None:
        post_id, _, _ = await _seed(database_url, deleted=True)
        repository = PostgresRepository(database_url, 1, 2)
        try:
            assert await repository.get_content_channel(post_id) is None
        finally:
            await repository.close()

    asyncio.run(run())


def test_persist_without_database_raises_persistence_error() -> None:
    repository = PostgresRepository(None, 1, 2)
    with pytest.raises(PersistenceError):
        asyncio.run(repository.persist_link_metadata("l1", Metadata(title="A")))


class DroppedConnectionPool:
    async def fetchrow(self, *args: object) -> None:
        raise asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed in the middle of operation")

    async def fetchval(self, *args: object) -> None:
        raise asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed in the middle of operation")


def test_lookup_connection_faults_raise_repository_error() -> None:
    repository = PostgresRepository("postgresql://unused", 1, 2)
    repository._pool = DroppedConnectionPool()
    link_id = str(uuid.uuid4())

    with pytest.raises(RepositoryError):
        asyncio.run(repository.get_link_metadata(link_id))
    with pytest.raises(RepositoryError):
        asyncio.run(repository.get_content_channel(link_id))
    with pytest.raises(PersistenceError):
        asyncio.run(repository.persist_link_metadata(link_id, Metadata(title="A")))


def test_channel_lookup_fault_skips_publish() -> None:
    repository = PostgresRepository("postgresql://unused", 1, 2)
    repository._pool = DroppedConnectionPool()
    redis = FakeRedis()
    publisher = EventPublisher(redis, repository)

    assert asyncio.run(publisher.publish(str(uuid.uuid4()), "l1", Metadata(title="A"))) is False
    assert redis.published == []
