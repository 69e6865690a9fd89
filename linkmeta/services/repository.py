from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
import json
import logging
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from linkmeta.core.config import get_settings
from linkmeta.schemas.metadata import Metadata

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class PersistenceError(RepositoryError):
    """Raised when a metadata write could not be applied."""


class PersistOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    MISSING = "missing"


@dataclass(slots=True)
class LinkState:
    link_id: str
    content_id: str
    url: str
    metadata: dict[str, Any] | None

    @property
    def has_metadata(self) -> bool:
        return bool(self.metadata)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_link_metadata(self, link_id: str) -> LinkState | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select id::text as link_id, post_id::text as content_id, url, metadata
                from links
                where id = $1::uuid
                """,
                link_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryError(f"link lookup failed: {exc!r}") from exc
        if row is None:
            return None
        metadata = row["metadata"]
        return LinkState(
            link_id=row["link_id"],
            content_id=row["content_id"],
            url=row["url"],
            metadata=None if metadata is None else self._coerce_json_dict(metadata),
        )

    async def persist_link_metadata(
        self,
        link_id: str,
        metadata: Metadata,
        *,
        only_if_unset: bool = False,
    ) -> PersistOutcome:
        """Write ``metadata`` onto an existing link row.

        A vanished row yields ``MISSING`` rather than an error. With
        ``only_if_unset`` the write lands only while the column is still null,
        which is how fallback records avoid clobbering a real result.
        """
        if metadata is None:
            raise PersistenceError("refusing to persist null metadata")

        try:
            pool = await self._get_pool()
            row = await pool.fetchrow(
                """
                with target as (
                  select id from links where id = $2::uuid
                ),
                updated as (
                  update links
                  set metadata = $1::jsonb,
                      updated_at = now()
                  where id = $2::uuid
                    and ($3::boolean = false or metadata is null)
                  returning id
                )
                select
                  (select count(*) from target) as found,
                  (select count(*) from updated) as changed
                """,
                json.dumps(metadata.to_record()),
                link_id,
                only_if_unset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return PersistOutcome.MISSING
        except RepositoryUnavailableError as exc:
            raise PersistenceError(str(exc)) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise PersistenceError(f"persist link metadata failed: {exc!r}") from exc

        if row is None or not row["found"]:
            return PersistOutcome.MISSING
        if not row["changed"]:
            return PersistOutcome.UNCHANGED
        return PersistOutcome.UPDATED

    async def get_content_channel(self, content_id: str) -> str | None:
        pool = await self._get_pool()
        try:
            section_id = await pool.fetchval(
                """
                select section_id::text
                from posts
                where id = $1::uuid
                  and deleted_at is null
                """,
                content_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RepositoryError(f"channel lookup failed: {exc!r}") from exc
        if not section_id:
            return None
        return f"section:{section_id}"

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LM_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
