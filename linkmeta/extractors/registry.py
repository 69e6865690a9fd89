from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
import logging

from linkmeta.core.config import get_settings
from linkmeta.core.urls import extract_host
from linkmeta.extractors.bandcamp import BandcampExtractor
from linkmeta.extractors.base import Extractor
from linkmeta.extractors.fetch import FetchError, PageFetcher, classify_fetch_error, resolve_host_addresses
from linkmeta.extractors.generic import GenericExtractor
from linkmeta.extractors.soundcloud import SoundCloudExtractor
from linkmeta.extractors.spotify import SpotifyExtractor
from linkmeta.extractors.youtube import YouTubeExtractor
from linkmeta.schemas.metadata import Metadata

logger = logging.getLogger(__name__)


def default_extractors() -> list[Extractor]:
    return [
        YouTubeExtractor(),
        SpotifyExtractor(),
        SoundCloudExtractor(),
        BandcampExtractor(),
    ]


class ExtractorRegistry:
    """Ordered provider strategies ending in the generic catch-all."""

    def __init__(
        self,
        fetcher: PageFetcher,
        extractors: Sequence[Extractor] | None = None,
        *,
        generic: Extractor | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._extractors = list(extractors) if extractors is not None else default_extractors()
        self._generic = generic or GenericExtractor()

    @property
    def extractors(self) -> list[Extractor]:
        return [*self._extractors, self._generic]

    def select(self, url: str) -> Extractor:
        for extractor in self._extractors:
            if extractor.matches(url):
                return extractor
        return self._generic

    async def resolve(self, url: str) -> Metadata:
        """Fetch and extract; transient fetch errors propagate for the caller to retry."""
        extractor = self.select(url)
        try:
            page = await self._fetcher.fetch(url)
        except FetchError as exc:
            if exc.transient:
                raise
            fallback = extractor.url_fallback(url)
            if fallback is None:
                raise
            logger.info(
                "page fetch failed; using url-derived metadata provider=%s domain=%s error_type=%s",
                extractor.name,
                extract_host(url),
                classify_fetch_error(exc),
            )
            return fallback
        return extractor.extract(page)

    def fallback_metadata(self, url: str) -> Metadata:
        return self.select(url).url_fallback(url) or Metadata()

    async def aclose(self) -> None:
        await self._fetcher.aclose()


def build_page_fetcher() -> PageFetcher:
    settings = get_settings()
    return PageFetcher(
        timeout_seconds=settings.fetch_timeout_seconds,
        max_bytes=settings.fetch_max_bytes,
        max_redirects=settings.fetch_max_redirects,
        user_agent=settings.fetch_user_agent,
        resolver=resolve_host_addresses if settings.block_private_addresses else None,
    )


@lru_cache
def get_registry() -> ExtractorRegistry:
    return ExtractorRegistry(build_page_fetcher())
