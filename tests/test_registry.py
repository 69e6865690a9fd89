from __future__ import annotations

import asyncio

import httpx
import pytest

from linkmeta.extractors.fetch import FetchHTTPError, PageFetcher
from linkmeta.extractors.registry import ExtractorRegistry
from linkmeta.schemas.metadata import Metadata


def _registry(handler) -> tuple[ExtractorRegistry, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return ExtractorRegistry(PageFetcher(client=client)), client


def test_select_picks_provider_by_host_and_defaults_to_generic() -> None:
    registry = ExtractorRegistry(PageFetcher())

    assert registry.select("https://youtu.be/abc").name == "youtube"
    assert registry.select("https://www.youtube.com/watch?v=abc").name == "youtube"
    assert registry.select("https://open.spotify.com/track/abc").name == "spotify"
    assert registry.select("https://soundcloud.com/a/b").name == "soundcloud"
    assert registry.select("https://artist.bandcamp.com/album/x").name == "bandcamp"
    assert registry.select("https://example.com/article").name == "generic"
    assert registry.select("not a url").name == "generic"
    assert registry.extractors[-1].name == "generic"


def test_select_is_deterministic() -> None:
    registry = ExtractorRegistry(PageFetcher())
    names = {registry.select("https://artist.bandcamp.com/track/y").name for _ in range(20)}
    assert names == {"bandcamp"}


def test_resolve_extracts_from_fetched_page() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/html"},
            content=b'<html><head><meta property="og:title" content="Article"></head></html>',
            request=request,
        )

    async def run() -> Metadata:
        registry, client = _registry(handler)
        async with client:
            return await registry.resolve("https://example.com/article")

    metadata = asyncio.run(run())
    assert metadata.title == "Article"
    assert metadata.embed is None


def test_resolve_propagates_transient_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    async def run() -> Metadata:
        registry, client = _registry(handler)
        async with client:
            return await registry.resolve("https://open.spotify.com/track/abc")

    with pytest.raises(FetchHTTPError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.transient


def test_resolve_uses_url_fallback_on_permanent_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, request=request)

    async def run() -> Metadata:
        registry, client = _registry(handler)
        async with client:
            return await registry.resolve("https://open.spotify.com/track/abc")

    metadata = asyncio.run(run())
    assert metadata.embed is not None
    assert metadata.embed.embed_url == "https://open.spotify.com/embed/track/abc"


def test_resolve_raises_permanent_error_without_url_fallback() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, request=request)

    async def run() -> Metadata:
        registry, client = _registry(handler)
        async with client:
            return await registry.resolve("https://example.com/gone")

    with pytest.raises(FetchHTTPError) as exc_info:
        asyncio.run(run())
    assert not exc_info.value.transient


def test_fallback_metadata_is_empty_for_generic_links() -> None:
    registry = ExtractorRegistry(PageFetcher())
    assert registry.fallback_metadata("https://example.com/x").is_empty()
    assert registry.fallback_metadata("https://youtu.be/abc").embed is not None
