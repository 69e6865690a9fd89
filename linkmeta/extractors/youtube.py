from __future__ import annotations

from collections.abc import Sequence
from urllib.parse import parse_qs, urlparse

from linkmeta.core.urls import extract_host, host_matches
from linkmeta.extractors.base import Extractor, Tier, build_embed, path_segments
from linkmeta.extractors.html import PageDocument
from linkmeta.schemas.metadata import Metadata

YOUTUBE_EMBED_BASE_URL = "https://www.youtube-nocookie.com/embed/"
YOUTUBE_VIDEO_HEIGHT = 315
YOUTUBE_SITE_NAME = "YouTube"
_PATH_PREFIXES = {"embed", "shorts", "v", "live"}


def parse_youtube_video_id(url: str) -> str | None:
    host = extract_host(url)
    if host_matches(host, "youtu.be"):
        segments = path_segments(url)
        return segments[0].strip() if segments else None
    if not host_matches(host, "youtube.com"):
        return None

    segments = path_segments(url)
    if not segments:
        return None
    if segments[0] == "watch":
        values = parse_qs(urlparse(url).query).get("v") or []
        video_id = values[0].strip() if values else ""
        return video_id or None
    if segments[0] in _PATH_PREFIXES and len(segments) > 1:
        return segments[1].strip() or None
    return None


class YouTubeExtractor(Extractor):
    name = "youtube"
    domains = ("youtube.com", "youtu.be")

    def tiers(self) -> Sequence[Tier]:
        return (self._from_link_url, self._from_canonical_url)

    def url_fallback(self, url: str) -> Metadata | None:
        return _metadata_for_url(url)

    def _from_link_url(self, document: PageDocument) -> Metadata | None:
        return _metadata_for_url(document.page.url) or _metadata_for_url(document.page.final_url)

    def _from_canonical_url(self, document: PageDocument) -> Metadata | None:
        canonical = document.meta.get("og:url") or document.canonical_link()
        if not canonical:
            return None
        return _metadata_for_url(canonical)


def _metadata_for_url(url: str) -> Metadata | None:
    video_id = parse_youtube_video_id(url)
    if not video_id:
        return None
    embed = build_embed(
        "youtube",
        f"{YOUTUBE_EMBED_BASE_URL}{video_id}",
        height=YOUTUBE_VIDEO_HEIGHT,
        kind="video",
    )
    return Metadata(site_name=YOUTUBE_SITE_NAME, embed=embed)
