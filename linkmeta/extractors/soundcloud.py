from __future__ import annotations

from collections.abc import Sequence
from urllib.parse import quote

from linkmeta.core.urls import extract_host, host_matches, normalize_url
from linkmeta.extractors.base import Extractor, Tier, build_embed, is_allowed_embed_url, path_segments
from linkmeta.extractors.html import PageDocument
from linkmeta.schemas.metadata import Metadata

SOUNDCLOUD_PLAYER_URL = "https://w.soundcloud.com/player/?url="
SOUNDCLOUD_TRACK_HEIGHT = 166
SOUNDCLOUD_PLAYLIST_HEIGHT = 450
SOUNDCLOUD_SITE_NAME = "SoundCloud"
# First path segments that are site sections rather than user profiles.
_RESERVED_SEGMENTS = {"discover", "search", "stream", "charts", "you", "upload", "pages", "settings"}


def soundcloud_kind(url: str) -> str | None:
    if not host_matches(extract_host(url), "soundcloud.com"):
        return None
    segments = path_segments(url)
    if len(segments) < 2 or segments[0].lower() in _RESERVED_SEGMENTS:
        return None
    return "playlist" if segments[1].lower() == "sets" and len(segments) > 2 else "track"


def soundcloud_embed_height(kind: str) -> int:
    return SOUNDCLOUD_PLAYLIST_HEIGHT if kind == "playlist" else SOUNDCLOUD_TRACK_HEIGHT


class SoundCloudExtractor(Extractor):
    """Audio hosting pages.

    Tier 1 trusts the page's own ``twitter:player`` URL, tier 2 builds the
    widget URL from the canonical track or set URL.
    """

    name = "soundcloud"
    domains = ("soundcloud.com",)

    def tiers(self) -> Sequence[Tier]:
        return (self._from_player_tag, self._from_canonical_url)

    def url_fallback(self, url: str) -> Metadata | None:
        return _metadata_for_url(url)

    def _from_player_tag(self, document: PageDocument) -> Metadata | None:
        player_url = document.meta.get("twitter:player")
        if not player_url or not is_allowed_embed_url(player_url):
            return None
        kind = soundcloud_kind(document.page.final_url) or soundcloud_kind(document.page.url) or "track"
        embed = build_embed("soundcloud", player_url, height=soundcloud_embed_height(kind), kind=kind)
        return Metadata(site_name=SOUNDCLOUD_SITE_NAME, embed=embed)

    def _from_canonical_url(self, document: PageDocument) -> Metadata | None:
        for candidate in (document.meta.get("og:url"), document.canonical_link(), document.page.final_url):
            if candidate:
                metadata = _metadata_for_url(candidate)
                if metadata is not None:
                    return metadata
        return None


def _metadata_for_url(url: str) -> Metadata | None:
    kind = soundcloud_kind(url)
    if kind is None:
        return None
    canonical = normalize_url(url)
    embed = build_embed(
        "soundcloud",
        SOUNDCLOUD_PLAYER_URL + quote(canonical, safe=""),
        height=soundcloud_embed_height(kind),
        kind=kind,
    )
    return Metadata(site_name=SOUNDCLOUD_SITE_NAME, embed=embed)
