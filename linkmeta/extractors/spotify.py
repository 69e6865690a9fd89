from __future__ import annotations

from collections.abc import Sequence

from linkmeta.core.urls import extract_host
from linkmeta.extractors.base import Extractor, Tier, build_embed, path_segments
from linkmeta.extractors.html import PageDocument
from linkmeta.schemas.metadata import Metadata

SPOTIFY_HOST = "open.spotify.com"
SPOTIFY_EMBED_URL_TEMPLATE = "https://open.spotify.com/embed/{kind}/{content_id}"
SPOTIFY_SITE_NAME = "Spotify"
SPOTIFY_KINDS = {"track", "album", "playlist", "artist", "show", "episode"}


def spotify_embed_height(kind: str) -> int:
    if kind == "track":
        return 152
    if kind in {"show", "episode"}:
        return 232
    return 380


def parse_spotify_url(url: str) -> tuple[str, str] | None:
    if extract_host(url) != SPOTIFY_HOST:
        return None
    segments = path_segments(url)
    index = 0
    if segments and segments[0].startswith("intl-") and len(segments) > 1:
        index += 1
    if index < len(segments) and segments[index] == "embed" and len(segments) > index + 2:
        index += 1
    if len(segments) <= index + 1:
        return None

    kind = segments[index].lower()
    content_id = segments[index + 1].strip()
    if kind not in SPOTIFY_KINDS or not content_id:
        return None
    return kind, content_id


class SpotifyExtractor(Extractor):
    """Music and podcast pages; the player is derived from the URL path."""

    name = "spotify"
    domains = (SPOTIFY_HOST,)

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
    parsed = parse_spotify_url(url)
    if parsed is None:
        return None
    kind, content_id = parsed
    embed = build_embed(
        "spotify",
        SPOTIFY_EMBED_URL_TEMPLATE.format(kind=kind, content_id=content_id),
        height=spotify_embed_height(kind),
        kind=kind,
    )
    return Metadata(site_name=SPOTIFY_SITE_NAME, embed=embed)
