from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
from urllib.parse import urlparse

from linkmeta.core.urls import extract_host, host_matches, resolve_url
from linkmeta.extractors.fetch import FetchedPage
from linkmeta.extractors.html import PageDocument, first_non_empty
from linkmeta.schemas.metadata import EmbedDescriptor, Metadata

logger = logging.getLogger(__name__)

ALLOWED_EMBED_HOSTS = {
    "www.youtube-nocookie.com",
    "open.spotify.com",
    "w.soundcloud.com",
    "bandcamp.com",
}

Tier = Callable[[PageDocument], Metadata | None]

# Malformed markup or structured data surfaces as one of these; a tier that
# raises one simply falls through to the next tier.
TIER_PARSE_ERRORS = (ValueError, TypeError, KeyError, AttributeError, IndexError)


class Extractor:
    """Strategy turning a fetched page into normalized :class:`Metadata`.

    Subclasses list the domains they own and the ordered structured-data
    tiers they try. The first tier returning metadata wins and is merged over
    the generic open-graph tags; when every tier falls through only the
    generic tags are kept.
    """

    name = "generic"
    domains: tuple[str, ...] = ()

    def matches(self, url: str) -> bool:
        host = extract_host(url)
        if not host:
            return False
        return any(host_matches(host, domain) for domain in self.domains)

    def tiers(self) -> Sequence[Tier]:
        return ()

    def extract(self, page: FetchedPage) -> Metadata:
        document = PageDocument.from_page(page)
        generic = generic_metadata(document)
        structured = run_tiers(self.tiers(), document, provider=self.name)
        if structured is None:
            return generic
        return sanitize_embed(structured.merged_over(generic), provider=self.name)

    def url_fallback(self, url: str) -> Metadata | None:
        """Metadata derivable from the URL alone, used when the page cannot be fetched."""
        return None


def run_tiers(tiers: Sequence[Tier], document: PageDocument, *, provider: str) -> Metadata | None:
    for index, tier in enumerate(tiers, start=1):
        try:
            result = tier(document)
        except TIER_PARSE_ERRORS as exc:
            logger.debug(
                "extraction tier fell through provider=%s tier=%s url=%s error=%s",
                provider,
                index,
                document.page.url,
                exc,
            )
            continue
        if result is not None:
            logger.debug("extraction tier matched provider=%s tier=%s url=%s", provider, index, document.page.url)
            return result
    return None


def generic_metadata(document: PageDocument) -> Metadata:
    page = document.page
    if page.is_image:
        return Metadata(image=page.final_url)
    if document.soup is None:
        return Metadata()

    meta = document.meta
    image = first_non_empty(
        meta.get("og:image:secure_url"),
        meta.get("og:image"),
        meta.get("twitter:image"),
        meta.get("twitter:image:src"),
    )
    return Metadata(
        title=first_non_empty(meta.get("og:title"), meta.get("twitter:title"), document.title),
        description=first_non_empty(
            meta.get("og:description"),
            meta.get("twitter:description"),
            meta.get("description"),
        ),
        image=resolve_url(page.final_url, image) if image else None,
        site_name=first_non_empty(meta.get("og:site_name"), meta.get("application-name")),
        artist=first_non_empty(meta.get("music:artist"), meta.get("music:musician"), meta.get("spotify:artist")),
    )


def is_allowed_embed_url(embed_url: str) -> bool:
    try:
        parsed = urlparse(embed_url.strip())
    except ValueError:
        return False
    if parsed.scheme != "https":
        return False
    return (parsed.hostname or "").lower() in ALLOWED_EMBED_HOSTS


def sanitize_embed(metadata: Metadata, *, provider: str) -> Metadata:
    if metadata.embed is None or is_allowed_embed_url(metadata.embed.embed_url):
        return metadata
    logger.warning("dropping embed with disallowed url provider=%s embed_url=%s", provider, metadata.embed.embed_url)
    return metadata.model_copy(update={"embed": None})


def build_embed(provider: str, embed_url: str, *, height: int, kind: str | None = None) -> EmbedDescriptor:
    return EmbedDescriptor(provider=provider, embed_url=embed_url, height=height, kind=kind)


def path_segments(url: str) -> list[str]:
    try:
        path = urlparse(url).path
    except ValueError:
        return []
    return [segment for segment in path.split("/") if segment]
