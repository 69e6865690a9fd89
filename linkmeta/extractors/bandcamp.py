from __future__ import annotations

from collections.abc import Sequence
import json
from typing import Any

from linkmeta.extractors.base import Extractor, Tier, build_embed, path_segments
from linkmeta.extractors.html import PageDocument, first_non_empty
from linkmeta.schemas.metadata import EmbedDescriptor, Metadata

BANDCAMP_EMBED_URL_TEMPLATE = (
    "https://bandcamp.com/EmbeddedPlayer/{kind}={item_id}/size=large/bgcol=ffffff/"
    "linkcol=0687f5/tracklist={tracklist}/artwork=small/transparent=true/"
)
BANDCAMP_ALBUM_HEIGHT = 470
BANDCAMP_TRACK_HEIGHT = 120
BANDCAMP_SITE_NAME = "Bandcamp"

_JSON_LD_KINDS = {"MusicAlbum": "album", "MusicRecording": "track"}
_ITEM_TYPE_ALIASES = {"a": "album", "album": "album", "t": "track", "track": "track"}


class BandcampExtractor(Extractor):
    """Release pages.

    Tier 1 reads the JSON-LD entity (album or track) and its ``item_id``
    property, tier 2 the legacy ``bc-page-properties`` payload. Without
    either, only the generic tags are kept and no player is embedded.
    """

    name = "bandcamp"
    domains = ("bandcamp.com",)

    def tiers(self) -> Sequence[Tier]:
        return (self._from_json_ld, self._from_page_properties)

    def _from_json_ld(self, document: PageDocument) -> Metadata | None:
        for payload in document.json_ld():
            for candidate in _json_ld_candidates(payload):
                metadata = _metadata_from_json_ld_entity(candidate)
                if metadata is not None:
                    return metadata
        return None

    def _from_page_properties(self, document: PageDocument) -> Metadata | None:
        raw = document.meta.get("bc-page-properties") or document.attribute("data-bc-page-properties")
        if not raw:
            return None
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            return None

        item_id = normalize_item_id(payload.get("item_id"))
        kind = normalize_item_type(payload.get("item_type"))
        if kind is None:
            kind = kind_from_path(document.page.final_url) or kind_from_path(document.page.url)
        if item_id is None or kind is None:
            return None
        return Metadata(site_name=BANDCAMP_SITE_NAME, embed=bandcamp_embed(kind, item_id))


def bandcamp_embed(kind: str, item_id: str) -> EmbedDescriptor:
    is_track = kind == "track"
    embed_url = BANDCAMP_EMBED_URL_TEMPLATE.format(
        kind=kind,
        item_id=item_id,
        tracklist="false" if is_track else "true",
    )
    height = BANDCAMP_TRACK_HEIGHT if is_track else BANDCAMP_ALBUM_HEIGHT
    return build_embed("bandcamp", embed_url, height=height, kind=kind)


def kind_from_path(url: str) -> str | None:
    segments = [segment.lower() for segment in path_segments(url)]
    if "album" in segments:
        return "album"
    if "track" in segments:
        return "track"
    return None


def normalize_item_type(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return _ITEM_TYPE_ALIASES.get(value.strip().lower())


def normalize_item_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value > 0 else None
    if isinstance(value, float):
        return str(int(value)) if value > 0 and value.is_integer() else None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped.isdigit() else None
    return None


def find_item_id(value: Any) -> str | None:
    if isinstance(value, list):
        for item in value:
            found = find_item_id(item)
            if found is not None:
                return found
        return None
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str) and name.strip() == "item_id":
            return normalize_item_id(value.get("value"))
        if "additionalProperty" in value:
            return find_item_id(value["additionalProperty"])
    return None


def _json_ld_candidates(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and isinstance(payload.get("@graph"), list):
        items = payload["@graph"]
    else:
        items = [payload]
    return [item for item in items if isinstance(item, dict)]


def _json_ld_type(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        for item in value:
            if isinstance(item, str) and item.strip() in _JSON_LD_KINDS:
                return item.strip()
    return None


def _metadata_from_json_ld_entity(entity: dict[str, Any]) -> Metadata | None:
    kind = _JSON_LD_KINDS.get(_json_ld_type(entity.get("@type")) or "")
    if kind == "album":
        item_id = find_item_id(entity.get("albumRelease")) or find_item_id(entity.get("additionalProperty"))
    elif kind == "track":
        item_id = find_item_id(entity.get("additionalProperty")) or find_item_id(entity.get("inAlbum"))
    else:
        return None
    if item_id is None:
        return None

    return Metadata(
        title=_json_ld_text(entity.get("name")),
        description=_json_ld_text(entity.get("description")),
        image=_json_ld_image(entity.get("image")),
        site_name=BANDCAMP_SITE_NAME,
        artist=_json_ld_artist(entity.get("byArtist")),
        embed=bandcamp_embed(kind, item_id),
    )


def _json_ld_artist(value: Any) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("name")
    return _json_ld_text(value)


def _json_ld_text(value: Any) -> str | None:
    return first_non_empty(value) if isinstance(value, str) else None


def _json_ld_image(value: Any) -> str | None:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("url")
    return _json_ld_text(value)
