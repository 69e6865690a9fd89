from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class EmbedDescriptor(BaseModel):
    provider: str
    embed_url: str
    height: int
    kind: str | None = None


class Metadata(BaseModel):
    title: str | None = None
    description: str | None = None
    image: str | None = None
    site_name: str | None = None
    artist: str | None = None
    embed: EmbedDescriptor | None = None

    def is_empty(self) -> bool:
        return not self.to_record()

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def merged_over(self, base: Metadata) -> Metadata:
        """Fields set on ``self`` win; unset ones are taken from ``base``."""
        merged = base.to_record()
        merged.update(self.to_record())
        return Metadata.model_validate(merged)

