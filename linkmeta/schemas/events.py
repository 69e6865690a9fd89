from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

from linkmeta.schemas.metadata import Metadata

LINK_METADATA_UPDATED = "link_metadata_updated"


class MetadataUpdatedData(BaseModel):
    content_id: str
    link_id: str
    metadata: Metadata


class MetadataUpdatedEvent(BaseModel):
    type: Literal["link_metadata_updated"] = LINK_METADATA_UPDATED
    data: MetadataUpdatedData
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)
