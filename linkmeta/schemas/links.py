from typing import Any

from pydantic import BaseModel, Field


class LinkPreviewRequest(BaseModel):
    url: str = ""


class LinkPreviewResponse(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)
