from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, PrivateAttr


class EnrichmentJob(BaseModel):
    """One pending metadata resolution request for a single link."""

    content_id: str
    link_id: str
    url: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt_count: int = Field(default=0, ge=0)

    # Exact queue entry this job was decoded from; ack/requeue remove by value.
    _receipt: str | None = PrivateAttr(default=None)

    @classmethod
    def from_payload(cls, raw: str | bytes) -> EnrichmentJob:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        job = cls.model_validate_json(text)
        job._receipt = text
        return job

    def to_payload(self) -> str:
        return self.model_dump_json()

    @property
    def receipt(self) -> str:
        return self._receipt if self._receipt is not None else self.to_payload()

    def next_attempt(self) -> EnrichmentJob:
        job = self.model_copy(update={"attempt_count": self.attempt_count + 1})
        job._receipt = None
        return job


class QueueStatsOut(BaseModel):
    pending: int
    delayed: int
    processing: int
