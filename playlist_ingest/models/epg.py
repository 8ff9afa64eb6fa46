"""Pydantic models for program-guide data."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class EpgProgram(BaseModel):
    """A single ``<programme>`` entry, normalized to UTC instants."""

    channel_id: Optional[str] = None
    epg_channel_id: Optional[str] = None
    title: str = ""
    description: str = ""
    start: datetime
    end: datetime
    duration: Optional[int] = None
    category: str = ""
    icon: str = ""
    rating: str = ""
    is_catchup_available: bool = False

    @model_validator(mode="after")
    def check_window(self) -> "EpgProgram":
        if self.start >= self.end:
            raise ValueError("programme start must be before its end")
        return self

    @property
    def doc_key(self) -> str:
        """Deterministic key so re-importing the same window overwrites rows."""
        channel = f"{self.channel_id or ''}|{self.epg_channel_id or ''}"
        return f"{channel}|{int(self.start.timestamp())}"

    def to_document(self) -> dict:
        doc = self.model_dump(mode="json")
        doc["start_ts"] = int(self.start.timestamp())
        doc["end_ts"] = int(self.end.timestamp())
        return doc


class XmltvFeed(BaseModel):
    channels: dict[str, str] = Field(default_factory=dict)
    programs: list[EpgProgram] = Field(default_factory=list)


class EpgImportResult(BaseModel):
    success: bool
    imported: int = 0
    mapped: int = 0
    unmapped: int = 0
    error: Optional[str] = None
