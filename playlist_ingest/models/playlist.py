"""Pydantic models for playlist sources and ingestion runs."""
from __future__ import annotations

import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class PlaylistStats(BaseModel):
    total_channels: int = 0
    total_movies: int = 0
    total_series: int = 0
    total_categories: int = 0


class M3uConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str = ""
    last_fetched: Optional[str] = None


class XtreamConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    server_url: str = ""
    username: str = ""
    password: str = ""
    last_fetched: Optional[str] = None
    server_info: dict[str, Any] = Field(default_factory=dict)


class ParsingProgress(BaseModel):
    step: str = ""
    percent: int = 0
    updated_at: Optional[str] = None


class PlaylistSource(BaseModel):
    """A user's M3U or Xtream playlist."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    name: str = "New Playlist"
    type: Literal["m3u", "xtream"]
    m3u_config: Optional[M3uConfig] = None
    xtream_config: Optional[XtreamConfig] = None
    is_active: bool = True
    order: int = 0
    parsing: bool = False
    parsing_started_at: Optional[str] = None
    parsing_progress: ParsingProgress = Field(default_factory=ParsingProgress)
    stats: PlaylistStats = Field(default_factory=PlaylistStats)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProgressUpdate(BaseModel):
    step: str
    percent: int


class IngestionResult(BaseModel):
    success: bool
    stats: Optional[PlaylistStats] = None
    error: Optional[str] = None
