"""Pydantic models for parsed and persisted playlist content."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EpisodeInfo(BaseModel):
    """Season/episode numbers inferred from an entry name."""

    season_number: int
    episode_number: int
    series_name: str


class RawPlaylistItem(BaseModel):
    """One ``#EXTINF`` + URL pair, before it is mapped into a stored row."""

    duration: float = -1
    name: str = ""
    logo: str = ""
    category: str = ""
    tvg_id: str = ""
    tvg_name: str = ""
    language: str = ""
    country: str = ""
    stream_url: str = ""
    episode_info: Optional[EpisodeInfo] = None


class ContentRow(BaseModel):
    """Fields shared by every stored content row."""
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    playlist_id: str = ""
    user_id: str = ""
    name: str = ""
    category: str = ""


class Channel(ContentRow):
    stream_url: str = ""
    logo: str = ""
    epg_channel_id: Optional[str] = None
    stream_id: Optional[str] = None
    tvg_name: str = ""
    language: str = ""
    country: str = ""
    stream_type: str = "live"
    is_live: bool = True


class Movie(ContentRow):
    title: str = ""
    stream_url: str = ""
    poster: str = ""
    stream_id: Optional[str] = None
    rating: Optional[float] = None
    year: Optional[int] = None
    duration: Optional[str] = None
    description: str = ""


class XtreamRef(BaseModel):
    """What a series needs to resolve its episodes lazily."""

    server_url: str
    username: str
    password: str
    series_id: str


class Series(ContentRow):
    title: str = ""
    poster: str = ""
    stream_url: str = ""
    episode_info: Optional[EpisodeInfo] = None
    rating: Optional[float] = None
    year: Optional[int] = None
    plot: str = ""
    cast: str = ""
    director: str = ""
    genre: str = ""
    seasons: list[int] = Field(default_factory=list)
    xtream: Optional[XtreamRef] = None


class Episode(BaseModel):
    id: str
    series_id: str
    season_number: int
    episode_number: int
    title: str = ""
    stream_url: str = ""
    thumbnail: str = ""
    duration: Optional[str] = None
    description: str = ""
    rating: Optional[float] = None
    release_date: Optional[str] = None


class SeriesEpisodes(BaseModel):
    total_seasons: int = 0
    episodes: list[Episode] = Field(default_factory=list)
    info: dict[str, Any] = Field(default_factory=dict)

    def by_season(self) -> dict[int, list[Episode]]:
        seasons: dict[int, list[Episode]] = {}
        for ep in self.episodes:
            seasons.setdefault(ep.season_number, []).append(ep)
        return seasons


class ParsedPlaylist(BaseModel):
    channels: list[RawPlaylistItem] = Field(default_factory=list)
    movies: list[RawPlaylistItem] = Field(default_factory=list)
    series: list[RawPlaylistItem] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
