"""Pydantic models for application configuration."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ClassificationRules(BaseModel):
    """Keyword and pattern sets used to classify M3U entries.

    Every regex in ``episode_patterns`` must define ``season`` and ``episode``
    named groups; they are compiled case-insensitively.
    """
    model_config = ConfigDict(extra="allow")

    movie_keywords: list[str] = Field(
        default_factory=lambda: ["movie", "film", "cinema", "vod", "peliculas", "filmes"]
    )
    movie_url_markers: list[str] = Field(default_factory=lambda: ["/movie/"])
    series_keywords: list[str] = Field(default_factory=lambda: ["series", "show", "tv show", "serie"])
    series_url_markers: list[str] = Field(default_factory=lambda: ["/series/"])
    episode_patterns: list[str] = Field(
        default_factory=lambda: [
            r"s(?P<season>\d+)e(?P<episode>\d+)",
            r"\b(?P<season>\d{1,2})x(?P<episode>\d{1,3})\b",
            r"season\s*(?P<season>\d+)\s*episode\s*(?P<episode>\d+)",
        ]
    )


class Options(BaseModel):
    """Ingestion options."""
    model_config = ConfigDict(extra="allow")

    fetch_timeout: float = 30.0
    fetch_max_retries: int = 3
    retry_backoff_base: float = 1.0
    retry_backoff_cap: float = 5.0
    xtream_timeout: float = 15.0
    xtream_max_retries: int = 2
    batch_size: int = 500
    epg_batch_size: int = 400
    epg_retention_days: int = 7
    epg_fuzzy_threshold: int = 90
    fetch_concurrency: int = 5
    fetch_batch_pause: float = 0.3
    series_cache_ttl: int = 3600
    parsing_stale_after: int = 600  # seconds before a "parsing" flag is considered stuck
    classification: ClassificationRules = Field(default_factory=ClassificationRules)


class AppConfig(BaseModel):
    """Root application configuration."""
    model_config = ConfigDict(extra="allow")

    user_agent: str = "PlaylistIngest/1.0"
    options: Options = Field(default_factory=Options)
