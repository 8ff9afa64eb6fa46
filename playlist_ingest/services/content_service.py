"""Content service — read access to ingested channels, movies and series."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Optional

from playlist_ingest.models.content import Channel, Episode, Series, SeriesEpisodes

if TYPE_CHECKING:
    from playlist_ingest.services.config_service import ConfigService
    from playlist_ingest.services.store import DocumentStore
    from playlist_ingest.services.xtream_service import XtreamService

logger = logging.getLogger(__name__)

CHANNELS = "channels"
MOVIES = "movies"
SERIES = "series"
CONTENT_COLLECTIONS = (CHANNELS, MOVIES, SERIES)


class ContentService:
    """Queries over content rows plus lazy episode resolution for series."""

    def __init__(
        self,
        store: "DocumentStore",
        xtream_service: "XtreamService",
        config_service: "ConfigService",
    ):
        self.store = store
        self.xtream_service = xtream_service
        self.config_service = config_service

        # series_id -> (expires_at, episodes)
        self._episode_cache: dict[str, tuple[float, SeriesEpisodes]] = {}
        self._episode_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def list_channels_for_user(self, user_id: str) -> list[Channel]:
        """Every live channel the user owns, across all playlists."""
        docs = self.store.query(CHANNELS, where=[("user_id", "==", user_id)])
        return [Channel.model_validate(d) for d in docs]

    def list_for_playlist(
        self, collection: str, playlist_id: str, category: Optional[str] = None
    ) -> list[dict]:
        if collection not in CONTENT_COLLECTIONS:
            raise ValueError(f"Unknown content collection: {collection}")
        where = [("playlist_id", "==", playlist_id)]
        if category:
            where.append(("category", "==", category))
        return self.store.query(collection, where=where, order_by="name")

    def count_for_playlist(self, collection: str, playlist_id: str) -> int:
        return len(self.store.query(collection, where=[("playlist_id", "==", playlist_id)]))

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        doc = self.store.get(CHANNELS, channel_id)
        return Channel.model_validate(doc) if doc else None

    def get_series(self, series_id: str) -> Optional[Series]:
        doc = self.store.get(SERIES, series_id)
        return Series.model_validate(doc) if doc else None

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------

    def _grouped_m3u_episodes(self, series: Series) -> SeriesEpisodes:
        """M3U series rows are single episodes; gather the siblings by series name."""
        if series.episode_info is None:
            return SeriesEpisodes()
        rows = self.store.query(
            SERIES,
            where=[
                ("playlist_id", "==", series.playlist_id),
                ("episode_info.series_name", "==", series.episode_info.series_name),
            ],
        )
        episodes = []
        for row in rows:
            sibling = Series.model_validate(row)
            info = sibling.episode_info
            if info is None:
                continue
            episodes.append(
                Episode(
                    id=sibling.id,
                    series_id=series.id,
                    season_number=info.season_number,
                    episode_number=info.episode_number,
                    title=sibling.name,
                    stream_url=sibling.stream_url,
                    thumbnail=sibling.poster,
                )
            )
        episodes.sort(key=lambda e: (e.season_number, e.episode_number))
        seasons = {e.season_number for e in episodes}
        return SeriesEpisodes(
            total_seasons=len(seasons),
            episodes=episodes,
            info={"name": series.episode_info.series_name},
        )

    async def get_series_episodes(self, series_id: str) -> Optional[SeriesEpisodes]:
        """Episodes for one stored series, or ``None`` if the series is unknown.

        Xtream series are resolved on demand and cached for
        ``series_cache_ttl`` seconds. Fetch errors propagate.
        """
        series = self.get_series(series_id)
        if series is None:
            return None
        if series.xtream is None:
            return self._grouped_m3u_episodes(series)

        async with self._episode_lock:
            cached = self._episode_cache.get(series_id)
            if cached and cached[0] > time.monotonic():
                return cached[1]

        ref = series.xtream
        episodes = await self.xtream_service.resolve_series_episodes(
            ref.server_url, ref.username, ref.password, ref.series_id
        )
        ttl = self.config_service.options.series_cache_ttl
        async with self._episode_lock:
            self._episode_cache[series_id] = (time.monotonic() + ttl, episodes)
        return episodes

    def invalidate_episodes(self, series_ids: Optional[list[str]] = None) -> None:
        if series_ids is None:
            self._episode_cache.clear()
            return
        for sid in series_ids:
            self._episode_cache.pop(sid, None)
