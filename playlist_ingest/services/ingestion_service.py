"""Ingestion service — fetch, parse, replace and persist a playlist's content."""
from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from playlist_ingest.errors import (
    AuthError,
    IngestionCancelled,
    IngestionInProgress,
    PersistenceError,
    ValidationError,
)
from playlist_ingest.models.content import Channel, ContentRow, Movie, RawPlaylistItem, Series
from playlist_ingest.models.playlist import IngestionResult, PlaylistSource, PlaylistStats, ProgressUpdate
from playlist_ingest.services.content_service import CHANNELS, CONTENT_COLLECTIONS, MOVIES, SERIES
from playlist_ingest.services.m3u_service import parse_m3u
from playlist_ingest.services.playlist_service import PLAYLISTS, check_source_config

if TYPE_CHECKING:
    from playlist_ingest.services.config_service import ConfigService
    from playlist_ingest.services.content_service import ContentService
    from playlist_ingest.services.http_client import HttpClientService
    from playlist_ingest.services.playlist_service import PlaylistService
    from playlist_ingest.services.store import DocumentStore
    from playlist_ingest.services.xtream_service import XtreamService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]
Checkpoint = Callable[[], Awaitable[None]]


class _Run:
    """Progress reporting and cancellation for one ingestion run."""

    def __init__(
        self,
        playlist_service: "PlaylistService",
        playlist_id: str,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ):
        self.playlist_service = playlist_service
        self.playlist_id = playlist_id
        self.on_progress = on_progress
        self.cancel_event = cancel_event

    async def notify(self, step: str, percent: int) -> None:
        logger.info(f"[{self.playlist_id}] {step} ({percent}%)")
        if self.on_progress is None:
            return
        try:
            result = self.on_progress(ProgressUpdate(step=step, percent=percent))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed at '{step}': {e}")

    async def step(self, step: str, percent: int) -> None:
        await self.checkpoint()
        self.playlist_service.set_progress(self.playlist_id, step, percent)
        await self.notify(step, percent)

    async def checkpoint(self) -> None:
        await asyncio.sleep(0)
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise IngestionCancelled("Ingestion cancelled")


class IngestionService:
    """The only writer of playlist content.

    A run replaces everything a playlist owns: old rows are deleted in
    batches before the new rows are written, then stats are stamped on the
    playlist document.
    """

    def __init__(
        self,
        store: "DocumentStore",
        playlist_service: "PlaylistService",
        content_service: "ContentService",
        xtream_service: "XtreamService",
        http_client: "HttpClientService",
        config_service: "ConfigService",
    ):
        self.store = store
        self.playlist_service = playlist_service
        self.content_service = content_service
        self.xtream_service = xtream_service
        self.http_client = http_client
        self.config_service = config_service

        # playlist_id -> (task, cancel event) for background runs
        self._running: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}

    # ------------------------------------------------------------------
    # Run lock
    # ------------------------------------------------------------------

    def _is_running(self, playlist: PlaylistSource) -> bool:
        if not playlist.parsing:
            return False
        started_at = playlist.parsing_started_at
        if started_at:
            try:
                started = datetime.fromisoformat(started_at)
                if started.tzinfo is None:
                    started = started.replace(tzinfo=timezone.utc)
                age = (datetime.now(timezone.utc) - started).total_seconds()
                if age < self.config_service.options.parsing_stale_after:
                    return True
            except (ValueError, TypeError):
                pass
        logger.warning(f"Playlist {playlist.id} has a stale parsing flag, taking over")
        return False

    def begin(self, playlist_id: str) -> PlaylistSource:
        """Validate the playlist and mark it as parsing.

        Raises :class:`ValidationError` for unknown or incomplete playlists
        and :class:`IngestionInProgress` if a run is already active.
        """
        playlist = self.playlist_service.get(playlist_id)
        if playlist is None:
            raise ValidationError(f"Playlist {playlist_id} not found")
        check_source_config(playlist)
        if self._is_running(playlist):
            raise IngestionInProgress(f"Playlist {playlist_id} is already being ingested")

        first_step = "Fetching" if playlist.type == "m3u" else "Authenticating"
        self.playlist_service.start_parsing(playlist_id, first_step)
        return playlist

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def ingest(
        self,
        playlist_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IngestionResult:
        playlist = self.begin(playlist_id)
        return await self.run(playlist, on_progress, cancel_event)

    async def run(
        self,
        playlist: PlaylistSource,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IngestionResult:
        """Execute a run for a playlist already claimed by :meth:`begin`."""
        run = _Run(self.playlist_service, playlist.id, on_progress, cancel_event)
        logger.info(f"Starting {playlist.type} ingestion of '{playlist.name}' ({playlist.id})")
        try:
            if playlist.type == "m3u":
                stats = await self.ingest_m3u(playlist, run)
            else:
                stats = await self.ingest_xtream(playlist, run)
        except Exception as e:
            logger.error(f"Ingestion of playlist {playlist.id} failed: {e}")
            try:
                self.playlist_service.finish_parsing(playlist.id, "Failed", 0)
            except PersistenceError as reset_error:
                logger.error(f"Could not reset parsing flag of playlist {playlist.id}: {reset_error}")
            await run.notify("Failed", 0)
            return IngestionResult(success=False, error=str(e) or type(e).__name__)

        self.playlist_service.finish_parsing(playlist.id, "Completed", 100)
        await run.notify("Completed", 100)
        logger.info(
            f"Ingestion of '{playlist.name}' complete: {stats.total_channels} channels, "
            f"{stats.total_movies} movies, {stats.total_series} series"
        )
        return IngestionResult(success=True, stats=stats)

    def start_background(self, playlist_id: str) -> PlaylistSource:
        """Claim the playlist now and run the ingestion as a task."""
        playlist = self.begin(playlist_id)
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self.run(playlist, cancel_event=cancel_event))
        self._running[playlist_id] = (task, cancel_event)
        task.add_done_callback(lambda _t: self._running.pop(playlist_id, None))
        return playlist

    def cancel(self, playlist_id: str) -> bool:
        entry = self._running.get(playlist_id)
        if entry is None:
            return False
        entry[1].set()
        return True

    async def shutdown(self) -> None:
        """Cancel background runs and wait for them to reset their flags."""
        running = list(self._running.values())
        for _task, event in running:
            event.set()
        if running:
            await asyncio.gather(*(task for task, _event in running), return_exceptions=True)
            logger.info(f"Stopped {len(running)} running ingestion(s)")

    def recover_stuck(self) -> int:
        """Reset playlists left in ``parsing`` by a previous process."""
        recovered = 0
        for doc in self.store.query(PLAYLISTS, where=[("parsing", "==", True)]):
            self.playlist_service.finish_parsing(doc["id"], "Failed", 0)
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} playlist(s) stuck in parsing")
        return recovered

    # ------------------------------------------------------------------
    # Per-type pipelines
    # ------------------------------------------------------------------

    async def ingest_m3u(self, playlist: PlaylistSource, run: _Run) -> PlaylistStats:
        opts = self.config_service.options
        await run.notify("Fetching", 0)
        text = await self.http_client.fetch_text(
            playlist.m3u_config.url, timeout=opts.fetch_timeout, max_retries=opts.fetch_max_retries
        )

        await run.step("Parsing", 20)
        parsed = parse_m3u(text, rules=self.config_service.classification)

        channels = [self._channel_row(playlist, item) for item in parsed.channels]
        movies = [self._movie_row(playlist, item) for item in parsed.movies]
        series = [self._series_row(playlist, item) for item in parsed.series]
        stats = PlaylistStats(
            total_channels=len(channels),
            total_movies=len(movies),
            total_series=len(series),
            total_categories=len(parsed.categories),
        )
        await self._replace_content(playlist, run, channels, movies, series, stats)
        return stats

    async def ingest_xtream(self, playlist: PlaylistSource, run: _Run) -> PlaylistStats:
        cfg = playlist.xtream_config
        server_url = cfg.server_url.strip().rstrip("/")

        await run.notify("Authenticating", 0)
        auth = await self.xtream_service.authenticate(server_url, cfg.username, cfg.password)
        if not auth.ok:
            raise AuthError(auth.error or "Authentication failed")

        await run.step("Fetching live streams", 20)
        channels = await self.xtream_service.list_live(server_url, cfg.username, cfg.password)
        await run.step("Fetching VOD", 40)
        movies = await self.xtream_service.list_vod(server_url, cfg.username, cfg.password)
        await run.step("Fetching series", 60)
        series = await self.xtream_service.list_series(server_url, cfg.username, cfg.password)

        for row in (*channels, *movies, *series):
            row.playlist_id = playlist.id
            row.user_id = playlist.user_id

        categories = {row.category for row in (*channels, *movies, *series) if row.category}
        stats = PlaylistStats(
            total_channels=len(channels),
            total_movies=len(movies),
            total_series=len(series),
            total_categories=len(categories),
        )
        await self._replace_content(playlist, run, channels, movies, series, stats, auth.server_info)
        return stats

    async def _replace_content(
        self,
        playlist: PlaylistSource,
        run: _Run,
        channels: list[Channel],
        movies: list[Movie],
        series: list[Series],
        stats: PlaylistStats,
        server_info: Optional[dict[str, Any]] = None,
    ) -> None:
        await run.step("Cleaning up old content", 70)
        await self.delete_playlist_content(playlist.id, run.checkpoint)

        await run.step("Saving content", 75)
        await self.save_items(CHANNELS, channels, run.checkpoint)
        await run.step("Saving content", 80)
        await self.save_items(MOVIES, movies, run.checkpoint)
        await run.step("Saving content", 85)
        await self.save_items(SERIES, series, run.checkpoint)

        await run.step("Updating stats", 95)
        self.playlist_service.update_stats(playlist.id, stats, server_info)
        self.content_service.invalidate_episodes()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _channel_row(playlist: PlaylistSource, item: RawPlaylistItem) -> Channel:
        return Channel(
            playlist_id=playlist.id,
            user_id=playlist.user_id,
            name=item.name,
            category=item.category,
            stream_url=item.stream_url,
            logo=item.logo,
            epg_channel_id=item.tvg_id or None,
            tvg_name=item.tvg_name,
            language=item.language,
            country=item.country,
        )

    @staticmethod
    def _movie_row(playlist: PlaylistSource, item: RawPlaylistItem) -> Movie:
        return Movie(
            playlist_id=playlist.id,
            user_id=playlist.user_id,
            name=item.name,
            title=item.name,
            category=item.category,
            stream_url=item.stream_url,
            poster=item.logo,
        )

    @staticmethod
    def _series_row(playlist: PlaylistSource, item: RawPlaylistItem) -> Series:
        return Series(
            playlist_id=playlist.id,
            user_id=playlist.user_id,
            name=item.name,
            title=item.name,
            category=item.category,
            stream_url=item.stream_url,
            poster=item.logo,
            episode_info=item.episode_info,
        )

    # ------------------------------------------------------------------
    # Batched writes
    # ------------------------------------------------------------------

    async def delete_playlist_content(
        self, playlist_id: str, checkpoint: Optional[Checkpoint] = None
    ) -> dict[str, int]:
        """Delete every content row of a playlist, one bounded batch at a time."""
        batch_size = self.config_service.batch_size
        deleted: dict[str, int] = {}
        for collection in CONTENT_COLLECTIONS:
            deleted[collection] = 0
            while True:
                docs = self.store.query(
                    collection, where=[("playlist_id", "==", playlist_id)], limit=batch_size
                )
                if docs:
                    deleted[collection] += self.store.batch_delete(collection, [d["id"] for d in docs])
                    if checkpoint:
                        await checkpoint()
                if len(docs) < batch_size:
                    break
        logger.info(
            f"Deleted old content for {playlist_id}: "
            + ", ".join(f"{n} {c}" for c, n in deleted.items())
        )
        return deleted

    async def save_items(
        self, collection: str, rows: list[ContentRow], checkpoint: Optional[Checkpoint] = None
    ) -> int:
        batch_size = self.config_service.batch_size
        saved = 0
        for i in range(0, len(rows), batch_size):
            chunk = rows[i:i + batch_size]
            self.store.batch_write(
                collection, [(None, row.model_dump(mode="json", exclude={"id"})) for row in chunk]
            )
            saved += len(chunk)
            if checkpoint:
                await checkpoint()
        if rows:
            logger.info(f"Saved {saved} {collection}")
        return saved

    async def delete_playlist(self, playlist_id: str) -> bool:
        """Remove a playlist and everything it owns."""
        playlist = self.playlist_service.get(playlist_id)
        if playlist is None:
            return False
        if self._is_running(playlist):
            raise IngestionInProgress(f"Playlist {playlist_id} is being ingested")
        await self.delete_playlist_content(playlist_id)
        self.content_service.invalidate_episodes()
        return self.playlist_service.delete(playlist_id)
