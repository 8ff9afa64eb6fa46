"""Playlist service — CRUD and run-state bookkeeping for playlist sources."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from pydantic import ValidationError as ModelValidationError

from playlist_ingest.errors import ValidationError
from playlist_ingest.models.playlist import PlaylistSource, PlaylistStats

if TYPE_CHECKING:
    from playlist_ingest.services.store import DocumentStore

logger = logging.getLogger(__name__)

PLAYLISTS = "playlists"

# Fields only the ingestion run may change.
_READ_ONLY = {"id", "user_id", "type", "parsing", "parsing_started_at", "parsing_progress", "stats",
              "created_at", "updated_at"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_source_config(playlist: PlaylistSource) -> None:
    """Raise :class:`ValidationError` unless the playlist can be ingested."""
    if playlist.type == "m3u":
        if not playlist.m3u_config or not playlist.m3u_config.url.strip():
            raise ValidationError("M3U playlist has no URL")
    elif playlist.type == "xtream":
        cfg = playlist.xtream_config
        if not cfg or not cfg.server_url.strip() or not cfg.username or not cfg.password:
            raise ValidationError("Xtream playlist needs server URL, username and password")
    else:
        raise ValidationError(f"Unknown playlist type: {playlist.type!r}")


class PlaylistService:
    """Reads and writes :class:`PlaylistSource` documents."""

    def __init__(self, store: "DocumentStore"):
        self.store = store

    @staticmethod
    def _to_model(doc: Optional[dict]) -> Optional[PlaylistSource]:
        if doc is None:
            return None
        return PlaylistSource.model_validate(doc)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, playlist_id: str) -> Optional[PlaylistSource]:
        return self._to_model(self.store.get(PLAYLISTS, playlist_id))

    def list_for_user(self, user_id: str) -> list[PlaylistSource]:
        docs = self.store.query(PLAYLISTS, where=[("user_id", "==", user_id)], order_by="order")
        return [PlaylistSource.model_validate(d) for d in docs]

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------

    def create(self, data: dict) -> PlaylistSource:
        data = {k: v for k, v in data.items() if k not in _READ_ONLY - {"user_id", "type"}}
        try:
            playlist = PlaylistSource.model_validate(data)
        except ModelValidationError as e:
            raise ValidationError(f"Invalid playlist: {e.errors()[0].get('msg', e)}") from e
        if not playlist.user_id:
            raise ValidationError("user_id is required")
        check_source_config(playlist)

        if "order" not in data:
            playlist.order = len(self.list_for_user(playlist.user_id))

        self.store.set(PLAYLISTS, playlist.id, playlist.model_dump(exclude={"id"}))
        logger.info(f"Created {playlist.type} playlist '{playlist.name}' ({playlist.id}) for {playlist.user_id}")
        return self.get(playlist.id)

    def update(self, playlist_id: str, data: dict) -> Optional[PlaylistSource]:
        current = self.get(playlist_id)
        if current is None:
            return None
        changes = {k: v for k, v in data.items() if k not in _READ_ONLY}
        if not changes:
            return current

        merged = current.model_dump()
        for key, value in changes.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        try:
            updated = PlaylistSource.model_validate(merged)
        except ModelValidationError as e:
            raise ValidationError(f"Invalid playlist: {e.errors()[0].get('msg', e)}") from e
        check_source_config(updated)

        self.store.set(PLAYLISTS, playlist_id, changes, merge=True)
        return self.get(playlist_id)

    def delete(self, playlist_id: str) -> bool:
        if self.store.get(PLAYLISTS, playlist_id) is None:
            return False
        self.store.delete(PLAYLISTS, playlist_id)
        logger.info(f"Deleted playlist {playlist_id}")
        return True

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------

    def set_progress(self, playlist_id: str, step: str, percent: int) -> None:
        self.store.update(
            PLAYLISTS,
            playlist_id,
            {"parsing_progress": {"step": step, "percent": percent, "updated_at": now_iso()}},
        )

    def start_parsing(self, playlist_id: str, step: str) -> None:
        now = now_iso()
        self.store.update(
            PLAYLISTS,
            playlist_id,
            {
                "parsing": True,
                "parsing_started_at": now,
                "parsing_progress": {"step": step, "percent": 0, "updated_at": now},
            },
        )

    def finish_parsing(self, playlist_id: str, step: str, percent: int) -> None:
        self.store.update(
            PLAYLISTS,
            playlist_id,
            {
                "parsing": False,
                "parsing_progress": {"step": step, "percent": percent, "updated_at": now_iso()},
            },
        )

    def update_stats(
        self,
        playlist_id: str,
        stats: PlaylistStats,
        server_info: Optional[dict[str, Any]] = None,
    ) -> None:
        """Store run totals and stamp ``last_fetched`` on the source config."""
        playlist = self.get(playlist_id)
        if playlist is None:
            return
        updates: dict[str, Any] = {"stats": stats.model_dump()}
        config_key = "m3u_config" if playlist.type == "m3u" else "xtream_config"
        updates[f"{config_key}.last_fetched"] = now_iso()
        if server_info is not None and playlist.type == "xtream":
            updates["xtream_config.server_info"] = server_info
        self.store.update(PLAYLISTS, playlist_id, updates)
