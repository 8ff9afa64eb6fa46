"""Browse routes for ingested channels, movies, series and episodes."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from playlist_ingest.dependencies import get_content_service, get_playlist_service
from playlist_ingest.errors import ParseError, TransportError
from playlist_ingest.services.content_service import CHANNELS, MOVIES, SERIES, ContentService
from playlist_ingest.services.playlist_service import PlaylistService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["content"])


def _listing(collection: str, playlist_id: str, category: Optional[str], svc: PlaylistService, content: ContentService):
    if svc.get(playlist_id) is None:
        return JSONResponse({"error": "Playlist not found"}, status_code=404)
    items = content.list_for_playlist(collection, playlist_id, category)
    return {collection: items, "count": len(items)}


@router.get("/api/playlists/{playlist_id}/channels")
async def list_channels(
    playlist_id: str,
    category: Optional[str] = None,
    svc: PlaylistService = Depends(get_playlist_service),
    content: ContentService = Depends(get_content_service),
):
    return _listing(CHANNELS, playlist_id, category, svc, content)


@router.get("/api/playlists/{playlist_id}/movies")
async def list_movies(
    playlist_id: str,
    category: Optional[str] = None,
    svc: PlaylistService = Depends(get_playlist_service),
    content: ContentService = Depends(get_content_service),
):
    return _listing(MOVIES, playlist_id, category, svc, content)


@router.get("/api/playlists/{playlist_id}/series")
async def list_series(
    playlist_id: str,
    category: Optional[str] = None,
    svc: PlaylistService = Depends(get_playlist_service),
    content: ContentService = Depends(get_content_service),
):
    return _listing(SERIES, playlist_id, category, svc, content)


@router.get("/api/series/{series_id}/episodes")
async def get_episodes(
    series_id: str,
    season: Optional[int] = None,
    content: ContentService = Depends(get_content_service),
):
    try:
        result = await content.get_series_episodes(series_id)
    except (TransportError, ParseError) as e:
        logger.error(f"Could not resolve episodes for series {series_id}: {e}")
        return JSONResponse({"error": str(e)}, status_code=502)
    if result is None:
        return JSONResponse({"error": "Series not found"}, status_code=404)

    episodes = result.episodes
    if season is not None:
        episodes = [e for e in episodes if e.season_number == season]
    return {
        "series_id": series_id,
        "total_seasons": result.total_seasons,
        "seasons": sorted(result.by_season()),
        "episodes": [e.model_dump() for e in episodes],
        "info": result.info,
    }
