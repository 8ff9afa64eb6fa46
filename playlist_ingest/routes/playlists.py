"""Playlist management and ingestion routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from playlist_ingest.dependencies import get_ingestion_service, get_playlist_service, get_xtream_service
from playlist_ingest.errors import IngestionInProgress, ValidationError
from playlist_ingest.services.ingestion_service import IngestionService
from playlist_ingest.services.playlist_service import PlaylistService
from playlist_ingest.services.xtream_service import XtreamService

router = APIRouter(tags=["playlists"])


def _not_found():
    return JSONResponse({"error": "Playlist not found"}, status_code=404)


@router.get("/api/playlists")
async def list_playlists(user_id: str = "", svc: PlaylistService = Depends(get_playlist_service)):
    if not user_id:
        return JSONResponse({"error": "user_id is required"}, status_code=400)
    return {"playlists": [p.model_dump() for p in svc.list_for_user(user_id)]}


@router.post("/api/playlists")
async def create_playlist(request: Request, svc: PlaylistService = Depends(get_playlist_service)):
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
    try:
        playlist = svc.create(data)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"status": "ok", "playlist": playlist.model_dump()}


@router.get("/api/playlists/{playlist_id}")
async def get_playlist(playlist_id: str, svc: PlaylistService = Depends(get_playlist_service)):
    playlist = svc.get(playlist_id)
    if playlist is None:
        return _not_found()
    return {"playlist": playlist.model_dump()}


@router.put("/api/playlists/{playlist_id}")
async def update_playlist(playlist_id: str, request: Request, svc: PlaylistService = Depends(get_playlist_service)):
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
    try:
        playlist = svc.update(playlist_id, data)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if playlist is None:
        return _not_found()
    return {"status": "ok", "playlist": playlist.model_dump()}


@router.delete("/api/playlists/{playlist_id}")
async def delete_playlist(playlist_id: str, ingestion: IngestionService = Depends(get_ingestion_service)):
    try:
        deleted = await ingestion.delete_playlist(playlist_id)
    except IngestionInProgress as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    if not deleted:
        return _not_found()
    return {"status": "ok"}


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------

@router.post("/api/playlists/{playlist_id}/refresh")
async def refresh_playlist(
    playlist_id: str,
    wait: bool = False,
    svc: PlaylistService = Depends(get_playlist_service),
    ingestion: IngestionService = Depends(get_ingestion_service),
):
    if svc.get(playlist_id) is None:
        return _not_found()
    try:
        if wait:
            result = await ingestion.ingest(playlist_id)
            return result.model_dump()
        ingestion.start_background(playlist_id)
    except IngestionInProgress as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    except ValidationError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"status": "started", "message": "Ingestion started"}


@router.post("/api/playlists/{playlist_id}/cancel")
async def cancel_refresh(playlist_id: str, ingestion: IngestionService = Depends(get_ingestion_service)):
    if not ingestion.cancel(playlist_id):
        return JSONResponse({"error": "No running ingestion for this playlist"}, status_code=404)
    return {"status": "cancelling"}


@router.get("/api/playlists/{playlist_id}/progress")
async def get_progress(playlist_id: str, svc: PlaylistService = Depends(get_playlist_service)):
    playlist = svc.get(playlist_id)
    if playlist is None:
        return _not_found()
    return {
        "parsing": playlist.parsing,
        "current_step": playlist.parsing_progress.step,
        "percent": playlist.parsing_progress.percent,
        "updated_at": playlist.parsing_progress.updated_at,
        "stats": playlist.stats.model_dump(),
    }


@router.post("/api/xtream/authenticate")
async def authenticate(request: Request, xtream: XtreamService = Depends(get_xtream_service)):
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)
    server_url = data.get("server_url", "")
    username = data.get("username", "")
    password = data.get("password", "")
    if not server_url or not username or not password:
        return JSONResponse({"error": "server_url, username and password are required"}, status_code=400)
    result = await xtream.authenticate(server_url, username, password)
    return result.model_dump()
