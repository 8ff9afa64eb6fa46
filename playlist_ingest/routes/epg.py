"""EPG import and guide routes."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from playlist_ingest.dependencies import get_config_service, get_content_service, get_epg_service
from playlist_ingest.services.config_service import ConfigService
from playlist_ingest.services.content_service import ContentService
from playlist_ingest.services.epg_service import EpgService

router = APIRouter(prefix="/api/epg", tags=["epg"])


def _parse_when(value: Optional[str], default: datetime) -> datetime:
    if not value:
        return default
    if value.lstrip("-").isdigit():
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@router.post("/import")
async def import_epg(request: Request, epg: EpgService = Depends(get_epg_service)):
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    user_id = data.get("user_id", "")
    urls = data.get("urls") or ([data["url"]] if data.get("url") else [])
    if not user_id or not urls:
        return JSONResponse({"error": "user_id and url are required"}, status_code=400)
    if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
        return JSONResponse({"error": "urls must be a list of strings"}, status_code=400)

    if len(urls) == 1:
        result = await epg.import_from_url(urls[0], user_id)
        return result.model_dump()
    results = await epg.import_from_urls(urls, user_id)
    return {
        "success": any(r.success for r in results),
        "imported": sum(r.imported for r in results),
        "results": [r.model_dump() for r in results],
    }


@router.post("/clear")
async def clear_epg(
    request: Request,
    epg: EpgService = Depends(get_epg_service),
    cfg: ConfigService = Depends(get_config_service),
):
    body = await request.body()
    try:
        data = await request.json() if body else {}
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    if data.get("all"):
        deleted = epg.clear_all()
    else:
        try:
            days = int(data.get("days", cfg.options.epg_retention_days))
        except (TypeError, ValueError):
            return JSONResponse({"error": "days must be an integer"}, status_code=400)
        if days < 0:
            return JSONResponse({"error": "days must not be negative"}, status_code=400)
        deleted = epg.clear_old(days)
    return {"success": True, "deleted": deleted}


@router.get("/channels/{channel_id}")
async def channel_guide(
    channel_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    epg: EpgService = Depends(get_epg_service),
    content: ContentService = Depends(get_content_service),
):
    now = datetime.now(timezone.utc)
    try:
        window_start = _parse_when(start, now - timedelta(hours=2))
        window_end = _parse_when(end, now + timedelta(hours=24))
    except ValueError:
        return JSONResponse({"error": "start and end must be ISO datetimes or unix timestamps"}, status_code=400)

    channel = content.get_channel(channel_id)
    epg_channel_id = channel.epg_channel_id if channel else None
    programs = epg.programs_for_channel(channel_id, window_start, window_end, epg_channel_id)
    return {"channel_id": channel_id, "programs": [p.model_dump(mode="json") for p in programs]}


@router.get("/now-next/{channel_id}")
async def now_next(
    channel_id: str,
    epg: EpgService = Depends(get_epg_service),
    content: ContentService = Depends(get_content_service),
):
    channel = content.get_channel(channel_id)
    epg_channel_id = channel.epg_channel_id if channel else None
    return epg.now_next(channel_id, epg_channel_id)
