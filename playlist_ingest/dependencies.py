"""FastAPI dependency injection — provides services via Depends()."""
from __future__ import annotations

from fastapi import Request

from playlist_ingest.services.config_service import ConfigService
from playlist_ingest.services.content_service import ContentService
from playlist_ingest.services.epg_service import EpgService
from playlist_ingest.services.http_client import HttpClientService
from playlist_ingest.services.ingestion_service import IngestionService
from playlist_ingest.services.playlist_service import PlaylistService
from playlist_ingest.services.xtream_service import XtreamService


def get_config_service(request: Request) -> ConfigService:
    return request.app.state.config_service


def get_http_client(request: Request) -> HttpClientService:
    return request.app.state.http_client


def get_playlist_service(request: Request) -> PlaylistService:
    return request.app.state.playlist_service


def get_content_service(request: Request) -> ContentService:
    return request.app.state.content_service


def get_xtream_service(request: Request) -> XtreamService:
    return request.app.state.xtream_service


def get_epg_service(request: Request) -> EpgService:
    return request.app.state.epg_service


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service
