"""Playlist Ingest — FastAPI application factory and service wiring."""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request

from playlist_ingest.database import DB_NAME, init_db
from playlist_ingest.routes import content, epg, health, playlists
from playlist_ingest.services.config_service import ConfigService
from playlist_ingest.services.content_service import ContentService
from playlist_ingest.services.epg_service import EpgService
from playlist_ingest.services.http_client import HttpClientService
from playlist_ingest.services.ingestion_service import IngestionService
from playlist_ingest.services.playlist_service import PlaylistService
from playlist_ingest.services.store import SqliteDocumentStore
from playlist_ingest.services.xtream_service import XtreamService

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
logger = logging.getLogger(__name__)

# Data directory - use environment variable or default to /data (Docker) or ./data (local)
DATA_DIR = os.environ.get("DATA_DIR", "/data" if os.path.exists("/data") else "./data")


def wire_services(app: FastAPI, data_dir: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """Build every service and attach it to ``app.state`` for DI."""
    os.makedirs(data_dir, exist_ok=True)
    cfg = ConfigService(data_dir)
    cfg.load()

    db_path = os.path.join(data_dir, DB_NAME)
    init_db(db_path)
    store = SqliteDocumentStore(db_path)

    opts = cfg.options
    http = HttpClientService(
        user_agent=cfg.user_agent,
        backoff_base=opts.retry_backoff_base,
        backoff_cap=opts.retry_backoff_cap,
        transport=transport,
    )
    xtream = XtreamService(http, cfg)
    playlists_svc = PlaylistService(store)
    content_svc = ContentService(store, xtream, cfg)
    epg_svc = EpgService(store, http, cfg, content_svc)
    ingestion = IngestionService(store, playlists_svc, content_svc, xtream, http, cfg)

    app.state.config_service = cfg
    app.state.store = store
    app.state.http_client = http
    app.state.xtream_service = xtream
    app.state.playlist_service = playlists_svc
    app.state.content_service = content_svc
    app.state.epg_service = epg_svc
    app.state.ingestion_service = ingestion


def create_app(data_dir: str = DATA_DIR, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager - handles startup and shutdown"""
        wire_services(app, data_dir, transport)
        app.state.ingestion_service.recover_stuck()
        logger.info(f"Playlist Ingest started (data dir: {data_dir})")

        yield

        await app.state.ingestion_service.shutdown()
        await app.state.http_client.close()
        logger.info("Application shutdown complete")

    app = FastAPI(title="Playlist Ingest", lifespan=lifespan)

    # Middleware to ensure UTF-8 charset in JSON responses
    @app.middleware("http")
    async def add_utf8_charset(request: Request, call_next):
        response = await call_next(request)
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type and "charset" not in content_type:
            response.headers["content-type"] = "application/json; charset=utf-8"
        return response

    for r in (health, playlists, content, epg):
        app.include_router(r.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
