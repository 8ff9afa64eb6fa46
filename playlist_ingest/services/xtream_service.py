"""Xtream service — authentication, collection fetchers, lazy episode resolution."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

from playlist_ingest.errors import (
    FetchTimeout,
    IngestError,
    NetworkUnreachable,
    ParseError,
    root_cause,
)
from playlist_ingest.models.content import Channel, Episode, Movie, Series, SeriesEpisodes, XtreamRef

if TYPE_CHECKING:
    from playlist_ingest.services.config_service import ConfigService
    from playlist_ingest.services.http_client import HttpClientService

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


class AuthResult(BaseModel):
    ok: bool
    server_info: dict[str, Any] = Field(default_factory=dict)
    user_info: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None


def normalize_list(data: Any) -> list:
    """Handle Xtream's numbered-key objects as well as proper arrays."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        try:
            keys = sorted(data.keys(), key=lambda k: int(k))
            return [data[k] for k in keys]
        except (ValueError, TypeError):
            return list(data.values())
    return []


def _safe_float(val: Any) -> float | None:
    if val in (None, ""):
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _safe_int(val: Any) -> int | None:
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def _year(val: Any) -> int | None:
    """Year from a ``releasedate`` such as ``2021-06-04`` or ``2021``."""
    text = str(val or "").strip()
    if len(text) >= 4 and text[:4].isdigit():
        return int(text[:4])
    return None


def _str_or_none(val: Any) -> str | None:
    if val in (None, ""):
        return None
    return str(val)


def stream_url(server_url: str, kind: str, username: str, password: str, item_id: Any, ext: str) -> str:
    return f"{server_url}/{kind}/{username}/{password}/{item_id}.{ext}"


class XtreamService:
    """Xtream Codes API client built on the shared resilient fetcher."""

    def __init__(self, http_client: "HttpClientService", config_service: "ConfigService"):
        self.http_client = http_client
        self.config_service = config_service

    # ------------------------------------------------------------------
    # Low-level
    # ------------------------------------------------------------------

    async def _api(self, server_url: str, username: str, password: str, **params) -> Any:
        opts = self.config_service.options
        query = {"username": username, "password": password}
        query.update({k: v for k, v in params.items() if v is not None})
        return await self.http_client.fetch_json(
            f"{server_url.rstrip('/')}/player_api.php",
            params=query,
            timeout=opts.xtream_timeout,
            max_retries=opts.xtream_max_retries,
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, server_url: str, username: str, password: str) -> AuthResult:
        server_url = (server_url or "").strip().rstrip("/")
        try:
            data = await self._api(server_url, username, password)
        except IngestError as e:
            cause = root_cause(e)
            logger.error(f"Xtream authentication failed for {server_url}: {cause}")
            if isinstance(cause, FetchTimeout):
                return AuthResult(
                    ok=False,
                    error="Connection timeout - Server took too long to respond",
                    error_kind="timeout",
                )
            if isinstance(cause, NetworkUnreachable):
                return AuthResult(
                    ok=False,
                    error="Cannot connect to server - Check URL or try a different server",
                    error_kind="unreachable",
                )
            return AuthResult(ok=False, error=str(cause), error_kind="error")

        user_info = data.get("user_info") if isinstance(data, dict) else None
        if not isinstance(user_info, dict) or str(user_info.get("auth")) != "1":
            return AuthResult(ok=False, error="Invalid credentials", error_kind="invalid_credentials")

        server_info = data.get("server_info") or {}
        logger.info(f"Xtream authentication succeeded for {username}@{server_url}")
        return AuthResult(
            ok=True,
            user_info=user_info,
            server_info=server_info if isinstance(server_info, dict) else {},
        )

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def _category_names(self, server_url: str, username: str, password: str, action: str) -> dict[str, str]:
        try:
            categories = normalize_list(await self._api(server_url, username, password, action=action))
        except IngestError as e:
            logger.warning(f"Could not fetch {action}: {e}")
            return {}
        names: dict[str, str] = {}
        for cat in categories:
            if isinstance(cat, dict) and cat.get("category_id") is not None:
                names[str(cat["category_id"])] = cat.get("category_name") or UNCATEGORIZED
        return names

    async def _collection(
        self, server_url: str, username: str, password: str, action: str, categories_action: str, id_key: str
    ) -> tuple[list[dict], dict[str, str]]:
        server_url = server_url.rstrip("/")
        try:
            data = await self._api(server_url, username, password, action=action)
        except IngestError as e:
            logger.error(f"Error fetching {action}: {e}")
            return [], {}

        items = []
        for entry in normalize_list(data):
            if not isinstance(entry, dict) or entry.get(id_key) in (None, ""):
                continue
            items.append(entry)
        if not items:
            return [], {}
        cat_names = await self._category_names(server_url, username, password, categories_action)
        return items, cat_names

    @staticmethod
    def _category(entry: dict, cat_names: dict[str, str]) -> str:
        return (
            entry.get("category_name")
            or cat_names.get(str(entry.get("category_id", "")))
            or UNCATEGORIZED
        )

    async def list_live(self, server_url: str, username: str, password: str) -> list[Channel]:
        server_url = server_url.rstrip("/")
        items, cat_names = await self._collection(
            server_url, username, password, "get_live_streams", "get_live_categories", "stream_id"
        )
        channels = []
        for s in items:
            name = s.get("name") or ""
            channels.append(
                Channel(
                    name=name,
                    category=self._category(s, cat_names),
                    stream_url=stream_url(
                        server_url, "live", username, password, s["stream_id"], s.get("container_extension") or "ts"
                    ),
                    logo=s.get("stream_icon") or "",
                    epg_channel_id=s.get("epg_channel_id") or None,
                    stream_id=str(s["stream_id"]),
                    tvg_name=name,
                    stream_type=s.get("stream_type") or "live",
                )
            )
        logger.info(f"Fetched {len(channels)} live streams from {server_url}")
        return channels

    async def list_vod(self, server_url: str, username: str, password: str) -> list[Movie]:
        server_url = server_url.rstrip("/")
        items, cat_names = await self._collection(
            server_url, username, password, "get_vod_streams", "get_vod_categories", "stream_id"
        )
        movies = []
        for s in items:
            name = s.get("name") or ""
            movies.append(
                Movie(
                    name=name,
                    title=name,
                    category=self._category(s, cat_names),
                    stream_url=stream_url(
                        server_url, "movie", username, password, s["stream_id"], s.get("container_extension") or "mp4"
                    ),
                    poster=s.get("stream_icon") or s.get("cover") or "",
                    stream_id=str(s["stream_id"]),
                    rating=_safe_float(s.get("rating")),
                    year=_year(s.get("releasedate")),
                    duration=_str_or_none(s.get("duration")),
                    description=s.get("plot") or "",
                )
            )
        logger.info(f"Fetched {len(movies)} VOD streams from {server_url}")
        return movies

    async def list_series(self, server_url: str, username: str, password: str) -> list[Series]:
        server_url = server_url.rstrip("/")
        items, cat_names = await self._collection(
            server_url, username, password, "get_series", "get_series_categories", "series_id"
        )
        series = []
        for s in items:
            name = s.get("name") or ""
            series.append(
                Series(
                    name=name,
                    title=name,
                    category=self._category(s, cat_names),
                    poster=s.get("cover") or "",
                    rating=_safe_float(s.get("rating")),
                    year=_year(s.get("releaseDate") or s.get("releasedate")),
                    plot=s.get("plot") or "",
                    cast=s.get("cast") or "",
                    director=s.get("director") or "",
                    genre=s.get("genre") or "",
                    xtream=XtreamRef(
                        server_url=server_url,
                        username=username,
                        password=password,
                        series_id=str(s["series_id"]),
                    ),
                )
            )
        logger.info(f"Fetched {len(series)} series from {server_url}")
        return series

    # ------------------------------------------------------------------
    # Episodes (on demand only)
    # ------------------------------------------------------------------

    async def resolve_series_episodes(
        self, server_url: str, username: str, password: str, series_id: str
    ) -> SeriesEpisodes:
        """Fetch every episode of one series.

        Transport and decode errors propagate; the caller decides how to
        surface them.
        """
        server_url = server_url.rstrip("/")
        data = await self._api(server_url, username, password, action="get_series_info", series_id=series_id)
        if not isinstance(data, dict):
            raise ParseError("Unexpected get_series_info payload")

        info = data.get("info") if isinstance(data.get("info"), dict) else {}
        seasons = data.get("episodes") or {}
        if isinstance(seasons, list):
            # Some panels send a list of season lists
            seasons = {str(i + 1): eps for i, eps in enumerate(seasons)}
        if not isinstance(seasons, dict):
            seasons = {}

        episodes: list[Episode] = []
        for season_key, season_episodes in seasons.items():
            season = _safe_int(season_key)
            if season is None:
                continue
            for ep in normalize_list(season_episodes):
                if not isinstance(ep, dict) or ep.get("id") in (None, ""):
                    continue
                number = _safe_int(ep.get("episode_num"))
                if number is None:
                    continue
                ep_info = ep.get("info") if isinstance(ep.get("info"), dict) else {}
                episodes.append(
                    Episode(
                        id=f"{series_id}_S{season}_E{number}",
                        series_id=str(series_id),
                        season_number=season,
                        episode_number=number,
                        title=ep.get("title") or f"Episode {number}",
                        stream_url=stream_url(
                            server_url, "series", username, password, ep["id"], ep.get("container_extension") or "mp4"
                        ),
                        thumbnail=ep_info.get("movie_image") or info.get("cover") or "",
                        duration=_str_or_none(ep_info.get("duration")),
                        description=ep_info.get("plot") or "",
                        rating=_safe_float(ep_info.get("rating")),
                        release_date=_str_or_none(ep_info.get("releasedate")),
                    )
                )

        episodes.sort(key=lambda e: (e.season_number, e.episode_number))
        logger.info(f"Resolved {len(episodes)} episodes for series {series_id}")
        return SeriesEpisodes(total_seasons=len(seasons), episodes=episodes, info=info)
