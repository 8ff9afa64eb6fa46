"""Tests for the Xtream Codes client."""

import asyncio

import httpx
import pytest

from playlist_ingest.errors import HttpStatusError, ParseError
from playlist_ingest.services.config_service import ConfigService
from playlist_ingest.services.http_client import HttpClientService
from playlist_ingest.services.xtream_service import XtreamService, normalize_list

SERVER = "http://provider.example:8080"

LIVE = [
    {"stream_id": 11, "name": "CNN", "category_id": "1", "stream_icon": "http://i/cnn.png",
     "epg_channel_id": "cnn.us"},
    {"stream_id": 12, "name": "BBC", "category_id": "9", "container_extension": "m3u8"},
    {"name": "no id"},
    "garbage",
]
VOD = {
    "1": {"stream_id": 21, "name": "Inception", "category_name": "Sci-Fi", "rating": "8.8",
          "releasedate": "2010-07-16", "container_extension": "mkv"},
    "2": {"stream_id": 22, "name": "Up", "category_id": "5", "rating": ""},
}
SERIES = [
    {"series_id": 31, "name": "Dark", "cover": "http://i/dark.jpg", "category_id": "7",
     "releaseDate": "2017-12-01", "plot": "Time travel", "genre": "Drama"},
]
SERIES_INFO = {
    "info": {"name": "Dark", "cover": "http://i/dark.jpg"},
    "episodes": {
        "2": [
            {"id": "902", "episode_num": 1, "title": "Beginnings", "container_extension": "mkv",
             "info": {"duration": "00:52:00", "plot": "p", "rating": "9"}},
        ],
        "1": [
            {"id": "802", "episode_num": "2", "title": "Lies"},
            {"id": "801", "episode_num": 1, "title": "",
             "info": {"movie_image": "http://i/e1.jpg", "releasedate": "2017-12-01"}},
        ],
    },
}


def _handler(overrides=None):
    overrides = overrides or {}

    def handler(request):
        action = request.url.params.get("action")
        if action in overrides:
            result = overrides[action]
            return result(request) if callable(result) else result
        if action is None:
            return httpx.Response(200, json={"user_info": {"auth": 1, "username": "u"},
                                             "server_info": {"url": "provider.example"}})
        payloads = {
            "get_live_streams": LIVE,
            "get_live_categories": [{"category_id": "1", "category_name": "News"}],
            "get_vod_streams": VOD,
            "get_vod_categories": [{"category_id": "5", "category_name": "Kids"}],
            "get_series": SERIES,
            "get_series_categories": [{"category_id": "7", "category_name": "Drama"}],
            "get_series_info": SERIES_INFO,
        }
        return httpx.Response(200, json=payloads.get(action, []))

    return handler


def _service(tmp_path, handler):
    cfg = ConfigService(str(tmp_path))
    cfg.load()
    http = HttpClientService(backoff_base=0, backoff_cap=0, transport=httpx.MockTransport(handler))
    return XtreamService(http, cfg)


def _run(svc, coro):
    async def go():
        try:
            return await coro
        finally:
            await svc.http_client.close()

    return asyncio.run(go())


class TestNormalizeList:
    def test_numbered_keys_sorted(self):
        assert normalize_list({"10": "b", "2": "a"}) == ["a", "b"]

    def test_passthrough_and_garbage(self):
        assert normalize_list([1, 2]) == [1, 2]
        assert normalize_list(None) == []
        assert normalize_list({"x": 1, "y": 2}) == [1, 2]


class TestAuthenticate:
    def test_success_with_string_auth(self, tmp_path):
        handler = _handler({None: httpx.Response(200, json={"user_info": {"auth": "1"}, "server_info": {}})})
        svc = _service(tmp_path, handler)
        result = _run(svc, svc.authenticate(SERVER + "/", "u", "p"))
        assert result.ok is True

    def test_success_returns_server_info(self, tmp_path):
        svc = _service(tmp_path, _handler())
        result = _run(svc, svc.authenticate(SERVER, "u", "p"))
        assert result.ok
        assert result.server_info == {"url": "provider.example"}
        assert result.user_info["username"] == "u"

    def test_invalid_credentials(self, tmp_path):
        handler = _handler({None: httpx.Response(200, json={"user_info": {"auth": 0}})})
        svc = _service(tmp_path, handler)
        result = _run(svc, svc.authenticate(SERVER, "u", "bad"))
        assert result.ok is False
        assert result.error == "Invalid credentials"
        assert result.error_kind == "invalid_credentials"

    def test_timeout(self, tmp_path):
        def slow(request):
            raise httpx.ConnectTimeout("slow", request=request)

        svc = _service(tmp_path, _handler({None: slow}))
        result = _run(svc, svc.authenticate(SERVER, "u", "p"))
        assert result.error_kind == "timeout"
        assert result.error == "Connection timeout - Server took too long to respond"

    def test_unreachable(self, tmp_path):
        def down(request):
            raise httpx.ConnectError("refused", request=request)

        svc = _service(tmp_path, _handler({None: down}))
        result = _run(svc, svc.authenticate(SERVER, "u", "p"))
        assert result.error_kind == "unreachable"
        assert result.error == "Cannot connect to server - Check URL or try a different server"

    def test_other_error(self, tmp_path):
        svc = _service(tmp_path, _handler({None: httpx.Response(401, text="Unauthorized")}))
        result = _run(svc, svc.authenticate(SERVER, "u", "p"))
        assert result.ok is False
        assert result.error_kind == "error"
        assert "401" in result.error


class TestCollections:
    def test_live_streams(self, tmp_path):
        svc = _service(tmp_path, _handler())
        channels = _run(svc, svc.list_live(SERVER, "u", "p"))
        assert [c.name for c in channels] == ["CNN", "BBC"]
        cnn, bbc = channels
        assert cnn.stream_url == f"{SERVER}/live/u/p/11.ts"
        assert cnn.category == "News"
        assert cnn.epg_channel_id == "cnn.us"
        assert cnn.logo == "http://i/cnn.png"
        assert bbc.stream_url == f"{SERVER}/live/u/p/12.m3u8"
        assert bbc.category == "Uncategorized"
        assert bbc.epg_channel_id is None

    def test_vod_numbered_dict(self, tmp_path):
        svc = _service(tmp_path, _handler())
        movies = _run(svc, svc.list_vod(SERVER, "u", "p"))
        inception, up = movies
        assert inception.stream_url == f"{SERVER}/movie/u/p/21.mkv"
        assert inception.category == "Sci-Fi"
        assert inception.rating == 8.8
        assert inception.year == 2010
        assert up.stream_url == f"{SERVER}/movie/u/p/22.mp4"
        assert up.category == "Kids"
        assert up.rating is None

    def test_series_carry_lazy_reference(self, tmp_path):
        svc = _service(tmp_path, _handler())
        series = _run(svc, svc.list_series(SERVER + "/", "u", "p"))
        assert len(series) == 1
        dark = series[0]
        assert dark.category == "Drama"
        assert dark.year == 2017
        assert dark.xtream.server_url == SERVER
        assert dark.xtream.series_id == "31"

    def test_failing_collection_is_isolated(self, tmp_path):
        handler = _handler({"get_vod_streams": httpx.Response(500, text="down")})
        svc = _service(tmp_path, handler)

        async def all_three():
            return (
                await svc.list_live(SERVER, "u", "p"),
                await svc.list_vod(SERVER, "u", "p"),
                await svc.list_series(SERVER, "u", "p"),
            )

        live, vod, series = _run(svc, all_three())
        assert len(live) == 2
        assert vod == []
        assert len(series) == 1

    def test_category_failure_falls_back(self, tmp_path):
        handler = _handler({"get_live_categories": httpx.Response(500)})
        svc = _service(tmp_path, handler)
        channels = _run(svc, svc.list_live(SERVER, "u", "p"))
        assert {c.category for c in channels} == {"Uncategorized"}


class TestSeriesEpisodes:
    def test_resolve_sorted_with_ids(self, tmp_path):
        svc = _service(tmp_path, _handler())
        result = _run(svc, svc.resolve_series_episodes(SERVER, "u", "p", "31"))
        assert result.total_seasons == 2
        assert [e.id for e in result.episodes] == ["31_S1_E1", "31_S1_E2", "31_S2_E1"]
        first = result.episodes[0]
        assert first.title == "Episode 1"
        assert first.stream_url == f"{SERVER}/series/u/p/801.mp4"
        assert first.thumbnail == "http://i/e1.jpg"
        assert first.release_date == "2017-12-01"
        last = result.episodes[-1]
        assert last.stream_url == f"{SERVER}/series/u/p/902.mkv"
        assert last.thumbnail == "http://i/dark.jpg"
        assert last.duration == "00:52:00"
        assert last.rating == 9.0
        assert sorted(result.by_season()) == [1, 2]

    def test_errors_propagate(self, tmp_path):
        svc = _service(tmp_path, _handler({"get_series_info": httpx.Response(404, text="gone")}))
        with pytest.raises(HttpStatusError):
            _run(svc, svc.resolve_series_episodes(SERVER, "u", "p", "31"))

    def test_bad_json_propagates(self, tmp_path):
        svc = _service(tmp_path, _handler({"get_series_info": httpx.Response(200, text="oops")}))
        with pytest.raises(ParseError):
            _run(svc, svc.resolve_series_episodes(SERVER, "u", "p", "31"))
