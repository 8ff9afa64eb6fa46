"""Tests for XMLTV parsing, channel mapping and the EPG store."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from playlist_ingest.database import DB_NAME, init_db
from playlist_ingest.errors import ParseError
from playlist_ingest.models.content import Channel
from playlist_ingest.models.epg import EpgProgram
from playlist_ingest.services.config_service import ConfigService
from playlist_ingest.services.content_service import CHANNELS, ContentService
from playlist_ingest.services.epg_service import (
    EPG_PROGRAMS,
    EpgService,
    build_channel_map,
    map_programs,
    normalize_name,
    parse_xmltv,
    parse_xmltv_feed,
    parse_xmltv_time,
)
from playlist_ingest.services.http_client import HttpClientService
from playlist_ingest.services.store import SqliteDocumentStore
from playlist_ingest.services.xtream_service import XtreamService

XMLTV = """<?xml version="1.0" encoding="UTF-8"?>
<tv generator-info-name="test">
  <channel id="cnn.us"><display-name>CNN</display-name></channel>
  <channel id="bbc1.uk"><display-name>UK: BBC One HD</display-name></channel>
  <programme start="20240115200000 +0100" stop="20240115210000 +0100" channel="cnn.us">
    <title>Evening News</title>
    <desc>Headlines</desc>
    <category>News</category>
    <icon src="http://i/news.png"/>
  </programme>
  <programme start="20240115210000 +0100" stop="20240115220000 +0100" channel="cnn.us">
    <title>Late Show</title>
  </programme>
  <programme start="202401151900" stop="202401152000" channel="bbc1.uk">
    <title>Panorama</title>
  </programme>
  <programme start="20240115220000" stop="20240115210000" channel="cnn.us">
    <title>Backwards</title>
  </programme>
  <programme start="garbage" stop="20240115210000" channel="cnn.us">
    <title>Broken</title>
  </programme>
</tv>
"""


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def services(tmp_path):
    data_dir = str(tmp_path)
    db_path = os.path.join(data_dir, DB_NAME)
    init_db(db_path)
    store = SqliteDocumentStore(db_path)
    cfg = ConfigService(data_dir)
    cfg.load()

    def handler(request):
        if request.url.path == "/guide.xml":
            return httpx.Response(200, text=XMLTV)
        if request.url.path == "/empty.xml":
            return httpx.Response(200, text="<tv></tv>")
        return httpx.Response(404, text="missing")

    http = HttpClientService(backoff_base=0, backoff_cap=0, transport=httpx.MockTransport(handler))
    content = ContentService(store, XtreamService(http, cfg), cfg)
    return store, EpgService(store, http, cfg, content)


def _run(epg, coro):
    async def go():
        try:
            return await coro
        finally:
            await epg.http_client.close()

    return asyncio.run(go())


class TestXmltvTime:
    def test_offset_is_normalized_to_utc(self):
        assert parse_xmltv_time("20240115200000 +0100") == _utc(2024, 1, 15, 19, 0)
        assert parse_xmltv_time("20240115200000 -0530") == _utc(2024, 1, 16, 1, 30)

    def test_without_seconds_or_offset(self):
        assert parse_xmltv_time("202401152000") == _utc(2024, 1, 15, 20, 0)

    def test_zulu(self):
        assert parse_xmltv_time("20240115200030Z") == _utc(2024, 1, 15, 20, 0, 30)

    def test_garbage(self):
        assert parse_xmltv_time("") is None
        assert parse_xmltv_time("yesterday") is None
        assert parse_xmltv_time("20241345250000") is None


class TestParseXmltv:
    def test_programs_and_channels(self):
        feed = parse_xmltv_feed(XMLTV)
        assert feed.channels == {"cnn.us": "CNN", "bbc1.uk": "UK: BBC One HD"}
        assert [p.title for p in feed.programs] == ["Evening News", "Late Show", "Panorama"]

        news = feed.programs[0]
        assert news.channel_id is None
        assert news.epg_channel_id == "cnn.us"
        assert news.start == _utc(2024, 1, 15, 19, 0)
        assert news.end == _utc(2024, 1, 15, 20, 0)
        assert news.duration == 3600
        assert news.description == "Headlines"
        assert news.category == "News"
        assert news.icon == "http://i/news.png"

    def test_bytes_input(self):
        assert len(parse_xmltv(XMLTV.encode("utf-8"))) == 3

    def test_str_with_bom_and_foreign_declaration(self):
        xml = (
            "\ufeff"
            '<?xml version="1.0" encoding="ISO-8859-1"?>\n'
            '<tv><programme start="20240115060000" stop="20240115090000" channel="tf1.fr">'
            "<title>Télé Matin</title></programme></tv>"
        )
        programs = parse_xmltv(xml)
        assert [p.title for p in programs] == ["Télé Matin"]

    def test_wrong_root(self):
        with pytest.raises(ParseError):
            parse_xmltv("<html><body/></html>")

    def test_unreadable(self):
        with pytest.raises(ParseError):
            parse_xmltv("")
        with pytest.raises(ParseError):
            parse_xmltv(b"this is not xml")

    def test_program_window_invariant(self):
        with pytest.raises(ValueError):
            EpgProgram(start=_utc(2024, 1, 1, 10), end=_utc(2024, 1, 1, 10))


class TestMapping:
    def _channels(self):
        return [
            Channel(id="ch-cnn", name="CNN", epg_channel_id="cnn.us"),
            Channel(id="ch-bbc", name="BBC One"),
            Channel(id="ch-arte", name="Arte"),
        ]

    def test_normalize_name(self):
        assert normalize_name("UK: BBC One HD") == "bbc one"
        assert normalize_name("Télé Québec (Backup)") == "tele quebec"

    def test_exact_and_fuzzy(self):
        feed = parse_xmltv_feed(XMLTV)
        by_epg_id, names = build_channel_map(self._channels())
        assert by_epg_id == {"cnn.us": "ch-cnn"}

        mapped = map_programs(feed.programs, by_epg_id, feed.channels, names, threshold=90)
        assert [p.channel_id for p in mapped] == ["ch-cnn", "ch-cnn", "ch-bbc"]

    def test_exact_only_without_names(self):
        feed = parse_xmltv_feed(XMLTV)
        by_epg_id, _ = build_channel_map(self._channels())
        mapped = map_programs(feed.programs, by_epg_id)
        assert [p.channel_id for p in mapped] == ["ch-cnn", "ch-cnn", None]

    def test_threshold_rejects_weak_matches(self):
        programs = parse_xmltv(XMLTV)
        mapped = map_programs(programs, {}, {"bbc1.uk": "BBC Two"}, {"ch-bbc": "BBC One"}, threshold=95)
        assert all(p.channel_id is None for p in mapped)


class TestEpgService:
    def test_upsert_is_idempotent(self, services):
        store, epg = services
        programs = parse_xmltv(XMLTV)
        assert epg.upsert_programs(programs, batch_size=2) == 3
        first = sorted(d["id"] for d in store.query(EPG_PROGRAMS))
        epg.upsert_programs(programs)
        second = sorted(d["id"] for d in store.query(EPG_PROGRAMS))
        assert first == second
        assert len(second) == 3

    def test_import_from_url(self, services):
        store, epg = services
        store.set(CHANNELS, "ch-cnn", {"user_id": "u1", "name": "CNN", "epg_channel_id": "cnn.us"})
        store.set(CHANNELS, "ch-bbc", {"user_id": "u1", "name": "BBC One"})
        store.set(CHANNELS, "ch-other", {"user_id": "u2", "name": "CNN", "epg_channel_id": "cnn.us"})

        result = _run(epg, epg.import_from_url("http://epg.example/guide.xml", "u1"))
        assert result.success is True
        assert result.imported == 3
        assert result.mapped == 3
        assert result.unmapped == 0

        window = epg.programs_for_channel("ch-cnn", _utc(2024, 1, 15), _utc(2024, 1, 16))
        assert [p.title for p in window] == ["Evening News", "Late Show"]

    def test_import_without_programs(self, services):
        _, epg = services
        result = _run(epg, epg.import_from_url("http://epg.example/empty.xml", "u1"))
        assert result.success is False
        assert result.error == "No programs found in XMLTV"

    def test_import_fetch_failure(self, services):
        _, epg = services
        result = _run(epg, epg.import_from_url("http://epg.example/nothing.xml", "u1"))
        assert result.success is False
        assert "404" in result.error

    def test_import_from_several_urls(self, services):
        _, epg = services
        results = _run(
            epg,
            epg.import_from_urls(["http://epg.example/guide.xml", "http://epg.example/nothing.xml"], "u1"),
        )
        assert [r.success for r in results] == [True, False]

    def test_unmapped_programs_fall_back_to_epg_id(self, services):
        _, epg = services
        epg.upsert_programs(parse_xmltv(XMLTV))
        found = epg.programs_for_channel("unknown", _utc(2024, 1, 15), _utc(2024, 1, 16), epg_channel_id="cnn.us")
        assert len(found) == 2

    def test_clear_old(self, services):
        store, epg = services
        now = datetime.now(timezone.utc).replace(microsecond=0)
        old = [
            EpgProgram(epg_channel_id="x", title=f"old {i}", start=now - timedelta(days=10, hours=i + 1),
                       end=now - timedelta(days=10, hours=i))
            for i in range(5)
        ]
        fresh = [EpgProgram(epg_channel_id="x", title="now", start=now - timedelta(minutes=10),
                            end=now + timedelta(minutes=50))]
        epg.upsert_programs(old + fresh)

        assert epg.clear_old(7, batch_size=2) == 5
        assert [d["title"] for d in store.query(EPG_PROGRAMS)] == ["now"]
        assert epg.clear_all() == 0

    def test_now_next(self, services):
        _, epg = services
        now = datetime.now(timezone.utc).replace(microsecond=0)
        epg.upsert_programs(
            [
                EpgProgram(channel_id="ch1", title="Current", start=now - timedelta(minutes=30),
                           end=now + timedelta(minutes=30)),
                EpgProgram(channel_id="ch1", title="Next", start=now + timedelta(minutes=30),
                           end=now + timedelta(minutes=90)),
            ]
        )
        result = epg.now_next("ch1", now=now)
        assert result["current"]["title"] == "Current"
        assert result["current"]["progress_pct"] == 50.0
        assert result["next"]["title"] == "Next"
        assert epg.now_next("nobody") == {"current": None, "next": None}

    def test_guide_for_channels(self, services):
        _, epg = services
        epg.upsert_programs(parse_xmltv(XMLTV))
        channels = [
            Channel(id="a", name="CNN", epg_channel_id="cnn.us"),
            Channel(id="b", name="Nothing"),
        ]
        guide = _run(epg, epg.guide_for_channels(channels, _utc(2024, 1, 15), _utc(2024, 1, 16)))
        assert len(guide["a"]) == 2
        assert guide["b"] == []
