"""EPG service — streaming XMLTV parser, channel mapping, program-guide storage."""
from __future__ import annotations

import io
import logging
import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable, Optional

from lxml import etree
from pydantic import ValidationError as ModelValidationError
from rapidfuzz import fuzz

from playlist_ingest.errors import IngestError, ParseError
from playlist_ingest.models.epg import EpgImportResult, EpgProgram, XmltvFeed
from playlist_ingest.services.http_client import gather_in_batches

if TYPE_CHECKING:
    from playlist_ingest.models.content import Channel
    from playlist_ingest.services.config_service import ConfigService
    from playlist_ingest.services.content_service import ContentService
    from playlist_ingest.services.http_client import HttpClientService
    from playlist_ingest.services.store import DocumentStore

logger = logging.getLogger(__name__)

EPG_PROGRAMS = "epg_programs"

_TIME_RE = re.compile(
    r"^(?P<date>\d{8})T?(?P<hm>\d{4})(?P<sec>\d{2})?\s*"
    r"(?:(?P<z>Z)|(?P<sign>[+-])(?P<oh>\d{2}):?(?P<om>\d{2}))?$"
)
_XML_DECL_RE = re.compile(r"^\s*<\?xml[^>]*\?>")


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------

def parse_xmltv_time(value: str) -> datetime | None:
    """Parse ``20240115200000 +0100`` style stamps into UTC-aware datetimes.

    Seconds and the offset are optional; no offset means UTC.
    """
    if not value:
        return None
    m = _TIME_RE.match(value.strip())
    if not m:
        return None
    try:
        dt = datetime.strptime(m.group("date") + m.group("hm") + (m.group("sec") or "00"), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    offset = timedelta(0)
    if m.group("sign"):
        offset = timedelta(hours=int(m.group("oh")), minutes=int(m.group("om")))
        if m.group("sign") == "-":
            offset = -offset
    return (dt - offset).replace(tzinfo=timezone.utc)


def _text(elem, tag: str) -> str:
    child = elem.find(tag)
    if child is None or not child.text:
        return ""
    return child.text.strip()


def _program_from_element(elem) -> EpgProgram | None:
    start = parse_xmltv_time(elem.get("start", ""))
    stop = parse_xmltv_time(elem.get("stop", ""))
    if start is None or stop is None:
        logger.debug(f"Dropping programme with unreadable times: {elem.get('start')!r} - {elem.get('stop')!r}")
        return None
    if start >= stop:
        logger.debug(f"Dropping programme that ends before it starts on {elem.get('channel')!r}")
        return None

    icon = elem.find("icon")
    rating = elem.find("rating")
    try:
        return EpgProgram(
            epg_channel_id=elem.get("channel") or None,
            title=_text(elem, "title"),
            description=_text(elem, "desc"),
            start=start,
            end=stop,
            duration=int((stop - start).total_seconds()),
            category=_text(elem, "category"),
            icon=(icon.get("src") or "") if icon is not None else "",
            rating=_text(rating, "value") if rating is not None else "",
            is_catchup_available=bool(elem.get("catchup-id")),
        )
    except ModelValidationError as e:
        logger.debug(f"Dropping invalid programme: {e}")
        return None


def parse_xmltv_feed(xml) -> XmltvFeed:
    """Parse an XMLTV document in one pass, clearing elements as it goes.

    Raises :class:`ParseError` if the document is unreadable or its root is
    not ``<tv>``. Individual bad programmes are skipped.
    """
    if isinstance(xml, str):
        xml = _XML_DECL_RE.sub("", xml.lstrip("\ufeff"), count=1).encode("utf-8")
    elif not isinstance(xml, (bytes, bytearray)):
        raise ParseError(f"Cannot read XMLTV of type {type(xml).__name__}")

    feed = XmltvFeed()
    root_seen = False
    try:
        context = etree.iterparse(
            io.BytesIO(bytes(xml)), events=("start", "end"), recover=True, huge_tree=True
        )
        for event, elem in context:
            if not isinstance(elem.tag, str):
                continue
            if event == "start":
                if not root_seen:
                    root_seen = True
                    if elem.tag != "tv":
                        raise ParseError(f"Not an XMLTV document: root element is <{elem.tag}>")
                continue

            if elem.tag == "channel":
                channel_id = elem.get("id")
                if channel_id:
                    feed.channels.setdefault(channel_id, _text(elem, "display-name"))
            elif elem.tag == "programme":
                program = _program_from_element(elem)
                if program is not None:
                    feed.programs.append(program)
            else:
                continue

            elem.clear()
            parent = elem.getparent()
            if parent is not None:
                while elem.getprevious() is not None:
                    del parent[0]
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Invalid XMLTV document: {e}") from e

    if not root_seen:
        raise ParseError("Empty XMLTV document")

    logger.info(f"Parsed XMLTV: {len(feed.channels)} channels, {len(feed.programs)} programmes")
    return feed


def parse_xmltv(xml) -> list[EpgProgram]:
    return parse_xmltv_feed(xml).programs


# ------------------------------------------------------------------
# Channel mapping
# ------------------------------------------------------------------

def normalize_name(name: str) -> str:
    """Normalize a channel name for fuzzy comparison.

    Drops accents, country prefixes like ``US:`` or ``UK -``, bracketed tags
    and quality markers, so ``UK: BBC One HD`` and ``BBC One`` compare equal.
    """
    n = (name or "").strip().lower()
    n = "".join(c for c in unicodedata.normalize("NFD", n) if unicodedata.category(c) != "Mn")
    n = re.sub(r"^[a-z]{2,3}\s*[:|\-]\s+", "", n)
    n = re.sub(r"\s*[\(\[][^)\]]*[\)\]]\s*", " ", n)
    n = re.sub(r"\b(4k|uhd|fhd|hd|sd|hevc|h\.?265|h\.?264|backup|alt)\b", "", n)
    n = re.sub(r"[^\w\s+&]", " ", n)
    return re.sub(r"\s+", " ", n).strip()


def build_channel_map(channels: Iterable["Channel"]) -> tuple[dict[str, str], dict[str, str]]:
    """Return ``(epg_channel_id -> channel id, channel id -> name)``."""
    by_epg_id: dict[str, str] = {}
    names: dict[str, str] = {}
    for ch in channels:
        if not ch.id:
            continue
        if ch.epg_channel_id:
            by_epg_id.setdefault(ch.epg_channel_id, ch.id)
        names[ch.id] = ch.name
    return by_epg_id, names


def _fuzzy_lookup(
    feed_channels: dict[str, str], channel_names: dict[str, str], threshold: int
) -> dict[str, str]:
    """Match XMLTV display names to channel names, one best candidate each."""
    candidates = [(cid, normalize_name(name)) for cid, name in channel_names.items()]
    candidates = [(cid, n) for cid, n in candidates if n]
    matches: dict[str, str] = {}
    for epg_id, display_name in feed_channels.items():
        target = normalize_name(display_name)
        if not target:
            continue
        best_id, best_score = None, 0.0
        for cid, normalized in candidates:
            score = fuzz.token_sort_ratio(target, normalized)
            if score > best_score:
                best_id, best_score = cid, score
        if best_id is not None and best_score >= threshold:
            matches[epg_id] = best_id
    return matches


def map_programs(
    programs: list[EpgProgram],
    channel_map: dict[str, str],
    feed_channels: Optional[dict[str, str]] = None,
    channel_names: Optional[dict[str, str]] = None,
    threshold: int = 90,
) -> list[EpgProgram]:
    """Set ``channel_id`` on every program whose feed channel can be matched.

    Exact ``epg_channel_id`` hits win. With *feed_channels* and
    *channel_names* given, remaining feed channels are matched by name.
    """
    fuzzy: dict[str, str] = {}
    if feed_channels and channel_names:
        unmatched = {k: v for k, v in feed_channels.items() if k not in channel_map}
        fuzzy = _fuzzy_lookup(unmatched, channel_names, threshold)
        if fuzzy:
            logger.info(f"Matched {len(fuzzy)} EPG channel(s) by name")

    mapped = []
    for p in programs:
        channel_id = channel_map.get(p.epg_channel_id or "") or fuzzy.get(p.epg_channel_id or "")
        mapped.append(p.model_copy(update={"channel_id": channel_id}))
    return mapped


# ------------------------------------------------------------------
# Service
# ------------------------------------------------------------------

class EpgService:
    """Imports XMLTV feeds into the store and answers guide queries."""

    def __init__(
        self,
        store: "DocumentStore",
        http_client: "HttpClientService",
        config_service: "ConfigService",
        content_service: "ContentService",
    ):
        self.store = store
        self.http_client = http_client
        self.config_service = config_service
        self.content_service = content_service

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_programs(self, programs: list[EpgProgram], batch_size: Optional[int] = None) -> int:
        batch_size = max(1, min(batch_size or self.config_service.options.epg_batch_size, 500))
        written = 0
        for i in range(0, len(programs), batch_size):
            chunk = programs[i:i + batch_size]
            self.store.batch_write(EPG_PROGRAMS, [(p.doc_key, p.to_document()) for p in chunk], merge=True)
            written += len(chunk)
        logger.info(f"Upserted {written} EPG programme(s)")
        return written

    async def import_from_url(self, url: str, user_id: str) -> EpgImportResult:
        opts = self.config_service.options
        try:
            logger.info(f"Fetching EPG from {url}")
            xml = await self.http_client.fetch_text(
                url, timeout=opts.fetch_timeout, max_retries=opts.fetch_max_retries
            )
            feed = parse_xmltv_feed(xml)
            if not feed.programs:
                return EpgImportResult(success=False, error="No programs found in XMLTV")

            by_epg_id, names = build_channel_map(self.content_service.list_channels_for_user(user_id))
            programs = map_programs(
                feed.programs, by_epg_id, feed.channels, names, threshold=opts.epg_fuzzy_threshold
            )
            mapped = sum(1 for p in programs if p.channel_id)
            imported = self.upsert_programs(programs)
        except IngestError as e:
            logger.error(f"EPG import from {url} failed: {e}")
            return EpgImportResult(success=False, error=str(e))

        logger.info(f"EPG import from {url}: {imported} programmes, {mapped} mapped")
        return EpgImportResult(success=True, imported=imported, mapped=mapped, unmapped=imported - mapped)

    async def import_from_urls(self, urls: list[str], user_id: str) -> list[EpgImportResult]:
        opts = self.config_service.options
        results = await gather_in_batches(
            [lambda u=u: self.import_from_url(u, user_id) for u in urls],
            batch_size=opts.fetch_concurrency,
            pause=opts.fetch_batch_pause,
        )
        return [
            r if isinstance(r, EpgImportResult) else EpgImportResult(success=False, error=str(r))
            for r in results
        ]

    def clear_old(self, days: int = 7, batch_size: int = 500) -> int:
        """Delete programmes that ended at least *days* days ago."""
        cutoff = int((datetime.now(timezone.utc) - timedelta(days=days)).timestamp())
        deleted = 0
        while True:
            docs = self.store.query(EPG_PROGRAMS, where=[("end_ts", "<=", cutoff)], limit=batch_size)
            if docs:
                deleted += self.store.batch_delete(EPG_PROGRAMS, [d["id"] for d in docs])
            if len(docs) < batch_size:
                break
        logger.info(f"Cleared {deleted} EPG programme(s) older than {days} day(s)")
        return deleted

    def clear_all(self) -> int:
        return self.clear_old(0)

    # ------------------------------------------------------------------
    # Guide queries
    # ------------------------------------------------------------------

    def _window(self, field: str, value: str, start: datetime, end: datetime) -> list[EpgProgram]:
        docs = self.store.query(
            EPG_PROGRAMS,
            where=[
                (field, "==", value),
                ("end_ts", ">", int(start.timestamp())),
                ("start_ts", "<", int(end.timestamp())),
            ],
            order_by="start_ts",
        )
        return [EpgProgram.model_validate(d) for d in docs]

    def programs_for_channel(
        self,
        channel_id: str,
        start: datetime,
        end: datetime,
        epg_channel_id: Optional[str] = None,
    ) -> list[EpgProgram]:
        programs = self._window("channel_id", channel_id, start, end)
        if not programs and epg_channel_id:
            programs = self._window("epg_channel_id", epg_channel_id, start, end)
        return programs

    async def guide_for_channels(
        self, channels: list["Channel"], start: datetime, end: datetime
    ) -> dict[str, list[EpgProgram]]:
        opts = self.config_service.options

        async def one(ch: "Channel") -> list[EpgProgram]:
            return self.programs_for_channel(ch.id, start, end, ch.epg_channel_id)

        results = await gather_in_batches(
            [lambda ch=ch: one(ch) for ch in channels],
            batch_size=opts.fetch_concurrency,
            pause=0,
        )
        guide: dict[str, list[EpgProgram]] = {}
        for ch, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error(f"Guide lookup failed for channel {ch.id}: {result}")
                guide[ch.id] = []
            else:
                guide[ch.id] = result
        return guide

    def now_next(
        self, channel_id: str, epg_channel_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> dict:
        """Current and next programme for a channel, with progress percent."""
        result = {"current": None, "next": None}
        now = now or datetime.now(timezone.utc)
        programmes = self.programs_for_channel(channel_id, now, now + timedelta(days=1), epg_channel_id)
        if not programmes:
            return result

        current_idx = -1
        for i, prog in enumerate(programmes):
            if prog.start <= now < prog.end:
                current_idx = i
                break

        if current_idx >= 0:
            current = programmes[current_idx]
            duration = (current.end - current.start).total_seconds()
            elapsed = (now - current.start).total_seconds()
            result["current"] = {
                "title": current.title,
                "description": current.description,
                "start": int(current.start.timestamp()),
                "stop": int(current.end.timestamp()),
                "progress_pct": min(round(elapsed / duration * 100, 1), 100.0),
            }
            upcoming = programmes[current_idx + 1:]
        else:
            upcoming = [p for p in programmes if p.start > now]

        if upcoming:
            nxt = upcoming[0]
            result["next"] = {"title": nxt.title, "start": int(nxt.start.timestamp())}
        return result
