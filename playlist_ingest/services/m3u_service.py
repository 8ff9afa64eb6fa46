"""M3U parsing service — single-pass playlist parser with content classification."""
from __future__ import annotations

import io
import logging
import re
from typing import Iterable, Optional

from playlist_ingest.errors import ParseError
from playlist_ingest.models.config import ClassificationRules
from playlist_ingest.models.content import EpisodeInfo, ParsedPlaylist, RawPlaylistItem

logger = logging.getLogger(__name__)

CHANNEL = "channel"
MOVIE = "movie"
SERIES = "series"

UNNAMED = "Unnamed Channel"

_ATTR_RE = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')
_DURATION_RE = re.compile(r"^-?\d+(\.\d+)?$")

# EXTINF attribute -> RawPlaylistItem field
_ATTRIBUTES = {
    "tvg-id": "tvg_id",
    "tvg-name": "tvg_name",
    "tvg-logo": "logo",
    "group-title": "category",
    "tvg-language": "language",
    "tvg-country": "country",
}


class MalformedExtinf(ValueError):
    pass


class ContentClassifier:
    """Assigns an entry to channel, movie or series using configurable rules."""

    def __init__(self, rules: Optional[ClassificationRules] = None):
        self.rules = rules or ClassificationRules()
        self.movie_keywords = [k.lower() for k in self.rules.movie_keywords]
        self.movie_url_markers = [m.lower() for m in self.rules.movie_url_markers]
        self.series_keywords = [k.lower() for k in self.rules.series_keywords]
        self.series_url_markers = [m.lower() for m in self.rules.series_url_markers]
        self.episode_patterns = [re.compile(p, re.IGNORECASE) for p in self.rules.episode_patterns]

    def has_episode_pattern(self, text: str) -> bool:
        return any(p.search(text) for p in self.episode_patterns)

    def classify(self, item: RawPlaylistItem) -> str:
        name = item.name.lower()
        category = item.category.lower()
        url = item.stream_url.lower()

        if any(m in url for m in self.movie_url_markers):
            return MOVIE
        if any(k in name for k in self.movie_keywords):
            return MOVIE

        # An SxxEyy marker overrides a "Movies" group.
        if self.has_episode_pattern(name) or self.has_episode_pattern(url):
            return SERIES

        if any(k in category or k in url for k in self.movie_keywords):
            return MOVIE

        if any(k in category for k in self.series_keywords):
            return SERIES
        if any(m in url for m in self.series_url_markers):
            return SERIES

        return CHANNEL

    def extract_episode_info(self, name: str) -> Optional[EpisodeInfo]:
        for pattern in self.episode_patterns:
            match = pattern.search(name)
            if not match:
                continue
            series_name = (name[:match.start()] + " " + name[match.end():]).strip()
            return EpisodeInfo(
                season_number=int(match.group("season")),
                episode_number=int(match.group("episode")),
                series_name=re.sub(r"\s{2,}", " ", series_name),
            )
        return None


_default_classifier: Optional[ContentClassifier] = None


def _classifier() -> ContentClassifier:
    global _default_classifier
    if _default_classifier is None:
        _default_classifier = ContentClassifier()
    return _default_classifier


def extract_episode_info(name: str, rules: Optional[ClassificationRules] = None) -> Optional[EpisodeInfo]:
    """Pull season/episode numbers out of names like ``Show S02E05`` or ``Show 2x05``."""
    classifier = ContentClassifier(rules) if rules else _classifier()
    return classifier.extract_episode_info(name)


def detect_content_type(item: RawPlaylistItem, rules: Optional[ClassificationRules] = None) -> str:
    classifier = ContentClassifier(rules) if rules else _classifier()
    return classifier.classify(item)


def _split_name(rest: str) -> tuple[str, str]:
    """Split the EXTINF body at the first comma outside a quoted value."""
    in_quotes = False
    for i, ch in enumerate(rest):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            return rest[:i], rest[i + 1:]
    return rest, ""


def parse_extinf_line(line: str) -> RawPlaylistItem:
    """Parse one ``#EXTINF:<duration> key="value"...,<name>`` line.

    The duration is optional; a missing or non-numeric token leaves it at
    ``-1``. Raises :class:`MalformedExtinf` if the directive has no ``:``.
    """
    directive, sep, body = line.partition(":")
    if not sep or directive.strip().upper() != "#EXTINF":
        raise MalformedExtinf(f"missing ':' in {line[:80]!r}")

    head, name = _split_name(body)
    item = RawPlaylistItem()
    token = head.split(None, 1)[0] if head.strip() else ""
    if _DURATION_RE.match(token):
        item.duration = float(token)

    for key, value in _ATTR_RE.findall(head):
        field = _ATTRIBUTES.get(key.lower())
        if field:
            setattr(item, field, value.strip())

    item.name = name.strip() or item.tvg_name or UNNAMED
    return item


class M3uParser:
    """Incremental parser: ``feed()`` lines one at a time, then ``result()``."""

    def __init__(self, rules: Optional[ClassificationRules] = None):
        self.classifier = ContentClassifier(rules) if rules else _classifier()
        self.channels: list[RawPlaylistItem] = []
        self.movies: list[RawPlaylistItem] = []
        self.series: list[RawPlaylistItem] = []
        self.categories: set[str] = set()
        self.skipped = 0
        self._pending: Optional[RawPlaylistItem] = None
        self._line_no = 0

    def feed(self, line: str) -> None:
        self._line_no += 1
        line = line.strip()
        if not line:
            return

        if line.upper().startswith("#EXTINF"):
            if self._pending is not None:
                logger.debug(f"Line {self._line_no}: EXTINF without URL replaced by a new entry")
            try:
                self._pending = parse_extinf_line(line)
            except MalformedExtinf as e:
                logger.warning(f"Skipping malformed EXTINF on line {self._line_no}: {e}")
                self._pending = None
                self.skipped += 1
            return

        if line.startswith("#"):
            return

        if self._pending is not None and line.lower().startswith(("http://", "https://")):
            item = self._pending
            self._pending = None
            item.stream_url = line
            self._add(item)

    def _add(self, item: RawPlaylistItem) -> None:
        kind = self.classifier.classify(item)
        if kind == MOVIE:
            self.movies.append(item)
        elif kind == SERIES:
            item.episode_info = self.classifier.extract_episode_info(item.name)
            self.series.append(item)
        else:
            self.channels.append(item)

        if item.category:
            self.categories.add(item.category)

    def feed_lines(self, lines: Iterable[str]) -> "M3uParser":
        for line in lines:
            self.feed(line)
        return self

    def result(self) -> ParsedPlaylist:
        return ParsedPlaylist(
            channels=self.channels,
            movies=self.movies,
            series=self.series,
            categories=sorted(self.categories),
        )


def _as_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, (bytes, bytearray)):
        try:
            return bytes(content).decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParseError(f"Playlist is not valid UTF-8 text: {e}") from e
    raise ParseError(f"Cannot read playlist of type {type(content).__name__}")


def parse_m3u(content, rules: Optional[ClassificationRules] = None) -> ParsedPlaylist:
    """Parse a whole M3U document in one forward pass."""
    text = _as_text(content)
    parser = M3uParser(rules).feed_lines(io.StringIO(text))
    result = parser.result()
    logger.info(
        f"Parsed M3U: {len(result.channels)} channels, {len(result.movies)} movies, "
        f"{len(result.series)} series, {len(result.categories)} categories"
        + (f" ({parser.skipped} malformed entries skipped)" if parser.skipped else "")
    )
    return result
