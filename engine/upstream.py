"""yt-dlp backed metadata fetcher for playback resolution."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import anyio
from yt_dlp import YoutubeDL

from engine.errors import YOUTUBE_BOT_CHECK, AppError
from engine.formats import FormatDescriptor

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={track_id}"

_BOT_CHECK_RE = re.compile(r"confirm you(?:.?re| are) not a bot|sign in to confirm", re.IGNORECASE)

BOT_CHECK_GUIDANCE = (
    "YouTube is asking to confirm this server is not a bot. "
    "Configure YTDL_COOKIES_JSON (JSON cookie export) or YTMUSIC_COOKIES "
    "(raw Cookie header) from a signed-in browser session and restart the server."
)


@dataclass(frozen=True)
class UpstreamTrack:
    formats: tuple = field(default_factory=tuple)
    title: str = ""
    author: str | None = None
    duration_seconds: int = 0


def is_bot_check_message(message) -> bool:
    return bool(_BOT_CHECK_RE.search(str(message or "")))


def translate_upstream_error(exc):
    """Return a YOUTUBE_BOT_CHECK AppError for anti-automation failures, else None."""
    if is_bot_check_message(str(exc)):
        return AppError(503, BOT_CHECK_GUIDANCE, YOUTUBE_BOT_CHECK, details={"upstream": str(exc)})
    return None


def track_from_info(info) -> UpstreamTrack:
    info = info if isinstance(info, dict) else {}
    formats = tuple(FormatDescriptor.from_upstream(raw) for raw in info.get("formats") or [])
    author = info.get("artist") or info.get("uploader") or info.get("channel")
    try:
        duration = int(float(info.get("duration") or 0))
    except (TypeError, ValueError):
        duration = 0
    return UpstreamTrack(
        formats=formats,
        title=str(info.get("title") or ""),
        author=str(author) if author else None,
        duration_seconds=duration,
    )


class YtdlpMetadataFetcher:
    """Runs yt-dlp extraction in a worker thread and returns coerced format records."""

    def __init__(self, *, region_gl="US", region_hl="en", extra_opts=None):
        self.region_gl = region_gl
        self.region_hl = region_hl
        self._extra_opts = dict(extra_opts or {})

    @classmethod
    def from_settings(cls, settings):
        return cls(region_gl=settings.region_gl, region_hl=settings.region_hl)

    def build_opts(self) -> dict:
        opts = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "skip_download": True,
            "format": "bestaudio/best",
            "geo_bypass_country": self.region_gl,
            "http_headers": {"Accept-Language": f"{self.region_hl},en;q=0.8"},
        }
        opts.update(self._extra_opts)
        return opts

    def _extract(self, track_id, agent):
        with YoutubeDL(self.build_opts()) as ydl:
            if agent:
                for cookie in agent.cookies:
                    ydl.cookiejar.set_cookie(cookie)
            return ydl.extract_info(WATCH_URL.format(track_id=track_id), download=False)

    def get_formats(self, track_id, agent=None) -> UpstreamTrack:
        try:
            info = self._extract(track_id, agent)
        except Exception as exc:
            translated = translate_upstream_error(exc)
            if translated is not None:
                logger.warning("Upstream bot check for track_id=%s", track_id)
                raise translated from exc
            raise
        return track_from_info(info)

    async def fetch(self, track_id, agent=None) -> UpstreamTrack:
        return await anyio.to_thread.run_sync(self.get_formats, track_id, agent)
