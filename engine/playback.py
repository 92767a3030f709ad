"""Playback resolution and the byte-range aware streaming proxy.

``PlaybackResolver.resolve`` turns a track id into a signed, time-limited audio
URL (served from ``ResolutionCache`` while it is fresh). ``proxy`` fetches that
URL on the client's behalf: a 403 invalidates the cache entry and re-resolves
once, a second 403 falls back to the yt-dlp CLI, and anything else non-2xx
surfaces as PROXY_STREAM_ERROR.

Two concurrent requests for the same uncached track can both miss the cache
and both hit upstream. That costs an extra extraction, not correctness, so
there is no single-flight de-duplication here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import quote

import anyio
import requests

from engine.byte_ranges import parse_range_header, planned_headers, upstream_range_header
from engine.cli_fallback import CliFallbackResolver
from engine.cookies import CookieAgentBuilder
from engine.errors import (
    AUDIO_URL_MISSING,
    NO_AUDIO_FORMATS,
    PROXY_DISABLED,
    PROXY_STREAM_ERROR,
    RESOLVER_DISABLED,
    AppError,
)
from engine.formats import FormatDescriptor, content_length_from_url, parse_expiry, rank_audio_formats
from engine.json_utils import log_event
from engine.playback_cache import ResolutionCache
from engine.upstream import YtdlpMetadataFetcher

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 5
STREAM_CHUNK_SIZE = 64 * 1024
SOURCE_PRIMARY = "primary"
SOURCE_CLI_FALLBACK = "cli-fallback"
SOURCE_HEADER = "X-Playback-Source"
PROXY_PATH = "/api/playback/{track_id}/stream"
UPSTREAM_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

_OK_STATUSES = (200, 206)
_MIRRORED_HEADERS = {
    "content-type": "Content-Type",
    "content-length": "Content-Length",
    "content-range": "Content-Range",
    "accept-ranges": "Accept-Ranges",
}


@dataclass(frozen=True)
class ResolvedPlayback:
    track_id: str
    title: str
    author: str | None
    duration_seconds: int
    selected_format: FormatDescriptor
    direct_url: str
    expires_at: str | None
    proxy_url: str | None
    candidate_formats: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "videoId": self.track_id,
            "title": self.title,
            "author": self.author,
            "durationSec": self.duration_seconds,
            "selected": self.selected_format.to_dict(),
            "directUrl": self.direct_url,
            "expiresAt": self.expires_at,
            "proxyUrl": self.proxy_url,
            "candidates": [fmt.to_dict() for fmt in self.candidate_formats],
        }


def _stream_error(message, **details):
    return AppError(502, message, PROXY_STREAM_ERROR, details=details or None)


class ProxyStream:
    """An open upstream audio response ready to be relayed to the client."""

    def __init__(self, *, track_id, status_code, headers, source, response, chunk_size=STREAM_CHUNK_SIZE):
        self.track_id = track_id
        self.status_code = status_code
        self.headers = headers
        self.source = source
        self._response = response
        self._chunk_size = chunk_size
        self._chunks = None
        self._first_chunk = None
        self._closed = False

    @property
    def media_type(self):
        return self.headers.get("Content-Type")

    async def prime(self):
        """Read the first chunk so a failure here can still become a JSON error."""
        if self._chunks is not None:
            return
        self._chunks = self._response.iter_content(chunk_size=self._chunk_size)
        try:
            self._first_chunk = await anyio.to_thread.run_sync(next, self._chunks, None)
        except (requests.RequestException, OSError) as exc:
            self.close()
            log_event(logging.ERROR, "playback_proxy_first_chunk_failed", track_id=self.track_id, error=str(exc))
            raise _stream_error(f"Upstream audio stream failed: {exc}") from exc

    async def iter_body(self):
        try:
            await self.prime()
            if self._first_chunk:
                yield self._first_chunk
            while True:
                chunk = await anyio.to_thread.run_sync(next, self._chunks, None)
                if chunk is None:
                    break
                if chunk:
                    yield chunk
        except (requests.RequestException, OSError) as exc:
            # Headers are already on the wire; re-raising aborts the connection.
            log_event(logging.ERROR, "playback_proxy_stream_aborted", track_id=self.track_id, error=str(exc))
            raise
        finally:
            self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self._response.close()
        except Exception:
            logger.debug("Closing upstream response failed track_id=%s", self.track_id, exc_info=True)


class PlaybackResolver:
    def __init__(
        self,
        *,
        fetcher,
        cookie_builder=None,
        cli_fallback=None,
        cache=None,
        session=None,
        resolver_enabled=True,
        proxy_enabled=False,
        timeout=(10.0, 30.0),
    ):
        self.fetcher = fetcher
        self.cookie_builder = cookie_builder or CookieAgentBuilder()
        self.cli_fallback = cli_fallback or CliFallbackResolver()
        self.cache = cache if cache is not None else ResolutionCache()
        self.session = session
        self.resolver_enabled = bool(resolver_enabled)
        self.proxy_enabled = bool(proxy_enabled)
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, **overrides):
        kwargs = {
            "fetcher": YtdlpMetadataFetcher.from_settings(settings),
            "cookie_builder": CookieAgentBuilder.from_settings(settings),
            "cli_fallback": CliFallbackResolver(settings.ytdlp_binary),
            "resolver_enabled": settings.resolver_enabled,
            "proxy_enabled": settings.proxy_enabled,
            "timeout": (settings.upstream_connect_timeout, settings.upstream_read_timeout),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def is_enabled(self) -> bool:
        return self.resolver_enabled

    def is_proxy_enabled(self) -> bool:
        return self.resolver_enabled and self.proxy_enabled

    def _proxy_url_for(self, track_id):
        if not self.is_proxy_enabled():
            return None
        return PROXY_PATH.format(track_id=quote(track_id, safe=""))

    async def resolve(self, track_id) -> ResolvedPlayback:
        if not self.is_enabled():
            raise AppError(501, "Playback resolver is disabled", RESOLVER_DISABLED)

        cached = self.cache.get(track_id)
        if cached is not None:
            log_event(logging.DEBUG, "playback_cache_hit", track_id=track_id)
            return cached

        agent = self.cookie_builder.build()
        upstream = await self.fetcher.fetch(track_id, agent or None)

        audio_only = rank_audio_formats(fmt for fmt in upstream.formats if fmt.is_audio_only)
        if not audio_only:
            raise AppError(404, "No audio formats available for this video", NO_AUDIO_FORMATS)

        selected = audio_only[0]
        if not selected.url:
            raise AppError(502, "Resolved audio format has no direct URL", AUDIO_URL_MISSING)

        playback = ResolvedPlayback(
            track_id=track_id,
            title=upstream.title,
            author=upstream.author,
            duration_seconds=upstream.duration_seconds,
            selected_format=selected,
            direct_url=selected.url,
            expires_at=parse_expiry(selected.url),
            proxy_url=self._proxy_url_for(track_id),
            candidate_formats=tuple(audio_only[:MAX_CANDIDATES]),
        )
        entry = self.cache.put(playback)
        log_event(
            logging.INFO,
            "playback_resolved",
            track_id=track_id,
            itag=selected.identifier,
            container=selected.container,
            bitrate_kbps=selected.audio_bitrate_kbps,
            expires_at=playback.expires_at,
            cache_expires_at_ms=entry.expires_at_ms,
        )
        return playback

    def _fetch_sync(self, url, range_value):
        if self.session is None:
            self.session = requests.Session()
        headers = {"User-Agent": UPSTREAM_USER_AGENT, "Accept": "*/*"}
        if range_value:
            headers["Range"] = range_value
        return self.session.get(url, headers=headers, stream=True, timeout=self.timeout)

    async def _fetch(self, track_id, url, range_value):
        try:
            return await anyio.to_thread.run_sync(self._fetch_sync, url, range_value)
        except requests.RequestException as exc:
            log_event(logging.ERROR, "playback_upstream_request_failed", track_id=track_id, error=str(exc))
            raise _stream_error(f"Upstream audio request failed: {exc}") from exc

    async def proxy(self, track_id, range_header=None) -> ProxyStream:
        if not self.is_proxy_enabled():
            raise AppError(501, "Playback proxy is disabled", PROXY_DISABLED)

        playback = await self.resolve(track_id)
        total = playback.selected_format.content_length
        byte_range = parse_range_header(range_header, total)
        source = SOURCE_PRIMARY

        response = await self._fetch(track_id, playback.direct_url, upstream_range_header(range_header, byte_range))
        if response.status_code == 403:
            response.close()
            log_event(logging.WARNING, "playback_upstream_forbidden", track_id=track_id, action="re_resolve")
            self.cache.invalidate(track_id)
            playback = await self.resolve(track_id)
            total = playback.selected_format.content_length
            byte_range = parse_range_header(range_header, total)
            response = await self._fetch(track_id, playback.direct_url, upstream_range_header(range_header, byte_range))

        if response.status_code == 403:
            fallback_url = await self.cli_fallback.resolve_url(track_id)
            log_event(
                logging.WARNING,
                "playback_upstream_forbidden",
                track_id=track_id,
                action="cli_fallback",
                fallback_available=bool(fallback_url),
            )
            if fallback_url:
                response.close()
                # the CLI may pick a different itag, so only its own clen is trusted
                total = content_length_from_url(fallback_url)
                byte_range = parse_range_header(range_header, total)
                response = await self._fetch(track_id, fallback_url, upstream_range_header(range_header, byte_range))
                if response.status_code in _OK_STATUSES:
                    self.cache.patch_url(track_id, fallback_url)
                    source = SOURCE_CLI_FALLBACK

        if response.status_code not in _OK_STATUSES:
            status = response.status_code
            response.close()
            raise _stream_error(f"Upstream audio fetch returned HTTP {status}", upstreamStatus=status)

        headers = self._response_headers(playback, total, byte_range, response, source)
        return ProxyStream(
            track_id=track_id,
            status_code=response.status_code,
            headers=headers,
            source=source,
            response=response,
        )

    def _response_headers(self, playback, total, byte_range, response, source) -> dict:
        if response.status_code == 206:
            headers = planned_headers(byte_range, total)
        else:
            # upstream ignored the range and is sending the whole body
            headers = planned_headers(None, total)
        for key, name in _MIRRORED_HEADERS.items():
            value = response.headers.get(key)
            if value:
                headers[name] = value
        if "Content-Type" not in headers:
            headers["Content-Type"] = playback.selected_format.base_mime_type or "application/octet-stream"
        headers["Accept-Ranges"] = "bytes"
        headers["Cache-Control"] = "no-store"
        headers[SOURCE_HEADER] = source
        return headers
