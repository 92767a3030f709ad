"""Audio format records, ranking and signed-URL expiry parsing."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

DEVICE_PREFERRED_BONUS = 1000
_DEVICE_CONTAINERS = {"m4a", "mp4"}
_NO_CODEC = {None, "", "none"}


def _coerce_int(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(round(number))


def _coerce_str(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_device_preferred(mime_type, container) -> bool:
    mime = (mime_type or "").lower()
    return "audio/mp4" in mime or (container or "").lower() in _DEVICE_CONTAINERS


@dataclass(frozen=True)
class FormatDescriptor:
    identifier: int | None
    url: str | None
    mime_type: str | None
    container: str | None
    codecs: str | None
    audio_bitrate_kbps: int | None
    content_length: int | None
    has_audio: bool = True
    has_video: bool = False

    @property
    def is_preferred_for_device(self) -> bool:
        return is_device_preferred(self.mime_type, self.container)

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    @property
    def base_mime_type(self) -> str | None:
        if not self.mime_type:
            return None
        return self.mime_type.split(";", 1)[0].strip() or None

    @classmethod
    def from_upstream(cls, raw: dict) -> "FormatDescriptor":
        """Build a descriptor from a yt-dlp format dict, tolerating missing fields."""
        raw = raw if isinstance(raw, dict) else {}
        acodec = _coerce_str(raw.get("acodec"))
        vcodec = _coerce_str(raw.get("vcodec"))
        ext = _coerce_str(raw.get("ext"))
        container = ext.lower() if ext else None
        has_audio = acodec not in _NO_CODEC
        has_video = vcodec not in _NO_CODEC

        mime_type = _coerce_str(raw.get("mime_type") or raw.get("mimeType"))
        if mime_type is None and container:
            kind = "video" if has_video else "audio"
            subtype = "mp4" if container == "m4a" else container
            mime_type = f"{kind}/{subtype}"
            if acodec and has_audio:
                mime_type += f'; codecs="{acodec}"'

        bitrate = raw.get("abr")
        if bitrate is None and not has_video:
            bitrate = raw.get("tbr")
        # filesize_approx is an estimate and cannot back byte-range arithmetic
        content_length = raw.get("filesize")
        format_id = str(raw.get("format_id") or "").strip()

        return cls(
            identifier=int(format_id) if format_id.isdigit() else None,
            url=_coerce_str(raw.get("url")),
            mime_type=mime_type,
            container=container,
            codecs=acodec if has_audio else None,
            audio_bitrate_kbps=_coerce_int(bitrate),
            content_length=_coerce_int(content_length),
            has_audio=has_audio,
            has_video=has_video,
        )

    def to_dict(self) -> dict:
        return {
            "itag": self.identifier,
            "mimeType": self.mime_type,
            "container": self.container,
            "codecs": self.codecs,
            "audioBitrateKbps": self.audio_bitrate_kbps,
            "contentLength": self.content_length,
            "iosPreferred": self.is_preferred_for_device,
        }


def format_score(fmt: FormatDescriptor) -> int:
    bonus = DEVICE_PREFERRED_BONUS if fmt.is_preferred_for_device else 0
    return bonus + (fmt.audio_bitrate_kbps or 0)


def rank_audio_formats(formats) -> list[FormatDescriptor]:
    """Sort best-first by device preference bonus plus bitrate; equal scores keep input order."""
    return sorted(formats, key=format_score, reverse=True)


def parse_expiry(url) -> str | None:
    """Read the signed URL's ``expire`` query parameter as an ISO-8601 UTC timestamp."""
    if not url or not isinstance(url, str):
        return None
    try:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return None
        values = parse_qs(parsed.query).get("expire")
        if not values:
            return None
        seconds = float(values[0])
        if not math.isfinite(seconds):
            return None
        stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def expiry_epoch_ms(expires_at) -> int | None:
    if not expires_at:
        return None
    try:
        stamp = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return int(round(stamp.timestamp() * 1000))


def content_length_from_url(url) -> int | None:
    """Byte length advertised by a signed media URL's ``clen`` parameter."""
    if not url or not isinstance(url, str):
        return None
    try:
        values = parse_qs(urlparse(url).query).get("clen")
    except ValueError:
        return None
    if not values:
        return None
    length = _coerce_int(values[0])
    return length if length and length > 0 else None
