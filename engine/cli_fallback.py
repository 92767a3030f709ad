"""Last-resort audio URL resolution through the yt-dlp command line tool."""

from __future__ import annotations

import logging
import re
import subprocess
import threading

import anyio

logger = logging.getLogger(__name__)

CLI_TIMEOUT_SECONDS = 20
CLI_MAX_OUTPUT_BYTES = 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024
_STDERR_KEEP_BYTES = 8 * 1024
# itag 140 is the 128k AAC stream; fall back to any m4a, then any audio.
CLI_FORMAT_SELECTOR = "140/bestaudio[ext=m4a]/bestaudio"

_URL_LINE_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)


def build_cli_argv(binary, track_id):
    return [
        binary,
        "-f",
        CLI_FORMAT_SELECTOR,
        "--get-url",
        "--no-playlist",
        "--no-warnings",
        f"https://www.youtube.com/watch?v={track_id}",
    ]


def first_url_line(output):
    for line in (output or "").splitlines():
        candidate = line.strip()
        if _URL_LINE_RE.match(candidate):
            return candidate
    return None


def _read_capped(stream, limit):
    """Read ``stream`` to EOF, stopping as soon as more than ``limit`` bytes arrive."""
    buf = bytearray()
    while True:
        chunk = stream.read1(_READ_CHUNK_BYTES)
        if not chunk:
            return bytes(buf), False
        buf.extend(chunk)
        if len(buf) > limit:
            return bytes(buf[: limit + 1]), True


def _drain(stream, buf, keep):
    # stderr has to be consumed or the child blocks on a full pipe; only the head is kept
    while True:
        chunk = stream.read1(_READ_CHUNK_BYTES)
        if not chunk:
            return
        room = keep - len(buf)
        if room > 0:
            buf.extend(chunk[:room])


def _kill(proc):
    try:
        proc.kill()
    except OSError:
        logger.debug("yt-dlp CLI fallback already exited pid=%s", getattr(proc, "pid", None))


class CliFallbackResolver:
    """Best-effort resolver: every failure collapses to ``None``."""

    def __init__(self, binary="yt-dlp", *, timeout=CLI_TIMEOUT_SECONDS, max_output_bytes=CLI_MAX_OUTPUT_BYTES):
        self.binary = binary
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes

    def resolve_url_sync(self, track_id):
        argv = build_cli_argv(self.binary, track_id)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("yt-dlp CLI fallback could not start (%s) track_id=%s", exc, track_id)
            return None

        timed_out = threading.Event()

        def _kill_on_deadline():
            timed_out.set()
            _kill(proc)

        stderr_buf = bytearray()
        stderr_reader = threading.Thread(
            target=_drain, args=(proc.stderr, stderr_buf, _STDERR_KEEP_BYTES), daemon=True
        )
        deadline = threading.Timer(self.timeout, _kill_on_deadline)
        deadline.daemon = True
        stderr_reader.start()
        deadline.start()
        try:
            stdout, overflowed = _read_capped(proc.stdout, self.max_output_bytes)
            if overflowed:
                _kill(proc)
            returncode = proc.wait()
        finally:
            deadline.cancel()
            stderr_reader.join(timeout=1)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()

        if timed_out.is_set():
            logger.warning("yt-dlp CLI fallback timed out after %ss track_id=%s", self.timeout, track_id)
            return None
        if overflowed:
            logger.warning("yt-dlp CLI fallback output exceeded %d bytes track_id=%s", self.max_output_bytes, track_id)
            return None
        if returncode != 0:
            err = bytes(stderr_buf).decode("utf-8", errors="replace").strip()
            logger.warning(
                "yt-dlp CLI fallback failed rc=%s track_id=%s%s",
                returncode,
                track_id,
                f" err={err[:400]}" if err else "",
            )
            return None

        url = first_url_line(stdout.decode("utf-8", errors="replace"))
        if not url:
            logger.warning("yt-dlp CLI fallback printed no URL track_id=%s", track_id)
        return url

    async def resolve_url(self, track_id):
        return await anyio.to_thread.run_sync(self.resolve_url_sync, track_id)
