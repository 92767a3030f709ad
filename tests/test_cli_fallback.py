from __future__ import annotations

import asyncio
import io
import subprocess
import threading

from engine.cli_fallback import (
    CLI_FORMAT_SELECTOR,
    CLI_MAX_OUTPUT_BYTES,
    CLI_TIMEOUT_SECONDS,
    CliFallbackResolver,
    build_cli_argv,
    first_url_line,
)


class _FakeProcess:
    def __init__(self, returncode=0, stdout=b"", stderr=b""):
        self.pid = 4242
        self.returncode = returncode
        self.stdout = io.BufferedReader(io.BytesIO(stdout))
        self.stderr = io.BufferedReader(io.BytesIO(stderr))
        self.killed = False

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class _ChunkedStdout:
    def __init__(self, data, chunk=16):
        self._data = data
        self._chunk = chunk
        self.consumed = 0
        self.closed = False

    def read1(self, size=-1):
        piece = self._data[self.consumed : self.consumed + self._chunk]
        self.consumed += len(piece)
        return piece

    def close(self):
        self.closed = True


class _HangingStdout:
    """Blocks reads until the owning process is killed."""

    def __init__(self):
        self.released = threading.Event()
        self.closed = False

    def read1(self, size=-1):
        self.released.wait(5)
        return b""

    def close(self):
        self.closed = True


class _HangingProcess(_FakeProcess):
    def __init__(self):
        super().__init__()
        self.stdout = _HangingStdout()

    def kill(self):
        super().kill()
        self.stdout.released.set()


def _patch_popen(monkeypatch, proc, captured=None):
    def _fake_popen(argv, **kwargs):
        if captured is not None:
            captured["argv"] = argv
            captured["kwargs"] = kwargs
        if isinstance(proc, Exception):
            raise proc
        return proc

    monkeypatch.setattr("engine.cli_fallback.subprocess.Popen", _fake_popen)


def test_build_cli_argv_requests_audio_only_url() -> None:
    argv = build_cli_argv("/usr/local/bin/yt-dlp", "abc123")

    assert argv[0] == "/usr/local/bin/yt-dlp"
    assert argv[argv.index("-f") + 1] == CLI_FORMAT_SELECTOR
    assert "--get-url" in argv
    assert argv[-1] == "https://www.youtube.com/watch?v=abc123"


def test_first_url_line_skips_noise() -> None:
    output = "WARNING: something\n\n  https://rr1.googlevideo.com/videoplayback?expire=1  \nhttps://second.example\n"

    assert first_url_line(output) == "https://rr1.googlevideo.com/videoplayback?expire=1"
    assert first_url_line("no urls here\nftp://nope") is None


def test_default_limits() -> None:
    resolver = CliFallbackResolver()

    assert resolver.timeout == CLI_TIMEOUT_SECONDS == 20
    assert resolver.max_output_bytes == CLI_MAX_OUTPUT_BYTES == 1024 * 1024


def test_resolve_url_returns_first_url(monkeypatch) -> None:
    captured = {}
    proc = _FakeProcess(stdout=b"https://rr1.googlevideo.com/videoplayback?itag=140\n")
    _patch_popen(monkeypatch, proc, captured)

    url = asyncio.run(CliFallbackResolver("yt-dlp").resolve_url("abc123"))

    assert url == "https://rr1.googlevideo.com/videoplayback?itag=140"
    assert captured["argv"][0] == "yt-dlp"
    assert captured["kwargs"]["stdout"] == subprocess.PIPE
    assert captured["kwargs"]["stdin"] == subprocess.DEVNULL
    assert proc.killed is False


def test_resolve_url_kills_process_on_timeout(monkeypatch) -> None:
    proc = _HangingProcess()
    _patch_popen(monkeypatch, proc)

    assert CliFallbackResolver(timeout=0.05).resolve_url_sync("abc123") is None
    assert proc.killed
    assert proc.stdout.closed


def test_resolve_url_swallows_missing_binary(monkeypatch) -> None:
    _patch_popen(monkeypatch, FileNotFoundError(2, "No such file or directory", "missing-yt-dlp"))

    assert CliFallbackResolver("missing-yt-dlp").resolve_url_sync("abc123") is None


def test_resolve_url_swallows_nonzero_exit(monkeypatch) -> None:
    _patch_popen(monkeypatch, _FakeProcess(returncode=1, stdout=b"https://x.example\n", stderr=b"ERROR: blocked"))

    assert CliFallbackResolver().resolve_url_sync("abc123") is None


def test_resolve_url_kills_process_when_output_exceeds_cap(monkeypatch) -> None:
    data = b"https://x.example\n" + b"a" * 4096
    proc = _FakeProcess()
    proc.stdout = _ChunkedStdout(data)
    _patch_popen(monkeypatch, proc)

    assert CliFallbackResolver(max_output_bytes=32).resolve_url_sync("abc123") is None
    assert proc.killed
    assert proc.stdout.consumed < len(data)
    assert proc.stdout.closed


def test_resolve_url_without_url_line(monkeypatch) -> None:
    _patch_popen(monkeypatch, _FakeProcess(stdout=b"nothing useful\n"))

    assert CliFallbackResolver().resolve_url_sync("abc123") is None
