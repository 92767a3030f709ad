"""Single-range ``Range: bytes=`` parsing for the playback proxy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from engine.errors import INVALID_RANGE_HEADER, RANGE_NOT_SATISFIABLE, AppError

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"

    @property
    def request_header(self) -> str:
        return f"bytes={self.start}-{self.end}"


def _unsatisfiable(code, message, total):
    return AppError(416, message, code, headers={"Content-Range": f"bytes */{total}"})


def parse_range_header(range_header, total) -> ByteRange | None:
    """Clamp an inbound range against ``total``.

    Returns None when there is nothing to plan (no header, or the length is
    unknown). Raises a 416 AppError for malformed or unsatisfiable ranges.
    """
    if not range_header or not str(range_header).strip() or total is None:
        return None
    match = _RANGE_RE.match(str(range_header))
    if not match:
        raise _unsatisfiable(INVALID_RANGE_HEADER, f"Invalid Range header: {range_header}", total)
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        raise _unsatisfiable(INVALID_RANGE_HEADER, f"Invalid Range header: {range_header}", total)

    last = total - 1
    if not raw_start:
        suffix = int(raw_end)
        if suffix <= 0:
            raise _unsatisfiable(RANGE_NOT_SATISFIABLE, f"Range not satisfiable: {range_header}", total)
        start, end = max(0, total - suffix), last
    else:
        start = int(raw_start)
        end = min(int(raw_end), last) if raw_end else last

    if start >= total or end < start:
        raise _unsatisfiable(RANGE_NOT_SATISFIABLE, f"Range not satisfiable: {range_header}", total)
    return ByteRange(start=start, end=end, total=total)


def upstream_range_header(range_header, byte_range):
    """Header to forward upstream: the clamped range, or the raw one when length is unknown."""
    if byte_range is not None:
        return byte_range.request_header
    if range_header and str(range_header).strip():
        return str(range_header).strip()
    return None


def planned_headers(byte_range, total) -> dict:
    if byte_range is not None:
        return {"Content-Range": byte_range.content_range, "Content-Length": str(byte_range.length)}
    if total is not None:
        return {"Content-Length": str(total)}
    return {}
