"""In-memory cache of resolved playback descriptors keyed by track id.

Entries are only touched on the event loop thread, between awaits, so no lock
is taken. Nothing is persisted; a restart starts with an empty cache.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from engine.formats import expiry_epoch_ms, parse_expiry
from engine.json_utils import log_event

MIN_TTL_MS = 5_000
EXPIRY_MARGIN_MS = 30_000
FALLBACK_TTL_MS = 3 * 60 * 1000


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def compute_expires_at_ms(expires_at, now_ms: int) -> int:
    """Retire entries 30s before the signed URL dies, but never sooner than 5s from now."""
    upstream_ms = expiry_epoch_ms(expires_at)
    if upstream_ms is None:
        return now_ms + FALLBACK_TTL_MS
    return max(now_ms + MIN_TTL_MS, upstream_ms - EXPIRY_MARGIN_MS)


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at_ms: int


class ResolutionCache:
    def __init__(self, clock: Callable[[], int] | None = None):
        self._clock = clock or _wall_clock_ms
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, track_id):
        return track_id in self._entries

    def entry(self, track_id) -> CacheEntry | None:
        return self._entries.get(track_id)

    def get(self, track_id):
        entry = self._entries.get(track_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at_ms:
            self._entries.pop(track_id, None)
            log_event(logging.DEBUG, "playback_cache_expired", track_id=track_id)
            return None
        return entry.value

    def put(self, resolution) -> CacheEntry:
        entry = CacheEntry(
            value=resolution,
            expires_at_ms=compute_expires_at_ms(resolution.expires_at, self._clock()),
        )
        self._entries[resolution.track_id] = entry
        return entry

    def invalidate(self, track_id) -> None:
        if self._entries.pop(track_id, None) is not None:
            log_event(logging.INFO, "playback_cache_invalidated", track_id=track_id)

    def patch_url(self, track_id, new_url):
        entry = self._entries.get(track_id)
        if entry is None:
            return None
        patched = dataclasses.replace(entry.value, direct_url=new_url, expires_at=parse_expiry(new_url))
        self.put(patched)
        return patched
