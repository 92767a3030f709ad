"""Application error taxonomy shared by the resolver and the HTTP surface."""

from __future__ import annotations

RESOLVER_DISABLED = "RESOLVER_DISABLED"
PROXY_DISABLED = "PROXY_DISABLED"
YOUTUBE_BOT_CHECK = "YOUTUBE_BOT_CHECK"
NO_AUDIO_FORMATS = "NO_AUDIO_FORMATS"
AUDIO_URL_MISSING = "AUDIO_URL_MISSING"
INVALID_RANGE_HEADER = "INVALID_RANGE_HEADER"
RANGE_NOT_SATISFIABLE = "RANGE_NOT_SATISFIABLE"
PROXY_STREAM_ERROR = "PROXY_STREAM_ERROR"
INVALID_YTDL_COOKIES = "INVALID_YTDL_COOKIES"
MISSING_PATH_PARAM = "MISSING_PATH_PARAM"
NOT_FOUND = "NOT_FOUND"
BAD_REQUEST = "BAD_REQUEST"
INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class AppError(Exception):
    """Raised for failures that map onto a JSON error envelope."""

    def __init__(self, status, message, code="APP_ERROR", *, details=None, headers=None):
        super().__init__(message)
        self.status = int(status)
        self.message = message
        self.code = code
        self.details = details
        self.headers = dict(headers or {})

    def __repr__(self):
        return f"AppError(status={self.status}, code={self.code!r}, message={self.message!r})"
