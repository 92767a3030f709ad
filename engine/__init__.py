from .cookies import CookieAgent, CookieAgentBuilder
from .errors import AppError
from .formats import FormatDescriptor, parse_expiry, rank_audio_formats
from .playback import PlaybackResolver, ProxyStream, ResolvedPlayback
from .playback_cache import ResolutionCache
from .runtime import get_runtime_info

__all__ = [
    "AppError",
    "CookieAgent",
    "CookieAgentBuilder",
    "FormatDescriptor",
    "PlaybackResolver",
    "ProxyStream",
    "ResolutionCache",
    "ResolvedPlayback",
    "get_runtime_info",
    "parse_expiry",
    "rank_audio_formats",
]
