import os
import platform
import shutil

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(ytdlp_binary="yt-dlp"):
    """Versions reported by /api/bootstrap, plus whether the CLI fallback can run."""
    cli_path = shutil.which(ytdlp_binary) if ytdlp_binary else None
    return {
        "app_version": os.environ.get("APP_VERSION", "0.1.0"),
        "python_version": platform.python_version(),
        "yt_dlp_version": ytdlp_version,
        "yt_dlp_cli": cli_path,
        "cli_fallback_available": bool(cli_path),
    }
