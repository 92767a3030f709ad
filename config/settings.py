"""Application settings loaded from the process environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

SERVICE_NAME = "private-ytmusic-server"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_or_default(environ, name, default):
    value = environ.get(name)
    return value if value else default


def _env_flag(environ, name, default):
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(environ, name, default):
    raw = environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_port(environ, name, default):
    raw = environ.get(name)
    if not raw:
        return default
    if not raw.strip().isdigit() or int(raw) <= 0:
        raise ValueError(f"{name} must be a positive integer, got {raw!r}")
    return int(raw)


def _optional_str(environ, name):
    value = (environ.get(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origin: str = "*"
    resolver_enabled: bool = True
    proxy_enabled: bool = False
    region_gl: str = "US"
    region_hl: str = "en"
    cookies_json: str | None = None
    cookie_header: str | None = None
    ytdlp_binary: str = "yt-dlp"
    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 30.0
    log_level: str = "INFO"
    log_dir: str | None = None

    @property
    def is_dev(self) -> bool:
        return self.app_env != "production"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origin.split(",") if origin.strip()] or ["*"]


def load_settings(environ=None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        app_env=_env_or_default(env, "APP_ENV", "development"),
        host=_env_or_default(env, "HOST", "0.0.0.0"),
        port=_env_port(env, "PORT", 3000),
        cors_origin=_env_or_default(env, "CORS_ORIGIN", "*"),
        resolver_enabled=_env_flag(env, "STREAM_RESOLVER_ENABLED", True),
        proxy_enabled=_env_flag(env, "STREAM_PROXY_ENABLED", False),
        region_gl=_env_or_default(env, "YTMUSIC_GL", "US"),
        region_hl=_env_or_default(env, "YTMUSIC_HL", "en"),
        cookies_json=_optional_str(env, "YTDL_COOKIES_JSON"),
        cookie_header=_optional_str(env, "YTMUSIC_COOKIES"),
        ytdlp_binary=_env_or_default(env, "YTDLP_BINARY", "yt-dlp"),
        upstream_connect_timeout=_env_float(env, "PLAYBACK_CONNECT_TIMEOUT_SECONDS", 10.0),
        upstream_read_timeout=_env_float(env, "PLAYBACK_READ_TIMEOUT_SECONDS", 30.0),
        log_level=_env_or_default(env, "LOG_LEVEL", "INFO").upper(),
        log_dir=_optional_str(env, "LOG_DIR"),
    )
