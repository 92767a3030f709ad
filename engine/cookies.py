"""Builds the upstream cookie agent from configured credentials."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from requests.cookies import create_cookie

from engine.errors import INVALID_YTDL_COOKIES, AppError

logger = logging.getLogger(__name__)

DEFAULT_COOKIE_DOMAIN = ".youtube.com"


@dataclass(frozen=True)
class CookieAgent:
    """Immutable set of cookies attached to upstream extraction requests."""

    cookies: tuple = field(default_factory=tuple)
    source: str = "none"

    def __bool__(self):
        return bool(self.cookies)

    def names(self) -> list[str]:
        return [cookie.name for cookie in self.cookies]


def _expires_from(entry):
    raw = entry.get("expirationDate", entry.get("expires"))
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    return int(raw)


def _cookie_from_json(entry):
    if not isinstance(entry, dict):
        return None
    name = entry.get("name")
    value = entry.get("value")
    if not isinstance(name, str) or not name.strip() or not isinstance(value, str):
        return None
    domain = entry.get("domain") if isinstance(entry.get("domain"), str) else DEFAULT_COOKIE_DOMAIN
    path = entry.get("path") if isinstance(entry.get("path"), str) else "/"
    rest = {"HttpOnly": None} if entry.get("httpOnly") else {}
    return create_cookie(
        name.strip(),
        value,
        domain=domain or DEFAULT_COOKIE_DOMAIN,
        path=path or "/",
        secure=bool(entry.get("secure", False)),
        expires=_expires_from(entry),
        rest=rest,
    )


def parse_cookie_json(raw: str) -> tuple:
    """Parse a JSON array of cookie objects; misconfiguration is fatal."""
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise AppError(
            500,
            f"YTDL_COOKIES_JSON is not valid JSON: {exc}",
            INVALID_YTDL_COOKIES,
        ) from exc
    if not isinstance(payload, list):
        raise AppError(
            500,
            "YTDL_COOKIES_JSON must be a JSON array of cookie objects",
            INVALID_YTDL_COOKIES,
        )
    cookies = []
    for entry in payload:
        cookie = _cookie_from_json(entry)
        if cookie is not None:
            cookies.append(cookie)
    if not cookies:
        raise AppError(
            500,
            "YTDL_COOKIES_JSON contains no usable cookies (each needs string name and value)",
            INVALID_YTDL_COOKIES,
        )
    return tuple(cookies)


def parse_cookie_header(raw: str) -> tuple:
    """Split a ``Cookie:`` header value into cookies, skipping malformed pairs."""
    cookies = []
    for chunk in (raw or "").split(";"):
        if "=" not in chunk:
            continue
        name, value = chunk.split("=", 1)
        name = name.strip()
        if not name:
            continue
        cookies.append(create_cookie(name, value.strip(), domain=DEFAULT_COOKIE_DOMAIN, path="/"))
    return tuple(cookies)


class CookieAgentBuilder:
    """Lazily builds the cookie agent once and hands out the same instance afterwards."""

    def __init__(self, cookies_json=None, cookie_header=None):
        self._cookies_json = cookies_json
        self._cookie_header = cookie_header
        self._agent = None

    @classmethod
    def from_settings(cls, settings):
        return cls(cookies_json=settings.cookies_json, cookie_header=settings.cookie_header)

    def build(self) -> CookieAgent:
        if self._agent is not None:
            return self._agent
        if self._cookies_json:
            agent = CookieAgent(parse_cookie_json(self._cookies_json), source="json")
        elif self._cookie_header:
            agent = CookieAgent(parse_cookie_header(self._cookie_header), source="header")
        else:
            agent = CookieAgent()
        logger.info("Cookie agent built source=%s cookies=%s", agent.source, ",".join(agent.names()) or "-")
        self._agent = agent
        return agent
