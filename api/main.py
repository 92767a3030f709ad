#!/usr/bin/env python3
import json
import logging
import os
import time

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import SERVICE_NAME, load_settings
from engine.errors import (
    BAD_REQUEST,
    INTERNAL_SERVER_ERROR,
    MISSING_PATH_PARAM,
    NOT_FOUND,
    AppError,
)
from engine.json_utils import safe_json, utc_now_iso
from engine.playback import SOURCE_HEADER, PlaybackResolver
from engine.runtime import get_runtime_info

APP_NAME = "Private YT Music Server"
EXPOSED_HEADERS = ["Content-Range", "Content-Length", "Accept-Ranges", SOURCE_HEADER]

logger = logging.getLogger(__name__)


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


def ok_envelope(data, meta=None):
    payload = {"ok": True, "data": data}
    if meta:
        payload["meta"] = meta
    payload["ts"] = utc_now_iso()
    return payload


def error_envelope(code, message, details=None):
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"ok": False, "error": error, "ts": utc_now_iso()}


def _require_param(name, raw_value):
    value = (raw_value or "").strip()
    if not value:
        raise AppError(400, f"Missing path parameter: {name}", MISSING_PATH_PARAM)
    return value


def _setup_logging(level="INFO", log_dir=None):
    root = logging.getLogger("")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.abspath(os.path.join(log_dir, "server.log"))
        has_file = any(
            isinstance(h, logging.FileHandler) and os.path.abspath(getattr(h, "baseFilename", "")) == log_path
            for h in root.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)


def _register_error_handlers(app, settings):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status >= 500:
            logger.error("[server:error] %s %s -> %s %s", request.method, request.url.path, exc.code, exc.message)
        details = exc.details if settings.is_dev else None
        return SafeJSONResponse(
            error_envelope(exc.code, exc.message, details),
            status_code=exc.status,
            headers=exc.headers or None,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            code, message = NOT_FOUND, "Route not found"
        else:
            code, message = f"HTTP_{exc.status_code}", str(exc.detail)
        return SafeJSONResponse(
            error_envelope(code, message),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = exc.errors() if settings.is_dev else None
        return SafeJSONResponse(error_envelope(BAD_REQUEST, "Invalid request", details), status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("[server:error] %s %s", request.method, request.url.path)
        details = {"type": exc.__class__.__name__} if settings.is_dev else None
        return SafeJSONResponse(
            error_envelope(INTERNAL_SERVER_ERROR, str(exc) or "Unexpected server error", details),
            status_code=500,
        )


def create_app(settings=None, resolver=None) -> FastAPI:
    settings = settings or load_settings()
    resolver = resolver or PlaybackResolver.from_settings(settings)

    app = FastAPI(
        title=APP_NAME,
        description="Playback resolver and streaming proxy for a personal YouTube Music client.",
        default_response_class=SafeJSONResponse,
    )
    app.state.settings = settings
    app.state.resolver = resolver

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    @app.middleware("http")
    async def request_log_middleware(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info("[http] %s %s -> %s (%dms)", request.method, request.url.path, response.status_code, duration_ms)
        return response

    _register_error_handlers(app, settings)

    @app.on_event("startup")
    async def startup():
        _setup_logging(settings.log_level, settings.log_dir)
        logger.info(
            "%s started env=%s resolver=%s proxy=%s",
            SERVICE_NAME,
            settings.app_env,
            resolver.is_enabled(),
            resolver.is_proxy_enabled(),
        )

    @app.get("/health")
    async def health():
        return ok_envelope({"status": "ok", "service": SERVICE_NAME, "env": settings.app_env})

    @app.get("/api/bootstrap")
    async def bootstrap(request: Request):
        playback = request.app.state.resolver
        return ok_envelope(
            {
                "name": SERVICE_NAME,
                "mode": settings.app_env,
                "capabilities": {
                    "playbackResolver": playback.is_enabled(),
                    "playbackProxy": playback.is_proxy_enabled(),
                },
                "region": {"gl": settings.region_gl, "hl": settings.region_hl},
                "runtime": get_runtime_info(settings.ytdlp_binary),
            }
        )

    @app.get("/api/playback/{track_id}/resolve")
    async def playback_resolve(track_id: str, request: Request):
        track_id = _require_param("videoId", track_id)
        playback = await request.app.state.resolver.resolve(track_id)
        return ok_envelope(playback.to_dict(), meta={"videoId": track_id})

    @app.get("/api/playback/{track_id}/stream")
    async def playback_stream(track_id: str, request: Request):
        track_id = _require_param("videoId", track_id)
        stream = await request.app.state.resolver.proxy(track_id, request.headers.get("range"))
        await stream.prime()
        # closes upstream even if the client leaves before the body is iterated
        return StreamingResponse(
            stream.iter_body(),
            status_code=stream.status_code,
            headers=stream.headers,
            media_type=stream.media_type,
            background=BackgroundTask(stream.close),
        )

    return app


load_dotenv()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = app.state.settings
    _setup_logging(_settings.log_level, _settings.log_dir)
    logger.info("%s listening on http://%s:%s", SERVICE_NAME, _settings.host, _settings.port)
    uvicorn.run(app, host=_settings.host, port=_settings.port, reload=False)
