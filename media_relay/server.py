"""FastAPI backend for media-relay.

This service exposes two endpoints:
- GET /api/resolve  : returns the normalized format list for a URL using yt-dlp
- GET /api/download : streams a chosen format to the client while saving a copy

Run with:
    python -m media_relay.server
or:
    uvicorn media_relay.server:create_app --factory --host 0.0.0.0 --port 5000
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import anyio
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool
from starlette.types import Receive, Scope, Send

from . import __version__
from .config import Settings, configure_logging, locate
from .errors import EmptyOutput, InputError, LaunchError, MalformedOutput, MediaRelayError
from .executor import Executor, ProcessGate
from .metadata import MediaMetadata, resolve_metadata
from .streaming import DownloadSession, FileSink, storage_filename

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = "best"
DOWNLOAD_MEDIA_TYPE = "video/mp4"
DOWNLOAD_HEADERS = {"Content-Disposition": "attachment; filename=video.mp4"}
HEALTH_TIMEOUT = 5


def resolve_args(url: str, settings: Settings) -> List[str]:
    return ["-J", "--no-warnings", "--no-check-certificate", url, *settings.cookie_args()]


def download_args(url: str, format_id: str, settings: Settings) -> List[str]:
    return [
        url,
        "-f",
        format_id,
        "-o",
        "-",  # stream to stdout
        "--no-part",
        "--no-playlist",
        "--merge-output-format",
        "mp4",
        *settings.cookie_args(),
    ]


def http_error(exc: MediaRelayError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def require_url(url: Optional[str], message: str) -> str:
    if not url or not url.strip():
        raise http_error(InputError(message))
    return url.strip()


class DownloadResponse(StreamingResponse):
    """Streaming response that always hands its session back when it stops sending."""

    def __init__(self, session: DownloadSession, **kwargs: Any) -> None:
        super().__init__(session.body(), **kwargs)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await run_in_threadpool(self.session.close)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = locate(settings or Settings.from_env())
    executor = Executor(settings.extractor_path)
    gate = ProcessGate(settings.max_concurrent, timeout=settings.admission_timeout)

    app = FastAPI(title="media-relay API", version=__version__)
    app.state.settings = settings
    app.state.gate = gate

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/health")
    def healthcheck() -> Dict[str, Any]:
        """Return service readiness and extractor version."""
        version = "unavailable"
        try:
            result = executor.run_buffered(["--version"], timeout=HEALTH_TIMEOUT)
            if result.exit_code == 0 and result.stdout.strip():
                version = result.stdout.decode("utf-8", "replace").splitlines()[0].strip()
        except MediaRelayError as exc:
            logger.warning("Health check could not run yt-dlp: %s", exc.details or exc.message)

        return {
            "status": "ok",
            "yt_dlp": version,
            "extractor_path": str(settings.extractor_path),
            "cookies": settings.cookie_path.is_file(),
            "max_concurrent_downloads": gate.max_concurrent,
            "disconnect_policy": settings.disconnect_policy.value,
        }

    @app.get("/api/resolve", response_model=MediaMetadata)
    def resolve(url: Optional[str] = Query(None, description="Video or audio URL")) -> MediaMetadata:
        """Describe the downloadable formats of ``url``."""
        url = require_url(url, "Missing url")
        try:
            gate.acquire()
        except MediaRelayError as exc:
            raise http_error(exc) from exc
        try:
            result = executor.run_buffered(resolve_args(url, settings), timeout=settings.resolve_timeout)
        except MediaRelayError as exc:
            raise http_error(exc) from exc
        finally:
            gate.release()

        if result.exit_code != 0:
            raise HTTPException(
                status_code=500,
                detail={"error": "yt-dlp failed", "details": result.stderr_text or f"Exit code {result.exit_code}"},
            )
        try:
            return resolve_metadata(result.stdout)
        except EmptyOutput as exc:
            exc.details = result.stderr_text
            raise http_error(exc) from exc
        except MalformedOutput as exc:
            logger.error("JSON parse error for %s: %s", url, exc.details[:200])
            raise http_error(exc) from exc

    @app.get("/api/download")
    def download(
        url: Optional[str] = Query(None, description="Video URL to download"),
        format_id: str = Query(DEFAULT_FORMAT, description="yt-dlp format identifier"),
    ):
        """
        Stream the selected format back to the client.

        - yt-dlp runs as a subprocess writing media bytes to stdout
        - A background thread tails stderr and logs it line by line
        - Every chunk is written to the storage directory before it is sent
        """
        url = require_url(url, "Missing URL")
        format_id = format_id or DEFAULT_FORMAT
        try:
            gate.acquire()
        except MediaRelayError as exc:
            raise http_error(exc) from exc

        # until the session owns the slot, any failure must hand it back
        try:
            try:
                process = executor.run_streamed(download_args(url, format_id, settings), chunk_size=settings.chunk_size)
            except LaunchError as exc:
                raise http_error(exc) from exc

            try:
                sink = FileSink(settings.storage_dir / storage_filename())
            except OSError as exc:
                # no disk copy possible, the client still gets its stream
                logger.error("Could not create storage file: %s", exc)
                sinks = []
            else:
                sinks = [sink]
                logger.info("Saving %s (format %s) to %s", url, format_id, sink.path.name)

            session = DownloadSession(
                process,
                sinks,
                disconnect_policy=settings.disconnect_policy,
                on_finished=gate.release,
            )
        except BaseException:
            gate.release()
            raise
        return DownloadResponse(session, media_type=DOWNLOAD_MEDIA_TYPE, headers=DOWNLOAD_HEADERS)

    # Read-only mirror of everything saved so far
    app.mount("/downloads", StaticFiles(directory=str(settings.storage_dir)), name="downloads")

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
