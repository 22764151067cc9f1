"""Local ingestion service the device agent pushes pages to.

Exposes:
  GET  /health   : liveness check
  GET  /config   : agent configuration for ``?device_id=``
  POST /upload   : one page file, described by ``X-*`` headers

Every accepted upload is written under ``{upload_dir}/{documentId}/``
and recorded as a pending page for the upload queue.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from inkbridge import __version__
from inkbridge.config import API_KEY_PREFIX
from inkbridge.errors import IngestionValidationError
from inkbridge.events import PageReceived, Subscribers
from inkbridge.ingest.device_config import ConfigurationProvider
from inkbridge.ingest.paths import extract_page_number, parse_upload_filename, parse_virtual_path
from inkbridge.models import DocumentRecord, PageRecord, SyncStatus, utcnow
from inkbridge.store import PageStatusStore

logger = logging.getLogger(__name__)

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
_STATUS_MESSAGES = {404: "Not found", 405: "Method not allowed"}


def create_app(
    store: PageStatusStore,
    config_provider: ConfigurationProvider,
    upload_dir: str | Path,
    page_received: Subscribers[PageReceived] | None = None,
) -> FastAPI:
    """Build the ingestion app bound to *store* and *upload_dir*."""
    upload_root = Path(upload_dir)
    upload_root.mkdir(parents=True, exist_ok=True)

    app = FastAPI(title="InkBridge Ingestion", version=__version__)
    app.state.page_received = page_received if page_received is not None else Subscribers()

    # ── Error rendering ────────────────────────────────────────────

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = _STATUS_MESSAGES.get(exc.status_code, str(exc.detail))
        return JSONResponse({"error": message}, status_code=exc.status_code)

    @app.exception_handler(IngestionValidationError)
    async def _rejected(request: Request, exc: IngestionValidationError) -> JSONResponse:
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.middleware("http")
    async def _unhandled(request: Request, call_next):
        logger.info("Received %s request to %s", request.method, request.url.path)
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("Error processing request")
            return JSONResponse({"error": str(exc)}, status_code=500)

    # ── Routes ─────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict:
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "uploadDirectory": str(upload_root),
        }

    @app.get("/config")
    async def config(device_id: str = "unknown") -> Response:
        logger.info("Config request from device: %s", device_id)
        body = await config_provider.get_configuration_json(device_id)
        return Response(content=body, media_type="application/json")

    @app.api_route("/upload", methods=_ALL_METHODS)
    async def upload(request: Request) -> dict:
        if request.method != "POST":
            await _drain(request)
            raise IngestionValidationError(405, "Method not allowed")

        api_key = request.headers.get("x-api-key", "")
        if not api_key.startswith(API_KEY_PREFIX):
            await _drain(request)
            raise IngestionValidationError(401, "Invalid API key")

        document_path = request.headers.get("x-document-path", "Unknown")
        filename = request.headers.get("x-filename", "unknown.rm")
        name = parse_upload_filename(filename)
        logger.info("Receiving file: %s/%s", document_path, filename)

        save_dir = upload_root / name.document_id
        save_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        local_path = save_dir / f"{name.page_id}_{stamp}{name.extension or '.rm'}"

        location = parse_virtual_path(document_path)
        segments = [s for s in document_path.split("/") if s]

        # A file on disk always has a pending page row behind it.
        try:
            size, digest = await _save_body(request, local_path)
            now = utcnow()
            page = PageRecord(
                document_id=name.document_id,
                page_id=name.page_id,
                page_number=extract_page_number(location.page),
                title=location.page,
                virtual_path=document_path,
                local_path=str(local_path),
                size_bytes=size,
                content_hash=digest,
                last_modified=now,
                status=SyncStatus.PENDING,
            )
            store.save_document(
                DocumentRecord(
                    document_id=name.document_id,
                    visible_name=location.section,
                    parent="/".join(segments[:-2]),
                    last_modified=now,
                    pages=[page],
                )
            )
        except BaseException:
            local_path.unlink(missing_ok=True)
            raise
        logger.info("Saved file: %s (%d bytes)", local_path, size)

        app.state.page_received.emit(
            PageReceived(
                document_id=name.document_id,
                page_id=name.page_id,
                virtual_path=document_path,
                local_path=str(local_path),
                size=size,
                received_at=now,
            )
        )

        return {
            "status": "success",
            "message": "File uploaded successfully",
            "document_id": name.document_id,
            "page_id": name.page_id,
            "notebook": location.notebook,
            "section": location.section,
            "page": location.page,
            "size": size,
            "timestamp": utcnow().isoformat(),
        }

    return app


async def _drain(request: Request) -> None:
    async for _ in request.stream():
        pass


async def _save_body(request: Request, path: Path) -> tuple[int, str]:
    hasher = hashlib.sha256()
    size = 0
    with open(path, "wb") as fh:
        async for chunk in request.stream():
            await asyncio.to_thread(fh.write, chunk)
            hasher.update(chunk)
            size += len(chunk)
    return size, hasher.hexdigest()


# ── Runner ────────────────────────────────────────────────────────


class IngestionServer:
    """Runs the ingestion app on uvicorn inside the current event loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0") -> None:
        self.app = app
        self.host = host
        self.port: int | None = None
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, port: int = 8080) -> None:
        if self.is_running:
            logger.warning("Ingestion server is already running on port %s", self.port)
            return

        config = uvicorn.Config(self.app, host=self.host, port=port, log_level="info")
        self._server = uvicorn.Server(config)
        self.port = port
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Ingestion server starting on %s:%d", self.host, port)

    async def wait(self) -> None:
        """Block until the server exits."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._server = None
            self._task = None
        logger.info("Ingestion server stopped")
