"""FastAPI application for Ephemera.

The HTTP surface is prefix-agnostic: uploads may be POSTed to any path and
the returned link reuses that path, with the entry id appended (before a
trailing ``name.ext`` segment, if one was given). Downloads accept the id
as the last path segment or the one before a file name.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse

from ephemera import __version__
from ephemera.config import Settings
from ephemera.config import settings as default_settings
from ephemera.db import create_engine, create_session_factory, init_db
from ephemera.engine import BlobEngine, Clock, OpenBlob, utc_now
from ephemera.errors import (
    BlobTooLargeError,
    ConflictError,
    LimitExceededError,
    NotFoundError,
    StorageError,
)
from ephemera.limits import Limits
from ephemera.storage import BlobStore, is_valid_id
from ephemera.sweeper import Sweeper

logger = logging.getLogger(__name__)

# Capability check run before the engine is reached; False means 403
AuthCallback = Callable[[Request], bool]

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def _allow_all(request: Request) -> bool:
    return True


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the index, start the sweeper; stop the sweeper before closing."""
    settings: Settings = app.state.settings
    db_engine = create_engine(settings.database_url, echo=settings.database_echo)
    try:
        await init_db(db_engine)

        limits = Limits(
            max_uses=settings.max_uses,
            max_store_secs=settings.max_store_secs,
            max_blob_size=settings.max_blob_size,
        )
        engine = BlobEngine(
            BlobStore(settings.storage_dir),
            create_session_factory(db_engine),
            limits=limits,
            clock=app.state.clock,
        )
        sweeper = Sweeper(engine, settings.sweep_interval_secs)
        app.state.engine = engine
        app.state.sweeper = sweeper

        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
    finally:
        await db_engine.dispose()


def get_engine(request: Request) -> BlobEngine:
    return request.app.state.engine


def require_upload_auth(request: Request) -> None:
    if not request.app.state.upload_auth(request):
        raise HTTPException(status_code=403, detail="Access denied")


def require_download_auth(request: Request) -> None:
    if not request.app.state.download_auth(request):
        raise HTTPException(status_code=403, detail="Access denied")


def _split_path(path: str) -> list[str]:
    return [segment for segment in path.split("/") if segment]


def entry_id_from_path(path: str) -> str:
    """Pick the entry id out of ``.../<id>`` or ``.../<id>/<file name>``."""
    for segment in reversed(_split_path(path)[-2:]):
        if is_valid_id(segment):
            return segment
    return ""


def _wants_https(request: Request) -> bool:
    override = request.headers.get("x-https-downstream")
    if override == "1":
        return True
    if override == "0":
        return False
    return request.app.state.settings.https_downstream


def download_url(request: Request, path: str, entry_id: str) -> str:
    """Build the link returned for a fresh upload."""
    segments = _split_path(path)
    filename = segments.pop() if segments and "." in segments[-1] else None
    segments.append(entry_id)
    if filename:
        segments.append(filename)

    scheme = "https" if _wants_https(request) else "http"
    host = request.headers.get("host") or request.url.netloc
    return f"{scheme}://{host}/" + "/".join(quote(segment) for segment in segments)


async def _stream(blob: OpenBlob) -> AsyncIterator[bytes]:
    try:
        async for chunk in blob.chunks():
            yield chunk
    finally:
        await blob.aclose()


def create_app(
    settings: Settings | None = None,
    *,
    upload_auth: AuthCallback | None = None,
    download_auth: AuthCallback | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Configuration; defaults to the environment-derived settings.
        upload_auth: Check run before uploads and removals.
        download_auth: Check run before downloads, ahead of any id lookup
            so that denied callers learn nothing about existing ids.
        clock: Time source for expiry decisions.
    """
    settings = settings or default_settings

    app = FastAPI(
        title="Ephemera",
        description="Ephemeral blob store with use-count and time-based expiry",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.upload_auth = upload_auth or _allow_all
    app.state.download_auth = download_auth or _allow_all
    app.state.clock = clock

    if settings.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[origin.strip() for origin in settings.allowed_origins.split(",")],
            allow_methods=["GET", "HEAD", "POST", "DELETE"],
            allow_headers=["*"],
        )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> Response:
        return PlainTextResponse("Not found", status_code=404)

    @app.exception_handler(BlobTooLargeError)
    async def too_large(request: Request, exc: BlobTooLargeError) -> Response:
        return PlainTextResponse(str(exc), status_code=413)

    @app.exception_handler(LimitExceededError)
    async def bad_limit(request: Request, exc: LimitExceededError) -> Response:
        return PlainTextResponse(str(exc), status_code=400)

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError) -> Response:
        return PlainTextResponse("Invalid request parameters", status_code=400)

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError) -> Response:
        return PlainTextResponse("Conflict, please retry", status_code=409)

    @app.exception_handler(StorageError)
    async def storage_failure(request: Request, exc: StorageError) -> Response:
        logger.error("Storage failure in %s: %s", exc.operation, exc.cause)
        return PlainTextResponse("Internal server error", status_code=500)


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "version": __version__}

    @app.post(
        "/{path:path}",
        status_code=201,
        response_class=PlainTextResponse,
        dependencies=[Depends(require_upload_auth)],
    )
    async def upload(
        request: Request,
        path: str,
        engine: Annotated[BlobEngine, Depends(get_engine)],
        max_uses: Annotated[int | None, Query(alias="max-uses")] = None,
        store_secs: Annotated[int | None, Query(alias="store-secs")] = None,
    ) -> str:
        """Store the request body and return its download link."""
        limit = engine.limits.max_blob_size
        declared = request.headers.get("content-length")
        if limit and declared and declared.isdigit() and int(declared) > limit:
            raise BlobTooLargeError(limit)

        uses, expires_at = engine.limits.resolve(max_uses, store_secs, engine.now())
        entry_id = await engine.add_blob(
            request.stream(),
            request.headers.get("content-type"),
            max_uses=uses,
            expires_at=expires_at,
        )
        return download_url(request, path, entry_id)

    @app.api_route(
        "/{path:path}",
        methods=["GET", "HEAD"],
        dependencies=[Depends(require_download_auth)],
    )
    async def download(
        request: Request,
        path: str,
        engine: Annotated[BlobEngine, Depends(get_engine)],
    ) -> Response:
        """Serve a blob. Every GET or HEAD counts as one use."""
        blob = await engine.fetch_blob(entry_id_from_path(path))
        headers = {
            "content-type": blob.content_type or DEFAULT_CONTENT_TYPE,
            "content-length": str(blob.size),
        }
        if request.method == "HEAD":
            await blob.aclose()
            return Response(headers=headers)
        return StreamingResponse(_stream(blob), headers=headers)

    @app.delete(
        "/{path:path}",
        status_code=204,
        dependencies=[Depends(require_upload_auth)],
    )
    async def remove(
        path: str,
        engine: Annotated[BlobEngine, Depends(get_engine)],
    ) -> Response:
        """Delete a blob. Deleting an unknown id is not an error."""
        await engine.remove_blob(entry_id_from_path(path))
        return Response(status_code=204)


app = create_app()
