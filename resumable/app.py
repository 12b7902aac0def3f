"""
FastAPI glue exposing the session store over the tus 1.0.0 protocol.

    POST    <mount>         create       -> 201 Location
    HEAD    <mount>/<id>    offset query -> Upload-Offset
    PATCH   <mount>/<id>    append chunk -> 204, or 200 + JSON once finalized
    DELETE  <mount>/<id>    terminate    -> 204
    OPTIONS <mount>         capabilities
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from . import tus
from .errors import UploadError, ValidationError
from .models import ServerConfig
from .protocols import ICreateHook, IFinishHook
from .services.finalize import FinalizationHandler
from .services.session_store import UploadSessionStore

logger = logging.getLogger(__name__)

BASE_HEADERS = {tus.H_RESUMABLE: tus.TUS_VERSION, "Cache-Control": "no-store"}


def _error_response(exc: UploadError, request: Request) -> Response:
    if exc.status_code >= 500:
        logger.error(f"[tus] {request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"[tus] {request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return PlainTextResponse(exc.message, status_code=exc.status_code, headers=BASE_HEADERS)


def _check_version(request: Request) -> Optional[Response]:
    if request.headers.get(tus.H_RESUMABLE) != tus.TUS_VERSION:
        return PlainTextResponse(
            f"Unsupported {tus.H_RESUMABLE} version",
            status_code=412,
            headers={tus.H_VERSION: tus.TUS_VERSION},
        )
    return None


def create_upload_router(store: UploadSessionStore, mount_path: str = "/files") -> APIRouter:
    """Build the tus router for ``store`` mounted at ``mount_path``."""
    mount_path = "/" + mount_path.strip("/")
    router = APIRouter(prefix=mount_path)

    @router.options("")
    @router.options("/", include_in_schema=False)
    async def capabilities():
        return Response(
            status_code=204,
            headers={
                tus.H_RESUMABLE: tus.TUS_VERSION,
                tus.H_VERSION: tus.TUS_VERSION,
                tus.H_EXTENSION: tus.TUS_EXTENSIONS,
            },
        )

    @router.post("")
    @router.post("/", include_in_schema=False)
    async def create_upload(request: Request):
        rejected = _check_version(request)
        if rejected:
            return rejected
        try:
            try:
                length = tus.parse_non_negative(request.headers.get(tus.H_UPLOAD_LENGTH), tus.H_UPLOAD_LENGTH)
                metadata = tus.decode_metadata(request.headers.get(tus.H_UPLOAD_METADATA, ""))
            except ValueError as e:
                raise ValidationError(str(e)) from e
            record = await store.create(length, metadata)
        except UploadError as e:
            return _error_response(e, request)

        return Response(
            status_code=201,
            headers={**BASE_HEADERS, "Location": f"{mount_path}/{record.resource_id}"},
        )

    @router.head("/{upload_id}")
    async def upload_offset(upload_id: str, request: Request):
        rejected = _check_version(request)
        if rejected:
            return rejected
        try:
            record = await store.get(upload_id)
        except UploadError as e:
            # HEAD responses carry no body
            return Response(status_code=e.status_code, headers=BASE_HEADERS)
        return Response(
            status_code=200,
            headers={
                **BASE_HEADERS,
                tus.H_UPLOAD_OFFSET: str(record.offset),
                tus.H_UPLOAD_LENGTH: str(record.declared_length),
            },
        )

    @router.patch("/{upload_id}")
    async def append_chunk(upload_id: str, request: Request):
        rejected = _check_version(request)
        if rejected:
            return rejected
        if request.headers.get("Content-Type") != tus.OFFSET_CONTENT_TYPE:
            return PlainTextResponse(
                f"Content-Type must be {tus.OFFSET_CONTENT_TYPE}", status_code=415, headers=BASE_HEADERS
            )
        try:
            try:
                offset = tus.parse_non_negative(request.headers.get(tus.H_UPLOAD_OFFSET), tus.H_UPLOAD_OFFSET)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            data = await request.body()
            result = await store.append_chunk(upload_id, offset, data)
        except UploadError as e:
            return _error_response(e, request)

        headers = {**BASE_HEADERS, tus.H_UPLOAD_OFFSET: str(result.offset)}
        if result.finalized is not None:
            return JSONResponse(result.finalized.body, status_code=result.finalized.status_code, headers=headers)
        return Response(status_code=204, headers=headers)

    @router.delete("/{upload_id}")
    async def terminate_upload(upload_id: str, request: Request):
        rejected = _check_version(request)
        if rejected:
            return rejected
        try:
            await store.delete_session(upload_id)
        except UploadError as e:
            return _error_response(e, request)
        return Response(status_code=204, headers=BASE_HEADERS)

    return router


def create_app(
    config: Optional[ServerConfig] = None,
    on_create: Optional[ICreateHook] = None,
    on_finish: Optional[IFinishHook] = None,
) -> FastAPI:
    """Application with the tus router mounted; directories are created up front."""
    config = config or ServerConfig.from_env()
    finalizer = FinalizationHandler(config.uploads_dir, on_finish=on_finish)
    store = UploadSessionStore(config.tmp_dir, finalizer, on_create=on_create)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[server] Uploads folder: {finalizer.uploads_dir}")
        logger.info(f"[server] Temporary folder: {store.directory}")
        logger.info(f"[server] tus endpoint mounted at {config.mount_path}")
        yield

    app = FastAPI(title="resumable", lifespan=lifespan)
    app.state.store = store
    app.include_router(create_upload_router(store, config.mount_path))
    return app
