"""
Media API - thumbnail and video uploads for video records.
Runs on port 8091 by default.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from databases import Database
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.datastructures import UploadFile

from api.audit import AuditAction, AuditLogger
from api.auth import TokenValidator, authenticate
from api.common import (
    BodySizeLimitMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    ensure_utc,
    get_real_ip,
    get_request_id,
    rate_limit_exceeded_handler,
)
from api.database import VideoStore, create_tables
from api.enums import StorageBackend
from api.errors import MalformedUpload, MediaAPIError
from api.links import RecordLinker
from api.schemas import HealthResponse, VideoCreate, VideoResponse
from api.storage import build_publishers, create_s3_client
from api.upload_pipeline import FormFileLoader, UploadPipeline
from config import AppConfig, load_config
from media.faststart import FastStartRewriter, build_rewriter
from media.probe import FFprobeMediaProbe, MediaProbe

logger = logging.getLogger(__name__)

THUMBNAIL_UPLOAD_PATH = r"^/api/thumbnail_upload/[^/]+/?$"
VIDEO_UPLOAD_PATH = r"^/api/video_upload/[^/]+/?$"


def to_response(record: dict) -> VideoResponse:
    return VideoResponse(
        id=record["id"],
        user_id=record["user_id"],
        title=record["title"],
        description=record.get("description") or "",
        thumbnail_url=record.get("thumbnail_url"),
        video_url=record.get("video_url"),
        created_at=ensure_utc(record["created_at"]),
        updated_at=ensure_utc(record["updated_at"]),
    )


def form_file_loader(request: Request, field: str) -> FormFileLoader:
    """Return a loader that parses the multipart body and yields the named file field."""

    async def load() -> UploadFile:
        try:
            form = await request.form(max_files=1, max_fields=10)
        except MediaAPIError:
            raise
        except Exception as e:
            raise MalformedUpload(cause=e) from e

        upload = form.get(field)
        if not isinstance(upload, UploadFile):
            raise MalformedUpload(f"Couldn't get {field} file")
        return upload

    return load


async def media_error_handler(request: Request, exc: MediaAPIError) -> JSONResponse:
    """Render a MediaAPIError as {"detail": message}; the cause is logged, never returned."""
    context = f"{request.method} {request.url.path} request_id={get_request_id(request)}"
    if exc.status_code >= 500:
        logger.error(f"{context} failed with {type(exc).__name__}: {exc.message} (cause: {exc.cause!r})")
    else:
        logger.warning(f"{context} rejected with {type(exc).__name__}: {exc.message} (cause: {exc.cause!r})")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def build_pipeline(
    config: AppConfig,
    store: VideoStore,
    s3_client: Optional[Any] = None,
    probe: Optional[MediaProbe] = None,
    rewriter: Optional[FastStartRewriter] = None,
) -> UploadPipeline:
    thumbnail_publisher, video_publisher = build_publishers(config, s3_client=s3_client)
    return UploadPipeline(
        config=config,
        store=store,
        validator=TokenValidator(config.jwt_secret),
        thumbnail_publisher=thumbnail_publisher,
        video_publisher=video_publisher,
        probe=probe or FFprobeMediaProbe(config.ffprobe_path, timeout=config.probe_timeout),
        rewriter=rewriter
        or build_rewriter(config.faststart_enabled, config.ffmpeg_path, config.faststart_timeout),
        linker=RecordLinker(s3_client, expires_in=config.presign_expiry),
    )


def register_routes(app: FastAPI, limiter: Limiter, config: AppConfig) -> None:
    @app.get("/health")
    async def health_check(request: Request):
        """Health check for monitoring and load balancers. 503 if any check fails."""
        storage_root = config.assets_root if config.storage_backend == StorageBackend.LOCAL else None
        result = await check_health(request.app.state.database, storage_root)
        body = HealthResponse(
            status="healthy" if result["healthy"] else "unhealthy",
            checks=result["checks"],
        )
        return JSONResponse(status_code=result["status_code"], content=body.model_dump())

    @app.api_route("/api/thumbnail_upload/{video_id}", methods=["POST", "PUT"])
    @limiter.limit(config.rate_limit_upload)
    async def upload_thumbnail(request: Request, video_id: str) -> VideoResponse:
        """Replace a video's thumbnail. Form field `thumbnail`, JPEG or PNG, 10 MiB max."""
        pipeline: UploadPipeline = request.app.state.pipeline
        record = await pipeline.upload_thumbnail(
            video_id, request.headers, form_file_loader(request, "thumbnail"), request=request
        )
        request.app.state.audit.log(
            AuditAction.THUMBNAIL_UPLOAD,
            user_id=record["user_id"],
            client_ip=get_real_ip(request),
            user_agent=request.headers.get("user-agent"),
            resource_id=record["id"],
            request_id=get_request_id(request),
        )
        return to_response(record)

    @app.api_route("/api/video_upload/{video_id}", methods=["POST", "PUT"])
    @limiter.limit(config.rate_limit_upload)
    async def upload_video(request: Request, video_id: str) -> VideoResponse:
        """Replace a video's file. Form field `video`, MP4 only, 1 GiB max."""
        pipeline: UploadPipeline = request.app.state.pipeline
        record = await pipeline.upload_video(
            video_id, request.headers, form_file_loader(request, "video"), request=request
        )
        request.app.state.audit.log(
            AuditAction.VIDEO_UPLOAD,
            user_id=record["user_id"],
            client_ip=get_real_ip(request),
            user_agent=request.headers.get("user-agent"),
            resource_id=record["id"],
            request_id=get_request_id(request),
        )
        return to_response(record)

    @app.post("/api/videos", status_code=201)
    @limiter.limit(config.rate_limit_default)
    async def create_video(request: Request, data: VideoCreate) -> VideoResponse:
        """Create an empty video record owned by the caller."""
        pipeline: UploadPipeline = request.app.state.pipeline
        user_id = authenticate(request.headers, pipeline.validator, request=request)
        record = await request.app.state.store.create(user_id, data.title, data.description)
        request.app.state.audit.log(
            AuditAction.VIDEO_CREATE,
            user_id=user_id,
            client_ip=get_real_ip(request),
            user_agent=request.headers.get("user-agent"),
            resource_id=record["id"],
            details={"title": data.title},
            request_id=get_request_id(request),
        )
        return to_response(record)

    @app.get("/api/videos")
    @limiter.limit(config.rate_limit_default)
    async def list_videos(request: Request) -> List[VideoResponse]:
        pipeline: UploadPipeline = request.app.state.pipeline
        user_id = authenticate(request.headers, pipeline.validator, request=request)
        records = await request.app.state.store.list_for_user(user_id)
        return [to_response(pipeline.linker.link(record)) for record in records]

    @app.get("/api/videos/{video_id}")
    @limiter.limit(config.rate_limit_default)
    async def get_video(request: Request, video_id: str) -> VideoResponse:
        pipeline: UploadPipeline = request.app.state.pipeline
        record = await pipeline.authorize(video_id, request.headers, request=request)
        return to_response(pipeline.linker.link(record))

    @app.delete("/api/videos/{video_id}", status_code=204)
    @limiter.limit(config.rate_limit_default)
    async def delete_video(request: Request, video_id: str):
        """Delete a record. Stored thumbnail and video objects are left in place."""
        pipeline: UploadPipeline = request.app.state.pipeline
        record = await pipeline.authorize(video_id, request.headers, request=request)
        await request.app.state.store.delete(record["id"])
        request.app.state.audit.log(
            AuditAction.VIDEO_DELETE,
            user_id=record["user_id"],
            client_ip=get_real_ip(request),
            user_agent=request.headers.get("user-agent"),
            resource_id=record["id"],
            request_id=get_request_id(request),
        )
        return Response(status_code=204)


def create_app(
    config: Optional[AppConfig] = None,
    *,
    s3_client: Optional[Any] = None,
    probe: Optional[MediaProbe] = None,
    rewriter: Optional[FastStartRewriter] = None,
) -> FastAPI:
    """
    Build the application. Everything the handlers need hangs off `app.state`.

    `s3_client`, `probe` and `rewriter` may be injected (tests use fakes);
    otherwise they are built from `config`.
    """
    config = (config or load_config()).validate()

    if s3_client is None and config.storage_backend == StorageBackend.S3:
        s3_client = create_s3_client(config)

    database = Database(config.database_url)
    store = VideoStore(database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        if config.rate_limit_enabled and config.rate_limit_storage_url == "memory://":
            logger.warning(
                "Rate limiting is using in-memory storage. "
                "For deployments with multiple instances, configure Redis: "
                "TUBELY_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
            )
        create_tables(config.database_url)
        await database.connect()
        yield
        await database.disconnect()

    app = FastAPI(title="Tubely", description="Thumbnail and video upload API", lifespan=lifespan)

    limiter = Limiter(
        key_func=get_real_ip,
        storage_uri=config.rate_limit_storage_url,
        enabled=config.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(MediaAPIError, media_error_handler)

    app.state.config = config
    app.state.database = database
    app.state.store = store
    app.state.pipeline = build_pipeline(config, store, s3_client=s3_client, probe=probe, rewriter=rewriter)
    app.state.audit = AuditLogger(config.audit_log_enabled, config.audit_log_path)

    register_routes(app, limiter, config)

    if config.scratch_dir is not None:
        config.scratch_dir.mkdir(parents=True, exist_ok=True)

    if config.storage_backend == StorageBackend.LOCAL:
        config.assets_root.mkdir(parents=True, exist_ok=True)
        app.mount("/assets", StaticFiles(directory=str(config.assets_root)), name="assets")

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_allowed_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    # Added last so it is outermost and sees the raw body stream first
    app.add_middleware(
        BodySizeLimitMiddleware,
        limits=[
            (THUMBNAIL_UPLOAD_PATH, config.max_thumbnail_upload_size),
            (VIDEO_UPLOAD_PATH, config.max_video_upload_size),
        ],
    )

    return app


if __name__ == "__main__":
    import uvicorn

    _config = load_config()
    uvicorn.run(create_app(_config), host="0.0.0.0", port=_config.port)
