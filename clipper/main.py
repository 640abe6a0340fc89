import asyncio
import logging
import os
import subprocess
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.datastructures import Headers, MutableHeaders
from structlog.contextvars import bind_contextvars, clear_contextvars

from .config import Settings
from .errors import (
    ClientDisconnect,
    ClipperError,
    InvalidUploadError,
    JobCancelledError,
    JobNotFoundError,
    NoUploadError,
    QuotaExceeded,
    TotalFailure,
    UploadTooLargeError,
)
from .logs import REQUEST_ID_CTX, configure_logging, flush_logs, logger
from .models import ClipInfo, OverlayConfig, ProcessingSummary
from .registry import JobRegistry
from .segmenter import plan_segments
from .storage import PARTIAL_SUFFIX, ArtifactStore, StorageAccountant, format_file_size
from .sweeper import RetentionSweeper
from .transcode import EncodingProfile, TranscodeJob, probe_duration, run_ffmpeg

settings = Settings.load()

# --------- config ---------
UPLOAD_DIR = settings.UPLOAD_DIR.resolve()
CLIPS_DIR = settings.CLIPS_DIR.resolve()
LOGS_DIR = settings.LOGS_DIR.resolve()

APP_LOG_FILE = configure_logging(LOGS_DIR)

STORE = ArtifactStore(UPLOAD_DIR, CLIPS_DIR)
REGISTRY = JobRegistry(max_jobs=settings.MAX_CONCURRENT_JOBS)
ACCOUNTANT = StorageAccountant(STORE, settings.quota_bytes)
SWEEPER = RetentionSweeper(STORE, REGISTRY, retention_seconds=settings.RETENTION_SECONDS)
PROFILE = EncodingProfile(
    width=settings.OUTPUT_WIDTH,
    height=settings.OUTPUT_HEIGHT,
    fps=settings.VIDEO_FPS,
    crf=settings.VIDEO_CRF,
    max_bitrate=settings.VIDEO_MAX_BITRATE,
    preset=settings.VIDEO_PRESET,
    ffmpeg_bin=settings.FFMPEG_BIN,
)

CLIP_HEADERS = {
    "Cross-Origin-Resource-Policy": "cross-origin",
    "Access-Control-Allow-Origin": "*",
}

_FFMPEG_VERSION_CACHE: Optional[Dict[str, Any]] = None

logger.info("=" * 60)
logger.info("clipper starting...")
logger.info("UPLOAD_DIR: %s", UPLOAD_DIR)
logger.info("CLIPS_DIR: %s", CLIPS_DIR)
logger.info("LOGS_DIR: %s", LOGS_DIR)
logger.info(
    "MAX_CONCURRENT_JOBS: %d, RETENTION_SECONDS: %d, QUOTA: %s",
    settings.MAX_CONCURRENT_JOBS,
    settings.RETENTION_SECONDS,
    format_file_size(settings.quota_bytes),
)
logger.info("=" * 60)


def ffmpeg_snapshot() -> Dict[str, Any]:
    global _FFMPEG_VERSION_CACHE
    if _FFMPEG_VERSION_CACHE is not None:
        return dict(_FFMPEG_VERSION_CACHE)
    try:
        result = subprocess.run(
            [settings.FFMPEG_BIN, "-version"], capture_output=True, text=True, timeout=5
        )
        available = result.returncode == 0
        version_line = (result.stdout or "").splitlines()[0] if available and result.stdout else ""
        error = None if available else (result.stderr or "Unknown failure")
    except (OSError, subprocess.TimeoutExpired) as exc:
        available = False
        version_line = ""
        error = str(exc)
    snapshot = {"available": available, "version": version_line, "error": error}
    _FFMPEG_VERSION_CACHE = dict(snapshot)
    return snapshot


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error("Unhandled error in event loop: %s", context.get("message"), exc_info=exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the retention sweeper; cancel every job on shutdown."""
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)

    ffmpeg_info = ffmpeg_snapshot()
    if ffmpeg_info["available"]:
        logger.info("FFmpeg is available: %s", ffmpeg_info["version"])
    else:
        logger.error("FFmpeg is NOT available: %s", ffmpeg_info["error"])

    sweeper_task: Optional[asyncio.Task] = None
    if settings.CLEANUP_INTERVAL_SECONDS > 0:
        sweeper_task = asyncio.create_task(
            app.state.sweeper.run_periodically(settings.CLEANUP_INTERVAL_SECONDS)
        )
    logger.info("Server is ready to accept requests")
    flush_logs()

    yield

    logger.info("Server shutting down, cleaning up...")
    app.state.registry.cancel_all()
    if sweeper_task is not None:
        sweeper_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper_task
    flush_logs()


class RequestIdMiddleware:
    """Tag every request with an id, in logs and in the ``X-Request-ID`` header."""

    def __init__(self, app) -> None:
        self.app = app

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get("x-request-id") or uuid4().hex
        token = REQUEST_ID_CTX.set(request_id)
        bind_contextvars(request_id=request_id)

        async def send_with_request_id(message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                MutableHeaders(scope=message).setdefault("X-Request-ID", request_id)
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            clear_contextvars()
            REQUEST_ID_CTX.reset(token)


app = FastAPI(title="clipper", version="1.0.0", lifespan=lifespan)
app.state.settings = settings
app.state.store = STORE
app.state.registry = REGISTRY
app.state.accountant = ACCOUNTANT
app.state.sweeper = SWEEPER
app.state.profile = PROFILE

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(ClipperError)
async def clipper_error_handler(request: Request, exc: ClipperError) -> JSONResponse:
    content: Dict[str, Any] = {"error": exc.message}
    if exc.summary is not None:
        content["processingSummary"] = exc.summary
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    flush_logs()
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def safe_path_check(base: Path, rel: str) -> Path:
    base = base.resolve()
    try:
        target = (base / rel).resolve()
    except (OSError, ValueError) as exc:
        logger.warning("Invalid path provided for %s: %s", base, rel)
        raise HTTPException(status_code=400, detail="Invalid path") from exc

    # relative_to raises ValueError if target escapes base
    try:
        target.relative_to(base)
    except ValueError:
        logger.warning("Blocked path traversal attempt: %s -> %s", rel, target)
        raise HTTPException(status_code=403, detail="Access denied")

    return target


def ensure_video_upload(upload: UploadFile) -> None:
    content_type = (upload.content_type or "").lower()
    if not content_type.startswith("video/"):
        logger.warning("Upload rejected due to invalid content-type: %s", content_type or "unknown")
        raise InvalidUploadError("Only video files are allowed!")


async def stream_upload_to_path(upload: UploadFile, dest: Path, *, max_bytes: int, chunk_size: int) -> int:
    """Copy an upload to ``dest`` through a ``.partial`` file and return its size."""
    await upload.seek(0)
    total = 0
    temp_dest = dest.with_name(dest.name + PARTIAL_SUFFIX)
    try:
        with temp_dest.open("wb") as buffer:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                if total + len(chunk) > max_bytes:
                    logger.warning("Upload exceeded max size: %s", upload.filename)
                    raise UploadTooLargeError()
                buffer.write(chunk)
                total += len(chunk)
        temp_dest.replace(dest)
    except ClipperError:
        with suppress(FileNotFoundError):
            temp_dest.unlink()
        raise
    except OSError as exc:
        with suppress(FileNotFoundError):
            temp_dest.unlink()
        logger.error("Failed to persist upload %s: %s", upload.filename, exc)
        flush_logs()
        raise ClipperError("Failed to save upload") from exc
    return total


def _remove_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed removing %s: %s", path, exc)


async def watch_disconnect(request: Request, registry: JobRegistry, job_id: str, interval: float) -> bool:
    """Cancel ``job_id`` as soon as the client goes away."""
    while registry.is_active(job_id):
        if await request.is_disconnected():
            logger.info("Client disconnected, cleaning up process for job %s", job_id)
            registry.cancel(job_id)
            return True
        await asyncio.sleep(interval)
    return False


@app.post("/upload")
async def upload_video(
    request: Request,
    video: Optional[UploadFile] = File(None),
    customMessage: Optional[str] = Form(None),
    fontStyle: Optional[str] = Form(None),
):
    logger.info("Received /upload request")
    registry: JobRegistry = request.app.state.registry
    with registry.slot() as job_id:
        return await _process_upload(request, job_id, video, customMessage, fontStyle)


async def _process_upload(
    request: Request,
    job_id: str,
    video: Optional[UploadFile],
    custom_message: Optional[str],
    font_style: Optional[str],
):
    state = request.app.state
    cfg: Settings = state.settings
    store: ArtifactStore = state.store
    registry: JobRegistry = state.registry
    accountant: StorageAccountant = state.accountant

    if video is None or not video.filename:
        raise NoUploadError()
    ensure_video_upload(video)
    try:
        overlay = OverlayConfig(
            caption=custom_message,
            font=font_style or cfg.DEFAULT_FONT,
            watermark=cfg.WATERMARK_TEXT,
        )
    except ValidationError as exc:
        raise InvalidUploadError(f"Invalid overlay options: {exc.errors()[0]['msg']}") from exc

    upload_path = store.upload_path(video.filename)
    registry.claim(job_id, upload_path)
    summary = ProcessingSummary()
    duration: Optional[float] = None
    try:
        size = await stream_upload_to_path(
            video, upload_path, max_bytes=cfg.max_file_size_bytes, chunk_size=cfg.UPLOAD_CHUNK_SIZE
        )
        logger.info("Received upload: %s (%s)", video.filename, format_file_size(size))

        if not accountant.has_capacity(size, exclude=[upload_path]):
            raise QuotaExceeded()

        duration = await probe_duration(upload_path, cfg.FFPROBE_BIN)
        project = store.allocate_project()
        plan = plan_segments(duration, cfg.SEGMENT_SECONDS, project.path)
        summary = ProcessingSummary(total_segments=len(plan))
        logger.info("Processing video: %.2f seconds duration, %d segments", duration, len(plan))

        job = TranscodeJob(registry, job_id, state.profile, runner=run_ffmpeg)
        watcher = asyncio.create_task(
            watch_disconnect(request, registry, job_id, cfg.DISCONNECT_POLL_SECONDS)
        )
        try:
            outcome = await job.run(upload_path, plan, overlay)
        finally:
            if not watcher.done():
                watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
        summary = outcome.summary
        client_gone = watcher.done() and not watcher.cancelled() and watcher.result()

        if outcome.cancelled:
            if client_gone:
                raise ClientDisconnect(job_id)
            raise JobCancelledError(job_id)
        if not summary.success:
            raise TotalFailure(summary.to_dict())

        clips = [
            ClipInfo(
                path=str(segment.output_path),
                filename=segment.filename,
                part=segment.index,
                url=store.clip_url(project, segment.filename),
            )
            for segment in outcome.succeeded
        ]
        return {
            "project": project.name,
            "clips": [clip.model_dump() for clip in clips],
            "duration": duration,
            "numSegments": len(plan),
            "processingSummary": summary.to_dict(),
        }
    except ClipperError as exc:
        if exc.summary is None and (
            isinstance(exc, JobCancelledError) or (exc.status_code >= 500 and not isinstance(exc, QuotaExceeded))
        ):
            exc.summary = summary.to_dict()
        if isinstance(exc, ClientDisconnect):
            logger.info("Job %s cancelled after client disconnect", job_id)
        else:
            logger.warning("Upload failed (%d): %s", exc.status_code, exc.message)
        raise
    except Exception as exc:
        logger.exception("Error processing video: %s", exc)
        flush_logs()
        return JSONResponse(
            status_code=500,
            content={
                "error": f"Error processing video: {exc}",
                "processingSummary": {**summary.to_dict(), "success": False},
            },
        )
    finally:
        _remove_quietly(upload_path.with_name(upload_path.name + PARTIAL_SUFFIX))
        _remove_quietly(upload_path)


@app.get("/clips/{project}/{filename}")
def download_clip(project: str, filename: str):
    target = safe_path_check(CLIPS_DIR, f"{project}/{filename}")
    if not target.is_file():
        logger.error("File not found: %s", target)
        return JSONResponse(status_code=404, content={"error": "File not found"})
    return FileResponse(target, media_type="video/mp4", filename=filename, headers=CLIP_HEADERS)


# Registered after the download route so /clips/<project>/<file> stays an attachment
app.mount("/clips", StaticFiles(directory=str(CLIPS_DIR)), name="clips")


@app.get("/jobs")
def list_jobs(request: Request):
    registry: JobRegistry = request.app.state.registry
    return {"jobs": registry.snapshot(), "max_jobs": registry.max_jobs}


@app.post("/jobs/{job_id}/kill")
def kill_job(request: Request, job_id: str):
    registry: JobRegistry = request.app.state.registry
    if not registry.cancel(job_id):
        raise JobNotFoundError(job_id)
    logger.info("Job %s killed by user", job_id)
    return {"ok": True, "job_id": job_id, "status": "cancelled"}


@app.get("/health")
def health(request: Request):
    state = request.app.state
    ffmpeg_info = ffmpeg_snapshot()
    used = state.accountant.current_usage()
    quota = state.accountant.quota_bytes
    return {
        "ok": bool(ffmpeg_info.get("available")) and used <= quota,
        "ffmpeg": ffmpeg_info,
        "jobs": {"active": len(state.registry), "max": state.registry.max_jobs},
        "storage": {
            "used_bytes": used,
            "quota_bytes": quota,
            "used": format_file_size(used),
            "quota": format_file_size(quota),
        },
    }
