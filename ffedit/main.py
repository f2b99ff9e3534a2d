import asyncio
import atexit
import io
import logging
import shutil
import subprocess
import sys
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

import structlog
from fastapi import APIRouter, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, clear_contextvars

from .catalog import MergeTarget, OutputProfile
from .config import Settings
from .engine import EngineAdapter
from .editor import MediaEditor
from .errors import MediaEditError, RangeNotSatisfiableError, ValidationError
from .jobs import JobQueue
from .store import ArtifactKind, ArtifactStore
from .streaming import guess_media_type, serve_range

settings = Settings.load()

UPLOADS_DIR = settings.UPLOADS_DIR
PROCESSED_DIR = settings.PROCESSED_DIR
LOGS_DIR = settings.LOGS_DIR
for directory in (UPLOADS_DIR, PROCESSED_DIR, LOGS_DIR):
    directory.mkdir(parents=True, exist_ok=True)

APP_LOG_FILE = LOGS_DIR / "application.log"
REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Force unbuffered output when supported
try:
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)
except (AttributeError, io.UnsupportedOperation):
    pass

file_stream = open(APP_LOG_FILE, "a", encoding="utf-8", buffering=1)
atexit.register(file_stream.close)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


log_format = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'
request_id_filter = RequestIdFilter()

file_handler = logging.StreamHandler(file_stream)
file_handler.setLevel(logging.INFO)
file_handler.addFilter(request_id_filter)
file_handler.setFormatter(logging.Formatter(log_format))

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.addFilter(request_id_filter)
console_handler.setFormatter(logging.Formatter(log_format))

# Root logger so uvicorn and the ffedit.* loggers share the handlers
logging.basicConfig(level=logging.INFO, handlers=[file_handler, console_handler], force=True)

logger = logging.getLogger("ffedit")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)
struct_logger = structlog.get_logger("ffedit")

PROFILE = OutputProfile.from_settings(settings)
MERGE_TARGET = MergeTarget(
    width=settings.MERGE_WIDTH,
    height=settings.MERGE_HEIGHT,
    fps=settings.MERGE_FPS,
    sample_rate=settings.MERGE_SAMPLE_RATE,
)
STORE = ArtifactStore(
    UPLOADS_DIR,
    PROCESSED_DIR,
    max_file_size_bytes=settings.max_file_size_bytes,
    chunk_size=settings.UPLOAD_CHUNK_SIZE,
)
ENGINE = EngineAdapter(settings.FFMPEG_BIN, settings.FFPROBE_BIN, LOGS_DIR)
QUEUE = JobQueue(settings.MAX_CONCURRENT_JOBS)
EDITOR = MediaEditor(
    STORE,
    ENGINE,
    QUEUE,
    profile=PROFILE,
    merge_target=MERGE_TARGET,
    max_merge_inputs=settings.MAX_MERGE_INPUTS,
    font_file=settings.FONT_FILE,
)

_TOOL_VERSION_CACHE: Dict[str, Dict[str, Any]] = {}


def cleanup_expired() -> int:
    return STORE.sweep_expired(settings.retention_seconds)


async def _periodic_cleanup() -> None:
    """Sweep expired artifacts; the first run is delayed so startup can finish."""
    await asyncio.sleep(settings.CLEANUP_INITIAL_DELAY_SECONDS)
    while True:
        try:
            await asyncio.to_thread(cleanup_expired)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Periodic cleanup failed: %s", exc)
        await asyncio.sleep(settings.CLEANUP_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app):
    logger.info("Video editor API is ready to accept requests")
    ffmpeg_info = await asyncio.to_thread(tool_snapshot, settings.FFMPEG_BIN)
    logger.info("FFmpeg: %s", ffmpeg_info.get("version") or "unavailable")
    tasks: List[asyncio.Task] = []
    if settings.CLEANUP_INTERVAL_SECONDS > 0:
        tasks.append(asyncio.create_task(_periodic_cleanup()))

    yield

    logger.info("Video editor API is shutting down")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(title="ffedit", lifespan=lifespan)
api = APIRouter(prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Range", "Authorization"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    allow_credentials=False,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    token = REQUEST_ID_CTX.set(request_id)
    bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", request_id)
        return response
    finally:
        clear_contextvars()
        REQUEST_ID_CTX.reset(token)


@app.middleware("http")
async def security_headers_middleware(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


@app.exception_handler(MediaEditError)
async def media_edit_error_handler(request: Request, exc: MediaEditError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RangeNotSatisfiableError):
        headers = {"Content-Range": f"bytes */{exc.size}"}
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse({"error": ValidationError.error, "details": details}, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error", "details": str(exc)}, status_code=500)


# ---------- request models ----------


class EditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("filename required")
        return value


class TrimRequest(EditRequest):
    start_time: Optional[float] = Field(default=0.0, alias="startTime", ge=0)
    end_time: Optional[float] = Field(default=None, alias="endTime", ge=0)


class FilterRequest(EditRequest):
    filter: str


class TextRequest(EditRequest):
    text: str
    font_size: Optional[float] = Field(default=None, alias="fontSize")
    font_color: Optional[str] = Field(default=None, alias="fontColor")
    x: Optional[Union[float, str]] = None
    y: Optional[Union[float, str]] = None
    start_time: Optional[float] = Field(default=None, alias="startTime")
    end_time: Optional[float] = Field(default=None, alias="endTime")


class MergeRequest(BaseModel):
    filenames: List[str] = Field(default_factory=list)

    @field_validator("filenames")
    @classmethod
    def validate_filenames(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value]
        if any(not item for item in cleaned):
            raise ValueError("filenames must not be empty")
        return cleaned


class AudioRequest(EditRequest):
    operation: str
    volume: Optional[float] = None


# ---------- diagnostics ----------


def tool_snapshot(binary: str) -> Dict[str, Any]:
    cached = _TOOL_VERSION_CACHE.get(binary)
    if cached is not None:
        return dict(cached)
    try:
        result = subprocess.run([binary, "-version"], capture_output=True, text=True, timeout=5)
        available = result.returncode == 0
        version_line = (result.stdout or "").splitlines()[0] if available and result.stdout else ""
        error = None if available else (result.stderr or "Unknown failure")
    except (OSError, subprocess.SubprocessError) as exc:
        available = False
        version_line = ""
        error = str(exc)
    snapshot = {"available": available, "version": version_line, "error": error}
    if available:
        _TOOL_VERSION_CACHE[binary] = dict(snapshot)
    return snapshot


def disk_snapshot() -> Dict[str, Dict[str, Any]]:
    snapshot: Dict[str, Dict[str, Any]] = {}
    targets = {
        "uploads": UPLOADS_DIR,
        "processed": PROCESSED_DIR,
        "logs": LOGS_DIR,
    }
    for name, target in targets.items():
        try:
            usage = shutil.disk_usage(target)
            snapshot[name] = {
                "total_mb": usage.total / (1024 * 1024),
                "used_mb": usage.used / (1024 * 1024),
                "available_mb": usage.free / (1024 * 1024),
            }
        except FileNotFoundError:
            snapshot[name] = {"error": "not_found"}
        except OSError as exc:
            snapshot[name] = {"error": str(exc)}
    return snapshot


# ---------- routes ----------


@app.get("/")
def root():
    return {"message": "Video Editor API Server", "health": "/api/health"}


@api.get("/health")
async def health():
    # Blocking probes go to worker threads; the queue snapshot must stay on the loop.
    ffmpeg_info, ffprobe_info, disk = await asyncio.gather(
        asyncio.to_thread(tool_snapshot, settings.FFMPEG_BIN),
        asyncio.to_thread(tool_snapshot, settings.FFPROBE_BIN),
        asyncio.to_thread(disk_snapshot),
    )
    return {
        "status": "ok",
        "message": "Video Editor API is running",
        "ffmpeg": "configured" if ffmpeg_info["available"] else "missing",
        "ffprobe": "configured" if ffprobe_info["available"] else "missing",
        "versions": {"ffmpeg": ffmpeg_info, "ffprobe": ffprobe_info},
        "queue": QUEUE.snapshot(),
        "disk": disk,
    }


@api.post("/upload")
async def upload_video(video: Optional[UploadFile] = File(None)):
    if video is None:
        raise ValidationError("No file uploaded")
    artifact = await STORE.put_upload(video)
    info = await EDITOR.upload_info(artifact)
    logger.info("Uploaded %s as %s (%d bytes)", video.filename, artifact.identifier, artifact.size)
    return {
        "success": True,
        "filename": artifact.identifier,
        "originalName": video.filename,
        "size": artifact.size,
        "duration": info.duration,
        "width": info.width,
        "height": info.height,
    }


@api.post("/upload-multiple")
async def upload_multiple(videos: Optional[List[UploadFile]] = File(None)):
    if not videos:
        raise ValidationError("No files uploaded")
    if len(videos) > settings.MAX_UPLOAD_FILES:
        raise ValidationError(f"At most {settings.MAX_UPLOAD_FILES} files can be uploaded at once")
    stored = []
    try:
        for upload in videos:
            stored.append((upload, await STORE.put_upload(upload)))
    except BaseException:
        for _upload, artifact in stored:
            STORE.remove(artifact.path)
        raise
    files = [
        {"filename": artifact.identifier, "originalName": upload.filename, "size": artifact.size}
        for upload, artifact in stored
    ]
    return {"success": True, "files": files}


@api.get("/video/{filename}")
def stream_upload(filename: str, request: Request):
    return serve_range(STORE.resolve(filename, ArtifactKind.UPLOAD), request.headers.get("range"))


@api.get("/processed-video/{filename}")
def stream_processed(filename: str, request: Request):
    return serve_range(STORE.resolve(filename, ArtifactKind.PROCESSED), request.headers.get("range"))


@api.post("/trim")
async def trim_video(job: TrimRequest):
    artifact = await EDITOR.trim(job.filename, job.start_time, job.end_time)
    return {"success": True, "filename": artifact.identifier, "message": "Video trimmed successfully"}


@api.post("/filter")
async def filter_video(job: FilterRequest):
    artifact = await EDITOR.apply_filter(job.filename, job.filter)
    return {
        "success": True,
        "filename": artifact.identifier,
        "message": f"Filter '{job.filter}' applied successfully",
    }


@api.post("/text")
async def text_overlay(job: TextRequest):
    artifact = await EDITOR.add_text(
        job.filename,
        job.text,
        font_size=job.font_size,
        font_color=job.font_color,
        x=job.x,
        y=job.y,
        start_time=job.start_time,
        end_time=job.end_time,
    )
    return {"success": True, "filename": artifact.identifier, "message": "Text overlay added successfully"}


@api.post("/merge")
async def merge_videos(job: MergeRequest):
    artifact = await EDITOR.merge(job.filenames)
    return {"success": True, "filename": artifact.identifier, "message": "Videos merged successfully"}


@api.post("/audio")
async def audio_operation(job: AudioRequest):
    artifact = await EDITOR.audio(job.filename, job.operation, job.volume)
    if job.operation == "extract":
        message = "Audio extracted successfully"
    else:
        message = f"Audio operation '{job.operation}' completed"
    return {"success": True, "filename": artifact.identifier, "message": message}


@api.get("/export/{filename}")
def export_file(filename: str):
    path, kind = STORE.locate(filename)
    logger.info("Exporting %s from %s", filename, kind.value)
    return FileResponse(path, media_type=guess_media_type(path), filename=path.name)


app.include_router(api)

# Raw artifact access, range requests handled by StaticFiles
app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR)), name="uploads")
app.mount("/processed", StaticFiles(directory=str(PROCESSED_DIR)), name="processed")
