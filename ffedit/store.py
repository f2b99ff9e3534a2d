import logging
import mimetypes
import os
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

import structlog
from fastapi import UploadFile

from .errors import NotFoundError, PayloadTooLargeError, ValidationError

logger = logging.getLogger("ffedit.store")
struct_logger = structlog.get_logger("ffedit")

ALLOWED_UPLOAD_PREFIXES = ("video/", "audio/")
PARTIAL_SUFFIX = ".partial"

_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,254}$")


class ArtifactKind(str, Enum):
    UPLOAD = "upload"
    PROCESSED = "processed"


@dataclass(frozen=True)
class Artifact:
    identifier: str
    kind: ArtifactKind
    path: Path
    size: int
    created: float

    @property
    def extension(self) -> str:
        return self.path.suffix.lower()


def _extension_for(filename: Optional[str], content_type: str) -> str:
    suffix = Path(filename or "").suffix
    if suffix and _EXTENSION_RE.match(suffix):
        return suffix.lower()
    guessed = mimetypes.guess_extension(content_type or "") or ""
    return guessed if _EXTENSION_RE.match(guessed) else ""


class ArtifactStore:
    """Two flat directories of uuid-named media files.

    The filesystem is the only index: an artifact exists exactly when its file
    does. Names never come from client input, only the extension does, and
    only after validation.
    """

    def __init__(
        self,
        uploads_dir: Path,
        processed_dir: Path,
        *,
        max_file_size_bytes: int,
        chunk_size: int = 1024 * 1024,
    ) -> None:
        self.uploads_dir = Path(uploads_dir).resolve()
        self.processed_dir = Path(processed_dir).resolve()
        self.max_file_size_bytes = max_file_size_bytes
        self.chunk_size = max(1, chunk_size)
        for directory in (self.uploads_dir, self.processed_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def directory(self, kind: ArtifactKind) -> Path:
        return self.uploads_dir if ArtifactKind(kind) is ArtifactKind.UPLOAD else self.processed_dir

    # ---------- naming / lookup ----------

    def _safe_path(self, kind: ArtifactKind, identifier: str) -> Path:
        if not identifier or not _IDENTIFIER_RE.match(identifier) or identifier.endswith(PARTIAL_SUFFIX):
            raise NotFoundError(details={"filename": identifier})
        base = self.directory(kind)
        target = (base / identifier).resolve()
        try:
            target.relative_to(base)
        except ValueError:
            logger.warning("Blocked path traversal attempt: %s -> %s", identifier, target)
            raise NotFoundError(details={"filename": identifier}) from None
        return target

    def exists(self, identifier: str, kind: ArtifactKind) -> bool:
        try:
            return self._safe_path(kind, identifier).is_file()
        except NotFoundError:
            return False

    def resolve(self, identifier: str, kind: ArtifactKind) -> Path:
        path = self._safe_path(kind, identifier)
        if not path.is_file():
            raise NotFoundError(details={"filename": identifier})
        return path

    def _resolve_first(self, identifier: str, kinds: Iterable[ArtifactKind]) -> Tuple[Path, ArtifactKind]:
        for kind in kinds:
            if self.exists(identifier, kind):
                return self._safe_path(kind, identifier), kind
        raise NotFoundError(details={"filename": identifier})

    def resolve_input(self, identifier: str) -> Path:
        """Uploads first, then processed outputs so edits can be chained."""
        path, _kind = self._resolve_first(identifier, (ArtifactKind.UPLOAD, ArtifactKind.PROCESSED))
        return path

    def locate(self, identifier: str) -> Tuple[Path, ArtifactKind]:
        """Processed outputs first, then uploads (download order)."""
        return self._resolve_first(identifier, (ArtifactKind.PROCESSED, ArtifactKind.UPLOAD))

    def describe(self, identifier: str, kind: ArtifactKind) -> Artifact:
        path = self.resolve(identifier, kind)
        stat = path.stat()
        return Artifact(identifier, ArtifactKind(kind), path, stat.st_size, stat.st_mtime)

    def allocate(self, prefix: str, extension: str) -> Path:
        if not _EXTENSION_RE.match(extension):
            raise ValueError(f"Invalid file extension: {extension}")
        return self.processed_dir / f"{prefix}_{uuid4().hex}{extension.lower()}"

    # ---------- writes ----------

    async def put_upload(self, upload: UploadFile) -> Artifact:
        content_type = (upload.content_type or "").lower()
        if not content_type.startswith(ALLOWED_UPLOAD_PREFIXES):
            logger.warning("Upload rejected due to invalid content-type: %s", content_type or "unknown")
            raise ValidationError(
                "Only video/audio files are allowed",
                details={"content_type": content_type or "unknown"},
            )

        identifier = uuid4().hex + _extension_for(upload.filename, content_type)
        dest = self.uploads_dir / identifier
        size = await self._stream_to_path(upload, dest)
        stat = dest.stat()
        struct_logger.info("artifact_created", filename=identifier, kind="upload", size=size)
        return Artifact(identifier, ArtifactKind.UPLOAD, dest, size, stat.st_mtime)

    async def _stream_to_path(self, upload: UploadFile, dest: Path) -> int:
        await upload.seek(0)
        header_value = upload.headers.get("content-length") if upload.headers else None
        if header_value:
            try:
                declared_length = int(header_value)
            except (TypeError, ValueError):
                logger.warning("Invalid content-length header on upload %s: %s", upload.filename, header_value)
            else:
                if declared_length > self.max_file_size_bytes:
                    raise PayloadTooLargeError(
                        details={"max_bytes": self.max_file_size_bytes},
                    )

        total = 0
        temp_dest = dest.with_name(dest.name + PARTIAL_SUFFIX)
        try:
            with temp_dest.open("wb") as buffer:
                while True:
                    chunk = await upload.read(self.chunk_size)
                    if not chunk:
                        break
                    if total + len(chunk) > self.max_file_size_bytes:
                        logger.warning("Upload exceeded max size: %s", upload.filename)
                        raise PayloadTooLargeError(details={"max_bytes": self.max_file_size_bytes})
                    buffer.write(chunk)
                    total += len(chunk)
            temp_dest.replace(dest)
        except BaseException:
            self._discard(temp_dest)
            raise
        return total

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed removing %s: %s", path, exc)

    def remove(self, path: Path) -> bool:
        """Best-effort delete used to roll back failed outputs."""
        target = Path(path)
        if not target.exists():
            return False
        try:
            target.unlink()
        except OSError as exc:
            logger.warning("Failed to delete %s: %s", target, exc)
            return False
        logger.info("Removed %s", target.name)
        return True

    # ---------- eviction ----------

    def sweep_expired(self, max_age_seconds: float, *, now: Optional[float] = None) -> int:
        """Delete files in both directories whose mtime is past the window."""
        if max_age_seconds <= 0:
            return 0
        cutoff = (time.time() if now is None else now) - max_age_seconds
        deleted = 0
        for directory in (self.uploads_dir, self.processed_dir):
            expired: List[Path] = []
            try:
                entries = list(directory.iterdir())
            except OSError as exc:
                logger.warning("Failed to scan directory %s: %s", directory, exc)
                continue
            for entry in entries:
                try:
                    if entry.is_file() and entry.stat().st_mtime < cutoff:
                        expired.append(entry)
                except OSError as exc:
                    logger.warning("Failed to inspect file %s: %s", entry, exc)
            for entry in expired:
                try:
                    os.unlink(entry)
                    deleted += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Failed to delete expired file %s: %s", entry, exc)
        if deleted:
            logger.info("Cleanup: deleted %s files older than %.0f seconds", deleted, max_age_seconds)
        struct_logger.info("sweep_completed", deleted=deleted, max_age_seconds=max_age_seconds)
        return deleted
