import logging
import mimetypes
import re
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from fastapi.responses import StreamingResponse

from .errors import NotFoundError, RangeNotSatisfiableError

logger = logging.getLogger("ffedit.streaming")

STREAM_CHUNK_SIZE = 1024 * 1024
DEFAULT_MEDIA_TYPE = "video/mp4"

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Return the inclusive ``(start, end)`` slice a Range header asks for.

    ``None`` means no range was requested. Only a single ``bytes=`` range is
    honoured; anything else raises :class:`RangeNotSatisfiableError`.
    """
    if header is None or not header.strip():
        return None
    match = _RANGE_RE.match(header.strip().replace(" ", ""))
    if not match:
        raise RangeNotSatisfiableError(size, details={"range": header})
    start_s, end_s = match.groups()
    if not start_s and not end_s:
        raise RangeNotSatisfiableError(size, details={"range": header})

    if not start_s:
        # bytes=-N asks for the last N bytes
        length = int(end_s)
        if length == 0 or size == 0:
            raise RangeNotSatisfiableError(size, details={"range": header})
        return max(0, size - length), size - 1

    start = int(start_s)
    end = int(end_s) if end_s else size - 1
    end = min(end, size - 1)
    if start >= size or start > end:
        raise RangeNotSatisfiableError(size, details={"range": header})
    return start, end


def guess_media_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or DEFAULT_MEDIA_TYPE


def plan_range(size: int, range_header: Optional[str], media_type: str) -> Tuple[int, Dict[str, str], Tuple[int, int]]:
    span = parse_range(range_header, size)
    headers = {"Accept-Ranges": "bytes", "Content-Type": media_type}
    if span is None:
        headers["Content-Length"] = str(size)
        return 200, headers, (0, size - 1)
    start, end = span
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(end - start + 1)
    return 206, headers, span


def iter_file(path: Path, start: int, end: int, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as handle:
        handle.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = handle.read(min(chunk_size, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def serve_range(path: Path, range_header: Optional[str], media_type: Optional[str] = None) -> StreamingResponse:
    path = Path(path)
    if not path.is_file():
        raise NotFoundError(details={"filename": path.name})
    size = path.stat().st_size
    status_code, headers, (start, end) = plan_range(size, range_header, media_type or guess_media_type(path))
    if status_code == 206:
        logger.debug("Range %s-%s/%s for %s", start, end, size, path.name)
    return StreamingResponse(iter_file(path, start, end), status_code=status_code, headers=headers)
