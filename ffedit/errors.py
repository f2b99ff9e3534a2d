"""Error taxonomy shared by the core and translated to JSON at the HTTP boundary."""
from __future__ import annotations

from typing import Any, Dict, Optional


class MediaEditError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, details: Any = None) -> None:
        self.message = message or self.error
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(MediaEditError):
    """Missing or malformed parameters; rejected before a job is queued."""

    status_code = 400
    error = "Invalid request"


class NotFoundError(MediaEditError):
    status_code = 404
    error = "File not found"


class PayloadTooLargeError(MediaEditError):
    status_code = 413
    error = "File too large"


class RangeNotSatisfiableError(MediaEditError):
    status_code = 416
    error = "Requested range not satisfiable"

    def __init__(self, size: int, message: Optional[str] = None, *, details: Any = None) -> None:
        super().__init__(message, details=details)
        self.size = size


class EngineError(MediaEditError):
    """The ffmpeg process failed or produced no usable output."""

    status_code = 500
    error = "Processing failed"
