"""Error kinds shared by the storage, streaming and transcode packages.

Every error carries the HTTP status the web layer answers with, so routes can
simply let them propagate to the app's error handler.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StreamingError(Exception):
    """Base class for all errors raised by this package."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.error, "message": self.message}
        payload.update(self.details)
        return payload


class NotFoundError(StreamingError):
    status_code = 404
    error = "Not found"


class InvalidRangeError(StreamingError):
    """Range header that cannot be satisfied exactly against ``total_size``."""

    status_code = 416
    error = "Range not satisfiable"

    def __init__(self, total_size: int, message: str = ""):
        super().__init__(message or f"Requested range not satisfiable for {total_size} bytes")
        self.total_size = total_size


class InvalidInputError(StreamingError):
    status_code = 400
    error = "Invalid input"


class InvalidNameError(InvalidInputError):
    """Object or stream name that would resolve outside its storage root."""

    error = "Invalid name"


class BackendError(StreamingError):
    status_code = 500
    error = "Storage backend failure"


class TranscodeFailureError(StreamingError):
    status_code = 500
    error = "Transcode failed"

    def __init__(self, message: str = "", *, rendition: Optional[str] = None):
        super().__init__(message)
        self.rendition = rendition
        if rendition:
            self.details["rendition"] = rendition


class CapacityError(StreamingError):
    status_code = 503
    error = "Service busy"


__all__ = [
    "StreamingError",
    "NotFoundError",
    "InvalidRangeError",
    "InvalidInputError",
    "InvalidNameError",
    "BackendError",
    "TranscodeFailureError",
    "CapacityError",
]
