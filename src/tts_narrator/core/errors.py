"""
Error Codes and Exceptions for tts-narrator.

Every failure that crosses a component boundary is a NarrationError with a
stable code, a human-readable message and an optional details dict. The
queue and cache settle futures with these; the playback controller turns
them into entries of its visible error log.

Hierarchy:
    NarrationError
        CacheWriteError        disk failure or zero-byte write
        SynthesisError         provider failure (retryable flag)
        QueueOverflowError     dropped under admission control
        RequestTimeoutError    aged out before dispatch
        RequestCancelledError  explicit cancel or book close
        PlaybackError          audio sink failure for one fragment

Example:
    >>> try:
    ...     await service.request_audio("b1", "p1", "Hello.")
    ... except RequestCancelledError:
    ...     pass  # not an error condition
    ... except NarrationError as e:
    ...     print(e.to_dict())
"""
from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, Optional


class ErrorCode:
    """Stable string codes carried by NarrationError.code."""
    CACHE_WRITE_FAILED = "CACHE_WRITE_FAILED"
    SYNTHESIS_FAILED = "SYNTHESIS_FAILED"
    QUEUE_OVERFLOW = "QUEUE_OVERFLOW"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    PLAYBACK_FAILED = "PLAYBACK_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class NarrationError(Exception):
    """
    Base exception for narration errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode.
        details: Additional context (book_id, fragment_id, ...).
    """
    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dict for JSON output or the UI error log."""
        result: Dict[str, Any] = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class CacheWriteError(NarrationError):
    """Raised when an audio file cannot be written or was written empty."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CACHE_WRITE_FAILED, details)


class SynthesisError(NarrationError):
    """
    Raised when the speech provider fails.

    Args:
        message: Error message (kept close to the provider's wording so
            keyword classification still works on it).
        retryable: True for transient failures (timeouts, network errors,
            rate limiting, 5xx), False for bad input or unsupported options,
            None to classify by status code and message.
        status_code: HTTP status when the provider answered.
    """
    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict] = None,
    ):
        details = dict(details or {})
        if retryable is not None:
            details.setdefault("retryable", retryable)
        if status_code is not None:
            details.setdefault("status_code", status_code)
        super().__init__(message, ErrorCode.SYNTHESIS_FAILED, details)
        self.retryable = retryable
        self.status_code = status_code


class QueueOverflowError(NarrationError):
    """Raised for a pending request dropped because the queue is over capacity."""
    def __init__(self, message: str = "Request dropped due to queue overflow", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.QUEUE_OVERFLOW, details)


class RequestTimeoutError(NarrationError):
    """Raised when a request is too old to dispatch or a wait runs out."""
    def __init__(self, message: str = "Request timeout", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.TIMEOUT, details)


class RequestCancelledError(NarrationError):
    """Raised to waiters of a cancelled request. Not logged as an error."""
    def __init__(self, message: str = "Request cancelled", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CANCELLED, details)


class MediaErrorCode(IntEnum):
    """Audio sink error codes, numbered like HTML5 MediaError."""
    ABORTED = 1
    NETWORK = 2
    DECODE = 3
    SRC_NOT_SUPPORTED = 4


_MEDIA_ERROR_MESSAGES = {
    MediaErrorCode.ABORTED: "Audio playback was aborted",
    MediaErrorCode.NETWORK: "Network error while loading audio",
    MediaErrorCode.DECODE: "Audio decoding error",
    MediaErrorCode.SRC_NOT_SUPPORTED: "Audio format not supported",
}


def describe_media_error(code: Optional[int], message: str = "") -> str:
    """
    Human-readable description of an audio sink error.

    Unknown codes fall back to the sink's own message, or a generic text.
    """
    try:
        text = _MEDIA_ERROR_MESSAGES[MediaErrorCode(code)]  # type: ignore[arg-type]
    except (ValueError, TypeError, KeyError):
        return f"Audio playback failed: {message}" if message else "Audio playback failed"
    return f"{text}: {message}" if message else text


class PlaybackError(NarrationError):
    """
    Raised when the audio sink cannot load or play a fragment.

    Attributes:
        media_code: MediaErrorCode when the sink reported one.
    """
    def __init__(
        self,
        message: str,
        media_code: Optional[int] = None,
        details: Optional[Dict] = None,
    ):
        details = dict(details or {})
        if media_code is not None:
            details.setdefault("media_code", int(media_code))
        super().__init__(message, ErrorCode.PLAYBACK_FAILED, details)
        self.media_code = media_code

    @classmethod
    def from_media_error(cls, code: Optional[int], message: str = "", details: Optional[Dict] = None) -> "PlaybackError":
        return cls(describe_media_error(code, message), media_code=code, details=details)
