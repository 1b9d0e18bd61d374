"""
Tests for error handling classes and error scenarios.

Tests cover:
- ErrorCode constants
- NarrationError creation and serialization (to_dict)
- Subclass codes and default messages
- SynthesisError retryable flag and classification
- Media error descriptions for PlaybackError
"""
import httpx
import pytest

from tts_narrator.core.errors import (
    CacheWriteError,
    ErrorCode,
    MediaErrorCode,
    NarrationError,
    PlaybackError,
    QueueOverflowError,
    RequestCancelledError,
    RequestTimeoutError,
    SynthesisError,
    describe_media_error,
)
from tts_narrator.tts.synthesizer import is_retryable_error


class TestErrorCode:
    """Tests for ErrorCode constants."""

    def test_codes_are_strings(self):
        """Codes are stable strings."""
        assert ErrorCode.CACHE_WRITE_FAILED == "CACHE_WRITE_FAILED"
        assert ErrorCode.SYNTHESIS_FAILED == "SYNTHESIS_FAILED"
        assert ErrorCode.QUEUE_OVERFLOW == "QUEUE_OVERFLOW"
        assert ErrorCode.TIMEOUT == "TIMEOUT"
        assert ErrorCode.CANCELLED == "CANCELLED"
        assert ErrorCode.PLAYBACK_FAILED == "PLAYBACK_FAILED"


class TestNarrationError:
    """Tests for NarrationError base exception."""

    def test_creation_with_message(self):
        """NarrationError should store message and default code."""
        err = NarrationError("boom")
        assert err.message == "boom"
        assert str(err) == "boom"
        assert err.code == ErrorCode.INTERNAL_ERROR
        assert err.details == {}

    def test_to_dict_without_details(self):
        """to_dict omits empty details."""
        assert NarrationError("boom").to_dict() == {
            "ok": False,
            "error": "INTERNAL_ERROR",
            "message": "boom",
        }

    def test_to_dict_with_details(self):
        """to_dict includes details when present."""
        err = CacheWriteError("disk full", details={"book_id": "b1"})
        assert err.to_dict()["details"] == {"book_id": "b1"}
        assert err.to_dict()["error"] == "CACHE_WRITE_FAILED"


class TestSubclasses:
    """Tests for the concrete error types."""

    def test_all_inherit_from_narration_error(self):
        """Every error can be caught as NarrationError."""
        for cls in (CacheWriteError, QueueOverflowError, RequestTimeoutError, RequestCancelledError):
            assert issubclass(cls, NarrationError)
        assert issubclass(SynthesisError, NarrationError)
        assert issubclass(PlaybackError, NarrationError)

    def test_default_messages(self):
        """Queue errors carry fixed default messages."""
        assert QueueOverflowError().message == "Request dropped due to queue overflow"
        assert RequestTimeoutError().message == "Request timeout"
        assert RequestCancelledError().message == "Request cancelled"

    def test_codes(self):
        """Each subclass sets its code."""
        assert QueueOverflowError().code == ErrorCode.QUEUE_OVERFLOW
        assert RequestTimeoutError().code == ErrorCode.TIMEOUT
        assert RequestCancelledError().code == ErrorCode.CANCELLED
        assert SynthesisError("x").code == ErrorCode.SYNTHESIS_FAILED


class TestSynthesisErrorClassification:
    """Tests for retryable vs terminal synthesis failures."""

    def test_explicit_flag_wins(self):
        """retryable=False is terminal even with a transient-sounding message."""
        assert is_retryable_error(SynthesisError("network timeout", retryable=False)) is False
        assert is_retryable_error(SynthesisError("bad voice", retryable=True)) is True

    def test_status_code_classification(self):
        """429 and 5xx are retryable, other 4xx are not."""
        assert is_retryable_error(SynthesisError("x", status_code=429)) is True
        assert is_retryable_error(SynthesisError("x", status_code=503)) is True
        assert is_retryable_error(SynthesisError("x", status_code=400)) is False

    def test_keyword_classification(self):
        """Unflagged errors are classified by message."""
        assert is_retryable_error(RuntimeError("Connection reset by peer")) is True
        assert is_retryable_error(RuntimeError("ECONNRESET")) is True
        assert is_retryable_error(RuntimeError("Rate limit exceeded")) is True
        assert is_retryable_error(RuntimeError("Invalid voice")) is False

    def test_exception_types(self):
        """Timeouts and transport errors are retryable by type."""
        assert is_retryable_error(TimeoutError()) is True
        assert is_retryable_error(ConnectionError()) is True
        assert is_retryable_error(httpx.ConnectTimeout("slow")) is True

    def test_details_record_flag(self):
        """The flag and status land in details."""
        err = SynthesisError("x", retryable=True, status_code=503)
        assert err.details == {"retryable": True, "status_code": 503}


class TestPlaybackError:
    """Tests for audio sink error descriptions."""

    @pytest.mark.parametrize("code,text", [
        (MediaErrorCode.ABORTED, "Audio playback was aborted"),
        (MediaErrorCode.NETWORK, "Network error while loading audio"),
        (MediaErrorCode.DECODE, "Audio decoding error"),
        (MediaErrorCode.SRC_NOT_SUPPORTED, "Audio format not supported"),
    ])
    def test_known_codes(self, code, text):
        """Known media codes map to fixed descriptions."""
        assert describe_media_error(code) == text
        assert describe_media_error(int(code), "detail") == f"{text}: detail"

    def test_unknown_code(self):
        """Unknown codes fall back to a generic description."""
        assert describe_media_error(99) == "Audio playback failed"
        assert describe_media_error(None, "gone") == "Audio playback failed: gone"

    def test_from_media_error(self):
        """from_media_error keeps the code."""
        err = PlaybackError.from_media_error(3, "bad frame")
        assert err.media_code == 3
        assert err.message == "Audio decoding error: bad frame"
        assert err.details["media_code"] == 3
