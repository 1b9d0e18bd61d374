"""
Speech Synthesizer Port and HTTP Adapter.

This module provides:
    - BaseSynthesizer: the port the request queue calls (text in, audio bytes out)
    - is_retryable_error(): transient vs terminal failure classification
    - OpenAISpeechSynthesizer: adapter for OpenAI-compatible /v1/audio/speech
    - get_synthesizer(): factory from Settings

Failure Classification:
    Retryable (the queue backs off and tries again):
        - timeouts, connection errors, connection resets
        - HTTP 408, 429 and 5xx
        - messages mentioning timeout, network, rate limit, server error,
          temporary failure, connection or ECONNRESET
    Terminal (the caller's future rejects immediately):
        - any other 4xx (bad input, unknown voice, auth)
        - an empty response body

Synthesizers are called from the queue's worker threads, so implementations
must be safe to call concurrently. httpx.Client is.

Implementing a New Synthesizer:
    1. Subclass BaseSynthesizer
    2. Implement synthesize(text, voice, rate) -> bytes
    3. Raise SynthesisError(message, retryable=...) on failure
"""
from __future__ import annotations

import threading
from typing import Optional

import httpx

from tts_narrator.core.config import Settings, SynthesizerConfig
from tts_narrator.core.errors import SynthesisError
from tts_narrator.core.logging import debug, get_logger, verbose, warn
from tts_narrator.utils.timeit import timeit

# Lowercase substrings that mark a transient provider failure
RETRYABLE_KEYWORDS = (
    "timeout",
    "timed out",
    "network",
    "rate limit",
    "too many requests",
    "server error",
    "temporary",
    "temporarily",
    "connection",
    "econnreset",
    "service unavailable",
    "bad gateway",
)

RETRYABLE_STATUS = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or 500 <= status_code < 600


def is_retryable_error(exc: BaseException) -> bool:
    """
    Decide whether a synthesis failure is worth retrying.

    An explicit SynthesisError.retryable flag wins; otherwise the exception
    type and then its message are inspected.
    """
    if isinstance(exc, SynthesisError):
        if exc.retryable is not None:
            return exc.retryable
        if exc.status_code is not None:
            return is_retryable_status(exc.status_code)

    if isinstance(exc, (TimeoutError, ConnectionError, httpx.TimeoutException, httpx.TransportError)):
        return True

    message = str(exc).lower()
    return any(k in message for k in RETRYABLE_KEYWORDS)


class BaseSynthesizer:
    """
    Base class for speech providers.

    Attributes:
        name: Provider identifier used in logs.
    """
    name: str = "base"

    def __init__(self):
        self.logger = get_logger(f"tts-narrator.synth.{self.name}")

    def synthesize(self, text: str, voice: Optional[str] = None, rate: Optional[float] = None) -> bytes:
        """
        Convert text to encoded audio.

        Args:
            text: Text to speak. Never empty.
            voice: Provider voice ID, or None for the default.
            rate: Speaking rate multiplier, or None for the default.

        Returns:
            Encoded audio bytes (e.g. MP3).

        Raises:
            SynthesisError: On failure, with retryable set appropriately.
            NotImplementedError: If not overridden.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release network resources. Default is a no-op."""


class OpenAISpeechSynthesizer(BaseSynthesizer):
    """
    Synthesizer for the OpenAI-compatible speech endpoint.

    Sends ``POST {base_url}/v1/audio/speech`` with a JSON body of model,
    input, voice, response_format and speed, and returns the response body.

    Args:
        config: Endpoint, model and default voice/format/speed.
        client: Optional preconfigured httpx.Client (tests pass one with a
            MockTransport). Owned clients are closed by close().
    """
    name = "openai"

    MIN_SPEED = 0.25
    MAX_SPEED = 4.0

    def __init__(self, config: SynthesizerConfig, client: Optional[httpx.Client] = None):
        super().__init__()
        self._config = config
        self._owns_client = client is None
        if client is None:
            headers = {}
            if config.api_key:
                headers["Authorization"] = f"Bearer {config.api_key}"
            client = httpx.Client(base_url=config.base_url, timeout=config.timeout_s, headers=headers)
        self._client = client
        self._closed = False
        self._lock = threading.Lock()

    @property
    def config(self) -> SynthesizerConfig:
        return self._config

    def _payload(self, text: str, voice: Optional[str], rate: Optional[float]) -> dict:
        speed = self._config.speed if rate is None else float(rate)
        speed = min(max(speed, self.MIN_SPEED), self.MAX_SPEED)
        return {
            "model": self._config.model,
            "input": text,
            "voice": voice or self._config.voice,
            "response_format": self._config.response_format,
            "speed": speed,
        }

    def synthesize(self, text: str, voice: Optional[str] = None, rate: Optional[float] = None) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Cannot synthesize empty text", retryable=False)

        payload = self._payload(text, voice, rate)
        debug(self.logger, "synth_request", chars=len(text), voice=payload["voice"], speed=payload["speed"])

        try:
            with timeit("synthesize") as t:
                response = self._client.post("/v1/audio/speech", json=payload)
        except httpx.TimeoutException as e:
            raise SynthesisError(f"Speech request timeout: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise SynthesisError(f"Speech request network error: {e}", retryable=True) from e

        status = response.status_code
        if status >= 400:
            detail = self._error_detail(response)
            retryable = is_retryable_status(status)
            if status == 429:
                message = f"Speech provider rate limit (429): {detail}"
            elif status >= 500:
                message = f"Speech provider server error ({status}): {detail}"
            else:
                message = f"Speech provider rejected request ({status}): {detail}"
            warn(self.logger, "synth_http_error", status=status, retryable=retryable)
            raise SynthesisError(message, retryable=retryable, status_code=status)

        audio = response.content
        if not audio:
            raise SynthesisError("Speech provider returned empty audio", retryable=False, status_code=status)

        verbose(self.logger, "synth_done", chars=len(text), bytes=len(audio), seconds=round(t.seconds, 3))
        return audio

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if isinstance(err, str):
                return err
            if body.get("detail"):
                return str(body["detail"])
        return str(body)[:200]

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self._owns_client:
            self._client.close()


def get_synthesizer(settings: Settings, client: Optional[httpx.Client] = None) -> BaseSynthesizer:
    """
    Build the synthesizer described by the synthesizer section of settings.

    Raises:
        ValueError: If synthesizer.provider is unknown.
    """
    provider = str((settings.raw.get("synthesizer") or {}).get("provider", "openai")).lower()
    config = settings.get_config().synthesizer

    if provider in ("openai", "openai-compatible"):
        return OpenAISpeechSynthesizer(config, client=client)

    raise ValueError(f"Unknown synthesizer provider: {provider}")
