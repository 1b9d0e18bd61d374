"""
Configuration Management for tts-narrator.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration objects, one per component
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (NARRATOR_CACHE_DIR, NARRATOR_SYNTH_URL, ...)
    2. YAML config file (config/settings.yaml)
    3. Defaults class values

Example settings.yaml:
    cache:
      base_dir: ./audio-cache
      max_size_mb: 500

    queue:
      max_queue_size: 15
      batch_size: 5

    logging:
      level: 2  # NORMAL
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
import os
import yaml


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    This exception is thrown when a configuration value is outside
    acceptable bounds or of the wrong type.
    """
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Cache: On-disk fragment audio cache
        - Queue: Synthesis request queue (admission, batching, retry)
        - Service: Request coalescing
        - Playback: Prefetch windows and failure policy
        - Synthesizer: Speech provider endpoint
        - Logging: Log level and formatting
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Fragment Cache
    # ─────────────────────────────────────────────────────────────────────────
    CACHE_BASE_DIR = "./audio-cache"    # Root directory, one subdir per book
    CACHE_MAX_SIZE_MB = 500             # Total size cap across all books
    CACHE_CLEANUP_THRESHOLD = 0.8       # Evict down to this fraction of the cap
    CACHE_FILE_EXTENSION = "mp3"        # Extension of cached audio files

    # ─────────────────────────────────────────────────────────────────────────
    # Request Queue
    # ─────────────────────────────────────────────────────────────────────────
    QUEUE_MAX_SIZE = 15                 # Pending items before overflow drops
    QUEUE_BATCH_SIZE = 5                # Concurrent synthesis calls per batch
    QUEUE_MAX_RETRIES = 3               # Retries for transient failures
    QUEUE_RETRY_DELAY_MS = 1000         # Base backoff, doubled per retry
    QUEUE_REQUEST_TIMEOUT_MS = 60000    # Max age of a request at dispatch
    QUEUE_MAX_WORKERS = 5               # Thread pool for synthesis + writes

    # ─────────────────────────────────────────────────────────────────────────
    # Narration Service
    # ─────────────────────────────────────────────────────────────────────────
    SERVICE_LISTENER_TIMEOUT_S = 30.0   # Lifetime of a coalesced waiter

    # ─────────────────────────────────────────────────────────────────────────
    # Playback
    # ─────────────────────────────────────────────────────────────────────────
    PLAYBACK_PREFETCH_AHEAD = 4         # Fragments requested past the cursor
    PLAYBACK_PREFETCH_BEHIND = 3        # Fragments requested before the cursor
    PLAYBACK_CROSS_PAGE_PREFETCH = 3    # Neighbour-page fragments on page turn
    PLAYBACK_EMPTY_PAGE_GRACE_S = 2.0   # Pause before skipping a blank page
    PLAYBACK_MAX_PLAY_ATTEMPTS = 3      # Attempts per fragment before skipping
    PLAYBACK_READY_TIMEOUT_S = 10.0     # Wait for the sink to become ready
    PLAYBACK_AUDIO_TIMEOUT_S = 90.0     # Wait for a fragment's audio path
    PLAYBACK_BASE_PRIORITY = 3          # First value of the priority counter
    PLAYBACK_MAX_CONSECUTIVE_FAILURES = 3  # Skipped fragments before stopping

    # ─────────────────────────────────────────────────────────────────────────
    # Synthesizer (OpenAI-compatible speech endpoint)
    # ─────────────────────────────────────────────────────────────────────────
    SYNTH_BASE_URL = "https://api.openai.com"
    SYNTH_MODEL = "tts-1"
    SYNTH_VOICE = "alloy"
    SYNTH_RESPONSE_FORMAT = "mp3"
    SYNTH_SPEED = 1.0
    SYNTH_TIMEOUT_S = 30.0
    SYNTH_API_KEY_ENV = "OPENAI_API_KEY"

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG
    LOGGING_JSONL_FILE = "narrator.jsonl"
    LOGGING_ROTATE_MAX_BYTES = 10 * 1024 * 1024
    LOGGING_ROTATE_BACKUP_COUNT = 5

    # ─────────────────────────────────────────────────────────────────────────
    # Metrics
    # ─────────────────────────────────────────────────────────────────────────
    METRICS_ENABLED = True


@dataclass
class CacheConfig:
    """
    On-disk fragment cache configuration.

    Audio for each (book, fragment) pair lives in a per-book directory.
    Once the total size passes max_size_mb * cleanup_threshold the oldest
    files are evicted.
    """
    base_dir: str = Defaults.CACHE_BASE_DIR
    max_size_mb: float = Defaults.CACHE_MAX_SIZE_MB
    cleanup_threshold: float = Defaults.CACHE_CLEANUP_THRESHOLD
    file_extension: str = Defaults.CACHE_FILE_EXTENSION

    @property
    def target_bytes(self) -> int:
        """Size in bytes above which eviction runs."""
        return int(self.max_size_mb * 1024 * 1024 * self.cleanup_threshold)


@dataclass
class QueueConfig:
    """
    Synthesis request queue configuration.

    Bounds the pending backlog, the number of concurrent provider calls,
    and the retry/backoff schedule for transient failures.
    """
    max_queue_size: int = Defaults.QUEUE_MAX_SIZE
    batch_size: int = Defaults.QUEUE_BATCH_SIZE
    max_retries: int = Defaults.QUEUE_MAX_RETRIES
    retry_delay_ms: int = Defaults.QUEUE_RETRY_DELAY_MS
    request_timeout_ms: int = Defaults.QUEUE_REQUEST_TIMEOUT_MS
    max_workers: int = Defaults.QUEUE_MAX_WORKERS


@dataclass
class ServiceConfig:
    listener_timeout_s: float = Defaults.SERVICE_LISTENER_TIMEOUT_S


@dataclass
class PlaybackConfig:
    """
    Playback controller configuration.

    Prefetch priorities are derived from the controller's own counter,
    so only window sizes and timings are configured here.
    """
    prefetch_ahead_count: int = Defaults.PLAYBACK_PREFETCH_AHEAD
    prefetch_behind_count: int = Defaults.PLAYBACK_PREFETCH_BEHIND
    cross_page_prefetch_count: int = Defaults.PLAYBACK_CROSS_PAGE_PREFETCH
    empty_page_grace_s: float = Defaults.PLAYBACK_EMPTY_PAGE_GRACE_S
    max_play_attempts: int = Defaults.PLAYBACK_MAX_PLAY_ATTEMPTS
    ready_timeout_s: float = Defaults.PLAYBACK_READY_TIMEOUT_S
    audio_timeout_s: float = Defaults.PLAYBACK_AUDIO_TIMEOUT_S
    base_priority: int = Defaults.PLAYBACK_BASE_PRIORITY
    max_consecutive_failures: int = Defaults.PLAYBACK_MAX_CONSECUTIVE_FAILURES


@dataclass
class SynthesizerConfig:
    """
    Speech provider configuration.

    The API key itself is never stored in settings; api_key_env names the
    environment variable that holds it.
    """
    base_url: str = Defaults.SYNTH_BASE_URL
    model: str = Defaults.SYNTH_MODEL
    voice: str = Defaults.SYNTH_VOICE
    response_format: str = Defaults.SYNTH_RESPONSE_FORMAT
    speed: float = Defaults.SYNTH_SPEED
    timeout_s: float = Defaults.SYNTH_TIMEOUT_S
    api_key_env: str = Defaults.SYNTH_API_KEY_ENV

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env) or None


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, critical errors only
        2 = NORMAL: Request lifecycle, cache status (default)
        3 = VERBOSE: Queue dispatch, prefetch, retries
        4 = DEBUG: Internal state, full tracing
    """
    level: int = Defaults.LOGGING_LEVEL
    log_dir: Optional[str] = None
    jsonl_file: str = Defaults.LOGGING_JSONL_FILE
    rotate_max_bytes: int = Defaults.LOGGING_ROTATE_MAX_BYTES
    rotate_backup_count: int = Defaults.LOGGING_ROTATE_BACKUP_COUNT


@dataclass
class MetricsConfig:
    enabled: bool = Defaults.METRICS_ENABLED


@dataclass
class NarratorConfig:
    """
    Validated configuration for the narration stack.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = NarratorConfig.from_settings(settings)
        print(config.queue.batch_size)  # Typed access
    """
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    synthesizer: SynthesizerConfig = field(default_factory=SynthesizerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "NarratorConfig":
        """
        Create NarratorConfig from Settings with validation.

        Args:
            settings: Raw Settings object loaded from YAML.

        Returns:
            Validated NarratorConfig instance.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Cache configuration
        # ─────────────────────────────────────────────────────────────────────
        cache_raw = raw.get("cache", {}) or {}
        cache = CacheConfig(
            base_dir=str(cache_raw.get("base_dir", Defaults.CACHE_BASE_DIR)),
            max_size_mb=float(cache_raw.get("max_size_mb", Defaults.CACHE_MAX_SIZE_MB)),
            cleanup_threshold=float(cache_raw.get("cleanup_threshold", Defaults.CACHE_CLEANUP_THRESHOLD)),
            file_extension=str(cache_raw.get("file_extension", Defaults.CACHE_FILE_EXTENSION)).lstrip("."),
        )
        cls._validate_positive("cache.max_size_mb", cache.max_size_mb)
        cls._validate_range("cache.cleanup_threshold", cache.cleanup_threshold, 0.01, 1.0)
        if not cache.file_extension:
            raise ConfigValidationError("cache.file_extension must not be empty")

        # ─────────────────────────────────────────────────────────────────────
        # Queue configuration
        # ─────────────────────────────────────────────────────────────────────
        queue_raw = raw.get("queue", {}) or {}
        queue = QueueConfig(
            max_queue_size=int(queue_raw.get("max_queue_size", Defaults.QUEUE_MAX_SIZE)),
            batch_size=int(queue_raw.get("batch_size", Defaults.QUEUE_BATCH_SIZE)),
            max_retries=int(queue_raw.get("max_retries", Defaults.QUEUE_MAX_RETRIES)),
            retry_delay_ms=int(queue_raw.get("retry_delay_ms", Defaults.QUEUE_RETRY_DELAY_MS)),
            request_timeout_ms=int(queue_raw.get("request_timeout_ms", Defaults.QUEUE_REQUEST_TIMEOUT_MS)),
            max_workers=int(queue_raw.get("max_workers", Defaults.QUEUE_MAX_WORKERS)),
        )
        cls._validate_positive("queue.max_queue_size", queue.max_queue_size)
        cls._validate_positive("queue.batch_size", queue.batch_size)
        cls._validate_non_negative("queue.max_retries", queue.max_retries)
        cls._validate_non_negative("queue.retry_delay_ms", queue.retry_delay_ms)
        cls._validate_positive("queue.request_timeout_ms", queue.request_timeout_ms)
        cls._validate_positive("queue.max_workers", queue.max_workers)

        # ─────────────────────────────────────────────────────────────────────
        # Service configuration
        # ─────────────────────────────────────────────────────────────────────
        service_raw = raw.get("service", {}) or {}
        service = ServiceConfig(
            listener_timeout_s=float(service_raw.get("listener_timeout_s", Defaults.SERVICE_LISTENER_TIMEOUT_S)),
        )
        cls._validate_positive("service.listener_timeout_s", service.listener_timeout_s)

        # ─────────────────────────────────────────────────────────────────────
        # Playback configuration
        # ─────────────────────────────────────────────────────────────────────
        playback_raw = raw.get("playback", {}) or {}
        playback = PlaybackConfig(
            prefetch_ahead_count=int(playback_raw.get("prefetch_ahead_count", Defaults.PLAYBACK_PREFETCH_AHEAD)),
            prefetch_behind_count=int(playback_raw.get("prefetch_behind_count", Defaults.PLAYBACK_PREFETCH_BEHIND)),
            cross_page_prefetch_count=int(
                playback_raw.get("cross_page_prefetch_count", Defaults.PLAYBACK_CROSS_PAGE_PREFETCH)
            ),
            empty_page_grace_s=float(playback_raw.get("empty_page_grace_s", Defaults.PLAYBACK_EMPTY_PAGE_GRACE_S)),
            max_play_attempts=int(playback_raw.get("max_play_attempts", Defaults.PLAYBACK_MAX_PLAY_ATTEMPTS)),
            ready_timeout_s=float(playback_raw.get("ready_timeout_s", Defaults.PLAYBACK_READY_TIMEOUT_S)),
            audio_timeout_s=float(playback_raw.get("audio_timeout_s", Defaults.PLAYBACK_AUDIO_TIMEOUT_S)),
            base_priority=int(playback_raw.get("base_priority", Defaults.PLAYBACK_BASE_PRIORITY)),
            max_consecutive_failures=int(
                playback_raw.get("max_consecutive_failures", Defaults.PLAYBACK_MAX_CONSECUTIVE_FAILURES)
            ),
        )
        cls._validate_non_negative("playback.prefetch_ahead_count", playback.prefetch_ahead_count)
        cls._validate_non_negative("playback.prefetch_behind_count", playback.prefetch_behind_count)
        cls._validate_non_negative("playback.cross_page_prefetch_count", playback.cross_page_prefetch_count)
        cls._validate_non_negative("playback.empty_page_grace_s", playback.empty_page_grace_s)
        cls._validate_positive("playback.max_play_attempts", playback.max_play_attempts)
        cls._validate_positive("playback.ready_timeout_s", playback.ready_timeout_s)
        cls._validate_positive("playback.audio_timeout_s", playback.audio_timeout_s)
        cls._validate_positive("playback.max_consecutive_failures", playback.max_consecutive_failures)

        # ─────────────────────────────────────────────────────────────────────
        # Synthesizer configuration
        # ─────────────────────────────────────────────────────────────────────
        synth_raw = raw.get("synthesizer", {}) or {}
        synthesizer = SynthesizerConfig(
            base_url=str(synth_raw.get("base_url", Defaults.SYNTH_BASE_URL)).rstrip("/"),
            model=str(synth_raw.get("model", Defaults.SYNTH_MODEL)),
            voice=str(synth_raw.get("voice", Defaults.SYNTH_VOICE)),
            response_format=str(synth_raw.get("response_format", Defaults.SYNTH_RESPONSE_FORMAT)),
            speed=float(synth_raw.get("speed", Defaults.SYNTH_SPEED)),
            timeout_s=float(synth_raw.get("timeout_s", Defaults.SYNTH_TIMEOUT_S)),
            api_key_env=str(synth_raw.get("api_key_env", Defaults.SYNTH_API_KEY_ENV)),
        )
        cls._validate_range("synthesizer.speed", synthesizer.speed, 0.25, 4.0)
        cls._validate_positive("synthesizer.timeout_s", synthesizer.timeout_s)

        # ─────────────────────────────────────────────────────────────────────
        # Logging configuration
        # ─────────────────────────────────────────────────────────────────────
        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)

        if isinstance(log_level_raw, str):
            # Names resolve like NARRATOR_LOG_LEVEL; unknown names mean NORMAL
            from tts_narrator.core.logging.levels import coerce_level
            log_level = int(coerce_level(log_level_raw))
        else:
            log_level = int(log_level_raw)

        log_dir = logging_raw.get("log_dir")
        logging_cfg = LoggingConfig(
            level=log_level,
            log_dir=str(log_dir) if log_dir else None,
            jsonl_file=str(logging_raw.get("jsonl_file", Defaults.LOGGING_JSONL_FILE)),
            rotate_max_bytes=int(logging_raw.get("rotate_max_bytes", Defaults.LOGGING_ROTATE_MAX_BYTES)),
            rotate_backup_count=int(logging_raw.get("rotate_backup_count", Defaults.LOGGING_ROTATE_BACKUP_COUNT)),
        )
        cls._validate_positive("logging.rotate_max_bytes", logging_cfg.rotate_max_bytes)
        cls._validate_non_negative("logging.rotate_backup_count", logging_cfg.rotate_backup_count)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        metrics_raw = raw.get("metrics", {}) or {}
        metrics_cfg = MetricsConfig(enabled=bool(metrics_raw.get("enabled", Defaults.METRICS_ENABLED)))

        return cls(
            cache=cache,
            queue=queue,
            service=service,
            playback=playback,
            synthesizer=synthesizer,
            logging=logging_cfg,
            metrics=metrics_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        """Validate that a value is positive (> 0)."""
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        """Validate that a value is non-negative (>= 0)."""
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        """Validate that a value is within a range [min_val, max_val]."""
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_config() to get a validated NarratorConfig.

    Attributes:
        raw: Dictionary of raw configuration values.
    """
    raw: Dict[str, Any]

    @property
    def cache_dir(self) -> str:
        """Root directory of the fragment cache."""
        return str((self.raw.get("cache") or {}).get("base_dir", Defaults.CACHE_BASE_DIR))

    @property
    def synthesizer_url(self) -> str:
        return str((self.raw.get("synthesizer") or {}).get("base_url", Defaults.SYNTH_BASE_URL))

    def get_config(self) -> NarratorConfig:
        """
        Get validated NarratorConfig from these settings.

        Raises:
            ConfigValidationError: If validation fails.
        """
        return NarratorConfig.from_settings(self)


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML configuration file.

    Environment variable overrides:
        - NARRATOR_CACHE_DIR: Override cache.base_dir
        - NARRATOR_SYNTH_URL: Override synthesizer.base_url

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Settings object with loaded configuration.

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=_apply_env_overrides(raw))


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    cache_dir = os.getenv("NARRATOR_CACHE_DIR")
    if cache_dir:
        raw.setdefault("cache", {})["base_dir"] = cache_dir

    synth_url = os.getenv("NARRATOR_SYNTH_URL")
    if synth_url:
        raw.setdefault("synthesizer", {})["base_url"] = synth_url

    return raw


def default_settings() -> Settings:
    """Settings with every section at its default (env overrides still apply)."""
    return Settings(raw=_apply_env_overrides({}))
