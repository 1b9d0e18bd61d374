"""
Prometheus Metrics for tts-narrator.

Metrics Exposed:
    narrator_requests_total           - Counter of queue outcomes by status
    narrator_synthesis_seconds        - Histogram of provider call latency
    narrator_audio_bytes_total        - Counter of audio bytes written to cache
    narrator_cache_hits_total         - Counter of fragment cache hits
    narrator_cache_misses_total       - Counter of fragment cache misses
    narrator_cache_evicted_files_total - Counter of files removed by eviction
    narrator_retries_total            - Counter of scheduled retries
    narrator_queue_pending            - Gauge of pending queue items
    narrator_queue_active             - Gauge of in-flight queue items
    narrator_playback_errors_total    - Counter of playback errors by kind

Usage:
    from tts_narrator.core.metrics import metrics

    metrics.record_request("success", duration=0.8, audio_bytes=48213)
    metrics.record_cache("hit")
    metrics.set_queue_depth(pending=7, active=5)

    content, content_type = metrics.get_metrics_response()

All metrics live on a private CollectorRegistry so several narrators (or
test runs) in one process never collide on the global registry.
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class NarratorMetrics:
    """
    Narration metrics on a private Prometheus registry.

    Recording methods are no-ops while disabled, so call sites never
    check the flag themselves.

    Attributes:
        enabled: Whether metrics collection is active.
    """

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._registry = CollectorRegistry()
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        self._requests_total = Counter(
            "narrator_requests_total",
            "Settled synthesis requests",
            ["status"],
            registry=self._registry,
        )

        self._synthesis_seconds = Histogram(
            "narrator_synthesis_seconds",
            "Synthesis provider call duration in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self._registry,
        )

        self._audio_bytes_total = Counter(
            "narrator_audio_bytes_total",
            "Audio bytes written to the fragment cache",
            registry=self._registry,
        )

        self._cache_hits = Counter(
            "narrator_cache_hits_total",
            "Fragment cache hits",
            registry=self._registry,
        )
        self._cache_misses = Counter(
            "narrator_cache_misses_total",
            "Fragment cache misses",
            registry=self._registry,
        )
        self._cache_evicted = Counter(
            "narrator_cache_evicted_files_total",
            "Files removed by size-based eviction",
            registry=self._registry,
        )

        self._retries_total = Counter(
            "narrator_retries_total",
            "Retries scheduled after transient synthesis failures",
            registry=self._registry,
        )

        self._queue_pending = Gauge(
            "narrator_queue_pending",
            "Pending synthesis requests",
            registry=self._registry,
        )
        self._queue_active = Gauge(
            "narrator_queue_active",
            "In-flight synthesis requests",
            registry=self._registry,
        )

        self._playback_errors = Counter(
            "narrator_playback_errors_total",
            "Playback errors recorded by controllers",
            ["kind"],
            registry=self._registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def record_request(self, status: str, duration: float = 0.0, audio_bytes: int = 0) -> None:
        """
        Record a settled queue request.

        Args:
            status: "success", "failed", "timeout", "overflow" or "cancelled"
            duration: Provider call duration in seconds (0 when not dispatched)
            audio_bytes: Size of the written audio file
        """
        if not self._enabled:
            return

        self._requests_total.labels(status=status).inc()
        if duration > 0:
            self._synthesis_seconds.observe(duration)
        if audio_bytes > 0:
            self._audio_bytes_total.inc(audio_bytes)

    def record_cache(self, result: str) -> None:
        """Record a fragment cache "hit" or "miss"."""
        if not self._enabled:
            return
        if result == "hit":
            self._cache_hits.inc()
        else:
            self._cache_misses.inc()

    def record_eviction(self, files_removed: int) -> None:
        if not self._enabled or files_removed <= 0:
            return
        self._cache_evicted.inc(files_removed)

    def inc_retries(self) -> None:
        if not self._enabled:
            return
        self._retries_total.inc()

    def set_queue_depth(self, pending: int, active: int) -> None:
        if not self._enabled:
            return
        self._queue_pending.set(pending)
        self._queue_active.set(active)

    def record_playback_error(self, kind: str) -> None:
        """Record a playback error ("sink", "synthesis", "skipped", ...)."""
        if not self._enabled:
            return
        self._playback_errors.labels(kind=kind).inc()

    def get_metrics_response(self) -> tuple[bytes, str]:
        """
        Get metrics in Prometheus text format.

        Returns:
            Tuple of (content_bytes, content_type)
        """
        return (generate_latest(self._registry), CONTENT_TYPE_LATEST)


# Process-wide instance
metrics = NarratorMetrics()
