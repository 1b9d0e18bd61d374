"""
tts-narrator: Cached, Prioritized Narration of Book Fragments.

Turns the fragments of an e-book page (paragraphs, sentences) into speech
and plays them in order, one fragment at a time.

Components:
    - FragmentCache: disk cache of synthesized audio, per book
    - RequestQueue: priority queue with batching, retries and admission control
    - NarrationService: cache-first, coalescing facade used by readers
    - PlaybackController: per-book play/pause/stop/next/prev state machine

Key Features:
    - At most one synthesis in flight per fragment
    - Prefetch window around the fragment being read
    - Size-capped cache with oldest-first eviction
    - OpenAI-compatible speech provider (POST /v1/audio/speech)
    - Prometheus metrics support

Example Usage:
    >>> from tts_narrator.core.config import load_settings
    >>> from tts_narrator.services import NarrationService
    >>>
    >>> service = NarrationService.from_settings(load_settings())
    >>> path = await service.request_audio("book-1", "p00000", "Call me Ishmael.")
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
