"""
NarrationService - Audio for a Fragment, Exactly Once.

Facade over the fragment cache and the request queue. Playback controllers
(one per book being narrated) ask it for an audio path and never talk to the
queue or the cache directly.

Order of Operations (request_audio):
    1. A request for this (book, fragment) is already in flight
       -> attach as a waiter (raising its queued priority to ours) and
          return its result
    2. The fragment is cached
       -> return the cached path, the queue is not touched
    3. Otherwise
       -> submit to the queue, mark in flight until it settles

Waiters:
    Each waiter registers one done-callback on the shared future plus one
    timer (listener_timeout_s, default 30s). Whichever fires first removes
    both, and leaving the wait early (cancellation) removes them too, so no
    listener outlives its waiter.

Error Handling:
    Errors from the queue propagate unchanged (QueueOverflowError,
    RequestTimeoutError, RequestCancelledError, SynthesisError,
    CacheWriteError). A waiter whose timer fires gets RequestTimeoutError;
    the underlying request keeps running for its other callers.

Example:
    >>> service = NarrationService.from_settings(load_settings())
    >>> path = await service.request_audio("book-1", "p3", "Hello.", priority=4)
    >>> service.get_cached_path("book-1", "p3") == path
    True
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from tts_narrator.core.config import Defaults, NarratorConfig, Settings
from tts_narrator.core.errors import RequestCancelledError, RequestTimeoutError
from tts_narrator.core.logging import debug, get_logger, info, verbose
from tts_narrator.core.metrics import metrics
from tts_narrator.tts.cache import FragmentCache
from tts_narrator.tts.queue import NarrationRequest, QueueStatus, RequestQueue, make_request_id
from tts_narrator.tts.synthesizer import BaseSynthesizer, get_synthesizer

_LOG = get_logger("tts-narrator.service")


@dataclass
class _InFlight:
    book_id: str
    fragment_id: str
    future: asyncio.Future


class NarrationService:
    """
    Cache-first, coalescing access to fragment audio.

    Args:
        cache: Fragment cache shared with the queue.
        queue: Request queue that performs synthesis.
        listener_timeout_s: Lifetime of a waiter attached to an in-flight
            request.

    Usage:
        cache = FragmentCache("./audio-cache")
        queue = RequestQueue(synthesizer, cache)
        service = NarrationService(cache, queue)
    """

    def __init__(
        self,
        cache: FragmentCache,
        queue: RequestQueue,
        listener_timeout_s: float = Defaults.SERVICE_LISTENER_TIMEOUT_S,
    ):
        self._cache = cache
        self._queue = queue
        self._listener_timeout_s = listener_timeout_s

        self._in_flight: Dict[str, _InFlight] = {}
        # request_id -> {waiter token: cleanup}
        self._waiters: Dict[str, Dict[int, Callable[[], None]]] = {}
        self._tokens = itertools.count(1)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        synthesizer: Optional[BaseSynthesizer] = None,
    ) -> "NarrationService":
        """
        Build cache, queue and service from settings.

        Args:
            settings: Loaded settings.
            synthesizer: Provider to use instead of the configured one.
        """
        config: NarratorConfig = settings.get_config()
        metrics.set_enabled(config.metrics.enabled)
        cache = FragmentCache.from_config(config.cache)
        queue = RequestQueue.from_config(synthesizer or get_synthesizer(settings), cache, config.queue)
        return cls(cache, queue, listener_timeout_s=config.service.listener_timeout_s)

    @property
    def cache(self) -> FragmentCache:
        return self._cache

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    # =========================================================================
    # Requesting audio
    # =========================================================================

    async def request_audio(
        self,
        book_id: str,
        fragment_id: str,
        text: str,
        priority: int = 0,
        *,
        voice: Optional[str] = None,
        rate: Optional[float] = None,
        bypass_cache: bool = False,
    ) -> str:
        """
        Get the audio path for a fragment, synthesizing it if needed.

        Args:
            book_id: Book the fragment belongs to.
            fragment_id: Fragment ID within the book.
            text: Fragment text.
            priority: Queue priority; larger runs first.
            voice: Provider voice, None for the default.
            rate: Speaking rate, None for the default.
            bypass_cache: Skip the cache lookup and force re-synthesis (an
                in-flight request is still shared).

        Returns:
            Path of the audio file.

        Raises:
            NarrationError: Any queue or synthesis failure, unchanged.
        """
        rid = make_request_id(book_id, fragment_id)

        in_flight = self._in_flight.get(rid)
        if in_flight is not None:
            # The latest caller's priority wins over an older prefetch
            self._queue.bump_priority(rid, priority)
            debug(_LOG, "attach_waiter", request_id=rid, priority=priority)
            return await self._wait_for(rid, in_flight.future)

        if not bypass_cache:
            path, found = self._cache.lookup(book_id, fragment_id)
            if found:
                return str(path)

        future = self._queue.submit(
            NarrationRequest(
                book_id=book_id,
                fragment_id=fragment_id,
                text=text,
                priority=priority,
                voice=voice,
                rate=rate,
            )
        )
        if not future.done():
            self._in_flight[rid] = _InFlight(book_id, fragment_id, future)
            future.add_done_callback(lambda f, rid=rid: self._on_settled(rid, f))
        verbose(_LOG, "requested", request_id=rid, priority=priority, bypass_cache=bypass_cache)

        # Shield so a caller giving up does not cancel the shared request
        return await asyncio.shield(future)

    def _on_settled(self, rid: str, future: asyncio.Future) -> None:
        entry = self._in_flight.get(rid)
        if entry is not None and entry.future is future:
            del self._in_flight[rid]

    async def _wait_for(self, rid: str, shared: asyncio.Future) -> str:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future = loop.create_future()
        token = next(self._tokens)

        def on_done(f: asyncio.Future) -> None:
            cleanup()
            if waiter.done():
                return
            if f.cancelled():
                waiter.set_exception(RequestCancelledError(details={"request_id": rid}))
            elif f.exception() is not None:
                waiter.set_exception(f.exception())
            else:
                waiter.set_result(f.result())

        def on_timeout() -> None:
            cleanup()
            if not waiter.done():
                waiter.set_exception(RequestTimeoutError(
                    f"No result within {self._listener_timeout_s:.0f}s for in-flight request",
                    details={"request_id": rid},
                ))

        timer = loop.call_later(self._listener_timeout_s, on_timeout)

        def cleanup() -> None:
            timer.cancel()
            shared.remove_done_callback(on_done)
            registered = self._waiters.get(rid)
            if registered is not None:
                registered.pop(token, None)
                if not registered:
                    del self._waiters[rid]

        self._waiters.setdefault(rid, {})[token] = cleanup
        shared.add_done_callback(on_done)
        try:
            return await waiter
        finally:
            cleanup()

    def waiter_count(self, book_id: Optional[str] = None, fragment_id: Optional[str] = None) -> int:
        """Registered waiters, for one fragment or in total."""
        if book_id is not None and fragment_id is not None:
            return len(self._waiters.get(make_request_id(book_id, fragment_id), {}))
        return sum(len(w) for w in self._waiters.values())

    def is_in_flight(self, book_id: str, fragment_id: str) -> bool:
        return make_request_id(book_id, fragment_id) in self._in_flight

    # =========================================================================
    # Cache access
    # =========================================================================

    def get_cached_path(self, book_id: str, fragment_id: str) -> Optional[str]:
        """Cached audio path, or None. Never queues anything."""
        path, found = self._cache.lookup(book_id, fragment_id)
        return str(path) if found else None

    def clear_book_cache(self, book_id: str) -> None:
        self._cache.clear(book_id)

    def cache_size_of(self, book_id: str) -> int:
        """Bytes of cached audio for a book."""
        return self._cache.size_of(book_id)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, book_id: str, fragment_id: str) -> bool:
        """
        Cancel the queued or in-flight request for a fragment.

        Returns:
            True if the queue had something to cancel.
        """
        rid = make_request_id(book_id, fragment_id)
        cancelled = self._queue.cancel(rid)
        self._in_flight.pop(rid, None)
        return cancelled

    def cancel_all_for_book(self, book_id: str) -> int:
        """Cancel every request of a book. Returns how many were cancelled."""
        cancelled = self._queue.cancel_book(book_id)
        stale: List[str] = [rid for rid, entry in self._in_flight.items() if entry.book_id == book_id]
        for rid in stale:
            del self._in_flight[rid]
        if cancelled or stale:
            info(_LOG, "book_cancelled", book_id=book_id, cancelled=cancelled)
        return cancelled

    def queue_status(self) -> QueueStatus:
        return self._queue.status()

    def clear(self) -> None:
        """Cancel everything (book close). Waiters receive RequestCancelledError."""
        self._queue.clear()
        self._in_flight.clear()

    async def close(self) -> None:
        """Cancel everything and release the queue's worker threads."""
        self.clear()
        await self._queue.shutdown()
