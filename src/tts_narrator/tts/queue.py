"""
Priority Request Queue for Speech Synthesis.

Sits between the narration service and the synthesizer. It bounds how much
synthesis work is pending, decides what runs next, and shields callers from
transient provider failures.

How It Works:
    1. submit() returns an asyncio.Future for the audio file path
    2. A second submit() for the same request ID attaches to the first
       (no duplicate provider call); a higher priority bumps the pending item
    3. Pending items sit in a max-heap on priority, FIFO among equals
    4. The processor drains the heap in batches of batch_size; each batch is
       dispatched concurrently and fully settles before the next is taken
    5. Each dispatch runs synthesize + cache write on a bounded thread pool

    Timeline (batch_size=2):
        submit A(p=1), B(p=5), C(p=3)
        batch 1 -> [B, C] dispatched together
        batch 2 -> [A] once B and C have settled

Admission Control:
    The pending heap never holds more than max_queue_size items. Every
    insertion (new submission or retry re-enqueue) that exceeds the cap drops
    the lowest-priority pending item (the newest among equals), whose futures
    reject with QueueOverflowError. Active items do not count.

Timeouts:
    - An item older than request_timeout_ms when it reaches the front is
      rejected with RequestTimeoutError and never sent to the provider
    - A duplicate submit() that finds a stale pending item replaces it
    - Each provider call is bounded by the same timeout

Retries:
    Retryable failures (see synthesizer.is_retryable_error) are re-enqueued
    after retry_delay_ms * 2 ** (retry_count - 1), at most max_retries times.
    Anything else rejects the futures right away.

Cancellation:
    cancel() and clear() reject futures with RequestCancelledError at once.
    A provider call already in flight is not interrupted; its result is
    discarded when it arrives.

Usage:
    queue = RequestQueue(synthesizer, cache)
    path = await queue.submit(NarrationRequest("book-1", "p3", "Hello.", priority=4))

See Also:
    - services/narration_service.py: cache check and request coalescing
    - tts/cache.py: where finished audio is written
"""
from __future__ import annotations

import asyncio
import heapq
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from tts_narrator.core.config import Defaults, QueueConfig
from tts_narrator.core.errors import (
    CacheWriteError,
    NarrationError,
    QueueOverflowError,
    RequestCancelledError,
    RequestTimeoutError,
    SynthesisError,
)
from tts_narrator.core.logging import debug, fail, get_logger, info, request_context, verbose, warn
from tts_narrator.core.metrics import metrics
from tts_narrator.tts.cache import FragmentCache
from tts_narrator.tts.synthesizer import BaseSynthesizer, is_retryable_error
from tts_narrator.utils.timeit import timeit

_LOG = get_logger("tts-narrator.queue")


def make_request_id(book_id: str, fragment_id: str) -> str:
    """Dedup key shared by the queue and the narration service."""
    return f"{book_id}:{fragment_id}"


def _mark_retrieved(future: asyncio.Future) -> None:
    # Outcomes are logged here; callers that stopped waiting must not
    # trigger "exception was never retrieved" warnings
    if not future.cancelled():
        future.exception()


def backoff_delay(retry_delay_ms: int, retry_count: int) -> float:
    """
    Seconds to wait before retry number retry_count (1-based).

    >>> [backoff_delay(1000, n) for n in (1, 2, 3)]
    [1.0, 2.0, 4.0]
    """
    return retry_delay_ms * (2 ** max(retry_count - 1, 0)) / 1000.0


@dataclass
class NarrationRequest:
    """
    A synthesis request for one fragment.

    Attributes:
        book_id: Book the fragment belongs to.
        fragment_id: Stable fragment ID within the book.
        text: Text to synthesize.
        priority: Larger runs first.
        voice: Provider voice, None for the default.
        rate: Speaking rate, None for the default.
        enqueued_at: time.monotonic() of the first submission.
        retry_count: Retries performed so far.
    """
    book_id: str
    fragment_id: str
    text: str
    priority: int = 0
    voice: Optional[str] = None
    rate: Optional[float] = None
    enqueued_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0

    @property
    def request_id(self) -> str:
        return make_request_id(self.book_id, self.fragment_id)

    def age(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.enqueued_at


class ItemState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RETRY_WAIT = "retry_wait"
    SETTLED = "settled"


@dataclass(eq=False)
class _QueueItem:
    request: NarrationRequest
    seq: int
    state: ItemState = ItemState.PENDING
    futures: List[asyncio.Future] = field(default_factory=list)
    retry_handle: Optional[asyncio.TimerHandle] = None


@dataclass
class QueueStatus:
    """Snapshot of the queue for diagnostics."""
    pending: int
    active: int
    retrying: int
    processing: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "pending": self.pending,
            "active": self.active,
            "retrying": self.retrying,
            "processing": self.processing,
        }


class RequestQueue:
    """
    Bounded, deduplicating priority queue in front of a synthesizer.

    All methods must be called from the event loop thread; only the provider
    call and the cache write run on worker threads.

    Args:
        synthesizer: Speech provider.
        cache: Where synthesized audio is stored.
        max_queue_size: Cap on pending items.
        batch_size: Items dispatched concurrently per batch.
        max_retries: Retries for retryable failures.
        retry_delay_ms: Base backoff delay.
        request_timeout_ms: Max age at dispatch and max provider call time.
        max_workers: Worker threads for provider calls and writes.
    """

    def __init__(
        self,
        synthesizer: BaseSynthesizer,
        cache: FragmentCache,
        max_queue_size: int = Defaults.QUEUE_MAX_SIZE,
        batch_size: int = Defaults.QUEUE_BATCH_SIZE,
        max_retries: int = Defaults.QUEUE_MAX_RETRIES,
        retry_delay_ms: int = Defaults.QUEUE_RETRY_DELAY_MS,
        request_timeout_ms: int = Defaults.QUEUE_REQUEST_TIMEOUT_MS,
        max_workers: int = Defaults.QUEUE_MAX_WORKERS,
    ):
        self._synthesizer = synthesizer
        self._cache = cache
        self._max_queue_size = max_queue_size
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._timeout_s = request_timeout_ms / 1000.0

        # Every unsettled item, by request ID
        self._items: Dict[str, _QueueItem] = {}
        # (-priority, seq, item); stale entries are skipped on pop
        self._heap: List[Tuple[int, int, _QueueItem]] = []
        self._seq = 0

        self._processor: Optional[asyncio.Task] = None
        self._closed = False

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="narrator-synth",
        )
        info(
            _LOG, "queue_init",
            max_queue_size=max_queue_size,
            batch_size=batch_size,
            max_retries=max_retries,
            max_workers=max_workers,
        )

    @classmethod
    def from_config(cls, synthesizer: BaseSynthesizer, cache: FragmentCache, config: QueueConfig) -> "RequestQueue":
        return cls(
            synthesizer,
            cache,
            max_queue_size=config.max_queue_size,
            batch_size=config.batch_size,
            max_retries=config.max_retries,
            retry_delay_ms=config.retry_delay_ms,
            request_timeout_ms=config.request_timeout_ms,
            max_workers=config.max_workers,
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    def _count(self, state: ItemState) -> int:
        return sum(1 for item in self._items.values() if item.state is state)

    @property
    def pending_count(self) -> int:
        return self._count(ItemState.PENDING)

    @property
    def active_count(self) -> int:
        return self._count(ItemState.ACTIVE)

    def is_active(self, request_id: str) -> bool:
        """True while the request is pending, in flight or waiting to retry."""
        return request_id in self._items

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending=self.pending_count,
            active=self.active_count,
            retrying=self._count(ItemState.RETRY_WAIT),
            processing=self._processor is not None and not self._processor.done(),
        )

    def request_ids_for_book(self, book_id: str) -> List[str]:
        return [rid for rid, item in self._items.items() if item.request.book_id == book_id]

    def _publish_depth(self) -> None:
        metrics.set_queue_depth(pending=self.pending_count, active=self.active_count)

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, request: NarrationRequest) -> asyncio.Future:
        """
        Queue a request, or attach to the identical one already queued.

        Must be called from a running event loop.

        Returns:
            Future resolving to the cached audio path (str), or rejecting with
            a NarrationError subclass.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_mark_retrieved)
        rid = request.request_id

        if self._closed:
            future.set_exception(RequestCancelledError("Queue is shut down", details={"request_id": rid}))
            return future

        existing = self._items.get(rid)
        if existing is not None and existing.state is ItemState.PENDING and existing.request.age() > self._timeout_s:
            # Stale backlog: reject it and start over with this submission
            self._settle_error(existing, RequestTimeoutError(details={"request_id": rid}), status="timeout")
            warn(_LOG, "request_timeout", request_id=rid, where="attach")
            existing = None

        if existing is not None:
            existing.futures.append(future)
            self.bump_priority(rid, request.priority)
            debug(_LOG, "attached", request_id=rid, waiters=len(existing.futures), state=existing.state.value)
            return future

        item = _QueueItem(request=request, seq=self._next_seq(), futures=[future])
        self._items[rid] = item
        self._push(item)
        verbose(_LOG, "submitted", request_id=rid, priority=request.priority, pending=self.pending_count)

        self._enforce_capacity()
        self._publish_depth()
        self._ensure_processing()
        return future

    def bump_priority(self, request_id: str, priority: int) -> bool:
        """
        Raise the priority of a queued or retry-waiting request.

        Lower priorities and requests already in flight are left alone.

        Returns:
            True if the priority was raised.
        """
        item = self._items.get(request_id)
        if item is None or item.state is ItemState.ACTIVE or priority <= item.request.priority:
            return False
        item.request.priority = priority
        if item.state is ItemState.PENDING:
            heapq.heappush(self._heap, (-priority, item.seq, item))
        verbose(_LOG, "priority_bumped", request_id=request_id, priority=priority, state=item.state.value)
        return True

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _push(self, item: _QueueItem) -> None:
        item.state = ItemState.PENDING
        heapq.heappush(self._heap, (-item.request.priority, item.seq, item))

    def _is_live(self, entry: Tuple[int, int, _QueueItem]) -> bool:
        neg_priority, seq, item = entry
        return (
            item.state is ItemState.PENDING
            and self._items.get(item.request.request_id) is item
            and seq == item.seq
            and -neg_priority == item.request.priority
        )

    def _enforce_capacity(self) -> None:
        while True:
            pending = [item for item in self._items.values() if item.state is ItemState.PENDING]
            if len(pending) <= self._max_queue_size:
                break
            victim = min(pending, key=lambda it: (it.request.priority, -it.seq))
            warn(
                _LOG, "queue_overflow",
                request_id=victim.request.request_id,
                priority=victim.request.priority,
                pending=len(pending),
            )
            self._settle_error(
                victim,
                QueueOverflowError(details={"request_id": victim.request.request_id}),
                status="overflow",
            )

        if len(self._heap) > 4 * self._max_queue_size + 32:
            self._heap = [e for e in self._heap if self._is_live(e)]
            heapq.heapify(self._heap)

    # =========================================================================
    # Processing
    # =========================================================================

    def _ensure_processing(self) -> None:
        if self._closed:
            return
        if self._processor is None or self._processor.done():
            self._processor = asyncio.get_running_loop().create_task(self._process())

    def _take_batch(self) -> List[_QueueItem]:
        batch: List[_QueueItem] = []
        now = time.monotonic()
        while self._heap and len(batch) < self._batch_size:
            entry = heapq.heappop(self._heap)
            if not self._is_live(entry):
                continue
            item = entry[2]
            if item.request.age(now) > self._timeout_s:
                warn(_LOG, "request_timeout", request_id=item.request.request_id, where="dispatch",
                     age_s=round(item.request.age(now), 1))
                self._settle_error(
                    item,
                    RequestTimeoutError(details={"request_id": item.request.request_id}),
                    status="timeout",
                )
                continue
            item.state = ItemState.ACTIVE
            batch.append(item)
        return batch

    async def _process(self) -> None:
        batch_num = 0
        while not self._closed:
            batch = self._take_batch()
            if not batch:
                break
            batch_num += 1
            self._publish_depth()
            verbose(_LOG, "batch_dispatch", batch_num=batch_num, size=len(batch), pending=self.pending_count)
            await asyncio.gather(*(self._dispatch(item) for item in batch))
            self._publish_depth()
        self._publish_depth()

    def _synthesize_and_store(self, request: NarrationRequest) -> Tuple[str, int]:
        # Worker thread
        with request_context(request.book_id, request.fragment_id):
            audio = self._synthesizer.synthesize(request.text, voice=request.voice, rate=request.rate)
            path = self._cache.store(request.book_id, request.fragment_id, audio)
        return str(path), len(audio)

    async def _dispatch(self, item: _QueueItem) -> None:
        request = item.request
        loop = asyncio.get_running_loop()
        try:
            with timeit("dispatch") as t:
                path, size = await asyncio.wait_for(
                    loop.run_in_executor(self._executor, self._synthesize_and_store, request),
                    timeout=self._timeout_s,
                )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            exc: BaseException = SynthesisError(
                f"Synthesis timeout after {self._timeout_s:.0f}s", retryable=True,
                details={"request_id": request.request_id},
            )
            self._on_failure(item, exc)
        except Exception as e:
            self._on_failure(item, e)
        else:
            if item.state is not ItemState.ACTIVE:
                debug(_LOG, "late_result_discarded", request_id=request.request_id)
                return
            info(_LOG, "synthesized", request_id=request.request_id, bytes=size,
                 retry=request.retry_count, seconds=round(t.seconds, 3))
            metrics.record_request("success", duration=t.seconds, audio_bytes=size)
            self._settle_result(item, path)

    def _on_failure(self, item: _QueueItem, exc: BaseException) -> None:
        request = item.request
        rid = request.request_id
        if item.state is not ItemState.ACTIVE:
            debug(_LOG, "late_error_discarded", request_id=rid, error=str(exc))
            return

        retryable = not isinstance(exc, CacheWriteError) and is_retryable_error(exc)
        if retryable and request.retry_count < self._max_retries and not self._closed:
            request.retry_count += 1
            delay = backoff_delay(self._retry_delay_ms, request.retry_count)
            item.state = ItemState.RETRY_WAIT
            item.retry_handle = asyncio.get_running_loop().call_later(delay, self._requeue, item)
            metrics.inc_retries()
            warn(_LOG, "retry_scheduled", request_id=rid, retry=request.retry_count,
                 max_retries=self._max_retries, error=str(exc), seconds=delay)
            return

        if isinstance(exc, NarrationError):
            error = exc
        else:
            error = SynthesisError(str(exc) or type(exc).__name__, retryable=retryable,
                                   details={"request_id": rid})
            error.__cause__ = exc
        fail(_LOG, "request_failed", request_id=rid, retries=request.retry_count, error=str(error))
        self._settle_error(item, error, status="failed")

    def _requeue(self, item: _QueueItem) -> None:
        item.retry_handle = None
        if item.state is not ItemState.RETRY_WAIT or self._items.get(item.request.request_id) is not item:
            return
        item.seq = self._next_seq()
        self._push(item)
        verbose(_LOG, "requeued", request_id=item.request.request_id, retry=item.request.retry_count)
        self._enforce_capacity()
        self._publish_depth()
        self._ensure_processing()

    # =========================================================================
    # Settlement
    # =========================================================================

    def _detach(self, item: _QueueItem) -> None:
        item.state = ItemState.SETTLED
        if item.retry_handle is not None:
            item.retry_handle.cancel()
            item.retry_handle = None
        rid = item.request.request_id
        if self._items.get(rid) is item:
            del self._items[rid]

    def _settle_result(self, item: _QueueItem, path: str) -> None:
        self._detach(item)
        for f in item.futures:
            if not f.done():
                f.set_result(path)

    def _settle_error(self, item: _QueueItem, exc: BaseException, status: str) -> None:
        self._detach(item)
        metrics.record_request(status)
        for f in item.futures:
            if not f.done():
                f.set_exception(exc)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, request_id: str) -> bool:
        """
        Cancel a pending, active or retry-waiting request.

        Returns:
            True if something was cancelled.
        """
        item = self._items.get(request_id)
        if item is None:
            return False
        was = item.state.value
        self._settle_error(item, RequestCancelledError(details={"request_id": request_id}), status="cancelled")
        verbose(_LOG, "request_cancelled", request_id=request_id, state=was)
        self._publish_depth()
        return True

    def cancel_book(self, book_id: str) -> int:
        """Cancel every request of a book. Returns how many were cancelled."""
        cancelled = sum(1 for rid in self.request_ids_for_book(book_id) if self.cancel(rid))
        if cancelled:
            info(_LOG, "book_requests_cancelled", book_id=book_id, count=cancelled)
        return cancelled

    def clear(self, reason: str = "Queue cleared") -> int:
        """
        Reject every pending, active and retrying item with RequestCancelledError.

        Returns:
            Number of requests rejected.
        """
        items = list(self._items.values())
        for item in items:
            self._settle_error(
                item,
                RequestCancelledError(reason, details={"request_id": item.request.request_id}),
                status="cancelled",
            )
        self._heap.clear()
        self._publish_depth()
        if items:
            info(_LOG, "queue_cleared", count=len(items))
        return len(items)

    async def shutdown(self) -> None:
        """Cancel everything, stop the processor and the worker threads."""
        self._closed = True
        self.clear("Queue is shut down")
        processor, self._processor = self._processor, None
        if processor is not None and not processor.done():
            processor.cancel()
            try:
                await processor
            except asyncio.CancelledError:
                pass
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._synthesizer.close()
        info(_LOG, "queue_shutdown")
