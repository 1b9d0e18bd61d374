"""
Tests for the priority request queue.

Tests cover:
- Priority order (max-heap) and FIFO among equal priorities
- Deduplication by request ID and priority bumps
- Batches dispatched concurrently, each settling before the next
- Overflow dropping the lowest-priority pending item, also on retry re-enqueue
- Timeout at dispatch for stale items, and stale duplicates replaced
- Exponential backoff retries, terminal failures, CacheWriteError
- cancel(), cancel_book(), clear() and shutdown()
"""
from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, List, Optional

import pytest

from tts_narrator.core.errors import (
    CacheWriteError,
    QueueOverflowError,
    RequestCancelledError,
    RequestTimeoutError,
    SynthesisError,
)
from tts_narrator.tts.cache import FragmentCache
from tts_narrator.tts.queue import NarrationRequest, RequestQueue, backoff_delay, make_request_id
from tts_narrator.tts.synthesizer import BaseSynthesizer


class FakeSynthesizer(BaseSynthesizer):
    """Records calls; optionally fails or sleeps per text."""
    name = "fake"

    def __init__(self, failures: Optional[Dict[str, List[BaseException]]] = None, delay: float = 0.0,
                 empty: bool = False):
        super().__init__()
        self.calls: List[str] = []
        self.call_times: Dict[str, List[float]] = {}
        self.spans: Dict[str, tuple] = {}
        self.max_concurrent = 0
        self._running = 0
        self._failures = {k: list(v) for k, v in (failures or {}).items()}
        self._delay = delay
        self._empty = empty
        self._lock = threading.Lock()

    def synthesize(self, text, voice=None, rate=None):
        with self._lock:
            self.calls.append(text)
            self.call_times.setdefault(text, []).append(time.monotonic())
            pending = self._failures.get(text)
            exc = pending.pop(0) if pending else None
            self._running += 1
            self.max_concurrent = max(self.max_concurrent, self._running)
        start = time.monotonic()
        try:
            if self._delay:
                time.sleep(self._delay)
            if exc is not None:
                raise exc
            return b"" if self._empty else f"audio:{text}".encode()
        finally:
            with self._lock:
                self._running -= 1
                self.spans[text] = (start, time.monotonic())


class GatedSynthesizer(FakeSynthesizer):
    """Holds the "held" fragment until the gate opens."""

    def __init__(self, gate: threading.Event, **kwargs):
        super().__init__(**kwargs)
        self._gate = gate

    def synthesize(self, text, voice=None, rate=None):
        if text == "held":
            self._gate.wait(5)
        return super().synthesize(text, voice, rate)


def _request(fragment_id: str, priority: int = 0, book_id: str = "book") -> NarrationRequest:
    return NarrationRequest(book_id=book_id, fragment_id=fragment_id, text=fragment_id, priority=priority)


class TestHelpers:
    """Test module-level helpers."""

    def test_request_id(self):
        """Request IDs join book and fragment."""
        assert make_request_id("b1", "p3") == "b1:p3"
        assert _request("p3", book_id="b1").request_id == "b1:p3"

    def test_backoff_delay(self):
        """Delay doubles per retry: 1s, 2s, 4s."""
        assert backoff_delay(1000, 1) == 1.0
        assert backoff_delay(1000, 2) == 2.0
        assert backoff_delay(1000, 3) == 4.0


class TestOrdering:
    """Test priority and FIFO order."""

    def test_higher_priority_first(self, tmp_path):
        """Priorities 1, 5, 3 run as 5, 3, 1."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), batch_size=1)
            futures = [queue.submit(_request("a", 1)), queue.submit(_request("b", 5)), queue.submit(_request("c", 3))]
            await asyncio.gather(*futures)
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == ["b", "c", "a"]

    def test_fifo_among_equal_priority(self, tmp_path):
        """Equal priorities run in submission order."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), batch_size=1)
            futures = [queue.submit(_request(x, 2)) for x in ("x", "y", "z")]
            await asyncio.gather(*futures)
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == ["x", "y", "z"]

    def test_result_is_cached_path(self, tmp_path):
        """The future resolves to the cache path holding the audio."""
        cache = FragmentCache(tmp_path)

        async def run_test():
            queue = RequestQueue(FakeSynthesizer(), cache)
            path = await queue.submit(_request("p1"))
            await queue.shutdown()
            return path

        path = asyncio.run(run_test())
        assert isinstance(path, str)
        assert path == str(cache.path_for("book", "p1"))
        assert cache.lookup("book", "p1")[1] is True


class TestDeduplication:
    """Test request ID deduplication."""

    def test_duplicate_submit_shares_one_call(self, tmp_path):
        """Two submissions of the same fragment cause one provider call."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path))
            f1 = queue.submit(_request("p1"))
            f2 = queue.submit(_request("p1"))
            assert queue.pending_count == 1
            results = await asyncio.gather(f1, f2)
            await queue.shutdown()
            return results

        r1, r2 = asyncio.run(run_test())
        assert r1 == r2
        assert synth.calls == ["p1"]

    def test_duplicate_with_higher_priority_bumps(self, tmp_path):
        """Re-submitting at a higher priority moves the pending item up."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), batch_size=1)
            futures = [queue.submit(_request("a", 1)), queue.submit(_request("b", 2))]
            futures.append(queue.submit(_request("a", 9)))
            await asyncio.gather(*futures)
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == ["a", "b"]

    def test_bump_priority(self, tmp_path):
        """bump_priority() only ever raises a queued item's priority."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), batch_size=1)
            futures = [queue.submit(_request("a", 1)), queue.submit(_request("b", 5))]
            results = (
                queue.bump_priority("book:a", 3),
                queue.bump_priority("book:a", 2),
                queue.bump_priority("book:a", 8),
                queue.bump_priority("book:missing", 8),
            )
            await asyncio.gather(*futures)
            await queue.shutdown()
            return results

        assert asyncio.run(run_test()) == (True, False, True, False)
        assert synth.calls == ["a", "b"]

    def test_stale_duplicate_is_replaced(self, tmp_path):
        """A duplicate finding an expired pending item times it out and queues afresh."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), request_timeout_ms=1000)
            stale = queue.submit(NarrationRequest("book", "p1", "p1", enqueued_at=time.monotonic() - 5))
            fresh = queue.submit(_request("p1"))
            assert stale.done()
            assert not fresh.done()
            assert queue.pending_count == 1
            with pytest.raises(RequestTimeoutError):
                await stale
            path = await fresh
            await queue.shutdown()
            return path

        assert asyncio.run(run_test())
        assert synth.calls == ["p1"]


class TestBatching:
    """Test batch dispatch."""

    def test_batches_run_concurrently_and_settle_in_order(self, tmp_path):
        """Two per batch; the second batch starts after the first ends."""
        synth = FakeSynthesizer(delay=0.05)

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), batch_size=2)
            futures = [queue.submit(_request(x, p)) for x, p in (("a", 4), ("b", 3), ("c", 2), ("d", 1))]
            await asyncio.gather(*futures)
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.max_concurrent == 2
        first_batch_end = max(synth.spans["a"][1], synth.spans["b"][1])
        second_batch_start = min(synth.spans["c"][0], synth.spans["d"][0])
        assert second_batch_start >= first_batch_end


class TestOverflow:
    """Test admission control."""

    def test_lowest_priority_dropped(self, tmp_path):
        """Over capacity, the lowest-priority pending item rejects with overflow."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), max_queue_size=2)
            low = queue.submit(_request("low", 1))
            high = queue.submit(_request("high", 5))
            mid = queue.submit(_request("mid", 3))

            assert low.done()
            with pytest.raises(QueueOverflowError):
                await low
            await asyncio.gather(high, mid)
            await queue.shutdown()

        asyncio.run(run_test())
        assert sorted(synth.calls) == ["high", "mid"]

    def test_newest_dropped_among_equals(self, tmp_path):
        """With equal priorities the most recent submission is dropped."""

        async def run_test():
            queue = RequestQueue(FakeSynthesizer(), FragmentCache(tmp_path), max_queue_size=2)
            futures = [queue.submit(_request(x, 1)) for x in ("a", "b", "c")]
            assert [f.done() for f in futures] == [False, False, True]
            with pytest.raises(QueueOverflowError):
                await futures[2]
            await asyncio.gather(*futures[:2])
            await queue.shutdown()

        asyncio.run(run_test())

    def test_retry_requeue_respects_capacity(self, tmp_path):
        """A retry coming back into a full queue pushes out the lowest-priority item."""
        gate = threading.Event()
        synth = GatedSynthesizer(gate, failures={"r": [SynthesisError("busy", retryable=True)]})

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), max_queue_size=2, batch_size=2,
                                 retry_delay_ms=100)
            retried = queue.submit(_request("r", 9))
            held = queue.submit(_request("held", 8))
            # First batch is [r, held]; r fails at once and waits to retry
            await asyncio.sleep(0.03)

            low = queue.submit(_request("low", 1))
            mid = queue.submit(_request("mid", 2))
            assert not low.done()

            await asyncio.sleep(0.25)
            dropped = low.done()
            gate.set()
            with pytest.raises(QueueOverflowError):
                await low
            await asyncio.gather(retried, held, mid)
            await queue.shutdown()
            return dropped

        assert asyncio.run(run_test()) is True
        assert "low" not in synth.calls
        assert synth.calls.count("r") == 2


class TestTimeout:
    """Test request aging."""

    def test_stale_request_rejected_at_dispatch(self, tmp_path):
        """Items older than the timeout never reach the provider."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), request_timeout_ms=1000)
            old = NarrationRequest("book", "old", "old", enqueued_at=time.monotonic() - 5)
            fut = queue.submit(old)
            with pytest.raises(RequestTimeoutError):
                await fut
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == []


class TestRetries:
    """Test retry and failure handling."""

    def test_retryable_failure_backs_off(self, tmp_path):
        """Retries are spaced by retry_delay_ms * 2 ** (n - 1)."""
        transient = [SynthesisError("temporary failure", retryable=True) for _ in range(2)]
        synth = FakeSynthesizer(failures={"p1": transient})

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), retry_delay_ms=30)
            path = await queue.submit(_request("p1"))
            await queue.shutdown()
            return path

        assert asyncio.run(run_test())
        times = synth.call_times["p1"]
        assert len(times) == 3
        assert times[1] - times[0] >= 0.028
        assert times[2] - times[1] >= 0.058

    def test_retries_exhausted(self, tmp_path):
        """After max_retries the last error is delivered."""
        transient = [SynthesisError("server error", retryable=True) for _ in range(5)]
        synth = FakeSynthesizer(failures={"p1": transient})

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), max_retries=2, retry_delay_ms=1)
            with pytest.raises(SynthesisError, match="server error"):
                await queue.submit(_request("p1"))
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == ["p1"] * 3

    def test_terminal_failure_not_retried(self, tmp_path):
        """Non-retryable errors reject immediately."""
        synth = FakeSynthesizer(failures={"p1": [SynthesisError("unknown voice", retryable=False)]})

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), retry_delay_ms=1)
            with pytest.raises(SynthesisError):
                await queue.submit(_request("p1"))
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == ["p1"]

    def test_unexpected_exception_wrapped(self, tmp_path):
        """Foreign exceptions reach callers as SynthesisError."""
        synth = FakeSynthesizer(failures={"p1": [ValueError("bad input")]})

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), retry_delay_ms=1)
            with pytest.raises(SynthesisError, match="bad input"):
                await queue.submit(_request("p1"))
            await queue.shutdown()

        asyncio.run(run_test())

    def test_empty_audio_is_cache_write_error(self, tmp_path):
        """A zero-byte result fails with CacheWriteError and is not retried."""
        synth = FakeSynthesizer(empty=True)

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path), retry_delay_ms=1)
            with pytest.raises(CacheWriteError):
                await queue.submit(_request("p1"))
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == ["p1"]


class TestCancellation:
    """Test cancel(), cancel_book(), clear() and shutdown()."""

    def test_cancel_pending(self, tmp_path):
        """cancel() rejects the future and reports success."""
        synth = FakeSynthesizer()

        async def run_test():
            queue = RequestQueue(synth, FragmentCache(tmp_path))
            fut = queue.submit(_request("p1"))
            assert queue.cancel("book:p1") is True
            assert queue.cancel("book:p1") is False
            assert queue.cancel("book:unknown") is False
            with pytest.raises(RequestCancelledError):
                await fut
            await queue.shutdown()

        asyncio.run(run_test())
        assert synth.calls == []

    def test_cancel_book(self, tmp_path):
        """cancel_book() only touches one book."""

        async def run_test():
            queue = RequestQueue(FakeSynthesizer(), FragmentCache(tmp_path))
            a1 = queue.submit(_request("p1", book_id="a"))
            a2 = queue.submit(_request("p2", book_id="a"))
            b1 = queue.submit(_request("p1", book_id="b"))
            assert queue.cancel_book("a") == 2
            for fut in (a1, a2):
                with pytest.raises(RequestCancelledError):
                    await fut
            assert await b1
            await queue.shutdown()

        asyncio.run(run_test())

    def test_clear_rejects_everything(self, tmp_path):
        """clear() rejects all pending items."""

        async def run_test():
            queue = RequestQueue(FakeSynthesizer(), FragmentCache(tmp_path))
            futures = [queue.submit(_request(x)) for x in ("a", "b", "c")]
            assert queue.clear() == 3
            assert queue.status().pending == 0
            for fut in futures:
                with pytest.raises(RequestCancelledError):
                    await fut
            await queue.shutdown()

        asyncio.run(run_test())

    def test_submit_after_shutdown(self, tmp_path):
        """A shut-down queue rejects new work."""

        async def run_test():
            queue = RequestQueue(FakeSynthesizer(), FragmentCache(tmp_path))
            await queue.shutdown()
            with pytest.raises(RequestCancelledError):
                await queue.submit(_request("p1"))

        asyncio.run(run_test())

    def test_status(self, tmp_path):
        """status() counts pending items."""

        async def run_test():
            queue = RequestQueue(FakeSynthesizer(), FragmentCache(tmp_path))
            queue.submit(_request("a"))
            queue.submit(_request("b"))
            status = queue.status().to_dict()
            queue.clear()
            await queue.shutdown()
            return status

        status = asyncio.run(run_test())
        assert status["pending"] == 2
        assert status["active"] == 0
