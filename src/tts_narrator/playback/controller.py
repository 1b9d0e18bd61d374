"""
Playback Controller - Fragment-by-Fragment Narration.

One controller drives one book through a single AudioSink. It walks the
fragments of the current page, asks the NarrationService for audio, keeps
a prefetch window warm around the cursor and turns pages through the
Navigator when it runs off either end.

State Machine:
    STOPPED --play--> LOADING --sink playing--> PLAYING
    PLAYING --pause--> PAUSED --resume/play--> PLAYING
    any     --stop--> STOPPED
    PLAYING --ended--> next fragment (LOADING)
    PLAYING --sink error--> STOPPED (error recorded)

Transitions are serialized with an asyncio.Lock: a transition in progress
completes (or fails) before the next one starts. Sink events are turned
into tasks that take the same lock; an event whose generation no longer
matches the loaded source is ignored.

Play Attempts:
    Each fragment gets up to max_play_attempts tries. After a failed try
    the remembered audio path is dropped, the sink is reset and the next
    request bypasses the cache. When every try fails the error is recorded
    and narration moves on to the next fragment; max_consecutive_failures
    skipped fragments in a row stop narration.

Prefetching:
    After a fragment starts, the next prefetch_ahead_count and previous
    prefetch_behind_count fragments are requested one priority below the
    current fragment. The ahead window continues into the next page when
    the navigator can peek at it. Prefetch failures are logged only.

Example:
    >>> controller = PlaybackController("book-1", service, sink, navigator)
    >>> await controller.play()
    >>> controller.state
    <NarrationState.PLAYING: 'playing'>
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Dict, List, Optional, Set

from tts_narrator.core.config import PlaybackConfig
from tts_narrator.core.errors import (
    MediaErrorCode,
    NarrationError,
    PlaybackError,
    RequestCancelledError,
    SynthesisError,
)
from tts_narrator.core.logging import error, get_logger, info, verbose, warn
from tts_narrator.core.metrics import metrics
from tts_narrator.playback.events import CallbackSlot, Subscription
from tts_narrator.playback.ports import AudioSink, Direction, Fragment, HighlightSink, Navigator
from tts_narrator.services.narration_service import NarrationService

_LOG = get_logger("tts-narrator.playback")

_MEDIA_ERROR_KINDS = {
    MediaErrorCode.ABORTED: "aborted",
    MediaErrorCode.NETWORK: "network",
    MediaErrorCode.DECODE: "decode",
    MediaErrorCode.SRC_NOT_SUPPORTED: "unsupported",
}


class NarrationState(str, Enum):
    STOPPED = "stopped"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class FragmentCursor:
    """Fragments of the current page and the position within them."""
    fragments: List[Fragment] = field(default_factory=list)
    index: int = 0
    direction: Direction = Direction.FORWARD

    @property
    def is_empty(self) -> bool:
        return not self.fragments

    @property
    def current(self) -> Optional[Fragment]:
        if 0 <= self.index < len(self.fragments):
            return self.fragments[self.index]
        return None

    def contains(self, index: int) -> bool:
        return 0 <= index < len(self.fragments)


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, PlaybackError):
        try:
            return _MEDIA_ERROR_KINDS[MediaErrorCode(exc.media_code)]  # type: ignore[arg-type]
        except (ValueError, TypeError, KeyError):
            return "sink"
    if isinstance(exc, SynthesisError):
        return "synthesis"
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    if isinstance(exc, NarrationError):
        return exc.code.lower()
    return "internal"


class PlaybackController:
    """
    Narrates one book through one audio sink.

    Args:
        book_id: Book being narrated.
        service: Shared NarrationService.
        sink: Audio output owned by this controller.
        navigator: Page source.
        highlighter: Optional highlight target.
        config: Playback settings; defaults apply when None.
        voice: Provider voice for every request, None for the default.
        rate: Speaking rate for every request, None for the default.

    Slots:
        state_changed(state), fragment_changed(index, fragment),
        errors_changed(errors)
    """

    def __init__(
        self,
        book_id: str,
        service: NarrationService,
        sink: AudioSink,
        navigator: Navigator,
        highlighter: Optional[HighlightSink] = None,
        config: Optional[PlaybackConfig] = None,
        voice: Optional[str] = None,
        rate: Optional[float] = None,
    ):
        self._book_id = book_id
        self._service = service
        self._sink = sink
        self._navigator = navigator
        self._highlighter = highlighter or HighlightSink()
        self._config = config or PlaybackConfig()
        self._voice = voice
        self._rate = rate

        self.state_changed = CallbackSlot("state_changed")
        self.fragment_changed = CallbackSlot("fragment_changed")
        self.errors_changed = CallbackSlot("errors_changed")

        self._lock = asyncio.Lock()
        self._state = NarrationState.STOPPED
        self._cursor = FragmentCursor(list(navigator.fragments_for_current_page()))
        self._priority = self._config.base_priority
        self._audio_paths: Dict[str, str] = {}
        self._errors: List[str] = []
        self._consecutive_failures = 0
        self._closed = False

        # Bumped whenever the sink's source changes; sink events carry it
        self._generation = 0
        self._ready = asyncio.Event()
        self._load_error: Optional[PlaybackError] = None

        self._tasks: Set[asyncio.Task] = set()
        self._subscriptions: List[Subscription] = [
            sink.ready.connect(self._on_sink_ready),
            sink.ended.connect(self._on_sink_ended),
            sink.error.connect(self._on_sink_error),
        ]

    # =========================================================================
    # Read-only state
    # =========================================================================

    @property
    def book_id(self) -> str:
        return self._book_id

    @property
    def state(self) -> NarrationState:
        return self._state

    @property
    def current_index(self) -> int:
        return self._cursor.index

    @property
    def current_fragment(self) -> Optional[Fragment]:
        return self._cursor.current

    @property
    def fragments(self) -> List[Fragment]:
        return list(self._cursor.fragments)

    @property
    def errors(self) -> List[str]:
        return list(self._errors)

    @property
    def position(self) -> float:
        return self._sink.position

    @property
    def voice(self) -> Optional[str]:
        return self._voice

    @property
    def rate(self) -> Optional[float]:
        return self._rate

    def clear_errors(self) -> None:
        if self._errors:
            self._errors.clear()
            self.errors_changed.emit([])

    # =========================================================================
    # Transitions
    # =========================================================================

    async def play(self) -> None:
        """Start narrating at the cursor, or resume when paused."""
        async with self._lock:
            await self._play_locked()

    async def pause(self) -> None:
        """Pause. Ignored unless playing."""
        async with self._lock:
            if self._state is not NarrationState.PLAYING:
                verbose(_LOG, "pause_ignored", book_id=self._book_id, state=self._state.value)
                return
            self._sink.pause()
            self._set_state(NarrationState.PAUSED)

    async def resume(self) -> None:
        """Resume after pause. Ignored unless paused."""
        async with self._lock:
            if self._state is not NarrationState.PAUSED:
                verbose(_LOG, "resume_ignored", book_id=self._book_id, state=self._state.value)
                return
            await self._resume_locked()

    async def stop(self) -> None:
        """
        Stop, rewind to the first fragment and warm its audio.

        Queued requests of the book are cancelled first so a transition
        waiting on synthesis gives up the lock promptly.
        """
        self._service.cancel_all_for_book(self._book_id)
        async with self._lock:
            self._halt_sink()
            self._highlighter.clear()
            self._cursor.index = 0
            self._cursor.direction = Direction.FORWARD
            self._set_state(NarrationState.STOPPED)
            first = self._cursor.current
            if first is not None and not first.is_blank:
                self._prefetch(first, self._priority - 1)

    async def next(self) -> None:
        """Play the following fragment, turning the page at the end."""
        async with self._lock:
            await self._step_locked(Direction.FORWARD)

    async def prev(self) -> None:
        """Play the preceding fragment, turning back at the start."""
        async with self._lock:
            await self._step_locked(Direction.BACKWARD)

    async def refresh_page(self) -> None:
        """Reload the cursor after the page was changed externally."""
        async with self._lock:
            if self._state is not NarrationState.STOPPED:
                self._halt_sink()
                self._set_state(NarrationState.STOPPED)
            self._highlighter.clear()
            self._load_page(Direction.FORWARD)

    def set_voice(self, voice: Optional[str]) -> None:
        """Use a different voice for fragments requested from now on."""
        if voice != self._voice:
            self._voice = voice
            self._audio_paths.clear()

    def set_rate(self, rate: Optional[float]) -> None:
        """Use a different speaking rate for fragments requested from now on."""
        if rate != self._rate:
            self._rate = rate
            self._audio_paths.clear()

    async def close(self) -> None:
        """Stop for good: cancel the book's requests and drop sink listeners."""
        if self._closed:
            return
        self._closed = True
        self._service.cancel_all_for_book(self._book_id)
        for sub in self._subscriptions:
            sub.unsubscribe()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        async with self._lock:
            self._halt_sink()
            self._highlighter.clear()
            self._set_state(NarrationState.STOPPED)
        info(_LOG, "closed", book_id=self._book_id)

    # =========================================================================
    # Locked implementations
    # =========================================================================

    async def _play_locked(self) -> None:
        if self._closed or self._state in (NarrationState.PLAYING, NarrationState.LOADING):
            return
        if self._state is NarrationState.PAUSED:
            await self._resume_locked()
            return

        turned_empty_page = False
        while not self._closed:
            cursor = self._cursor

            if cursor.is_empty:
                if turned_empty_page:
                    warn(_LOG, "no_fragments", book_id=self._book_id)
                    self._set_state(NarrationState.STOPPED)
                    return
                info(_LOG, "empty_page", book_id=self._book_id, direction=cursor.direction.name)
                await asyncio.sleep(self._config.empty_page_grace_s)
                if not await self._turn_page(cursor.direction):
                    return
                turned_empty_page = True
                continue

            fragment = cursor.current
            if fragment is None:
                cursor.index = 0
                continue

            if fragment.is_blank:
                verbose(_LOG, "blank_fragment", book_id=self._book_id, fragment_id=fragment.id)
                await asyncio.sleep(self._config.empty_page_grace_s)
                if not await self._move(cursor.direction):
                    return
                continue

            outcome = await self._play_fragment(fragment)
            if outcome is not False:
                return

            self._consecutive_failures += 1
            if self._consecutive_failures >= self._config.max_consecutive_failures:
                self._record_error(
                    f"Narration stopped after {self._consecutive_failures} consecutive failures",
                    "stopped",
                )
                self._consecutive_failures = 0
                self._set_state(NarrationState.STOPPED)
                return
            self._set_state(NarrationState.STOPPED)
            if not await self._move(Direction.FORWARD):
                return

    async def _play_fragment(self, fragment: Fragment) -> Optional[bool]:
        """
        Play one fragment with retries.

        Returns:
            True when playing, False when every attempt failed, None when
            the request was cancelled (state is then STOPPED).
        """
        self._set_state(NarrationState.LOADING)
        self._highlighter.highlight(fragment.id)
        self.fragment_changed.emit(self._cursor.index, fragment)
        priority = self._next_priority()

        last_error: Optional[BaseException] = None
        for attempt in range(1, self._config.max_play_attempts + 1):
            bypass_cache = attempt > 1
            try:
                path = None if bypass_cache else self._audio_paths.get(fragment.id)
                if path is None:
                    path = await asyncio.wait_for(
                        self._service.request_audio(
                            self._book_id,
                            fragment.id,
                            fragment.text,
                            priority,
                            voice=self._voice,
                            rate=self._rate,
                            bypass_cache=bypass_cache,
                        ),
                        timeout=self._config.audio_timeout_s,
                    )
                    self._audio_paths[fragment.id] = path
                await self._start_sink(path)
            except RequestCancelledError:
                verbose(_LOG, "play_cancelled", book_id=self._book_id, fragment_id=fragment.id)
                self._halt_sink()
                self._set_state(NarrationState.STOPPED)
                return None
            except (NarrationError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                self._audio_paths.pop(fragment.id, None)
                self._reset_sink()
                warn(
                    _LOG, "play_attempt_failed",
                    book_id=self._book_id, fragment_id=fragment.id,
                    attempt=attempt, error=str(e) or type(e).__name__,
                )
                continue

            self._consecutive_failures = 0
            self._set_state(NarrationState.PLAYING)
            self._prefetch_window(priority - 1)
            return True

        message = str(last_error) or type(last_error).__name__
        self._highlighter.unhighlight(fragment.id)
        self._record_error(f"Skipped fragment {fragment.id}: {message}", _error_kind(last_error))
        error(_LOG, "fragment_skipped", book_id=self._book_id, fragment_id=fragment.id, error=message)
        return False

    async def _start_sink(self, path: str) -> None:
        self._generation += 1
        self._load_error = None
        self._ready.clear()
        timeout = self._config.ready_timeout_s
        await asyncio.wait_for(self._sink.load(path), timeout=timeout)
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise PlaybackError(f"Audio not ready within {timeout:.0f}s", details={"path": path}) from None
        self._raise_load_error()
        await asyncio.wait_for(self._sink.play(), timeout=timeout)
        self._raise_load_error()

    def _raise_load_error(self) -> None:
        if self._load_error is not None:
            err, self._load_error = self._load_error, None
            raise err

    async def _resume_locked(self) -> None:
        try:
            await asyncio.wait_for(self._sink.play(), timeout=self._config.ready_timeout_s)
        except (NarrationError, asyncio.TimeoutError, OSError) as e:
            self._record_error(f"Resume failed: {e}", _error_kind(e))
            self._halt_sink()
            self._set_state(NarrationState.STOPPED)
            return
        self._set_state(NarrationState.PLAYING)

    async def _step_locked(self, direction: Direction) -> None:
        was_playing = self._state is NarrationState.PLAYING
        current = self._cursor.current
        if current is not None:
            self._highlighter.unhighlight(current.id)
        self._halt_sink()
        self._set_state(NarrationState.STOPPED)

        if not await self._move(direction, was_playing=was_playing):
            return
        await self._play_locked()

    async def _move(self, direction: Direction, was_playing: bool = False) -> bool:
        """Move the cursor one fragment, crossing a page boundary if needed."""
        cursor = self._cursor
        target = cursor.index + direction.step
        cursor.direction = direction
        if cursor.contains(target):
            cursor.index = target
            return True

        if not await self._turn_page(direction):
            return False
        if was_playing:
            self._prefetch_page_edge(direction)
        return True

    async def _turn_page(self, direction: Direction) -> bool:
        try:
            await asyncio.wait_for(
                self._navigator.advance_page(direction),
                timeout=self._config.ready_timeout_s,
            )
        except asyncio.TimeoutError:
            self._record_error("Page change timed out", "navigation")
            self._set_state(NarrationState.STOPPED)
            return False
        self._load_page(direction)
        info(
            _LOG, "page_turned",
            book_id=self._book_id, direction=direction.name, fragments=len(self._cursor.fragments),
        )
        return True

    def _load_page(self, direction: Direction) -> None:
        fragments = list(self._navigator.fragments_for_current_page())
        index = len(fragments) - 1 if direction is Direction.BACKWARD and fragments else 0
        self._cursor = FragmentCursor(fragments, index, direction)
        # Paths from other pages may have been evicted since; ask the service again
        ids = {f.id for f in fragments}
        self._audio_paths = {fid: path for fid, path in self._audio_paths.items() if fid in ids}

    # =========================================================================
    # Prefetching
    # =========================================================================

    def _prefetch_window(self, priority: int) -> None:
        cursor = self._cursor
        ahead = cursor.fragments[cursor.index + 1:cursor.index + 1 + self._config.prefetch_ahead_count]
        missing = self._config.prefetch_ahead_count - len(ahead)
        if missing > 0:
            ahead = ahead + list(self._navigator.peek_fragments(Direction.FORWARD))[:missing]

        start = max(0, cursor.index - self._config.prefetch_behind_count)
        behind = list(reversed(cursor.fragments[start:cursor.index]))

        for fragment in ahead + behind:
            self._prefetch(fragment, priority)

    def _prefetch_page_edge(self, direction: Direction) -> None:
        count = self._config.cross_page_prefetch_count
        fragments = self._cursor.fragments
        edge = fragments[:count] if direction is Direction.FORWARD else fragments[-count:]
        for fragment in edge:
            self._prefetch(fragment, self._priority - 1)

    def _prefetch(self, fragment: Fragment, priority: int) -> None:
        if self._closed or fragment.is_blank or fragment.id in self._audio_paths:
            return
        self._spawn(self._run_prefetch(fragment, priority))

    async def _run_prefetch(self, fragment: Fragment, priority: int) -> None:
        try:
            path = await self._service.request_audio(
                self._book_id,
                fragment.id,
                fragment.text,
                priority,
                voice=self._voice,
                rate=self._rate,
            )
        except NarrationError as e:
            verbose(_LOG, "prefetch_failed", book_id=self._book_id, fragment_id=fragment.id, error=str(e))
            return
        self._audio_paths[fragment.id] = path

    # =========================================================================
    # Sink events
    # =========================================================================

    def _on_sink_ready(self) -> None:
        self._ready.set()

    def _on_sink_ended(self) -> None:
        self._spawn(self._handle_ended(self._generation))

    def _on_sink_error(self, code: Optional[int] = None, message: str = "") -> None:
        err = PlaybackError.from_media_error(code, message)
        if self._state is NarrationState.LOADING:
            # Fails the attempt waiting in _start_sink
            self._load_error = err
            self._ready.set()
            return
        self._spawn(self._handle_error(self._generation, err))

    async def _handle_ended(self, generation: int) -> None:
        async with self._lock:
            if generation != self._generation or self._state is not NarrationState.PLAYING:
                return
            current = self._cursor.current
            if current is not None:
                self._highlighter.unhighlight(current.id)
            await self._step_locked(Direction.FORWARD)

    async def _handle_error(self, generation: int, err: PlaybackError) -> None:
        async with self._lock:
            if generation != self._generation:
                return
            self._record_error(err.message, _error_kind(err))
            self._halt_sink()
            self._set_state(NarrationState.STOPPED)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _next_priority(self) -> int:
        self._priority += 1
        return self._priority

    def _halt_sink(self) -> None:
        self._generation += 1
        self._sink.stop()

    def _reset_sink(self) -> None:
        self._generation += 1
        self._sink.reset()

    def _set_state(self, state: NarrationState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        verbose(_LOG, "state_changed", book_id=self._book_id, previous=previous.value, state=state.value)
        self.state_changed.emit(state)

    def _record_error(self, message: str, kind: str) -> None:
        self._errors.append(message)
        metrics.record_playback_error(kind)
        error(_LOG, "playback_error", book_id=self._book_id, kind=kind, error=message)
        self.errors_changed.emit(list(self._errors))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
