"""
Collaborator interfaces used by the playback controller.

The embedding application provides concrete implementations:
    - AudioSink: the single audio output of a playback session
    - Navigator: knows the current page's fragments and turns pages
    - HighlightSink: optional visual feedback for the fragment being read

Fragments and directions are plain values shared by all three.

AudioSink Contract:
    - load(path) prepares a source and, once it can start, emits `ready`
    - play() starts or continues from the current position
    - pause() keeps the position; stop() pauses and rewinds to zero
    - `ended` fires when the source plays to its end
    - `error(code, message)` fires on failure; code is a MediaErrorCode value
    - events are emitted on the event loop thread

Navigator Contract:
    - fragments_for_current_page() is cheap and synchronous
    - advance_page(direction) resolves once the new page's fragments are
      available from fragments_for_current_page()
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List

from tts_narrator.playback.events import CallbackSlot


@dataclass(frozen=True)
class Fragment:
    """
    A narratable unit of text.

    Attributes:
        id: Stable ID within the book (cache and dedup key).
        text: Text to read; never modified by the narrator.
    """
    id: str
    text: str

    @property
    def is_blank(self) -> bool:
        return not self.text or not self.text.strip()


class Direction(Enum):
    FORWARD = 1
    BACKWARD = -1

    @property
    def step(self) -> int:
        return self.value


class AudioSink:
    """
    Base class for audio outputs.

    Subclasses implement load/play/pause/stop/position and emit the three
    slots created here.
    """

    def __init__(self):
        self.ended = CallbackSlot("ended")
        self.error = CallbackSlot("error")
        self.ready = CallbackSlot("ready")

    async def load(self, path: str) -> None:
        """Load an audio file; emit `ready` when playback can start."""
        raise NotImplementedError

    async def play(self) -> None:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Pause and rewind to position zero."""
        raise NotImplementedError

    def reset(self) -> None:
        """Drop the current source after a failure. Defaults to stop()."""
        self.stop()

    @property
    def position(self) -> float:
        """Current playback position in seconds."""
        raise NotImplementedError


class Navigator:
    """Base class for page navigation."""

    def fragments_for_current_page(self) -> List[Fragment]:
        raise NotImplementedError

    async def advance_page(self, direction: Direction) -> None:
        raise NotImplementedError

    def peek_fragments(self, direction: Direction) -> List[Fragment]:
        """
        Fragments of the neighbouring page without turning to it.

        Used to extend the prefetch window across a page boundary. The
        default knows nothing about neighbours.
        """
        return []


class HighlightSink:
    """Visual feedback for the active fragment. The base class does nothing."""

    def highlight(self, fragment_id: str) -> None:
        pass

    def unhighlight(self, fragment_id: str) -> None:
        pass

    def clear(self) -> None:
        """Remove every highlight."""
        pass
