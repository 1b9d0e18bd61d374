"""
Playback of narrated fragments.

    - ports.py: AudioSink, Navigator and HighlightSink interfaces
    - events.py: Callback slots with unsubscribe handles
    - controller.py: PlaybackController state machine
"""
from .controller import FragmentCursor, NarrationState, PlaybackController
from .ports import AudioSink, Direction, Fragment, HighlightSink, Navigator

__all__ = [
    "PlaybackController",
    "NarrationState",
    "FragmentCursor",
    "AudioSink",
    "Navigator",
    "HighlightSink",
    "Fragment",
    "Direction",
]
