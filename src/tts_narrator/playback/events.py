"""
Callback slots with explicit unsubscribe handles.

Each observable event (sink "ended", controller "state_changed", ...) is a
CallbackSlot owned by the object that emits it. connect() returns a
Subscription; calling unsubscribe() on it (any number of times) removes the
callback, so owners can drop every listener they registered on teardown.

Usage:
    slot = CallbackSlot("state_changed")
    sub = slot.connect(lambda state: print(state))
    slot.emit(NarrationState.PLAYING)
    sub.unsubscribe()
"""
from __future__ import annotations

from typing import Any, Callable, List

from tts_narrator.core.logging import error, get_logger

_LOG = get_logger("tts-narrator.events")


class Subscription:
    """Handle returned by CallbackSlot.connect()."""

    def __init__(self, slot: "CallbackSlot", callback: Callable[..., Any]):
        self._slot = slot
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._slot._remove(self._callback)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class CallbackSlot:
    """
    A named list of callbacks.

    emit() calls every callback in registration order. A callback that raises
    is logged and does not stop the others or reach the emitter.
    """

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _remove(self, callback: Callable[..., Any]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def emit(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception as e:
                error(_LOG, "listener_failed", slot=self.name, error=str(e))

    def __len__(self) -> int:
        return len(self._callbacks)
