"""
Wall-clock timing for log fields and metrics.

    with timeit("cache_write") as t:
        tmp.write_bytes(audio)
    verbose(_LOG, "cache_write", seconds=round(t.seconds, 3))

`seconds` reads the running duration inside the block and the final one
after it, so a provider call that raised can still report how long it ran.
"""
from __future__ import annotations

from time import perf_counter
from typing import Optional


class timeit:
    """Context manager measuring one block; reusable."""

    def __init__(self, name: str):
        self.name = name
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def __enter__(self) -> "timeit":
        self._start = perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = perf_counter()

    @property
    def running(self) -> bool:
        return self._start is not None and self._end is None

    @property
    def seconds(self) -> float:
        """Elapsed seconds; 0.0 before the block was entered."""
        if self._start is None:
            return 0.0
        end = perf_counter() if self._end is None else self._end
        return end - self._start

    def __repr__(self) -> str:
        return f"timeit({self.name!r}, seconds={self.seconds:.3f})"
