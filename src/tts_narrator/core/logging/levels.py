"""
Numeric log levels for tts-narrator.

Narration logging uses four levels instead of Python's five:
    1 = MINIMAL  - Startup, shutdown, terminal failures
    2 = NORMAL   - Fragment requests, cache hits, state changes (default)
    3 = VERBOSE  - Queue dispatch, retries, prefetch
    4 = DEBUG    - Heap contents, waiter bookkeeping

Mapping to Python Levels:
    MINIMAL (1) -> logging.WARNING (30)
    NORMAL (2)  -> logging.INFO (20)
    VERBOSE (3) -> logging.DEBUG (10)
    DEBUG (4)   -> logging.DEBUG - 5 (5, TRACE)

Usage:
    from tts_narrator.core.logging.levels import LogLevel, coerce_level

    level = coerce_level("VERBOSE")   # LogLevel.VERBOSE
    level = coerce_level(3)           # LogLevel.VERBOSE
"""
from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    """Numeric verbosity levels, 1 (quietest) to 4."""
    MINIMAL = 1
    NORMAL = 2
    VERBOSE = 3
    DEBUG = 4


TRACE = logging.DEBUG - 5
logging.addLevelName(TRACE, "TRACE")

# Console threshold for each numeric level
LEVEL_MAP = {
    LogLevel.MINIMAL: logging.WARNING,
    LogLevel.NORMAL: logging.INFO,
    LogLevel.VERBOSE: logging.DEBUG,
    LogLevel.DEBUG: TRACE,
}

_NAME_TO_LEVEL = {member.name: member for member in LogLevel}
_NAME_TO_LEVEL.update({str(int(member)): member for member in LogLevel})
_NAME_TO_LEVEL.update({
    "TRACE": LogLevel.DEBUG,
    "CRITICAL": LogLevel.MINIMAL,
    "ERROR": LogLevel.MINIMAL,
    "WARNING": LogLevel.MINIMAL,
    "WARN": LogLevel.MINIMAL,
    "INFO": LogLevel.NORMAL,
})


def coerce_level(value: Any) -> LogLevel:
    """
    Convert a config or env value to a LogLevel.

    Accepts a LogLevel, an int 1-4, a Python logging level int, a level
    name ("VERBOSE", "INFO", ...) or a numeric string.

    Returns:
        The matching LogLevel, NORMAL when the value cannot be parsed.

    Examples:
        >>> coerce_level("DEBUG")
        <LogLevel.DEBUG: 4>
        >>> coerce_level(logging.WARNING)
        <LogLevel.MINIMAL: 1>
    """
    if isinstance(value, LogLevel):
        return value

    if isinstance(value, bool):
        return LogLevel.NORMAL

    if isinstance(value, int):
        if 1 <= value <= 4:
            return LogLevel(value)
        if value >= logging.WARNING:
            return LogLevel.MINIMAL
        if value >= logging.INFO:
            return LogLevel.NORMAL
        return LogLevel.DEBUG

    if isinstance(value, str):
        return _NAME_TO_LEVEL.get(value.upper().strip(), LogLevel.NORMAL)

    return LogLevel.NORMAL
