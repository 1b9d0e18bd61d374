"""
Log formatters for JSONL files and the console.

    JsonlFormatter: one JSON object per line, for jq or log aggregators
    ColoredConsoleFormatter: compact colored line for a terminal

Output Examples:
    JSONL:
        {"ts":"2026-01-15T14:30:05+03:00","level":2,"tag":"INFO","message":"cache_hit","request_id":"b1:p3","extra":{"bytes":48213}}

    Console:
        14:30:05 [ INFO  ] (b1:p3) cache_hit bytes=48213 0.001s

Field coloring on the console:
    seconds:          green < 0.1s, yellow < 1s, red otherwise
    priority:         magenta
    retry/attempt:    yellow
    pending/active:   cyan, yellow once the queue is nearly full
    state/previous:   bright blue (playback transitions)
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .colors import Colors, colorize, get_tag_color


def _record_fields(record: logging.LogRecord) -> Tuple[str, str, Optional[str], Optional[float], Dict[str, Any]]:
    """(tag, request_id, event, seconds, extra) as attached by the log helpers."""
    return (
        getattr(record, "tag", record.levelname),
        getattr(record, "request_id", "-"),
        getattr(record, "event", None),
        getattr(record, "seconds", None),
        getattr(record, "extra_data", None) or {},
    )


class JsonlFormatter(logging.Formatter):
    """
    Format log records as JSON Lines.

    Keys: ts, level (1-4), tag, message, request_id, and when present
    event, seconds and extra.
    """

    def format(self, record: logging.LogRecord) -> str:
        tag, rid, event, seconds, extra = _record_fields(record)
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).astimezone().isoformat(),
            "level": getattr(record, "numeric_level", 2),
            "tag": tag,
            "message": record.getMessage(),
            "request_id": rid,
        }
        if event:
            payload["event"] = event
        if seconds is not None:
            payload["seconds"] = seconds
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """One colored line: HH:MM:SS [ TAG ] (rid) message key=value 0.123s"""

    # pending/active at or above this are shown in yellow
    QUEUE_WARN_DEPTH = 10

    # (upper bound in seconds, color); the last entry catches the rest
    TIMING_COLORS = ((0.1, Colors.GREEN), (1.0, Colors.YELLOW), (float("inf"), Colors.RED))

    FIELD_COLORS = {
        "priority": Colors.MAGENTA,
        "retry": Colors.YELLOW,
        "attempt": Colors.YELLOW,
        "state": Colors.BRIGHT_BLUE,
        "previous": Colors.BRIGHT_BLUE,
    }

    def format(self, record: logging.LogRecord) -> str:
        tag, rid, event, seconds, extra = _record_fields(record)

        parts = [
            colorize(datetime.fromtimestamp(record.created).strftime("%H:%M:%S"), Colors.DIM),
            colorize(f"[{tag:^7}]", get_tag_color(tag)),
        ]
        if rid != "-":
            parts.append(colorize(f"({rid})", Colors.DIM + Colors.CYAN))
        parts.append(record.getMessage())

        if event:
            parts.append(colorize(f"event={event}", Colors.BLUE))
        parts.extend(colorize(f"{k}={v}", self._field_color(k, v)) for k, v in extra.items())
        if seconds is not None:
            parts.append(colorize(f"{seconds:.3f}s", self._timing_color(seconds)))

        return " ".join(parts)

    def _timing_color(self, seconds: float) -> str:
        for bound, color in self.TIMING_COLORS:
            if seconds < bound:
                return color
        return self.TIMING_COLORS[-1][1]

    def _field_color(self, key: str, value: Any) -> str:
        if key in ("pending", "active") and isinstance(value, int):
            return Colors.YELLOW if value >= self.QUEUE_WARN_DEPTH else Colors.CYAN
        return self.FIELD_COLORS.get(key, Colors.DIM)
