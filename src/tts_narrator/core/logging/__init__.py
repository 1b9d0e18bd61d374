"""
tts-narrator Structured Logging.

    - Numeric log levels (1-4) for simple configuration
    - Colored console output
    - JSONL file output with rotation
    - Request ID correlation ("book:fragment") through a ContextVar

Log Levels:
    1 = MINIMAL  - Startup, shutdown, terminal failures
    2 = NORMAL   - Fragment requests, cache hits, state changes (default)
    3 = VERBOSE  - Queue dispatch, retries, prefetch
    4 = DEBUG    - Heap and waiter bookkeeping

Configuration:
    export NARRATOR_LOG_LEVEL=3   # VERBOSE
    export NARRATOR_NO_COLOR=1

    In settings.yaml:
        logging:
          level: 2
          log_dir: logs
          jsonl_file: narrator.jsonl

Usage:
    from tts_narrator.core.logging import get_logger, info, warn, verbose

    _LOG = get_logger("tts-narrator.queue")

    info(_LOG, "synthesized", bytes=48213, seconds=0.84)
    warn(_LOG, "retry_scheduled", retry=2, seconds=2.0)
    verbose(_LOG, "batch_dispatch", size=5, pending=7)

Keyword fields are free-form except two: `event` (a category shown next to
the message) and `seconds` (a duration, colored by magnitude).
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from tts_narrator.core.config import Defaults

from . import colors
from .levels import LEVEL_MAP, TRACE, LogLevel, coerce_level
from .colors import Colors, colorize, get_tag_color, supports_color
from .context import (
    get_level,
    get_level_name,
    get_log_config,
    get_request_id,
    is_configured,
    read_logging_config,
    request_context,
    set_configured,
    set_level,
    set_log_config,
    set_request_id,
)
from .formatters import ColoredConsoleFormatter, JsonlFormatter

# Marks handlers installed here so reconfiguring leaves foreign ones alone
_HANDLER_FLAG = "_narrator_handler"


def _console_handler(level: LogLevel) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(LEVEL_MAP[level])
    handler.setFormatter(ColoredConsoleFormatter())
    return handler


def _jsonl_handler(cfg: Dict[str, Any]) -> Optional[logging.Handler]:
    log_dir = cfg.get("log_dir")
    if not log_dir:
        return None
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path / str(cfg.get("jsonl_file", Defaults.LOGGING_JSONL_FILE)),
        maxBytes=int(cfg.get("rotate_max_bytes", Defaults.LOGGING_ROTATE_MAX_BYTES)),
        backupCount=int(cfg.get("rotate_backup_count", Defaults.LOGGING_ROTATE_BACKUP_COUNT)),
        encoding="utf-8",
        delay=True,
    )
    # The file keeps every level; only the console is filtered
    handler.setLevel(TRACE)
    handler.setFormatter(JsonlFormatter())
    return handler


def configure_logging(level: Optional[int | str | LogLevel] = None, force: bool = False) -> None:
    """
    Install the console handler and, when log_dir is set, the JSONL handler.

    Args:
        level: Log level (1-4, level name, or LogLevel). Falls back to the
            logging section (env, then settings.yaml), then NORMAL.
        force: Reconfigure even if already configured.
    """
    if is_configured() and not force:
        return

    colors.USE_COLORS = supports_color()

    cfg = read_logging_config()
    set_log_config(cfg)
    current = coerce_level(level if level is not None else cfg.get("level", Defaults.LOGGING_LEVEL))
    set_level(current)

    root = logging.getLogger()
    root.setLevel(TRACE)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_FLAG, False):
            root.removeHandler(handler)
            handler.close()

    for handler in (_console_handler(current), _jsonl_handler(cfg)):
        if handler is None:
            continue
        setattr(handler, _HANDLER_FLAG, True)
        root.addHandler(handler)

    set_configured(True)


def _log(logger: logging.Logger, py_level: int, tag: str, numeric_level: int, msg: str, fields: Dict[str, Any]) -> None:
    if numeric_level > get_level():
        return
    event = fields.pop("event", None)
    seconds = fields.pop("seconds", None)
    logger.log(
        py_level,
        msg,
        extra={
            "tag": tag,
            "request_id": get_request_id(),
            "event": event,
            "seconds": seconds,
            "extra_data": fields or None,
            "numeric_level": numeric_level,
        },
    )


def get_logger(name: str = "tts-narrator") -> logging.Logger:
    """Get a logger instance, configuring logging if needed."""
    configure_logging()
    return logging.getLogger(name)


def error(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Log an error at MINIMAL."""
    _log(logger, logging.ERROR, "ERROR", 1, msg, fields)


def fail(logger: logging.Logger, msg: str, **fields: Any) -> None:
    """Log a request that failed for good (retries exhausted or terminal) at MINIMAL."""
    _log(logger, logging.ERROR, "FAIL", 1, msg, fields)


def warn(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _log(logger, logging.WARNING, "WARN", 2, msg, fields)


def info(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _log(logger, logging.INFO, "INFO", 2, msg, fields)


def verbose(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _log(logger, logging.DEBUG, "INFO", 3, msg, fields)


def debug(logger: logging.Logger, msg: str, **fields: Any) -> None:
    _log(logger, TRACE, "DEBUG", 4, msg, fields)


__all__ = [
    "LogLevel",
    "LEVEL_MAP",
    "TRACE",
    "coerce_level",
    "Colors",
    "supports_color",
    "colorize",
    "get_tag_color",
    "get_request_id",
    "set_request_id",
    "request_context",
    "get_level",
    "set_level",
    "get_level_name",
    "get_log_config",
    "JsonlFormatter",
    "ColoredConsoleFormatter",
    "configure_logging",
    "get_logger",
    "error",
    "fail",
    "warn",
    "info",
    "verbose",
    "debug",
]
