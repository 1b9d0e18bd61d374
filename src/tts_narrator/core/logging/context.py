"""
Request correlation and logging configuration state.

Log lines carry a request ID, "book_id:fragment_id" while a fragment is
being synthesized and "-" otherwise. It lives in a ContextVar, which
loop.run_in_executor does NOT copy into worker threads, so code running on
a worker wraps itself in request_context():

    with request_context(request.book_id, request.fragment_id):
        audio = synthesizer.synthesize(request.text)

Environment Variables:
    - NARRATOR_SETTINGS: Path to settings.yaml
    - NARRATOR_LOG_LEVEL: Override log level (1-4 or name)
    - NARRATOR_LOG_DIR: Directory for the JSONL log
    - NARRATOR_JSONL_FILE: JSONL filename
    - NARRATOR_LOG_ROTATE_BYTES: Max log file size before rotation
    - NARRATOR_LOG_ROTATE_BACKUP: Number of rotated files to keep
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator

import yaml

from .levels import LogLevel

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

# (env var, config key, int-valued)
_ENV_OVERRIDES = (
    ("NARRATOR_LOG_LEVEL", "level", False),
    ("NARRATOR_LOG_DIR", "log_dir", False),
    ("NARRATOR_JSONL_FILE", "jsonl_file", False),
    ("NARRATOR_LOG_ROTATE_BYTES", "rotate_max_bytes", True),
    ("NARRATOR_LOG_ROTATE_BACKUP", "rotate_backup_count", True),
)

_state: Dict[str, Any] = {
    "configured": False,
    "level": LogLevel.NORMAL,
    "config": {},
}


def get_request_id() -> str:
    return _request_id.get()


def set_request_id(rid: str) -> None:
    """Set the request ID for the current context (CLI runs, tests)."""
    _request_id.set(rid)


@contextmanager
def request_context(book_id: str, fragment_id: str) -> Iterator[str]:
    """Tag log lines in the block with "book_id:fragment_id"."""
    rid = f"{book_id}:{fragment_id}"
    token = _request_id.set(rid)
    try:
        yield rid
    finally:
        _request_id.reset(token)


def get_level() -> LogLevel:
    return _state["level"]


def set_level(level: LogLevel) -> None:
    _state["level"] = level


def get_level_name() -> str:
    """Current level as "MINIMAL", "NORMAL", "VERBOSE" or "DEBUG"."""
    return LogLevel(_state["level"]).name


def is_configured() -> bool:
    return _state["configured"]


def set_configured(value: bool) -> None:
    _state["configured"] = value


def get_log_config() -> Dict[str, Any]:
    return _state["config"]


def set_log_config(config: Dict[str, Any]) -> None:
    _state["config"] = config


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve the logging section: environment over settings.yaml.

    A missing or unreadable settings file leaves the section empty.
    Malformed integer env values are ignored.
    """
    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("NARRATOR_SETTINGS", "config/settings.yaml")
    try:
        from tts_narrator.core.config import load_settings
        cfg.update(load_settings(settings_path).raw.get("logging", {}) or {})
    except (OSError, yaml.YAMLError):
        pass

    for env_name, key, as_int in _ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if not raw:
            continue
        if as_int:
            try:
                cfg[key] = int(raw)
            except ValueError:
                continue
        else:
            cfg[key] = raw

    return cfg
