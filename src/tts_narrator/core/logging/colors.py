"""
ANSI colors for console log output.

Colors are disabled when stdout is not a TTY, when NO_COLOR is set
(https://no-color.org/), or when NARRATOR_NO_COLOR=1. The decision is
cached in USE_COLORS; configure_logging() refreshes it.
"""
from __future__ import annotations

import os
import sys


class Colors:
    """ANSI escape codes. Colored text is always followed by RESET."""
    RESET = "\033[0m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    GRAY = "\033[90m"

    BRIGHT_RED = "\033[91m"
    BRIGHT_YELLOW = "\033[93m"
    BRIGHT_BLUE = "\033[94m"
    BRIGHT_CYAN = "\033[96m"


def supports_color() -> bool:
    """Whether stdout should receive ANSI codes."""
    if os.getenv("NARRATOR_NO_COLOR", "0") == "1" or os.getenv("NO_COLOR"):
        return False

    isatty = getattr(sys.stdout, "isatty", None)
    if isatty is None or not isatty():
        return False

    if sys.platform == "win32":
        # Enable virtual terminal processing on the console
        try:
            import ctypes
            kernel32 = ctypes.windll.kernel32
            kernel32.SetConsoleMode(kernel32.GetStdHandle(-11), 7)
        except (AttributeError, OSError):
            return False

    return True


USE_COLORS = supports_color()


def colorize(text: str, color: str) -> str:
    if not USE_COLORS:
        return text
    return f"{color}{text}{Colors.RESET}"


# One entry per tag the log helpers emit
_TAG_COLORS = {
    "ERROR": Colors.BRIGHT_RED,
    "FAIL": Colors.BRIGHT_RED,
    "WARN": Colors.BRIGHT_YELLOW,
    "INFO": Colors.BRIGHT_CYAN,
    "DEBUG": Colors.GRAY,
}


def get_tag_color(tag: str) -> str:
    return _TAG_COLORS.get(tag.upper(), Colors.WHITE)
