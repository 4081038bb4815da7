"""Common utility functions for the project."""

import time
import uuid
from enum import Enum
from typing import Any


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    GREY = "\033[90m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def new_id(prefix: str = "") -> str:
    """Return a random identifier, optionally prefixed (``call_1a2b...``)."""
    ident = uuid.uuid4().hex
    return f"{prefix}_{ident[:12]}" if prefix else ident


def now_ms() -> int:
    """Wall-clock time in milliseconds, the unit used for every stored timestamp."""
    return int(time.time() * 1000)


def truncate(text: str, limit: int = 200) -> str:
    """Shorten *text* for log lines and one-line status displays."""
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."
