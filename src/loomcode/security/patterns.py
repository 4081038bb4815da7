"""
Glob matching used by sandbox rules and policy conditions.

Globs are case-insensitive; ``*`` (or ``**``) matches any run of characters including separators,
``?`` matches one character and ``/`` matches either slash.  A pattern prefixed with ``re:`` is a
raw regular expression.  A pattern that fails to compile never raises: it simply matches nothing.
"""

import logging
import re
from functools import lru_cache
from typing import (
    Iterable,
    Optional,
    Pattern,
)

logger = logging.getLogger(__name__)

REGEX_PREFIX = "re:"


def glob_to_regex(pattern: str) -> str:
    """Translate a glob into an anchored regular expression source."""
    out = ["^"]
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            while i + 1 < len(pattern) and pattern[i + 1] == "*":
                i += 1
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch in "/\\":
            out.append(r"[\\/]")
        else:
            out.append(re.escape(ch))
        i += 1
    out.append("$")
    return "".join(out)


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> Optional[Pattern[str]]:
    """Compile *pattern*, returning ``None`` (and logging once) when it is malformed."""
    source = pattern[len(REGEX_PREFIX) :] if pattern.startswith(REGEX_PREFIX) else glob_to_regex(pattern)
    try:
        return re.compile(source, re.IGNORECASE)
    except re.error as exc:
        logger.warning("Ignoring malformed pattern %r: %s", pattern, exc)
        return None


def matches_pattern(text: str, pattern: str) -> bool:
    compiled = compile_pattern(pattern)
    return bool(compiled and compiled.search(text))


def matches_path(path: str, pattern: str) -> bool:
    """Match a resolved path; a directory also matches patterns for its contents (``.git/**``)."""
    return matches_pattern(path, pattern) or matches_pattern(path.rstrip("/\\") + "/", pattern)


def matches_command(command: str, pattern: str) -> bool:
    """
    Match command text against *pattern*.

    Besides the glob itself, the literal part of a glob (``"dd if=*"`` -> ``"dd if="``) matching
    anywhere in the command counts, so chained commands such as ``cd / && rm -rf *`` are caught.
    """
    if not pattern.startswith(REGEX_PREFIX):
        literal = pattern.replace("*", "").strip()
        if literal and literal.lower() in command.lower():
            return True
    return matches_pattern(command, pattern)


def any_path_match(path: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern matching *path*, if any."""
    for pattern in patterns:
        if matches_path(path, pattern):
            return pattern
    return None


def any_command_match(command: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern matching *command*, if any."""
    for pattern in patterns:
        if matches_command(command, pattern):
            return pattern
    return None
