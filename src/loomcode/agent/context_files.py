"""Serializes files the user attached to a message into a ``<context>`` block."""

import logging
from pathlib import Path
from typing import (
    Iterable,
    Union,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _quote(value: str) -> str:
    return value.replace("&", "&amp;").replace('"', "&quot;")


def resolve_context(
    paths: Iterable[PathLike], workspace_root: PathLike = ".", max_lines: int = 256
) -> str:
    """
    Read each attached file and wrap it in ``<file path="...">`` elements.

    Relative paths are taken relative to *workspace_root*.  Files longer than *max_lines* are cut
    and flagged ``truncated="true"``; unreadable files are flagged ``error="true"``.  Returns an
    empty string when nothing is attached.
    """
    paths = list(paths)
    if not paths:
        return ""

    root = Path(workspace_root)
    parts = ["\n\n<context>\n"]
    for item in paths:
        shown = str(item)
        path = Path(item).expanduser()
        if not path.is_absolute():
            path = root / path
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read context file %s: %s", path, e)
            parts.append(f'<file path="{_quote(shown)}" error="true">Could not read file.</file>\n')
            continue

        lines = content.split("\n")
        if len(lines) > max_lines:
            body = "\n".join(lines[:max_lines]) + "\n... (content truncated)"
            parts.append(f'<file path="{_quote(shown)}" truncated="true">\n{body}\n</file>\n')
        else:
            parts.append(f'<file path="{_quote(shown)}">\n{content}\n</file>\n')
        logger.debug("Attached %s (%d chars)", path, len(content))

    parts.append("</context>\n")
    return "".join(parts)
