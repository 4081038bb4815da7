"""Workspace file tools.  Every access is checked by the security engine first."""

import asyncio
from pathlib import Path
from typing import List

from loomcode.security.models import (
    OperationType,
    ResourceType,
)
from loomcode.tools import (
    ToolContext,
    ToolInputError,
    tool,
)

_LIST_EXCLUDES = {".git", "node_modules", "__pycache__", ".venv", ".DS_Store", "dist", "build"}
_LIST_LIMIT = 100


def _resolve(context: ToolContext, path: str) -> Path:
    p = Path(path).expanduser()
    return p if p.is_absolute() else context.workspace_root / p


@tool("read_file", "Read file content. Relative paths are resolved against the workspace root.")
async def read_file(path: str, context: ToolContext) -> str:
    engine = context.engine()
    await engine.require(ResourceType.FILE, OperationType.READ, path, requested_by="read_file")

    full = _resolve(context, path)
    if not full.is_file():
        raise ToolInputError(f"Not a file: {path}")
    limit = engine.sandbox.max_file_size
    if full.stat().st_size > limit:
        raise ToolInputError(f"Refusing to read {path}: larger than {limit} bytes")
    return await asyncio.to_thread(full.read_text, encoding="utf-8", errors="replace")


@tool("write_file", "Write file content. Relative paths are resolved against the workspace root.")
async def write_file(path: str, content: str, context: ToolContext) -> str:
    engine = context.engine()
    await engine.require(ResourceType.FILE, OperationType.WRITE, path, requested_by="write_file")

    limit = engine.sandbox.max_file_size
    if len(content.encode("utf-8")) > limit:
        raise ToolInputError(f"Refusing to write {path}: content larger than {limit} bytes")

    full = _resolve(context, path)

    def _write() -> None:
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content, encoding="utf-8")

    await asyncio.to_thread(_write)
    return f"Successfully wrote to {full}"


@tool(
    "list_files",
    "List files under a directory of the workspace (recursively, skipping .git, node_modules and "
    "similar). Useful for understanding project structure.",
)
async def list_files(context: ToolContext, path: str = ".") -> str:
    await context.engine().require(
        ResourceType.DIRECTORY, OperationType.READ, path, requested_by="list_files"
    )
    root = _resolve(context, path)
    if not root.is_dir():
        raise ToolInputError(f"Not a directory: {path}")

    def _walk() -> List[str]:
        entries: List[str] = []
        for child in sorted(root.rglob("*")):
            rel = child.relative_to(root)
            if any(part in _LIST_EXCLUDES for part in rel.parts) or not child.is_file():
                continue
            entries.append(rel.as_posix())
        return entries

    entries = await asyncio.to_thread(_walk)
    shown = "\n".join(entries[:_LIST_LIMIT])
    more = f"\n... {len(entries) - _LIST_LIMIT} more files" if len(entries) > _LIST_LIMIT else ""
    return f"Project Files ({len(entries)}):\n{shown}{more}"
