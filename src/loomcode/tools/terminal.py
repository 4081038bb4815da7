"""Shell command tool.  Commands run in the workspace root, bounded by the sandbox time limit."""

import asyncio
import contextlib
import logging

from loomcode.security.models import (
    OperationType,
    ResourceType,
)
from loomcode.tools import (
    ToolContext,
    tool,
)

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 20_000


def _clip(text: str) -> str:
    if len(text) <= _OUTPUT_LIMIT:
        return text
    return text[:_OUTPUT_LIMIT] + f"\n... ({len(text) - _OUTPUT_LIMIT} more characters)"


@tool("run_command", "Run a shell command in the workspace root and return its exit code and output.")
async def run_command(command: str, context: ToolContext) -> str:
    engine = context.engine()
    await engine.require(
        ResourceType.TERMINAL, OperationType.EXECUTE, command, requested_by="run_command"
    )

    timeout = engine.sandbox.max_execution_time
    logger.info("Running command in %s: %s", context.workspace_root, command)
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(context.workspace_root),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()
        raise TimeoutError(f"Command timed out after {timeout:g}s: {command}") from exc

    parts = [f"Exit code: {proc.returncode}"]
    if stdout:
        parts.append("STDOUT:\n" + _clip(stdout.decode("utf-8", errors="replace")))
    if stderr:
        parts.append("STDERR:\n" + _clip(stderr.decode("utf-8", errors="replace")))
    return "\n".join(parts)
