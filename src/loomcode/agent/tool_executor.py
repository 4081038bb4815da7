"""Dispatches tool calls to registered tools and wraps every outcome in a ToolResult."""

import asyncio
import inspect
import logging
import threading
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
)

from pydantic import ValidationError

from loomcode.common import truncate
from loomcode.core.schema import (
    ToolCall,
    ToolResult,
)
from loomcode.tools import (
    ToolContext,
    ToolDefinition,
    ToolInputError,
    ToolSchema,
)

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""


class ToolGateway:
    """
    Registry of tools keyed by name, and the single place where tool failures become results.

    ``execute_tool`` never raises for anything a tool does: unknown names, invalid arguments and
    exceptions from inside the tool all come back as ``ToolResult(status="error")``.
    """

    def __init__(self, default_context: Optional[ToolContext] = None):
        self._tools: Dict[str, ToolDefinition] = {}
        self._lock = threading.Lock()
        self.default_context = default_context or ToolContext()

    # ------------------------------------------------------------------ #
    # Registry
    # ------------------------------------------------------------------ #
    def register_tool(self, tool: ToolDefinition) -> None:
        """Insert or replace *tool*; the last registration for a name wins."""
        with self._lock:
            previous = self._tools.get(tool.name)
            self._tools[tool.name] = tool
        if previous is not None and previous is not tool:
            logger.info("Tool '%s' re-registered; replacing previous definition", tool.name)
        else:
            logger.debug("Registered tool '%s'", tool.name)

    def unregister_tool(self, name: str) -> bool:
        with self._lock:
            return self._tools.pop(name, None) is not None

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        with self._lock:
            return self._tools.get(name)

    def get_tool_definitions(self) -> List[ToolDefinition]:
        """Snapshot of the registry, in registration order."""
        with self._lock:
            return list(self._tools.values())

    def get_tool_schemas(self) -> Mapping[str, ToolSchema]:
        return {t.name: t.schema() for t in self.get_tool_definitions()}

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #
    async def execute_tool(
        self, call: ToolCall, context: Optional[ToolContext] = None
    ) -> ToolResult:
        """
        Look up ``call.name`` and invoke it with ``call.parameters``.

        Parameters
        ----------
        call:
            The tool call requested by the model.
        context:
            Execution context for the tool.  Defaults to the gateway's ``default_context``.

        Returns
        -------
        ToolResult
            ``success`` with the tool's output, or ``error`` carrying a non-empty message.
        """
        try:
            output = await self._invoke(call, context or self.default_context)
        except ToolExecutionError as exc:
            logger.warning("%s", exc)
            return _error(call, str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            if isinstance(exc, (ToolInputError, PermissionError)):
                logger.warning("Tool '%s' refused: %s", call.name, exc)
            else:
                logger.exception("Unhandled error in tool '%s'", call.name)
            message = str(exc) or exc.__class__.__name__
            return _error(call, f"Tool '{call.name}' raised an error: {message}")

        logger.debug("Tool '%s' returned: %s", call.name, truncate(output))
        return ToolResult(tool_call_id=call.id, status="success", output=output)

    async def _invoke(self, call: ToolCall, context: ToolContext) -> str:
        tool = self.get_tool(call.name)
        if tool is None:
            raise ToolExecutionError(f"Tool {call.name} not found")

        params: Dict[str, Any] = dict(call.parameters or {})
        if tool.parameters is not None:
            try:
                params = tool.parameters.model_validate(params).model_dump()
            except ValidationError as exc:
                # Argument mismatch: give the model a clean message it can act on.
                raise ToolExecutionError(
                    f"Invalid arguments for tool '{call.name}': {_summarize(exc)}"
                ) from exc

        context = context.model_copy(update={"tool_call_id": call.id})
        logger.info("Executing tool '%s'", call.name)
        logger.debug("Arguments for '%s': %s", call.name, params)

        if inspect.iscoroutinefunction(tool.execute):
            result = await tool.execute(params, context)
        else:
            result = await asyncio.to_thread(tool.execute, params, context)
            if inspect.isawaitable(result):
                result = await result

        return result if isinstance(result, str) else _stringify(result)


def _error(call: ToolCall, message: str) -> ToolResult:
    return ToolResult(tool_call_id=call.id, status="error", output="", error=message)


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{where}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json()
    return str(value)
