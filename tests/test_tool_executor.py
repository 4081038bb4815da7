"""
Basic sanity tests for the tool gateway.

Run with:
$ pytest -q
"""

import asyncio
from pathlib import Path

from loomcode.agent.tool_executor import ToolGateway
from loomcode.core.schema import ToolCall
from loomcode.tools import (
    ToolContext,
    ToolDefinition,
    tool,
)


# These are stub tools for testing purposes.
@tool("add")
def _add(a: int, b: int) -> int:
    """Return the sum of two integers (used only for tests)."""

    return a + b


@tool("boom")
def _boom() -> str:
    """Always fails."""

    raise ValueError()


@tool("slow_echo")
async def _slow_echo(text: str) -> str:
    """Echo after yielding to the event loop."""

    await asyncio.sleep(0)
    return text


@tool("whoami")
def _whoami(context: ToolContext) -> str:
    """Report the context the tool was called with."""

    return f"{context.session_id}:{context.tool_call_id}:{context.workspace_root.name}"


def _gateway() -> ToolGateway:
    gateway = ToolGateway()
    for definition in (_add, _boom, _slow_echo, _whoami):
        gateway.register_tool(definition)
    return gateway


def _run(gateway: ToolGateway, name: str, params: dict, context: ToolContext | None = None):
    return asyncio.run(gateway.execute_tool(ToolCall(id="c1", name=name, parameters=params), context))


def test_execute_tool_success() -> None:
    """Gateway should return the tool's output as a success result."""

    result = _run(_gateway(), "add", {"a": 2, "b": 3})
    assert result.status == "success"
    assert result.output == "5"
    assert result.tool_call_id == "c1"


def test_execute_tool_missing() -> None:
    """An unknown tool yields an error result, not an exception."""

    result = _run(_gateway(), "not_a_tool", {})
    assert result.status == "error"
    assert result.error == "Tool not_a_tool not found"


def test_execute_tool_bad_args() -> None:
    """Arguments that do not fit the schema yield an 'Invalid arguments' error."""

    result = _run(_gateway(), "add", {"a": 2})  # missing 'b'
    assert result.status == "error"
    assert "Invalid arguments" in result.error
    assert "b" in result.error


def test_raising_tool_becomes_error_result() -> None:
    """An exception without a message still produces a non-empty error."""

    result = _run(_gateway(), "boom", {})
    assert result.status == "error"
    assert result.error
    assert "ValueError" in result.error


def test_async_tools_are_awaited() -> None:
    """Coroutine tools run on the event loop."""

    result = _run(_gateway(), "slow_echo", {"text": "hi"})
    assert result.ok
    assert result.output == "hi"


def test_context_is_passed_with_call_id(tmp_path: Path) -> None:
    """Tools asking for ``context`` receive it, stamped with the call id."""

    context = ToolContext(workspace_root=tmp_path / "proj", session_id="s1")
    result = _run(_gateway(), "whoami", {}, context)
    assert result.output == "s1:c1:proj"


def test_reregistration_replaces_previous_definition() -> None:
    """The last registration for a name wins and the registry keeps one entry per name."""

    gateway = _gateway()
    gateway.register_tool(
        ToolDefinition(name="add", description="broken adder", execute=lambda params, ctx: "always 42")
    )

    assert _run(gateway, "add", {"a": 1, "b": 1}).output == "always 42"
    names = [t.name for t in gateway.get_tool_definitions()]
    assert names.count("add") == 1
    assert gateway.get_tool_schemas()["add"]["description"] == "broken adder"


def test_unregister_tool() -> None:
    """Unregistered tools are reported as not found."""

    gateway = _gateway()
    assert gateway.unregister_tool("add")
    assert not gateway.unregister_tool("add")
    assert _run(gateway, "add", {"a": 1, "b": 2}).status == "error"


def test_schema_describes_parameters() -> None:
    """Schemas derived from signatures list types and required flags."""

    schema = _gateway().get_tool_schemas()["add"]
    assert schema["description"].startswith("Return the sum")
    assert schema["parameters"]["a"] == {"type": "integer", "required": True, "description": ""}
    assert "context" not in _gateway().get_tool_schemas()["whoami"]["parameters"]
