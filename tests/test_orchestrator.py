"""
Tests for the agent turn loop, using a scripted provider instead of a model host.

Run with:
$ pytest -q
"""

import asyncio
import json
from pathlib import Path
from typing import (
    List,
    Optional,
    Sequence,
)

import pytest

from loomcode.agent.model_provider import (
    BaseProvider,
    ProviderError,
)
from loomcode.agent.orchestrator import (
    CANCELLED_RESULT,
    SKIPPED_TOOL_ERROR,
    Orchestrator,
    OrchestratorBusyError,
    RunState,
)
from loomcode.agent.tool_executor import ToolGateway
from loomcode.core.schema import (
    ChatMessage,
    ChatResponse,
    Role,
    ToolCall,
)
from loomcode.memory.history_store import JsonHistoryStore
from loomcode.tools import tool


class ScriptedProvider(BaseProvider):
    """Returns the scripted replies in order and records every conversation it was sent."""

    name = "scripted"

    def __init__(self, replies: Sequence[ChatResponse | str | Exception], gate: Optional[asyncio.Event] = None):
        self.replies = list(replies)
        self.gate = gate
        self.calls: List[List[ChatMessage]] = []

    async def chat(self, messages: Sequence[ChatMessage]) -> ChatResponse:
        self.calls.append([m.model_copy(deep=True) for m in messages])
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, ChatResponse) else ChatResponse(content=reply)

    async def list_models(self) -> List[str]:
        return ["scripted"]


@tool("add")
def _add(a: int, b: int) -> int:
    """Add two integers."""

    return a + b


def _calls_reply(*calls: dict, thought: str = "working") -> str:
    return "```json\n" + json.dumps({"thought": thought, "tool_calls": list(calls)}) + "\n```"


def _gateway() -> ToolGateway:
    gateway = ToolGateway()
    gateway.register_tool(_add)
    return gateway


def _tool_messages(messages: Sequence[ChatMessage]) -> List[dict]:
    return [m.content for m in messages if m.role == Role.TOOL]


def test_tool_results_are_fed_back_before_the_next_model_call() -> None:
    """Three calls in one reply run in order and the model is re-queried with every result."""

    provider = ScriptedProvider(
        [
            _calls_reply(
                {"id": "c1", "name": "add", "parameters": {"a": 1, "b": 2}},
                {"id": "c2", "name": "add", "parameters": {"a": 3, "b": 4}},
                {"id": "c3", "name": "add", "parameters": {"a": 5, "b": 6}},
            ),
            "The sums are 3, 7 and 11.",
        ]
    )
    orch = Orchestrator(provider, _gateway())
    seen = []

    answer = asyncio.run(orch.chat("add some numbers", on_update=seen.append))

    assert answer == "The sums are 3, 7 and 11."
    assert orch.state == RunState.COMPLETED
    assert len(provider.calls) == 2
    results = _tool_messages(provider.calls[1])
    assert [(r["tool_call_id"], r["output"]) for r in results] == [("c1", "3"), ("c2", "7"), ("c3", "11")]

    types = [u.type for u in seen]
    assert types == [
        "status",
        "reasoning_step",
        "tool_call",
        "tool_result",
        "tool_call",
        "tool_result",
        "tool_call",
        "tool_result",
        "status",
        "status",
    ]
    assert [u.seq for u in seen] == list(range(1, len(seen) + 1))
    assert seen[-1].state == "completed"


def test_every_call_gets_exactly_one_result_even_when_tools_fail() -> None:
    """Unknown tools and bad arguments still produce a result correlated to their call."""

    provider = ScriptedProvider(
        [
            _calls_reply(
                {"id": "a", "name": "nope", "parameters": {}},
                {"id": "b", "name": "add", "parameters": {"a": "x"}},
            ),
            "ok",
        ]
    )
    orch = Orchestrator(provider, _gateway())
    asyncio.run(orch.chat("go"))

    results = _tool_messages(orch.history)
    assert [r["tool_call_id"] for r in results] == ["a", "b"]
    assert all(r["status"] == "error" and r["error"] for r in results)


def test_missing_and_duplicate_ids_are_replaced() -> None:
    """Calls without an id, or reusing one, get fresh unique ids."""

    provider = ScriptedProvider(
        [
            _calls_reply(
                {"name": "add", "parameters": {"a": 1, "b": 1}},
                {"id": "x", "name": "add", "parameters": {"a": 1, "b": 2}},
                {"id": "x", "name": "add", "parameters": {"a": 1, "b": 3}},
            ),
            "done",
        ]
    )
    orch = Orchestrator(provider, _gateway())
    asyncio.run(orch.chat("go"))

    assistant = next(m for m in orch.history if m.tool_calls)
    ids = [c.id for c in assistant.tool_calls]
    assert all(ids) and len(set(ids)) == 3
    assert ids[1] == "x"
    assert [r["tool_call_id"] for r in _tool_messages(orch.history)] == ids


def test_native_tool_calls_are_used_as_is() -> None:
    """Providers that return structured calls bypass text parsing."""

    provider = ScriptedProvider(
        [
            ChatResponse(content="", tool_calls=[ToolCall(id="n1", name="add", parameters={"a": 2, "b": 2})]),
            "4",
        ]
    )
    orch = Orchestrator(provider, _gateway())
    assert asyncio.run(orch.chat("2+2?")) == "4"
    assert _tool_messages(orch.history)[0]["output"] == "4"


def test_turn_budget_ends_with_a_summary() -> None:
    """When the budget runs out the model is asked for a progress summary."""

    call = {"id": "c", "name": "add", "parameters": {"a": 1, "b": 1}}
    provider = ScriptedProvider([_calls_reply(call), _calls_reply(call), "Added twice, nothing left."])
    orch = Orchestrator(provider, _gateway(), max_turns=2)

    answer = asyncio.run(orch.chat("loop forever"))

    assert answer == "**Max Turns Reached (2)**\n\nAdded twice, nothing left."
    assert len(provider.calls) == 3
    assert "maximum number of turns" in provider.calls[2][-1].text()


def test_cancel_inside_a_tool_skips_the_remaining_calls() -> None:
    """Cancelling mid-dispatch records synthetic results and publishes nothing further."""

    provider = ScriptedProvider(
        [
            _calls_reply(
                {"id": "c1", "name": "stop", "parameters": {}},
                {"id": "c2", "name": "add", "parameters": {"a": 1, "b": 1}},
            )
        ]
    )
    gateway = _gateway()
    orch = Orchestrator(provider, gateway)

    @tool("stop")
    def _stop() -> str:
        """Cancels the run it is part of."""

        assert orch.cancel()
        return "stopped"

    gateway.register_tool(_stop)
    seen = []

    answer = asyncio.run(orch.chat("go", on_update=seen.append))

    assert answer == CANCELLED_RESULT
    assert orch.state == RunState.CANCELLED
    assert seen[-1].type == "tool_call" and seen[-1].id == "c1"
    results = _tool_messages(orch.history)
    assert results[0]["output"] == "stopped"
    assert results[1] == {"role": "tool_result", "tool_call_id": "c2", "status": "error", "output": "", "error": SKIPPED_TOOL_ERROR}
    assert len(provider.calls) == 1


def test_cancel_while_waiting_for_the_model() -> None:
    """A pending provider call is abandoned as soon as the run is cancelled."""

    provider = ScriptedProvider(["never delivered"], gate=asyncio.Event())
    orch = Orchestrator(provider, _gateway())

    async def scenario():
        task = asyncio.create_task(orch.chat("hello"))
        await asyncio.sleep(0.01)
        assert orch.cancel()
        return await asyncio.wait_for(task, timeout=1)

    assert asyncio.run(scenario()) == CANCELLED_RESULT
    assert orch.state == RunState.CANCELLED


def test_cancel_without_an_active_run_is_a_no_op() -> None:
    """Cancelling an idle or finished session returns False."""

    orch = Orchestrator(ScriptedProvider(["hi"]), _gateway())
    assert not orch.cancel()
    asyncio.run(orch.chat("hello"))
    assert not orch.cancel()
    assert orch.state == RunState.COMPLETED


def test_concurrent_chat_is_rejected() -> None:
    """A session runs one request at a time."""

    gate = asyncio.Event()
    provider = ScriptedProvider(["first"], gate=gate)
    orch = Orchestrator(provider, _gateway())

    async def scenario():
        task = asyncio.create_task(orch.chat("one"))
        await asyncio.sleep(0)
        with pytest.raises(OrchestratorBusyError):
            await orch.chat("two")
        gate.set()
        return await task

    assert asyncio.run(scenario()) == "first"


def test_provider_failure_marks_the_run_failed() -> None:
    """Transport errors propagate and a failed status update is published."""

    orch = Orchestrator(ScriptedProvider([ProviderError("host unreachable")]), _gateway())

    with pytest.raises(ProviderError):
        asyncio.run(orch.chat("hello"))

    assert orch.state == RunState.FAILED
    assert orch.last_error == "host unreachable"
    last = orch.updates_since(0)[-1]
    assert (last.type, last.state, last.message) == ("status", "failed", "host unreachable")


def test_observer_attached_mid_run_sees_everything_once() -> None:
    """A late observer is replayed the backlog and then follows the run."""

    gate = asyncio.Event()
    provider = ScriptedProvider(["done"], gate=gate)
    orch = Orchestrator(provider, _gateway())
    seen = []

    async def scenario():
        task = asyncio.create_task(orch.chat("hello"))
        await asyncio.sleep(0)
        orch.attach(seen.append)
        gate.set()
        await task

    asyncio.run(scenario())
    assert [u.seq for u in seen] == [1, 2]
    assert [u.state for u in seen] == ["thinking", "completed"]


class ReconnectingClient:
    """Records updates and drops its connection once it has seen *drop_at*."""

    def __init__(self, orch: Orchestrator, drop_at: int):
        self.orch = orch
        self.drop_at = drop_at
        self.received = []

    def receive(self, update) -> None:
        self.received.append(update)
        if update.seq == self.drop_at:
            self.orch.detach(self.receive)

    def reconnect(self) -> None:
        self.orch.attach(self.receive, after_seq=self.received[-1].seq)


def test_observer_detached_and_reattached_mid_run_matches_a_steady_observer() -> None:
    """Dropping out and resuming mid-run yields the same stream as never disconnecting."""

    provider = ScriptedProvider(
        [
            _calls_reply(
                {"id": "c1", "name": "add", "parameters": {"a": 1, "b": 2}},
                {"id": "c2", "name": "add", "parameters": {"a": 3, "b": 4}},
                {"id": "c3", "name": "add", "parameters": {"a": 5, "b": 6}},
            ),
            _calls_reply({"id": "c4", "name": "add", "parameters": {"a": 7, "b": 8}}),
            "The sums are 3, 7, 11 and 15.",
        ]
    )
    orch = Orchestrator(provider, _gateway())
    client = ReconnectingClient(orch, drop_at=3)
    steady = []

    def follow(update) -> None:
        steady.append(update)
        if update.seq == 1:
            orch.attach(client.receive)
        elif update.seq == 7:
            client.reconnect()

    asyncio.run(orch.chat("add some numbers", on_update=follow))

    assert len(steady) > 7
    assert [u.seq for u in steady] == list(range(1, len(steady) + 1))
    assert [u.seq for u in client.received] == [u.seq for u in steady]
    assert [u.model_dump() for u in client.received] == [u.model_dump() for u in steady]


def test_context_files_are_attached_to_the_user_message(tmp_path: Path) -> None:
    """Attached files are embedded after the user's text."""

    (tmp_path / "notes.txt").write_text("remember the milk", encoding="utf-8")
    provider = ScriptedProvider(["noted"])
    orch = Orchestrator(provider, _gateway(), workspace_root=tmp_path)

    asyncio.run(orch.chat("read my notes", context_files=["notes.txt", "missing.txt"]))

    user = provider.calls[0][-1]
    assert user.role == Role.USER
    assert user.text().startswith("read my notes\n\n<context>")
    assert '<file path="notes.txt">\nremember the milk\n</file>' in user.text()
    assert '<file path="missing.txt" error="true">' in user.text()


def test_history_is_saved_and_reloaded(tmp_path: Path) -> None:
    """A new orchestrator on the same store resumes the conversation."""

    store = JsonHistoryStore(tmp_path, "s1")
    first = Orchestrator(ScriptedProvider(["Hello!"]), _gateway(), session_id="s1", history_store=store)
    asyncio.run(first.chat("hi"))

    provider = ScriptedProvider(["Welcome back."])
    second = Orchestrator(provider, _gateway(), session_id="s1", history_store=store)
    assert [m.role for m in second.history] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]

    asyncio.run(second.chat("again"))
    sent = provider.calls[0]
    assert [m.text() for m in sent[1:]] == ["hi", "Hello!", "again"]
    assert store.list_sessions()[0]["messages"] == 4


def test_system_prompt_lists_registered_tools() -> None:
    """Tools registered after construction appear in the next run's system prompt."""

    gateway = _gateway()
    provider = ScriptedProvider(["ok"])
    orch = Orchestrator(provider, gateway)

    @tool("shout")
    def _shout(text: str) -> str:
        """Upper-case the text."""

        return text.upper()

    gateway.register_tool(_shout)
    asyncio.run(orch.chat("hi"))

    system = provider.calls[0][0]
    assert system.role == Role.SYSTEM
    assert "## add" in system.text() and "## shout" in system.text()
