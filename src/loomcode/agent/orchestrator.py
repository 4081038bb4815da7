"""
The agent turn loop.

One :class:`Orchestrator` owns one conversation (a session).  ``chat`` appends the user's message,
then alternates between the model and the tools it asks for until the model answers in plain text,
the turn budget runs out, or the run is cancelled.  Every step is published as an ``AgentUpdate`` on
the run's :class:`~loomcode.agent.updates.UpdateChannel`, so observers can attach, detach and replay
at any time.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import (
    Iterable,
    List,
    Optional,
)

from loomcode.agent.context_files import resolve_context
from loomcode.agent.model_provider import (
    BaseProvider,
    ProviderError,
)
from loomcode.agent.tool_executor import ToolGateway
from loomcode.agent.updates import (
    UpdateChannel,
    UpdateObserver,
)
from loomcode.common import (
    new_id,
    truncate,
)
from loomcode.config import settings
from loomcode.core.cancellation import (
    CancellationToken,
    RunCancelled,
)
from loomcode.core.schema import (
    AgentUpdate,
    ChatMessage,
    ChatResponse,
    ReasoningStep,
    Role,
    StatusUpdate,
    ToolCall,
    ToolCallUpdate,
    ToolResult,
    ToolResultUpdate,
)
from loomcode.memory.history_store import HistoryStore
from loomcode.tools import ToolContext
from loomcode.tools.tool_call_parser import (
    ParsedReply,
    parse_model_reply,
)

logger = logging.getLogger(__name__)

CANCELLED_RESULT = "Request cancelled."
SKIPPED_TOOL_ERROR = "Tool execution cancelled before execution"
MAX_TURNS_PROMPT = (
    "You have reached the maximum number of turns. Please provide a concise summary of what you "
    "have accomplished so far, what issues you encountered, and what steps should be taken next "
    "to complete the task."
)


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RunPhase(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOLS = "awaiting_tools"


class OrchestratorBusyError(RuntimeError):
    """Raised when ``chat`` is called while the session already has an active run."""


class Orchestrator:
    """
    Runs agent turns for one session.

    Parameters
    ----------
    provider:
        The model provider the conversation is sent to.
    gateway:
        Tool registry; its schemas are rendered into the system prompt before every run.
    workspace_root:
        Root handed to tools and used to resolve attached context files.
    session_id:
        Identifies the conversation; generated when omitted.
    security:
        SecurityEngine passed to tools through their :class:`ToolContext`.
    history_store:
        Optional persistence; loaded on construction, saved after every run.
    max_turns:
        Provider round-trips allowed per run before the model is asked to summarize.
    """

    def __init__(
        self,
        provider: BaseProvider,
        gateway: ToolGateway,
        *,
        workspace_root: str | Path = ".",
        session_id: Optional[str] = None,
        security: Optional[object] = None,
        history_store: Optional[HistoryStore] = None,
        max_turns: Optional[int] = None,
        context_max_lines: Optional[int] = None,
    ):
        self.provider = provider
        self.gateway = gateway
        self.workspace_root = Path(workspace_root)
        self.session_id = session_id or new_id("session")
        self.security = security
        self.history_store = history_store
        self.max_turns = max_turns or settings.MAX_TURNS
        self.context_max_lines = context_max_lines or settings.CONTEXT_MAX_LINES

        self.state = RunState.IDLE
        self.phase: Optional[RunPhase] = None
        self.last_error: Optional[str] = None
        self._token: Optional[CancellationToken] = None
        self._channel = UpdateChannel()
        self._state_lock = threading.Lock()

        self.messages: List[ChatMessage] = [self._system_message()]
        self.messages.extend(self._load_history())

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def run_id(self) -> str:
        return self._channel.run_id

    @property
    def history(self) -> List[ChatMessage]:
        return [m.model_copy(deep=True) for m in self.messages]

    async def chat(
        self,
        user_text: str,
        context_files: Optional[Iterable[str | Path]] = None,
        on_update: Optional[UpdateObserver] = None,
    ) -> str:
        """
        Run the agent on *user_text* and return its final answer.

        Returns ``"Request cancelled."`` if :meth:`cancel` is called during the run.

        Raises
        ------
        OrchestratorBusyError
            If a run is already active on this session.
        ProviderError
            If the model host cannot be reached; the run ends ``FAILED``.
        """
        with self._state_lock:
            if self.state == RunState.RUNNING:
                raise OrchestratorBusyError(f"Session {self.session_id} already has an active run")
            self.state = RunState.RUNNING
            self.last_error = None
            token = self._token = CancellationToken()
            channel = self._channel = UpdateChannel()

        if on_update is not None:
            channel.attach(on_update)
        logger.info("Run %s started on session %s", channel.run_id, self.session_id)

        try:
            answer = await self._run(user_text, context_files, token, channel)
        except RunCancelled:
            logger.info("Run %s cancelled", channel.run_id)
            self._finish(RunState.CANCELLED, channel)
            return CANCELLED_RESULT
        except ProviderError as exc:
            logger.error("Run %s failed: %s", channel.run_id, exc)
            self.last_error = str(exc)
            self._emit(channel, token, StatusUpdate(state="failed", message=str(exc)))
            self._finish(RunState.FAILED, channel)
            raise
        except BaseException as exc:
            logger.error("Run %s aborted: %s", channel.run_id, exc.__class__.__name__)
            self.last_error = str(exc) or exc.__class__.__name__
            self._finish(RunState.FAILED, channel)
            raise

        self._finish(RunState.COMPLETED, channel)
        return answer

    def cancel(self) -> bool:
        """
        Request cancellation of the active run.  Safe from any thread.

        Returns ``False`` (and does nothing) when no run is active.
        """
        with self._state_lock:
            if self.state != RunState.RUNNING or self._token is None:
                return False
            token = self._token
        logger.info("Cancellation requested for session %s", self.session_id)
        token.cancel()
        return True

    def attach(self, observer: UpdateObserver, after_seq: int = 0) -> None:
        """Replay the run's updates after *after_seq* to *observer*, then stream the live ones."""
        self._channel.attach(observer, after_seq)

    def detach(self, observer: UpdateObserver) -> bool:
        return self._channel.detach(observer)

    def updates_since(self, seq: int = 0) -> List[AgentUpdate]:
        return self._channel.updates_since(seq)

    def reset(self) -> None:
        """Forget the conversation (and its persisted history)."""
        with self._state_lock:
            if self.state == RunState.RUNNING:
                raise OrchestratorBusyError("Cannot reset a session while a run is active")
            self.messages = [self._system_message()]
            self.state = RunState.IDLE
        if self.history_store is not None:
            self.history_store.clear_history()

    # ------------------------------------------------------------------ #
    # Turn loop
    # ------------------------------------------------------------------ #
    async def _run(
        self,
        user_text: str,
        context_files: Optional[Iterable[str | Path]],
        token: CancellationToken,
        channel: UpdateChannel,
    ) -> str:
        self.messages[0] = self._system_message()

        content = user_text
        files = list(context_files or [])
        if files:
            content += await asyncio.to_thread(
                resolve_context, files, self.workspace_root, self.context_max_lines
            )
        self.messages.append(ChatMessage(role=Role.USER, content=content))

        for turn in range(1, self.max_turns + 1):
            token.raise_if_cancelled()
            message = "Analyzing request..." if turn == 1 else f"Turn {turn}/{self.max_turns}: Reasoning..."
            self._emit(channel, token, StatusUpdate(state="thinking", message=message))

            response = await self._call_model(token)
            reply = self._interpret(response)
            if reply.thought:
                self._emit(channel, token, ReasoningStep(message=reply.thought))

            if not reply.tool_calls:
                self.messages.append(ChatMessage(role=Role.ASSISTANT, content=response.content))
                self._emit(channel, token, StatusUpdate(state="completed"))
                return reply.answer if reply.answer is not None else response.content

            calls = _with_unique_ids(reply.tool_calls)
            logger.info("Turn %d: model requested %s", turn, [c.name for c in calls])
            self.messages.append(
                ChatMessage(role=Role.ASSISTANT, content=response.content, tool_calls=calls)
            )
            await self._dispatch(calls, token, channel)

        # Turn budget exhausted: one more call for a progress summary
        self._emit(
            channel,
            token,
            StatusUpdate(state="thinking", message="Max turns reached. Summarizing progress..."),
        )
        self.messages.append(ChatMessage(role=Role.USER, content=MAX_TURNS_PROMPT))
        response = await self._call_model(token)
        self.messages.append(ChatMessage(role=Role.ASSISTANT, content=response.content))
        self._emit(channel, token, StatusUpdate(state="completed", message="Max turns reached"))
        return f"**Max Turns Reached ({self.max_turns})**\n\n{response.content}"

    async def _call_model(self, token: CancellationToken) -> ChatResponse:
        self.phase = RunPhase.AWAITING_MODEL
        response = await token.run(self.provider.chat(list(self.messages)))
        token.raise_if_cancelled()
        if response.usage is not None:
            logger.debug("Model usage: %s", response.usage.model_dump())
        logger.debug("Model replied: %s", truncate(response.content))
        return response

    @staticmethod
    def _interpret(response: ChatResponse) -> ParsedReply:
        if response.tool_calls:
            thought = response.content.strip() or None
            return ParsedReply(thought=thought, tool_calls=list(response.tool_calls))
        return parse_model_reply(response.content)

    async def _dispatch(
        self, calls: List[ToolCall], token: CancellationToken, channel: UpdateChannel
    ) -> None:
        """Execute *calls* in order, recording exactly one result per call."""
        self.phase = RunPhase.AWAITING_TOOLS
        context = ToolContext(
            workspace_root=self.workspace_root, session_id=self.session_id, security=self.security
        )
        for index, call in enumerate(calls):
            if token.cancelled:
                for skipped in calls[index:]:
                    self._record_result(
                        ToolResult(tool_call_id=skipped.id, status="error", error=SKIPPED_TOOL_ERROR)
                    )
                raise RunCancelled()

            self._emit(
                channel, token, ToolCallUpdate(id=call.id, tool=call.name, parameters=call.parameters)
            )
            result = await self.gateway.execute_tool(call, context)
            self._record_result(result)
            self._emit(
                channel,
                token,
                ToolResultUpdate(id=call.id, tool=call.name, success=result.ok, result=result),
            )

    def _record_result(self, result: ToolResult) -> None:
        self.messages.append(ChatMessage(role=Role.TOOL, content=result.model_dump(exclude_none=True)))

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _emit(channel: UpdateChannel, token: CancellationToken, update: AgentUpdate) -> None:
        # Nothing is published once the run has been cancelled
        if token.cancelled:
            return
        channel.publish(update)

    def _finish(self, state: RunState, channel: UpdateChannel) -> None:
        channel.close()
        with self._state_lock:
            self.state = state
            self.phase = None
            self._token = None
        self._save_history()

    def _system_message(self) -> ChatMessage:
        prompt = self.provider.build_system_prompt(self.gateway.get_tool_schemas())
        return ChatMessage(role=Role.SYSTEM, content=prompt)

    def _load_history(self) -> List[ChatMessage]:
        if self.history_store is None:
            return []
        try:
            messages = self.history_store.load_history()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Could not load history for session %s", self.session_id)
            return []
        return [m for m in messages if m.role != Role.SYSTEM]

    def _save_history(self) -> None:
        if self.history_store is None:
            return
        try:
            self.history_store.save_history(self.messages[1:])
        except Exception:  # pylint: disable=broad-except
            logger.exception("Could not save history for session %s", self.session_id)


def _with_unique_ids(calls: List[ToolCall]) -> List[ToolCall]:
    """Give every call an id, unique within the turn."""
    seen: set[str] = set()
    out = []
    for call in calls:
        call_id = call.id
        while not call_id or call_id in seen:
            call_id = new_id("call")
        seen.add(call_id)
        out.append(call if call_id == call.id else call.model_copy(update={"id": call_id}))
    return out
