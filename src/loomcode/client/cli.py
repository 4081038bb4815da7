"""Interactive terminal client: runs the agent in-process and prints its updates live."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from typing import (
    List,
    Optional,
    Tuple,
)

from loomcode.agent.model_provider import ProviderError
from loomcode.agent.orchestrator import Orchestrator
from loomcode.app_context import AppContext
from loomcode.common import (
    AnsiColors,
    colored_print,
    truncate,
)
from loomcode.config import (
    Settings,
    settings,
)
from loomcode.core.schema import (
    AgentUpdate,
    ReasoningStep,
    StatusUpdate,
    ToolCallUpdate,
    ToolResultUpdate,
)
from loomcode.security.approvals import ConsoleApprover

logger = logging.getLogger(__name__)

HELP = """\
Commands:
  /file <path> [...]   attach files to the next message
  /tasks               show tracked tasks
  /models              list models offered by the provider
  /reset               start a fresh conversation
  exit | quit          leave (Ctrl+C during a run cancels it)"""


# ---------------------------------------------------------------------------
# Input / output helpers
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def print_update(update: AgentUpdate) -> None:
    """Render one agent update on the terminal."""
    if isinstance(update, StatusUpdate):
        color = AnsiColors.RED if update.state == "failed" else AnsiColors.GREY
        if update.message:
            colored_print(f"… {update.message}", color)
    elif isinstance(update, ReasoningStep):
        colored_print(f"💭 {update.message}", AnsiColors.GREY)
    elif isinstance(update, ToolCallUpdate):
        colored_print(
            f"🔧 {update.tool}({truncate(json.dumps(update.parameters), 120)})", AnsiColors.BLUE
        )
    elif isinstance(update, ToolResultUpdate):
        if update.success:
            colored_print(f"   ✓ {truncate(update.result.output, 160)}", AnsiColors.GREEN)
        else:
            colored_print(f"   ✗ {update.result.error}", AnsiColors.RED)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------
class CliSession:
    """Binds one orchestrator to a private event loop so blocking input stays on the main thread."""

    def __init__(self, context: AppContext, loop: asyncio.AbstractEventLoop):
        self.context = context
        self.loop = loop
        self.orchestrator: Orchestrator = context.create_session()
        self.pending_files: List[str] = []

    def ask(self, message: str) -> Optional[str]:
        files, self.pending_files = self.pending_files, []
        with self._cancel_on_sigint():
            try:
                return self.loop.run_until_complete(
                    self.orchestrator.chat(message, context_files=files, on_update=print_update)
                )
            except ProviderError as exc:
                colored_print(f"⚠️ {exc}", AnsiColors.RED)
                return None

    @contextlib.contextmanager
    def _cancel_on_sigint(self):
        try:
            self.loop.add_signal_handler(signal.SIGINT, self.orchestrator.cancel)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable (Windows, non-main thread)
            yield
            return
        try:
            yield
        finally:
            self.loop.remove_signal_handler(signal.SIGINT)

    def command(self, line: str) -> None:
        name, _, rest = line.partition(" ")
        if name == "/file":
            self.pending_files.extend(rest.split())
            colored_print(f"📎 {len(self.pending_files)} file(s) attached", AnsiColors.GREY)
        elif name == "/tasks":
            summaries = [
                self.context.tasks.get_task_summary(t.id) for t in self.context.tasks.list_tasks()
            ]
            colored_print("\n\n".join(s for s in summaries if s) or "No tasks.", AnsiColors.YELLOW)
        elif name == "/models":
            models = self.loop.run_until_complete(self.context.provider.list_models())
            colored_print("\n".join(models) or "No models found.", AnsiColors.YELLOW)
        elif name == "/reset":
            self.orchestrator.reset()
            colored_print("Conversation cleared.", AnsiColors.GREY)
        else:
            colored_print(HELP, AnsiColors.GREY)


def run_cli(config: Settings | None = None) -> None:
    """Run the interactive agent shell."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    context = AppContext(config or settings, approver=ConsoleApprover())
    session = CliSession(context, loop)

    colored_print(
        "\n🧵 loomcode shell - type /help for commands, 'exit' or 'quit' (or Ctrl+C) to exit",
        AnsiColors.GREEN,
    )
    try:
        while True:
            colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
            user_msg, ok = get_user_message()
            if not ok:
                break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
            if user_msg.lower() in {"exit", "quit"}:
                break
            if not user_msg:
                continue
            if user_msg.startswith("/"):
                session.command(user_msg)
                continue

            reply = session.ask(user_msg)
            if reply is not None:
                colored_print(f"\n🤖 {reply}", AnsiColors.YELLOW)
    finally:
        loop.run_until_complete(context.dispose())
        loop.close()


if __name__ == "__main__":
    run_cli()
