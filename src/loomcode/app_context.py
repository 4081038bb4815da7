"""
Application wiring.

:class:`AppContext` builds every long-lived collaborator from a :class:`~loomcode.config.Settings`
instance and owns them until :meth:`AppContext.dispose`.  The CLI and the HTTP API each create one;
tests build their own with temporary directories and fake providers.
"""

import logging
import threading
from pathlib import Path
from typing import (
    Dict,
    List,
    Optional,
)

from loomcode.agent.model_provider import (
    BaseProvider,
    load_provider,
)
from loomcode.agent.orchestrator import Orchestrator
from loomcode.agent.tool_executor import ToolGateway
from loomcode.common import new_id
from loomcode.config import (
    Settings,
    settings,
)
from loomcode.memory.history_store import JsonHistoryStore
from loomcode.memory.state_file import StateFile
from loomcode.security.approvals import (
    ApprovalBroker,
    Approver,
)
from loomcode.security.engine import SecurityEngine
from loomcode.security.models import default_sandbox
from loomcode.tasks.manager import TaskManager
from loomcode.tools import (
    ToolContext,
    ToolDefinition,
)
from loomcode.tools.filesystem import (
    list_files,
    read_file,
    write_file,
)
from loomcode.tools.task_tool import create_manage_task_tool
from loomcode.tools.terminal import run_command

logger = logging.getLogger(__name__)

BUILTIN_TOOLS: List[ToolDefinition] = [read_file, write_file, list_files, run_command]


def build_provider(config: Settings) -> BaseProvider:
    """Instantiate the provider named by ``config.PROVIDER`` with that config's connection settings."""
    name = config.PROVIDER.lower()
    if name == "ollama":
        return load_provider(
            name, model=config.MODEL, base_url=config.OLLAMA_URL, timeout=config.REQUEST_TIMEOUT
        )
    if name == "openai-compatible":
        return load_provider(
            name,
            model=config.MODEL,
            base_url=config.OPENAI_BASE_URL,
            api_key=config.OPENAI_API_KEY,
            timeout=config.REQUEST_TIMEOUT,
        )
    return load_provider(name)


class AppContext:
    """Owns the security engine, task manager, tool gateway, provider and sessions."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        provider: Optional[BaseProvider] = None,
        approver: Optional[Approver] = None,
        persist: bool = True,
    ):
        self.settings = config or settings
        self.workspace_root = Path(self.settings.WORKSPACE_ROOT).expanduser().resolve()
        self.data_dir = Path(self.settings.DATA_DIR).expanduser()
        self.persist = persist

        sandbox = default_sandbox().model_copy(
            update={
                "enabled": self.settings.SANDBOX_ENABLED,
                "network_access": self.settings.SANDBOX_NETWORK_ACCESS,
            }
        )
        # Approvals go to the broker (answered over HTTP) unless a console approver is supplied
        self.approvals = ApprovalBroker()
        self.security = SecurityEngine(
            self.workspace_root,
            sandbox,
            approver or self.approvals,
            state_file=self._state_file("security.json"),
            cache_ttl=self.settings.DECISION_CACHE_TTL,
            max_audit_entries=self.settings.MAX_AUDIT_ENTRIES,
            approval_timeout=self.settings.APPROVAL_TIMEOUT,
        )
        self.tasks = TaskManager(self._state_file("tasks.json"))

        self.gateway = ToolGateway(
            ToolContext(workspace_root=self.workspace_root, security=self.security)
        )
        for definition in BUILTIN_TOOLS:
            self.gateway.register_tool(definition)
        self.gateway.register_tool(create_manage_task_tool(self.tasks))

        self.provider = provider or build_provider(self.settings)
        self.sessions: Dict[str, Orchestrator] = {}
        self._sessions_lock = threading.Lock()
        self._disposed = False

        logger.info(
            "Application context ready (workspace=%s, provider=%s, tools=%d)",
            self.workspace_root,
            self.provider.name,
            len(self.gateway.get_tool_definitions()),
        )

    def _state_file(self, name: str) -> Optional[StateFile]:
        return StateFile(self.data_dir / name) if self.persist else None

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #
    def create_session(self, session_id: Optional[str] = None) -> Orchestrator:
        session_id = session_id or new_id("session")
        history = (
            JsonHistoryStore(self.data_dir / "history", session_id) if self.persist else None
        )
        orchestrator = Orchestrator(
            self.provider,
            self.gateway,
            workspace_root=self.workspace_root,
            session_id=session_id,
            security=self.security,
            history_store=history,
            max_turns=self.settings.MAX_TURNS,
            context_max_lines=self.settings.CONTEXT_MAX_LINES,
        )
        with self._sessions_lock:
            self.sessions[session_id] = orchestrator
        logger.info("Session %s created", session_id)
        return orchestrator

    def get_session(self, session_id: str) -> Optional[Orchestrator]:
        with self._sessions_lock:
            return self.sessions.get(session_id)

    def get_or_create_session(self, session_id: Optional[str] = None) -> Orchestrator:
        """Existing session *session_id*, or a new one (using that id when given)."""
        if session_id:
            existing = self.get_session(session_id)
            if existing is not None:
                return existing
        return self.create_session(session_id)

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #
    async def dispose(self) -> None:
        """Stop runs and approvals, then flush state writes before closing the provider.  Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        with self._sessions_lock:
            sessions = list(self.sessions.values())
        for orchestrator in sessions:
            orchestrator.cancel()
        self.approvals.dismiss_all()
        await self.security.flush()
        await self.provider.aclose()
        logger.info("Application context disposed")
