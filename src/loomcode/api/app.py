"""
Core API backend for loomcode.

This module exposes the agent control core through a RESTful API used by editor panels and other
frontends:
- **GET /health**  - liveness check.
- **POST /sessions**, **GET /sessions** - create / list conversation sessions.
- **POST /agent**   - run the agent: {"message": "...", "session_id": "...", "context_files": [...]}
- **POST /sessions/{id}/cancel** - cancel the session's active run.
- **GET /sessions/{id}/updates?after=N** - poll the run's agent updates (replayable).
- **GET /tools**, **GET /models** - registered tools and models offered by the provider.
- **GET /tasks**, **GET /tasks/{id}** - tracked tasks.
- **/security/policies**, **GET /security/audit** - policy management and audit log.
- **GET /approvals**, **POST /approvals/{id}** - pending permission prompts and their answers.
"""

import logging
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    List,
    Optional,
)

from fastapi import (
    FastAPI,
    HTTPException,
    Request,
)
from fastapi.middleware.cors import CORSMiddleware

from loomcode.agent.model_provider import ProviderError
from loomcode.agent.orchestrator import (
    Orchestrator,
    OrchestratorBusyError,
)
from loomcode.api.models import (
    ApprovalAnswer,
    CancelResponse,
    MessageRequest,
    MessageResponse,
    PolicyPatch,
    SessionInfo,
    SessionResponse,
    ToolInfo,
    UpdatesResponse,
)
from loomcode.app_context import AppContext
from loomcode.common import (
    AnsiColors,
    colored_print,
)
from loomcode.config import settings
from loomcode.security.models import (
    AuditCategory,
    AuditEntry,
    PermissionRequest,
    RiskLevel,
    SecurityPolicy,
)
from loomcode.tasks.models import Task

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def _ctx(request: Request) -> AppContext:
    return request.app.state.context


def _session_or_404(request: Request, session_id: str) -> Orchestrator:
    orchestrator = _ctx(request).get_session(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return orchestrator


def _session_info(orchestrator: Orchestrator) -> SessionInfo:
    return SessionInfo(
        session_id=orchestrator.session_id,
        state=orchestrator.state.value,
        phase=orchestrator.phase.value if orchestrator.phase else None,
        run_id=orchestrator.run_id,
        messages=len(orchestrator.messages),
        last_error=orchestrator.last_error,
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters
    ----------
    context:
        Application context to serve.  When omitted one is built from ``settings`` at startup.
        Either way the context is disposed when the application shuts down.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "context", None) is None:
            app.state.context = AppContext()
        yield
        await app.state.context.dispose()

    app = FastAPI(
        title="loomcode API",
        version="0.1.0",
        description="Local coding agent: orchestration, tools, security and tasks",
        lifespan=lifespan,
    )
    app.state.context = context

    # Add CORS middleware to allow requests from local editor panels
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[f"http://localhost:{settings.API_PORT}", "vscode-webview://*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    @app.get("/health", summary="Health check")
    async def health() -> dict[str, str]:
        """Return a simple liveness payload."""
        return {"status": "ok"}

    @app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
    async def create_session(request: Request) -> SessionResponse:
        """Create a new conversation session."""
        orchestrator = _ctx(request).create_session()
        return SessionResponse(session_id=orchestrator.session_id)

    @app.get("/sessions", response_model=List[SessionInfo], summary="List active sessions")
    async def list_sessions(request: Request) -> List[SessionInfo]:
        return [_session_info(o) for o in list(_ctx(request).sessions.values())]

    @app.post("/agent", response_model=MessageResponse, summary="Process a message")
    async def agent_endpoint(req: MessageRequest, request: Request) -> MessageResponse:
        """Run the agent on a user message and return its final answer."""
        orchestrator = _ctx(request).get_or_create_session(req.session_id)
        logger.debug("Message for session %s: %s", orchestrator.session_id, req.message)
        try:
            reply = await orchestrator.chat(req.message, context_files=req.context_files)
        except OrchestratorBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ProviderError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        return MessageResponse(
            reply=reply,
            session_id=orchestrator.session_id,
            run_id=orchestrator.run_id,
            state=orchestrator.state.value,
        )

    @app.post(
        "/sessions/{session_id}/cancel", response_model=CancelResponse, summary="Cancel a run"
    )
    async def cancel_session(session_id: str, request: Request) -> CancelResponse:
        orchestrator = _session_or_404(request, session_id)
        return CancelResponse(session_id=session_id, cancelled=orchestrator.cancel())

    @app.get(
        "/sessions/{session_id}/updates",
        response_model=UpdatesResponse,
        summary="Agent updates of the current run",
    )
    async def session_updates(session_id: str, request: Request, after: int = 0) -> UpdatesResponse:
        """Updates with a sequence number greater than *after*; poll with the last seen ``seq``."""
        orchestrator = _session_or_404(request, session_id)
        return UpdatesResponse(
            session_id=session_id,
            run_id=orchestrator.run_id,
            state=orchestrator.state.value,
            updates=orchestrator.updates_since(after),
        )

    @app.get("/tools", response_model=List[ToolInfo], summary="Registered tools")
    async def list_tools(request: Request) -> List[ToolInfo]:
        return [
            ToolInfo(
                name=t.name,
                description=t.description,
                parameters=dict(t.schema()["parameters"]),
                require_approval=t.require_approval,
            )
            for t in _ctx(request).gateway.get_tool_definitions()
        ]

    @app.get("/models", response_model=List[str], summary="Models offered by the provider")
    async def list_models(request: Request) -> List[str]:
        return await _ctx(request).provider.list_models()

    @app.get("/tasks", response_model=List[Task], summary="Tracked tasks, newest first")
    async def list_tasks(request: Request) -> List[Task]:
        return _ctx(request).tasks.list_tasks()

    @app.get("/tasks/{task_id}", response_model=Task, summary="One task")
    async def get_task(task_id: str, request: Request) -> Task:
        task = _ctx(request).tasks.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return task

    @app.get("/security/policies", response_model=List[SecurityPolicy], summary="Policies")
    async def list_policies(request: Request) -> List[SecurityPolicy]:
        return _ctx(request).security.get_policies()

    @app.post(
        "/security/policies",
        response_model=SecurityPolicy,
        status_code=201,
        summary="Add or replace a policy",
    )
    async def add_policy(policy: SecurityPolicy, request: Request) -> SecurityPolicy:
        return _ctx(request).security.add_policy(policy)

    @app.delete("/security/policies/{policy_id}", summary="Remove a policy")
    async def remove_policy(policy_id: str, request: Request) -> dict[str, str]:
        if not _ctx(request).security.remove_policy(policy_id):
            raise HTTPException(status_code=404, detail=f"Policy {policy_id} not found")
        return {"removed": policy_id}

    @app.patch(
        "/security/policies/{policy_id}",
        response_model=SecurityPolicy,
        summary="Enable or disable a policy",
    )
    async def patch_policy(policy_id: str, patch: PolicyPatch, request: Request) -> SecurityPolicy:
        security = _ctx(request).security
        policy = security.get_policy(policy_id) if security.enable_policy(policy_id, patch.enabled) else None
        if policy is None:
            raise HTTPException(status_code=404, detail=f"Policy {policy_id} not found")
        return policy

    @app.get("/security/audit", response_model=List[AuditEntry], summary="Audit log, newest first")
    async def audit_log(
        request: Request,
        category: Optional[AuditCategory] = None,
        risk: Optional[RiskLevel] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        return _ctx(request).security.get_audit_log(category=category, risk=risk)[:limit]

    @app.get("/approvals", response_model=List[PermissionRequest], summary="Pending approvals")
    async def pending_approvals(request: Request) -> List[PermissionRequest]:
        return _ctx(request).approvals.list_pending()

    @app.post("/approvals/{request_id}", summary="Answer a pending approval")
    async def answer_approval(
        request_id: str, answer: ApprovalAnswer, request: Request
    ) -> dict[str, str]:
        if not _ctx(request).approvals.resolve(request_id, answer.outcome):
            raise HTTPException(status_code=404, detail=f"No pending approval {request_id}")
        return {"request_id": request_id, "outcome": answer.outcome.value}

    @app.get("/", summary="API root")
    async def root() -> dict[str, str]:
        """Return a simple welcome message."""
        return {"message": "Welcome to the loomcode API! Use /docs for API documentation."}

    return app


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "127.0.0.1", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting the application built by :func:`create_app`.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.  Defaults to loopback: the agent can edit files and run
        commands.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting loomcode API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY"}))

    colored_print(f"🧵 loomcode API is running at http://{host}:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://{host}:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "loomcode.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m loomcode.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
