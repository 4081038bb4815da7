"""
Pydantic models for loomcode API requests and responses.
This module defines the request and response schemas used by the loomcode API; domain objects
(tasks, policies, audit entries, updates) are returned as their own models.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from loomcode.core.schema import AgentUpdate
from loomcode.security.models import ApprovalOutcome


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str


class SessionInfo(BaseModel):
    """State of one session."""

    session_id: str
    state: str
    phase: Optional[str] = None
    run_id: str
    messages: int
    last_error: Optional[str] = None


class MessageRequest(BaseModel):
    """Incoming user message."""

    message: str = Field(..., description="User message for the agent")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")
    context_files: List[str] = Field(
        default_factory=list, description="Files to attach, relative to the workspace root"
    )


class MessageResponse(BaseModel):
    """API response returned to the caller."""

    reply: str
    session_id: str
    run_id: str
    state: str


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class UpdatesResponse(BaseModel):
    """Updates of the session's current (or last) run after a given sequence number."""

    session_id: str
    run_id: str
    state: str
    updates: List[AgentUpdate]


class ToolInfo(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any]
    require_approval: bool = False


class PolicyPatch(BaseModel):
    """Partial update of a policy."""

    enabled: bool


class ApprovalAnswer(BaseModel):
    """Answer to a pending approval request."""

    outcome: ApprovalOutcome
