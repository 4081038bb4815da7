"""
Schema definitions for provider <-> orchestrator <-> tool messages.

These data models serve as the contract between the model provider, the orchestration loop, and
individual tools.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

import json
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from loomcode.common import now_ms


class Role(str, Enum):
    """Message roles understood by every provider."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A call that the model wants the orchestrator to execute."""

    id: str = Field("", description="Correlates the call with its ToolResult")
    name: str = Field(..., description="Registered tool name")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Arguments for the tool")


class ToolResult(BaseModel):
    """Outcome of exactly one ToolCall."""

    role: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    status: Literal["success", "error"]
    output: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


class ChatMessage(BaseModel):
    """One entry of the conversation sent to the model."""

    role: Role
    content: Union[str, Dict[str, Any], List[Any]]
    tool_calls: Optional[List[ToolCall]] = None

    def text(self) -> str:
        """Content as text; structured content is serialized as JSON."""
        return self.content if isinstance(self.content, str) else json.dumps(self.content)


class Usage(BaseModel):
    """Token accounting reported by the provider, when it has any."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(BaseModel):
    """What a provider returns for one ``chat`` call."""

    content: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    usage: Optional[Usage] = None


# ---------------------------------------------------------------------------
# Agent updates (streamed to observers, in generation order)
# ---------------------------------------------------------------------------
class _UpdateBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int = 0
    timestamp: int = Field(default_factory=now_ms)


class ReasoningStep(_UpdateBase):
    """A thought the model shared before acting."""

    type: Literal["reasoning_step"] = "reasoning_step"
    message: str


class ToolCallUpdate(_UpdateBase):
    """The orchestrator is about to run a tool."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolResultUpdate(_UpdateBase):
    """A tool finished (successfully or not)."""

    type: Literal["tool_result"] = "tool_result"
    id: str
    tool: str
    success: bool
    result: ToolResult


class StatusUpdate(_UpdateBase):
    """Run-level progress: thinking, completed, failed."""

    type: Literal["status"] = "status"
    state: str
    message: str = ""


AgentUpdate = Annotated[
    Union[ReasoningStep, ToolCallUpdate, ToolResultUpdate, StatusUpdate],
    Field(discriminator="type"),
]
