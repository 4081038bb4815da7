"""
Tool contract for loomcode.

A tool is a :class:`ToolDefinition`: a unique name, a description, an optional pydantic model
describing its parameters, and an ``execute(params, context)`` callable returning a string (or an
awaitable of one).  Definitions are registered on a
:class:`~loomcode.agent.tool_executor.ToolGateway`; the same contract is used by built-in tools and
by dynamically discovered ones.

Plain functions can be turned into definitions with the :func:`tool` decorator, which derives the
parameter model from the function signature:

    @tool("echo")
    def echo(text: str) -> str:
        \"\"\"Echo the input text back to the caller.\"\"\"
        return text

A parameter named ``context`` receives the :class:`ToolContext` instead of a model argument.
"""

import inspect
import logging
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Mapping,
    Optional,
    Type,
    TypedDict,
    get_type_hints,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    create_model,
)

if TYPE_CHECKING:
    from loomcode.security.engine import SecurityEngine

logger = logging.getLogger(__name__)


class ToolInputError(ValueError):
    """Raised by a tool when the caller's arguments cannot be acted on."""


class ToolContext(BaseModel):
    """Execution context handed to every tool call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workspace_root: Path = Field(default_factory=Path.cwd)
    session_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    security: Optional[Any] = None  # SecurityEngine; Any keeps this module import-light

    def engine(self) -> "SecurityEngine":
        if self.security is None:
            raise RuntimeError("This tool requires a security engine in its context")
        return self.security


class ParameterInfo(TypedDict):
    """
    Information about a tool parameter.
    """

    type: str
    required: bool
    description: str


class ToolSchema(TypedDict):
    """
    Schema for a tool, as shown to the model.
    """

    description: str
    parameters: Mapping[str, ParameterInfo]


class ToolDefinition(BaseModel):
    """A registered capability the model can invoke by name."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    parameters: Optional[Type[BaseModel]] = None
    execute: Callable[[Dict[str, Any], ToolContext], Any]
    require_approval: bool = False

    def schema(self) -> ToolSchema:
        """Describe the tool's parameters from its pydantic model."""
        params: Dict[str, ParameterInfo] = {}
        if self.parameters is not None:
            json_schema = self.parameters.model_json_schema()
            required = set(json_schema.get("required", []))
            for name, prop in json_schema.get("properties", {}).items():
                params[name] = ParameterInfo(
                    type=_json_type(prop),
                    required=name in required,
                    description=prop.get("description", ""),
                )
        return {"description": self.description, "parameters": params}


def _json_type(prop: Mapping[str, Any]) -> str:
    if "type" in prop:
        if prop["type"] == "array" and "type" in prop.get("items", {}):
            return f"array[{prop['items']['type']}]"
        return str(prop["type"])
    if "enum" in prop:
        return "enum(" + "|".join(str(v) for v in prop["enum"]) + ")"
    if "anyOf" in prop:
        kinds = [_json_type(p) for p in prop["anyOf"] if p.get("type") != "null"]
        return "|".join(kinds) or "any"
    return "any"


def parameters_from_signature(name: str, fn: Callable[..., Any]) -> Type[BaseModel]:
    """Build a pydantic model from *fn*'s keyword parameters (``context`` excluded)."""
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn)
    fields: Dict[str, Any] = {}
    for param_name, param in sig.parameters.items():
        if param_name == "context" or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = type_hints.get(param_name, Any)
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param_name] = (annotation, default)
    return create_model(f"{name}_parameters", **fields)


def tool(
    name: str,
    description: Optional[str] = None,
    require_approval: bool = False,
) -> Callable[[Callable[..., Any]], ToolDefinition]:
    """
    Turn a function into a :class:`ToolDefinition`.

    Parameters
    ----------
    name: str
        The name of the tool, used by the model to call it.
    description: str, optional
        Defaults to the function's docstring.
    require_approval: bool
        Advertised to UIs listing tools; enforcement is the security engine's job.
    """

    def wrapper(fn: Callable[..., Any]) -> ToolDefinition:
        wants_context = "context" in inspect.signature(fn).parameters

        def call(params: Dict[str, Any], context: ToolContext) -> Any:
            if wants_context:
                return fn(**params, context=context)
            return fn(**params)

        if inspect.iscoroutinefunction(fn):

            async def execute(params: Dict[str, Any], context: ToolContext) -> Any:
                return await call(params, context)

        else:
            execute = call

        logger.debug("Defining tool '%s'", name)
        return ToolDefinition(
            name=name,
            description=description or inspect.getdoc(fn) or "",
            parameters=parameters_from_signature(name, fn),
            execute=execute,
            require_approval=require_approval,
        )

    return wrapper
