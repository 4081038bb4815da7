"""
Model provider interface for loomcode.

This module is the only place that *directly* calls a language model.  Everything else
(orchestrator, tools, security) stays model-agnostic.

We support two back-ends out of the box, both aimed at locally hosted models:

1. **Ollama** via its REST API (``/api/chat``, ``/api/tags``) using httpx.
2. **OpenAI-compatible servers** (llama.cpp, vLLM, LM Studio...) via the ``openai`` SDK pointed at a
   local ``base_url``.

Additional providers can be added by subclassing :class:`BaseProvider` and registering via
:func:`register_provider`.
"""

import json
import logging
import time
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
)

import httpx

from loomcode.config import settings
from loomcode.core.schema import (
    ChatMessage,
    ChatResponse,
    Role,
    ToolCall,
    Usage,
)
from loomcode.tools import ToolSchema

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """The model host could not be reached or returned something unusable."""


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_PROVIDER_REGISTRY: dict[str, Type["BaseProvider"]] = {}


def register_provider(name: str) -> Callable:
    """Decorator to register a provider class under *name*."""

    def wrapper(cls: Type["BaseProvider"]) -> Type["BaseProvider"]:
        _PROVIDER_REGISTRY[name] = cls
        cls.name = name
        return cls

    return wrapper


def available_providers() -> List[str]:
    return sorted(_PROVIDER_REGISTRY)


def load_provider(name: str | None = None, **kwargs: Any) -> "BaseProvider":
    """
    Factory that returns an instantiated provider.

    Fallback order:
    1. *name* arg
    2. ``settings.PROVIDER`` env/.env option
    3. default: ``"ollama"``
    """
    target = name or getattr(settings, "PROVIDER", "ollama")
    cls = _PROVIDER_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(
            f"Provider '{target}' is not registered. Available: {', '.join(available_providers())}"
        )
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseProvider(ABC):
    """Abstract provider: conversation in, one reply out."""

    name: ClassVar[str] = "base"

    # Common system prompt for all providers
    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are loomcode, an expert coding agent working inside the user's workspace.
You have access to the following tools:

{tools}

ALWAYS use these tools to perform actions.
When you need to use a tool, output a JSON block matching the tool schema.
Response format:
```json
{{
  "thought": "Reasoning...",
  "tool_calls": [
    {{
      "id": "unique_id",
      "name": "tool_name",
      "parameters": {{ ... }}
    }}
  ]
}}
```
Do not write normal text if you are using a tool. Output ONLY the JSON block.
When the work is done, answer the user in plain text without a JSON block.
"""

    @classmethod
    def build_system_prompt(cls, tool_schemas: Mapping[str, ToolSchema] | None = None) -> str:
        """System prompt listing every available tool and its parameters."""
        sections = []
        for tool_name, schema in (tool_schemas or {}).items():
            params = json.dumps(schema["parameters"])
            sections.append(f"## {tool_name}\n{schema['description']}\nParameters: {params}")
        return cls.SYSTEM_PROMPT.format(tools="\n\n".join(sections) or "(none)")

    @abstractmethod
    async def chat(self, messages: Sequence[ChatMessage]) -> ChatResponse:
        """Send the conversation and return the model's reply."""

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Names of the models the host can serve."""

    async def aclose(self) -> None:
        """Release network resources.  Safe to call more than once."""


def _content_as_text(message: ChatMessage) -> str:
    return message.text()


# ---------------------------------------------------------------------------
# Concrete providers
# ---------------------------------------------------------------------------
@register_provider("ollama")
class OllamaProvider(BaseProvider):
    """Ollama ``/api/chat`` with ``stream: false``."""

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or settings.MODEL
        self.base_url = (base_url or settings.OLLAMA_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.REQUEST_TIMEOUT
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def chat(self, messages: Sequence[ChatMessage]) -> ChatResponse:
        payload = {
            "model": self.model,
            "messages": [{"role": m.role.value, "content": _content_as_text(m)} for m in messages],
            "stream": False,
        }
        endpoint = f"{self.base_url}/api/chat"
        logger.info("Sending %d messages to %s (model %s)", len(messages), endpoint, self.model)
        start = time.monotonic()

        try:
            resp = await self._http().post("/api/chat", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Ollama at {endpoint} returned HTTP {e.response.status_code}: "
                f"{e.response.text[:200]}. Check that model '{self.model}' is pulled."
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(
                f"Cannot reach Ollama at {endpoint} ({e.__class__.__name__}: {e}). "
                "Is `ollama serve` running and is OLLAMA_URL correct?"
            ) from e
        except ValueError as e:
            raise ProviderError(f"Ollama at {endpoint} returned a non-JSON response") from e

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            raise ProviderError(f"Malformed response from Ollama at {endpoint}: no 'message' field")

        logger.debug(
            "Ollama replied in %.0f ms (prompt tokens: %s, generated: %s)",
            (time.monotonic() - start) * 1000,
            data.get("prompt_eval_count"),
            data.get("eval_count"),
        )
        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            prompt = int(data.get("prompt_eval_count") or 0)
            completion = int(data.get("eval_count") or 0)
            usage = Usage(
                prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
            )
        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=_native_tool_calls(message.get("tool_calls")),
            usage=usage,
        )

    async def list_models(self) -> List[str]:
        try:
            resp = await self._http().get("/api/tags")
            resp.raise_for_status()
            return [m["name"] for m in resp.json().get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error("Failed to list Ollama models at %s: %s", self.base_url, e)
            return []

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


@register_provider("openai-compatible")
class OpenAICompatibleProvider(BaseProvider):
    """Any server speaking the OpenAI chat-completions API (llama.cpp, vLLM, LM Studio...)."""

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        self.model = model or settings.MODEL
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.timeout = timeout if timeout is not None else settings.REQUEST_TIMEOUT
        self._client: Any = None

    def _sdk(self) -> Any:
        if self._client is None:
            import openai  # pylint: disable=import-outside-toplevel

            # Local servers ignore the key, but the SDK insists on one
            self._client = openai.AsyncOpenAI(
                base_url=self.base_url,
                api_key=self.api_key or "not-needed",
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def chat(self, messages: Sequence[ChatMessage]) -> ChatResponse:
        import openai  # pylint: disable=import-outside-toplevel

        endpoint = f"{self.base_url}/chat/completions"
        formatted = format_for_strict_alternation(messages)
        logger.info("Sending %d messages to %s (model %s)", len(formatted), endpoint, self.model)

        try:
            resp = await self._sdk().chat.completions.create(
                model=self.model,
                messages=formatted,
                temperature=0.2,
            )
        except openai.APIConnectionError as e:
            raise ProviderError(
                f"Cannot reach OpenAI-compatible server at {endpoint}: {e}. "
                "Is the server running and is OPENAI_BASE_URL correct?"
            ) from e
        except openai.APIStatusError as e:
            raise ProviderError(
                f"OpenAI-compatible server at {endpoint} returned HTTP {e.status_code}: {e.message}"
            ) from e

        if not resp.choices:
            raise ProviderError(f"Malformed response from {endpoint}: no choices")

        message = resp.choices[0].message
        tool_calls = None
        if getattr(message, "tool_calls", None):
            tool_calls = _native_tool_calls(
                [
                    {"id": tc.id, "function": {"name": tc.function.name, "arguments": tc.function.arguments}}
                    for tc in message.tool_calls
                ]
            )
        usage = None
        if resp.usage is not None:
            usage = Usage(
                prompt_tokens=resp.usage.prompt_tokens or 0,
                completion_tokens=resp.usage.completion_tokens or 0,
                total_tokens=resp.usage.total_tokens or 0,
            )
        return ChatResponse(content=message.content or "", tool_calls=tool_calls, usage=usage)

    async def list_models(self) -> List[str]:
        import openai  # pylint: disable=import-outside-toplevel

        try:
            page = await self._sdk().models.list()
        except openai.OpenAIError as e:
            logger.error("Failed to list models at %s: %s", self.base_url, e)
            return []
        return [m.id for m in page.data]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def format_for_strict_alternation(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    """
    Rewrite a conversation for servers that require ``system, user, assistant, user...``.

    Tool results become user messages prefixed with ``[Tool Result]:`` and consecutive messages
    with the same role are merged.
    """
    formatted: List[Dict[str, str]] = []
    system = [m.text() for m in messages if m.role == Role.SYSTEM]
    if system:
        formatted.append({"role": "system", "content": "\n\n".join(system)})

    for m in messages:
        if m.role == Role.SYSTEM:
            continue
        if m.role == Role.TOOL:
            role, content = "user", f"[Tool Result]: {m.text()}"
        else:
            role, content = m.role.value, m.text()

        if formatted and formatted[-1]["role"] == role and role != "system":
            formatted[-1]["content"] += "\n\n" + content
        else:
            formatted.append({"role": role, "content": content})
    return formatted


def _native_tool_calls(raw: Any) -> Optional[List[ToolCall]]:
    """Convert provider-native ``tool_calls`` (``{"function": {"name", "arguments"}}``)."""
    if not raw:
        return None
    calls = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        function = item.get("function") or {}
        name = function.get("name")
        if not name:
            continue
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Dropping unparsable arguments for native tool call '%s'", name)
                arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append(ToolCall(id=item.get("id") or "", name=name, parameters=arguments))
    return calls or None
