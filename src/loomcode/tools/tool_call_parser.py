"""
Extracts tool calls from a model reply written as text.

Models without native tool calling are asked to answer with a JSON block like:

    ```json
    {"thought": "...", "tool_calls": [{"id": "...", "name": "<tool>", "parameters": { ... }}]}
    ```

:func:`parse_model_reply` finds that block (fenced or bare), validates it and returns the thought,
the calls and, when there are no calls, the answer meant for the user.  Anything that does not parse
is treated as a plain answer; a reply is never rejected.
"""

import json
import logging
import re
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

from loomcode.core.schema import ToolCall

logger = logging.getLogger(__name__)


class ParsedReply(BaseModel):
    """What a text reply amounts to."""

    thought: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    answer: Optional[str] = None


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
_FENCED = re.compile(r"```(?:json)?\s*\n?(.+?)```", re.DOTALL)


def _find_matching_brace(s: str, i: int) -> int:
    """Given s[i] opening an object or array, return the index just past its close (or -1)."""
    depth = 0
    in_string = False
    escaped = False
    for j in range(i, len(s)):
        ch = s[j]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return j + 1
    return -1


def extract_json_block(content: str) -> Optional[str]:
    """
    Return the JSON object embedded in *content*, if any.

    A fenced ```json block wins; otherwise the first balanced ``{...}`` in the text is used, or the
    whole text when it is a bare ``[...]`` list.
    Control characters other than whitespace are stripped.
    """
    match = _FENCED.search(content)
    candidate = match.group(1).strip() if match else content
    candidate = "".join(ch for ch in candidate if ch >= " " or ch in "\n\r\t")

    opener = "[" if candidate.lstrip().startswith("[") else "{"
    start = candidate.find(opener)
    if start < 0:
        return None
    end = _find_matching_brace(candidate, start)
    if end < 0:
        return None
    return candidate[start:end]


def _coerce_parameters(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
    return {}


def _to_tool_call(raw: Any) -> Optional[ToolCall]:
    if not isinstance(raw, dict):
        return None
    function = raw.get("function") if isinstance(raw.get("function"), dict) else {}
    name = raw.get("name") or raw.get("tool") or function.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    params = raw.get("parameters", raw.get("arguments", raw.get("args", function.get("arguments"))))
    call_id = raw.get("id")
    return ToolCall(
        id=str(call_id) if call_id else "",
        name=name.strip(),
        parameters=_coerce_parameters(params),
    )


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def parse_model_reply(content: str) -> ParsedReply:
    """
    Best-effort interpretation of a model reply.

    Accepts ``{"thought", "tool_calls": [...]}``, a bare list of calls, or the single-call shape
    ``{"tool": "<name>", "args": {...}}``.  Calls without a usable name are dropped.
    """
    block = extract_json_block(content)
    if block is None:
        return ParsedReply(answer=content)

    try:
        parsed = json.loads(block)
    except json.JSONDecodeError as exc:
        logger.debug("Reply contains a JSON-like block that does not parse: %s", exc)
        return ParsedReply(answer=content)

    if isinstance(parsed, list):
        calls = [c for c in (_to_tool_call(item) for item in parsed) if c is not None]
        return ParsedReply(tool_calls=calls) if calls else ParsedReply(answer=content)
    if not isinstance(parsed, dict):
        return ParsedReply(answer=content)

    thought = parsed.get("thought")
    thought = thought if isinstance(thought, str) and thought.strip() else None

    raw_calls = parsed.get("tool_calls")
    if raw_calls is None and ("tool" in parsed or "name" in parsed):
        raw_calls = [parsed]
    if isinstance(raw_calls, dict):
        raw_calls = [raw_calls]

    calls = [c for c in (_to_tool_call(item) for item in raw_calls or []) if c is not None]
    if calls:
        return ParsedReply(thought=thought, tool_calls=calls)

    answer = parsed.get("answer")
    if not isinstance(answer, str) or not answer.strip():
        answer = thought or content
    return ParsedReply(thought=thought, answer=answer)
