"""Base interface for tool-call wire formats.

A strategy owns everything backend-specific about tool calling: how the tool
catalog is described in the prompt, how tool calls are recognised in the
backend's raw output, and how results are fed back. The orchestrator only
ever talks to this interface.

Raw backend output may be a plain string, a chat-message dict, a litellm
``ModelResponse`` / ``Message`` or anything else exposing ``content``;
:func:`raw_text` normalizes all of them.
"""

from __future__ import annotations

import json as _json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from llm_mcp.models import Tool, ToolCallRequest, ToolCallResult, new_call_id

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

CONTINUE_INSTRUCTION = (
    "Use these results to continue the task. If you still need information, "
    "call another tool in the same format; otherwise reply with your final "
    "answer as plain text and no tool calls."
)


# ---------------------------------------------------------------------------
# Raw output helpers
# ---------------------------------------------------------------------------


def _message_of(raw: Any) -> Any:
    """Unwrap a litellm/OpenAI ``ModelResponse`` to its first message."""
    choices = getattr(raw, "choices", None)
    if isinstance(choices, list) and choices:
        return getattr(choices[0], "message", choices[0])
    return raw


def _blocks_text(blocks: list[Any]) -> str:
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, str):
            parts.append(block)
            continue
        btype = block.get("type") if isinstance(block, dict) else getattr(block, "type", None)
        text = block.get("text") if isinstance(block, dict) else getattr(block, "text", None)
        if btype in (None, "text") and isinstance(text, str):
            parts.append(text)
    return "\n".join(parts)


def raw_text(raw: Any) -> str:
    """Best-effort text of any raw backend output."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    raw = _message_of(raw)
    if isinstance(raw, list):
        return _blocks_text(raw)
    content = raw.get("content") if isinstance(raw, dict) else getattr(raw, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _blocks_text(content)
    if isinstance(raw, dict):
        return _json.dumps(raw, default=str)
    return "" if content is None else str(content)


def safe_parse_json(text: str) -> Any:
    """``json.loads`` that returns None instead of raising."""
    try:
        return _json.loads(text)
    except (TypeError, ValueError):
        return None


def extract_first_json_object(text: str) -> dict[str, Any] | None:
    """Extract the first valid JSON object from text that may have trailing garbage."""
    decoder = _json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except _json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def extract_json_objects(text: str) -> list[dict[str, Any]]:
    """Every top-level JSON object embedded in text, in order.

    Objects nested inside a decoded object are not reported separately.
    """
    decoder = _json.JSONDecoder()
    found: list[dict[str, Any]] = []
    start = text.find("{")
    while start != -1:
        try:
            obj, end = decoder.raw_decode(text, start)
        except _json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            found.append(obj)
        start = text.find("{", end)
    return found


def json_candidates(text: str) -> list[Any]:
    """JSON payloads a model may have emitted, most explicit first.

    Whole-text JSON wins; then fenced ```json blocks; then every bare
    object embedded in prose.
    """
    stripped = text.strip()
    if not stripped:
        return []
    whole = safe_parse_json(stripped)
    if whole is not None:
        return [whole]
    fenced = [p for p in (safe_parse_json(m) for m in _FENCED_JSON_RE.findall(text)) if p is not None]
    if fenced:
        return fenced
    bare = extract_json_objects(text)
    if len(bare) > 1:
        logger.debug("Found %d bare JSON objects in model output", len(bare))
    return bare


def coerce_arguments(value: Any) -> dict[str, Any]:
    """Arguments may arrive as an object or as a JSON string."""
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = safe_parse_json(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a dict or an attribute-style object."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def format_tools_as_schema(tools: list[Tool]) -> str:
    return _json.dumps([t.to_schema() for t in tools], indent=2)


def format_output(result: ToolCallResult) -> str:
    """Output text as fed back to the model. JSON outputs are pretty-printed."""
    output = result.output or ""
    parsed = safe_parse_json(output)
    if isinstance(parsed, (dict, list)):
        return _json.dumps(parsed, indent=2)
    return output


# ---------------------------------------------------------------------------
# Strategy interface
# ---------------------------------------------------------------------------


class ToolCallStrategy(ABC):
    """Strategy for one backend family's tool-call format."""

    name: ClassVar[str] = ""
    backend_ids: ClassVar[frozenset[str]] = frozenset()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def supports_backend(self, backend_id: str) -> bool:
        return backend_id.lower() in self.backend_ids

    @abstractmethod
    def create_prompt(self, base_prompt: str, tools: list[Tool]) -> str:
        """Return ``base_prompt`` augmented with the tool catalog."""

    @abstractmethod
    def extract_tool_calls(self, raw_output: Any) -> list[ToolCallRequest]:
        """Parse tool calls from raw backend output. Empty means done."""

    @abstractmethod
    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict[str, Any]]:
        """Continuation messages carrying ``results`` back to the backend."""

    def assistant_message(self, raw_output: Any) -> dict[str, Any]:
        """How the backend's own turn is recorded in the conversation."""
        return {"role": "assistant", "content": raw_text(raw_output)}

    @staticmethod
    def new_call_id() -> str:
        return new_call_id()
