"""Anthropic content-block format.

Tool calls are ``tool_use`` blocks, either alone, inside a ``content``
array, in a fenced json block, or wrapped in ``<tool_use>`` tags::

    {"content": [
        {"type": "tool_use", "id": "toolu_01A0", "name": "read_file",
         "input": {"path": "/a.txt"}}
    ]}
"""

from __future__ import annotations

import json as _json
import logging
import re
from typing import Any

from llm_mcp.models import Tool, ToolCallRequest, ToolCallResult
from llm_mcp.strategies.base import (
    CONTINUE_INSTRUCTION,
    ToolCallStrategy,
    _message_of,
    coerce_arguments,
    format_output,
    get_field,
    json_candidates,
    raw_text,
    safe_parse_json,
)

logger = logging.getLogger(__name__)

_TOOL_USE_TAG_RE = re.compile(r"<tool_use>([\s\S]*?)</tool_use>")


class AnthropicToolCallStrategy(ToolCallStrategy):
    name = "anthropic"
    backend_ids = frozenset({"anthropic", "claude"})

    def create_prompt(self, base_prompt: str, tools: list[Tool]) -> str:
        described = "\n".join(
            f"- {t.name}: {t.description}\n  Input schema: {_json.dumps(t.input_schema)}"
            for t in tools
        )
        return (
            f"{base_prompt}\n\n"
            "You have access to the following tools:\n\n"
            f"{described}\n\n"
            'To use a tool, respond with a JSON object containing a "tool_use" block:\n'
            "{\n"
            '  "type": "tool_use",\n'
            '  "id": "toolu_1",\n'
            '  "name": "tool_name",\n'
            '  "input": {"arg1": "value1"}\n'
            "}\n\n"
            "You can use multiple tools by including multiple tool_use blocks, "
            'e.g. {"content": [<tool_use block>, <tool_use block>]}.'
        )

    def _from_block(self, block: Any) -> ToolCallRequest | None:
        if get_field(block, "type") != "tool_use":
            return None
        name = get_field(block, "name")
        if not isinstance(name, str) or not name:
            return None
        block_id = get_field(block, "id")
        return ToolCallRequest(
            tool_name=name,
            arguments=coerce_arguments(get_field(block, "input")),
            id=block_id if isinstance(block_id, str) and block_id else self.new_call_id(),
        )

    def _from_payload(self, payload: Any) -> list[ToolCallRequest]:
        if isinstance(payload, list):
            blocks = payload
        elif isinstance(payload, dict):
            content = payload.get("content")
            blocks = content if isinstance(content, list) else [payload]
        else:
            return []
        return [r for r in (self._from_block(b) for b in blocks) if r is not None]

    def extract_tool_calls(self, raw_output: Any) -> list[ToolCallRequest]:
        message = _message_of(raw_output)
        if not isinstance(message, str):
            native = message if isinstance(message, list) else get_field(message, "content")
            if isinstance(native, list):
                calls = self._from_payload(native)
                if calls:
                    return calls

        text = raw_text(raw_output)
        calls: list[ToolCallRequest] = []
        for payload in json_candidates(text):
            calls.extend(self._from_payload(payload))
        if not calls:
            for match in _TOOL_USE_TAG_RE.findall(text):
                parsed = safe_parse_json(match.strip())
                if isinstance(parsed, dict):
                    parsed.setdefault("type", "tool_use")
                    request = self._from_block(parsed)
                    if request is not None:
                        calls.append(request)
        if calls:
            logger.debug("Extracted %d tool_use block(s)", len(calls))
        return calls

    def assistant_message(self, raw_output: Any) -> dict[str, Any]:
        message = _message_of(raw_output)
        blocks = message if isinstance(message, list) else get_field(message, "content")
        if isinstance(blocks, list) and any(get_field(b, "type") == "tool_use" for b in blocks):
            serializable = [
                b if isinstance(b, dict) else {
                    k: get_field(b, k) for k in ("type", "id", "name", "input", "text")
                    if get_field(b, k) is not None
                }
                for b in blocks
            ]
            return {"role": "assistant", "content": _json.dumps({"content": serializable}, default=str)}
        return super().assistant_message(raw_output)

    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict[str, Any]]:
        blocks: list[str] = []
        for result in results:
            body: dict[str, Any] = {"tool_use_id": result.request_id, "tool_name": result.tool_name}
            if result.ok:
                parsed = safe_parse_json(result.output or "")
                body["result"] = parsed if isinstance(parsed, (dict, list)) else format_output(result)
            else:
                body["is_error"] = True
                body["error"] = result.error
            blocks.append(f"<tool_result>\n{_json.dumps(body, indent=2)}\n</tool_result>")
        content = (
            "Assistant used tools with these results:\n\n"
            + "\n\n".join(blocks)
            + "\n\n"
            + CONTINUE_INSTRUCTION
        )
        return [{"role": "user", "content": content}]
