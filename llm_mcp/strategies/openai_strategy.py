"""OpenAI function-calling format.

Recognised shapes (as text, fenced json, or native structured output)::

    {"function_call": {"name": "read_file", "arguments": {"path": "/a.txt"}}}

    {"tool_calls": [
        {"id": "call_abc", "type": "function",
         "function": {"name": "read_file", "arguments": "{\\"path\\": \\"/a.txt\\"}"}}
    ]}
"""

from __future__ import annotations

import json as _json
import logging
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
)

logger = logging.getLogger(__name__)


class OpenAIToolCallStrategy(ToolCallStrategy):
    name = "openai"
    backend_ids = frozenset({"openai", "azure", "azure_ai", "openrouter", "text-completion-openai"})

    def create_prompt(self, base_prompt: str, tools: list[Tool]) -> str:
        described = "\n".join(
            f"- {t.name}: {t.description}\n  Parameters: {_json.dumps(t.input_schema)}"
            for t in tools
        )
        return (
            f"{base_prompt}\n\n"
            "You have access to the following functions:\n\n"
            f"{described}\n\n"
            "To call a function, respond with a JSON object in this format:\n"
            "{\n"
            '  "function_call": {\n'
            '    "name": "function_name",\n'
            '    "arguments": {"arg1": "value1"}\n'
            "  }\n"
            "}\n\n"
            "To call several functions at once, respond with:\n"
            '{"tool_calls": [{"id": "call_1", "type": "function", '
            '"function": {"name": "function_name", "arguments": {"arg1": "value1"}}}]}'
        )

    def _from_tool_call(self, tc: Any) -> ToolCallRequest | None:
        fn = get_field(tc, "function")
        if fn is None:
            return None
        tc_type = get_field(tc, "type", "function")
        if tc_type not in (None, "function"):
            return None
        name = get_field(fn, "name")
        if not isinstance(name, str) or not name:
            return None
        tc_id = get_field(tc, "id")
        return ToolCallRequest(
            tool_name=name,
            arguments=coerce_arguments(get_field(fn, "arguments")),
            id=tc_id if isinstance(tc_id, str) and tc_id else self.new_call_id(),
        )

    def _from_payload(self, payload: Any) -> list[ToolCallRequest]:
        if not isinstance(payload, dict):
            return []
        calls: list[ToolCallRequest] = []
        fc = payload.get("function_call")
        if isinstance(fc, dict) and isinstance(fc.get("name"), str) and fc["name"]:
            calls.append(ToolCallRequest(
                tool_name=fc["name"],
                arguments=coerce_arguments(fc.get("arguments")),
                id=self.new_call_id(),
            ))
        tool_calls = payload.get("tool_calls")
        if isinstance(tool_calls, list):
            for tc in tool_calls:
                request = self._from_tool_call(tc)
                if request is not None:
                    calls.append(request)
        return calls

    def extract_tool_calls(self, raw_output: Any) -> list[ToolCallRequest]:
        message = _message_of(raw_output)
        native = get_field(message, "tool_calls") if not isinstance(message, str) else None
        if isinstance(native, list) and native:
            calls = [r for r in (self._from_tool_call(tc) for tc in native) if r is not None]
            if calls:
                return calls

        calls = []
        for payload in json_candidates(raw_text(raw_output)):
            calls.extend(self._from_payload(payload))
        if calls:
            logger.debug("Extracted %d function call(s)", len(calls))
        return calls

    def assistant_message(self, raw_output: Any) -> dict[str, Any]:
        # native tool calls are replayed as text; continuation messages are plain user turns
        text = raw_text(raw_output)
        message = _message_of(raw_output)
        native = get_field(message, "tool_calls") if not isinstance(message, str) else None
        if isinstance(native, list) and native and not text.strip():
            calls = [
                {"id": r.id, "type": "function", "function": {"name": r.tool_name, "arguments": r.arguments}}
                for r in self.extract_tool_calls(raw_output)
            ]
            text = _json.dumps({"tool_calls": calls})
        return {"role": "assistant", "content": text}

    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict[str, Any]]:
        blocks: list[str] = []
        for result in results:
            if result.ok:
                blocks.append(
                    f"Function {result.tool_name} (call {result.request_id}) returned:\n"
                    f"{format_output(result)}"
                )
            else:
                blocks.append(
                    f"Function {result.tool_name} (call {result.request_id}) failed with error:\n"
                    f"{result.error}"
                )
        content = (
            "Function results:\n\n" + "\n\n".join(blocks) + "\n\n" + CONTINUE_INSTRUCTION
        )
        return [{"role": "user", "content": content}]
