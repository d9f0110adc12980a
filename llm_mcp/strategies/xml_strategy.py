"""Delimited-text fallback for backends with no native tool calling.

Works with any model that can follow instructions::

    <tool_call>
    {"name": "read_file", "arguments": {"path": "/a.txt"}}
    </tool_call>
"""

from __future__ import annotations

import logging
import re
from typing import Any

from llm_mcp.models import Tool, ToolCallRequest, ToolCallResult
from llm_mcp.strategies.base import (
    CONTINUE_INSTRUCTION,
    ToolCallStrategy,
    coerce_arguments,
    extract_first_json_object,
    format_output,
    format_tools_as_schema,
    raw_text,
    safe_parse_json,
)

logger = logging.getLogger(__name__)

_TOOL_CALL_RE = re.compile(r"<tool_call>([\s\S]*?)</tool_call>")


class XMLToolCallStrategy(ToolCallStrategy):
    name = "xml"

    def supports_backend(self, backend_id: str) -> bool:
        return True

    def create_prompt(self, base_prompt: str, tools: list[Tool]) -> str:
        return (
            "You have access to the following tools:\n\n"
            f"{format_tools_as_schema(tools)}\n\n"
            "To use a tool, respond with the following XML format:\n"
            "<tool_call>\n"
            "{\n"
            '  "name": "tool_name",\n'
            '  "arguments": {\n'
            '    "arg1": "value1"\n'
            "  }\n"
            "}\n"
            "</tool_call>\n\n"
            "You can call multiple tools by including multiple <tool_call> blocks.\n\n"
            f"Original task:\n{base_prompt}"
        )

    def extract_tool_calls(self, raw_output: Any) -> list[ToolCallRequest]:
        calls: list[ToolCallRequest] = []
        for body in _TOOL_CALL_RE.findall(raw_text(raw_output)):
            body = body.strip()
            parsed = safe_parse_json(body)
            if parsed is None:
                parsed = extract_first_json_object(body)
            if not isinstance(parsed, dict) or not isinstance(parsed.get("name"), str) or not parsed["name"]:
                logger.debug("Skipping unparseable <tool_call> block: %s", body[:200])
                continue
            call_id = parsed.get("id")
            calls.append(ToolCallRequest(
                tool_name=parsed["name"],
                arguments=coerce_arguments(parsed.get("arguments")),
                id=call_id if isinstance(call_id, str) and call_id else self.new_call_id(),
            ))
        return calls

    def format_tool_results(self, results: list[ToolCallResult]) -> list[dict[str, Any]]:
        sections: list[str] = []
        for result in results:
            if result.ok:
                sections.append(
                    f"Tool: {result.tool_name}\n"
                    f"Call ID: {result.request_id}\n"
                    "Status: Success\n"
                    f"Result: {format_output(result)}\n"
                    f"Execution time: {result.execution_time_ms:.0f}ms"
                )
            else:
                sections.append(
                    f"Tool: {result.tool_name}\n"
                    f"Call ID: {result.request_id}\n"
                    "Status: Failed\n"
                    f"Error: {result.error}\n"
                    f"Execution time: {result.execution_time_ms:.0f}ms"
                )
        content = (
            "Assistant called tools with results:\n\n"
            + "\n\n---\n\n".join(sections)
            + "\n\n"
            + CONTINUE_INSTRUCTION
        )
        return [{"role": "user", "content": content}]
