"""Tests for the tool-calling loop. All mocked (no real MCP servers or LLM calls).

Tests cover:
- plain answer, single and multi-call turns, result feedback
- tool budget and max_turns stops
- allow-list enforcement without contacting servers
- concurrent execution with results correlated by id
- per-tool deadlines and the conversation deadline
- backend failure after teardown, require_tools, disabled config
"""

# mock-ok: MCP servers require subprocess lifecycle; unit tests must mock

from __future__ import annotations

import asyncio
import functools
import json
import time
from typing import Any

import pytest

from llm_mcp.backends import CallableBackend
from llm_mcp.config import ToolServerConfig, load_mcp_config
from llm_mcp.errors import (
    BackendError,
    BackendTransientError,
    NoToolsAvailableError,
    OperationCancelledError,
    OperationTimeoutError,
    ToolExecutionError,
    ToolServerConnectionError,
)
from llm_mcp.models import ConversationState, Tool, ToolCallRequest
from llm_mcp.orchestrator import OrchestratorState, ToolOrchestrator, run_with_tools
from llm_mcp.session import ToolSession
from llm_mcp.strategies import OpenAIToolCallStrategy, XMLToolCallStrategy
from llm_mcp.timeouts import CancellationSignal


class FakeServer:
    """In-process tool server: read_file, list_directory, slow, fail."""

    instances: list["FakeServer"] = []

    def __init__(self, config: ToolServerConfig, **_kwargs: Any) -> None:
        self.config = config
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.disconnects = 0
        self.active = 0
        self.peak = 0
        FakeServer.instances.append(self)

    @property
    def name(self) -> str:
        return self.config.name

    async def connect(self, signal: CancellationSignal | None = None) -> None:
        if self.name.startswith("broken"):
            raise ToolServerConnectionError(self.name, "spawn failed")

    async def list_tools(self, signal: CancellationSignal | None = None) -> list[Tool]:
        return [Tool(n, server=self.name) for n in ("read_file", "list_directory", "slow", "fail")]

    async def call_tool(
        self, name: str, arguments: dict[str, Any], signal: CancellationSignal | None = None,
    ) -> str:
        self.calls.append((name, arguments))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if name == "slow":
                await asyncio.sleep(arguments.get("seconds", 5))
                return "slow done"
            if name == "fail":
                raise ToolExecutionError(name, "disk on fire", server=self.name)
            await asyncio.sleep(0.01)
            return f"{name}:{arguments.get('path', '')}"
        finally:
            self.active -= 1

    async def disconnect(self) -> None:
        self.disconnects += 1


class ScriptedBackend(CallableBackend):
    """Returns canned outputs in order and records every payload."""

    def __init__(self, *outputs: Any, backend_id: str = "generic") -> None:
        self.outputs = list(outputs)
        self.payloads: list[Any] = []
        super().__init__(self._next, backend_id=backend_id)

    def _next(self, payload: Any) -> Any:
        self.payloads.append(payload)
        out = self.outputs.pop(0)
        if isinstance(out, BaseException):
            raise out
        return out


def _call(name: str, call_id: str | None = None, **arguments: Any) -> str:
    id_part = f', "id": "{call_id}"' if call_id else ""
    return f'<tool_call>{{"name": "{name}", "arguments": {json.dumps(arguments)}{id_part}}}</tool_call>'


def _cfg(*names: str, **extra: Any):
    return load_mcp_config({
        "enabled": True,
        "servers": [{"name": n, "command": "srv"} for n in (names or ("fs",))],
        **extra,
    })


def _orchestrator(config, backend, **kwargs: Any) -> ToolOrchestrator:
    return ToolOrchestrator(
        config, backend,
        session_factory=functools.partial(ToolSession, connection_factory=FakeServer),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _reset_servers() -> None:
    FakeServer.instances = []


@pytest.mark.asyncio
class TestLoop:
    async def test_plain_answer(self) -> None:
        backend = ScriptedBackend("Paris")
        result = await _orchestrator(_cfg(), backend).run("Capital of France?")
        assert result.final_text == "Paris"
        assert result.turns == 1
        assert result.tool_trace == []
        assert result.warnings == []
        assert result.strategy == "xml"
        assert result.servers == ["fs"]
        assert result.state == OrchestratorState.CLOSED.value
        assert "Original task:\nCapital of France?" in backend.payloads[0]
        assert FakeServer.instances[0].disconnects == 1

    async def test_tool_call_then_answer(self) -> None:
        backend = ScriptedBackend(_call("read_file", "c1", path="/a"), "The file says hi.")
        result = await _orchestrator(_cfg(), backend).run("Read /a")
        assert result.final_text == "The file says hi."
        assert result.turns == 2
        assert [(r.request_id, r.output) for r in result.tool_trace] == [("c1", "read_file:/a")]
        assert result.tool_trace[0].server == "fs"

        messages = backend.payloads[1]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[1]["content"] == _call("read_file", "c1", path="/a")
        assert "Call ID: c1\nStatus: Success" in messages[2]["content"]

    async def test_multi_turn(self) -> None:
        backend = ScriptedBackend(
            _call("list_directory", path="/"),
            _call("read_file", path="/b"),
            "done",
        )
        result = await _orchestrator(_cfg(), backend).run("explore")
        assert result.turns == 3
        assert [r.tool_name for r in result.tool_trace] == ["list_directory", "read_file"]
        assert len(backend.payloads[2]) == 5

    async def test_failed_tool_is_fed_back_not_raised(self) -> None:
        backend = ScriptedBackend(_call("fail", "c1"), "recovered")
        result = await _orchestrator(_cfg(), backend).run("try")
        assert result.final_text == "recovered"
        assert result.tool_trace[0].error == "disk on fire"
        assert result.tool_trace[0].error_type == "ToolExecutionError"
        assert result.warnings == ["Tool 'fail' (call c1) failed: ToolExecutionError: disk on fire"]
        assert "Status: Failed\nError: disk on fire" in backend.payloads[1][2]["content"]


@pytest.mark.asyncio
class TestLimits:
    async def test_budget_rejects_whole_batch(self) -> None:
        raw = _call("read_file", path="/a") + _call("read_file", path="/b")
        backend = ScriptedBackend(raw)
        result = await _orchestrator(_cfg(maxToolCalls=1), backend).run("read both")
        assert FakeServer.instances[0].calls == []
        assert result.tool_trace == []
        assert result.final_text == raw
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("Tool budget exceeded")
        assert len(backend.payloads) == 1

    async def test_zero_budget(self) -> None:
        backend = ScriptedBackend(_call("read_file", path="/a"))
        result = await _orchestrator(_cfg(maxToolCalls=0), backend).run("read")
        assert result.warnings[0].startswith("Tool budget exceeded")
        assert FakeServer.instances[0].calls == []

    async def test_budget_counts_across_turns(self) -> None:
        backend = ScriptedBackend(
            _call("read_file", path="/a"),
            _call("read_file", path="/b") + _call("read_file", path="/c"),
        )
        result = await _orchestrator(_cfg(maxToolCalls=2), backend).run("read")
        assert len(result.tool_trace) == 1
        assert result.warnings[0].startswith("Tool budget exceeded")

    async def test_max_turns(self) -> None:
        backend = ScriptedBackend(_call("read_file", path="/a"))
        result = await _orchestrator(_cfg(maxTurns=1), backend).run("read")
        assert result.tool_trace == []
        assert "max_turns=1" in result.warnings[0]

    async def test_tool_deadline_becomes_error_result(self) -> None:
        backend = ScriptedBackend(_call("slow", "c1"), "gave up")
        result = await _orchestrator(_cfg(toolTimeout=50), backend).run("wait")
        assert result.final_text == "gave up"
        failed = result.tool_trace[0]
        assert failed.error_type == "OperationTimeoutError"
        assert failed.error == "Operation 'tool:slow' timed out after 50ms"
        assert failed.execution_time_ms < 1000

    async def test_conversation_deadline(self) -> None:
        async def hang(_payload: Any) -> str:
            await asyncio.sleep(5)
            return "never"

        orchestrator = _orchestrator(_cfg(conversationTimeout=50), CallableBackend(hang))
        with pytest.raises(OperationTimeoutError, match="'conversation' timed out after 50ms"):
            await orchestrator.run("hang")
        assert FakeServer.instances[0].disconnects == 1
        assert orchestrator.state is OrchestratorState.CLOSED

    async def test_external_cancel(self) -> None:
        signal = CancellationSignal()

        async def hang(_payload: Any) -> str:
            await asyncio.sleep(5)
            return "never"

        asyncio.get_running_loop().call_later(0.02, signal.abort, "user quit")
        with pytest.raises(OperationCancelledError) as exc_info:
            await _orchestrator(_cfg(), CallableBackend(hang)).run("hang", signal=signal)
        assert not isinstance(exc_info.value, OperationTimeoutError)
        assert exc_info.value.reason == "user quit"
        assert FakeServer.instances[0].disconnects == 1


@pytest.mark.asyncio
class TestExecution:
    async def test_disallowed_tool_never_reaches_server(self) -> None:
        backend = ScriptedBackend(_call("read_file", "c1", path="/etc/passwd"), "ok")
        result = await _orchestrator(_cfg(allowedTools=["list_directory"]), backend).run("read")
        assert FakeServer.instances[0].calls == []
        failed = result.tool_trace[0]
        assert failed.error_type == "ToolNotFoundError"
        assert failed.server is None
        assert "read_file" not in backend.payloads[0]

    async def test_blocked_tool(self) -> None:
        backend = ScriptedBackend(_call("fail", "c1"), "ok")
        result = await _orchestrator(_cfg(blockedTools=["fail"]), backend).run("x")
        assert result.tool_trace[0].error == "Tool 'fail' not found"

    async def test_batch_runs_concurrently_in_request_order(self) -> None:
        raw = (
            _call("slow", "first", seconds=0.1)
            + _call("read_file", "second", path="/a")
            + _call("list_directory", "third")
        )
        backend = ScriptedBackend(raw, "done")
        result = await _orchestrator(_cfg(), backend).run("go")
        assert [r.request_id for r in result.tool_trace] == ["first", "second", "third"]
        assert [r.output for r in result.tool_trace] == ["slow done", "read_file:/a", "list_directory:"]
        assert FakeServer.instances[0].peak == 3
        content = backend.payloads[1][2]["content"]
        assert content.index("Call ID: first") < content.index("Call ID: second") < content.index("Call ID: third")

    async def test_duplicate_ids_are_replaced(self) -> None:
        raw = _call("read_file", "dup", path="/a") + _call("read_file", "dup", path="/b")
        result = await _orchestrator(_cfg(), ScriptedBackend(raw, "ok")).run("x")
        ids = [r.request_id for r in result.tool_trace]
        assert ids[0] == "dup"
        assert ids[1] != "dup"
        assert [r.output for r in result.tool_trace] == ["read_file:/a", "read_file:/b"]


@pytest.mark.asyncio
class TestFailures:
    async def test_backend_failure_propagates_after_teardown(self) -> None:
        backend = ScriptedBackend(RuntimeError("503 upstream unavailable"))
        orchestrator = _orchestrator(_cfg(), backend)
        with pytest.raises(BackendTransientError):
            await orchestrator.run("x")
        assert FakeServer.instances[0].disconnects == 1
        assert orchestrator.state is OrchestratorState.CLOSED

    async def test_backend_failure_mid_conversation(self) -> None:
        backend = ScriptedBackend(_call("read_file", path="/a"), RuntimeError("bad request"))
        with pytest.raises(BackendError) as exc_info:
            await _orchestrator(_cfg(), backend).run("x")
        assert "bad request" in str(exc_info.value)
        assert FakeServer.instances[0].disconnects == 1

    async def test_partial_server_failure_is_a_warning(self) -> None:
        backend = ScriptedBackend(_call("read_file", path="/a"), "ok")
        result = await _orchestrator(_cfg("broken", "fs"), backend).run("x")
        assert result.servers == ["fs"]
        assert result.warnings[0].startswith("Failed to connect to MCP server 'broken'")
        assert result.tool_trace[0].ok

    async def test_no_tools_runs_plain(self) -> None:
        backend = ScriptedBackend("answer without tools")
        result = await _orchestrator(_cfg("broken"), backend).run("question")
        assert result.final_text == "answer without tools"
        assert backend.payloads == ["question"]
        assert "No MCP tools available; running backend without tools" in result.warnings

    async def test_no_tools_required(self) -> None:
        backend = ScriptedBackend("unused")
        with pytest.raises(NoToolsAvailableError):
            await _orchestrator(_cfg("broken", requireTools=True), backend).run("question")
        assert backend.payloads == []

    async def test_tool_calls_ignored_without_catalog(self) -> None:
        raw = _call("read_file", path="/a")
        result = await _orchestrator(_cfg("broken"), ScriptedBackend(raw)).run("q")
        assert result.final_text == raw
        assert result.tool_trace == []


@pytest.mark.asyncio
class TestEntryPoints:
    async def test_disabled_config_skips_servers(self) -> None:
        backend = ScriptedBackend("plain")
        config = load_mcp_config({"enabled": False, "servers": [{"name": "fs", "command": "srv"}]})
        result = await _orchestrator(config, backend).run("prompt")
        assert result.final_text == "plain"
        assert result.warnings == []
        assert FakeServer.instances == []
        assert backend.payloads == ["prompt"]

    async def test_run_with_tools_accepts_mapping(self) -> None:
        backend = ScriptedBackend("hello")
        result = await run_with_tools("hi", backend, {"enabled": False, "servers": []})
        assert result.final_text == "hello"

    async def test_strategy_follows_backend_id(self) -> None:
        backend = ScriptedBackend(
            '{"function_call": {"name": "read_file", "arguments": {"path": "/a"}}}',
            "done",
            backend_id="openai",
        )
        orchestrator = _orchestrator(_cfg(), backend)
        assert isinstance(orchestrator.strategy, OpenAIToolCallStrategy)
        result = await orchestrator.run("read")
        assert result.strategy == "openai"
        assert result.tool_trace[0].output == "read_file:/a"
        assert "Function read_file" in backend.payloads[1][2]["content"]

    async def test_configured_strategy_overrides_backend(self) -> None:
        backend = ScriptedBackend("x", backend_id="openai")
        orchestrator = _orchestrator(_cfg(toolCallStrategy="xml"), backend)
        assert isinstance(orchestrator.strategy, XMLToolCallStrategy)


class TestToolDeadlineCap:
    def _orchestrator(self) -> ToolOrchestrator:
        return _orchestrator(_cfg(toolTimeout=10_000), ScriptedBackend())

    def test_full_tool_timeout_without_conversation_deadline(self) -> None:
        conv = ConversationState(max_tool_calls=5)
        assert self._orchestrator()._tool_timeout_ms(conv) == 10_000

    def test_capped_by_time_left(self) -> None:
        conv = ConversationState(max_tool_calls=5, deadline=time.monotonic() + 0.5)
        assert 1 <= self._orchestrator()._tool_timeout_ms(conv) <= 500

    def test_expired_conversation_leaves_minimum(self) -> None:
        conv = ConversationState(max_tool_calls=5, deadline=time.monotonic() - 1)
        assert self._orchestrator()._tool_timeout_ms(conv) == 1

    @pytest.mark.asyncio
    async def test_batch_honours_capped_deadline(self) -> None:
        orchestrator = self._orchestrator()
        conv = ConversationState(max_tool_calls=5, deadline=time.monotonic() + 0.05)
        async with ToolSession(_cfg(), connection_factory=FakeServer) as session:
            results = await orchestrator._execute_batch(
                session, [ToolCallRequest("slow", {}, id="c1")], CancellationSignal(),
                orchestrator._tool_timeout_ms(conv),
            )
        assert results[0].error_type == "OperationTimeoutError"
        assert results[0].execution_time_ms < 1000
