"""Tool-calling conversation loop for any backend.

Gives a single generate call transparent access to MCP tools:

    result = await run_with_tools(
        "Summarize the newest file in /data",
        LiteLLMBackend("gpt-4o"),
        {
            "enabled": True,
            "servers": [{
                "name": "fs",
                "command": "npx",
                "args": ["-y", "@modelcontextprotocol/server-filesystem", "/data"],
            }],
            "maxToolCalls": 10,
        },
    )
    print(result.final_text, result.warnings)

The loop:
    1. Connect every server (failures become warnings)
    2. Build the allowed tool catalog
    3. Ask the strategy to describe the catalog in the prompt, call the backend
    4. Extract tool calls; none -> done, over budget -> done with a warning
    5. Execute the batch concurrently, each call under its own deadline
    6. Feed the results back and go to 3
    7. Disconnect every server, whatever happened
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from llm_mcp.backends import Backend, PromptOrMessages
from llm_mcp.config import MCPConfig, load_mcp_config
from llm_mcp.errors import (
    MCPError,
    NoToolsAvailableError,
    OperationCancelledError,
    OperationTimeoutError,
    ToolBudgetExceededError,
    ToolExecutionError,
    wrap_backend_error,
)
from llm_mcp.models import (
    ConversationState,
    OrchestrationResult,
    ToolCallRequest,
    ToolCallResult,
    Turn,
    new_call_id,
)
from llm_mcp.session import ToolSession
from llm_mcp.strategies import ToolCallStrategy, get_strategy_for_backend, raw_text
from llm_mcp.timeouts import CancellationSignal, with_timeout

logger = logging.getLogger(__name__)


class OrchestratorState(str, enum.Enum):
    IDLE = "idle"
    SERVERS_CONNECTING = "servers_connecting"
    CATALOG_READY = "catalog_ready"
    AWAITING_BACKEND = "awaiting_backend"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    TOOLS_EXECUTING = "tools_executing"
    CONTINUING = "continuing"
    FINALIZING = "finalizing"
    CLOSED = "closed"


def _ensure_unique_ids(requests: list[ToolCallRequest]) -> list[ToolCallRequest]:
    """Re-synthesize missing or repeated ids so results correlate one-to-one."""
    seen: set[str] = set()
    for request in requests:
        if not request.id or request.id in seen:
            replacement = new_call_id()
            logger.debug("Replacing duplicate tool call id %r with %r", request.id, replacement)
            request.id = replacement
        seen.add(request.id)
    return requests


class ToolOrchestrator:
    """Drives generate -> detect -> execute -> continue for one backend.

    One ``run()`` at a time per instance; :func:`run_with_tools` builds a
    fresh orchestrator per call.
    """

    def __init__(
        self,
        config: MCPConfig,
        backend: Backend,
        *,
        strategy: ToolCallStrategy | None = None,
        session_factory: Callable[[MCPConfig], ToolSession] = ToolSession,
    ) -> None:
        self.config = config
        self.backend = backend
        self.strategy = strategy or get_strategy_for_backend(
            getattr(backend, "backend_id", None), config.tool_call_strategy,
        )
        self.session_factory = session_factory
        self.state = OrchestratorState.IDLE
        self._deadline_hit = False

    def _transition(self, new_state: OrchestratorState) -> None:
        logger.debug("Orchestrator %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    # -- backend -----------------------------------------------------------

    async def _generate(self, payload: PromptOrMessages, root: CancellationSignal) -> Any:
        """Invoke the backend. Every failure here is fatal to the conversation."""
        root.raise_if_aborted("backend.generate")
        try:
            return await root.guard(self.backend.generate(payload), "backend.generate")
        except (MCPError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise wrap_backend_error(exc) from exc

    # -- tools -------------------------------------------------------------

    def _tool_timeout_ms(self, conv: ConversationState) -> int:
        """Per-call deadline, capped by what is left of the conversation deadline."""
        remaining = conv.remaining_s()
        if remaining is None:
            return self.config.tool_timeout_ms
        return max(1, min(self.config.tool_timeout_ms, int(remaining * 1000)))

    async def _execute_one(
        self,
        session: ToolSession,
        request: ToolCallRequest,
        root: CancellationSignal,
        timeout_ms: int | None = None,
    ) -> ToolCallResult:
        """Run one call. Never raises: every failure becomes an error result."""
        t0 = time.monotonic()
        server: str | None = None
        try:
            conn, _tool = session.registry.resolve(request.tool_name)
            server = conn.name
            output = await with_timeout(
                f"tool:{request.tool_name}",
                lambda signal: conn.call_tool(request.tool_name, request.arguments, signal=signal),
                timeout_ms=timeout_ms or self.config.tool_timeout_ms,
                parent_signal=root,
            )
        except MCPError as exc:
            elapsed = (time.monotonic() - t0) * 1000
            logger.info("Tool call %s (%s) failed: %s", request.id, request.tool_name, exc)
            return ToolCallResult.failure(request, exc, execution_time_ms=elapsed, server=server)
        except Exception as exc:
            elapsed = (time.monotonic() - t0) * 1000
            error = ToolExecutionError(request.tool_name, str(exc) or type(exc).__name__, server=server, original=exc)
            logger.info("Tool call %s (%s) failed: %s", request.id, request.tool_name, error)
            return ToolCallResult.failure(request, error, execution_time_ms=elapsed, server=server)

        elapsed = (time.monotonic() - t0) * 1000
        logger.debug("Tool call %s (%s) on %r took %.0fms", request.id, request.tool_name, server, elapsed)
        return ToolCallResult.success(request, output, execution_time_ms=elapsed, server=server)

    async def _execute_batch(
        self,
        session: ToolSession,
        requests: list[ToolCallRequest],
        root: CancellationSignal,
        timeout_ms: int | None = None,
    ) -> list[ToolCallResult]:
        """Execute a batch concurrently; results come back in request order, matched by id."""
        completed = await asyncio.gather(
            *(self._execute_one(session, request, root, timeout_ms) for request in requests)
        )
        by_id = {result.request_id: result for result in completed}
        return [by_id[request.id] for request in requests]

    # -- loop --------------------------------------------------------------

    async def run(self, prompt: str, *, signal: CancellationSignal | None = None) -> OrchestrationResult:
        """Run one conversation to completion.

        Raises:
            BackendError: The backend generate call failed.
            OperationTimeoutError: The conversation deadline expired.
            OperationCancelledError: ``signal`` aborted the conversation.
            NoToolsAvailableError: No tools came up and ``require_tools`` is set.
        """
        cfg = self.config
        strategy = self.strategy
        self.state = OrchestratorState.IDLE
        self._deadline_hit = False

        root = signal.child("conversation") if signal is not None else CancellationSignal("conversation")
        conv = ConversationState(max_tool_calls=cfg.max_tool_calls)
        timer: asyncio.TimerHandle | None = None
        if cfg.conversation_timeout_ms is not None:
            conv.deadline = conv.started_at + cfg.conversation_timeout_ms / 1000.0

            def _on_deadline() -> None:
                self._deadline_hit = True
                root.abort(f"conversation deadline of {cfg.conversation_timeout_ms}ms exceeded")

            timer = asyncio.get_running_loop().call_later(cfg.conversation_timeout_ms / 1000.0, _on_deadline)

        warnings: list[str] = []
        trace: list[ToolCallResult] = []
        servers: list[str] = []
        session = self.session_factory(cfg)

        try:
            if cfg.enabled:
                self._transition(OrchestratorState.SERVERS_CONNECTING)
                await session.open(root)
                warnings.extend(session.warnings)
                servers = session.server_names
            else:
                logger.info("MCP disabled; calling backend without tools")

            self._transition(OrchestratorState.CATALOG_READY)
            tools = session.catalog() if cfg.enabled else []
            if tools:
                conv.prompt = strategy.create_prompt(prompt, tools)
            else:
                if cfg.enabled and cfg.require_tools:
                    raise NoToolsAvailableError(
                        f"No tools available from MCP servers {cfg.server_names()} and tools are required"
                    )
                if cfg.enabled:
                    msg = "No MCP tools available; running backend without tools"
                    logger.warning(msg)
                    warnings.append(msg)
                conv.prompt = prompt

            payload: PromptOrMessages = conv.prompt
            while True:
                self._transition(OrchestratorState.AWAITING_BACKEND)
                raw = await self._generate(payload, root)
                conv.turns.append(Turn("backend", raw, [strategy.assistant_message(raw)]))
                final_raw = raw

                requests = strategy.extract_tool_calls(raw) if tools else []
                if not requests:
                    break
                if not conv.can_execute(len(requests)):
                    budget = ToolBudgetExceededError(
                        len(requests), conv.tool_calls_executed, cfg.max_tool_calls,
                    )
                    logger.warning(str(budget))
                    warnings.append(str(budget))
                    break
                if conv.backend_turns >= cfg.max_turns:
                    msg = (
                        f"Reached max_turns={cfg.max_turns}; {len(requests)} requested "
                        "tool call(s) were not executed"
                    )
                    logger.warning(msg)
                    warnings.append(msg)
                    break

                self._transition(OrchestratorState.TOOL_CALLS_PENDING)
                requests = _ensure_unique_ids(requests)
                logger.debug(
                    "Turn %d: %d tool call(s): %s",
                    conv.backend_turns, len(requests), [r.tool_name for r in requests],
                )

                self._transition(OrchestratorState.TOOLS_EXECUTING)
                results = await self._execute_batch(session, requests, root, self._tool_timeout_ms(conv))
                conv.record_executed(len(requests))
                trace.extend(results)
                for result in results:
                    if not result.ok:
                        warnings.append(
                            f"Tool {result.tool_name!r} (call {result.request_id}) failed: "
                            f"{result.error_type or 'Error'}: {result.error}"
                        )

                self._transition(OrchestratorState.CONTINUING)
                conv.turns.append(Turn("tool_results", results, strategy.format_tool_results(results)))
                payload = conv.messages()

            self._transition(OrchestratorState.FINALIZING)
            final_text = raw_text(final_raw)
        except OperationCancelledError as exc:
            if self._deadline_hit:
                raise OperationTimeoutError("conversation", cfg.conversation_timeout_ms or 0) from exc
            raise
        finally:
            if timer is not None:
                timer.cancel()
            root.detach()
            await session.close()
            self._transition(OrchestratorState.CLOSED)

        logger.info(
            "Tool loop finished: %d backend turn(s), %d tool call(s), %d warning(s), strategy=%s",
            conv.backend_turns, conv.tool_calls_executed, len(warnings), strategy.name,
        )
        return OrchestrationResult(
            final_text=final_text,
            tool_trace=trace,
            warnings=warnings,
            turns=conv.backend_turns,
            strategy=strategy.name,
            servers=servers,
            state=self.state.value,
        )


async def run_with_tools(
    prompt: str,
    backend: Backend,
    config: MCPConfig | Mapping[str, Any] | str | Path,
    *,
    strategy: ToolCallStrategy | None = None,
    signal: CancellationSignal | None = None,
) -> OrchestrationResult:
    """Run ``prompt`` through ``backend`` with the tools described by ``config``."""
    if not isinstance(config, MCPConfig):
        config = load_mcp_config(config)
    orchestrator = ToolOrchestrator(config, backend, strategy=strategy)
    return await orchestrator.run(prompt, signal=signal)
