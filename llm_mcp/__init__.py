"""MCP tool calling for any text-generation backend.

Wraps a single generate call with a tool-calling loop over MCP servers.
The backend only ever sees text; the wire format for tool calls is chosen
per backend family (OpenAI function calls, Anthropic tool_use blocks, or a
generic ``<tool_call>`` fallback).

Usage:
    from llm_mcp import LiteLLMBackend, run_with_tools

    result = await run_with_tools(
        "What changed in /repo/CHANGELOG.md this week?",
        LiteLLMBackend("gpt-4o"),
        "task.yaml",            # or a mapping / MCPConfig
    )
    print(result.final_text)
    for call in result.tool_trace:
        print(call.tool_name, call.error or "ok", f"{call.execution_time_ms:.0f}ms")
    for warning in result.warnings:
        print("warning:", warning)
"""

from llm_mcp.backends import Backend, CallableBackend, LiteLLMBackend
from llm_mcp.config import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_MAX_TOOL_CALLS,
    DEFAULT_MAX_TURNS,
    DEFAULT_TOOL_RESULT_MAX_LENGTH,
    DEFAULT_TOOL_TIMEOUT_MS,
    MCPConfig,
    ToolServerConfig,
    load_mcp_config,
)
from llm_mcp.connection import ToolServerConnection
from llm_mcp.errors import (
    BackendAuthError,
    BackendError,
    BackendRateLimitError,
    BackendTransientError,
    MCPConfigError,
    MCPError,
    NoToolsAvailableError,
    OperationCancelledError,
    OperationTimeoutError,
    ToolBudgetExceededError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolServerConnectionError,
    is_timeout_error,
)
from llm_mcp.models import (
    ConversationState,
    OrchestrationResult,
    Tool,
    ToolCallRequest,
    ToolCallResult,
    Turn,
)
from llm_mcp.orchestrator import OrchestratorState, ToolOrchestrator, run_with_tools
from llm_mcp.registry import ToolPolicy, ToolRegistry
from llm_mcp.session import ToolSession
from llm_mcp.strategies import (
    AnthropicToolCallStrategy,
    OpenAIToolCallStrategy,
    ToolCallStrategy,
    XMLToolCallStrategy,
    available_strategies,
    get_strategy,
    get_strategy_for_backend,
)
from llm_mcp.timeouts import CancellationSignal, timeout_from_env, with_timeout

__all__ = [
    "AnthropicToolCallStrategy",
    "Backend",
    "BackendAuthError",
    "BackendError",
    "BackendRateLimitError",
    "BackendTransientError",
    "CallableBackend",
    "CancellationSignal",
    "ConversationState",
    "DEFAULT_CONNECT_TIMEOUT_MS",
    "DEFAULT_MAX_TOOL_CALLS",
    "DEFAULT_MAX_TURNS",
    "DEFAULT_TOOL_RESULT_MAX_LENGTH",
    "DEFAULT_TOOL_TIMEOUT_MS",
    "LiteLLMBackend",
    "MCPConfig",
    "MCPConfigError",
    "MCPError",
    "NoToolsAvailableError",
    "OpenAIToolCallStrategy",
    "OperationCancelledError",
    "OperationTimeoutError",
    "OrchestrationResult",
    "OrchestratorState",
    "Tool",
    "ToolBudgetExceededError",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCallStrategy",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolOrchestrator",
    "ToolPolicy",
    "ToolRegistry",
    "ToolServerConfig",
    "ToolServerConnection",
    "ToolServerConnectionError",
    "ToolSession",
    "Turn",
    "XMLToolCallStrategy",
    "available_strategies",
    "get_strategy",
    "get_strategy_for_backend",
    "is_timeout_error",
    "load_mcp_config",
    "run_with_tools",
    "timeout_from_env",
    "with_timeout",
]
