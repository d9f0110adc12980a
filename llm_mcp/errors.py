"""Structured error types for llm_mcp.

Errors raised inside a single tool call never leave the orchestrator: they are
absorbed into that call's ``ToolCallResult`` and fed back to the backend.
Only backend failures and unrecoverable setup failures reach the caller:

    from llm_mcp.errors import BackendError, NoToolsAvailableError

    try:
        result = await run_with_tools(prompt, backend, config)
    except NoToolsAvailableError:
        # every server failed and the task was configured to require tools
        ...
    except BackendError:
        # the generate call itself failed (already retried where transient)
        ...
"""

from __future__ import annotations

from typing import Any


class MCPError(Exception):
    """Base for all llm_mcp errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class MCPConfigError(MCPError, ValueError):
    """Configuration could not be loaded or failed validation."""

    def __init__(self, errors: list[str], source: str = "<in-memory>") -> None:
        self.errors = errors
        self.source = source
        joined = "; ".join(errors) if errors else "unknown validation error"
        super().__init__(f"MCP config {source} is invalid: {joined}")


class ToolServerConnectionError(MCPError, ConnectionError):
    """A tool server failed to start or complete its handshake."""

    def __init__(self, server: str, message: str, original: Exception | None = None) -> None:
        super().__init__(f"Tool server {server!r}: {message}", original=original)
        self.server = server


class ToolNotFoundError(MCPError, LookupError):
    """The backend requested a tool that is unknown or not allowed."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool {tool_name!r} not found")
        self.tool_name = tool_name


class ToolExecutionError(MCPError):
    """The tool server reported a failure, or the call itself broke."""

    def __init__(
        self,
        tool_name: str,
        message: str,
        *,
        server: str | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.tool_name = tool_name
        self.server = server


class OperationTimeoutError(MCPError, TimeoutError):
    """A named operation exceeded its deadline."""

    def __init__(self, operation: str, timeout_ms: float) -> None:
        super().__init__(f"Operation {operation!r} timed out after {_fmt_ms(timeout_ms)}ms")
        self.operation = operation
        self.timeout_ms = timeout_ms


class OperationCancelledError(MCPError):
    """A parent signal aborted the operation before it finished."""

    def __init__(self, operation: str, reason: str | None = None) -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"Operation {operation!r} was cancelled{detail}")
        self.operation = operation
        self.reason = reason


class ToolBudgetExceededError(MCPError):
    """Budget stop descriptor. Recorded as a warning, never raised."""

    def __init__(self, requested: int, executed: int, max_tool_calls: int) -> None:
        super().__init__(
            f"Tool budget exceeded: {requested} tool call(s) requested with "
            f"{executed}/{max_tool_calls} already executed; batch rejected"
        )
        self.requested = requested
        self.executed = executed
        self.max_tool_calls = max_tool_calls


class NoToolsAvailableError(MCPError):
    """No tools could be discovered and the task requires them."""


class BackendError(MCPError):
    """The backend generate call failed."""


class BackendRateLimitError(BackendError):
    """Transient rate limit (429)."""


class BackendAuthError(BackendError):
    """Authentication failed (401/403). Not retried."""


class BackendTransientError(BackendError):
    """Server error (500/502/503), timeout or connection reset. Retried."""


def _fmt_ms(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def is_timeout_error(error: BaseException) -> bool:
    """True for llm_mcp deadline errors."""
    return isinstance(error, OperationTimeoutError)


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_backend_error(error: Exception) -> type[BackendError]:
    """Classify a backend exception into a BackendError subtype.

    Uses litellm exception types when available, falls back to string matching.
    """
    try:
        import litellm as _lt

        auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
        if auth_types and isinstance(error, auth_types):
            return BackendAuthError

        rate_types = _litellm_error_types(_lt, ("RateLimitError",))
        if rate_types and isinstance(error, rate_types):
            return BackendRateLimitError

        transient_types = _litellm_error_types(
            _lt,
            (
                "InternalServerError",
                "ServiceUnavailableError",
                "APIConnectionError",
                "BadGatewayError",
                "Timeout",
            ),
        )
        if transient_types and isinstance(error, transient_types):
            return BackendTransientError
    except ImportError:
        pass

    if isinstance(error, (TimeoutError, ConnectionError)):
        return BackendTransientError

    error_str = str(error).lower()
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return BackendAuthError
    if "403" in error_str or "forbidden" in error_str:
        return BackendAuthError
    if "429" in error_str or ("rate" in error_str and "limit" in error_str):
        return BackendRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "overloaded")):
        return BackendTransientError

    return BackendError


def wrap_backend_error(error: Exception) -> BackendError:
    """Wrap an exception in the appropriate BackendError subclass.

    BackendErrors are returned unchanged.
    """
    if isinstance(error, BackendError):
        return error
    cls = classify_backend_error(error)
    return cls(str(error), original=error)
