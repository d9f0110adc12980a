"""Lifecycle of one MCP tool server.

A :class:`ToolServerConnection` spawns (stdio) or attaches to (http,
websocket) a single server, performs the MCP ``initialize`` handshake,
lists the server's tools once and issues tool calls.

The transport contexts are entered on an ``AsyncExitStack``; ``connect()``
and ``disconnect()`` must run in the same asyncio task, because the MCP
transports hold anyio task groups that cannot be exited from another task.
:class:`llm_mcp.session.ToolSession` guarantees that.
"""

from __future__ import annotations

import json as _json
import logging
import os
import time
from contextlib import AsyncExitStack
from typing import Any

from llm_mcp.config import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ToolServerConfig,
)
from llm_mcp.errors import (
    OperationCancelledError,
    OperationTimeoutError,
    ToolExecutionError,
    ToolServerConnectionError,
)
from llm_mcp.models import Tool
from llm_mcp.timeouts import CancellationSignal, with_timeout

logger = logging.getLogger(__name__)


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (stdio_client, StdioServerParameters, ClientSession)
    """
    from mcp import ClientSession
    from mcp.client.stdio import StdioServerParameters, stdio_client

    return stdio_client, StdioServerParameters, ClientSession


def _import_remote_transport(transport: str) -> Any:
    """Return the client context factory for a remote transport."""
    if transport == "http":
        from mcp.client.streamable_http import streamablehttp_client

        return streamablehttp_client
    if transport == "websocket":
        from mcp.client.websocket import websocket_client

        return websocket_client
    raise ValueError(f"Unsupported transport type: {transport}")


def _truncate(text: str, max_length: int) -> str:
    """Truncate text if it exceeds max_length, appending a notice."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + f"\n... [truncated at {max_length} chars]"


def _field(obj: Any, snake: str, camel: str) -> Any:
    """Read an MCP result field under its snake_case or camelCase name."""
    value = getattr(obj, snake, None)
    if value is None:
        value = getattr(obj, camel, None)
    return value


def _content_to_text(result: Any) -> str:
    """Flatten an MCP ``CallToolResult`` into text."""
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if isinstance(text, str):
            parts.append(text)
        elif hasattr(item, "model_dump_json"):
            parts.append(item.model_dump_json(exclude_none=True))
        else:
            parts.append(str(item))
    if not parts:
        structured = _field(result, "structured_content", "structuredContent")
        if isinstance(structured, dict):
            parts.append(_json.dumps(structured, default=str))
    return "\n".join(parts)


def _to_tool(raw: Any, server: str) -> Tool:
    schema = _field(raw, "input_schema", "inputSchema")
    if not isinstance(schema, dict):
        schema = {"type": "object", "properties": {}}
    return Tool(
        name=raw.name,
        description=getattr(raw, "description", None) or "",
        input_schema=dict(schema),
        server=server,
    )


class ToolServerConnection:
    """One MCP server, owned by exactly one session."""

    def __init__(
        self,
        config: ToolServerConfig,
        *,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH,
    ) -> None:
        self.config = config
        self.connect_timeout_ms = connect_timeout_ms
        self.tool_result_max_length = tool_result_max_length
        self._stack: AsyncExitStack | None = None
        self._session: Any = None
        self._tools: list[Tool] | None = None

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"ToolServerConnection({self.name!r}, {self.config.transport}, {state})"

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def __aenter__(self) -> "ToolServerConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    # -- connect -----------------------------------------------------------

    async def _enter_transport(self, stack: AsyncExitStack) -> tuple[Any, Any]:
        cfg = self.config
        if cfg.transport == "stdio":
            stdio_client, StdioServerParameters, _ = _import_mcp()
            params = StdioServerParameters(
                command=cfg.command,
                args=list(cfg.args),
                env={**os.environ, **cfg.env} if cfg.env else None,
                cwd=cfg.cwd,
            )
            streams = await stack.enter_async_context(stdio_client(params))
        else:
            factory = _import_remote_transport(cfg.transport)
            if cfg.transport == "http":
                streams = await stack.enter_async_context(
                    factory(cfg.url, headers=dict(cfg.headers) if cfg.headers else None)
                )
            else:
                if cfg.headers:
                    logger.warning(
                        "Tool server %r: headers are not supported by the websocket transport; ignoring",
                        self.name,
                    )
                streams = await stack.enter_async_context(factory(cfg.url))
        # http yields (read, write, get_session_id); the others (read, write)
        return streams[0], streams[1]

    async def connect(self, signal: CancellationSignal | None = None) -> None:
        """Open the transport and complete the initialize handshake.

        Raises:
            ToolServerConnectionError: Startup failed or the handshake did not
                finish within ``connect_timeout_ms``.
        """
        if self._session is not None:
            return
        problems = self.config.problems()
        if problems:
            raise ToolServerConnectionError(self.name, "; ".join(problems))

        _, _, ClientSession = _import_mcp()
        stack = AsyncExitStack()
        self._stack = stack
        t0 = time.monotonic()
        try:
            read_stream, write_stream = await self._enter_transport(stack)
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await with_timeout(
                f"initialize:{self.name}",
                lambda _sig: session.initialize(),
                timeout_ms=self.connect_timeout_ms,
                parent_signal=signal,
                cleanup=self._close_stack,
            )
        except OperationCancelledError:
            await self._close_stack()
            raise
        except OperationTimeoutError as exc:
            await self._close_stack()
            raise ToolServerConnectionError(
                self.name,
                f"handshake did not complete within {self.connect_timeout_ms}ms",
                original=exc,
            ) from exc
        except Exception as exc:
            await self._close_stack()
            raise ToolServerConnectionError(self.name, str(exc) or type(exc).__name__, original=exc) from exc

        self._session = session
        logger.info(
            "Connected to tool server %r (%s) in %.0fms",
            self.name, self.config.transport, (time.monotonic() - t0) * 1000,
        )

    async def _close_stack(self) -> None:
        stack, self._stack = self._stack, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as exc:
            logger.warning("Error closing tool server %r: %s", self.name, exc)

    # -- tools -------------------------------------------------------------

    def _require_session(self) -> Any:
        if self._session is None:
            raise ToolServerConnectionError(self.name, "not connected")
        return self._session

    async def list_tools(self, signal: CancellationSignal | None = None) -> list[Tool]:
        """Return the server's tools. Queried once per connection."""
        if self._tools is not None:
            return list(self._tools)
        session = self._require_session()
        response = await with_timeout(
            f"list_tools:{self.name}",
            lambda _sig: session.list_tools(),
            timeout_ms=self.connect_timeout_ms,
            parent_signal=signal,
        )
        self._tools = [_to_tool(t, self.name) for t in (getattr(response, "tools", None) or [])]
        logger.debug("Tool server %r exposes %d tools", self.name, len(self._tools))
        return list(self._tools)

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        signal: CancellationSignal | None = None,
    ) -> str:
        """Call a tool and return its text output.

        Returns promptly with :class:`OperationCancelledError` when ``signal``
        aborts, without waiting for the server.

        Raises:
            ToolExecutionError: The server flagged the result as an error or
                the request failed.
        """
        session = self._require_session()
        label = f"call_tool:{name}"
        if signal is not None:
            signal.raise_if_aborted(label)
        try:
            call = session.call_tool(name, arguments)
            result = await (signal.guard(call, label) if signal is not None else call)
        except OperationCancelledError:
            raise
        except Exception as exc:
            raise ToolExecutionError(
                name, str(exc) or type(exc).__name__, server=self.name, original=exc,
            ) from exc

        text = _truncate(_content_to_text(result), self.tool_result_max_length)
        if _field(result, "is_error", "isError"):
            raise ToolExecutionError(name, text or "tool reported an error", server=self.name)
        return text

    # -- teardown ----------------------------------------------------------

    async def disconnect(self) -> None:
        """Close the server. Best effort: errors are logged, never raised."""
        was_connected = self._session is not None
        self._session = None
        self._tools = None
        await self._close_stack()
        if was_connected:
            logger.debug("Disconnected from tool server %r", self.name)
