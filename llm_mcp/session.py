"""Per-conversation ownership of tool server connections.

A :class:`ToolSession` connects every configured server, builds the tool
registry, and closes every connection on exit, whatever the exit path.
Nothing is shared between sessions: two concurrent conversations spawn
their own server processes.

Usage:
    async with ToolSession(config) as session:
        tools = session.catalog()
        conn, tool = session.registry.resolve("read_file")
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from llm_mcp.config import MCPConfig, ToolServerConfig
from llm_mcp.connection import ToolServerConnection
from llm_mcp.errors import OperationCancelledError
from llm_mcp.models import Tool
from llm_mcp.registry import ToolPolicy, ToolRegistry
from llm_mcp.timeouts import CancellationSignal

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[..., ToolServerConnection]


class ToolSession:
    """Connections, registry and warnings for one orchestration."""

    def __init__(
        self,
        config: MCPConfig,
        *,
        connection_factory: ConnectionFactory = ToolServerConnection,
    ) -> None:
        self.config = config
        self.connection_factory = connection_factory
        self.registry = ToolRegistry(
            ToolPolicy.from_lists(config.allowed_tools, config.blocked_tools)
        )
        self.connections: list[ToolServerConnection] = []
        self.warnings: list[str] = []
        self.failed_servers: list[str] = []
        self._opened = False

    async def __aenter__(self) -> "ToolSession":
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def server_names(self) -> list[str]:
        return [c.name for c in self.connections]

    def _new_connection(self, server: ToolServerConfig) -> ToolServerConnection:
        return self.connection_factory(
            server,
            connect_timeout_ms=self.config.connect_timeout_ms,
            tool_result_max_length=self.config.tool_result_max_length,
        )

    async def open(self, signal: CancellationSignal | None = None) -> None:
        """Connect every server in order. Failures degrade the catalog, never abort.

        Raises:
            OperationCancelledError: ``signal`` aborted while connecting.
        """
        if self._opened:
            return
        self._opened = True
        self.registry = ToolRegistry(self.registry.policy)
        self.warnings = []
        self.failed_servers = []
        for server in self.config.servers:
            conn = self._new_connection(server)
            try:
                await conn.connect(signal)
                tools = await conn.list_tools(signal)
            except OperationCancelledError:
                await conn.disconnect()
                raise
            except Exception as exc:
                msg = f"Failed to connect to MCP server {server.name!r}: {exc}"
                logger.warning(msg)
                self.warnings.append(msg)
                self.failed_servers.append(server.name)
                await conn.disconnect()
                continue
            self.connections.append(conn)
            self.warnings.extend(self.registry.register(conn, tools))

        logger.info(
            "Tool session: %d/%d servers connected, %d tools available",
            len(self.connections), len(self.config.servers), len(self.registry.catalog()),
        )

    def catalog(self) -> list[Tool]:
        return self.registry.catalog()

    async def close(self) -> None:
        """Disconnect every server. Safe to call repeatedly; ``open()`` may follow."""
        connections, self.connections = self.connections, []
        self._opened = False
        for conn in reversed(connections):
            await conn.disconnect()
        if connections:
            logger.debug("Tool session closed %d connection(s)", len(connections))
