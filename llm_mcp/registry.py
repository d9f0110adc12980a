"""One addressable namespace over every connected server's tools."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from llm_mcp.errors import ToolNotFoundError
from llm_mcp.models import Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolPolicy:
    """Allow/block filtering.

    A non-empty allow-list is authoritative: anything missing from it is
    denied even when not blocked. The block-list always wins.
    """

    allowed_tools: frozenset[str] | None = None
    blocked_tools: frozenset[str] | None = None

    @classmethod
    def from_lists(
        cls,
        allowed_tools: Iterable[str] | None = None,
        blocked_tools: Iterable[str] | None = None,
    ) -> "ToolPolicy":
        allowed = frozenset(allowed_tools) if allowed_tools else None
        blocked = frozenset(blocked_tools) if blocked_tools else None
        return cls(allowed_tools=allowed, blocked_tools=blocked)

    def is_allowed(self, tool_name: str) -> bool:
        if self.blocked_tools is not None and tool_name in self.blocked_tools:
            return False
        if self.allowed_tools is None:
            return True
        return tool_name in self.allowed_tools


class ToolRegistry:
    """Maps tool names to the connection that owns them.

    Name collisions across servers resolve to the last registered server.
    """

    def __init__(self, policy: ToolPolicy | None = None) -> None:
        self.policy = policy or ToolPolicy()
        self._tools: dict[str, Tool] = {}
        self._owners: dict[str, Any] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._tools

    def register(self, connection: Any, tools: Iterable[Tool]) -> list[str]:
        """Add a server's tools. Returns collision warnings."""
        warnings: list[str] = []
        server = getattr(connection, "name", str(connection))
        for tool in tools:
            previous = self._owners.get(tool.name)
            if previous is not None and previous is not connection:
                prev_name = getattr(previous, "name", str(previous))
                msg = (
                    f"Duplicate tool {tool.name!r} from server {server!r} "
                    f"replaces the one from {prev_name!r}"
                )
                logger.warning(msg)
                warnings.append(msg)
                # re-insert so catalog order follows the winning registration
                del self._tools[tool.name]
            self._tools[tool.name] = tool
            self._owners[tool.name] = connection
        return warnings

    def is_allowed(self, tool_name: str) -> bool:
        return self.policy.is_allowed(tool_name)

    def catalog(self) -> list[Tool]:
        """Allowed tools only, in registration order."""
        return [tool for name, tool in self._tools.items() if self.policy.is_allowed(name)]

    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.catalog()]

    def resolve(self, tool_name: str) -> tuple[Any, Tool]:
        """Return ``(connection, tool)`` for an allowed, registered tool.

        Raises:
            ToolNotFoundError: The name is unknown or not allowed. No server
                is contacted.
        """
        if not self.policy.is_allowed(tool_name) or tool_name not in self._tools:
            raise ToolNotFoundError(tool_name)
        return self._owners[tool_name], self._tools[tool_name]
