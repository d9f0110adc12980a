"""Typed configuration for the tool-calling layer.

The surrounding task system hands us an ``mcp`` mapping (usually read from
YAML). Keys are accepted in snake_case or the camelCase used by task files:

    mcp:
      enabled: true
      toolTimeout: 30000
      maxToolCalls: 20
      allowedTools: [read_file, list_directory]
      servers:
        - name: filesystem
          command: npx
          args: ["-y", "@modelcontextprotocol/server-filesystem", "/data"]
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from llm_mcp.errors import MCPConfigError

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_MS: int = 30_000
"""Per tool call deadline."""

DEFAULT_CONNECT_TIMEOUT_MS: int = 30_000
"""Deadline for one server to start and finish its initialize handshake."""

DEFAULT_MAX_TOOL_CALLS: int = 20
"""Total tool calls allowed per conversation."""

DEFAULT_MAX_TURNS: int = 20
"""Backend invocations allowed per conversation."""

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length for a single tool result. Longer results are truncated."""

TOOL_TIMEOUT_ENV = "LLM_MCP_TOOL_TIMEOUT_MS"
MAX_TOOL_CALLS_ENV = "LLM_MCP_MAX_TOOL_CALLS"
STRATEGY_ENV = "LLM_MCP_STRATEGY"

Transport = Literal["stdio", "http", "websocket"]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=_camel,
    )


class ToolServerConfig(_ConfigModel):
    """One external tool provider."""

    name: str = Field(min_length=1)
    transport: Transport = "stdio"
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] | None = None

    def problems(self) -> list[str]:
        """Transport-specific requirements that are not met."""
        if self.transport == "stdio" and not self.command:
            return ["command required for stdio transport"]
        if self.transport in ("http", "websocket") and not self.url:
            return [f"url required for {self.transport} transport"]
        return []


class MCPConfig(_ConfigModel):
    """The configuration surface consumed from the task loader."""

    enabled: bool
    servers: tuple[ToolServerConfig, ...]
    allowed_tools: tuple[str, ...] | None = None
    blocked_tools: tuple[str, ...] | None = None
    tool_timeout_ms: int = Field(default=DEFAULT_TOOL_TIMEOUT_MS, gt=0, alias="toolTimeout")
    max_tool_calls: int = Field(default=DEFAULT_MAX_TOOL_CALLS, ge=0)
    tool_call_strategy: str | None = None
    connect_timeout_ms: int = Field(default=DEFAULT_CONNECT_TIMEOUT_MS, gt=0, alias="connectTimeout")
    conversation_timeout_ms: int | None = Field(default=None, gt=0, alias="conversationTimeout")
    max_turns: int = Field(default=DEFAULT_MAX_TURNS, ge=1)
    tool_result_max_length: int = Field(default=DEFAULT_TOOL_RESULT_MAX_LENGTH, gt=0)
    require_tools: bool = False

    def server_names(self) -> list[str]:
        return [s.name for s in self.servers]

    def with_env_overrides(self) -> "MCPConfig":
        """Apply ``LLM_MCP_*`` environment overrides. Invalid values keep the configured value."""
        updates: dict[str, Any] = {}

        timeout_raw = os.environ.get(TOOL_TIMEOUT_ENV)
        if timeout_raw:
            parsed = _positive_int(timeout_raw)
            if parsed is None:
                logger.warning(
                    "Invalid %s=%r; expected a positive integer. Keeping %d.",
                    TOOL_TIMEOUT_ENV, timeout_raw, self.tool_timeout_ms,
                )
            else:
                updates["tool_timeout_ms"] = parsed

        calls_raw = os.environ.get(MAX_TOOL_CALLS_ENV)
        if calls_raw:
            parsed = _positive_int(calls_raw, allow_zero=True)
            if parsed is None:
                logger.warning(
                    "Invalid %s=%r; expected a non-negative integer. Keeping %d.",
                    MAX_TOOL_CALLS_ENV, calls_raw, self.max_tool_calls,
                )
            else:
                updates["max_tool_calls"] = parsed

        strategy_raw = os.environ.get(STRATEGY_ENV, "").strip()
        if strategy_raw:
            updates["tool_call_strategy"] = strategy_raw

        return self.model_copy(update=updates) if updates else self


def _positive_int(raw: str, *, allow_zero: bool = False) -> int | None:
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    if value < 0 or (value == 0 and not allow_zero):
        return None
    return value


def _load_from_path(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"MCP config file not found: {path}")
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix == ".json":
        data = json.loads(text)
    elif suffix in {".yaml", ".yml"}:
        import yaml

        data = yaml.safe_load(text)
    else:
        raise MCPConfigError(
            [f"unsupported extension {suffix!r}; use .json, .yaml, or .yml"],
            source=str(path),
        )
    if not isinstance(data, dict):
        raise MCPConfigError(
            [f"root must be a mapping, got {type(data).__name__}"],
            source=str(path),
        )
    return data


def _format_validation_errors(exc: ValidationError) -> list[str]:
    out: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        out.append(f"{loc}: {err.get('msg', 'invalid')}")
    return out


def load_mcp_config(source: str | Path | Mapping[str, Any]) -> MCPConfig:
    """Load and validate an MCP config from a mapping or a JSON/YAML file.

    A top-level ``mcp`` key is unwrapped, so a whole task file can be passed.

    Raises:
        MCPConfigError: If the data does not validate.
        FileNotFoundError: If ``source`` is a path that does not exist.
    """
    if isinstance(source, Mapping):
        raw = dict(source)
        label = "<in-memory>"
    else:
        path = Path(source).expanduser()
        raw = _load_from_path(path)
        label = str(path)

    if isinstance(raw.get("mcp"), Mapping):
        raw = dict(raw["mcp"])

    try:
        config = MCPConfig.model_validate(raw)
    except ValidationError as exc:
        raise MCPConfigError(_format_validation_errors(exc), source=label) from exc

    for server in config.servers:
        for problem in server.problems():
            logger.warning("MCP server %r: %s", server.name, problem)
    names = config.server_names()
    if len(set(names)) != len(names):
        raise MCPConfigError([f"duplicate server names: {sorted(names)}"], source=label)
    return config
