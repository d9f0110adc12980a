"""Data records shared by the connection, registry, strategy and orchestrator layers."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal


def new_call_id() -> str:
    """Synthesize a tool call id for backends that do not supply one."""
    return f"call_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class Tool:
    """A callable tool discovered from a connected server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    server: str = ""

    def to_schema(self) -> dict[str, Any]:
        """Provider-neutral ``{name, description, parameters}`` form."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema,
        }


@dataclass
class ToolCallRequest:
    """One tool call parsed from backend output."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_call_id)


@dataclass
class ToolCallResult:
    """Outcome of one tool call. Carries either ``output`` or ``error``, never both."""

    request_id: str
    tool_name: str
    output: str | None = None
    error: str | None = None
    error_type: str | None = None
    execution_time_ms: float = 0.0
    server: str | None = None

    def __post_init__(self) -> None:
        if (self.output is None) == (self.error is None):
            raise ValueError(
                f"ToolCallResult for {self.request_id!r} must carry exactly one of output or error"
            )

    @classmethod
    def success(
        cls,
        request: ToolCallRequest,
        output: str,
        *,
        execution_time_ms: float = 0.0,
        server: str | None = None,
    ) -> "ToolCallResult":
        return cls(
            request_id=request.id,
            tool_name=request.tool_name,
            output=output,
            execution_time_ms=execution_time_ms,
            server=server,
        )

    @classmethod
    def failure(
        cls,
        request: ToolCallRequest,
        error: BaseException | str,
        *,
        execution_time_ms: float = 0.0,
        server: str | None = None,
    ) -> "ToolCallResult":
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            error_type = type(error).__name__
        else:
            message = error
            error_type = None
        return cls(
            request_id=request.id,
            tool_name=request.tool_name,
            error=message,
            error_type=error_type,
            execution_time_ms=execution_time_ms,
            server=server,
        )

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "request_id": self.request_id,
            "tool_name": self.tool_name,
            "execution_time_ms": round(self.execution_time_ms, 3),
        }
        if self.server is not None:
            out["server"] = self.server
        if self.ok:
            out["output"] = self.output
        else:
            out["error"] = self.error
            if self.error_type:
                out["error_type"] = self.error_type
        return out


@dataclass
class Turn:
    """One entry of the conversation context.

    ``kind="backend"`` holds raw backend output; ``kind="tool_results"`` holds
    the batch of results appended after it.
    """

    kind: Literal["backend", "tool_results"]
    content: Any
    messages: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ConversationState:
    """Mutable state of one orchestration run."""

    max_tool_calls: int
    prompt: str = ""
    turns: list[Turn] = field(default_factory=list)
    tool_calls_executed: int = 0
    started_at: float = field(default_factory=time.monotonic)
    deadline: float | None = None

    def can_execute(self, count: int) -> bool:
        """Budget gate: whether ``count`` more calls fit under ``max_tool_calls``."""
        return self.tool_calls_executed + count <= self.max_tool_calls

    def record_executed(self, count: int) -> None:
        if count < 0:
            raise ValueError("executed count cannot be negative")
        if not self.can_execute(count):
            raise RuntimeError(
                f"recording {count} call(s) would exceed max_tool_calls={self.max_tool_calls}"
            )
        self.tool_calls_executed += count

    @property
    def backend_turns(self) -> int:
        return sum(1 for t in self.turns if t.kind == "backend")

    def messages(self) -> list[dict[str, Any]]:
        """Flatten turns into the message list passed to the backend."""
        out: list[dict[str, Any]] = []
        if self.prompt:
            out.append({"role": "user", "content": self.prompt})
        for turn in self.turns:
            out.extend(turn.messages)
        return out

    def remaining_s(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class OrchestrationResult:
    """Final answer of one orchestration plus its audit trail."""

    final_text: str
    tool_trace: list[ToolCallResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    turns: int = 0
    strategy: str = ""
    servers: list[str] = field(default_factory=list)
    state: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "final_text": self.final_text,
            "tool_trace": [r.to_dict() for r in self.tool_trace],
            "warnings": list(self.warnings),
            "turns": self.turns,
            "strategy": self.strategy,
            "servers": list(self.servers),
            "state": self.state,
        }
