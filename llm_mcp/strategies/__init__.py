"""Tool-call strategies for different backend wire formats.

Selection order: an explicitly configured strategy name wins; otherwise the
first strategy that supports the backend id; otherwise the XML fallback.
"""

from __future__ import annotations

import logging

from llm_mcp.strategies.anthropic_strategy import AnthropicToolCallStrategy
from llm_mcp.strategies.base import ToolCallStrategy, raw_text
from llm_mcp.strategies.openai_strategy import OpenAIToolCallStrategy
from llm_mcp.strategies.xml_strategy import XMLToolCallStrategy

logger = logging.getLogger(__name__)

_STRATEGIES: dict[str, type[ToolCallStrategy]] = {
    "openai": OpenAIToolCallStrategy,
    "anthropic": AnthropicToolCallStrategy,
    "claude": AnthropicToolCallStrategy,
    "xml": XMLToolCallStrategy,
}

# Auto-selection order; the fallback is applied separately.
_NATIVE_STRATEGIES: tuple[type[ToolCallStrategy], ...] = (
    OpenAIToolCallStrategy,
    AnthropicToolCallStrategy,
)


def available_strategies() -> list[str]:
    """Canonical strategy names."""
    return sorted({cls.name for cls in _STRATEGIES.values()})


def get_strategy(name: str) -> ToolCallStrategy:
    """Instantiate a strategy by name.

    Raises:
        KeyError: Unknown strategy name.
    """
    try:
        return _STRATEGIES[name.strip().lower()]()
    except KeyError:
        raise KeyError(
            f"Unknown tool call strategy {name!r}; expected one of {available_strategies()}"
        ) from None


def get_strategy_for_backend(backend_id: str | None, preferred: str | None = None) -> ToolCallStrategy:
    """Pick the strategy for a backend.

    Args:
        backend_id: Backend family, e.g. ``"openai"`` or ``"anthropic"``.
        preferred: Explicitly configured strategy name. Wins when known;
            unknown names are logged and ignored.
    """
    if preferred:
        try:
            return get_strategy(preferred)
        except KeyError as exc:
            logger.warning("%s; selecting by backend instead", exc.args[0])

    if backend_id:
        for cls in _NATIVE_STRATEGIES:
            strategy = cls()
            if strategy.supports_backend(backend_id):
                return strategy

    return XMLToolCallStrategy()


__all__ = [
    "AnthropicToolCallStrategy",
    "OpenAIToolCallStrategy",
    "ToolCallStrategy",
    "XMLToolCallStrategy",
    "available_strategies",
    "get_strategy",
    "get_strategy_for_backend",
    "raw_text",
]
