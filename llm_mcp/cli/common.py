"""Shared CLI helpers for llm_mcp commands."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from llm_mcp.config import MCPConfig, load_mcp_config
from llm_mcp.errors import MCPConfigError


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def load_config_or_exit(path: str) -> MCPConfig:
    try:
        return load_mcp_config(Path(path)).with_env_overrides()
    except (FileNotFoundError, MCPConfigError) as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(2)


def format_latency_ms(ms: float | None) -> str:
    if ms is None:
        return "-"
    if ms >= 1000:
        return f"{ms / 1000:.2f}s"
    return f"{ms:.0f}ms"


def truncate_cell(text: str, width: int) -> str:
    text = " ".join(text.split())
    if len(text) <= width:
        return text
    return text[: width - 3] + "..."
