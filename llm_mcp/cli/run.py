"""Run one prompt through the tool loop."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from llm_mcp.backends import LiteLLMBackend
from llm_mcp.cli.common import configure_logging, format_latency_ms, load_config_or_exit
from llm_mcp.errors import MCPError
from llm_mcp.orchestrator import ToolOrchestrator
from llm_mcp.strategies import available_strategies, get_strategy


def _read_prompt(value: str) -> str:
    if value == "-":
        return sys.stdin.read()
    return value


def cmd_run(args: argparse.Namespace) -> None:
    configure_logging(args.verbose)
    config = load_config_or_exit(args.config)
    backend = LiteLLMBackend(args.model, timeout=args.timeout)
    strategy = get_strategy(args.strategy) if args.strategy else None
    orchestrator = ToolOrchestrator(config, backend, strategy=strategy)

    try:
        result = asyncio.run(orchestrator.run(_read_prompt(args.prompt)))
    except MCPError as exc:
        print(f"error: {type(exc).__name__}: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.format == "json":
        print(json.dumps(result.to_dict(), indent=2))
        return

    print(result.final_text)
    if result.tool_trace or result.warnings:
        print(f"\n[{result.turns} turn(s), strategy={result.strategy}]", file=sys.stderr)
        for call in result.tool_trace:
            status = "ok" if call.ok else f"error: {call.error}"
            print(
                f"  {call.tool_name} ({call.request_id}) {format_latency_ms(call.execution_time_ms)} {status}",
                file=sys.stderr,
            )
        for warning in result.warnings:
            print(f"  warning: {warning}", file=sys.stderr)


def register_parser(subparsers: Any) -> None:
    parser = subparsers.add_parser("run", help="Run a prompt with MCP tools")
    parser.add_argument("prompt", help="Prompt text, or - to read stdin")
    parser.add_argument("--config", required=True, help="Path to a JSON/YAML MCP config")
    parser.add_argument("--model", required=True, help="litellm model string, e.g. gpt-4o")
    parser.add_argument("--strategy", choices=available_strategies(), help="Override tool call format")
    parser.add_argument("--timeout", type=float, default=60, help="Per backend call timeout (seconds)")
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    parser.set_defaults(handler=cmd_run)
