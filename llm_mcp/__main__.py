"""Command line for llm_mcp.

Usage:
    python -m llm_mcp tools --config task.yaml                 # list allowed tools
    python -m llm_mcp tools --config task.yaml --format json

    python -m llm_mcp run --config task.yaml --model gpt-4o "Summarize /data/report.md"
    echo "prompt" | python -m llm_mcp run --config task.yaml --model gpt-4o -
    python -m llm_mcp run --config task.yaml --model ollama/llama3 --strategy xml "..."
"""

from __future__ import annotations

import argparse
import sys

from llm_mcp.cli import register_run_parser, register_tools_parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m llm_mcp", description="MCP tool calling for any LLM")
    sub = parser.add_subparsers(dest="command")
    register_tools_parser(sub)
    register_run_parser(sub)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    args.handler(args)


if __name__ == "__main__":
    main()
