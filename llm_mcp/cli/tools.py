"""List the tool catalog a config exposes."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any

from llm_mcp.cli.common import configure_logging, load_config_or_exit, truncate_cell
from llm_mcp.config import MCPConfig
from llm_mcp.session import ToolSession


async def _collect(config: MCPConfig) -> dict[str, Any]:
    async with ToolSession(config) as session:
        return {
            "servers": session.server_names,
            "failed_servers": list(session.failed_servers),
            "tools": [
                {
                    "name": tool.name,
                    "server": tool.server,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
                for tool in session.catalog()
            ],
            "warnings": list(session.warnings),
        }


def cmd_tools(args: argparse.Namespace) -> None:
    configure_logging(args.verbose)
    config = load_config_or_exit(args.config)
    data = asyncio.run(_collect(config))

    if args.format == "json":
        print(json.dumps(data, indent=2))
        return

    for warning in data["warnings"]:
        print(f"warning: {warning}")
    if not data["tools"]:
        print("No tools available.")
        return

    headers = ["Tool", "Server", "Description"]
    rows = [
        (t["name"], t["server"], truncate_cell(t["description"], 60))
        for t in data["tools"]
    ]
    col_widths = [
        max(len(headers[i]), *(len(row[i]) for row in rows))
        for i in range(len(headers))
    ]
    print(f"\nTools ({len(rows)} from {len(data['servers'])} server(s)):")
    fmt = "  ".join(f"{{:<{w}}}" for w in col_widths)
    print(fmt.format(*headers))
    print("-" * (sum(col_widths) + 2 * (len(col_widths) - 1)))
    for row in rows:
        print(fmt.format(*row))


def register_parser(subparsers: Any) -> None:
    parser = subparsers.add_parser("tools", help="Connect to configured servers and list allowed tools")
    parser.add_argument("--config", required=True, help="Path to a JSON/YAML MCP config")
    parser.add_argument("--format", choices=["table", "json"], default="table", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    parser.set_defaults(handler=cmd_tools)
