"""CLI command modules for ``python -m llm_mcp``."""

from llm_mcp.cli.run import cmd_run, register_parser as register_run_parser
from llm_mcp.cli.tools import cmd_tools, register_parser as register_tools_parser

__all__ = [
    "cmd_run",
    "cmd_tools",
    "register_run_parser",
    "register_tools_parser",
]
