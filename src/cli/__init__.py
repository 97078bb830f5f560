"""
CLI utilities: declaration file collection, context setup, argument parsing.
"""

from cli.helpers import (
    collect_declaration_files,
    load_context,
    parse_cli_value,
    parse_type_args,
)

__all__ = [
    "collect_declaration_files",
    "load_context",
    "parse_cli_value",
    "parse_type_args",
]
