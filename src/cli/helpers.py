"""
CLI helper functions: declaration file collection, context setup, argument parsing.
"""

import json
from pathlib import Path
from typing import Any, List

from core.context import ProjectContext
from core.utils import debug, error
from move.loader import LoaderError, load_modules
from move.stdlib import std_modules
from move.types import Type, TypeSyntaxError, parse_type


def collect_declaration_files(input_path: str) -> List[str]:
    """Collect .json declaration files from a path (file or directory)."""
    path = Path(input_path)
    if not path.exists():
        return []
    if path.is_file():
        return [str(path)]
    if path.is_dir():
        decl_files = []
        for file_path in path.rglob("*.json"):
            # Skip private files (starting with _)
            if not file_path.name.startswith("_"):
                decl_files.append(str(file_path))
        return sorted(decl_files)
    return []


def load_context(decl_files: List[str]) -> ProjectContext:
    """Build a checking context from declaration files (stdlib included)."""
    try:
        modules = load_modules(decl_files)
    except FileNotFoundError as e:
        error(f"Declaration file not found: {e.filename}")
        raise
    except (json.JSONDecodeError, LoaderError) as e:
        error(f"Failed to load declarations: {e}")
        raise
    debug(f"Loaded {len(modules)} module(s) from {len(decl_files)} file(s)")
    return ProjectContext(std_modules() + modules)


def parse_cli_value(text: str) -> Any:
    """
    CLI argument value: JSON when it parses ("[1, 2]", "true", "7"), the raw
    string otherwise ("0x42", "@0x1").
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def parse_type_args(items: List[str], default_module: str) -> List[Type]:
    types = []
    for item in items:
        try:
            types.append(parse_type(item, default_module))
        except TypeSyntaxError as e:
            error(f"Invalid type argument '{item}': {e}")
            raise
    return types
