import sys

from core.config import DEBUG_ENABLED, USE_COLOR


def _prefix(label: str, style: str) -> str:
    return f"\033[{style}m[{label}]\033[0m" if USE_COLOR else f"[{label}]"


def debug(*args, **kwargs):
    if DEBUG_ENABLED:
        print(_prefix("DEBUG", "1"), *args, file=sys.stderr, **kwargs)


def info(*args, **kwargs):
    print(_prefix("INFO", "1;34"), *args, file=sys.stderr, **kwargs)


def warn(*args, **kwargs):
    print(_prefix("WARNING", "1;33"), *args, file=sys.stderr, **kwargs)


def error(*args, **kwargs):
    print(_prefix("ERROR", "1;31"), *args, file=sys.stderr, **kwargs)


# FQN (fully qualified name) utilities


def get_simple_name(name: str) -> str:
    """Extract simple name from qualified name (module::name -> name)."""
    return name.split("::")[-1] if "::" in name else name


def get_module_path(name: str) -> str | None:
    """Extract module path from FQN (0x2::module::func -> 0x2::module)."""
    if "::" in name:
        parts = name.rsplit("::", 1)
        return parts[0] if len(parts) == 2 else None
    return None
