"""
Environment-driven configuration.

Read once at import time. Tests that need different values patch the module
attributes directly.
"""

import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


DEBUG_ENABLED = bool(os.getenv("MOVECORE_DEBUG"))

USE_COLOR = not os.environ.get("MOVECORE_NO_COLORS")

# Interpreter call depth before execution aborts with CallDepthExceeded
MAX_CALL_DEPTH = _int_env("MOVECORE_MAX_CALL_DEPTH", 1024)

# Upper bound on acquires fixpoint rounds; the lattice is finite so this is never hit in practice
MAX_FIXPOINT_ITERATIONS = _int_env("MOVECORE_MAX_FIXPOINT_ITERATIONS", 1000)
