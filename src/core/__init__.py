from core.context import ProjectContext
from core.diagnostics import CheckFailed, Diagnostic, Location
from core.utils import debug, warn, error

__all__ = [
    "ProjectContext",
    "CheckFailed",
    "Diagnostic",
    "Location",
    "debug",
    "warn",
    "error",
]
