"""
Diagnostic definitions and registry.

All static diagnostic codes MUST be defined here. Attempting to create a
Diagnostic with an unregistered code will raise UnregisteredDiagnosticError.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

# =============================================================================
# DIAGNOSTIC SCHEMA AND REGISTRY
# =============================================================================

Severity = Literal["error", "warning"]
Component = Literal["resolver", "abilities", "linearity", "borrows", "acquires", "typing", "testing"]


@dataclass(frozen=True)
class DiagnosticSchema:
    """Schema describing a diagnostic code."""

    code: str
    component: Component
    description: str
    severity: Severity = "error"


# The registry - single source of truth for all diagnostic codes
DIAGNOSTIC_REGISTRY: Dict[str, DiagnosticSchema] = {}


class UnregisteredDiagnosticError(Exception):
    """Raised when attempting to create a Diagnostic with unregistered code."""

    pass


def define_diagnostic(
    code: str,
    component: Component,
    description: str,
    severity: Severity = "error",
) -> DiagnosticSchema:
    """Define a diagnostic code and register it."""
    if code in DIAGNOSTIC_REGISTRY:
        raise ValueError(f"Diagnostic '{code}' already registered")
    schema = DiagnosticSchema(code, component, description, severity)
    DIAGNOSTIC_REGISTRY[code] = schema
    return schema


# =============================================================================
# DIAGNOSTIC DEFINITIONS
# =============================================================================

define_diagnostic(
    "ArityMismatch",
    "resolver",
    "Number of type arguments does not match the declaration's type parameters",
)
define_diagnostic(
    "UnboundTypeParameter",
    "resolver",
    "Type parameter used outside of a generic context that binds it",
)
define_diagnostic(
    "InvalidPhantomUse",
    "resolver",
    "Phantom type parameter used in a non-phantom position",
)
define_diagnostic(
    "AbilityViolation",
    "abilities",
    "Declared or required abilities are not derivable from the types involved",
)
define_diagnostic(
    "UnconsumedResource",
    "linearity",
    "Value without drop ability is still owned at the end of its scope",
)
define_diagnostic(
    "MissingDropAbility",
    "linearity",
    "Value is discarded but its type lacks the drop ability",
)
define_diagnostic(
    "UseAfterMove",
    "linearity",
    "Value is used after it has been moved on some path",
)
define_diagnostic(
    "BorrowConflict",
    "borrows",
    "Borrow requested while an incompatible borrow of the same location is live",
)
define_diagnostic(
    "MissingAcquires",
    "acquires",
    "Function touches a global resource type not listed in its acquires clause",
)
define_diagnostic(
    "UnusedAcquires",
    "acquires",
    "Acquires clause names a resource type the function never touches",
    severity="warning",
)
define_diagnostic(
    "UnknownName",
    "typing",
    "Reference to an undeclared struct, function, local or field",
)
define_diagnostic(
    "TypeMismatch",
    "typing",
    "Operand, argument or return type does not match the expected type",
)
define_diagnostic(
    "InvalidTestEntry",
    "testing",
    "Test function is generic, returns values, or takes parameters other than signer/address",
)


# =============================================================================
# LOCATIONS AND DIAGNOSTICS
# =============================================================================


@dataclass(frozen=True)
class Location:
    """Where a diagnostic was raised: module, then function or struct, then statement line."""

    module: str
    function: Optional[str] = None
    declaration: Optional[str] = None
    line: int = 0

    def __str__(self) -> str:
        parts = [self.module]
        if self.function:
            parts.append(self.function)
        elif self.declaration:
            parts.append(self.declaration)
        text = "::".join(parts)
        if self.line:
            text += f":{self.line}"
        return text


@dataclass
class Diagnostic:
    """
    Single static checking diagnostic.

    IMPORTANT: All codes must be registered in DIAGNOSTIC_REGISTRY.
    """

    code: str
    message: str
    location: Location
    notes: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.code not in DIAGNOSTIC_REGISTRY:
            raise UnregisteredDiagnosticError(
                f"Diagnostic '{self.code}' is not registered. Add it to core/diagnostics.py using define_diagnostic()."
            )

    @property
    def schema(self) -> DiagnosticSchema:
        return DIAGNOSTIC_REGISTRY[self.code]

    @property
    def severity(self) -> Severity:
        return self.schema.severity

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def __str__(self) -> str:
        return f"{self.location}: {self.code}: {self.message}"


class CheckFailed(Exception):
    """Raised when a module with static errors is handed to the interpreter."""

    def __init__(self, diagnostics: List[Diagnostic]):
        self.diagnostics = diagnostics
        errors = [d for d in diagnostics if d.is_error]
        summary = "; ".join(str(d) for d in errors[:3])
        more = f" (+{len(errors) - 3} more)" if len(errors) > 3 else ""
        super().__init__(f"{len(errors)} static error(s): {summary}{more}")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def get_all_diagnostic_schemas() -> List[DiagnosticSchema]:
    """Get all registered diagnostic schemas."""
    return list(DIAGNOSTIC_REGISTRY.values())


def has_errors(diagnostics: List[Diagnostic]) -> bool:
    return any(d.is_error for d in diagnostics)
