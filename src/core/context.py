"""
Describes the context shared by all checking passes: the declaration universe
(every loaded module, the built-in stdlib included), per-pass results, and the
diagnostics collected so far.
"""

from typing import Any, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from core.diagnostics import Diagnostic, Location

if TYPE_CHECKING:
    from move.ir import Function, Module, StructDecl
    from analysis.call_graph import CallGraph
    from analysis.resolver import TypeResolver
    from analysis.abilities import AbilityChecker

# Maps: fully_qualified_name ("0x2::M::S") -> declaration
StructIndex = Dict[str, "StructDecl"]
FunctionIndex = Dict[str, "Function"]


class ProjectContext:
    """
    Describes the whole declaration set under analysis, keeping all the
    information required for cross-module lookups.
    """

    def __init__(self, modules: Iterable["Module"]):
        self.modules: Dict[str, "Module"] = {}
        self.struct_index: StructIndex = {}
        self.function_index: FunctionIndex = {}
        self.diagnostics: List[Diagnostic] = []
        self.call_graph: Optional["CallGraph"] = None
        self.acquires_closure: Dict[str, set] = {}  # func fqn -> struct fqns touched transitively
        self.checked_modules: Set[str] = set()  # module ids run_checks has seen
        self.node_types: Dict[int, Any] = {}  # id(expr) -> type resolved by the checker, for the interpreter
        self._resolver: Optional["TypeResolver"] = None
        self._abilities: Optional["AbilityChecker"] = None
        for module in modules:
            self.add_module(module)

    def add_module(self, module: "Module") -> None:
        self.modules[module.id] = module
        for decl in module.structs.values():
            self.struct_index[decl.qualified_name] = decl
        for func in module.functions.values():
            self.function_index[func.qualified_name] = func

    def get_struct(self, fqn: str) -> Optional["StructDecl"]:
        return self.struct_index.get(fqn)

    def get_function(self, fqn: str) -> Optional["Function"]:
        return self.function_index.get(fqn)

    @property
    def resolver(self) -> "TypeResolver":
        """Type descriptor resolver (built lazily on first access)."""
        if self._resolver is None:
            from analysis.resolver import TypeResolver

            self._resolver = TypeResolver(self)
        return self._resolver

    @property
    def abilities(self) -> "AbilityChecker":
        """Ability checker (built lazily on first access)."""
        if self._abilities is None:
            from analysis.abilities import AbilityChecker

            self._abilities = AbilityChecker(self)
        return self._abilities

    def report(self, code: str, message: str, location: Location, notes: Optional[List[str]] = None) -> Diagnostic:
        diag = Diagnostic(code, message, location, notes or [])
        self.diagnostics.append(diag)
        return diag
