"""
Acquires Verifier.

Per function, the set of resource types it may touch in global storage via
move_from / borrow_global / borrow_global_mut, directly or through calls.
Types are abstracted to their struct identity ("0x2::M::S") since acquires
clauses are written without type arguments.

The closure is a fixpoint over the call graph: every function starts with its
direct accesses, and callee closures are unioned in until nothing changes.
Recursive cycles converge because the sets only grow and are bounded by the
struct universe.
"""

from typing import Dict, List, Set, TYPE_CHECKING

from analysis.call_graph import build_call_graph_ir, get_transitive_callees
from core import config
from core.diagnostics import Location
from core.utils import debug, warn
from move.ir import ACQUIRING_BUILTINS, Function, function_calls
from move.types import StructType, normalize_address

if TYPE_CHECKING:
    from core.context import ProjectContext


def direct_accesses(func: Function) -> Set[str]:
    """Struct identities accessed by the acquiring builtins in func's own body."""
    result: Set[str] = set()
    for call in function_calls(func):
        if call.callee not in ACQUIRING_BUILTINS or not call.type_args:
            continue
        t = call.type_args[0]
        # Accesses through a type parameter are not attributable to a declared struct
        if isinstance(t, StructType):
            result.add(t.qualified_name)
    return result


def resolve_acquires_name(name: str, module_id: str) -> str:
    """
    Qualify a name from an acquires clause.

    "S" -> "<module>::S", "M::S" -> "<address>::M::S", "0x02::M::S" -> "0x2::M::S".
    """
    parts = name.split("::")
    if len(parts) == 1:
        return f"{module_id}::{name}"
    if len(parts) == 2:
        address = module_id.split("::")[0]
        return f"{address}::{name}"
    return "::".join([normalize_address(parts[0])] + parts[1:])


def compute_acquires_closure(ctx: "ProjectContext") -> Dict[str, Set[str]]:
    """Fixpoint union of direct accesses over the call graph. Stores result in ctx.acquires_closure."""
    cg = ctx.call_graph or build_call_graph_ir(ctx)
    closure: Dict[str, Set[str]] = {
        fqn: direct_accesses(func) for fqn, func in ctx.function_index.items()
    }

    iterations = 0
    changed = True
    while changed:
        iterations += 1
        if iterations > config.MAX_FIXPOINT_ITERATIONS:
            warn(f"Acquires fixpoint did not converge after {config.MAX_FIXPOINT_ITERATIONS} iterations")
            break
        changed = False
        for fqn, callees in cg.callees.items():
            current = closure.setdefault(fqn, set())
            before = len(current)
            for callee in callees:
                current |= closure.get(callee, set())
            if len(current) != before:
                changed = True

    debug(f"Acquires fixpoint converged after {iterations} iteration(s)")
    ctx.acquires_closure = closure
    return closure


def _acquired_via(ctx: "ProjectContext", fqn: str, struct_fqn: str) -> List[str]:
    """Callees (deepest first) that touch struct_fqn directly."""
    cg = ctx.call_graph
    if cg is None:
        return []
    result = []
    for callee in get_transitive_callees(fqn, cg.callees):
        func = ctx.get_function(callee)
        if func is not None and struct_fqn in direct_accesses(func):
            result.append(callee)
    return result


def check_acquires(ctx: "ProjectContext", func: Function) -> bool:
    """Compare a function's acquires closure with its declared clause."""
    if func.is_native:
        return True
    closure = ctx.acquires_closure.get(func.qualified_name, set())
    declared = {resolve_acquires_name(name, func.module) for name in func.acquires}
    location = Location(func.module, function=func.name, line=func.line)
    ok = True

    direct = direct_accesses(func)
    for struct_fqn in sorted(closure - declared):
        notes = []
        if struct_fqn not in direct:
            via = _acquired_via(ctx, func.qualified_name, struct_fqn)
            if via:
                notes.append(f"acquired through {', '.join(via)}")
        ctx.report(
            "MissingAcquires",
            f"'{func.name}' accesses '{struct_fqn}' in global storage but does not declare 'acquires {struct_fqn.split('::')[-1]}'",
            location,
            notes,
        )
        ok = False

    for struct_fqn in sorted(declared - closure):
        if ctx.get_struct(struct_fqn) is None:
            ctx.report("UnknownName", f"Unknown struct '{struct_fqn}' in acquires clause of '{func.name}'", location)
            ok = False
            continue
        ctx.report(
            "UnusedAcquires",
            f"'{func.name}' declares 'acquires {struct_fqn.split('::')[-1]}' but never accesses it",
            location,
        )
    return ok
