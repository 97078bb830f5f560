"""
Static checking passes over a declaration set.

Pass 1: Declarations - type descriptors and declared abilities of every struct
Pass 2: Signatures - parameter/return types and their constraints
Pass 3: Bodies - value & move tracking with borrow checking
Pass 4: Acquires - declared clauses compared to the call-graph fixpoint

The call graph and the acquires fixpoint are built before the bodies pass:
calls into a function that acquires a still-borrowed resource are borrow
conflicts at the call site.

Checking does not stop at the first error: independent declarations and
functions are all checked and every diagnostic is collected.
"""

from typing import Iterable, List, Optional

from analysis.acquires import check_acquires, compute_acquires_closure
from analysis.abilities import env_from_params
from analysis.call_graph import build_call_graph_ir
from analysis.linearity import check_function_body
from core.context import ProjectContext
from core.diagnostics import Diagnostic, Location
from core.utils import debug
from move.ir import Function, Module
from move.types import TupleType


def check_signature(ctx: ProjectContext, func: Function) -> bool:
    location = Location(func.module, function=func.name, line=func.line)
    bound = [tp.name for tp in func.type_params]
    env = env_from_params(func.type_params)
    ok = True
    seen = set()
    for param in func.params:
        if param.name in seen:
            ctx.report("TypeMismatch", f"Duplicate parameter '{param.name}' in '{func.name}'", location)
            ok = False
        seen.add(param.name)
        if ctx.resolver.validate_type(param.typ, bound, location):
            ok = ctx.abilities.check_instantiation(param.typ, env, location) and ok
        else:
            ok = False
    for ret in func.ret_types:
        if isinstance(ret, TupleType):
            ctx.report("TypeMismatch", f"Nested tuple in return type of '{func.name}'", location)
            ok = False
            continue
        if ctx.resolver.validate_type(ret, bound, location):
            ok = ctx.abilities.check_instantiation(ret, env, location) and ok
        else:
            ok = False
    return ok


def run_checks(ctx: ProjectContext, module_ids: Optional[Iterable[str]] = None) -> List[Diagnostic]:
    """
    Run every checking pass over the selected modules (all modules if None).

    Diagnostics are appended to ctx.diagnostics; the ones for the selected
    modules are returned.
    """
    selected = set(module_ids) if module_ids is not None else set(ctx.modules)
    modules = [ctx.modules[m] for m in sorted(selected) if m in ctx.modules]

    # Pass 1: declarations
    for module in modules:
        for decl in module.structs.values():
            ctx.resolver.check_struct_decl(decl)
            ctx.abilities.check_struct_decl(decl)

    build_call_graph_ir(ctx)
    compute_acquires_closure(ctx)

    # Pass 2/3: signatures, then bodies of functions whose signatures resolved
    for module in modules:
        for func in module.functions.values():
            if check_signature(ctx, func):
                check_function_body(ctx, func)

    # Pass 4: acquires over the whole unit
    for module in modules:
        for func in module.functions.values():
            check_acquires(ctx, func)

    ctx.checked_modules.update(m.id for m in modules)
    result = [d for d in ctx.diagnostics if d.location.module in selected]
    debug(f"Checked {len(modules)} module(s): {len(result)} diagnostic(s)")
    return result


def check(module: Module, dependencies: Iterable[Module] = ()) -> List[Diagnostic]:
    """
    Check one module against its dependencies (the stdlib is always available).

    Returns the diagnostics raised for the module; an empty list means it may
    be executed.
    """
    from move.stdlib import std_modules

    ctx = ProjectContext(list(std_modules()) + list(dependencies) + [module])
    return run_checks(ctx, [module.id])


__all__ = ["check", "run_checks", "check_signature"]
