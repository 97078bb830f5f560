"""
Call graph over every loaded function.

An edge caller -> callee is recorded for each call site whose target is a user
function or a native; builtins (move_to, borrow_global, assert, ...) are not
functions and never appear. The acquires analysis walks these edges to
propagate global accesses up to callers.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, TYPE_CHECKING

from core.utils import debug
from move.ir import BUILTINS, function_calls

if TYPE_CHECKING:
    from core.context import ProjectContext


@dataclass
class CallGraph:
    """Direct edges both ways, plus the reachable set of every function."""

    callees: Dict[str, Set[str]] = field(default_factory=dict)
    callers: Dict[str, Set[str]] = field(default_factory=dict)
    transitive_callees: Dict[str, Set[str]] = field(default_factory=dict)

    def add_edge(self, caller: str, callee: str) -> None:
        self.callees.setdefault(caller, set()).add(callee)
        self.callers.setdefault(callee, set()).add(caller)

    def reachable_from(self, fqn: str) -> Set[str]:
        """Every function some call chain from fqn reaches (fqn itself only through a cycle)."""
        seen: Set[str] = set()
        pending: List[str] = list(self.callees.get(fqn, ()))
        while pending:
            name = pending.pop()
            if name not in seen:
                seen.add(name)
                pending.extend(self.callees.get(name, ()))
        return seen


def build_call_graph_ir(ctx: "ProjectContext") -> CallGraph:
    """Build the graph from the call sites of every function and store it in ctx.call_graph."""
    cg = CallGraph()
    for func in ctx.function_index.values():
        # natives get an entry too, with no outgoing edges
        cg.callees.setdefault(func.qualified_name, set())
        for call in function_calls(func):
            if call.callee not in BUILTINS:
                cg.add_edge(func.qualified_name, call.callee)

    cg.transitive_callees = {fqn: cg.reachable_from(fqn) for fqn in cg.callees}
    ctx.call_graph = cg
    debug(f"Call graph: {len(cg.callees)} function(s), {sum(map(len, cg.callees.values()))} edge(s)")
    return cg


def get_transitive_callees(func_name: str, call_graph: Dict[str, Iterable[str]], max_depth: int = 64) -> List[str]:
    """
    Callees reachable from func_name, deepest first, each listed once.

    Siblings are visited in sorted order. A cycle is cut only on the current
    call chain, so a function reachable along two chains is explored on both.
    """
    on_chain: Set[str] = set()
    order: Dict[str, None] = {}

    def visit(name: str, depth: int) -> None:
        if name in on_chain or depth <= 0:
            return
        on_chain.add(name)
        for callee in sorted(call_graph.get(name, ())):
            visit(callee, depth - 1)
            order.setdefault(callee, None)
        on_chain.discard(name)

    visit(func_name, max_depth)
    return list(order)
