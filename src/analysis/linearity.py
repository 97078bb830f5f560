"""
Value & Move Tracker.

A single forward dataflow pass over a function body. Every local binding gets
an entry in an analysis-local arena (indexed by binding id) and a per-path
state tag: unassigned, live, consumed, or maybe-consumed after a join.

Rules enforced:
- packing consumes each field initializer; unpacking consumes the struct and
  produces one live binding per field (`_` fields must have drop)
- passing by value, returning, and storing with move_to consume
- a copy needs the copy ability; a use of a consumed value is UseAfterMove
- a value still owned at the end of its scope is implicitly dropped when its
  type has drop, otherwise UnconsumedResource is reported
- discarding (let _ / expression statements / overwrites) needs drop

The same pass drives the borrow table (analysis.borrows): references carry
the loans they hold, temporaries are released at the end of their expression
or statement, and reference bindings release their loans once no later
statement names them.

Expression types are synthesized along the way; None stands for "unknown"
after an earlier error, and suppresses follow-on reports.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from analysis.abilities import AbilityEnv, env_from_params
from analysis.borrows import (
    BorrowMode,
    BorrowTable,
    GlobalRoot,
    Loan,
    LocalRoot,
    LiveSets,
    Path,
    function_liveness,
)
from core.diagnostics import Location
from core.utils import debug
from move.ir import (
    BUILTIN_ASSERT,
    BUILTIN_BORROW_GLOBAL,
    BUILTIN_BORROW_GLOBAL_MUT,
    BUILTIN_EXISTS,
    BUILTIN_FREEZE,
    BUILTIN_MOVE_FROM,
    BUILTIN_MOVE_TO,
    AbortStmt,
    AssignStmt,
    BinOp,
    Borrow,
    BreakStmt,
    Call,
    Cast,
    ContinueStmt,
    CopyVar,
    Deref,
    Expr,
    ExprStmt,
    FieldAccess,
    Function,
    IfStmt,
    LetStmt,
    Literal,
    LoopStmt,
    MoveVar,
    ReturnStmt,
    Stmt,
    StructPack,
    UnaryOp,
    UnpackStmt,
    VarRef,
    Vector,
    WhileStmt,
)
from move.types import (
    ADDRESS,
    BOOL,
    INTEGER_BITS,
    INTEGER_TYPES,
    SIGNER,
    U64,
    U8,
    UNIT,
    Ability,
    PrimitiveType,
    RefType,
    StructType,
    TupleType,
    Type,
    TypeParam,
    VectorType,
    is_concrete,
    is_integer,
    normalize_address,
    substitute,
)

if TYPE_CHECKING:
    from core.context import ProjectContext


TEMP = "<temp>"  # holder of loans owned by the expression being evaluated

ARITHMETIC_OPS = {"+", "-", "*", "/", "%", "&", "|", "^", "<<", ">>"}
COMPARISON_OPS = {"<", ">", "<=", ">="}
EQUALITY_OPS = {"==", "!="}
LOGICAL_OPS = {"&&", "||"}

# Bound on loop re-analysis; states only move toward maybe-consumed, so two rounds suffice in practice
MAX_LOOP_ROUNDS = 4


class LocalState(Enum):
    UNASSIGNED = "unassigned"
    LIVE = "live"
    CONSUMED = "consumed"
    MAYBE_CONSUMED = "maybe-consumed"


def join_states(a: LocalState, b: LocalState) -> LocalState:
    if a == b:
        return a
    return LocalState.MAYBE_CONSUMED


@dataclass
class Binding:
    id: int
    name: str
    typ: Optional[Type]
    line: int
    is_param: bool = False


@dataclass
class FlowState:
    """Dataflow state at a program point."""

    locals: Dict[int, LocalState] = field(default_factory=dict)
    scope: Dict[str, int] = field(default_factory=dict)  # visible name -> binding id
    ref_paths: Dict[int, Optional[Path]] = field(default_factory=dict)  # reference binding -> referent
    borrows: BorrowTable = field(default_factory=BorrowTable)
    reachable: bool = True

    def copy(self) -> "FlowState":
        return FlowState(
            dict(self.locals),
            dict(self.scope),
            dict(self.ref_paths),
            self.borrows.copy(),
            self.reachable,
        )

    def signature(self) -> Tuple:
        """Comparable summary used to detect loop fixpoints."""
        loans = frozenset((loan.path, loan.mode) for loan in self.borrows.loans.values())
        return (frozenset(self.locals.items()), loans, self.reachable)


def merge_states(a: FlowState, b: FlowState) -> FlowState:
    if not a.reachable:
        return b.copy()
    if not b.reachable:
        return a.copy()
    merged = a.copy()
    for bid, sb in b.locals.items():
        sa = merged.locals.get(bid)
        merged.locals[bid] = sb if sa is None else join_states(sa, sb)
    for bid, path in b.ref_paths.items():
        merged.ref_paths.setdefault(bid, path)
    merged.borrows.merge(b.borrows)
    return merged


def unreachable_state(template: FlowState) -> FlowState:
    state = template.copy()
    state.reachable = False
    return state


@dataclass
class Operand:
    """Result of evaluating an expression: its type, and for references the loans and referent."""

    typ: Optional[Type]
    loans: Set[int] = field(default_factory=set)
    path: Optional[Path] = None


@dataclass
class Place:
    """A location reached by a borrow/field chain."""

    typ: Optional[Type]
    path: Optional[Path]
    through: Set[int]  # loans of the reference the place is reached through
    mutable: bool


@dataclass
class _LoopContext:
    frame_depth: int
    breaks: List[FlowState] = field(default_factory=list)
    continues: List[FlowState] = field(default_factory=list)


class FunctionChecker:
    """Checks one function body. Diagnostics go to the shared ProjectContext."""

    def __init__(self, ctx: "ProjectContext", func: Function):
        self.ctx = ctx
        self.func = func
        self.env: AbilityEnv = env_from_params(func.type_params)
        self.type_param_names = [tp.name for tp in func.type_params]
        self.bindings: List[Binding] = []  # arena, indexed by binding id
        self._frames: List[List[int]] = []
        self._loops: List[_LoopContext] = []
        self._line = func.line
        self._seen: Set[Tuple[str, str, int]] = set()
        self._live: LiveSets = {}

    # -------------------------------------------------------------------------
    # Entry
    # -------------------------------------------------------------------------

    def check(self) -> None:
        if self.func.body is None:
            return
        debug(f"Checking body of {self.func.qualified_name}")
        state = FlowState()
        self._live = function_liveness(self.func.body)
        self._frames.append([])
        for param in self.func.params:
            bid = self._declare(state, param.name, param.typ, is_param=True)
            if isinstance(param.typ, RefType):
                state.ref_paths[bid] = Path(LocalRoot(-1 - param.idx, f"*{param.name}"))
        state = self._check_block_stmts(self.func.body, state)
        if state.reachable:
            if self.func.ret_types:
                self._report("TypeMismatch", f"'{self.func.name}' can fall through without returning a value")
            self._exit_frame(state, self._frames[-1])
        self._frames.pop()

    # -------------------------------------------------------------------------
    # Reporting and bindings
    # -------------------------------------------------------------------------

    def _location(self) -> Location:
        return Location(self.func.module, function=self.func.name, line=self._line)

    def _report(self, code: str, message: str) -> None:
        key = (code, message, self._line)
        if key in self._seen:
            return
        self._seen.add(key)
        self.ctx.report(code, message, self._location())

    def _declare(self, state: FlowState, name: str, typ: Optional[Type], is_param: bool = False) -> int:
        shadowed = state.scope.get(name)
        # a shadowed reference from this same block can never be read again
        if shadowed is not None and shadowed in self._frames[-1] and isinstance(self.bindings[shadowed].typ, RefType):
            state.borrows.drop_holder(shadowed)
        binding = Binding(len(self.bindings), name, typ, self._line, is_param)
        self.bindings.append(binding)
        state.locals[binding.id] = LocalState.LIVE
        state.scope[name] = binding.id
        self._frames[-1].append(binding.id)
        return binding.id

    def _has(self, t: Optional[Type], ability: Ability) -> bool:
        if t is None:
            return True
        return self.ctx.abilities.has(t, ability, self.env)

    def _lookup(self, state: FlowState, name: str) -> Optional[Binding]:
        bid = state.scope.get(name)
        return self.bindings[bid] if bid is not None else None

    def _exit_frame(self, state: FlowState, frame: List[int]) -> None:
        """End of scope: drop what may be dropped, report what may not."""
        for bid in frame:
            binding = self.bindings[bid]
            st = state.locals.get(bid)
            if st in (LocalState.LIVE, LocalState.MAYBE_CONSUMED) and not self._has(binding.typ, Ability.DROP):
                qualifier = "" if st is LocalState.LIVE else " on some path"
                self._report(
                    "UnconsumedResource",
                    f"'{binding.name}: {binding.typ}' is not consumed{qualifier} before the end of its scope",
                )
            state.borrows.drop_holder(bid)

    def _release_dead_refs(self, state: FlowState, live_after: Set[str]) -> None:
        for name, bid in state.scope.items():
            if name not in live_after and isinstance(self.bindings[bid].typ, RefType):
                state.borrows.drop_holder(bid)

    # -------------------------------------------------------------------------
    # Types
    # -------------------------------------------------------------------------

    def _compatible(self, actual: Optional[Type], expected: Optional[Type]) -> bool:
        if actual is None or expected is None or actual == expected:
            return True
        if isinstance(actual, RefType) and isinstance(expected, RefType):
            # &mut T coerces to &T
            return actual.referent == expected.referent and actual.mutable and not expected.mutable
        return False

    def _expect(self, actual: Optional[Type], expected: Optional[Type], what: str) -> bool:
        if self._compatible(actual, expected):
            return True
        self._report("TypeMismatch", f"{what}: expected '{expected}', found '{actual}'")
        return False

    def _check_type(self, t: Type) -> bool:
        location = self._location()
        if not self.ctx.resolver.validate_type(t, self.type_param_names, location):
            return False
        return self.ctx.abilities.check_instantiation(t, self.env, location)

    def _unify(self, param: Type, arg: Optional[Type], names: Set[str], mapping: Dict[str, Type]) -> bool:
        """Bind type parameters in param so it matches arg."""
        if arg is None:
            return True
        if isinstance(param, TypeParam) and param.name in names:
            bound = mapping.get(param.name)
            if bound is None:
                mapping[param.name] = arg
                return True
            return bound == arg
        if isinstance(param, RefType) and isinstance(arg, RefType):
            if param.mutable and not arg.mutable:
                return False
            return self._unify(param.referent, arg.referent, names, mapping)
        if isinstance(param, VectorType) and isinstance(arg, VectorType):
            return self._unify(param.element, arg.element, names, mapping)
        if isinstance(param, StructType) and isinstance(arg, StructType):
            if param.qualified_name != arg.qualified_name or len(param.type_args) != len(arg.type_args):
                return False
            return all(self._unify(p, a, names, mapping) for p, a in zip(param.type_args, arg.type_args))
        return param == arg

    def _resolve_type_args(
        self,
        owner: str,
        type_params: list,
        explicit: List[Type],
        formals: List[Type],
        actuals: List[Optional[Type]],
    ) -> Optional[List[Type]]:
        """Explicit type arguments, or ones inferred from actual argument types."""
        if not type_params:
            if explicit:
                self._report("ArityMismatch", f"'{owner}' takes no type arguments, got {len(explicit)}")
                return None
            return []
        if explicit:
            if len(explicit) != len(type_params):
                self._report(
                    "ArityMismatch",
                    f"'{owner}' expects {len(type_params)} type argument(s), got {len(explicit)}",
                )
                return None
            if not all(self._check_type(t) for t in explicit):
                return None
            return list(explicit)
        names = {tp.name for tp in type_params}
        mapping: Dict[str, Type] = {}
        for formal, actual in zip(formals, actuals):
            self._unify(formal, actual, names, mapping)
        missing = [tp.name for tp in type_params if tp.name not in mapping]
        if missing:
            self._report("TypeMismatch", f"Cannot infer type argument(s) {', '.join(missing)} for '{owner}'")
            return None
        return [mapping[tp.name] for tp in type_params]

    # -------------------------------------------------------------------------
    # Blocks and statements
    # -------------------------------------------------------------------------

    def _check_block(self, stmts: List[Stmt], state: FlowState) -> FlowState:
        """A nested block: its bindings go out of scope at its end."""
        outer_scope = dict(state.scope)
        self._frames.append([])
        state = self._check_block_stmts(stmts, state)
        frame = self._frames.pop()
        if state.reachable:
            self._exit_frame(state, frame)
        state.scope = outer_scope
        return state

    def _check_block_stmts(self, stmts: List[Stmt], state: FlowState) -> FlowState:
        for stmt in stmts:
            if not state.reachable:
                break
            self._line = stmt.line or self._line
            state = self._check_stmt(stmt, state)
            if state.reachable:
                state.borrows.drop_holder(TEMP)
                self._release_dead_refs(state, self._live.get(id(stmt), set()))
        return state

    def _check_stmt(self, stmt: Stmt, state: FlowState) -> FlowState:
        if isinstance(stmt, LetStmt):
            self._check_let(stmt, state)
        elif isinstance(stmt, UnpackStmt):
            self._check_unpack(stmt, state)
        elif isinstance(stmt, AssignStmt):
            self._check_assign(stmt, state)
        elif isinstance(stmt, ExprStmt):
            op = self._eval(stmt.expr, state)
            if op.typ is not None and op.typ != UNIT and not self._has(op.typ, Ability.DROP):
                self._report("MissingDropAbility", f"Result of type '{op.typ}' is discarded but lacks 'drop'")
        elif isinstance(stmt, ReturnStmt):
            return self._check_return(stmt, state)
        elif isinstance(stmt, AbortStmt):
            self._expect(self._eval(stmt.code, state, expected=U64).typ, U64, "abort code")
            return unreachable_state(state)
        elif isinstance(stmt, IfStmt):
            return self._check_if(stmt, state)
        elif isinstance(stmt, WhileStmt):
            return self._check_loop(stmt.body, state, condition=stmt.condition)
        elif isinstance(stmt, LoopStmt):
            return self._check_loop(stmt.body, state, condition=None)
        elif isinstance(stmt, (BreakStmt, ContinueStmt)):
            return self._check_jump(stmt, state)
        return state

    def _check_let(self, stmt: LetStmt, state: FlowState) -> None:
        stmt_type: Optional[Type] = stmt.type_ann
        if stmt_type is not None and not self._check_type(stmt_type):
            stmt_type = None

        if stmt.value is None:
            if stmt.type_ann is None:
                self._report("TypeMismatch", "Declaration without initializer needs a type annotation")
            for name in stmt.bindings:
                if name == "_":
                    continue
                bid = self._declare(state, name, stmt_type)
                state.locals[bid] = LocalState.UNASSIGNED
            return

        op = self._eval(stmt.value, state, expected=stmt_type)
        value_type = op.typ
        if stmt_type is not None:
            self._expect(value_type, stmt_type, f"let {', '.join(stmt.bindings)}")
            value_type = stmt_type

        if len(stmt.bindings) == 1 and not (isinstance(value_type, TupleType) and stmt.bindings[0] != "_"):
            types: List[Optional[Type]] = [value_type]
        elif isinstance(value_type, TupleType) and len(value_type.elements) == len(stmt.bindings):
            types = list(value_type.elements)
        else:
            if value_type is not None:
                self._report(
                    "TypeMismatch",
                    f"Cannot bind {len(stmt.bindings)} names to a value of type '{value_type}'",
                )
            types = [None] * len(stmt.bindings)

        for name, t in zip(stmt.bindings, types):
            if name == "_":
                if t is not None and not self._has(t, Ability.DROP):
                    self._report("MissingDropAbility", f"Value of type '{t}' bound to '_' lacks 'drop'")
                continue
            bid = self._declare(state, name, t)
            if isinstance(t, RefType):
                state.borrows.add_holder(op.loans, bid)
                state.ref_paths[bid] = op.path

    def _check_unpack(self, stmt: UnpackStmt, state: FlowState) -> None:
        decl = self.ctx.get_struct(stmt.struct_name)
        op = self._eval(stmt.value, state)
        if decl is None:
            self._report("UnknownName", f"Unknown struct '{stmt.struct_name}'")
            for _, name in stmt.fields:
                if name != "_":
                    self._declare(state, name, None)
            return

        struct_type: Optional[StructType] = None
        if stmt.type_args:
            if all(self._check_type(t) for t in stmt.type_args):
                struct_type = self.ctx.resolver.instantiate(stmt.struct_name, list(stmt.type_args), self._location())
        elif isinstance(op.typ, StructType) and op.typ.qualified_name == decl.qualified_name:
            struct_type = op.typ
        elif not decl.type_params:
            struct_type = StructType(decl.module, decl.name)

        if struct_type is not None:
            self._expect(op.typ, struct_type, f"unpack of '{decl.name}'")
        layout = dict(self.ctx.resolver.field_types(struct_type)) if struct_type is not None else {}

        named = [f for f, _ in stmt.fields]
        for f in decl.fields:
            if f.name not in named:
                self._report("TypeMismatch", f"Unpack of '{decl.name}' does not bind field '{f.name}'")
        for field_name, name in stmt.fields:
            if decl.get_field(field_name) is None:
                self._report("UnknownName", f"'{decl.name}' has no field '{field_name}'")
                ft = None
            else:
                ft = layout.get(field_name)
            if name == "_":
                if ft is not None and not self._has(ft, Ability.DROP):
                    self._report(
                        "MissingDropAbility",
                        f"Field '{field_name}: {ft}' is discarded with '_' but lacks 'drop'",
                    )
                continue
            self._declare(state, name, ft)

    def _check_assign(self, stmt: AssignStmt, state: FlowState) -> None:
        target = stmt.target
        if isinstance(target, VarRef):
            binding = self._lookup(state, target.name)
            op = self._eval(stmt.value, state, expected=binding.typ if binding else None)
            if binding is None:
                self._report("UnknownName", f"Unknown local '{target.name}'")
                return
            self._expect(op.typ, binding.typ, f"assignment to '{target.name}'")
            if state.locals.get(binding.id) in (LocalState.LIVE, LocalState.MAYBE_CONSUMED):
                if not self._has(binding.typ, Ability.DROP):
                    self._report(
                        "MissingDropAbility",
                        f"Assignment overwrites '{target.name}: {binding.typ}' which lacks 'drop'",
                    )
            path = Path(LocalRoot(binding.id, binding.name))
            self._conflict_check(state, path, BorrowMode.EXCLUSIVE, set(), f"assign to '{target.name}'")
            state.borrows.drop_holder(binding.id)
            state.locals[binding.id] = LocalState.LIVE
            if isinstance(binding.typ, RefType):
                state.borrows.add_holder(op.loans, binding.id)
                state.ref_paths[binding.id] = op.path
            return

        if isinstance(target, (FieldAccess, Deref)):
            place = self._place(target, state, mutable=True)
            op = self._eval(stmt.value, state, expected=place.typ if place else None)
            if place is None:
                return
            if not place.mutable:
                self._report("TypeMismatch", "Cannot assign through an immutable reference")
            self._expect(op.typ, place.typ, "assignment")
            if place.typ is not None and not self._has(place.typ, Ability.DROP):
                self._report("MissingDropAbility", f"Assignment overwrites a value of type '{place.typ}' which lacks 'drop'")
            if place.path is not None:
                self._conflict_check(state, place.path, BorrowMode.EXCLUSIVE, place.through, "write")
            self._release_temps(state, place.through)
            return

        self._report("TypeMismatch", "Invalid assignment target")

    def _check_return(self, stmt: ReturnStmt, state: FlowState) -> FlowState:
        expected = self.func.ret_types
        ops = [
            self._eval(v, state, expected=expected[i] if i < len(expected) else None)
            for i, v in enumerate(stmt.values)
        ]
        if len(ops) != len(expected):
            self._report(
                "TypeMismatch",
                f"'{self.func.name}' returns {len(expected)} value(s), return statement has {len(ops)}",
            )
        else:
            for i, (op, t) in enumerate(zip(ops, expected)):
                self._expect(op.typ, t, f"return value {i}")
        for frame in self._frames:
            self._exit_frame(state, frame)
        return unreachable_state(state)

    def _check_if(self, stmt: IfStmt, state: FlowState) -> FlowState:
        self._expect(self._eval(stmt.condition, state, expected=BOOL).typ, BOOL, "if condition")
        state.borrows.drop_holder(TEMP)
        then_state = self._check_block(stmt.then_body, state.copy())
        else_state = self._check_block(stmt.else_body or [], state.copy())
        return merge_states(then_state, else_state)

    def _loop_iteration(
        self,
        body: List[Stmt],
        state: FlowState,
        condition: Optional[Expr],
    ) -> Tuple[FlowState, _LoopContext, Optional[FlowState]]:
        false_exit = None
        if condition is not None:
            self._expect(self._eval(condition, state, expected=BOOL).typ, BOOL, "while condition")
            state.borrows.drop_holder(TEMP)
            false_exit = state.copy()
        loop_ctx = _LoopContext(len(self._frames))
        self._loops.append(loop_ctx)
        end = self._check_block(body, state)
        self._loops.pop()
        return end, loop_ctx, false_exit

    def _check_loop(
        self,
        body: List[Stmt],
        state: FlowState,
        condition: Optional[Expr],
    ) -> FlowState:
        head = state

        # Silent rounds: find the loop-head state, discarding their diagnostics
        for _ in range(MAX_LOOP_ROUNDS):
            saved = len(self.ctx.diagnostics)
            saved_seen = set(self._seen)
            end, loop_ctx, _ = self._loop_iteration(body, head.copy(), condition)
            del self.ctx.diagnostics[saved:]
            self._seen = saved_seen
            back = end
            for cont in loop_ctx.continues:
                back = merge_states(back, cont)
            new_head = merge_states(head, back)
            new_head.scope = dict(head.scope)
            if new_head.signature() == head.signature():
                break
            head = new_head

        end, loop_ctx, false_exit = self._loop_iteration(body, head.copy(), condition)
        exits = list(loop_ctx.breaks)
        if false_exit is not None:
            exits.append(false_exit)
        if not exits:
            return unreachable_state(state)
        result = exits[0]
        for other in exits[1:]:
            result = merge_states(result, other)
        result.scope = dict(state.scope)
        return result

    def _check_jump(self, stmt: Stmt, state: FlowState) -> FlowState:
        if not self._loops:
            self._report("TypeMismatch", "break/continue outside of a loop")
            return unreachable_state(state)
        loop_ctx = self._loops[-1]
        for frame in self._frames[loop_ctx.frame_depth :]:
            self._exit_frame(state, frame)
        snapshot = state.copy()
        if isinstance(stmt, BreakStmt):
            loop_ctx.breaks.append(snapshot)
        else:
            loop_ctx.continues.append(snapshot)
        return unreachable_state(state)

    # -------------------------------------------------------------------------
    # Borrow helpers
    # -------------------------------------------------------------------------

    def _describe(self, loans: List[Loan]) -> str:
        return "; ".join(str(loan) for loan in loans)

    def _conflict_check(self, state: FlowState, path: Path, mode: BorrowMode, through: Set[int], what: str) -> bool:
        conflicting = state.borrows.conflicts(path, mode, through)
        if conflicting:
            self._report("BorrowConflict", f"Cannot {what} ({path}): conflicts with {self._describe(conflicting)}")
            return False
        return True

    def _request(self, state: FlowState, path: Path, mode: BorrowMode, through: Set[int], what: str) -> Set[int]:
        loan, conflicting = state.borrows.request(path, mode, TEMP, through)
        if loan is None:
            self._report("BorrowConflict", f"Cannot {what} ({path}): conflicts with {self._describe(conflicting)}")
            return set()
        return {loan.id}

    def _release_temps(self, state: FlowState, loans: Set[int]) -> None:
        state.borrows.drop_holder(TEMP, loans)

    def _address_key(self, expr: Expr) -> Optional[str]:
        if isinstance(expr, Literal) and expr.kind == "address":
            try:
                return normalize_address(expr.value)
            except ValueError:
                return None
        return None

    # -------------------------------------------------------------------------
    # Places
    # -------------------------------------------------------------------------

    def _place(self, expr: Expr, state: FlowState, mutable: bool) -> Optional[Place]:
        """Resolve a borrowable location: a local, a field chain, or a dereferenced reference."""
        if isinstance(expr, (VarRef, CopyVar, MoveVar)):
            binding = self._lookup(state, expr.name)
            if binding is None:
                self._report("UnknownName", f"Unknown local '{expr.name}'")
                return None
            self._check_readable(state, binding)
            if isinstance(binding.typ, RefType):
                return Place(
                    binding.typ.referent,
                    state.ref_paths.get(binding.id),
                    state.borrows.held_by(binding.id),
                    binding.typ.mutable,
                )
            return Place(binding.typ, Path(LocalRoot(binding.id, binding.name)), set(), True)

        if isinstance(expr, FieldAccess):
            base = self._place(expr.base, state, mutable)
            if base is None:
                return None
            if base.typ is None:
                return Place(None, None, base.through, base.mutable)
            if not isinstance(base.typ, StructType):
                self._report("TypeMismatch", f"Field access '.{expr.field}' on non-struct type '{base.typ}'")
                return None
            decl = self.ctx.get_struct(base.typ.qualified_name)
            if decl is None or decl.get_field(expr.field) is None:
                self._report("UnknownName", f"'{base.typ}' has no field '{expr.field}'")
                return None
            ft = self.ctx.resolver.field_type(base.typ, expr.field)
            path = base.path.extend(expr.field) if base.path is not None else None
            return Place(ft, path, base.through, base.mutable)

        if isinstance(expr, Deref):
            op = self._eval(expr.inner, state)
            return self._place_from_operand(op, "dereference")

        op = self._eval(expr, state)
        if isinstance(op.typ, RefType) or op.typ is None:
            return self._place_from_operand(op, "field access")
        # Struct rvalue: a temporary that is dropped after the access
        if not self._has(op.typ, Ability.DROP):
            self._report("MissingDropAbility", f"Temporary of type '{op.typ}' is discarded but lacks 'drop'")
        return Place(op.typ, None, set(), True)

    def _place_from_operand(self, op: Operand, what: str) -> Optional[Place]:
        if op.typ is None:
            return Place(None, None, op.loans, True)
        if not isinstance(op.typ, RefType):
            self._report("TypeMismatch", f"Cannot {what} a non-reference of type '{op.typ}'")
            return None
        return Place(op.typ.referent, op.path, op.loans, op.typ.mutable)

    def _check_readable(self, state: FlowState, binding: Binding) -> bool:
        st = state.locals.get(binding.id)
        if st is LocalState.CONSUMED:
            self._report("UseAfterMove", f"'{binding.name}' is used after being moved")
            return False
        if st is LocalState.MAYBE_CONSUMED:
            self._report("UseAfterMove", f"'{binding.name}' may have been moved on some path")
            return False
        if st is LocalState.UNASSIGNED:
            self._report("UseAfterMove", f"'{binding.name}' is used before being assigned")
            return False
        return True

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _eval(self, expr: Expr, state: FlowState, expected: Optional[Type] = None) -> Operand:
        if isinstance(expr, (VarRef, CopyVar, MoveVar)):
            return self._eval_var(expr, state)
        if isinstance(expr, Literal):
            return Operand(self._literal_type(expr, expected))
        if isinstance(expr, Borrow):
            return self._eval_borrow(expr, state)
        if isinstance(expr, FieldAccess):
            place = self._place(expr, state, mutable=False)
            if place is None:
                return Operand(None)
            if place.path is not None:
                self._conflict_check(state, place.path, BorrowMode.SHARED, place.through, "read field")
            if place.typ is not None and not self._has(place.typ, Ability.COPY):
                self._report(
                    "AbilityViolation",
                    f"Reading field '{expr.field}' copies a '{place.typ}', which lacks 'copy'",
                )
            self._release_temps(state, place.through)
            return Operand(place.typ)
        if isinstance(expr, Deref):
            op = self._eval(expr.inner, state)
            place = self._place_from_operand(op, "dereference")
            if place is None:
                return Operand(None)
            if place.path is not None:
                self._conflict_check(state, place.path, BorrowMode.SHARED, place.through, "read through reference")
            if place.typ is not None and not self._has(place.typ, Ability.COPY):
                self._report("AbilityViolation", f"Dereference copies a '{place.typ}', which lacks 'copy'")
            self._release_temps(state, op.loans)
            return Operand(place.typ)
        if isinstance(expr, Call):
            return self._eval_call(expr, state, expected)
        if isinstance(expr, StructPack):
            return self._eval_pack(expr, state)
        if isinstance(expr, BinOp):
            return self._eval_binop(expr, state, expected)
        if isinstance(expr, UnaryOp):
            op = self._eval(expr.operand, state, expected=BOOL)
            if expr.op != "!":
                self._report("TypeMismatch", f"Unknown unary operator '{expr.op}'")
                return Operand(None)
            self._expect(op.typ, BOOL, "operand of '!'")
            return Operand(BOOL)
        if isinstance(expr, Vector):
            return self._eval_vector(expr, state, expected)
        if isinstance(expr, Cast):
            op = self._eval(expr.inner, state)
            if op.typ is not None and not is_integer(op.typ):
                self._report("TypeMismatch", f"Cannot cast non-integer '{op.typ}'")
            if expr.target not in INTEGER_TYPES:
                self._report("TypeMismatch", f"Cannot cast to '{expr.target}'")
                return Operand(None)
            return Operand(PrimitiveType(expr.target))
        self._report("TypeMismatch", f"Unsupported expression {type(expr).__name__}")
        return Operand(None)

    def _literal_type(self, lit: Literal, expected: Optional[Type]) -> Optional[Type]:
        if lit.kind == "int" or lit.kind in INTEGER_TYPES:
            if lit.kind == "int":
                t = expected if expected is not None and is_integer(expected) else U64
            else:
                t = PrimitiveType(lit.kind)
            if not 0 <= lit.value < (1 << INTEGER_BITS[t.name]):
                self._report("TypeMismatch", f"Literal {lit.value} does not fit in '{t}'")
            self.ctx.node_types[id(lit)] = t
            return t
        if lit.kind == "bool":
            return BOOL
        if lit.kind == "address":
            return ADDRESS
        if lit.kind == "bytes":
            return VectorType(U8)
        self._report("TypeMismatch", f"Unknown literal kind '{lit.kind}'")
        return None

    def _eval_var(self, expr: Expr, state: FlowState) -> Operand:
        name = expr.name  # type: ignore[attr-defined]
        binding = self._lookup(state, name)
        if binding is None:
            module = self.ctx.modules.get(self.func.module)
            if module is not None and name in module.constants:
                return Operand(module.constants[name].typ)
            self._report("UnknownName", f"Unknown local '{name}'")
            return Operand(None)
        if not self._check_readable(state, binding):
            return Operand(binding.typ)

        path = Path(LocalRoot(binding.id, binding.name))
        copies = isinstance(expr, CopyVar) or (isinstance(expr, VarRef) and self._has(binding.typ, Ability.COPY))
        if isinstance(expr, CopyVar) and not self._has(binding.typ, Ability.COPY):
            self._report("AbilityViolation", f"'copy {name}' requires 'copy' but '{binding.typ}' lacks it")
            return Operand(binding.typ)

        if isinstance(binding.typ, RefType):
            loans = state.borrows.held_by(binding.id)
            state.borrows.add_holder(loans, TEMP)
            if not copies:
                state.borrows.drop_holder(binding.id)
                state.locals[binding.id] = LocalState.CONSUMED
            return Operand(binding.typ, loans, state.ref_paths.get(binding.id))

        if copies:
            self._conflict_check(state, path, BorrowMode.SHARED, set(), f"copy '{name}'")
        else:
            self._conflict_check(state, path, BorrowMode.EXCLUSIVE, set(), f"move '{name}'")
            state.locals[binding.id] = LocalState.CONSUMED
        return Operand(binding.typ)

    def _eval_borrow(self, expr: Borrow, state: FlowState) -> Operand:
        if isinstance(expr.inner, (VarRef, CopyVar, MoveVar)):
            binding = self._lookup(state, expr.inner.name)
            if binding is not None and isinstance(binding.typ, RefType):
                self._report("TypeMismatch", f"Cannot borrow reference '{binding.name}' again")
                return Operand(None)
        place = self._place(expr.inner, state, mutable=expr.mutable)
        if place is None:
            return Operand(None)
        if expr.mutable and not place.mutable:
            self._report("TypeMismatch", "Cannot borrow mutably through an immutable reference")
        typ = RefType(place.typ, expr.mutable) if place.typ is not None else None
        if place.path is None:
            return Operand(typ, set(place.through), None)
        mode = BorrowMode.EXCLUSIVE if expr.mutable else BorrowMode.SHARED
        what = "borrow mutably" if expr.mutable else "borrow"
        loans = self._request(state, place.path, mode, place.through, what)
        self._release_temps(state, place.through)
        return Operand(typ, loans, place.path)

    def _eval_args(self, args: List[Expr], formals: List[Optional[Type]], state: FlowState) -> List[Operand]:
        ops = []
        for i, arg in enumerate(args):
            expected = formals[i] if i < len(formals) else None
            ops.append(self._eval(arg, state, expected=expected))
        return ops

    def _eval_call(self, call: Call, state: FlowState, expected: Optional[Type]) -> Operand:
        if call.callee in (BUILTIN_MOVE_TO, BUILTIN_MOVE_FROM, BUILTIN_BORROW_GLOBAL, BUILTIN_BORROW_GLOBAL_MUT, BUILTIN_EXISTS):
            return self._eval_storage_op(call, state, expected)
        if call.callee == BUILTIN_ASSERT:
            ops = self._eval_args(call.args, [BOOL, U64], state)
            if len(ops) != 2:
                self._report("TypeMismatch", f"assert takes 2 arguments, got {len(ops)}")
            else:
                self._expect(ops[0].typ, BOOL, "assert condition")
                self._expect(ops[1].typ, U64, "assert code")
            return Operand(UNIT)
        if call.callee == BUILTIN_FREEZE:
            ops = self._eval_args(call.args, [], state)
            if len(ops) != 1:
                self._report("TypeMismatch", f"freeze takes 1 argument, got {len(ops)}")
                return Operand(None)
            t = ops[0].typ
            if t is None:
                return Operand(None)
            if not (isinstance(t, RefType) and t.mutable):
                self._report("TypeMismatch", f"freeze expects '&mut _', found '{t}'")
                return Operand(None)
            return Operand(RefType(t.referent, False), ops[0].loans, ops[0].path)

        func = self.ctx.get_function(call.callee)
        if func is None:
            self._eval_args(call.args, [], state)
            self._report("UnknownName", f"Unknown function '{call.callee}'")
            return Operand(None)

        formals = [p.typ for p in func.params]
        # Generic formals only become concrete once type arguments are known
        hints = [t if is_concrete(t) else None for t in formals]
        ops = self._eval_args(call.args, hints, state)
        if len(ops) != len(formals):
            self._report(
                "TypeMismatch",
                f"'{call.callee}' takes {len(formals)} argument(s), got {len(ops)}",
            )
            return Operand(None)

        type_args = self._resolve_type_args(
            call.callee, func.type_params, call.type_args, formals, [op.typ for op in ops]
        )
        if type_args is None:
            return Operand(None)
        location = self._location()
        self.ctx.abilities.check_constraints(call.callee, func.type_params, type_args, self.env, location)
        self.ctx.node_types[id(call)] = type_args
        mapping = {tp.name: t for tp, t in zip(func.type_params, type_args)}
        for i, (op, formal) in enumerate(zip(ops, formals)):
            self._expect(op.typ, substitute(formal, mapping), f"argument {i} of '{call.callee}'")
        self._check_acquired_loans(call.callee, state)

        rets = [substitute(t, mapping) for t in func.ret_types]
        arg_loans: Set[int] = set()
        for op in ops:
            arg_loans |= op.loans
        if len(rets) == 1 and isinstance(rets[0], RefType):
            # A returned reference is derived from the reference arguments
            paths = [op.path for op in ops if isinstance(op.typ, RefType)]
            return Operand(rets[0], arg_loans, paths[0] if len(paths) == 1 else None)
        self._release_temps(state, arg_loans)
        if not rets:
            return Operand(UNIT)
        if len(rets) == 1:
            return Operand(rets[0])
        return Operand(TupleType(tuple(rets)))

    def _check_acquired_loans(self, callee: str, state: FlowState) -> None:
        """A callee may not acquire a resource the caller still holds a reference into."""
        acquired = self.ctx.acquires_closure.get(callee, set())
        if not acquired:
            return
        held = [
            loan
            for loan in state.borrows.loans.values()
            if isinstance(loan.path.root, GlobalRoot)
            and isinstance(loan.path.root.struct_type, StructType)
            and loan.path.root.struct_type.qualified_name in acquired
        ]
        if held:
            self._report(
                "BorrowConflict",
                f"Cannot call '{callee}', which acquires a borrowed resource: {self._describe(held)}",
            )

    def _storage_type(self, call: Call, inferred: Optional[Type]) -> Optional[Type]:
        if len(call.type_args) > 1:
            self._report("ArityMismatch", f"'{call.callee}' expects 1 type argument, got {len(call.type_args)}")
            return None
        if call.type_args:
            t = call.type_args[0]
            if not self._check_type(t):
                return None
        elif inferred is not None:
            t = inferred
        else:
            self._report("TypeMismatch", f"'{call.callee}' needs an explicit resource type")
            return None
        if not isinstance(t, (StructType, TypeParam)):
            self._report("TypeMismatch", f"'{call.callee}' requires a struct type, found '{t}'")
            return None
        if not self.ctx.abilities.require(t, Ability.KEY, self.env, self._location(), f"'{call.callee}<{t}>'"):
            return None
        return t

    def _eval_storage_op(self, call: Call, state: FlowState, expected: Optional[Type]) -> Operand:
        if call.callee == BUILTIN_MOVE_TO:
            hint = call.type_args[0] if len(call.type_args) == 1 else None
            ops = self._eval_args(call.args, [RefType(SIGNER), hint], state)
            if len(ops) != 2:
                self._report("TypeMismatch", f"move_to takes 2 arguments, got {len(ops)}")
                return Operand(UNIT)
            self._expect(ops[0].typ, RefType(SIGNER), "move_to signer")
            self._release_temps(state, ops[0].loans)
            t = self._storage_type(call, ops[1].typ)
            if t is not None:
                self._expect(ops[1].typ, t, "move_to value")
            return Operand(UNIT)

        ops = self._eval_args(call.args, [ADDRESS], state)
        if len(ops) != 1:
            self._report("TypeMismatch", f"'{call.callee}' takes 1 argument, got {len(ops)}")
            return Operand(None)
        self._expect(ops[0].typ, ADDRESS, f"'{call.callee}' address")
        t = self._storage_type(call, None)
        if t is None:
            return Operand(None)

        path = Path(GlobalRoot(t, self._address_key(call.args[0])))
        if call.callee == BUILTIN_EXISTS:
            return Operand(BOOL)
        if call.callee == BUILTIN_MOVE_FROM:
            self._conflict_check(state, path, BorrowMode.EXCLUSIVE, set(), f"move_from<{t}>")
            return Operand(t)
        mutable = call.callee == BUILTIN_BORROW_GLOBAL_MUT
        mode = BorrowMode.EXCLUSIVE if mutable else BorrowMode.SHARED
        loans = self._request(state, path, mode, set(), f"{call.callee}<{t}>")
        return Operand(RefType(t, mutable), loans, path)

    def _eval_pack(self, expr: StructPack, state: FlowState) -> Operand:
        decl = self.ctx.get_struct(expr.struct_name)
        if decl is None:
            for _, value in expr.fields:
                self._eval(value, state)
            self._report("UnknownName", f"Unknown struct '{expr.struct_name}'")
            return Operand(None)

        given: Dict[str, Expr] = {}
        for name, value in expr.fields:
            if name in given:
                self._report("TypeMismatch", f"Field '{name}' of '{decl.name}' given twice")
            given[name] = value

        generic_fields = {f.name: f.typ for f in decl.fields}
        if expr.type_args:
            struct_type = None
            if all(self._check_type(t) for t in expr.type_args):
                struct_type = self.ctx.resolver.instantiate(expr.struct_name, list(expr.type_args), self._location())
            layout = dict(self.ctx.resolver.field_types(struct_type)) if struct_type is not None else {}
        else:
            struct_type = StructType(decl.module, decl.name) if not decl.type_params else None
            layout = dict(self.ctx.resolver.field_types(struct_type)) if struct_type is not None else {}

        ops: Dict[str, Operand] = {}
        for name, value in expr.fields:
            if decl.get_field(name) is None:
                self._eval(value, state)
                self._report("UnknownName", f"'{decl.name}' has no field '{name}'")
                continue
            ops[name] = self._eval(value, state, expected=layout.get(name))
        for f in decl.fields:
            if f.name not in given:
                self._report("TypeMismatch", f"Pack of '{decl.name}' is missing field '{f.name}'")

        if struct_type is None and decl.type_params and not expr.type_args:
            names = [f for f in ops if f in generic_fields]
            type_args = self._resolve_type_args(
                decl.qualified_name,
                decl.type_params,
                [],
                [generic_fields[f] for f in names],
                [ops[f].typ for f in names],
            )
            if type_args is None:
                return Operand(None)
            struct_type = StructType(decl.module, decl.name, tuple(type_args))
            self.ctx.abilities.check_constraints(
                decl.qualified_name, decl.type_params, type_args, self.env, self._location()
            )
            layout = dict(self.ctx.resolver.field_types(struct_type))

        if struct_type is None:
            return Operand(None)
        for name, op in ops.items():
            if isinstance(op.typ, RefType):
                self._report("TypeMismatch", f"Field '{name}' of '{decl.name}' cannot hold a reference")
            self._expect(op.typ, layout.get(name), f"field '{name}' of '{decl.name}'")
        self.ctx.node_types[id(expr)] = struct_type
        return Operand(struct_type)

    def _eval_binop(self, expr: BinOp, state: FlowState, expected: Optional[Type]) -> Operand:
        if expr.op in LOGICAL_OPS:
            left = self._eval(expr.left, state, expected=BOOL)
            right = self._eval(expr.right, state, expected=BOOL)
            self._expect(left.typ, BOOL, f"left operand of '{expr.op}'")
            self._expect(right.typ, BOOL, f"right operand of '{expr.op}'")
            return Operand(BOOL)

        hint = expected if expr.op in ARITHMETIC_OPS else None
        shift = expr.op in ("<<", ">>")
        # An untyped literal on the left takes the type of the right operand
        if isinstance(expr.left, Literal) and expr.left.kind == "int" and not shift:
            right = self._eval(expr.right, state, expected=hint)
            left = self._eval(expr.left, state, expected=right.typ)
        else:
            left = self._eval(expr.left, state, expected=hint)
            right = self._eval(expr.right, state, expected=U8 if shift else left.typ)

        if expr.op in EQUALITY_OPS:
            self._expect(right.typ, left.typ, f"operands of '{expr.op}'")
            for op in (left, right):
                if op.typ is not None and not self._has(op.typ, Ability.DROP):
                    self._report("AbilityViolation", f"'{expr.op}' consumes a '{op.typ}', which lacks 'drop'")
            self._release_temps(state, left.loans | right.loans)
            return Operand(BOOL)

        if expr.op not in ARITHMETIC_OPS and expr.op not in COMPARISON_OPS:
            self._report("TypeMismatch", f"Unknown binary operator '{expr.op}'")
            return Operand(None)
        for op in (left, right):
            if op.typ is not None and not is_integer(op.typ):
                self._report("TypeMismatch", f"Operator '{expr.op}' expects integers, found '{op.typ}'")
                return Operand(None)
        if expr.op in ("<<", ">>"):
            self._expect(right.typ, U8, f"shift amount of '{expr.op}'")
        else:
            self._expect(right.typ, left.typ, f"operands of '{expr.op}'")
        if expr.op in COMPARISON_OPS:
            return Operand(BOOL)
        if isinstance(left.typ, PrimitiveType):
            self.ctx.node_types[id(expr)] = left.typ
        return Operand(left.typ)

    def _eval_vector(self, expr: Vector, state: FlowState, expected: Optional[Type]) -> Operand:
        elem_type = expr.element_type
        if elem_type is not None and not self._check_type(elem_type):
            elem_type = None
        if elem_type is None and isinstance(expected, VectorType):
            elem_type = expected.element
        for elem in expr.elements:
            op = self._eval(elem, state, expected=elem_type)
            if elem_type is None:
                elem_type = op.typ
            else:
                self._expect(op.typ, elem_type, "vector element")
            if isinstance(op.typ, RefType):
                self._report("TypeMismatch", "Vectors cannot hold references")
        if elem_type is None:
            if not expr.elements:
                self._report("TypeMismatch", "Cannot infer the element type of an empty vector")
            return Operand(None)
        return Operand(VectorType(elem_type))


def check_function_body(ctx: "ProjectContext", func: Function) -> None:
    """Run the Value & Move Tracker (and the borrow checks it drives) over one function."""
    FunctionChecker(ctx, func).check()
    debug(f"Checked {func.qualified_name}")

