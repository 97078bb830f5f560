"""
Interpreter for checked Move IR.

execute() runs one function as a top-level invocation: arguments are coerced
from host values, the body runs against a fresh storage Transaction, and the
transaction commits only if the call returns normally. Any ExecutionError
rolls back every storage mutation of the invocation.

Storage borrows are released the same way the static checker releases them:
temporaries at the end of each statement, reference bindings once no later
statement names them, everything a frame holds when the frame returns.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Set, Union

from analysis import run_checks
from analysis.borrows import LiveSets, function_liveness
from core import config
from core.context import ProjectContext
from core.diagnostics import CheckFailed, has_errors
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
from move.types import INTEGER_BITS, Ability, PrimitiveType, StructType, Type, is_concrete, substitute
from runtime.errors import ARITHMETIC_ERROR, AbortError, CallDepthExceeded, ExecutionError
from runtime.natives import get_native
from runtime.storage import GlobalStorage, Transaction
from runtime.values import (
    Reference,
    Signer,
    StructValue,
    coerce_argument,
    copy_value,
    new_cell,
    values_equal,
)

# Marker left in a local's cell after an explicit move
MOVED = object()


class _Return(Exception):
    def __init__(self, values: List[Any]):
        self.values = values


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


@dataclass
class Frame:
    id: int
    func: Function
    type_args: Dict[str, Type]
    cells: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    holders: Set[Hashable] = field(default_factory=set)
    live: LiveSets = field(default_factory=dict)
    # ids of the cells bound in each open block, innermost last
    blocks: List[Set[int]] = field(default_factory=lambda: [set()])

    @property
    def temp(self) -> Hashable:
        return (self.id, "temp")

    def holder_of(self, cell: Dict[str, Any]) -> Hashable:
        return (self.id, id(cell))


class Interpreter:
    def __init__(self, ctx: ProjectContext, tx: Transaction):
        self.ctx = ctx
        self.tx = tx
        self.depth = 0
        self._frame_ids = itertools.count()
        self._liveness: Dict[str, LiveSets] = {}

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    def call(self, func: Function, type_args: List[Type], args: List[Any], caller_holder: Hashable) -> List[Any]:
        if self.depth >= config.MAX_CALL_DEPTH:
            raise CallDepthExceeded(config.MAX_CALL_DEPTH)
        if func.is_native:
            return get_native(func.qualified_name)(type_args, args)

        frame = Frame(next(self._frame_ids), func, {tp.name: t for tp, t in zip(func.type_params, type_args)})
        if func.qualified_name not in self._liveness:
            self._liveness[func.qualified_name] = function_liveness(func.body or [])
        frame.live = self._liveness[func.qualified_name]
        for param, arg in zip(func.params, args):
            self._bind(frame, param.name, arg)

        self.depth += 1
        try:
            try:
                self._exec_stmts(frame, func.body or [])
                results: List[Any] = []
            except _Return as ret:
                results = ret.values
            # Returned references stay borrowed on behalf of the caller
            for value in results:
                if isinstance(value, Reference):
                    self.tx.borrows.add_holder(value.loans, caller_holder)
            return results
        finally:
            self.depth -= 1
            for holder in frame.holders:
                self.tx.borrows.drop_holder(holder)

    def _bind(self, frame: Frame, name: str, value: Any) -> None:
        if name == "_":
            return
        shadowed = frame.cells.get(name)
        if shadowed is not None and id(shadowed) in frame.blocks[-1]:
            self.tx.borrows.drop_holder(frame.holder_of(shadowed))
        cell = new_cell(value)
        frame.blocks[-1].add(id(cell))
        frame.cells[name] = cell
        if isinstance(value, Reference) and value.loans:
            holder = frame.holder_of(cell)
            frame.holders.add(holder)
            self.tx.borrows.add_holder(value.loans, holder)

    def _hold_temp(self, frame: Frame, value: Any) -> Any:
        if isinstance(value, Reference) and value.loans:
            frame.holders.add(frame.temp)
            self.tx.borrows.add_holder(value.loans, frame.temp)
        return value

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def _exec_block(self, frame: Frame, stmts: List[Stmt]) -> None:
        outer = dict(frame.cells)
        frame.blocks.append(set())
        try:
            self._exec_stmts(frame, stmts)
        finally:
            frame.blocks.pop()
            for name, cell in list(frame.cells.items()):
                if outer.get(name) is cell:
                    continue
                self.tx.borrows.drop_holder(frame.holder_of(cell))
                if name in outer:
                    frame.cells[name] = outer[name]
                else:
                    del frame.cells[name]

    def _exec_stmts(self, frame: Frame, stmts: List[Stmt]) -> None:
        for stmt in stmts:
            self._exec_stmt(frame, stmt)
            self._release(frame, frame.live.get(id(stmt), set()))

    def _release(self, frame: Frame, live_after: Set[str]) -> None:
        self.tx.borrows.drop_holder(frame.temp)
        for name, cell in frame.cells.items():
            if name not in live_after and isinstance(cell["value"], Reference):
                self.tx.borrows.drop_holder(frame.holder_of(cell))

    def _exec_stmt(self, frame: Frame, stmt: Stmt) -> None:
        if isinstance(stmt, LetStmt):
            if stmt.value is None:
                for name in stmt.bindings:
                    self._bind(frame, name, None)
                return
            value = self._eval(frame, stmt.value)
            if len(stmt.bindings) == 1:
                self._bind(frame, stmt.bindings[0], value)
            else:
                for name, item in zip(stmt.bindings, value):
                    self._bind(frame, name, item)

        elif isinstance(stmt, UnpackStmt):
            value = self._eval(frame, stmt.value)
            if not isinstance(value, StructValue):
                raise ExecutionError(f"Cannot unpack non-struct value {value!r}")
            for field_name, name in stmt.fields:
                self._bind(frame, name, value.fields[field_name])

        elif isinstance(stmt, AssignStmt):
            value = self._eval(frame, stmt.value)
            if isinstance(stmt.target, VarRef):
                cell = frame.cells[stmt.target.name]
                self.tx.borrows.drop_holder(frame.holder_of(cell))
                cell["value"] = value
                if isinstance(value, Reference) and value.loans:
                    holder = frame.holder_of(cell)
                    frame.holders.add(holder)
                    self.tx.borrows.add_holder(value.loans, holder)
            else:
                self._place(frame, stmt.target).write(value)

        elif isinstance(stmt, ExprStmt):
            self._eval(frame, stmt.expr)

        elif isinstance(stmt, ReturnStmt):
            values = [self._eval(frame, v) for v in stmt.values]
            # `return f()` where f returns several values
            if len(values) == 1 and isinstance(values[0], tuple):
                values = list(values[0])
            raise _Return(values)

        elif isinstance(stmt, AbortStmt):
            raise AbortError(self._eval(frame, stmt.code), frame.func.qualified_name)

        elif isinstance(stmt, IfStmt):
            cond = self._eval(frame, stmt.condition)
            self.tx.borrows.drop_holder(frame.temp)
            if cond:
                self._exec_block(frame, stmt.then_body)
            elif stmt.else_body:
                self._exec_block(frame, stmt.else_body)

        elif isinstance(stmt, (WhileStmt, LoopStmt)):
            condition = stmt.condition if isinstance(stmt, WhileStmt) else None
            while True:
                if condition is not None:
                    keep_going = self._eval(frame, condition)
                    self.tx.borrows.drop_holder(frame.temp)
                    if not keep_going:
                        break
                try:
                    self._exec_block(frame, stmt.body)
                except _Break:
                    break
                except _Continue:
                    continue

        elif isinstance(stmt, BreakStmt):
            raise _Break()

        elif isinstance(stmt, ContinueStmt):
            raise _Continue()

        else:
            raise ExecutionError(f"Unsupported statement {type(stmt).__name__}")

    # -------------------------------------------------------------------------
    # Places
    # -------------------------------------------------------------------------

    def _place(self, frame: Frame, expr: Expr) -> Reference:
        """Reference to the location an lvalue/borrow expression denotes."""
        if isinstance(expr, (VarRef, CopyVar, MoveVar)):
            cell = frame.cells[expr.name]
            value = cell["value"]
            if isinstance(value, Reference):
                return value
            return Reference(cell, "value", True)
        if isinstance(expr, FieldAccess):
            return self._place(frame, expr.base).field(expr.field)
        if isinstance(expr, Deref):
            return self._eval(frame, expr.inner)
        value = self._eval(frame, expr)
        if isinstance(value, Reference):
            return value
        return Reference(new_cell(value), "value", True)

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _eval(self, frame: Frame, expr: Expr) -> Any:
        if isinstance(expr, (VarRef, CopyVar)):
            cell = frame.cells.get(expr.name)
            if cell is None:
                return self._constant(frame, expr.name)
            value = cell["value"]
            if value is MOVED:
                raise ExecutionError(f"'{expr.name}' was moved")
            if isinstance(value, Reference):
                return self._hold_temp(frame, value)
            return copy_value(value)

        if isinstance(expr, MoveVar):
            cell = frame.cells[expr.name]
            value = cell["value"]
            if value is MOVED:
                raise ExecutionError(f"'{expr.name}' was moved")
            cell["value"] = MOVED
            if isinstance(value, Reference):
                self._hold_temp(frame, value)
                self.tx.borrows.drop_holder(frame.holder_of(cell))
            return value

        if isinstance(expr, Literal):
            if expr.kind == "bytes":
                return list(expr.value)
            return expr.value

        if isinstance(expr, Borrow):
            place = self._place(frame, expr.inner)
            return self._hold_temp(frame, Reference(place.owner, place.key, expr.mutable, place.loans))

        if isinstance(expr, FieldAccess):
            return copy_value(self._place(frame, expr).read())

        if isinstance(expr, Deref):
            ref = self._eval(frame, expr.inner)
            return copy_value(ref.read())

        if isinstance(expr, Call):
            return self._eval_call(frame, expr)

        if isinstance(expr, StructPack):
            struct_type = self._pack_type(frame, expr)
            return StructValue(struct_type, {name: self._eval(frame, value) for name, value in expr.fields})

        if isinstance(expr, BinOp):
            return self._eval_binop(frame, expr)

        if isinstance(expr, UnaryOp):
            return not self._eval(frame, expr.operand)

        if isinstance(expr, Vector):
            return [self._eval(frame, e) for e in expr.elements]

        if isinstance(expr, Cast):
            value = self._eval(frame, expr.inner)
            if not 0 <= value < (1 << INTEGER_BITS[expr.target]):
                raise AbortError(ARITHMETIC_ERROR, frame.func.qualified_name)
            return value

        raise ExecutionError(f"Unsupported expression {type(expr).__name__}")

    def _concrete(self, frame: Frame, t: Type) -> Type:
        result = substitute(t, frame.type_args)
        if not is_concrete(result):
            raise ExecutionError(f"Type '{result}' is not concrete in {frame.func.qualified_name}")
        return result

    def _constant(self, frame: Frame, name: str) -> Any:
        module = self.ctx.modules.get(frame.func.module)
        const = module.constants.get(name) if module is not None else None
        if const is None:
            raise ExecutionError(f"Unknown local '{name}' in {frame.func.qualified_name}")
        if isinstance(const.value, bytes):
            return list(const.value)
        return copy_value(const.value)

    def _pack_type(self, frame: Frame, expr: StructPack) -> StructType:
        recorded = self.ctx.node_types.get(id(expr))
        if recorded is None:
            decl = self.ctx.get_struct(expr.struct_name)
            recorded = StructType(decl.module, decl.name, tuple(expr.type_args))
        return self._concrete(frame, recorded)

    def _storage_type(self, frame: Frame, call: Call) -> StructType:
        t = self._concrete(frame, call.type_args[0])
        if not self.ctx.abilities.has(t, Ability.KEY):
            raise ExecutionError(f"'{t}' does not have 'key'")
        return t

    def _eval_call(self, frame: Frame, call: Call) -> Any:
        callee = call.callee
        if callee == BUILTIN_MOVE_TO:
            signer = self._eval(frame, call.args[0])
            value = self._eval(frame, call.args[1])
            if isinstance(signer, Reference):
                signer = signer.read()
            if not isinstance(signer, Signer):
                raise ExecutionError(f"move_to expects a signer, got {signer!r}")
            t = self._storage_type(frame, call) if call.type_args else value.struct_type
            self.tx.move_to(signer.address, t, value)
            return None
        if callee == BUILTIN_MOVE_FROM:
            return self.tx.move_from(self._eval(frame, call.args[0]), self._storage_type(frame, call))
        if callee == BUILTIN_EXISTS:
            return self.tx.exists(self._eval(frame, call.args[0]), self._storage_type(frame, call))
        if callee in (BUILTIN_BORROW_GLOBAL, BUILTIN_BORROW_GLOBAL_MUT):
            address = self._eval(frame, call.args[0])
            t = self._storage_type(frame, call)
            frame.holders.add(frame.temp)
            if callee == BUILTIN_BORROW_GLOBAL_MUT:
                return self.tx.borrow_global_mut(address, t, holder=frame.temp)
            return self.tx.borrow_global(address, t, holder=frame.temp)
        if callee == BUILTIN_ASSERT:
            cond = self._eval(frame, call.args[0])
            code = self._eval(frame, call.args[1])
            if not cond:
                raise AbortError(code, frame.func.qualified_name)
            return None
        if callee == BUILTIN_FREEZE:
            return self._eval(frame, call.args[0]).freeze()

        func = self.ctx.get_function(callee)
        if func is None:
            raise ExecutionError(f"Unknown function '{callee}'")
        type_args = call.type_args or self.ctx.node_types.get(id(call), [])
        concrete = [self._concrete(frame, t) for t in type_args]
        args = [self._eval(frame, a) for a in call.args]
        results = self.call(func, concrete, args, frame.temp)
        frame.holders.add(frame.temp)
        if not results:
            return None
        if len(results) == 1:
            return results[0]
        return tuple(results)

    def _eval_binop(self, frame: Frame, expr: BinOp) -> Any:
        op = expr.op
        if op == "&&":
            return bool(self._eval(frame, expr.left)) and bool(self._eval(frame, expr.right))
        if op == "||":
            return bool(self._eval(frame, expr.left)) or bool(self._eval(frame, expr.right))
        left = self._eval(frame, expr.left)
        right = self._eval(frame, expr.right)
        if op == "==":
            return values_equal(left, right)
        if op == "!=":
            return not values_equal(left, right)
        if op == "<":
            return left < right
        if op == ">":
            return left > right
        if op == "<=":
            return left <= right
        if op == ">=":
            return left >= right

        int_type = self.ctx.node_types.get(id(expr))
        bits = INTEGER_BITS[int_type.name] if isinstance(int_type, PrimitiveType) else 64
        return arithmetic(op, left, right, bits, frame.func.qualified_name)


def arithmetic(op: str, a: int, b: int, bits: int, location: Optional[str] = None) -> int:
    """Checked integer arithmetic; aborts with ARITHMETIC_ERROR like the Move VM."""
    limit = 1 << bits
    if op in ("<<", ">>"):
        if b >= bits:
            raise AbortError(ARITHMETIC_ERROR, location)
        return (a << b) % limit if op == "<<" else a >> b
    if op in ("/", "%") and b == 0:
        raise AbortError(ARITHMETIC_ERROR, location)
    if op == "+":
        result = a + b
    elif op == "-":
        result = a - b
    elif op == "*":
        result = a * b
    elif op == "/":
        result = a // b
    elif op == "%":
        result = a % b
    elif op == "&":
        result = a & b
    elif op == "|":
        result = a | b
    elif op == "^":
        result = a ^ b
    else:
        raise ExecutionError(f"Unknown operator '{op}'")
    if not 0 <= result < limit:
        raise AbortError(ARITHMETIC_ERROR, location)
    return result


# =============================================================================
# Entry point
# =============================================================================

HOST = ("host", "result")


def ensure_checked(ctx: ProjectContext) -> None:
    """Run pending checks; refuse execution while any module has static errors."""
    pending = [m for m in ctx.modules if m not in ctx.checked_modules]
    if pending:
        run_checks(ctx, pending)
    if has_errors(ctx.diagnostics):
        raise CheckFailed(ctx.diagnostics)


def execute(
    ctx: ProjectContext,
    function: Union[str, Function],
    args: Sequence[Any] = (),
    storage: Optional[GlobalStorage] = None,
    type_args: Iterable[Type] = (),
) -> List[Any]:
    """
    Execute one function as a top-level, transactional invocation.

    Returns the list of return values (empty for functions returning nothing).
    Storage changes are committed only on success; on any ExecutionError
    nothing is written.
    """
    func = ctx.get_function(function) if isinstance(function, str) else function
    if func is None:
        raise ExecutionError(f"Unknown function '{function}'")
    ensure_checked(ctx)

    type_args = list(type_args)
    if len(type_args) != len(func.type_params):
        raise ExecutionError(
            f"'{func.qualified_name}' expects {len(func.type_params)} type argument(s), got {len(type_args)}"
        )
    for tp, t in zip(func.type_params, type_args):
        if not is_concrete(t):
            raise ExecutionError(f"Type argument '{t}' is not concrete")
        if isinstance(t, StructType) and ctx.get_struct(t.qualified_name) is None:
            raise ExecutionError(f"Unknown struct '{t.qualified_name}'")
        missing = [a for a in tp.constraints if not ctx.abilities.has(t, a)]
        if missing:
            raise ExecutionError(f"Type argument '{t}' for '{tp.name}' lacks {', '.join(sorted(map(str, missing)))}")
    if len(args) != len(func.params):
        raise ExecutionError(f"'{func.qualified_name}' takes {len(func.params)} argument(s), got {len(args)}")

    mapping = {tp.name: t for tp, t in zip(func.type_params, type_args)}
    try:
        values = [coerce_argument(substitute(p.typ, mapping), a) for p, a in zip(func.params, args)]
    except ValueError as e:
        raise ExecutionError(str(e))

    storage = storage if storage is not None else GlobalStorage()
    tx = storage.begin()
    debug(f"[tx {tx.id}] execute {func.qualified_name}")
    try:
        results = Interpreter(ctx, tx).call(func, type_args, values, HOST)
        results = [copy_value(r.read()) if isinstance(r, Reference) else r for r in results]
    except BaseException:
        tx.rollback()
        raise
    tx.commit()
    return results
