"""
Move IR - declarations and function bodies for checking and execution.

The IR is what the checker and the interpreter both consume:
- Struct declarations (type parameters, fields, declared abilities)
- Function declarations (signature, acquires clause, opaque attributes)
- Statements and expressions of function bodies

Types are already resolved descriptors (see move.types). Names of structs and
functions in bodies are fully qualified ("0x2::M::S"), or a builtin name.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from move.types import NO_ABILITIES, AbilitySet, Type


# Global storage operators and other compiler builtins
BUILTIN_MOVE_TO = "move_to"
BUILTIN_MOVE_FROM = "move_from"
BUILTIN_BORROW_GLOBAL = "borrow_global"
BUILTIN_BORROW_GLOBAL_MUT = "borrow_global_mut"
BUILTIN_EXISTS = "exists"
BUILTIN_ASSERT = "assert"
BUILTIN_FREEZE = "freeze"

STORAGE_BUILTINS = {
    BUILTIN_MOVE_TO,
    BUILTIN_MOVE_FROM,
    BUILTIN_BORROW_GLOBAL,
    BUILTIN_BORROW_GLOBAL_MUT,
    BUILTIN_EXISTS,
}
# Storage operators that must be covered by an acquires clause
ACQUIRING_BUILTINS = {BUILTIN_MOVE_FROM, BUILTIN_BORROW_GLOBAL, BUILTIN_BORROW_GLOBAL_MUT}
BUILTINS = STORAGE_BUILTINS | {BUILTIN_ASSERT, BUILTIN_FREEZE}


# =============================================================================
# Expressions
# =============================================================================


@dataclass
class Expr:
    """Base expression."""


@dataclass
class VarRef(Expr):
    """Variable use by value: `x`. Copies when the type has copy, moves otherwise."""

    name: str


@dataclass
class CopyVar(Expr):
    """Explicit copy: `copy x`"""

    name: str


@dataclass
class MoveVar(Expr):
    """Explicit move: `move x`"""

    name: str


@dataclass
class FieldAccess(Expr):
    """Field read: `obj.field`. Reads a copy of the field."""

    base: Expr
    field: str


@dataclass
class Borrow(Expr):
    """Borrow expression: `&x`, `&mut obj.field`"""

    inner: Expr
    mutable: bool


@dataclass
class Deref(Expr):
    """Dereference: `*x`"""

    inner: Expr


@dataclass
class Call(Expr):
    """
    Function call: `0x2::M::f<T>(a, b)` or a builtin such as `borrow_global_mut<S>(addr)`.

    type_args may be empty for generic callees; they are then inferred from argument types.
    """

    callee: str
    args: List[Expr]
    type_args: List[Type] = field(default_factory=list)


@dataclass
class BinOp(Expr):
    """Binary operation: `a + b`, `x < y`"""

    op: str  # "+", "-", "*", "/", "%", "<", ">", "<=", ">=", "==", "!=", "&&", "||"
    left: Expr
    right: Expr


@dataclass
class UnaryOp(Expr):
    """Unary operation: `!x`"""

    op: str  # "!"
    operand: Expr


@dataclass
class Literal(Expr):
    """Literal value: `42u64`, `@0x1`, `true`, `b"hello"`"""

    value: Any
    kind: str  # "u8".."u256", "int" (typed from context), "bool", "address", "bytes"


@dataclass
class Vector(Expr):
    """Vector literal: `vector<T>[a, b, c]`"""

    elements: List[Expr]
    element_type: Optional[Type] = None


@dataclass
class StructPack(Expr):
    """Struct instantiation: `Foo<T> { field1: val1, field2: val2 }`"""

    struct_name: str
    fields: List[Tuple[str, Expr]]
    type_args: List[Type] = field(default_factory=list)


@dataclass
class Cast(Expr):
    """Integer cast: `(expr as u128)`"""

    inner: Expr
    target: str


# =============================================================================
# Statements
# =============================================================================


@dataclass
class Stmt:
    """Base statement. All statements carry their source line for diagnostics."""

    line: int = field(default=0, kw_only=True)


@dataclass
class LetStmt(Stmt):
    """
    Let binding: `let x = expr`, `let (a, b) = call()`, `let _ = expr`.
    A binding named "_" discards its value.
    """

    bindings: List[str]
    value: Optional[Expr]  # None for `let x;` without initializer
    type_ann: Optional[Type] = None


@dataclass
class UnpackStmt(Stmt):
    """
    Destructuring: `let S { a: _a, b: _, c } = value`.
    fields is [(field_name, binding_name)]; binding "_" discards the field.
    """

    struct_name: str
    fields: List[Tuple[str, str]]
    value: Expr
    type_args: List[Type] = field(default_factory=list)


@dataclass
class AssignStmt(Stmt):
    """Assignment: `x = expr`, `obj.field = expr`, `*ref = expr`"""

    target: Expr  # VarRef, FieldAccess, or Deref
    value: Expr


@dataclass
class ExprStmt(Stmt):
    """Expression statement: `foo();` (result discarded)"""

    expr: Expr


@dataclass
class ReturnStmt(Stmt):
    """Return: `return (a, b)`, `return`"""

    values: List[Expr] = field(default_factory=list)


@dataclass
class AbortStmt(Stmt):
    """Abort: `abort code`"""

    code: Expr


@dataclass
class IfStmt(Stmt):
    condition: Expr
    then_body: List[Stmt]
    else_body: Optional[List[Stmt]] = None


@dataclass
class WhileStmt(Stmt):
    condition: Expr
    body: List[Stmt]


@dataclass
class LoopStmt(Stmt):
    body: List[Stmt]


@dataclass
class BreakStmt(Stmt):
    pass


@dataclass
class ContinueStmt(Stmt):
    pass


# =============================================================================
# Declarations
# =============================================================================


@dataclass
class TypeParamDecl:
    """Type parameter with ability constraints: `T: store + drop`, `phantom T`"""

    name: str
    constraints: AbilitySet = NO_ABILITIES
    phantom: bool = False


@dataclass
class FieldDecl:
    name: str
    typ: Type


@dataclass
class StructDecl:
    """Struct declaration: `struct S<T> has key, store { a: u64, b: T }`"""

    name: str
    module: str  # module id, e.g. "0x2::M"
    fields: List[FieldDecl]
    abilities: AbilitySet = NO_ABILITIES
    type_params: List[TypeParamDecl] = field(default_factory=list)
    line: int = 0

    @property
    def qualified_name(self) -> str:
        return f"{self.module}::{self.name}"

    def get_field(self, name: str) -> Optional[FieldDecl]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


@dataclass
class Param:
    """Function parameter."""

    name: str
    typ: Type
    idx: int  # position in parameter list


@dataclass
class Function:
    """
    Move function declaration.

    attributes are opaque annotation metadata (`callable`, `test`, `evm_test`,
    `expected_failure`, ...) mapped to their arguments. The checker never looks
    at them; only the test runner does.
    """

    name: str  # simple name
    module: str
    params: List[Param]
    ret_types: List[Type]
    body: Optional[List[Stmt]]  # None for native functions
    type_params: List[TypeParamDecl] = field(default_factory=list)
    acquires: List[str] = field(default_factory=list)  # struct names as written
    attributes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    is_public: bool = False
    line: int = 0

    @property
    def qualified_name(self) -> str:
        return f"{self.module}::{self.name}"

    @property
    def is_native(self) -> bool:
        return self.body is None


@dataclass
class ConstantDef:
    """Move constant definition: const NAME: TYPE = VALUE;"""

    name: str
    typ: Type
    value: Any


@dataclass
class Module:
    """Move module - container for structs and functions."""

    address: str  # normalized hex, e.g. "0x2"
    name: str
    structs: Dict[str, StructDecl] = field(default_factory=dict)
    functions: Dict[str, Function] = field(default_factory=dict)
    constants: Dict[str, ConstantDef] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.address}::{self.name}"

    def add_struct(self, decl: StructDecl) -> StructDecl:
        self.structs[decl.name] = decl
        return decl

    def add_function(self, func: Function) -> Function:
        self.functions[func.name] = func
        return func


# =============================================================================
# Helpers
# =============================================================================


def child_exprs(expr: Expr) -> Iterator[Expr]:
    """Direct sub-expressions, left to right."""
    if isinstance(expr, FieldAccess):
        yield expr.base
    elif isinstance(expr, (Borrow, Deref, Cast)):
        yield expr.inner
    elif isinstance(expr, Call):
        yield from expr.args
    elif isinstance(expr, BinOp):
        yield expr.left
        yield expr.right
    elif isinstance(expr, UnaryOp):
        yield expr.operand
    elif isinstance(expr, Vector):
        yield from expr.elements
    elif isinstance(expr, StructPack):
        for _, val in expr.fields:
            yield val


def walk_expr(expr: Expr) -> Iterator[Expr]:
    """Pre-order traversal: a call comes before the calls in its arguments."""
    yield expr
    for child in child_exprs(expr):
        yield from walk_expr(child)


def nested_blocks(stmt: Stmt) -> List[List[Stmt]]:
    if isinstance(stmt, IfStmt):
        return [stmt.then_body, stmt.else_body or []]
    if isinstance(stmt, (WhileStmt, LoopStmt)):
        return [stmt.body]
    return []


def stmt_exprs(stmt: Stmt) -> Iterator[Expr]:
    """Root expressions of a statement, then those of its nested blocks."""
    if isinstance(stmt, (LetStmt, UnpackStmt)):
        if stmt.value is not None:
            yield stmt.value
    elif isinstance(stmt, AssignStmt):
        yield stmt.target
        yield stmt.value
    elif isinstance(stmt, ExprStmt):
        yield stmt.expr
    elif isinstance(stmt, ReturnStmt):
        yield from stmt.values
    elif isinstance(stmt, AbortStmt):
        yield stmt.code
    elif isinstance(stmt, (IfStmt, WhileStmt)):
        yield stmt.condition
    for block in nested_blocks(stmt):
        for inner in block:
            yield from stmt_exprs(inner)


def expr_vars(expr: Expr) -> List[str]:
    """
    Variable names referenced in an expression.
    Used for reference liveness: a binding is live while a later statement names it.
    """
    return [e.name for e in walk_expr(expr) if isinstance(e, (VarRef, CopyVar, MoveVar))]


def stmt_vars(stmt: Stmt) -> List[str]:
    return [name for root in stmt_exprs(stmt) for name in expr_vars(root)]


def function_calls(func: Function) -> List[Call]:
    """All call sites in a function body (empty for natives)."""
    return [
        e
        for stmt in func.body or []
        for root in stmt_exprs(stmt)
        for e in walk_expr(root)
        if isinstance(e, Call)
    ]
