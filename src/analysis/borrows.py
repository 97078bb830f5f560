"""
Reference & Borrow Checker primitives.

Borrows are entries in a table keyed by symbolic path rather than by pointer
identity:

- local paths:  (binding id, field, field, ...)
- global paths: (struct type, address key, field, ...)

Two paths overlap when they share a root and one field chain is a prefix of
the other. For globals the address key may be unknown (None), which overlaps
every address of the same type. The same table backs the static checker and
the runtime storage engine; at runtime the address keys are concrete.

A loan is shared or exclusive. Each loan has holders (bindings or temporaries)
and dies when its last holder lets go. A loan obtained through an existing
reference records that reference's loans as parents; parents never conflict
with their children.
"""

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Hashable, Iterable, Iterator, List, Optional, Set, Tuple, Union

from move.ir import (
    AbortStmt,
    AssignStmt,
    BreakStmt,
    ContinueStmt,
    IfStmt,
    LetStmt,
    LoopStmt,
    ReturnStmt,
    Stmt,
    UnpackStmt,
    VarRef,
    WhileStmt,
    expr_vars,
    stmt_vars,
)
from move.types import StructType, Type, is_concrete


class BorrowMode(Enum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


@dataclass(frozen=True)
class LocalRoot:
    binding: int
    name: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.name or f"#{self.binding}"


@dataclass(frozen=True)
class GlobalRoot:
    struct_type: Type
    address: Optional[str]  # None when not statically known

    def __str__(self) -> str:
        return f"global<{self.struct_type}>({self.address or '?'})"


Root = LocalRoot | GlobalRoot


@dataclass(frozen=True)
class Path:
    root: Root
    fields: Tuple[str, ...] = ()

    def extend(self, field_name: str) -> "Path":
        return Path(self.root, self.fields + (field_name,))

    def __str__(self) -> str:
        return ".".join([str(self.root)] + list(self.fields))


def _types_may_alias(a: Type, b: Type) -> bool:
    if a == b:
        return True
    if isinstance(a, StructType) and isinstance(b, StructType):
        if a.qualified_name != b.qualified_name:
            return False
        # Generic instantiations inside a generic function may coincide once instantiated
        return not (is_concrete(a) and is_concrete(b))
    return not (is_concrete(a) and is_concrete(b))


def roots_overlap(a: Root, b: Root) -> bool:
    if isinstance(a, LocalRoot) and isinstance(b, LocalRoot):
        return a.binding == b.binding
    if isinstance(a, GlobalRoot) and isinstance(b, GlobalRoot):
        if not _types_may_alias(a.struct_type, b.struct_type):
            return False
        return a.address is None or b.address is None or a.address == b.address
    return False


def paths_overlap(a: Path, b: Path) -> bool:
    """True when the two locations share memory: same root and prefix-related field chains."""
    if not roots_overlap(a.root, b.root):
        return False
    n = min(len(a.fields), len(b.fields))
    return a.fields[:n] == b.fields[:n]


@dataclass
class Loan:
    id: int
    path: Path
    mode: BorrowMode
    parents: FrozenSet[int] = frozenset()
    holders: Set[Hashable] = field(default_factory=set)

    def __str__(self) -> str:
        return f"{self.mode.value} borrow of {self.path}"


class BorrowTable:
    """
    Live loans, checked on request and released on scope exit.

    Copyable so flow-sensitive analyses can fork it at branches and join the
    results afterwards (see merge()).
    """

    def __init__(self, _ids: Optional[Iterator[int]] = None):
        self.loans: Dict[int, Loan] = {}
        # Shared by forks so loans created on different branches never share an id
        self._ids = _ids if _ids is not None else itertools.count()

    def copy(self) -> "BorrowTable":
        clone = BorrowTable(self._ids)
        clone.loans = {
            lid: Loan(loan.id, loan.path, loan.mode, loan.parents, set(loan.holders)) for lid, loan in self.loans.items()
        }
        return clone

    def merge(self, other: "BorrowTable") -> None:
        """Join: a loan live on either side stays live."""
        for lid, loan in other.loans.items():
            mine = self.loans.get(lid)
            if mine is None:
                self.loans[lid] = Loan(loan.id, loan.path, loan.mode, loan.parents, set(loan.holders))
            else:
                mine.holders |= loan.holders

    def ancestors(self, loan_ids: Iterable[int]) -> Set[int]:
        result: Set[int] = set()
        work = list(loan_ids)
        while work:
            lid = work.pop()
            if lid in result:
                continue
            result.add(lid)
            loan = self.loans.get(lid)
            if loan is not None:
                work.extend(loan.parents)
        return result

    def conflicts(self, path: Path, mode: BorrowMode, through: Iterable[int] = ()) -> List[Loan]:
        """
        Loans that forbid accessing path in mode.

        Exclusive access conflicts with any overlapping loan; shared access
        conflicts with overlapping exclusive loans. Loans reached through
        (the reference being dereferenced, and its ancestors) are exempt.
        """
        exempt = self.ancestors(through)
        found = []
        for loan in self.loans.values():
            if loan.id in exempt or not paths_overlap(loan.path, path):
                continue
            if mode is BorrowMode.EXCLUSIVE or loan.mode is BorrowMode.EXCLUSIVE:
                found.append(loan)
        return found

    def request(
        self,
        path: Path,
        mode: BorrowMode,
        holder: Hashable,
        through: Iterable[int] = (),
    ) -> Tuple[Optional[Loan], List[Loan]]:
        """
        Grant a loan unless it conflicts.

        Returns (loan, []) on success, (None, conflicting_loans) otherwise.
        """
        through = list(through)
        conflicting = self.conflicts(path, mode, through)
        if conflicting:
            return None, conflicting
        loan = Loan(next(self._ids), path, mode, frozenset(through), {holder})
        self.loans[loan.id] = loan
        return loan, []

    def add_holder(self, loan_ids: Iterable[int], holder: Hashable) -> None:
        for lid in loan_ids:
            loan = self.loans.get(lid)
            if loan is not None:
                loan.holders.add(holder)

    def drop_holder(self, holder: Hashable, loan_ids: Optional[Iterable[int]] = None) -> None:
        """Remove holder from the given loans (all loans if None); dead loans are released."""
        targets = list(self.loans.values()) if loan_ids is None else [self.loans[i] for i in loan_ids if i in self.loans]
        for loan in targets:
            loan.holders.discard(holder)
            if not loan.holders:
                del self.loans[loan.id]

    def release(self, loan_id: int) -> None:
        self.loans.pop(loan_id, None)

    def held_by(self, holder: Hashable) -> Set[int]:
        return {lid for lid, loan in self.loans.items() if holder in loan.holders}

    def live_on(self, path: Path) -> List[Loan]:
        return [loan for loan in self.loans.values() if paths_overlap(loan.path, path)]

    def __len__(self) -> int:
        return len(self.loans)


# =============================================================================
# Reference liveness
# =============================================================================

LiveSets = Dict[int, Set[str]]

# (names live where a break lands, names live where a continue lands)
_LoopTargets = Tuple[Set[str], Set[str]]


def function_liveness(body: List[Stmt]) -> LiveSets:
    """
    For each statement of a function body (keyed by id), the variable names
    whose current binding may still be read after it.

    A reference binding whose name is not in the set after its statement is
    dead there, and its loans can be released. A let or unpack kills the names
    it binds, except names live at the end of the enclosing block: those still
    refer to an outer binding that the new one only shadows. Assigning a whole
    local kills it too. Loop heads are solved as a fixpoint, so a name counts
    as live at the end of a loop body only if the next iteration (or the code
    after the loop) reads it before rebinding it.
    """
    result: LiveSets = {}
    _block_live_in(body, set(), None, result)
    return result


def _block_live_in(stmts: List[Stmt], live_out: Set[str], loop: Optional[_LoopTargets], result: LiveSets) -> Set[str]:
    live = set(live_out)
    for stmt in reversed(stmts):
        # later loop rounds overwrite earlier ones; the last round sees the fixpoint
        result[id(stmt)] = set(live)
        live = _stmt_live_in(stmt, live, live_out, loop, result)
    return live


def _stmt_live_in(
    stmt: Stmt,
    after: Set[str],
    block_out: Set[str],
    loop: Optional[_LoopTargets],
    result: LiveSets,
) -> Set[str]:
    if isinstance(stmt, (LetStmt, UnpackStmt)):
        bound = stmt.bindings if isinstance(stmt, LetStmt) else [name for _, name in stmt.fields]
        live = after - (set(bound) - block_out)
        if stmt.value is not None:
            live |= set(expr_vars(stmt.value))
        return live
    if isinstance(stmt, AssignStmt):
        if isinstance(stmt.target, VarRef):
            return (after - {stmt.target.name}) | set(expr_vars(stmt.value))
        return after | set(stmt_vars(stmt))
    if isinstance(stmt, (ReturnStmt, AbortStmt)):
        return set(stmt_vars(stmt))
    if isinstance(stmt, IfStmt):
        return (
            set(expr_vars(stmt.condition))
            | _block_live_in(stmt.then_body, after, loop, result)
            | _block_live_in(stmt.else_body or [], after, loop, result)
        )
    if isinstance(stmt, (WhileStmt, LoopStmt)):
        return _loop_head_live(stmt, after, result)
    if isinstance(stmt, BreakStmt):
        return set(loop[0]) if loop else set(after)
    if isinstance(stmt, ContinueStmt):
        return set(loop[1]) if loop else set(after)
    return after | set(stmt_vars(stmt))


def _loop_head_live(stmt: Union[WhileStmt, LoopStmt], after: Set[str], result: LiveSets) -> Set[str]:
    """Names live at the loop head; also the live-out of the loop body."""
    base: Set[str] = set()
    if isinstance(stmt, WhileStmt):
        base = set(after) | set(expr_vars(stmt.condition))
    head = set(base)
    while True:
        new_head = base | _block_live_in(stmt.body, head, (after, head), result)
        if new_head == head:
            return head
        head = new_head
