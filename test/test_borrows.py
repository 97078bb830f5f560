"""Tests for the borrow table and the static borrow checks."""
from analysis.borrows import (
    BorrowMode,
    BorrowTable,
    GlobalRoot,
    LocalRoot,
    Path,
    function_liveness,
    paths_overlap,
)
from move.ir import (
    AssignStmt,
    BreakStmt,
    ExprStmt,
    FieldAccess,
    IfStmt,
    LetStmt,
    LoopStmt,
    VarRef,
    WhileStmt,
)
from move.types import U64, StructType, TypeParam

from test_utils import binop, call, check_fun, fun, pack, struct

COUNTER = StructType("0x2::M", "Counter")
SHARED = BorrowMode.SHARED
EXCLUSIVE = BorrowMode.EXCLUSIVE


def _local(binding, *fields):
    return Path(LocalRoot(binding), tuple(fields))


def _global(address, *fields, struct_type=COUNTER):
    return Path(GlobalRoot(struct_type, address), tuple(fields))


class TestPaths:
    """Test path overlap."""

    def test_prefix_overlaps(self):
        assert paths_overlap(_local(0), _local(0, "a", "b"))
        assert paths_overlap(_local(0, "a"), _local(0, "a"))

    def test_sibling_fields_are_disjoint(self):
        assert not paths_overlap(_local(0, "a"), _local(0, "b"))

    def test_different_bindings_are_disjoint(self):
        assert not paths_overlap(_local(0), _local(1))

    def test_local_and_global_never_overlap(self):
        assert not paths_overlap(_local(0), _global("0x1"))

    def test_global_addresses(self):
        assert paths_overlap(_global("0x1"), _global("0x1", "value"))
        assert not paths_overlap(_global("0x1"), _global("0x2"))

    def test_unknown_address_overlaps_every_address(self):
        assert paths_overlap(_global(None), _global("0x2"))

    def test_global_types(self):
        other = StructType("0x2::M", "Other")
        assert not paths_overlap(_global("0x1"), _global("0x1", struct_type=other))

    def test_generic_instantiations_may_alias(self):
        a = StructType("0x2::M", "Box", (TypeParam("T"),))
        b = StructType("0x2::M", "Box", (U64,))
        assert paths_overlap(_global("0x1", struct_type=a), _global("0x1", struct_type=b))

    def test_str(self):
        assert str(_global(None, "value")) == "global<0x2::M::Counter>(?).value"


class TestBorrowTable:
    """Test loan bookkeeping."""

    def test_shared_loans_coexist(self):
        table = BorrowTable()
        a, _ = table.request(_local(0), SHARED, "a")
        b, conflicts = table.request(_local(0), SHARED, "b")
        assert a is not None and b is not None
        assert conflicts == []
        assert len(table) == 2

    def test_exclusive_conflicts_with_shared(self):
        table = BorrowTable()
        shared, _ = table.request(_local(0, "f"), SHARED, "a")
        loan, conflicts = table.request(_local(0), EXCLUSIVE, "b")
        assert loan is None
        assert conflicts == [shared]

    def test_shared_conflicts_with_exclusive(self):
        table = BorrowTable()
        table.request(_local(0), EXCLUSIVE, "a")
        loan, _ = table.request(_local(0, "f"), SHARED, "b")
        assert loan is None

    def test_reborrow_through_parent(self):
        table = BorrowTable()
        parent, _ = table.request(_local(0), EXCLUSIVE, "r")
        child, conflicts = table.request(_local(0, "f"), EXCLUSIVE, "temp", through=[parent.id])
        assert child is not None
        assert conflicts == []
        assert child.parents == frozenset({parent.id})

    def test_drop_holder_releases_dead_loans(self):
        table = BorrowTable()
        loan, _ = table.request(_local(0), EXCLUSIVE, "a")
        table.add_holder([loan.id], "b")
        table.drop_holder("a")
        assert table.held_by("b") == {loan.id}
        table.drop_holder("b")
        assert len(table) == 0
        assert table.request(_local(0), EXCLUSIVE, "c")[0] is not None

    def test_drop_holder_for_selected_loans(self):
        table = BorrowTable()
        first, _ = table.request(_local(0), SHARED, "t")
        second, _ = table.request(_local(1), SHARED, "t")
        table.drop_holder("t", [first.id])
        assert table.held_by("t") == {second.id}

    def test_release(self):
        table = BorrowTable()
        loan, _ = table.request(_global("0x1"), EXCLUSIVE, "h")
        table.release(loan.id)
        assert table.live_on(_global("0x1")) == []

    def test_live_on(self):
        table = BorrowTable()
        loan, _ = table.request(_global("0x1", "value"), SHARED, "h")
        assert table.live_on(_global("0x1")) == [loan]
        assert table.live_on(_global("0x2")) == []

    def test_copies_are_independent_but_share_ids(self):
        table = BorrowTable()
        table.request(_local(0), SHARED, "a")
        fork = table.copy()
        left, _ = table.request(_local(1), SHARED, "x")
        right, _ = fork.request(_local(2), SHARED, "y")
        assert left.id != right.id
        assert len(table) == 2 and len(fork) == 2

    def test_merge_keeps_loans_from_both_sides(self):
        table = BorrowTable()
        base, _ = table.request(_local(0), SHARED, "a")
        fork = table.copy()
        fork.add_holder([base.id], "b")
        extra, _ = fork.request(_local(1), EXCLUSIVE, "c")
        table.merge(fork)
        assert table.loans[base.id].holders == {"a", "b"}
        assert extra.id in table.loans


class TestLiveness:
    """Test reference liveness over function bodies."""

    def test_straight_line(self):
        stmts = [
            LetStmt(["r"], VarRef("x")),
            ExprStmt(VarRef("r")),
            ExprStmt(VarRef("y")),
        ]
        live = function_liveness(stmts)
        assert live[id(stmts[0])] == {"r", "y"}
        assert live[id(stmts[1])] == {"y"}
        assert live[id(stmts[2])] == set()

    def test_let_kills_rebound_name(self):
        stmts = [
            LetStmt(["r"], VarRef("a")),
            ExprStmt(VarRef("r")),
            LetStmt(["r"], VarRef("b")),
            ExprStmt(VarRef("r")),
        ]
        live = function_liveness(stmts)
        assert live[id(stmts[0])] == {"r", "b"}
        assert live[id(stmts[1])] == {"b"}

    def test_assignment_kills_local(self):
        stmts = [
            ExprStmt(VarRef("x")),
            AssignStmt(VarRef("x"), VarRef("y")),
            ExprStmt(VarRef("x")),
        ]
        live = function_liveness(stmts)
        assert live[id(stmts[0])] == {"y"}

    def test_loop_body_rebinding_is_not_live_at_the_end(self):
        body = [
            LetStmt(["r"], VarRef("a")),
            LetStmt(["x"], FieldAccess(VarRef("r"), "value")),
            AssignStmt(VarRef("n"), VarRef("x")),
        ]
        stmts = [WhileStmt(VarRef("n"), body)]
        live = function_liveness(stmts)
        assert live[id(body[0])] == {"a", "r"}
        assert live[id(body[1])] == {"a", "x"}
        assert live[id(body[2])] == {"a", "n"}

    def test_break_keeps_names_used_after_the_loop(self):
        tail = ExprStmt(VarRef("a"))
        body = [IfStmt(VarRef("c"), [BreakStmt()]), tail]
        stmts = [LoopStmt(body), ExprStmt(VarRef("r"))]
        live = function_liveness(stmts)
        assert live[id(tail)] == {"a", "c", "r"}


RES_COUNTER = struct("Counter", [("value", "u64")], ["key"])
PAIR = struct("Pair", [("a", "u64"), ("b", "u64")], ["drop"])


def _deref_assign(name, value):
    return {"op": "assign", "target": {"deref": name}, "value": value}


class TestStaticBorrowChecks:
    """Test BorrowConflict reports from function bodies."""

    def test_read_while_mutably_borrowed(self):
        f = fun(
            "f",
            body=[
                {"op": "let", "name": "x", "value": 1},
                {"op": "let", "name": "r", "value": {"borrow": "x", "mut": True}},
                {"op": "let", "name": "y", "value": "x"},
                _deref_assign("r", 2),
            ],
        )
        assert check_fun(f) == ["BorrowConflict"]

    def test_dead_reference_is_released(self):
        f = fun(
            "f",
            returns=["u64"],
            body=[
                {"op": "let", "name": "x", "value": 1},
                {"op": "let", "name": "r", "value": {"borrow": "x", "mut": True}},
                _deref_assign("r", 2),
                {"op": "return", "value": "x"},
            ],
        )
        assert check_fun(f) == []

    def test_two_shared_borrows(self):
        f = fun(
            "f",
            returns=["u64"],
            body=[
                {"op": "let", "name": "x", "value": 1},
                {"op": "let", "name": "a", "value": {"borrow": "x"}},
                {"op": "let", "name": "b", "value": {"borrow": "x"}},
                {"op": "return", "value": {"binop": "+", "left": {"deref": "a"}, "right": {"deref": "b"}}},
            ],
        )
        assert check_fun(f) == []

    def test_mutable_borrow_while_shared_live(self):
        f = fun(
            "f",
            returns=["u64"],
            body=[
                {"op": "let", "name": "x", "value": 1},
                {"op": "let", "name": "a", "value": {"borrow": "x"}},
                {"op": "let", "name": "b", "value": {"borrow": "x", "mut": True}},
                {"op": "return", "value": {"deref": "a"}},
            ],
        )
        assert check_fun(f) == ["BorrowConflict"]

    def test_disjoint_fields(self):
        f = fun(
            "f",
            body=[
                {"op": "let", "name": "p", "value": pack("Pair", a=1, b=2)},
                {"op": "let", "name": "ra", "value": {"borrow": {"field": "a", "of": "p"}, "mut": True}},
                {"op": "let", "name": "rb", "value": {"borrow": {"field": "b", "of": "p"}, "mut": True}},
                _deref_assign("ra", 3),
                _deref_assign("rb", 4),
            ],
        )
        assert check_fun(f, structs=[PAIR]) == []

    def test_returning_reference_into_argument(self):
        f = fun(
            "first",
            params=[("p", "&Pair")],
            returns=["&u64"],
            body=[{"op": "return", "value": {"borrow": {"field": "a", "of": "p"}}}],
        )
        assert check_fun(f, structs=[PAIR]) == []

    def test_freeze(self):
        f = fun(
            "f",
            returns=["u64"],
            body=[
                {"op": "let", "name": "x", "value": 1},
                {"op": "let", "name": "r", "value": {"borrow": "x", "mut": True}},
                {"op": "let", "name": "s", "value": call("freeze", "r")},
                {"op": "return", "value": {"deref": "s"}},
            ],
        )
        assert check_fun(f) == []

    def test_assign_through_shared_reference(self):
        f = fun(
            "f",
            params=[("r", "&u64")],
            body=[_deref_assign("r", 1)],
        )
        assert check_fun(f) == ["TypeMismatch"]

    def test_global_mut_while_shared_live(self):
        f = fun(
            "f",
            params=[("addr", "address")],
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "r1", "value": call("borrow_global", "addr", type_args=["Counter"])},
                {"op": "let", "name": "r2", "value": call("borrow_global_mut", "addr", type_args=["Counter"])},
                {"op": "return", "value": {"field": "value", "of": "r1"}},
            ],
        )
        assert check_fun(f, structs=[RES_COUNTER]) == ["BorrowConflict"]

    def test_globals_at_distinct_literal_addresses(self):
        f = fun(
            "f",
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "r1", "value": call("borrow_global", "@0x1", type_args=["Counter"])},
                {"op": "let", "name": "r2", "value": call("borrow_global_mut", "@0x2", type_args=["Counter"])},
                {
                    "op": "return",
                    "value": {
                        "binop": "+",
                        "left": {"field": "value", "of": "r1"},
                        "right": {"field": "value", "of": "r2"},
                    },
                },
            ],
        )
        assert check_fun(f, structs=[RES_COUNTER]) == []

    def test_move_from_while_borrowed(self):
        f = fun(
            "f",
            params=[("addr", "address")],
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "r", "value": call("borrow_global", "addr", type_args=["Counter"])},
                {
                    "op": "unpack",
                    "struct": "Counter",
                    "fields": {"value": "v"},
                    "value": call("move_from", "addr", type_args=["Counter"]),
                },
                {"op": "return", "value": {"binop": "+", "left": {"field": "value", "of": "r"}, "right": "v"}},
            ],
        )
        assert check_fun(f, structs=[RES_COUNTER]) == ["BorrowConflict"]

    def test_global_borrows_rebound_each_iteration(self):
        f = fun(
            "f",
            params=[("addr", "address"), ("n", "u64")],
            acquires=["Counter"],
            body=[
                {
                    "op": "while",
                    "cond": binop(">", "n", 0),
                    "body": [
                        {"op": "let", "name": "r", "value": call("borrow_global", "addr", type_args=["Counter"])},
                        {"op": "let", "name": "x", "value": {"field": "value", "of": "r"}},
                        {"op": "let", "name": "m", "value": call("borrow_global_mut", "addr", type_args=["Counter"])},
                        {"op": "assign", "target": {"field": "value", "of": "m"}, "value": binop("+", "x", 1)},
                        {"op": "assign", "target": "n", "value": binop("-", "n", 1)},
                    ],
                },
            ],
        )
        assert check_fun(f, structs=[RES_COUNTER]) == []

    def test_shared_global_used_after_mutable_in_loop(self):
        f = fun(
            "f",
            params=[("addr", "address"), ("n", "u64")],
            acquires=["Counter"],
            body=[
                {
                    "op": "while",
                    "cond": binop(">", "n", 0),
                    "body": [
                        {"op": "let", "name": "r", "value": call("borrow_global", "addr", type_args=["Counter"])},
                        {"op": "let", "name": "m", "value": call("borrow_global_mut", "addr", type_args=["Counter"])},
                        {
                            "op": "assign",
                            "target": {"field": "value", "of": "m"},
                            "value": {"field": "value", "of": "r"},
                        },
                        {"op": "assign", "target": "n", "value": binop("-", "n", 1)},
                    ],
                },
            ],
        )
        assert set(check_fun(f, structs=[RES_COUNTER])) == {"BorrowConflict"}

    def test_shadowed_local_borrow(self):
        f = fun(
            "f",
            returns=["u64"],
            body=[
                {"op": "let", "name": "x", "value": 1},
                {"op": "let", "name": "r", "value": {"borrow": "x", "mut": True}},
                _deref_assign("r", 2),
                {"op": "let", "name": "r", "value": {"borrow": "x"}},
                {"op": "let", "name": "y", "value": "x"},
                {"op": "return", "value": binop("+", {"deref": "r"}, "y")},
            ],
        )
        assert check_fun(f) == []

    def test_local_borrow_in_loop(self):
        f = fun(
            "f",
            params=[("n", "u64")],
            returns=["u64"],
            body=[
                {"op": "let", "name": "total", "value": 0},
                {
                    "op": "while",
                    "cond": binop(">", "n", 0),
                    "body": [
                        {"op": "let", "name": "r", "value": {"borrow": "total", "mut": True}},
                        _deref_assign("r", binop("+", {"deref": "r"}, "n")),
                        {"op": "let", "name": "seen", "value": "total"},
                        {"op": "assign", "target": "n", "value": binop("-", "n", 1)},
                        {"op": "expr", "expr": call("assert", binop(">", "seen", 0), 1)},
                    ],
                },
                {"op": "return", "value": "total"},
            ],
        )
        assert check_fun(f) == []

    def test_call_acquiring_borrowed_resource(self):
        bump = fun(
            "bump",
            params=[("addr", "address")],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "c", "value": call("borrow_global_mut", "addr", type_args=["Counter"])},
                {"op": "assign", "target": {"field": "value", "of": "c"}, "value": 0},
            ],
        )
        f = fun(
            "f",
            params=[("addr", "address")],
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "r", "value": call("borrow_global", "addr", type_args=["Counter"])},
                {"op": "expr", "expr": call("bump", "addr")},
                {"op": "return", "value": {"field": "value", "of": "r"}},
            ],
        )
        assert check_fun(bump, f, structs=[RES_COUNTER]) == ["BorrowConflict"]

    def test_call_acquiring_after_reference_is_dead(self):
        bump = fun(
            "bump",
            params=[("addr", "address")],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "c", "value": call("borrow_global_mut", "addr", type_args=["Counter"])},
                {"op": "assign", "target": {"field": "value", "of": "c"}, "value": 0},
            ],
        )
        f = fun(
            "f",
            params=[("addr", "address")],
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "let", "name": "r", "value": call("borrow_global", "addr", type_args=["Counter"])},
                {"op": "let", "name": "v", "value": {"field": "value", "of": "r"}},
                {"op": "expr", "expr": call("bump", "addr")},
                {"op": "return", "value": "v"},
            ],
        )
        assert check_fun(bump, f, structs=[RES_COUNTER]) == []
