"""Tests for the acquires verifier."""
import pytest

from analysis.acquires import direct_accesses, resolve_acquires_name

from test_utils import binop, call, check_modules, codes, error_codes, fun, module, sample_module, struct

COUNTER = struct("Counter", [("value", "u64")], ["key"])


def _read(addr="addr"):
    return {"field": "value", "of": call("borrow_global", addr, type_args=["Counter"])}


def _reader(name, acquires=()):
    return fun(
        name,
        params=[("addr", "address")],
        returns=["u64"],
        acquires=acquires,
        body=[{"op": "return", "value": _read()}],
    )


def _check(*functions):
    return check_modules(module(structs=[COUNTER], functions=functions))


class TestClosure:
    """Test the acquires fixpoint."""

    def test_sample_module(self):
        ctx, diagnostics = check_modules(sample_module())
        assert diagnostics == []
        assert ctx.acquires_closure["0x2::M::value_of"] == {"0x2::M::Counter"}
        assert ctx.acquires_closure["0x2::M::test_counter"] == {"0x2::M::Counter"}
        assert ctx.acquires_closure["0x2::M::publish"] == set()
        assert ctx.acquires_closure["0x2::M::take_nested"] == {"0x2::M::AnotherParamStruct"}

    def test_direct_accesses(self, sample_ctx):
        assert direct_accesses(sample_ctx.get_function("0x2::M::remove")) == {"0x2::M::Counter"}
        # exists and move_to do not acquire
        assert direct_accesses(sample_ctx.get_function("0x2::M::has_counter")) == set()
        assert direct_accesses(sample_ctx.get_function("0x2::M::publish")) == set()

    def test_mutual_recursion_converges(self):
        ping = fun(
            "ping",
            params=[("addr", "address"), ("n", "u64")],
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "if", "cond": binop("==", "n", 0), "then": [{"op": "return", "value": _read()}]},
                {"op": "return", "value": call("pong", "addr", binop("-", "n", 1))},
            ],
        )
        pong = fun(
            "pong",
            params=[("addr", "address"), ("n", "u64")],
            returns=["u64"],
            acquires=["Counter"],
            body=[{"op": "return", "value": call("ping", "addr", "n")}],
        )
        ctx, diagnostics = _check(ping, pong)
        assert diagnostics == []
        assert ctx.acquires_closure["0x2::M::pong"] == {"0x2::M::Counter"}


class TestClauses:
    """Test declared clauses against the closure."""

    def test_missing_direct(self):
        _, diagnostics = _check(_reader("f"))
        assert codes(diagnostics) == ["MissingAcquires"]
        assert diagnostics[0].notes == []
        assert "acquires Counter" in diagnostics[0].message

    def test_missing_transitive(self):
        caller = fun(
            "g",
            params=[("addr", "address")],
            returns=["u64"],
            body=[{"op": "return", "value": call("f", "addr")}],
        )
        _, diagnostics = _check(_reader("f", ["Counter"]), caller)
        assert codes(diagnostics) == ["MissingAcquires"]
        assert diagnostics[0].location.function == "g"
        assert diagnostics[0].notes == ["acquired through 0x2::M::f"]

    def test_missing_through_recursion(self):
        ping = fun(
            "ping",
            params=[("addr", "address"), ("n", "u64")],
            returns=["u64"],
            acquires=["Counter"],
            body=[
                {"op": "if", "cond": binop("==", "n", 0), "then": [{"op": "return", "value": _read()}]},
                {"op": "return", "value": call("pong", "addr", binop("-", "n", 1))},
            ],
        )
        pong = fun(
            "pong",
            params=[("addr", "address"), ("n", "u64")],
            returns=["u64"],
            body=[{"op": "return", "value": call("ping", "addr", "n")}],
        )
        _, diagnostics = _check(ping, pong)
        assert codes(diagnostics) == ["MissingAcquires"]
        assert diagnostics[0].notes == ["acquired through 0x2::M::ping"]

    def test_unused_is_a_warning(self):
        f = fun(
            "f",
            params=[("addr", "address")],
            returns=["bool"],
            acquires=["Counter"],
            body=[{"op": "return", "value": call("exists", "addr", type_args=["Counter"])}],
        )
        _, diagnostics = _check(f)
        assert codes(diagnostics) == ["UnusedAcquires"]
        assert error_codes(diagnostics) == []
        assert not diagnostics[0].is_error

    def test_unknown_struct(self):
        _, diagnostics = _check(fun("f", acquires=["Ghost"]))
        assert codes(diagnostics) == ["UnknownName"]

    def test_type_parameter_access_is_not_attributed(self):
        f = fun(
            "f",
            type_params=[{"name": "T", "constraints": ["key"]}],
            params=[("addr", "address")],
            body=[{"op": "let", "name": "r", "value": call("borrow_global", "addr", type_args=["T"])}],
        )
        _, diagnostics = _check(f)
        assert diagnostics == []

    def test_cross_module_clause(self):
        reader = fun(
            "reader",
            params=[("addr", "address")],
            returns=["u64"],
            acquires=["M::Counter"],
            body=[{"op": "return", "value": call("M::value_of", "addr")}],
        )
        _, diagnostics = check_modules(sample_module(), module("N", functions=[reader]))
        assert diagnostics == []

    def test_cross_module_missing(self):
        reader = fun(
            "reader",
            params=[("addr", "address")],
            returns=["u64"],
            body=[{"op": "return", "value": call("M::value_of", "addr")}],
        )
        _, diagnostics = check_modules(sample_module(), module("N", functions=[reader]))
        assert codes(diagnostics) == ["MissingAcquires"]
        assert diagnostics[0].location.module == "0x2::N"


class TestResolveAcquiresName:
    """Test qualification of names written in acquires clauses."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("S", "0x2::M::S"),
            ("N::S", "0x2::N::S"),
            ("0x0003::N::S", "0x3::N::S"),
        ],
    )
    def test_resolve(self, name, expected):
        assert resolve_acquires_name(name, "0x2::M") == expected
