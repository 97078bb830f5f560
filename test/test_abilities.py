"""Tests for the ability formula and ability checks."""
import pytest

from core.diagnostics import Location
from move.types import (
    ADDRESS,
    SIGNER,
    U64,
    Ability,
    RefType,
    StructType,
    TupleType,
    TypeParam,
    VectorType,
    abilities,
)

from test_utils import call, check_fun, check_modules, codes, fun, module, struct


def _m(name, *args):
    return StructType("0x2::M", name, tuple(args))


class TestAbilityFormula:
    """Test abilities_of over built-in and declared types."""

    def test_primitives(self, sample_ctx):
        a = sample_ctx.abilities
        assert a.abilities_of(U64) == abilities("copy", "drop", "store")
        assert a.abilities_of(ADDRESS) == abilities("copy", "drop", "store")
        assert a.abilities_of(SIGNER) == abilities("drop")

    def test_references(self, sample_ctx):
        assert sample_ctx.abilities.abilities_of(RefType(_m("Counter"), True)) == abilities("copy", "drop")

    def test_vector_masks_by_element(self, sample_ctx):
        a = sample_ctx.abilities
        assert a.abilities_of(VectorType(U64)) == abilities("copy", "drop", "store")
        assert a.abilities_of(VectorType(SIGNER)) == abilities("drop")
        assert a.abilities_of(VectorType(_m("Counter"))) == frozenset()

    def test_declared_struct(self, sample_ctx):
        assert sample_ctx.abilities.abilities_of(_m("Counter")) == abilities("key")
        assert sample_ctx.abilities.abilities_of(_m("S")) == frozenset()

    def test_generic_instantiation_with_primitive(self, sample_ctx):
        assert sample_ctx.abilities.abilities_of(_m("ParamStruct", U64)) == abilities("key", "store")

    def test_generic_instantiation_loses_abilities(self, sample_ctx):
        # Counter lacks store, so the wrapper can have neither store nor key
        assert sample_ctx.abilities.abilities_of(_m("ParamStruct", _m("Counter"))) == frozenset()

    def test_nested_instantiation(self, sample_ctx):
        a = sample_ctx.abilities
        assert a.has(_m("AnotherParamStruct", U64), Ability.KEY)
        assert a.has(_m("AnotherParamStruct", _m("Inner")), Ability.KEY)
        assert not a.has(_m("AnotherParamStruct", SIGNER), Ability.KEY)

    def test_phantom_arguments_are_ignored(self, sample_ctx):
        a = sample_ctx.abilities
        assert a.abilities_of(_m("Marker", _m("S"))) == abilities("copy", "drop", "store")
        assert a.abilities_of(_m("Marker", SIGNER)) == abilities("copy", "drop", "store")

    def test_tuples_intersect_elements(self, sample_ctx):
        a = sample_ctx.abilities
        assert a.abilities_of(TupleType((U64, ADDRESS))) == abilities("copy", "drop")
        assert a.abilities_of(TupleType((U64, SIGNER))) == abilities("drop")
        assert a.abilities_of(TupleType((U64, _m("Counter")))) == frozenset()
        assert a.abilities_of(TupleType(())) == abilities("copy", "drop")

    def test_type_parameter_uses_environment(self, sample_ctx):
        a = sample_ctx.abilities
        env = {"T": abilities("copy")}
        assert a.abilities_of(TypeParam("T"), env) == abilities("copy")
        assert a.abilities_of(TypeParam("T")) == frozenset()
        assert a.abilities_of(_m("ParamStruct", TypeParam("T")), {"T": abilities("store")}) == abilities("key", "store")

    def test_unknown_struct_has_nothing(self, sample_ctx):
        assert sample_ctx.abilities.abilities_of(_m("Nope")) == frozenset()

    def test_derivable_abilities(self, sample_ctx):
        decl = sample_ctx.get_struct("0x2::M::S")
        # Field c: Inner has only store
        assert sample_ctx.abilities.derivable_abilities(decl) == abilities("store", "key")


class TestDeclarationChecks:
    """Test declared abilities against field abilities."""

    def test_copy_with_non_copy_field(self):
        m = module(structs=[struct("Inner", [("x", "u64")], ["store"]), struct("Outer", [("i", "Inner")], ["copy"])])
        _, diagnostics = check_modules(m)
        assert codes(diagnostics) == ["AbilityViolation"]
        assert "'Outer' declares 'copy'" in diagnostics[0].message

    def test_key_needs_store_fields(self):
        m = module(structs=[struct("Account", [("owner", "signer")], ["key"])])
        _, diagnostics = check_modules(m)
        assert codes(diagnostics) == ["AbilityViolation"]

    def test_generic_declaration_assumes_all_abilities(self):
        m = module(structs=[struct("Box", [("v", "T")], ["copy", "drop", "store", "key"], ["T"])])
        _, diagnostics = check_modules(m)
        assert diagnostics == []


class TestInstantiationChecks:
    """Test constraints at type-argument sites."""

    BOX = struct("Box", [("v", "T")], ["store"], [{"name": "T", "constraints": ["store"]}])
    RES = struct("Res", [("v", "u64")], ["key"])

    def test_parameter_type_violates_constraint(self):
        result = check_fun(fun("f", params=[("b", "&Box<Res>")]), structs=[self.BOX, self.RES])
        assert result == ["AbilityViolation"]

    def test_call_with_constraint_violation(self):
        identity = fun(
            "dup",
            type_params=[{"name": "T", "constraints": ["copy"]}],
            params=[("x", "T")],
            returns=["T"],
            body=[{"op": "return", "value": {"move": "x"}}],
        )
        caller = fun(
            "caller",
            params=[("r", "Res")],
            returns=["Res"],
            body=[{"op": "return", "value": call("dup", "r", type_args=["Res"])}],
        )
        assert check_fun(identity, caller, structs=[self.RES]) == ["AbilityViolation"]

    def test_inferred_call_with_constraint_violation(self):
        identity = fun(
            "dup",
            type_params=[{"name": "T", "constraints": ["copy"]}],
            params=[("x", "T")],
            returns=["T"],
            body=[{"op": "return", "value": {"move": "x"}}],
        )
        caller = fun(
            "caller",
            params=[("r", "Res")],
            returns=["Res"],
            body=[{"op": "return", "value": call("dup", "r")}],
        )
        assert check_fun(identity, caller, structs=[self.RES]) == ["AbilityViolation"]

    def test_storage_operation_requires_key(self):
        f = fun(
            "f",
            params=[("a", "address")],
            returns=["bool"],
            body=[{"op": "return", "value": call("exists", "a", type_args=["Inner"])}],
        )
        assert check_fun(f, structs=[struct("Inner", [("x", "u64")], ["store"])]) == ["AbilityViolation"]

    def test_check_constraints_api(self, sample_ctx):
        tp = sample_ctx.get_function("0x1::vector::length").type_params
        ok = sample_ctx.abilities.check_constraints("len", tp, [_m("Counter")], {}, Location("0x2::M"))
        # vector functions are unconstrained
        assert ok
        assert sample_ctx.diagnostics == []

    @pytest.mark.parametrize("ability", list(Ability))
    def test_require_reports_missing(self, sample_ctx, ability):
        ok = sample_ctx.abilities.require(_m("S"), ability, {}, Location("0x2::M"), "test site")
        assert not ok
        assert codes(sample_ctx.diagnostics) == ["AbilityViolation"]
