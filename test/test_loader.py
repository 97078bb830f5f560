"""Tests for the JSON declaration loader."""
import json

import pytest

from move.ir import (
    BinOp,
    Borrow,
    Call,
    FieldAccess,
    LetStmt,
    Literal,
    ReturnStmt,
    StructPack,
    UnpackStmt,
    VarRef,
    WhileStmt,
)
from move.loader import DeclarationLoader, LoaderError, load_modules
from move.types import SIGNER, U64, U8, Ability, RefType, StructType, TypeParam, VectorType

from test_utils import fun, module, sample_module, struct


def _load_one(data):
    return DeclarationLoader().load(data)[0]


class TestModules:
    """Test module-level loading."""

    def test_module_id_normalizes_address(self):
        m = _load_one(module(address="0x0002"))
        assert m.id == "0x2::M"

    def test_accepts_list_and_wrapper(self):
        loader = DeclarationLoader()
        assert len(loader.load([module("A"), module("B")])) == 2
        assert len(loader.load({"modules": [module("A")]})) == 1

    def test_missing_address(self):
        with pytest.raises(LoaderError):
            DeclarationLoader().load({"name": "M"})

    def test_duplicate_function(self):
        data = module(functions=[fun("f"), fun("f")])
        with pytest.raises(LoaderError, match="duplicate function"):
            DeclarationLoader().load(data)

    def test_load_file(self, tmp_path):
        path = tmp_path / "m.json"
        path.write_text(json.dumps(sample_module()))
        modules = load_modules([path])
        assert [m.id for m in modules] == ["0x2::M"]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(LoaderError, match="invalid JSON"):
            DeclarationLoader().load_file(path)


class TestStructs:
    """Test struct declarations."""

    def test_fields_and_abilities(self):
        m = _load_one(sample_module())
        decl = m.structs["Counter"]
        assert decl.qualified_name == "0x2::M::Counter"
        assert decl.abilities == frozenset({Ability.KEY})
        assert decl.get_field("value").typ == U64

    def test_generic_fields_use_type_params(self):
        m = _load_one(sample_module())
        decl = m.structs["AnotherParamStruct"]
        assert decl.fields[0].typ == StructType("0x2::M", "ParamStruct", (TypeParam("T"),))

    def test_phantom_and_constraints(self):
        data = module(structs=[struct("Box", [("v", "T")], [], [{"name": "T", "constraints": ["store"]}, {"name": "P", "phantom": True}])])
        decl = _load_one(data).structs["Box"]
        assert decl.type_params[0].constraints == frozenset({Ability.STORE})
        assert decl.type_params[1].phantom

    def test_unknown_ability(self):
        with pytest.raises(LoaderError, match="Unknown ability"):
            _load_one(module(structs=[struct("S", [], ["clone"])]))

    def test_bad_field_type(self):
        with pytest.raises(LoaderError):
            _load_one(module(structs=[struct("S", [("f", "vector<u8")])]))


class TestFunctions:
    """Test function declarations and bodies."""

    def test_signature(self):
        func = _load_one(sample_module()).functions["publish"]
        assert func.qualified_name == "0x2::M::publish"
        assert func.params[0].typ == RefType(SIGNER, False)
        assert func.params[1].idx == 1
        assert func.ret_types == []

    def test_acquires_and_attributes(self):
        m = _load_one(sample_module())
        assert m.functions["value_of"].acquires == ["Counter"]
        attrs = m.functions["test_missing_counter"].attributes
        assert attrs["expected_failure"] == {"abort_code": 7}

    def test_constants(self):
        m = _load_one(sample_module())
        const = m.constants["E_NO_COUNTER"]
        assert const.typ == U64
        assert const.value == 7

    def test_names_are_qualified(self):
        m = _load_one(sample_module())
        let = m.functions["roundtrip"].body[0]
        assert isinstance(let, LetStmt)
        assert let.bindings == ["a2", "b2", "x2"]
        assert isinstance(let.value, Call)
        assert let.value.callee == "0x2::M::unpack"
        assert let.value.args[0].callee == "0x2::M::pack_S"

    def test_stdlib_short_names(self):
        m = _load_one(sample_module())
        loop = m.functions["sum"].body[2]
        assert isinstance(loop, WhileStmt)
        assert isinstance(loop.condition, BinOp)
        assert loop.condition.right.callee == "0x1::vector::length"
        assert isinstance(loop.condition.right.args[0], Borrow)

    def test_builtins_stay_unqualified(self):
        m = _load_one(sample_module())
        ret = m.functions["value_of"].body[1]
        assert isinstance(ret, ReturnStmt)
        access = ret.values[0]
        assert isinstance(access, FieldAccess)
        assert access.base.callee == "borrow_global"
        assert access.base.type_args == [StructType("0x2::M", "Counter")]

    def test_unpack_and_pack(self):
        m = _load_one(sample_module())
        unpack = m.functions["unpack"].body[0]
        assert isinstance(unpack, UnpackStmt)
        assert unpack.struct_name == "0x2::M::S"
        assert unpack.fields == [("a", "a"), ("b", "b"), ("c", "c")]
        packed = m.functions["pack_S"].body[0].values[0]
        assert isinstance(packed, StructPack)
        assert packed.fields[2][1].struct_name == "0x2::M::Inner"

    def test_bare_values(self):
        data = module(
            functions=[
                fun(
                    "f",
                    body=[
                        {"op": "let", "name": "a", "value": 1},
                        {"op": "let", "name": "b", "value": True},
                        {"op": "let", "name": "c", "value": "@0x02"},
                        {"op": "let", "name": "d", "value": "a"},
                        {"op": "let", "name": "e", "value": {"lit": 3, "kind": "u8"}},
                        {"op": "let", "name": "g", "value": {"vector": [], "type": "u64"}},
                    ],
                )
            ]
        )
        body = _load_one(data).functions["f"].body
        assert body[0].value == Literal(1, "int")
        assert body[1].value == Literal(True, "bool")
        assert body[2].value == Literal("0x2", "address")
        assert body[3].value == VarRef("a")
        assert body[4].value == Literal(3, "u8")
        assert body[5].value.element_type == U64

    def test_native_has_no_body(self):
        data = module(functions=[{"name": "n", "native": True, "params": [{"name": "v", "type": "vector<u8>"}]}])
        func = _load_one(data).functions["n"]
        assert func.is_native
        assert func.params[0].typ == VectorType(U8)

    def test_unknown_statement(self):
        with pytest.raises(LoaderError, match="unknown statement"):
            _load_one(module(functions=[fun("f", body=[{"op": "goto"}])]))

    def test_unknown_expression(self):
        with pytest.raises(LoaderError, match="unknown expression"):
            _load_one(module(functions=[fun("f", body=[{"op": "expr", "expr": {"lambda": 1}}])]))

    def test_statement_missing_key(self):
        with pytest.raises(LoaderError, match="f: missing required key 'value'"):
            _load_one(module(functions=[fun("f", body=[{"op": "assign", "target": "x"}])]))

    def test_expression_missing_key(self):
        with pytest.raises(LoaderError, match="missing required key 'of'"):
            _load_one(module(functions=[fun("f", body=[{"op": "expr", "expr": {"field": "a"}}])]))

    def test_statement_must_be_an_object(self):
        with pytest.raises(LoaderError, match="expected a statement object"):
            _load_one(module(functions=[fun("f", body=[["let", "x"]])]))
