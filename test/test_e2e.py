"""End-to-end scenarios: declarations are loaded, checked and executed."""
import pytest

from analysis import check
from core.context import ProjectContext
from move.loader import DeclarationLoader
from move.stdlib import std_modules
from move.types import SIGNER, U64, Ability, StructType
from runtime.errors import BorrowConflictError, MissingResource, ResourceAlreadyExists
from runtime.interpreter import execute
from runtime.storage import GlobalStorage
from runtime.values import StructValue

from test_utils import call, codes, error_codes, fun, module, pack, sample_module, struct

COUNTER = StructType("0x2::M", "Counter")


def _load_one(data):
    (loaded,) = DeclarationLoader().load([data])
    return loaded


def _context(loaded):
    return ProjectContext(std_modules() + [loaded])


class TestDeclarationScenarios:
    """Test whole modules through the public check entry point."""

    def test_sample_module_is_clean(self):
        assert check(_load_one(sample_module())) == []

    def test_key_struct_with_non_store_field(self):
        loaded = _load_one(module(structs=[struct("Account", [("owner", "signer")], ["key"])]))
        assert codes(check(loaded)) == ["AbilityViolation"]

    def test_instantiation_abilities_follow_argument(self):
        ctx = _context(_load_one(sample_module()))
        with_u64 = StructType("0x2::M", "ParamStruct", (U64,))
        with_signer = StructType("0x2::M", "ParamStruct", (SIGNER,))
        assert ctx.abilities.has(with_u64, Ability.KEY)
        assert not ctx.abilities.has(with_signer, Ability.KEY)
        assert not ctx.abilities.has(with_signer, Ability.STORE)

    def test_unconsumed_resource(self):
        f = fun("f", body=[{"op": "let", "name": "c", "value": pack("Counter", value=1)}])
        loaded = _load_one(module(structs=[struct("Counter", [("value", "u64")], ["key"])], functions=[f]))
        assert error_codes(check(loaded)) == ["UnconsumedResource"]

    def test_acquires_clause(self):
        body = [
            {"op": "let", "name": "c", "value": call("borrow_global_mut", "addr", type_args=["Counter"])},
            {"op": "assign", "target": {"field": "value", "of": "c"}, "value": 0},
        ]
        counter = struct("Counter", [("value", "u64")], ["key"])
        missing = fun("reset", params=[("addr", "address")], body=body)
        declared = fun("reset", params=[("addr", "address")], acquires=["Counter"], body=body)
        assert codes(check(_load_one(module(structs=[counter], functions=[missing])))) == ["MissingAcquires"]
        assert check(_load_one(module(structs=[counter], functions=[declared]))) == []

    def test_static_global_borrow_exclusivity(self):
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
        loaded = _load_one(module(structs=[struct("Counter", [("value", "u64")], ["key"])], functions=[f]))
        assert codes(check(loaded)) == ["BorrowConflict"]


class TestExecutionScenarios:
    """Test checked modules against a shared storage."""

    @pytest.fixture
    def ctx(self):
        return _context(_load_one(sample_module()))

    def test_storage_roundtrip(self, ctx, storage):
        assert execute(ctx, "0x2::M::has_counter", ["0x42"], storage) == [False]
        execute(ctx, "0x2::M::publish", ["0x42", 11], storage)
        assert execute(ctx, "0x2::M::has_counter", ["0x42"], storage) == [True]
        assert execute(ctx, "0x2::M::remove", ["0x42"], storage) == [11]
        assert execute(ctx, "0x2::M::has_counter", ["0x42"], storage) == [False]

    def test_move_to_twice(self, ctx, storage):
        execute(ctx, "0x2::M::publish", ["0x42", 1], storage)
        with pytest.raises(ResourceAlreadyExists):
            execute(ctx, "0x2::M::publish", ["0x42", 2], storage)

    def test_missing_resource(self, ctx, storage):
        with pytest.raises(MissingResource):
            execute(ctx, "0x2::M::remove", ["0x42"], storage)
        with pytest.raises(MissingResource):
            execute(ctx, "0x2::M::increment", ["0x42"], storage)

    def test_pack_unpack_roundtrip(self, ctx):
        (value,) = execute(ctx, "0x2::M::pack_S", [3, True, 4])
        assert isinstance(value, StructValue)
        assert execute(ctx, "0x2::M::unpack", [value]) == [3, True, 4]

    def test_dynamic_global_borrow_exclusivity(self, storage):
        storage.move_to("0x1", COUNTER, StructValue(COUNTER, {"value": 0}))
        with storage.transaction() as tx:
            with tx.borrow_global("0x1", COUNTER) as first, tx.borrow_global("0x1", COUNTER) as second:
                assert first.read().fields == second.read().fields
                with pytest.raises(BorrowConflictError):
                    tx.borrow_global_mut("0x1", COUNTER)
            with tx.borrow_global_mut("0x1", COUNTER) as ref:
                ref.field("value").write(5)
        assert storage.get("0x1", COUNTER).fields == {"value": 5}

    def test_storage_isolated_per_instance(self, ctx):
        first, second = GlobalStorage(), GlobalStorage()
        execute(ctx, "0x2::M::publish", ["0x42", 1], first)
        assert execute(ctx, "0x2::M::has_counter", ["0x42"], second) == [False]
