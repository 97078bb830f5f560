"""
Standard library declarations at address 0x1.

Only signatures live here; the native implementations are registered by the
interpreter (runtime.natives) under the same qualified names.
"""

from functools import lru_cache
from typing import Any, Dict, List, Tuple

from move.ir import Module
from move.loader import DeclarationLoader

STD_ADDRESS = "0x1"

# Decimal natives return (sign, mantissa, scale)
DECIMAL = ["bool", "u128", "u8"]


def _native(name: str, params: List[Tuple[str, str]], returns: List[str], type_params: Tuple[str, ...] = ()) -> Dict[str, Any]:
    return {
        "name": name,
        "public": True,
        "native": True,
        "type_params": list(type_params),
        "params": [{"name": p, "type": t} for p, t in params],
        "returns": returns,
    }


STD_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "address": STD_ADDRESS,
        "name": "signer",
        "functions": [
            _native("address_of", [("s", "&signer")], ["address"]),
        ],
    },
    {
        "address": STD_ADDRESS,
        "name": "vector",
        "functions": [
            _native("empty", [], ["vector<Element>"], ("Element",)),
            _native("length", [("v", "&vector<Element>")], ["u64"], ("Element",)),
            _native("is_empty", [("v", "&vector<Element>")], ["bool"], ("Element",)),
            _native("push_back", [("v", "&mut vector<Element>"), ("e", "Element")], [], ("Element",)),
            _native("pop_back", [("v", "&mut vector<Element>")], ["Element"], ("Element",)),
            _native("borrow", [("v", "&vector<Element>"), ("i", "u64")], ["&Element"], ("Element",)),
            _native("borrow_mut", [("v", "&mut vector<Element>"), ("i", "u64")], ["&mut Element"], ("Element",)),
            _native("swap", [("v", "&mut vector<Element>"), ("i", "u64"), ("j", "u64")], [], ("Element",)),
            _native("destroy_empty", [("v", "vector<Element>")], [], ("Element",)),
        ],
    },
    {
        "address": STD_ADDRESS,
        "name": "hash",
        "functions": [
            _native("sha2_256", [("data", "vector<u8>")], ["vector<u8>"]),
            _native("sha3_256", [("data", "vector<u8>")], ["vector<u8>"]),
        ],
    },
    {
        "address": STD_ADDRESS,
        "name": "XHash",
        "functions": [
            _native("keccak_256", [("data", "vector<u8>")], ["vector<u8>"]),
        ],
    },
    {
        "address": STD_ADDRESS,
        "name": "Decimal",
        "functions": [
            _native("demo", [("sign", "bool"), ("int", "u128"), ("scale", "u8")], DECIMAL),
            _native("single", [("op_id", "u8"), ("sign", "bool"), ("int", "u128"), ("scale", "u8")], DECIMAL),
            _native(
                "pair",
                [
                    ("op_id", "u8"),
                    ("rounding_strategy_id", "u8"),
                    ("sign_1", "bool"),
                    ("int_1", "u128"),
                    ("scale_1", "u8"),
                    ("sign_2", "bool"),
                    ("int_2", "u128"),
                    ("scale_2", "u8"),
                ],
                DECIMAL,
            ),
        ],
    },
]


@lru_cache(maxsize=1)
def _load_std() -> Tuple[Module, ...]:
    return tuple(DeclarationLoader().load(STD_DECLARATIONS))


def std_modules() -> List[Module]:
    """The std modules; declarations are immutable so every context shares them."""
    return list(_load_std())
