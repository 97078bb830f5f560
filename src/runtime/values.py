"""
Runtime value representation.

- integers, bools: Python int / bool
- address: canonical hex string ("0x2")
- vector<T>: Python list
- signer: Signer
- struct: StructValue (mutable field dict, tagged with its concrete descriptor)
- &T / &mut T: Reference to a location (owner container + key)

Values are moved by handing over the Python object; copies are explicit
(copy_value) so a mutation through one binding is never visible through another.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable

from move.types import (
    INTEGER_BITS,
    PrimitiveType,
    RefType,
    StructType,
    Type,
    VectorType,
    normalize_address,
)
from runtime.errors import AbortError, ExecutionError, VECTOR_INDEX_OUT_OF_BOUNDS


@dataclass(frozen=True)
class Signer:
    address: str

    def __str__(self) -> str:
        return f"signer({self.address})"


@dataclass
class StructValue:
    struct_type: StructType
    fields: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        inner = ", ".join(f"{k}: {format_value(v)}" for k, v in self.fields.items())
        return f"{self.struct_type.name} {{ {inner} }}"


class Reference:
    """
    A borrowed location: owner[key], where owner is a local cell, a struct's
    field dict, a vector, or a transaction's staged slots.

    loans are the storage loans keeping this reference valid (empty for locals).
    """

    __slots__ = ("owner", "key", "mutable", "loans")

    def __init__(self, owner: Any, key: Any, mutable: bool, loans: Iterable[int] = ()):
        self.owner = owner
        self.key = key
        self.mutable = mutable
        self.loans: FrozenSet[int] = frozenset(loans)

    def read(self) -> Any:
        return self.owner[self.key]

    def write(self, value: Any) -> None:
        if not self.mutable:
            raise ExecutionError("Write through an immutable reference")
        self.owner[self.key] = value

    def field(self, name: str) -> "Reference":
        value = self.read()
        if not isinstance(value, StructValue):
            raise ExecutionError(f"Field '{name}' of non-struct value {format_value(value)}")
        return Reference(value.fields, name, self.mutable, self.loans)

    def index(self, i: int) -> "Reference":
        items = self.read()
        if not 0 <= i < len(items):
            raise AbortError(VECTOR_INDEX_OUT_OF_BOUNDS)
        return Reference(items, i, self.mutable, self.loans)

    def freeze(self) -> "Reference":
        return Reference(self.owner, self.key, False, self.loans)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Reference):
            return self.read() == other.read()
        return NotImplemented

    def __hash__(self) -> int:
        return hash((id(self.owner), self.key))

    def __repr__(self) -> str:
        return f"{'&mut ' if self.mutable else '&'}{format_value(self.read())}"


def new_cell(value: Any = None) -> Dict[str, Any]:
    """Storage for one local binding; borrowed as Reference(cell, "value")."""
    return {"value": value}


def copy_value(value: Any) -> Any:
    """Copy for `copy` semantics: containers are duplicated, references are shared."""
    if isinstance(value, list):
        return [copy_value(v) for v in value]
    if isinstance(value, StructValue):
        return StructValue(value.struct_type, {k: copy_value(v) for k, v in value.fields.items()})
    return value


def values_equal(a: Any, b: Any) -> bool:
    if isinstance(a, Reference):
        a = a.read()
    if isinstance(b, Reference):
        b = b.read()
    return a == b


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return f"[{', '.join(format_value(v) for v in value)}]"
    if isinstance(value, Reference):
        return repr(value)
    return str(value)


def to_json(value: Any) -> Any:
    """Plain JSON-compatible rendering of a runtime value."""
    if isinstance(value, Reference):
        return to_json(value.read())
    if isinstance(value, StructValue):
        return {"type": str(value.struct_type), "fields": {k: to_json(v) for k, v in value.fields.items()}}
    if isinstance(value, Signer):
        return {"signer": value.address}
    if isinstance(value, list):
        return [to_json(v) for v in value]
    return value


def coerce_argument(typ: Type, raw: Any) -> Any:
    """
    Convert a host-supplied argument (CLI string, JSON value, Python value)
    to the runtime value of a parameter of type typ.
    """
    if isinstance(typ, RefType):
        return Reference(new_cell(coerce_argument(typ.referent, raw)), "value", typ.mutable)
    if isinstance(typ, PrimitiveType):
        if typ.name == "signer":
            if isinstance(raw, Signer):
                return raw
            return Signer(normalize_address(raw))
        if typ.name == "address":
            return normalize_address(raw)
        if typ.name == "bool":
            if isinstance(raw, str):
                if raw not in ("true", "false"):
                    raise ValueError(f"Invalid bool argument: {raw!r}")
                return raw == "true"
            return bool(raw)
        value = int(raw, 0) if isinstance(raw, str) else int(raw)
        if not 0 <= value < (1 << INTEGER_BITS[typ.name]):
            raise ValueError(f"Argument {value} out of range for {typ.name}")
        return value
    if isinstance(typ, VectorType):
        if isinstance(raw, str) and typ.element == PrimitiveType("u8"):
            text = raw[2:] if raw.startswith("0x") else raw
            return list(bytes.fromhex(text))
        return [coerce_argument(typ.element, item) for item in raw]
    if isinstance(raw, StructValue):
        return raw
    raise ValueError(f"Cannot pass {raw!r} as '{typ}'")
