"""
Move type descriptors and type-string parsing.

Descriptors are frozen dataclasses, so equality and hashing are structural:
two struct instantiations are equal iff they name the same (module, struct)
and their type arguments are pairwise equal, recursively. That makes every
descriptor its own canonical form.

Type string operations used by the declaration loader:
- Stripping reference modifiers (&, &mut)
- Stripping and extracting generic parameters (<T>)
- FQN handling
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

from core.utils import get_module_path, get_simple_name


class Ability(Enum):
    COPY = "copy"
    DROP = "drop"
    STORE = "store"
    KEY = "key"

    @classmethod
    def from_string(cls, s: str) -> "Ability":
        s_lower = s.lower().strip()
        for ability in cls:
            if ability.value == s_lower:
                return ability
        raise ValueError(f"Unknown ability: {s}")

    def __str__(self) -> str:
        return self.value


AbilitySet = FrozenSet[Ability]

ALL_ABILITIES: AbilitySet = frozenset(Ability)
NO_ABILITIES: AbilitySet = frozenset()


def abilities(*names: str) -> AbilitySet:
    """abilities("copy", "drop") -> frozenset({Ability.COPY, Ability.DROP})"""
    return frozenset(Ability.from_string(n) for n in names)


def format_abilities(abs_: Iterable[Ability]) -> str:
    order = [Ability.COPY, Ability.DROP, Ability.STORE, Ability.KEY]
    present = set(abs_)
    return ", ".join(a.value for a in order if a in present) or "(none)"


# =============================================================================
# Type descriptors
# =============================================================================


INTEGER_TYPES = ("u8", "u16", "u32", "u64", "u128", "u256")
PRIMITIVE_NAMES = INTEGER_TYPES + ("bool", "address", "signer")

INTEGER_BITS = {name: int(name[1:]) for name in INTEGER_TYPES}


@dataclass(frozen=True)
class PrimitiveType:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class VectorType:
    element: "Type"

    def __str__(self) -> str:
        return f"vector<{self.element}>"


@dataclass(frozen=True)
class StructType:
    """Struct instantiation: module is the full module id (e.g., "0x2::M")."""

    module: str
    name: str
    type_args: Tuple["Type", ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.module}::{self.name}"

    def __str__(self) -> str:
        if not self.type_args:
            return self.qualified_name
        return f"{self.qualified_name}<{', '.join(str(t) for t in self.type_args)}>"


@dataclass(frozen=True)
class TypeParam:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class RefType:
    referent: "Type"
    mutable: bool = False

    def __str__(self) -> str:
        return f"&mut {self.referent}" if self.mutable else f"&{self.referent}"


@dataclass(frozen=True)
class TupleType:
    """Multiple return values. Never a field, local or storage type."""

    elements: Tuple["Type", ...]

    def __str__(self) -> str:
        return f"({', '.join(str(t) for t in self.elements)})"


Type = Union[PrimitiveType, VectorType, StructType, TypeParam, RefType, TupleType]

BOOL = PrimitiveType("bool")
U8 = PrimitiveType("u8")
U64 = PrimitiveType("u64")
U128 = PrimitiveType("u128")
ADDRESS = PrimitiveType("address")
SIGNER = PrimitiveType("signer")
UNIT = TupleType(())


def is_integer(t: Type) -> bool:
    return isinstance(t, PrimitiveType) and t.name in INTEGER_BITS


def free_type_params(t: Type) -> Set[str]:
    """Names of all type parameters occurring in t."""
    if isinstance(t, TypeParam):
        return {t.name}
    if isinstance(t, VectorType):
        return free_type_params(t.element)
    if isinstance(t, RefType):
        return free_type_params(t.referent)
    if isinstance(t, StructType):
        result: Set[str] = set()
        for arg in t.type_args:
            result |= free_type_params(arg)
        return result
    if isinstance(t, TupleType):
        result = set()
        for elem in t.elements:
            result |= free_type_params(elem)
        return result
    return set()


def is_concrete(t: Type) -> bool:
    return not free_type_params(t)


def substitute(t: Type, mapping: Dict[str, Type]) -> Type:
    """Replace type parameters according to mapping. Unmapped parameters stay."""
    if not mapping:
        return t
    if isinstance(t, TypeParam):
        return mapping.get(t.name, t)
    if isinstance(t, VectorType):
        return VectorType(substitute(t.element, mapping))
    if isinstance(t, RefType):
        return RefType(substitute(t.referent, mapping), t.mutable)
    if isinstance(t, StructType):
        if not t.type_args:
            return t
        return StructType(t.module, t.name, tuple(substitute(a, mapping) for a in t.type_args))
    if isinstance(t, TupleType):
        return TupleType(tuple(substitute(e, mapping) for e in t.elements))
    return t


# =============================================================================
# Addresses and names
# =============================================================================


def normalize_address(raw: Union[str, int]) -> str:
    """
    Canonical hex form of an address literal.

    Examples:
        "@0x02" -> "0x2"
        "0x0" -> "0x0"
        42 -> "0x2a"
    """
    if isinstance(raw, int):
        value = raw
    else:
        text = raw.strip()
        if text.startswith("@"):
            text = text[1:]
        try:
            value = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"Invalid address literal: {raw!r}")
    if value < 0:
        raise ValueError(f"Invalid address literal: {raw!r}")
    return hex(value)


# =============================================================================
# Type string parsing
# =============================================================================


class TypeSyntaxError(ValueError):
    """Raised for malformed type strings."""

    pass


def strip_references(type_str: str) -> Tuple[str, Optional[bool]]:
    """
    Strip reference modifiers from type string.

    Returns the referent string and the reference kind (None, False for &, True for &mut).

    Examples:
        "&mut Pool" -> ("Pool", True)
        "&Pool" -> ("Pool", False)
        "Pool" -> ("Pool", None)
    """
    type_str = type_str.strip()
    if type_str.startswith("&mut "):
        return type_str[5:].strip(), True
    elif type_str.startswith("&"):
        return type_str[1:].strip(), False
    return type_str, None


def strip_generics(type_str: str) -> str:
    """
    Strip generic parameters from type string.

    Examples:
        "Pool<T>" -> "Pool"
        "Map<Key, vector<Value>>" -> "Map"
    """
    if "<" not in type_str:
        return type_str.strip()
    return type_str[: type_str.index("<")].strip()


def _split_top_level(inner: str) -> List[str]:
    """Split by comma at bracket depth 0."""
    elements = []
    current: list[str] = []
    depth = 0

    for char in inner:
        if char == "<":
            depth += 1
            current.append(char)
        elif char == ">":
            depth -= 1
            if depth < 0:
                raise TypeSyntaxError(f"Unbalanced '>' in {inner!r}")
            current.append(char)
        elif char == "," and depth == 0:
            elements.append("".join(current).strip())
            current = []
        else:
            current.append(char)

    if depth != 0:
        raise TypeSyntaxError(f"Unbalanced '<' in {inner!r}")
    if current:
        elements.append("".join(current).strip())
    return elements


def extract_generic_args(type_str: str) -> List[str]:
    """
    Extract type arguments from a generic type.

    Examples:
        "vector<Item>" -> ["Item"]
        "Map<Key, Value>" -> ["Key", "Value"]
        "Option<vector<Item>>" -> ["vector<Item>"]
        "SimpleType" -> []
    """
    type_str = type_str.strip()

    if "<" not in type_str:
        return []

    start = type_str.index("<")
    if not type_str.endswith(">"):
        raise TypeSyntaxError(f"Trailing text after type arguments in {type_str!r}")

    inner = type_str[start + 1 : -1]
    elements = _split_top_level(inner)
    if any(not e for e in elements) or not elements:
        raise TypeSyntaxError(f"Empty type argument in {type_str!r}")
    return elements


def parse_type(
    type_str: str,
    default_module: str,
    type_params: Iterable[str] = (),
    resolve_module: Optional[Callable[[str], str]] = None,
) -> Type:
    """
    Parse a Move type string into a descriptor.

    Args:
        default_module: Module id for unqualified struct names (e.g., "0x2::M")
        type_params: Names bound as type parameters in the enclosing declaration
        resolve_module: Maps a partial path ("M") to a module id ("0x2::M")

    Examples:
        parse_type("&mut ParamStruct<u64>", "0x2::M")
            -> RefType(StructType("0x2::M", "ParamStruct", (U64,)), mutable=True)
        parse_type("vector<T>", "0x2::M", ["T"]) -> VectorType(TypeParam("T"))
    """
    bound = set(type_params)
    body, ref_kind = strip_references(type_str)
    if not body:
        raise TypeSyntaxError(f"Empty type in {type_str!r}")
    if body.startswith("&"):
        raise TypeSyntaxError(f"Nested references are not allowed: {type_str!r}")

    base = strip_generics(body)
    args = [parse_type(a, default_module, bound, resolve_module) for a in extract_generic_args(body)]
    if base.startswith("&"):
        raise TypeSyntaxError(f"Nested references are not allowed: {type_str!r}")

    result: Type
    if base in PRIMITIVE_NAMES:
        if args:
            raise TypeSyntaxError(f"Primitive type '{base}' takes no type arguments")
        result = PrimitiveType(base)
    elif base == "vector":
        if len(args) != 1:
            raise TypeSyntaxError(f"vector takes exactly one type argument: {type_str!r}")
        result = VectorType(args[0])
    elif base in bound and "::" not in base:
        if args:
            raise TypeSyntaxError(f"Type parameter '{base}' takes no type arguments")
        result = TypeParam(base)
    else:
        if not base.replace("::", "").replace("_", "").isalnum():
            raise TypeSyntaxError(f"Invalid type name {base!r}")
        module = get_module_path(base)
        if not module:
            module = default_module
        elif module.count("::") == 0:
            module = resolve_module(module) if resolve_module else f"{default_module.split('::')[0]}::{module}"
        else:
            addr, mod_name = module.split("::", 1)
            module = f"{normalize_address(addr)}::{mod_name}"
        result = StructType(module, get_simple_name(base), tuple(args))

    if ref_kind is not None:
        return RefType(result, ref_kind)
    return result
