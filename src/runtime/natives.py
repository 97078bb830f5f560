"""
Native function implementations.

Natives are registered by fully qualified name ("0x1::vector::length"). Each
implementation receives the concrete type arguments and the evaluated
arguments, and returns the list of return values.
"""

import decimal
import hashlib
from typing import Any, Callable, Dict, List, Tuple

from Crypto.Hash import keccak

from move.types import Type
from runtime.errors import ARITHMETIC_ERROR, AbortError, ExecutionError, VECTOR_INDEX_OUT_OF_BOUNDS
from runtime.values import Signer

NativeFunction = Callable[[List[Type], List[Any]], List[Any]]

NATIVES: Dict[str, NativeFunction] = {}


def native(fqn: str) -> Callable[[NativeFunction], NativeFunction]:
    """Register a native implementation. Hosts may register further natives the same way."""

    def decorator(fn: NativeFunction) -> NativeFunction:
        NATIVES[fqn] = fn
        return fn

    return decorator


def get_native(fqn: str) -> NativeFunction:
    fn = NATIVES.get(fqn)
    if fn is None:
        raise ExecutionError(f"No native implementation registered for '{fqn}'")
    return fn


# =============================================================================
# signer
# =============================================================================


@native("0x1::signer::address_of")
def native_address_of(type_args: List[Type], args: List[Any]) -> List[Any]:
    signer = args[0].read()
    if not isinstance(signer, Signer):
        raise ExecutionError(f"signer::address_of expects a signer, got {signer!r}")
    return [signer.address]


# =============================================================================
# vector
# =============================================================================


@native("0x1::vector::empty")
def native_empty(type_args: List[Type], args: List[Any]) -> List[Any]:
    return [[]]


@native("0x1::vector::length")
def native_length(type_args: List[Type], args: List[Any]) -> List[Any]:
    return [len(args[0].read())]


@native("0x1::vector::is_empty")
def native_is_empty(type_args: List[Type], args: List[Any]) -> List[Any]:
    return [len(args[0].read()) == 0]


@native("0x1::vector::push_back")
def native_push_back(type_args: List[Type], args: List[Any]) -> List[Any]:
    ref, element = args
    ref.read().append(element)
    return []


@native("0x1::vector::pop_back")
def native_pop(type_args: List[Type], args: List[Any]) -> List[Any]:
    items = args[0].read()
    if not items:
        raise AbortError(VECTOR_INDEX_OUT_OF_BOUNDS, "0x1::vector::pop_back")
    return [items.pop()]


@native("0x1::vector::borrow")
def native_borrow(type_args: List[Type], args: List[Any]) -> List[Any]:
    ref, i = args
    return [ref.index(i).freeze()]


@native("0x1::vector::borrow_mut")
def native_borrow_mut(type_args: List[Type], args: List[Any]) -> List[Any]:
    ref, i = args
    return [ref.index(i)]


@native("0x1::vector::swap")
def native_swap(type_args: List[Type], args: List[Any]) -> List[Any]:
    ref, i, j = args
    items = ref.read()
    if not (0 <= i < len(items) and 0 <= j < len(items)):
        raise AbortError(VECTOR_INDEX_OUT_OF_BOUNDS, "0x1::vector::swap")
    items[i], items[j] = items[j], items[i]
    return []


@native("0x1::vector::destroy_empty")
def native_destroy_empty(type_args: List[Type], args: List[Any]) -> List[Any]:
    if args[0]:
        raise AbortError(VECTOR_INDEX_OUT_OF_BOUNDS, "0x1::vector::destroy_empty")
    return []


# =============================================================================
# hash
# =============================================================================


@native("0x1::hash::sha2_256")
def native_sha2_256(type_args: List[Type], args: List[Any]) -> List[Any]:
    return [list(hashlib.sha256(bytes(args[0])).digest())]


@native("0x1::hash::sha3_256")
def native_sha3_256(type_args: List[Type], args: List[Any]) -> List[Any]:
    return [list(hashlib.sha3_256(bytes(args[0])).digest())]


@native("0x1::XHash::keccak_256")
def native_keccak_256(type_args: List[Type], args: List[Any]) -> List[Any]:
    # Original Keccak padding, not the FIPS-202 SHA3 one
    return [list(keccak.new(digest_bits=256, data=bytes(args[0])).digest())]


# =============================================================================
# Decimal
# =============================================================================

# A decimal crosses the native boundary as (sign, mantissa, scale): sign is true
# for non-negative values and the value is mantissa * 10^-scale.
DECIMAL_MAX_MANTISSA = 2**96 - 1
DECIMAL_MAX_SCALE = 28
DECIMAL_CONTEXT = decimal.Context(
    prec=28,
    rounding=decimal.ROUND_HALF_EVEN,
    traps=[decimal.InvalidOperation, decimal.DivisionByZero, decimal.Overflow],
)

DECIMAL_SQRT = 100
DECIMAL_TRUNC = 101

DECIMAL_RESCALE = 0
DECIMAL_ADD = 1
DECIMAL_SUB = 2
DECIMAL_MUL = 3
DECIMAL_DIV = 4
DECIMAL_POW = 5
DECIMAL_ROUND = 6

ROUNDING_STRATEGIES = {0: decimal.ROUND_HALF_EVEN, 1: decimal.ROUND_HALF_UP}


def to_decimal(sign: bool, mantissa: int, scale: int) -> decimal.Decimal:
    digits = tuple(int(d) for d in str(mantissa))
    return decimal.Decimal((0 if sign else 1, digits, -scale))


def from_decimal(value: decimal.Decimal) -> Tuple[bool, int, int]:
    sign, digits, exponent = value.as_tuple()
    mantissa = int("".join(str(d) for d in digits))
    if exponent > 0:
        # normalize() writes 100 as 1E+2
        return not sign, mantissa * 10**exponent, 0
    return not sign, mantissa, -exponent


def _places(value: decimal.Decimal) -> int:
    return int(value.to_integral_value(rounding=decimal.ROUND_DOWN))


def _rescale(value: decimal.Decimal, places: int, rounding: str) -> decimal.Decimal:
    return value.quantize(decimal.Decimal(1).scaleb(-places), rounding=rounding, context=DECIMAL_CONTEXT)


def _round_dp(value: decimal.Decimal, places: int, rounding: str) -> decimal.Decimal:
    """Round to at most `places` decimal places; never pads with zeros."""
    if -value.as_tuple().exponent <= places:
        return value
    return _rescale(value, places, rounding)


def _decimal_result(fqn: str, compute: Callable[[], decimal.Decimal]) -> List[Any]:
    try:
        sign, mantissa, scale = from_decimal(compute())
    except decimal.DecimalException:
        raise AbortError(ARITHMETIC_ERROR, fqn)
    if mantissa > DECIMAL_MAX_MANTISSA or scale > DECIMAL_MAX_SCALE:
        raise AbortError(ARITHMETIC_ERROR, fqn)
    return [sign, mantissa, scale]


@native("0x1::Decimal::demo")
def native_decimal_demo(type_args: List[Type], args: List[Any]) -> List[Any]:
    return _decimal_result("0x1::Decimal::demo", lambda: to_decimal(*args))


@native("0x1::Decimal::single")
def native_decimal_single(type_args: List[Type], args: List[Any]) -> List[Any]:
    op_id = args[0]
    value = to_decimal(*args[1:4])
    operations: Dict[int, Callable[[], decimal.Decimal]] = {
        DECIMAL_SQRT: lambda: value.sqrt(DECIMAL_CONTEXT).normalize(DECIMAL_CONTEXT),
        DECIMAL_TRUNC: lambda: value.to_integral_value(rounding=decimal.ROUND_DOWN),
    }
    if op_id not in operations:
        raise AbortError(ARITHMETIC_ERROR, "0x1::Decimal::single")
    return _decimal_result("0x1::Decimal::single", operations[op_id])


@native("0x1::Decimal::pair")
def native_decimal_pair(type_args: List[Type], args: List[Any]) -> List[Any]:
    op_id, strategy = args[0], args[1]
    left = to_decimal(*args[2:5])
    right = to_decimal(*args[5:8])
    ctx = DECIMAL_CONTEXT
    rounding = ROUNDING_STRATEGIES.get(strategy, decimal.ROUND_HALF_EVEN)
    operations: Dict[int, Callable[[], decimal.Decimal]] = {
        DECIMAL_RESCALE: lambda: _rescale(left, _places(right), decimal.ROUND_HALF_UP),
        DECIMAL_ADD: lambda: ctx.add(left, right).normalize(ctx),
        DECIMAL_SUB: lambda: ctx.subtract(left, right).normalize(ctx),
        DECIMAL_MUL: lambda: ctx.multiply(left, right).normalize(ctx),
        DECIMAL_DIV: lambda: ctx.divide(left, right).normalize(ctx),
        DECIMAL_POW: lambda: ctx.power(left, right).normalize(ctx),
        DECIMAL_ROUND: lambda: _round_dp(left, _places(right), rounding),
    }
    if op_id not in operations:
        raise AbortError(ARITHMETIC_ERROR, "0x1::Decimal::pair")
    return _decimal_result("0x1::Decimal::pair", operations[op_id])
