"""
Scalar value codec.

Converts primitive field values to and from the strings stored in Redis.
Python's built-in ``int`` and ``float`` map to unbounded integers and 64-bit
floats; the fixed-width aliases below (``Int8`` ... ``Float32``) carry a
ScalarKind in their ``Annotated`` metadata and are range-checked.
"""

import math
import re
import struct
from enum import Enum
from typing import Annotated, Any, get_args, get_origin

from vertector_redisobj.errors import InvalidFieldTypeError


class ScalarKind(str, Enum):
    """Primitive kinds with a lossless string representation."""
    STRING = "string"
    BOOL = "bool"
    INT = "int"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


Int8 = Annotated[int, ScalarKind.INT8]
Int16 = Annotated[int, ScalarKind.INT16]
Int32 = Annotated[int, ScalarKind.INT32]
Int64 = Annotated[int, ScalarKind.INT64]
UInt8 = Annotated[int, ScalarKind.UINT8]
UInt16 = Annotated[int, ScalarKind.UINT16]
UInt32 = Annotated[int, ScalarKind.UINT32]
UInt64 = Annotated[int, ScalarKind.UINT64]
Float32 = Annotated[float, ScalarKind.FLOAT32]
Float64 = Annotated[float, ScalarKind.FLOAT64]

# (min, max) inclusive; INT is unbounded
_INT_RANGES: dict[ScalarKind, tuple[int, int]] = {
    ScalarKind.INT8: (-(2 ** 7), 2 ** 7 - 1),
    ScalarKind.INT16: (-(2 ** 15), 2 ** 15 - 1),
    ScalarKind.INT32: (-(2 ** 31), 2 ** 31 - 1),
    ScalarKind.INT64: (-(2 ** 63), 2 ** 63 - 1),
    ScalarKind.UINT8: (0, 2 ** 8 - 1),
    ScalarKind.UINT16: (0, 2 ** 16 - 1),
    ScalarKind.UINT32: (0, 2 ** 32 - 1),
    ScalarKind.UINT64: (0, 2 ** 64 - 1),
}

_INTEGER_KINDS = frozenset(_INT_RANGES) | {ScalarKind.INT}
_FLOAT_KINDS = frozenset({ScalarKind.FLOAT32, ScalarKind.FLOAT64})
_UNSIGNED_KINDS = frozenset({ScalarKind.UINT8, ScalarKind.UINT16, ScalarKind.UINT32, ScalarKind.UINT64})

_BUILTIN_KINDS: dict[type, ScalarKind] = {
    str: ScalarKind.STRING,
    bool: ScalarKind.BOOL,
    int: ScalarKind.INT,
    float: ScalarKind.FLOAT64,
}

# Same spellings strconv.ParseBool accepts
_TRUE_STRINGS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_STRINGS = frozenset({"0", "f", "F", "FALSE", "false", "False"})

_SIGNED_RE = re.compile(r"[+-]?[0-9]+")
_UNSIGNED_RE = re.compile(r"[0-9]+")
_FLOAT_RE = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)",
    re.IGNORECASE,
)


def kind_of(annotation: Any) -> ScalarKind | None:
    """
    Resolve a type annotation to its ScalarKind.

    Returns None when the annotation has no lossless string form.
    """
    if get_origin(annotation) is Annotated:
        base, *extras = get_args(annotation)
        for extra in extras:
            if isinstance(extra, ScalarKind):
                return extra
        return kind_of(base)
    if isinstance(annotation, type):
        return _BUILTIN_KINDS.get(annotation)
    return None


def is_representable(annotation: Any) -> bool:
    """True when values of this annotation can be stored as strings."""
    return kind_of(annotation) is not None


def zero_value(kind: ScalarKind) -> Any:
    """Return the value an empty or missing string decodes to."""
    if kind is ScalarKind.STRING:
        return ""
    if kind is ScalarKind.BOOL:
        return False
    if kind in _FLOAT_KINDS:
        return 0.0
    return 0


def _infer_kind(value: Any) -> ScalarKind:
    # bool first; bool is an int subclass
    for python_type in (bool, str, int, float):
        if isinstance(value, python_type):
            return _BUILTIN_KINDS[python_type]
    raise InvalidFieldTypeError(f"could not convert value to string: {value!r}")


def _round_float32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def _format_float32(value: float) -> str:
    if math.isnan(value) or math.isinf(value):
        return repr(value)
    for precision in range(1, 10):
        text = f"{value:.{precision}g}"
        try:
            if _round_float32(float(text)) == value:
                return text
        except OverflowError:
            # short forms near the float32 maximum round past it
            continue
    return repr(value)


def encode(value: Any, kind: ScalarKind | None = None) -> str:
    """
    Convert a scalar value to its string wire form.

    Args:
        value: The value to encode
        kind: Declared kind of the field; inferred from the value if omitted

    Returns:
        The string representation

    Raises:
        InvalidFieldTypeError: If the value does not fit the kind
    """
    if kind is None:
        kind = _infer_kind(value)

    if kind is ScalarKind.STRING:
        if not isinstance(value, str):
            raise InvalidFieldTypeError(f"expected str, got {type(value).__name__}: {value!r}")
        return value

    if kind is ScalarKind.BOOL:
        if not isinstance(value, bool):
            raise InvalidFieldTypeError(f"expected bool, got {type(value).__name__}: {value!r}")
        return "true" if value else "false"

    if kind in _INTEGER_KINDS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidFieldTypeError(f"expected int for {kind.value}, got {type(value).__name__}: {value!r}")
        if kind in _INT_RANGES:
            low, high = _INT_RANGES[kind]
            if not low <= value <= high:
                raise InvalidFieldTypeError(f"value {value} out of range for {kind.value}")
        return str(value)

    if kind in _FLOAT_KINDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidFieldTypeError(f"expected float for {kind.value}, got {type(value).__name__}: {value!r}")
        value = float(value)
        if kind is ScalarKind.FLOAT32:
            try:
                return _format_float32(_round_float32(value))
            except OverflowError as e:
                raise InvalidFieldTypeError(f"value {value} out of range for float32", original_error=e)
        return repr(value)

    raise InvalidFieldTypeError(f"unsupported kind: {kind!r}")


def decode(text: str | bytes | None, kind: ScalarKind) -> Any:
    """
    Parse a string wire value back into a Python value.

    Empty strings (and None, which Redis returns for absent values) decode
    to the kind's zero value.

    Raises:
        InvalidFieldTypeError: If the text is not a valid value of the kind
    """
    if text is None:
        return zero_value(kind)
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFieldTypeError(f"value is not valid UTF-8 for {kind.value}", original_error=e)

    if kind is ScalarKind.STRING:
        return text
    if text == "":
        return zero_value(kind)

    if kind is ScalarKind.BOOL:
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False

    elif kind in _INTEGER_KINDS:
        pattern = _UNSIGNED_RE if kind in _UNSIGNED_KINDS else _SIGNED_RE
        if pattern.fullmatch(text):
            value = int(text, 10)
            low, high = _INT_RANGES.get(kind, (value, value))
            if low <= value <= high:
                return value

    elif kind in _FLOAT_KINDS:
        if _FLOAT_RE.fullmatch(text):
            value = float(text)
            if kind is ScalarKind.FLOAT64:
                return value
            try:
                return _round_float32(value)
            except OverflowError:
                pass

    raise InvalidFieldTypeError(f"could not set value ({kind.value}) from string ({text!r})")
