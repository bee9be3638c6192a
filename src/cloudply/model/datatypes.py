"""
Primitive Datatypes & Value Codec
=================================
Defines the primitive types a PLY property may carry and converts single
values between their textual (ASCII body) and binary representations.

Why is this file needed?
------------------------
1. Naming: PLY files spell the same primitive in two ways ("uchar" and
   "uint8"); everything past the tokenizer uses the normalized `PlyType`.
2. Codec: Binary values are fixed-width in the declared byte order, ASCII
   values are whitespace-delimited decimal tokens. Both paths range-check so
   nothing is silently truncated.
"""
from __future__ import annotations

import math
import struct
import sys
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional, Union

import numpy as np

from cloudply.errors import SchemaError, TruncatedBodyError, ValueFormatError

Number = Union[int, float]


class PlyType(StrEnum):
    INT8 = "int8"
    UINT8 = "uint8"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @property
    def ply_name(self) -> str:
        """Canonical keyword written into generated headers."""
        return TYPE_INFO[self].ply_name

    @property
    def struct_code(self) -> str:
        return TYPE_INFO[self].struct_code

    @property
    def size(self) -> int:
        """Width in bytes."""
        return TYPE_INFO[self].size

    @property
    def is_float(self) -> bool:
        return TYPE_INFO[self].is_float

    @property
    def numpy_dtype(self) -> np.dtype:
        """Native byte order numpy dtype."""
        return np.dtype(self.value)

    @property
    def limits(self) -> tuple[Number, Number]:
        if self.is_float:
            info = np.finfo(self.numpy_dtype)
            return float(info.min), float(info.max)
        info = np.iinfo(self.numpy_dtype)
        return int(info.min), int(info.max)

    @classmethod
    def from_numpy(cls, dtype: np.dtype) -> PlyType:
        """Map a numpy scalar dtype (any byte order) to its PLY type."""
        key = np.dtype(dtype).newbyteorder("=").name
        try:
            return cls(key)
        except ValueError:
            raise SchemaError(f"Numpy dtype '{dtype}' has no PLY counterpart.") from None


@dataclass(frozen=True)
class TypeInfo:
    ply_name: str
    struct_code: str
    size: int
    is_float: bool


TYPE_INFO: dict[PlyType, TypeInfo] = {
    PlyType.INT8: TypeInfo("char", "b", 1, False),
    PlyType.UINT8: TypeInfo("uchar", "B", 1, False),
    PlyType.INT16: TypeInfo("short", "h", 2, False),
    PlyType.UINT16: TypeInfo("ushort", "H", 2, False),
    PlyType.INT32: TypeInfo("int", "i", 4, False),
    PlyType.UINT32: TypeInfo("uint", "I", 4, False),
    PlyType.FLOAT32: TypeInfo("float", "f", 4, True),
    PlyType.FLOAT64: TypeInfo("double", "d", 8, True),
}

# Both spellings found in the wild map to the same primitive
PLY_TYPE_NAMES: dict[str, PlyType] = {
    **{info.ply_name: ply_type for ply_type, info in TYPE_INFO.items()},
    **{ply_type.value: ply_type for ply_type in PlyType},
}


class ByteOrder(StrEnum):
    LITTLE = "<"
    BIG = ">"


NATIVE_BYTE_ORDER = ByteOrder.LITTLE if sys.byteorder == "little" else ByteOrder.BIG


class FormatTag(StrEnum):
    ASCII = "ascii"
    BINARY_LITTLE_ENDIAN = "binary_little_endian"
    BINARY_BIG_ENDIAN = "binary_big_endian"

    @property
    def byte_order(self) -> Optional[ByteOrder]:
        """Byte order of the body; None for ASCII."""
        if self is FormatTag.ASCII:
            return None
        return ByteOrder.LITTLE if self is FormatTag.BINARY_LITTLE_ENDIAN else ByteOrder.BIG

    @property
    def is_binary(self) -> bool:
        return self is not FormatTag.ASCII


def parse_type(name: str) -> PlyType:
    """Resolve a header type keyword, rejecting unsupported primitives."""
    try:
        return PLY_TYPE_NAMES[name]
    except KeyError:
        raise SchemaError(f"Unsupported primitive type '{name}'.") from None


def parse_token(datatype: PlyType, token: str) -> Number:
    """
    Parse one ASCII token as `datatype`.

    Integers must be plain decimal and inside the type's range. Floats are
    parsed at full precision; a finite token that overflows the type fails.
    """
    if "_" in token:
        raise ValueFormatError(f"'{token}' is not a valid {datatype.ply_name} value.")

    if datatype.is_float:
        try:
            value = float(token)
        except ValueError:
            raise ValueFormatError(f"'{token}' is not a valid {datatype.ply_name} value.") from None
        if math.isinf(value) and "inf" not in token.lower():
            raise ValueFormatError(f"'{token}' overflows {datatype.ply_name}.")
        # Rounding to the stored width may legitimately land on the largest finite value
        with np.errstate(over="ignore"):
            stored = datatype.numpy_dtype.type(value)
        if np.isinf(stored) and not math.isinf(value):
            raise ValueFormatError(f"'{token}' overflows {datatype.ply_name}.")
        return value

    try:
        value = int(token, 10)
    except ValueError:
        raise ValueFormatError(f"'{token}' is not a valid {datatype.ply_name} value.") from None
    low, high = datatype.limits
    if not low <= value <= high:
        raise ValueFormatError(f"{value} is out of range for {datatype.ply_name} [{low}, {high}].")
    return value


def format_value(datatype: PlyType, value: Number, precision: Optional[int] = None) -> str:
    """
    Minimal textual form of `value`: decimal for integers, `precision`
    significant digits for floats (shortest round-tripping form when None).
    """
    if not datatype.is_float:
        return str(int(value))
    if precision is None:
        return repr(float(value))
    return f"{float(value):.{precision}g}"


def decode_scalar(
    datatype: PlyType,
    byte_order: Optional[ByteOrder],
    source: Union[str, bytes, bytearray, memoryview],
    offset: int = 0,
) -> Number:
    """
    Decode one value. `byte_order=None` selects the ASCII path, where `source`
    is a single token; otherwise `source` is a buffer read at `offset`.
    """
    if byte_order is None:
        token = source if isinstance(source, str) else bytes(source).decode("ascii", errors="replace")
        return parse_token(datatype, token)

    try:
        return struct.unpack_from(byte_order + datatype.struct_code, source, offset)[0]
    except struct.error:
        raise TruncatedBodyError(
            f"Need {datatype.size} bytes for {datatype.ply_name} at byte offset {offset}, "
            f"buffer holds {len(source)}."
        ) from None


def encode_scalar(
    datatype: PlyType,
    byte_order: Optional[ByteOrder],
    value: Number,
    precision: Optional[int] = None,
) -> Union[str, bytes]:
    """Inverse of `decode_scalar`: a token for ASCII, fixed-width bytes otherwise."""
    if byte_order is None:
        return format_value(datatype, value, precision)
    try:
        return struct.pack(byte_order + datatype.struct_code, value)
    except (struct.error, OverflowError) as e:
        raise ValueFormatError(f"Cannot encode {value!r} as {datatype.ply_name}: {e}") from None


def pack_into(
    datatype: PlyType,
    byte_order: ByteOrder,
    buffer: Union[bytearray, memoryview],
    offset: int,
    value: Number,
) -> None:
    """Write one value into `buffer` at `offset` in place."""
    try:
        struct.pack_into(byte_order + datatype.struct_code, buffer, offset, value)
    except (struct.error, OverflowError) as e:
        raise ValueFormatError(f"Cannot store {value!r} as {datatype.ply_name}: {e}") from None
