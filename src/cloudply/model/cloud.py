"""
Row Buffer & Auxiliary Structures
=================================
The flat, container-agnostic description of a decoded cloud: one contiguous
byte buffer of packed rows plus the field list describing a row. Variable
length index lists (range grid cells, mesh faces) live next to it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Optional, Sequence

import numpy as np

from cloudply.errors import PlyError, SchemaError, TruncatedBodyError
from cloudply.model.datatypes import PlyType
from cloudply.model.fields import FieldDescriptor

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)


@dataclass
class RowBuffer:
    """
    Packed row storage, row-major, `point_step` bytes per row (the row stride)
    in host byte order. `width * height` is the number of rows.
    """
    fields: list[FieldDescriptor]
    data: bytearray
    point_step: int
    width: int = 0
    height: int = 1

    @classmethod
    def allocate(
        cls,
        row_count: int,
        row_stride: int,
        fields: Sequence[FieldDescriptor] = (),
    ) -> RowBuffer:
        """Zero-initialized buffer of exactly `row_count * row_stride` bytes."""
        if row_count < 0 or row_stride < 0:
            raise SchemaError(f"Cannot allocate {row_count} rows of {row_stride} bytes.")
        try:
            data = bytearray(row_count * row_stride)
        except (MemoryError, OverflowError) as e:
            raise SchemaError(f"Cannot allocate {row_count} rows of {row_stride} bytes: {type(e).__name__}.") from e
        return cls(
            fields=list(fields),
            data=data,
            point_step=row_stride,
            width=row_count,
            height=1,
        )

    @classmethod
    def from_array(cls, array: npt.NDArray) -> RowBuffer:
        """
        Wrap a numpy structured array. A 2-D array gives an organized cloud
        (height = rows, width = columns).
        """
        if array.dtype.names is None:
            raise SchemaError("A structured array with named fields is required.")

        height, width = (array.shape if array.ndim == 2 else (1, array.size))
        native = np.ascontiguousarray(array.astype(array.dtype.newbyteorder("="))).reshape(-1)

        fields: list[FieldDescriptor] = []
        for name in native.dtype.names:
            dtype, offset = native.dtype.fields[name][:2]
            if dtype.subdtype is not None:
                base, shape = dtype.subdtype
                fields.append(FieldDescriptor(name, PlyType.from_numpy(base), offset, int(np.prod(shape))))
            else:
                fields.append(FieldDescriptor(name, PlyType.from_numpy(dtype), offset))
        fields.sort(key=lambda f: f.offset)

        return cls(
            fields=fields,
            data=bytearray(native.tobytes()),
            point_step=native.dtype.itemsize,
            width=width,
            height=height,
        )

    @property
    def row_count(self) -> int:
        return self.width * self.height

    @property
    def is_organized(self) -> bool:
        return self.height > 1

    @property
    def dtype(self) -> np.dtype:
        """Numpy view of one row, padding bytes included."""
        formats = [
            f.datatype.numpy_dtype if f.count == 1 else (f.datatype.numpy_dtype, (f.count,))
            for f in self.fields
        ]
        return np.dtype({
            "names": [f.name for f in self.fields],
            "formats": formats,
            "offsets": [f.offset for f in self.fields],
            "itemsize": self.point_step,
        })

    def as_array(self) -> npt.NDArray:
        """Writable structured view over `data` (a copy when there are no bytes)."""
        if self.row_count == 0 or self.point_step == 0:
            return np.zeros(self.row_count, dtype=self.dtype)
        return np.frombuffer(self.data, dtype=self.dtype, count=self.row_count)

    def field(self, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def select(self, indices: Sequence[int]) -> RowBuffer:
        """New unorganized buffer holding copies of the given rows."""
        rows = self.as_array()[np.asarray(indices, dtype=np.int64)]
        return RowBuffer(
            fields=list(self.fields),
            data=bytearray(rows.tobytes()),
            point_step=self.point_step,
            width=len(rows),
            height=1,
        )


class RowCursor:
    """Write position inside the row currently being filled."""

    def __init__(self, row_stride: int) -> None:
        self.row_stride = row_stride
        self.base = 0
        self.position = 0

    def begin_row(self, row: int) -> None:
        self.base = row * self.row_stride
        self.position = self.base

    def advance(self, size: int) -> None:
        self.position += size

    def end_row(self) -> None:
        consumed = self.position - self.base
        if consumed != self.row_stride:
            raise SchemaError(
                f"Row consumed {consumed} bytes but the row stride is {self.row_stride}; "
                "declared property widths are inconsistent with the field layout."
            )


@dataclass
class IndexEntry:
    """One variable-length list: its declared size and the values read."""
    declared_size: int
    values: list[int | float] = field(default_factory=list)


class AuxiliaryIndexList:
    """
    Entries of one list property, filled incrementally while the element body
    is read and finalized once the element's instance count is exhausted.
    """

    def __init__(self, element: str, name: str, expected_entries: int) -> None:
        self.element = element
        self.name = name
        self.expected_entries = expected_entries
        self.entries: list[IndexEntry] = []
        self.finalized = False
        self._open: Optional[IndexEntry] = None
        self._filled = 0

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.element}.{self.name}, entries={len(self.entries)})"

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[IndexEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> IndexEntry:
        return self.entries[index]

    def begin_entry(self, size: int) -> None:
        if self._open is not None:
            raise SchemaError(f"List '{self.name}' started a new entry before ending the previous one.")
        self._open = IndexEntry(declared_size=size, values=[0] * size)
        self._filled = 0

    def add_value(self, value: int | float) -> None:
        if self._open is None or self._filled >= self._open.declared_size:
            raise SchemaError(f"List '{self.name}' received more values than its declared size.")
        self._open.values[self._filled] = value
        self._filled += 1

    def end_entry(self) -> None:
        if self._open is None:
            raise SchemaError(f"List '{self.name}' ended an entry that was never started.")
        if self._filled != self._open.declared_size:
            raise SchemaError(
                f"List '{self.name}' declared {self._open.declared_size} values but received {self._filled}."
            )
        self.entries.append(self._open)
        self._open = None

    def finalize(self) -> None:
        if self.finalized:
            raise PlyError(f"List '{self.name}' of element '{self.element}' was already finalized.")
        if len(self.entries) != self.expected_entries:
            raise TruncatedBodyError(
                f"Element '{self.element}' declared {self.expected_entries} '{self.name}' entries "
                f"but {len(self.entries)} were read."
            )
        self.finalized = True

    def to_lists(self) -> list[list[int | float]]:
        return [list(entry.values) for entry in self.entries]


@dataclass
class PolygonMesh:
    cloud: RowBuffer
    polygons: list[list[int]] = field(default_factory=list)


def expand_range_grid(cloud: RowBuffer, range_grid: Sequence[IndexEntry]) -> RowBuffer:
    """
    Rebuild one row per range grid cell. Cells referencing a vertex copy it,
    empty cells get NaN in floating fields and zero elsewhere.
    """
    source = cloud.as_array()
    out = np.zeros(len(range_grid), dtype=cloud.dtype)
    for f in cloud.fields:
        if f.datatype.is_float:
            out[f.name] = np.nan

    for i, entry in enumerate(range_grid):
        if entry.declared_size == 0:
            continue
        index = int(entry.values[0])
        if not 0 <= index < cloud.row_count:
            raise SchemaError(f"Range grid cell {i} references vertex {index}, cloud has {cloud.row_count}.")
        out[i] = source[index]

    logger.debug(f"Expanded {cloud.row_count} vertices onto {len(range_grid)} range grid cells.")
    return RowBuffer(
        fields=list(cloud.fields),
        data=bytearray(out.tobytes()),
        point_step=cloud.point_step,
        width=len(range_grid),
        height=1,
    )
