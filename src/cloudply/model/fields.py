"""
Field Schema
============
Builds the packed row layout of the per-point element from the property
declarations found in a header, and classifies fields into the semantic
groups the writer emits.

Why is this file needed?
------------------------
1. Layout: The set of fields is only known once a header has been read. The
   builder assigns every field a byte offset inside a tightly packed row.
2. Canonical names: Exporters disagree on names (`nx` vs `normal_x`,
   `diffuse_red` vs `red`). The alias table below is the single place where
   such names are normalized, so the dispatcher never matches names itself.
3. Colour: Three (or four) `uchar` colour channels are coalesced into one
   packed 32-bit field, which is what point consumers expect.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import IntFlag, StrEnum
from typing import Optional

from cloudply.model.datatypes import NATIVE_BYTE_ORDER, ByteOrder, PlyType

logger = logging.getLogger(__name__)


class FieldGroup(IntFlag):
    """Semantic field groups; a combination of them is the output mask."""
    NONE = 0
    XYZ = 1
    NORMALS = 2
    RGB = 4
    RGBA = 8
    INTENSITY = 16
    CURVATURE = 32
    EXTRA = 64
    ALL = XYZ | NORMALS | RGB | RGBA | INTENSITY | CURVATURE | EXTRA


# Declared property name -> canonical field name
PROPERTY_ALIASES: dict[str, str] = {
    "x": "x",
    "y": "y",
    "z": "z",
    "nx": "normal_x",
    "ny": "normal_y",
    "nz": "normal_z",
    "normal_x": "normal_x",
    "normal_y": "normal_y",
    "normal_z": "normal_z",
    "red": "red",
    "green": "green",
    "blue": "blue",
    "alpha": "alpha",
    "diffuse_red": "red",
    "diffuse_green": "green",
    "diffuse_blue": "blue",
    "diffuse_alpha": "alpha",
    "intensity": "intensity",
    "curvature": "curvature",
}

FIELD_GROUPS: dict[str, FieldGroup] = {
    "x": FieldGroup.XYZ,
    "y": FieldGroup.XYZ,
    "z": FieldGroup.XYZ,
    "normal_x": FieldGroup.NORMALS,
    "normal_y": FieldGroup.NORMALS,
    "normal_z": FieldGroup.NORMALS,
    "rgb": FieldGroup.RGB,
    "rgba": FieldGroup.RGBA,
    "intensity": FieldGroup.INTENSITY,
    "curvature": FieldGroup.CURVATURE,
}

# Bit position of each channel inside a packed 0xAARRGGBB value
COLOR_CHANNEL_SHIFTS: dict[str, int] = {
    "blue": 0,
    "green": 8,
    "red": 16,
    "alpha": 24,
}

PACKED_COLOR_FIELDS = ("rgb", "rgba")

# Properties a packed colour field expands to on output
COLOR_OUTPUT_CHANNELS: dict[str, tuple[str, ...]] = {
    "rgb": ("red", "green", "blue"),
    "rgba": ("red", "green", "blue", "alpha"),
}


def field_group(name: str) -> FieldGroup:
    """Group of a stored field; names starting with '_' are padding."""
    if name.startswith("_"):
        return FieldGroup.NONE
    return FIELD_GROUPS.get(name, FieldGroup.EXTRA)


def channel_byte(channel: str, byte_order: ByteOrder = NATIVE_BYTE_ORDER) -> int:
    """Byte index of a colour channel inside the packed 32-bit field."""
    index = COLOR_CHANNEL_SHIFTS[channel] // 8
    return index if byte_order is ByteOrder.LITTLE else 3 - index


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    datatype: PlyType
    offset: int
    count: int = 1

    @property
    def size(self) -> int:
        return self.datatype.size * self.count

    @property
    def group(self) -> FieldGroup:
        return field_group(self.name)


def compute_output_mask(fields: list[FieldDescriptor] | tuple[FieldDescriptor, ...]) -> FieldGroup:
    """Mask of the field groups present in a field list."""
    mask = FieldGroup.NONE
    for field in fields:
        if field.count != 1:
            logger.warning(f"Field '{field.name}' has count {field.count}; only scalar fields are written.")
            continue
        mask |= field.group
    return mask


class SlotKind(StrEnum):
    FIELD = "field"
    COLOR_CHANNEL = "color_channel"
    LIST = "list"


@dataclass(frozen=True)
class PropertySlot:
    """
    Destination of one declared property of the per-point element.

    `offset` is relative to the row start and `advance` is how far the row
    cursor moves once the value is stored. List properties have no place in
    the row and advance by zero.
    """
    index: int
    name: str
    kind: SlotKind
    datatype: PlyType
    offset: int
    advance: int
    field: Optional[str] = None
    size_type: Optional[PlyType] = None


@dataclass(frozen=True)
class Schema:
    element: str
    fields: tuple[FieldDescriptor, ...]
    slots: tuple[PropertySlot, ...]
    point_step: int

    @property
    def color_field(self) -> Optional[FieldDescriptor]:
        for field in self.fields:
            if field.name in PACKED_COLOR_FIELDS:
                return field
        return None

    @property
    def has_alpha(self) -> bool:
        return any(
            slot.kind is SlotKind.COLOR_CHANNEL and PROPERTY_ALIASES.get(slot.name) == "alpha"
            for slot in self.slots
        )

    def field(self, name: str) -> Optional[FieldDescriptor]:
        for field in self.fields:
            if field.name == name:
                return field
        return None


class SchemaBuilder:
    """Accumulates property declarations of one element into a `Schema`."""

    def __init__(self, element: str = "vertex") -> None:
        self.element = element
        self._slots: list[PropertySlot] = []
        self._fields: list[FieldDescriptor] = []
        self._offset = 0
        self._color_offset: Optional[int] = None
        self._color_slots: list[int] = []

    def add_scalar(self, name: str, datatype: PlyType) -> PropertySlot:
        canonical = PROPERTY_ALIASES.get(name, name)
        index = len(self._slots)

        if canonical in COLOR_CHANNEL_SHIFTS and datatype is PlyType.UINT8:
            if self._color_offset is None:
                self._color_offset = self._offset
                self._fields.append(FieldDescriptor("rgb", PlyType.UINT32, self._offset))
                self._offset += PlyType.UINT32.size
            slot = PropertySlot(
                index=index,
                name=name,
                kind=SlotKind.COLOR_CHANNEL,
                datatype=PlyType.UINT8,
                offset=self._color_offset + channel_byte(canonical),
                advance=1,
            )
            self._color_slots.append(index)
        else:
            existing = self._field_named(canonical)
            if existing is None:
                existing = FieldDescriptor(canonical, datatype, self._offset)
                self._fields.append(existing)
                self._offset += datatype.size
            else:
                # Stored once; the row byte budget no longer matches the stride
                logger.warning(f"Property '{name}' of element '{self.element}' is declared twice.")
            slot = PropertySlot(
                index=index,
                name=name,
                kind=SlotKind.FIELD,
                datatype=existing.datatype,
                offset=existing.offset,
                advance=datatype.size,
                field=canonical,
            )

        self._slots.append(slot)
        return slot

    def add_list(self, name: str, size_type: PlyType, value_type: PlyType) -> PropertySlot:
        slot = PropertySlot(
            index=len(self._slots),
            name=name,
            kind=SlotKind.LIST,
            datatype=value_type,
            offset=-1,
            advance=0,
            size_type=size_type,
        )
        self._slots.append(slot)
        return slot

    def build(self) -> Schema:
        fields = list(self._fields)
        slots = list(self._slots)

        if self._color_slots:
            has_alpha = any(PROPERTY_ALIASES.get(slots[i].name) == "alpha" for i in self._color_slots)
            color_name = "rgba" if has_alpha else "rgb"
            fields = [
                replace(f, name=color_name) if f.offset == self._color_offset and f.name == "rgb" else f
                for f in fields
            ]
            for i in self._color_slots:
                slots[i] = replace(slots[i], field=color_name)
            # The last channel also steps over the bytes no channel fills
            last = self._color_slots[-1]
            padding = max(0, PlyType.UINT32.size - len(self._color_slots))
            slots[last] = replace(slots[last], advance=slots[last].advance + padding)

        return Schema(
            element=self.element,
            fields=tuple(fields),
            slots=tuple(slots),
            point_step=self._offset,
        )

    def _field_named(self, name: str) -> Optional[FieldDescriptor]:
        for field in self._fields:
            if field.name == name:
                return field
        return None
