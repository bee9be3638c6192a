"""
Header Generator
================
Inverse of the schema builder: renders the textual header that describes a
row buffer exactly as the writer will encode it.
"""
from __future__ import annotations

from typing import Optional, Sequence

from cloudply.config import END_HEADER, GENERATOR_COMMENT, HOST_FORMAT, PLY_FORMAT_VERSION, PLY_MAGIC
from cloudply.errors import SchemaError
from cloudply.model.datatypes import FormatTag, PlyType
from cloudply.model.fields import (
    COLOR_OUTPUT_CHANNELS, FieldDescriptor, FieldGroup, compute_output_mask,
)
from cloudply.model.pose import CAMERA_PROPERTIES, Pose


INDEX_LIST_PROPERTY = f"property list {PlyType.UINT8.ply_name} {PlyType.INT32.ply_name} vertex_indices"


def emitted_fields(
    fields: Sequence[FieldDescriptor],
    mask: Optional[FieldGroup] = None,
) -> list[FieldDescriptor]:
    """Fields written for `mask` (default: every group present), in row order."""
    if mask is None:
        mask = compute_output_mask(fields)
    selected = [f for f in fields if f.count == 1 and f.group & mask]
    for f in selected:
        if f.name in COLOR_OUTPUT_CHANNELS and f.size != 4:
            raise SchemaError(f"Packed colour field '{f.name}' must be 4 bytes wide, not {f.size}.")
    return sorted(selected, key=lambda f: f.offset)


def camera_required(pose: Pose, height: int = 1) -> bool:
    """A camera element carries information only for a real pose or an organized cloud."""
    return not pose.is_identity or height > 1


def property_lines(fields: Sequence[FieldDescriptor]) -> list[str]:
    lines = []
    for f in fields:
        if f.name in COLOR_OUTPUT_CHANNELS:
            lines.extend(
                f"property {PlyType.UINT8.ply_name} {channel}" for channel in COLOR_OUTPUT_CHANNELS[f.name]
            )
        else:
            lines.append(f"property {f.datatype.ply_name} {f.name}")
    return lines


def generate_header(
    fields: Sequence[FieldDescriptor],
    pose: Optional[Pose],
    valid_point_count: int,
    binary: bool,
    include_camera: bool,
    *,
    height: int = 1,
    mask: Optional[FieldGroup] = None,
    range_grid_count: Optional[int] = None,
    face_count: Optional[int] = None,
    comments: Sequence[str] = (GENERATOR_COMMENT,),
    obj_info: Sequence[str] = (),
) -> str:
    """
    Render a complete header ending with the end-of-header line.

    Args:
        fields: Field list of the row buffer being written.
        pose: Sensor pose; the camera element is emitted only when
              `include_camera` is set and the pose or `height` make it useful.
        valid_point_count: Number of vertex rows that will actually be written.
        binary: Native-endian binary format instead of ASCII.
        include_camera: Allow the camera element.
        height: Height of the cloud, written into the camera viewport.
        mask: Field groups to emit; defaults to every group present.
        range_grid_count: Emit a range_grid element with this many entries
                          when no camera element is written.
        face_count: Emit a face element with this many polygons.
    """
    pose = pose or Pose()
    fmt = FormatTag(HOST_FORMAT) if binary else FormatTag.ASCII

    lines = [PLY_MAGIC, f"format {fmt} {PLY_FORMAT_VERSION}"]
    lines.extend(f"comment {text}" for text in comments)
    lines.extend(f"obj_info {text}" for text in obj_info)

    lines.append(f"element vertex {valid_point_count}")
    lines.extend(property_lines(emitted_fields(fields, mask)))

    if include_camera and camera_required(pose, height):
        lines.append("element camera 1")
        lines.extend(f"property {prop.datatype.ply_name} {prop.name}" for prop in CAMERA_PROPERTIES)
    elif range_grid_count is not None:
        lines.append(f"element range_grid {range_grid_count}")
        lines.append(INDEX_LIST_PROPERTY)

    if face_count is not None:
        lines.append(f"element face {face_count}")
        lines.append(INDEX_LIST_PROPERTY)

    lines.append(END_HEADER)
    return "\n".join(lines) + "\n"
